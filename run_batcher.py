from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
from typing import List, Optional

from batcher.channel import MessageChannel
from batcher.config import load_config
from batcher.messages import command
from batcher.orchestrator import BatchOrchestrator
from batcher.simulation import SimulatedWorld, build_demo_world, drive

from extensions.logging import LoggingExtension
from extensions.resource_monitor import ResourceMonitor


# ----------------------------
# CLI parsing
# ----------------------------

def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Capacity-packing batch scheduler against a simulated fleet"
    )
    p.add_argument("--target", action="append", default=[],
                   help="Target to batch, optionally NAME:FRACTION (repeatable; later ones replace earlier ones)")
    p.add_argument("--duration", type=float, default=60.0, help="Seconds of (virtual) time to run")
    p.add_argument("--realtime", action="store_true",
                   help="Run the async loop on the wall clock instead of advancing virtual time")
    p.add_argument("--skill", type=int, default=10, help="Actor skill of the simulated world")
    p.add_argument("--servers", action="store_true", help="Print the fleet report at startup")
    p.add_argument("--log-dir", type=Path, default=None, help="Directory for per-target logs (default: BATCHER_LOG_DIR)")
    p.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Console/file log level")
    return p.parse_args(argv)


def _parse_target(raw: str):
    name, _, frac = raw.partition(":")
    return name, (float(frac) if frac else None)


# ----------------------------
# Runners
# ----------------------------

async def _run_realtime(orch: BatchOrchestrator, world: SimulatedWorld, seconds: float) -> None:
    """Advance the simulated world with the wall clock while the async loop runs."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    start = loop.time()
    base = world.now()

    async def _advance() -> None:
        while not stop.is_set():
            elapsed = loop.time() - start
            world.advance_to(base + elapsed * 1000.0)
            if elapsed >= seconds:
                stop.set()
                break
            await asyncio.sleep(0.005)

    ticker = asyncio.create_task(_advance())
    try:
        await orch.run(stop_event=stop)
    finally:
        stop.set()
        await ticker


async def main_async(argv: Optional[List[str]] = None) -> None:
    args = _parse_args(argv)
    cfg = load_config()
    level = getattr(logging, args.log_level)
    log_dir = args.log_dir or cfg.log_dir
    log_ext = LoggingExtension(log_dir, global_level=level, per_target_level=level)
    log_ext.install_run_file(log_dir / cfg.log_file.name)
    root_logger = logging.getLogger("batcher")

    monitor = ResourceMonitor(log_dir / "resource_summary.json")
    monitor.start()

    completions = MessageChannel("completions")
    commands = MessageChannel("commands")
    world = build_demo_world(completions=completions, skill=args.skill)
    orch = BatchOrchestrator(
        world,
        world,
        cfg,
        completions=completions,
        commands=commands,
        clock=world.now,
        monitor=monitor,
        log_ext=log_ext,
    )

    for raw in args.target or ["alpha"]:
        name, frac = _parse_target(raw)
        commands.write(command("target", name, frac) if frac is not None else command("target", name))
    if args.servers:
        commands.write(command("servers"))

    try:
        if args.realtime:
            await _run_realtime(orch, world, args.duration)
        else:
            ticks = drive(orch, world, args.duration * 1000.0)
            root_logger.info("Ran %d tick(s) over %.1fs of virtual time", ticks, args.duration)
        root_logger.info("Final status:\n%s", orch.status_report())
    finally:
        monitor.stop()
        log_ext.close()


# ----------------------------
# Entrypoint
# ----------------------------

def main() -> None:
    asyncio.run(main_async())


if __name__ == "__main__":
    main()
