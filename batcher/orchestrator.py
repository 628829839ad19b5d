from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple, Union

from extensions.logging import LoggingExtension, target_context
from extensions.resource_monitor import ResourceMonitor

from .capacity import CapacityModel, FleetUsage, count_inflight, reserve_for
from .channel import MessageChannel, wait_any
from .config import Config
from .errors import DesyncDetected, DispatchFailure, InvalidTransition, MetricsInfeasible, PlanningInfeasible
from .executor import cancel, alive, execute
from .interfaces import Fleet, Formulas, UnitArgs
from .messages import CommandMessage, CompletionMessage, parse_command, parse_completion
from .planner import COMPACT, CapacityDemand, plan
from .preparation import PreparationResult, PrepStrategy, PrepUnits, prepare
from .timing import BatchMetrics, Phase, compute_batch_metrics
from .utils import format_capacity, format_duration, format_percent, now_ms

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


# -----------------------------
# Target state machine
# -----------------------------
class TargetPhase(str, Enum):
    PENDING = "pending"
    PREPARING = "preparing"
    ACTIVE = "active"
    DRAINING = "draining"
    DRAINED = "drained"


TRANSITIONS: Dict[TargetPhase, FrozenSet[TargetPhase]] = {
    TargetPhase.PENDING: frozenset({TargetPhase.ACTIVE, TargetPhase.PREPARING, TargetPhase.DRAINING}),
    TargetPhase.PREPARING: frozenset({TargetPhase.ACTIVE, TargetPhase.DRAINING}),
    TargetPhase.ACTIVE: frozenset({TargetPhase.PREPARING, TargetPhase.DRAINING}),
    TargetPhase.DRAINING: frozenset({TargetPhase.DRAINED}),
    TargetPhase.DRAINED: frozenset(),
}

CURRENT_PHASES = frozenset({TargetPhase.ACTIVE, TargetPhase.PREPARING})

# phase -> BatchOrchestrator method handling it for one tick
HANDLERS: Dict[TargetPhase, str] = {phase: f"_handle_{phase.value}" for phase in TargetPhase}


@dataclass
class TargetState:
    name: str
    fraction: float
    registered_seq: int
    phase: TargetPhase = TargetPhase.PENDING
    prep: Optional[PreparationResult] = None

    # pay window of the batch whose extract already landed
    window_start: Optional[float] = None
    window_batch: Optional[int] = None
    next_start: Optional[float] = None

    metrics: Optional[BatchMetrics] = None
    metrics_skill: Optional[int] = None

    batch_count: int = 0
    committed_batch: int = -1
    desync_count: int = 0
    desyncs_total: int = 0
    resets: int = 0

    last_message_time: Optional[float] = None
    last_report: Optional[float] = None
    status: str = "registered"
    history: List[TargetPhase] = field(default_factory=list)

    @property
    def is_current(self) -> bool:
        return self.phase in CURRENT_PHASES

    @property
    def pending_batches(self) -> int:
        return max(0, self.batch_count - 1 - self.committed_batch)

    def move(self, to: TargetPhase) -> None:
        if to not in TRANSITIONS[self.phase]:
            raise InvalidTransition(f"{self.name}: {self.phase.value} -> {to.value} is not allowed")
        logger.info("[target] %s: %s -> %s", self.name, self.phase.value, to.value)
        self.history.append(self.phase)
        self.phase = to


# -----------------------------
# Orchestrator
# -----------------------------
class BatchOrchestrator:
    """
    Owns every target and drives them through the state machine, one tick at
    a time. All mutable scheduler state lives on this instance.
    """

    def __init__(
        self,
        fleet: Fleet,
        formulas: Formulas,
        cfg: Config,
        *,
        completions: Optional[MessageChannel] = None,
        commands: Optional[MessageChannel] = None,
        clock: Callable[[], float] = now_ms,
        monitor: Optional[ResourceMonitor] = None,
        log_ext: Optional[LoggingExtension] = None,
    ) -> None:
        self.fleet = fleet
        self.formulas = formulas
        self.cfg = cfg
        self.completions = completions if completions is not None else MessageChannel("completions")
        self.commands = commands if commands is not None else MessageChannel("commands")
        self.clock = clock
        self.monitor = monitor
        self.log_ext = log_ext

        self.targets: List[TargetState] = []
        self.nodes: List[str] = []
        self.stopped = False
        self._seq = 0
        self._last_report: Optional[float] = None
        self._handlers: Dict[TargetPhase, Callable[[TargetState, float], float]] = {
            phase: getattr(self, name) for phase, name in HANDLERS.items()
        }
        self._units = {
            Phase.EXTRACT: cfg.extract_unit,
            Phase.STABILIZE_EXTRACT: cfg.stabilize_unit,
            Phase.REPLENISH: cfg.replenish_unit,
            Phase.STABILIZE_REPLENISH: cfg.stabilize_unit,
        }
        self._prep_units = PrepUnits(replenish=cfg.replenish_unit, stabilize=cfg.stabilize_unit)

    # ---------- lookups ----------
    def get(self, name: str) -> Optional[TargetState]:
        """Latest live state registered under `name`."""
        for state in reversed(self.targets):
            if state.name == name and state.phase is not TargetPhase.DRAINED:
                return state
        return None

    def current(self) -> Optional[TargetState]:
        for state in self.targets:
            if state.is_current:
                return state
        return None

    def _all_units(self) -> List[str]:
        return sorted({self.cfg.extract_unit, self.cfg.replenish_unit, self.cfg.stabilize_unit})

    def _usage(self) -> FleetUsage:
        self._sync_nodes()
        return count_inflight(self.fleet, self.nodes, self._all_units())

    def _capacity(self) -> CapacityModel:
        self._sync_nodes()
        home = self.cfg.home_node if self.cfg.include_home else None
        return CapacityModel.from_fleet(self.fleet, self.nodes, home=home, tiers=self.cfg.home_reserve_tiers)

    # ---------- operations ----------
    def register_target(self, name: str, fraction: Optional[float] = None) -> TargetState:
        frac = self.cfg.default_fraction if fraction is None else float(fraction)
        if not 0.0 < frac < 1.0:
            raise ValueError(f"extraction fraction must be in (0, 1), got {frac}")

        existing = self.get(name)
        if existing is not None and existing.phase is not TargetPhase.DRAINING:
            existing.fraction = frac
            existing.metrics = None
            existing.metrics_skill = None
            existing.status = f"fraction set to {format_percent(frac)}"
            logger.info("[target] %s: fraction updated to %s", name, format_percent(frac))
            return existing

        cur = self.current()
        if cur is not None:
            cur.move(TargetPhase.DRAINING)
            cur.status = f"replaced by {name}"

        self._seq += 1
        state = TargetState(name=name, fraction=frac, registered_seq=self._seq)
        if existing is not None:
            # keep numbering monotonic so the draining state's messages stay stale
            state.batch_count = existing.batch_count
            state.committed_batch = existing.batch_count - 1
        self.targets.append(state)
        if self.log_ext is not None:
            self.log_ext.get_target_logger(name)
        logger.info("[target] %s registered (fraction=%s)", name, format_percent(frac))
        return state

    def _refresh_nodes(self) -> Tuple[List[str], List[str]]:
        names: List[str] = []
        for name in self.fleet.discover():
            if name == self.cfg.home_node and not self.cfg.include_home:
                continue
            if self.fleet.node(name).total <= 0:
                continue
            names.append(name)
        added = sorted(set(names) - set(self.nodes))
        removed = sorted(set(self.nodes) - set(names))
        self.nodes = names
        return added, removed

    def _sync_nodes(self) -> None:
        added, removed = self._refresh_nodes()
        if added or removed:
            logger.info("[fleet] %d node(s); added=%s removed=%s", len(self.nodes), added or "-", removed or "-")

    def rescan_fleet(self) -> List[str]:
        added, removed = self._refresh_nodes()
        logger.info("[fleet] %d node(s); added=%s removed=%s", len(self.nodes), added or "-", removed or "-")
        return list(self.nodes)

    def fleet_report(self) -> str:
        self._sync_nodes()
        cur = self.current() or next((s for s in self.targets if s.phase is TargetPhase.PENDING), None)
        cost = None
        if cur is not None:
            try:
                metrics = self._ensure_metrics(cur)
                cost = metrics.cost({p: self.fleet.unit_cost(u) for p, u in self._units.items()})
            except MetricsInfeasible as e:
                logger.debug("[fleet] batch cost unavailable: %s", e)

        lines = [f"{'node':<20s} {'total':>10s} {'used':>10s} {'batches':>8s}"]
        for name in self.nodes:
            node = self.fleet.node(name)
            usable = node.total
            if self.cfg.include_home and name == self.cfg.home_node:
                usable -= reserve_for(node.total, self.cfg.home_reserve_tiers)
            fits = "-" if not cost else str(int(math.floor(usable / cost)))
            lines.append(
                f"{name:<20s} {format_capacity(node.total):>10s} {format_capacity(node.used):>10s} {fits:>8s}"
            )
        if cur is not None and cost:
            lines.append(f"batch of {cur.name}: {format_capacity(cost)}")
        report = "\n".join(lines)
        logger.info("[fleet]\n%s", report)
        return report

    def status_report(self, now: Optional[float] = None) -> str:
        now = self.clock() if now is None else now
        usage = self._usage()
        pct = usage.used / usage.total if usage.total else 0.0
        lines = [
            f"fleet: {format_capacity(usage.used)}/{format_capacity(usage.total)} ({format_percent(pct)}) "
            f"on {len(self.nodes)} node(s)"
        ]
        for s in self.targets:
            counts = usage.for_target(s.name)
            size = "-"
            if s.metrics is not None:
                size = f"{s.metrics.total_threads}t/{format_capacity(s.metrics.extract_amount)}"
            prep = "-"
            if s.prep is not None:
                prep = f"{s.prep.strategy.value} eta={format_duration(max(0.0, s.prep.eta - now))}"
            lines.append(
                f"{s.name}: {s.phase.value} frac={format_percent(s.fraction)} "
                f"batches={s.batch_count} committed={s.committed_batch + 1} pending={s.pending_batches} "
                f"jobs={counts.jobs() if counts else 0} size={size} prep={prep} "
                f"desyncs={s.desyncs_total} :: {s.status}"
            )
        if self.monitor is not None:
            lines.append(self.monitor.describe())
        return "\n".join(lines)

    def stop(self) -> None:
        self.stopped = True

    def apply_command(self, message: Union[CommandMessage, str, dict]) -> Optional[str]:
        cmd = message if isinstance(message, CommandMessage) else parse_command(message)
        if cmd is None:
            return None
        name = cmd.command.lower()
        try:
            if name == "target":
                if not cmd.args:
                    logger.warning("[command] target: missing target name")
                    return None
                fraction = cmd.args[1] if len(cmd.args) > 1 else None
                state = self.register_target(str(cmd.args[0]), fraction)
                return f"{state.name}: {state.phase.value}"
            if name == "rescan":
                return ", ".join(self.rescan_fleet())
            if name == "servers":
                return self.fleet_report()
            if name == "status":
                report = self.status_report()
                logger.info("[status]\n%s", report)
                return report
            if name == "stop":
                self.stop()
                return "stopping"
        except (ValueError, TypeError) as e:
            logger.warning("[command] %s %s rejected: %s", cmd.command, cmd.args, e)
            return None
        logger.warning("[command] unknown command %r ignored", cmd.command)
        return None

    def apply_pending_commands(self) -> int:
        applied = 0
        for raw in self.commands.drain():
            self.apply_command(raw)
            applied += 1
        return applied

    # ---------- loop ----------
    def tick(self) -> float:
        """One pass over every target; returns how long (ms) the loop may sleep."""
        now = self.clock()
        self._sync_nodes()

        for state in [s for s in self.targets if s.phase is TargetPhase.DRAINED]:
            self.targets.remove(state)
            if self.log_ext is not None and self.get(state.name) is None:
                self.log_ext.release_target(state.name)

        if self.current() is None:
            for state in self.targets:
                if state.phase is TargetPhase.PENDING:
                    with target_context(state.name):
                        state.move(TargetPhase.ACTIVE)
                        state.status = "activated"
                    break

        self._route_completions(now)

        waits: List[float] = []
        for state in list(self.targets):
            with target_context(state.name):
                waits.append(self._handlers[state.phase](state, now))

        if self._last_report is None or now - self._last_report >= self.cfg.report_interval_ms:
            self._last_report = now
            if self.targets:
                logger.info("[status]\n%s", self.status_report(now))

        wait = min(waits) if waits else float(self.cfg.idle_wait_ms)
        return max(float(self.cfg.min_loop_sleep_ms), wait)

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        if not self.nodes:
            self.rescan_fleet()
        logger.info("[loop] started with %d node(s)", len(self.nodes))
        while not self.stopped and not (stop_event is not None and stop_event.is_set()):
            self.apply_pending_commands()
            if self.stopped:
                break
            wait_ms = self.tick()
            await wait_any([self.completions, self.commands], wait_ms / 1000.0)
        logger.info("[loop] stopped")

    # ---------- completion routing ----------
    def _route_completions(self, now: float) -> None:
        for raw in self.completions.drain():
            msg = parse_completion(raw)
            if msg is None:
                continue
            state = self.get(msg.target)
            if state is None:
                logger.debug("[message] no live target %s for %s", msg.target, msg.phase.value)
                continue
            with target_context(state.name):
                try:
                    self._on_completion(state, msg, now)
                except DesyncDetected as e:
                    self._recover_desync(state, e)

    def _on_completion(self, state: TargetState, msg: CompletionMessage, now: float) -> None:
        state.last_message_time = now
        if msg.batch <= state.committed_batch:
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("[message] %s: stale %s of batch %d", state.name, msg.phase.value, msg.batch)
            return

        if msg.phase is Phase.EXTRACT:
            if state.window_batch is not None and state.window_batch != msg.batch:
                raise DesyncDetected(
                    state.name, f"extract landed while window of batch {state.window_batch} is open", msg.batch
                )
            state.window_start = msg.finish_time
            state.window_batch = msg.batch
        elif msg.phase is Phase.STABILIZE_REPLENISH:
            if state.window_batch != msg.batch:
                raise DesyncDetected(
                    state.name,
                    "closing stabilize without an open window" if state.window_batch is None
                    else f"closing stabilize while window of batch {state.window_batch} is open",
                    msg.batch,
                )
            state.window_start = None
            state.window_batch = None
            state.next_start = msg.finish_time + self.cfg.job_spacer_ms
            state.committed_batch = msg.batch
            state.desync_count = 0

    def _recover_desync(self, state: TargetState, e: DesyncDetected) -> None:
        state.desync_count += 1
        state.desyncs_total += 1
        state.window_start = None
        state.window_batch = None
        state.next_start = None
        state.status = e.reason
        logger.warning("%s (%d/%d)", e, state.desync_count, self.cfg.desync_limit)

        if state.desync_count >= self.cfg.desync_limit:
            killed = self._kill_target_jobs(state.name)
            state.desync_count = 0
            state.resets += 1
            state.committed_batch = state.batch_count - 1
            state.metrics = None
            state.status = f"major desync: killed {killed} job(s)"
            logger.warning("[desync] %s: major desync, killed %d in-flight job(s)", state.name, killed)

    def _kill_target_jobs(self, name: str) -> int:
        self._sync_nodes()
        killed = 0
        for node in self.nodes:
            for job in self.fleet.roster(node):
                if job.args.target == name and self.fleet.kill(job.job_id):
                    killed += 1
        return killed

    # ---------- phase handlers ----------
    def _handle_pending(self, state: TargetState, now: float) -> float:
        return float(self.cfg.idle_wait_ms)

    def _handle_draining(self, state: TargetState, now: float) -> float:
        if state.prep is not None:
            cancel(self.fleet, alive(self.fleet, state.prep.handles))
            state.prep = None
        counts = self._usage().for_target(state.name)
        if counts is None or counts.jobs() == 0:
            state.move(TargetPhase.DRAINED)
            state.status = "drained"
            return float(self.cfg.idle_wait_ms)
        state.status = f"draining {counts.jobs()} job(s)"
        return float(self.cfg.idle_wait_ms)

    def _handle_drained(self, state: TargetState, now: float) -> float:
        return float(self.cfg.idle_wait_ms)

    def _handle_preparing(self, state: TargetState, now: float) -> float:
        prep = state.prep
        running = alive(self.fleet, prep.handles) if prep is not None else []
        if running and self.formulas.target(state.name).is_ready(self.cfg.ready_margin):
            cancel(self.fleet, running)
            logger.info("[prep] %s: ready early, cancelled %d job(s)", state.name, len(running))
            running = []
        if running:
            eta = prep.eta - now if prep is not None else self.cfg.loop_time_ms
            return min(float(self.cfg.idle_wait_ms), max(float(self.cfg.loop_time_ms), eta))
        state.prep = None
        state.move(TargetPhase.ACTIVE)
        state.status = "preparation finished"
        return float(self.cfg.loop_time_ms)

    def _handle_active(self, state: TargetState, now: float) -> float:
        if state.window_start is not None:
            if now - state.window_start > self.cfg.window_timeout_ms:
                self._recover_desync(
                    state, DesyncDetected(state.name, "pay window timed out", state.window_batch)
                )
            else:
                return float(self.cfg.loop_time_ms)

        if state.next_start is not None and now < state.next_start:
            return state.next_start - now

        if not self.formulas.target(state.name).is_ready(self.cfg.ready_margin):
            return self._start_preparation(state, now)
        return self._start_batch(state, now)

    # ---------- actions ----------
    def _start_preparation(self, state: TargetState, now: float) -> float:
        counts = self._usage().for_target(state.name)
        in_flight = counts.jobs(self.cfg.extract_unit) if counts else 0
        intensity = self.cfg.prep_intensity_escalation if in_flight > 0 else 1.0
        try:
            result = prepare(
                self.fleet,
                self.formulas,
                self._capacity(),
                state.name,
                spacer=self.cfg.job_spacer_ms,
                intensity=intensity,
                units=self._prep_units,
                margin=self.cfg.ready_margin,
                clock=lambda: now,
            )
        except PlanningInfeasible as e:
            state.status = f"preparation infeasible: {e}"
            logger.info("[prep] %s", state.status)
            return float(self.cfg.idle_wait_ms)
        except DispatchFailure as e:
            state.status = f"preparation dispatch failed ({e.reason})"
            logger.warning("[prep] %s: %s", state.name, e)
            return float(self.cfg.loop_time_ms)

        if result.strategy is PrepStrategy.ALREADY_READY:
            return float(self.cfg.loop_time_ms)
        state.prep = result
        state.next_start = None
        state.move(TargetPhase.PREPARING)
        state.status = f"preparing ({result.strategy.value}, intensity {intensity:g})"
        return max(float(self.cfg.loop_time_ms), min(float(self.cfg.idle_wait_ms), result.expected_duration))

    def _ensure_metrics(self, state: TargetState) -> BatchMetrics:
        skill = self.formulas.actor_skill()
        if state.metrics is None or state.metrics_skill != skill:
            state.metrics = compute_batch_metrics(
                self.formulas,
                state.name,
                state.fraction,
                self.cfg.stabilize_extract_factor,
                self.cfg.replenish_factor,
                self.cfg.job_spacer_ms,
            )
            if state.metrics_skill is not None and state.metrics_skill != skill:
                logger.info("[metrics] %s: skill %d -> %d, recomputed", state.name, state.metrics_skill, skill)
            state.metrics_skill = skill
        return state.metrics

    def _batch_demands(self, state: TargetState, metrics: BatchMetrics) -> List[CapacityDemand]:
        demands = []
        for phase, m in metrics.phases():
            unit = self._units[phase]
            demands.append(CapacityDemand(
                unit=unit,
                threads=m.threads,
                cost_per_thread=self.fleet.unit_cost(unit),
                args=UnitArgs(
                    target=state.name,
                    delay=m.delay,
                    token=self.cfg.completion_token,
                    batch=state.batch_count,
                    phase=phase.value,
                ),
            ))
        return demands

    def _start_batch(self, state: TargetState, now: float) -> float:
        try:
            metrics = self._ensure_metrics(state)
        except MetricsInfeasible as e:
            state.status = f"cannot size batch: {e}"
            logger.info("[batch] %s", state.status)
            return float(self.cfg.idle_wait_ms)

        try:
            placement = plan(self._capacity().nodes, self._batch_demands(state, metrics), COMPACT)
        except PlanningInfeasible as e:
            state.status = "batch does not fit"
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("[batch] %s: %s", state.name, e)
            return float(self.cfg.loop_time_ms)

        try:
            execute(self.fleet, placement)
        except DispatchFailure as e:
            state.status = f"batch dispatch failed ({e.reason})"
            logger.warning("[batch] %s: %s", state.name, e)
            return float(self.cfg.loop_time_ms)

        spacer = self.cfg.job_spacer_ms
        state.next_start = now + 4 * spacer
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "[batch] %s: dispatched #%d (%d threads, %.2f capacity)",
                state.name, state.batch_count, metrics.total_threads, placement.total_cost,
            )
        state.batch_count += 1
        state.status = f"batching ({state.batch_count} dispatched)"
        return 4.0 * spacer


_missing = [name for name in HANDLERS.values() if not callable(getattr(BatchOrchestrator, name, None))]
if _missing:
    raise RuntimeError(f"target phases without a handler: {_missing}")


__all__ = [
    "TargetPhase",
    "TRANSITIONS",
    "CURRENT_PHASES",
    "TargetState",
    "BatchOrchestrator",
]
