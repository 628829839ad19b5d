from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import psutil  # type: ignore

logger = logging.getLogger(__name__)
if not logger.handlers:
    logger.addHandler(logging.NullHandler())


@dataclass
class ResourceSample:
    ts: float
    cpu_process: float
    rss_bytes: float
    mem_system_percent: float
    mem_system_available_bytes: float


class ResourceMonitor:
    """
    Samples the controller process and the host on demand.

    The control loop calls `sample()` when it prints its status report, so
    there is no background thread. Running averages and peaks are kept for
    the summary written at shutdown.
    """

    def __init__(self, output_path: Optional[Path] = None) -> None:
        self.output_path = output_path
        self._process: Optional[Any] = None
        self._start_ts_iso: Optional[str] = None
        self._start_monotonic: Optional[float] = None

        self._sample_count = 0
        self._sample_errors = 0
        self._cpu_process_avg = 0.0
        self._cpu_process_peak = 0.0
        self._rss_avg = 0.0
        self._rss_peak = 0.0
        self._mem_system_percent_avg = 0.0
        self._mem_system_percent_peak = 0.0
        self.last: Optional[ResourceSample] = None

    def start(self) -> None:
        if self._process is not None:
            return
        self._start_ts_iso = datetime.now(timezone.utc).isoformat()
        self._start_monotonic = time.monotonic()
        try:
            self._process = psutil.Process(os.getpid())
            # first cpu_percent() call always reports 0.0
            self._process.cpu_percent(interval=None)
        except psutil.Error as e:
            logger.warning("[ResourceMonitor] failed to initialize psutil Process: %s", e)
            self._process = None

    def sample(self) -> Optional[ResourceSample]:
        if self._process is None:
            self.start()
        if self._process is None:
            return None
        try:
            cpu = float(self._process.cpu_percent(interval=None))
            rss = float(self._process.memory_info().rss)
            vm = psutil.virtual_memory()
        except psutil.Error as e:
            self._sample_errors += 1
            logger.debug("[ResourceMonitor] sampling error: %s", e, exc_info=True)
            return None

        self._sample_count += 1
        n = self._sample_count
        self._cpu_process_avg += (cpu - self._cpu_process_avg) / n
        self._cpu_process_peak = max(self._cpu_process_peak, cpu)
        self._rss_avg += (rss - self._rss_avg) / n
        self._rss_peak = max(self._rss_peak, rss)
        self._mem_system_percent_avg += (float(vm.percent) - self._mem_system_percent_avg) / n
        self._mem_system_percent_peak = max(self._mem_system_percent_peak, float(vm.percent))

        self.last = ResourceSample(
            ts=time.time(),
            cpu_process=cpu,
            rss_bytes=rss,
            mem_system_percent=float(vm.percent),
            mem_system_available_bytes=float(vm.available),
        )
        return self.last

    def describe(self) -> str:
        s = self.sample()
        if s is None:
            return "controller: n/a"
        return (
            f"controller: rss={s.rss_bytes / 1024 / 1024:.1f}MB cpu={s.cpu_process:.1f}% "
            f"host_mem={s.mem_system_percent:.1f}% avail={s.mem_system_available_bytes / 1024 / 1024:.0f}MB"
        )

    def summary(self) -> Dict[str, Any]:
        elapsed = None
        if self._start_monotonic is not None:
            elapsed = time.monotonic() - self._start_monotonic
        return {
            "started_at": self._start_ts_iso,
            "elapsed_sec": elapsed,
            "samples": self._sample_count,
            "sample_errors": self._sample_errors,
            "cpu_process": {"avg": self._cpu_process_avg, "peak": self._cpu_process_peak},
            "rss_bytes": {"avg": self._rss_avg, "peak": self._rss_peak},
            "mem_system_percent": {"avg": self._mem_system_percent_avg, "peak": self._mem_system_percent_peak},
            "last": asdict(self.last) if self.last else None,
        }

    def stop(self) -> None:
        if self.output_path is None:
            return
        try:
            self.output_path.parent.mkdir(parents=True, exist_ok=True)
            self.output_path.write_text(json.dumps(self.summary(), indent=2), encoding="utf-8")
        except OSError:
            logger.exception("[ResourceMonitor] failed to write summary JSON")
        logger.info("[ResourceMonitor] stopped (samples=%d, errors=%d)", self._sample_count, self._sample_errors)


__all__ = ["ResourceSample", "ResourceMonitor"]
