from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Tuple
from .utils import getenv_bool, getenv_int, getenv_str, getenv_float, getenv_csv, parse_tiers

# ---------- Project Paths ----------
PROJECT_ROOT: Path = Path(__file__).resolve().parents[1]
LOG_DIR: Path = PROJECT_ROOT / "logs"


# ---------- Config dataclass ----------
@dataclass(frozen=True)
class Config:
    # Loop pacing (milliseconds)
    loop_time_ms: int                   # wait hint while something is in progress
    min_loop_sleep_ms: int              # floor on every loop sleep
    idle_wait_ms: int                   # wait hint for pending / draining targets
    report_interval_ms: int             # status report cadence

    # Batch timing
    job_spacer_ms: int                  # D: gap between consecutive phase completions
    stabilize_extract_factor: float     # safety factor on the post-extract stabilize threads
    replenish_factor: float             # safety factor on the replenish threads
    ready_margin: float                 # tolerance of the "ready" predicate
    default_fraction: float             # extraction fraction when a target command omits one

    # Drift / desync handling
    window_timeout_ms: int              # a pay window open longer than this is a desync
    prep_intensity_escalation: float    # prep thread multiplier while batches are still in flight
    desync_limit: int                   # consecutive desyncs before the target is reset

    # Fleet
    home_node: str
    include_home: bool
    home_reserve_tiers: Tuple[Tuple[float, float], ...]   # (min_total, reserve), sorted

    # Execution units
    extract_unit: str
    replenish_unit: str
    stabilize_unit: str
    completion_token: int               # routing token passed to units that report completion

    # Paths
    project_root: Path
    log_dir: Path
    log_file: Path


# ---------- Loader ----------
def load_config() -> Config:

    cfg = Config(
        loop_time_ms=getenv_int("BATCHER_LOOP_TIME_MS", 5, 1, 1000),
        min_loop_sleep_ms=getenv_int("BATCHER_MIN_LOOP_SLEEP_MS", 10, 1, 1000),
        idle_wait_ms=getenv_int("BATCHER_IDLE_WAIT_MS", 1000, 10, 60_000),
        report_interval_ms=getenv_int("BATCHER_REPORT_INTERVAL_MS", 1000, 100, 600_000),

        job_spacer_ms=getenv_int("BATCHER_JOB_SPACER_MS", 20, 1, 10_000),
        stabilize_extract_factor=getenv_float("BATCHER_STABILIZE_EXTRACT_FACTOR", 1.3, 1.0, 10.0),
        replenish_factor=getenv_float("BATCHER_REPLENISH_FACTOR", 1.3, 1.0, 10.0),
        ready_margin=getenv_float("BATCHER_READY_MARGIN", 0.01, 0.0, 0.5),
        default_fraction=getenv_float("BATCHER_DEFAULT_FRACTION", 0.1, 0.001, 0.95),

        window_timeout_ms=getenv_int("BATCHER_WINDOW_TIMEOUT_MS", 1000, 10, 600_000),
        prep_intensity_escalation=getenv_float("BATCHER_PREP_INTENSITY_ESCALATION", 5.0, 1.0, 100.0),
        desync_limit=getenv_int("BATCHER_DESYNC_LIMIT", 5, 1, 10_000),

        home_node=getenv_str("BATCHER_HOME_NODE", "home"),
        include_home=getenv_bool("BATCHER_INCLUDE_HOME", True),
        home_reserve_tiers=parse_tiers(
            getenv_csv("BATCHER_HOME_RESERVE_TIERS", "32:4,128:16,1024:64,8192:256")
        ),

        extract_unit=getenv_str("BATCHER_EXTRACT_UNIT", "extract"),
        replenish_unit=getenv_str("BATCHER_REPLENISH_UNIT", "replenish"),
        stabilize_unit=getenv_str("BATCHER_STABILIZE_UNIT", "stabilize"),
        completion_token=getenv_int("BATCHER_COMPLETION_TOKEN", 5, 1, 1_000_000),

        project_root=PROJECT_ROOT,
        log_dir=Path(getenv_str("BATCHER_LOG_DIR", str(LOG_DIR))),
        log_file=Path(getenv_str("BATCHER_LOG_DIR", str(LOG_DIR))) / "batcher.log",
    )
    return cfg
