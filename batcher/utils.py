from __future__ import annotations

import math
import os
import time
from typing import Optional, Tuple

# ========== Env helpers ==========

def getenv_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return v if v is not None and v.strip() else default

def getenv_int(name: str, default: int, min_val: Optional[int] = None, max_val: Optional[int] = None) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        val = int(raw)
    except ValueError:
        return default
    if min_val is not None:
        val = max(min_val, val)
    if max_val is not None:
        val = min(max_val, val)
    return val

def getenv_float(name: str, default: float, min_val: Optional[float] = None, max_val: Optional[float] = None) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        val = float(raw)
    except ValueError:
        return default
    if min_val is not None:
        val = max(min_val, val)
    if max_val is not None:
        val = min(max_val, val)
    return val

def getenv_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


# parse CSV-ish envs into tuples (trim blanks)
def getenv_csv(name: str, default_csv: str) -> Tuple[str, ...]:
    raw = getenv_str(name, default_csv)
    parts = [x.strip() for x in raw.split(",")]
    return tuple(p for p in parts if p)


def parse_tiers(items: Tuple[str, ...]) -> Tuple[Tuple[float, float], ...]:
    """
    Parse "min_total:reserve" pairs into a tuple sorted by min_total.
    Malformed pairs are skipped.
    """
    out = []
    for item in items:
        left, sep, right = item.partition(":")
        if not sep:
            continue
        try:
            out.append((float(left), float(right)))
        except ValueError:
            continue
    return tuple(sorted(out))


# ========== Clock & formatting ==========

def now_ms() -> float:
    """Monotonic clock in milliseconds; every timestamp in the control loop uses this scale."""
    return time.monotonic() * 1000.0


def format_duration(ms: Optional[float]) -> str:
    if ms is None or math.isnan(ms):
        return "?"
    ms = max(0.0, float(ms))
    if ms < 1000:
        return f"{int(ms)}ms"
    secs = ms / 1000.0
    if secs < 60:
        return f"{secs:.1f}s"
    mins, secs = divmod(int(secs), 60)
    if mins < 60:
        return f"{mins}m{secs:02d}s"
    hours, mins = divmod(mins, 60)
    return f"{hours}h{mins:02d}m"


def format_capacity(units: float) -> str:
    """Render a capacity figure in GB-style units (1024 -> 1.00TB)."""
    units = float(units)
    for suffix in ("GB", "TB", "PB"):
        if abs(units) < 1024 or suffix == "PB":
            return f"{units:.2f}{suffix}"
        units /= 1024.0
    return f"{units:.2f}PB"


def format_percent(frac: float) -> str:
    return f"{frac * 100:.2f}%"
