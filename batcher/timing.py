from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, Tuple

from .errors import MetricsInfeasible
from .interfaces import Formulas

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


class Phase(str, Enum):
    """The four phases of a batch, in completion order."""

    EXTRACT = "extract"
    STABILIZE_EXTRACT = "stabilize_extract"
    REPLENISH = "replenish"
    STABILIZE_REPLENISH = "stabilize_replenish"


PHASE_ORDER: Tuple[Phase, ...] = (
    Phase.EXTRACT,
    Phase.STABILIZE_EXTRACT,
    Phase.REPLENISH,
    Phase.STABILIZE_REPLENISH,
)


@dataclass(frozen=True)
class PhaseMetrics:
    threads: int
    duration: float   # ms the phase runs once started
    delay: float      # ms to wait before starting

    @property
    def finish_offset(self) -> float:
        return self.delay + self.duration


@dataclass(frozen=True)
class BatchMetrics:
    extract: PhaseMetrics
    stabilize_extract: PhaseMetrics
    replenish: PhaseMetrics
    stabilize_replenish: PhaseMetrics
    extract_amount: float
    spacer: float

    def phases(self) -> Iterator[Tuple[Phase, PhaseMetrics]]:
        yield Phase.EXTRACT, self.extract
        yield Phase.STABILIZE_EXTRACT, self.stabilize_extract
        yield Phase.REPLENISH, self.replenish
        yield Phase.STABILIZE_REPLENISH, self.stabilize_replenish

    def get(self, phase: Phase) -> PhaseMetrics:
        return dict(self.phases())[phase]

    @property
    def total_threads(self) -> int:
        return sum(m.threads for _, m in self.phases())

    @property
    def span(self) -> float:
        """Time from dispatch until the last phase completes."""
        return max(m.finish_offset for _, m in self.phases())

    def cost(self, unit_costs: Dict[Phase, float]) -> float:
        return sum(m.threads * unit_costs[p] for p, m in self.phases())


def compute_batch_metrics(
    formulas: Formulas,
    target: str,
    fraction: float,
    stabilize_extract_factor: float,
    replenish_factor: float,
    spacer: float,
) -> BatchMetrics:
    """
    Threads and delays for one batch against a ready target so that the four
    phases complete in PHASE_ORDER exactly `spacer` ms apart. The post-extract
    stabilize is the longest phase and anchors the timing with no delay.
    """
    t = formulas.target(target)
    extract_amount = math.floor(t.maximum * fraction)
    extract_threads = math.ceil(formulas.extract_threads(target, extract_amount))

    if extract_threads <= 0:
        logger.info("[metrics] %s: cannot size extract (threads=%d); target needs preparation", target, extract_threads)
        raise MetricsInfeasible(f"{target}: extract thread count {extract_threads} <= 0; target not ready")

    power = formulas.stabilize_power(1)
    extract_time = math.ceil(formulas.extract_time(target))
    stabilize_time = math.ceil(formulas.stabilize_time(target))
    replenish_time = math.ceil(formulas.replenish_time(target))

    stabilize_extract_threads = math.ceil(
        formulas.extract_instability(extract_threads) / power * stabilize_extract_factor
    )
    remaining = t.maximum - extract_amount
    multiplier = t.maximum / remaining if remaining > 0 else float("inf")
    if math.isinf(multiplier):
        raise MetricsInfeasible(f"{target}: extraction fraction {fraction} leaves nothing to regrow from")
    replenish_threads = math.ceil(formulas.regrowth_threads(target, multiplier) * replenish_factor)
    stabilize_replenish_threads = math.ceil(formulas.replenish_instability(replenish_threads) / power)

    extract_delay = stabilize_time - spacer - extract_time
    replenish_delay = stabilize_time + spacer - replenish_time
    if extract_delay < 0 or replenish_delay < 0:
        raise MetricsInfeasible(
            f"{target}: stabilize ({stabilize_time}ms) does not outlast extract ({extract_time}ms) "
            f"and replenish ({replenish_time}ms) by the spacer"
        )

    metrics = BatchMetrics(
        extract=PhaseMetrics(extract_threads, extract_time, extract_delay),
        stabilize_extract=PhaseMetrics(stabilize_extract_threads, stabilize_time, 0),
        replenish=PhaseMetrics(replenish_threads, replenish_time, replenish_delay),
        stabilize_replenish=PhaseMetrics(stabilize_replenish_threads, stabilize_time, spacer * 2),
        extract_amount=extract_amount,
        spacer=spacer,
    )

    if logger.isEnabledFor(logging.DEBUG):
        for phase, m in metrics.phases():
            logger.debug(
                "[metrics] %s %-20s threads=%-6d delay=%-8.0f duration=%.0f",
                target, phase.value, m.threads, m.delay, m.duration,
            )
    return metrics


__all__ = ["Phase", "PHASE_ORDER", "PhaseMetrics", "BatchMetrics", "compute_batch_metrics"]
