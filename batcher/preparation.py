from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Tuple

from .capacity import CapacityModel
from .errors import DispatchFailure, PlanningInfeasible
from .executor import JobHandle, execute
from .interfaces import Fleet, Formulas, TargetResource, UnitArgs
from .planner import COMPACT, SPREAD, CapacityDemand, Placement, PlacementPolicy, plan
from .utils import now_ms

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


class PrepStrategy(str, Enum):
    ALREADY_READY = "already_ready"
    COMPACT = "compact"
    COMPACT_RESERVE = "compact_reserve"
    SPREAD = "spread"
    SEQUENTIAL = "sequential"
    BRUTE_STABILIZE = "brute_stabilize"
    BRUTE_REPLENISH = "brute_replenish"


# Strategies whose jobs, once finished, leave the target ready.
COMPLETE_STRATEGIES = frozenset(
    {PrepStrategy.ALREADY_READY, PrepStrategy.COMPACT, PrepStrategy.COMPACT_RESERVE, PrepStrategy.SPREAD}
)


@dataclass(frozen=True)
class PrepUnits:
    """Execution unit names used by preparation."""
    replenish: str = "replenish"
    stabilize: str = "stabilize"


@dataclass
class PreparationResult:
    strategy: PrepStrategy
    handles: List[JobHandle] = field(default_factory=list)
    complete: bool = True
    started_at: float = 0.0
    expected_duration: float = 0.0
    placement: Optional[Placement] = None

    @property
    def eta(self) -> float:
        return self.started_at + self.expected_duration


def is_ready(target: TargetResource, margin: float = 0.01) -> bool:
    return target.is_ready(margin)


# -----------------------------
# Thread sizing
# -----------------------------
def _scaled(base: float, intensity: float) -> int:
    return max(1, int(math.ceil(max(1, math.ceil(base)) * intensity)))


def _prep_demands(
    fleet: Fleet,
    formulas: Formulas,
    t: TargetResource,
    *,
    spacer: float,
    intensity: float,
    units: PrepUnits,
) -> Tuple[CapacityDemand, CapacityDemand, CapacityDemand, float]:
    """The stabilize / replenish / stabilize-after-replenish triple plus the stabilize duration."""
    power = formulas.stabilize_power(1)
    stabilize_threads = _scaled((t.instability - t.min_instability) / power, intensity)
    replenish_threads = _scaled(formulas.regrowth_threads(t.name, t.maximum / max(1.0, t.available)), intensity)
    post_threads = _scaled(formulas.replenish_instability(replenish_threads) / power, intensity)

    stabilize_time = math.ceil(formulas.stabilize_time(t.name))
    replenish_time = math.ceil(formulas.replenish_time(t.name))
    replenish_delay = max(0.0, stabilize_time + spacer - replenish_time)

    stabilize_cost = fleet.unit_cost(units.stabilize)
    replenish_cost = fleet.unit_cost(units.replenish)
    return (
        CapacityDemand(units.stabilize, stabilize_threads, stabilize_cost,
                       UnitArgs(t.name, 0.0, phase="prep_stabilize")),
        CapacityDemand(units.replenish, replenish_threads, replenish_cost,
                       UnitArgs(t.name, replenish_delay, phase="prep_replenish")),
        CapacityDemand(units.stabilize, post_threads, stabilize_cost,
                       UnitArgs(t.name, spacer * 2, phase="prep_stabilize_replenish")),
        stabilize_time,
    )


def _brute_demand(
    fleet: Fleet, formulas: Formulas, model: CapacityModel, t: TargetResource, units: PrepUnits
) -> Tuple[PrepStrategy, Optional[CapacityDemand]]:
    if t.instability_defect >= t.availability_defect:
        strategy, unit, phase = PrepStrategy.BRUTE_STABILIZE, units.stabilize, "prep_stabilize"
    else:
        strategy, unit, phase = PrepStrategy.BRUTE_REPLENISH, units.replenish, "prep_replenish"
    cost = fleet.unit_cost(unit)
    threads = sum(int(math.floor(n.free / cost + 1e-9)) for n in model.nodes) if cost > 0 else 0
    if threads <= 0:
        return strategy, None
    return strategy, CapacityDemand(unit, threads, cost, UnitArgs(t.name, 0.0, phase=phase))


# -----------------------------
# Ladder
# -----------------------------
def prepare(
    fleet: Fleet,
    formulas: Formulas,
    model: CapacityModel,
    target: str,
    *,
    spacer: float,
    intensity: float = 1.0,
    units: PrepUnits = PrepUnits(),
    margin: float = 0.01,
    clock: Callable[[], float] = now_ms,
) -> PreparationResult:
    """
    Dispatch jobs that move `target` toward the ready state, trying the
    strategies from cheapest to most degraded; the first feasible one wins.

    Raises PlanningInfeasible when not even one thread fits anywhere, and
    DispatchFailure when the chosen plan fails to start. The result never
    claims the target is ready: callers re-check once the jobs are done.
    """
    t = formulas.target(target)
    started_at = clock()
    if is_ready(t, margin):
        return PreparationResult(PrepStrategy.ALREADY_READY, started_at=started_at)

    stabilize, replenish, post, stabilize_time = _prep_demands(
        fleet, formulas, t, spacer=spacer, intensity=intensity, units=units
    )
    expected = stabilize_time + 2 * spacer
    triple = [stabilize, replenish, post]
    without_home = model.without(model.home) if model.home else model

    ladder: List[Tuple[PrepStrategy, CapacityModel, List[CapacityDemand], PlacementPolicy, bool]] = [
        (PrepStrategy.COMPACT, without_home, triple, COMPACT, True),
        (PrepStrategy.COMPACT_RESERVE, model, triple, COMPACT, True),
        (PrepStrategy.SPREAD, model, triple, SPREAD, True),
    ]
    first = stabilize if t.instability_defect > margin else replenish
    ladder.append((PrepStrategy.SEQUENTIAL, model, [first], SPREAD, False))

    for strategy, pool, demands, policy, complete in ladder:
        if strategy is PrepStrategy.COMPACT and model.home is None:
            continue
        try:
            placement = plan(pool.nodes, demands, policy)
        except PlanningInfeasible:
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("[prep] %s: %s infeasible", target, strategy.value)
            continue
        return _dispatch(fleet, target, strategy, placement, complete, started_at, expected)

    strategy, demand = _brute_demand(fleet, formulas, model, t, units)
    if demand is None:
        raise PlanningInfeasible(f"{target}: no free capacity anywhere for preparation")
    placement = plan(model.nodes, [demand], SPREAD)
    return _dispatch(fleet, target, strategy, placement, False, started_at, expected)


def _dispatch(
    fleet: Fleet,
    target: str,
    strategy: PrepStrategy,
    placement: Placement,
    complete: bool,
    started_at: float,
    expected: float,
) -> PreparationResult:
    try:
        handles = execute(fleet, placement)
    except DispatchFailure:
        logger.warning("[prep] %s: dispatch of %s plan failed", target, strategy.value)
        raise
    logger.info(
        "[prep] %s: %s dispatched %d job(s), %.2f capacity, expected %.0fms",
        target, strategy.value, len(handles), placement.total_cost, expected,
    )
    return PreparationResult(
        strategy=strategy,
        handles=handles,
        complete=complete,
        started_at=started_at,
        expected_duration=expected,
        placement=placement,
    )


__all__ = [
    "PrepStrategy",
    "COMPLETE_STRATEGIES",
    "PrepUnits",
    "PreparationResult",
    "is_ready",
    "prepare",
]
