from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import PlanningInfeasible
from .interfaces import Node, UnitArgs

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

# Float capacities (e.g. 1.75 per thread) accumulate rounding noise.
_EPS = 1e-9


# -----------------------------
# Demands & placements
# -----------------------------
@dataclass(frozen=True)
class CapacityDemand:
    unit: str
    threads: int
    cost_per_thread: float
    args: UnitArgs

    @property
    def total_cost(self) -> float:
        return self.threads * self.cost_per_thread


@dataclass(frozen=True)
class PlacementStep:
    demand: CapacityDemand
    node: str
    threads: int

    @property
    def cost(self) -> float:
        return self.threads * self.demand.cost_per_thread


@dataclass(frozen=True)
class Placement:
    steps: Tuple[PlacementStep, ...]
    policy: str = "compact"

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self):
        return iter(self.steps)

    def by_demand(self) -> List[Tuple[CapacityDemand, List[Tuple[str, int]]]]:
        out: List[Tuple[CapacityDemand, List[Tuple[str, int]]]] = []
        for step in self.steps:
            if out and out[-1][0] is step.demand:
                out[-1][1].append((step.node, step.threads))
            else:
                out.append((step.demand, [(step.node, step.threads)]))
        return out

    def by_node(self) -> Dict[str, float]:
        used: Dict[str, float] = {}
        for step in self.steps:
            used[step.node] = used.get(step.node, 0.0) + step.cost
        return used

    @property
    def total_cost(self) -> float:
        return sum(s.cost for s in self.steps)

    def describe(self) -> str:
        lines = []
        for i, step in enumerate(self.steps):
            a = step.demand.args
            lines.append(
                f"  #{i:<3d} {step.demand.unit:<12s} x{step.threads:<6d} on {step.node:<18s} "
                f"cost={step.cost:.2f} target={a.target} delay={a.delay:.0f} "
                f"batch={a.batch if a.batch is not None else '-'} phase={a.phase or '-'}"
            )
        return "\n".join(lines)


# -----------------------------
# Policies
# -----------------------------
class PlacementPolicy:
    """Decides node order and how much of a demand each node takes."""

    name = "base"

    def order(self, nodes: Sequence[Node], free: Dict[str, float]) -> List[Node]:
        raise NotImplementedError

    def take(self, demand: CapacityDemand, node: Node, free: float, remaining: int) -> int:
        """Threads `node` takes from the `remaining` threads of `demand` (0 = skip)."""
        raise NotImplementedError


class CompactPolicy(PlacementPolicy):
    """
    Each demand lands whole on one node. Largest nodes first so big jobs do
    not fragment the small ones.
    """

    name = "compact"

    def order(self, nodes: Sequence[Node], free: Dict[str, float]) -> List[Node]:
        return sorted(nodes, key=lambda n: (-n.total, n.name))

    def take(self, demand: CapacityDemand, node: Node, free: float, remaining: int) -> int:
        if free + _EPS >= remaining * demand.cost_per_thread:
            return remaining
        return 0


class SpreadPolicy(PlacementPolicy):
    """
    A demand may be split across nodes. Smallest free pools first so the
    fragments get used before the large pools.
    """

    name = "spread"

    def order(self, nodes: Sequence[Node], free: Dict[str, float]) -> List[Node]:
        return sorted(nodes, key=lambda n: (free[n.name], n.name))

    def take(self, demand: CapacityDemand, node: Node, free: float, remaining: int) -> int:
        if demand.cost_per_thread <= 0:
            return remaining
        fit = int(math.floor(free / demand.cost_per_thread + _EPS))
        return max(0, min(remaining, fit))


COMPACT = CompactPolicy()
SPREAD = SpreadPolicy()


# -----------------------------
# Planning
# -----------------------------
def plan(nodes: Sequence[Node], demands: Sequence[CapacityDemand], policy: PlacementPolicy = COMPACT) -> Placement:
    """
    Place every demand on the nodes or raise PlanningInfeasible.

    Demands go largest total cost first. The snapshot is never mutated; the
    working free figures are a local copy.
    """
    free: Dict[str, float] = {n.name: n.free for n in nodes}
    ordered_demands = sorted(demands, key=lambda d: -d.total_cost)
    steps: List[PlacementStep] = []

    for demand in ordered_demands:
        if demand.threads <= 0:
            continue
        remaining = demand.threads
        for node in policy.order(nodes, free):
            if remaining <= 0:
                break
            taken = policy.take(demand, node, free[node.name], remaining)
            if taken <= 0:
                continue
            free[node.name] -= taken * demand.cost_per_thread
            steps.append(PlacementStep(demand=demand, node=node.name, threads=taken))
            remaining -= taken
        if remaining > 0:
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(
                    "[plan] %s infeasible: %s x%d (%.2f each) left %d unplaced; fleet free=%.2f",
                    policy.name, demand.unit, demand.threads, demand.cost_per_thread,
                    remaining, sum(free.values()),
                )
            raise PlanningInfeasible(
                f"{policy.name}: cannot place {demand.unit} x{demand.threads} "
                f"(cost {demand.total_cost:.2f}) for {demand.args.target}; {remaining} threads unplaced"
            )

    return Placement(steps=tuple(steps), policy=policy.name)


def try_plan(
    nodes: Sequence[Node], demands: Sequence[CapacityDemand], policy: PlacementPolicy = COMPACT
) -> Optional[Placement]:
    try:
        return plan(nodes, demands, policy)
    except PlanningInfeasible:
        return None


__all__ = [
    "CapacityDemand",
    "PlacementStep",
    "Placement",
    "PlacementPolicy",
    "CompactPolicy",
    "SpreadPolicy",
    "COMPACT",
    "SPREAD",
    "plan",
    "try_plan",
]
