from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .interfaces import Fleet, Node

# --------------------------------------------------------------------
# Module logger
# --------------------------------------------------------------------
logger = logging.getLogger(__name__)
if not logger.handlers:
    logger.addHandler(logging.NullHandler())


# -----------------------------
# Reserve tiers
# -----------------------------
def reserve_for(total: float, tiers: Sequence[Tuple[float, float]]) -> float:
    """
    Headroom kept free on the home node: the reserve of the largest tier whose
    min_total does not exceed the node's total capacity (0 below every tier).
    """
    reserve = 0.0
    for min_total, amount in sorted(tiers):
        if total >= min_total:
            reserve = amount
    return max(0.0, min(reserve, total))


# -----------------------------
# Snapshot
# -----------------------------
@dataclass(frozen=True)
class CapacityModel:
    """
    Fleet capacity as seen at one instant. Rebuilt for every planning call;
    the home node already carries its reserve as used capacity.
    """
    nodes: Tuple[Node, ...]
    home: Optional[str] = None
    reserved: float = 0.0

    @classmethod
    def from_fleet(
        cls,
        fleet: Fleet,
        names: Iterable[str],
        *,
        home: Optional[str] = None,
        tiers: Sequence[Tuple[float, float]] = (),
    ) -> "CapacityModel":
        nodes: List[Node] = []
        reserved = 0.0
        for name in names:
            node = fleet.node(name)
            if node.total <= 0:
                continue
            if home is not None and name == home:
                held = min(node.total, node.used + reserve_for(node.total, tiers))
                reserved = max(0.0, held - node.used)
                node = replace(node, used=held)
            nodes.append(node)
        model = cls(nodes=tuple(nodes), home=home, reserved=reserved)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "[capacity] snapshot: nodes=%d total=%.2f free=%.2f home_reserve=%.2f",
                len(model.nodes), model.total, model.free, reserved,
            )
        return model

    @property
    def total(self) -> float:
        return sum(n.total for n in self.nodes)

    @property
    def used(self) -> float:
        return sum(n.used for n in self.nodes) - self.reserved

    @property
    def free(self) -> float:
        return sum(n.free for n in self.nodes)

    def without(self, name: str) -> "CapacityModel":
        return CapacityModel(
            nodes=tuple(n for n in self.nodes if n.name != name),
            home=None if self.home == name else self.home,
            reserved=0.0 if self.home == name else self.reserved,
        )

    def names(self) -> List[str]:
        return [n.name for n in self.nodes]


# -----------------------------
# In-flight job accounting
# -----------------------------
@dataclass
class UnitCount:
    jobs: int = 0
    threads: int = 0


@dataclass
class InflightCounts:
    """Running jobs of one target, per execution unit."""
    target: str
    units: Dict[str, UnitCount] = field(default_factory=dict)

    def add(self, unit: str, threads: int) -> None:
        c = self.units.setdefault(unit, UnitCount())
        c.jobs += 1
        c.threads += threads

    def jobs(self, unit: Optional[str] = None) -> int:
        if unit is None:
            return sum(c.jobs for c in self.units.values())
        c = self.units.get(unit)
        return c.jobs if c else 0


@dataclass
class FleetUsage:
    total: float
    used: float
    counts: Dict[str, InflightCounts]

    def for_target(self, target: str) -> Optional[InflightCounts]:
        return self.counts.get(target)


def count_inflight(fleet: Fleet, names: Iterable[str], units: Iterable[str]) -> FleetUsage:
    """
    Walk every node's roster and count running jobs of the given units per
    target, plus fleet-wide total/used capacity.
    """
    wanted = set(units)
    counts: Dict[str, InflightCounts] = {}
    total = 0.0
    used = 0.0
    for name in names:
        node = fleet.node(name)
        total += node.total
        used += node.used
        for job in fleet.roster(name):
            if job.unit not in wanted:
                continue
            counts.setdefault(job.args.target, InflightCounts(job.args.target)).add(job.unit, job.threads)
    return FleetUsage(total=total, used=used, counts=counts)


__all__ = [
    "reserve_for",
    "CapacityModel",
    "UnitCount",
    "InflightCounts",
    "FleetUsage",
    "count_inflight",
]
