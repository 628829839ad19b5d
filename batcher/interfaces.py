"""
Boundary of the scheduler: the fleet it runs jobs on and the formulas that
describe the target. Everything behind these protocols is external; the
simulated world in `batcher.simulation` is the in-process implementation.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple


@dataclass(frozen=True)
class Node:
    name: str
    total: float
    used: float = 0.0

    @property
    def free(self) -> float:
        return max(0.0, self.total - self.used)


@dataclass(frozen=True)
class TargetResource:
    name: str
    available: float
    maximum: float
    instability: float
    min_instability: float

    def is_ready(self, margin: float = 0.01) -> bool:
        if self.maximum <= 0:
            return True
        if 1.0 - (self.available / self.maximum) > margin:
            return False
        if self.instability <= 0:
            return True
        if 1.0 - (self.min_instability / self.instability) > margin:
            return False
        return True

    @property
    def availability_defect(self) -> float:
        if self.maximum <= 0:
            return 0.0
        return max(0.0, 1.0 - self.available / self.maximum)

    @property
    def instability_defect(self) -> float:
        if self.instability <= 0:
            return 0.0
        return max(0.0, 1.0 - self.min_instability / self.instability)


@dataclass(frozen=True)
class UnitArgs:
    """
    Argument payload of an execution unit.

    Two jobs with equal UnitArgs on the same node are duplicates; the batch
    index and phase tag keep batch jobs distinct from each other.
    """
    target: str
    delay: float = 0.0
    token: Optional[int] = None
    batch: Optional[int] = None
    phase: Optional[str] = None

    def as_tuple(self) -> Tuple[Any, ...]:
        return (self.target, self.delay, self.token, self.batch, self.phase)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "delay": self.delay,
            "token": self.token,
            "batch": self.batch,
            "phase": self.phase,
        }


@dataclass(frozen=True)
class RunningJob:
    job_id: int
    node: str
    unit: str
    threads: int
    args: UnitArgs


class Fleet(Protocol):
    """Capacity source plus job control."""

    def discover(self) -> List[str]:
        """Names of every node the scheduler may use (home included)."""
        ...

    def node(self, name: str) -> Node:
        ...

    def unit_cost(self, unit: str) -> float:
        """Capacity one thread of `unit` consumes."""
        ...

    def has_unit(self, node: str, unit: str) -> bool:
        ...

    def copy_unit(self, node: str, unit: str) -> bool:
        ...

    def start(self, node: str, unit: str, threads: int, args: UnitArgs) -> int:
        """Start a job; returns a job id, or 0 when the node refused it."""
        ...

    def kill(self, job_id: int) -> bool:
        ...

    def is_running(self, job_id: int) -> bool:
        ...

    def roster(self, node: str) -> Sequence[RunningJob]:
        ...


class Formulas(Protocol):
    """Intrinsic functions of the target and the actor's skill."""

    def target(self, name: str) -> TargetResource:
        ...

    def actor_skill(self) -> int:
        ...

    def extract_threads(self, target: str, amount: float) -> float:
        """Threads needed to extract `amount`; negative when impossible."""
        ...

    def extract_instability(self, threads: int) -> float:
        ...

    def stabilize_power(self, threads: int = 1) -> float:
        ...

    def regrowth_threads(self, target: str, multiplier: float) -> float:
        ...

    def replenish_instability(self, threads: int) -> float:
        ...

    def extract_time(self, target: str) -> float:
        ...

    def replenish_time(self, target: str) -> float:
        ...

    def stabilize_time(self, target: str) -> float:
        ...
