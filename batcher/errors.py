from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional


class BatcherError(RuntimeError):
    """Base class for every failure the control loop knows how to recover from."""


class PlanningInfeasible(BatcherError):
    """Not enough aggregate or per-node capacity to place the demands."""


class MetricsInfeasible(BatcherError):
    """Batch metrics cannot be computed, usually because the target is not ready."""


@dataclass(frozen=True)
class Shortfall:
    node: str
    unit: str
    required: float
    available: float

    @property
    def missing(self) -> float:
        return max(0.0, self.required - self.available)


class DispatchFailure(BatcherError):
    """
    A node accepted a plan but rejected the actual start.

    Every handle started by the failing call has already been cancelled when
    this is raised. `shortfalls` lists, for the failing step and every step
    after it, the capacity needed against what the node had free once the
    rollback was done. `plan_dump` is the full attempted plan.
    """

    def __init__(
        self,
        message: str,
        *,
        reason: str = "start",
        shortfalls: Optional[List[Shortfall]] = None,
        plan_dump: str = "",
    ) -> None:
        self.reason = reason
        self.shortfalls: List[Shortfall] = list(shortfalls or [])
        self.plan_dump = plan_dump
        super().__init__(message)

    def __str__(self) -> str:
        base = super().__str__()
        lines = [base]
        short = [s for s in self.shortfalls if s.missing > 0]
        if short:
            lines.append("shortfall:")
            for s in short:
                lines.append(
                    f"  {s.node}: {s.unit} needs {s.required:.2f}, has {s.available:.2f} (missing {s.missing:.2f})"
                )
        if self.plan_dump:
            lines.append("plan:")
            lines.append(self.plan_dump)
        return "\n".join(lines)


class InvalidTransition(BatcherError):
    """A target was asked to move to a phase its current phase cannot reach."""


class DesyncDetected(BatcherError):
    """Completion signals disagree with the expected phase order of a target."""

    def __init__(self, target: str, reason: str, batch: Optional[int] = None) -> None:
        self.target = target
        self.reason = reason
        self.batch = batch
        super().__init__(f"[{target}] desync: {reason}" + ("" if batch is None else f" (batch {batch})"))


__all__ = [
    "BatcherError",
    "PlanningInfeasible",
    "MetricsInfeasible",
    "Shortfall",
    "DispatchFailure",
    "DesyncDetected",
    "InvalidTransition",
]
