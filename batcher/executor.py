from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Sequence

from .errors import DispatchFailure, Shortfall
from .interfaces import Fleet, UnitArgs
from .planner import Placement, PlacementStep

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


@dataclass(frozen=True)
class JobHandle:
    job_id: int
    node: str
    unit: str
    threads: int
    args: UnitArgs


def _is_duplicate(fleet: Fleet, step: PlacementStep) -> bool:
    args = step.demand.args.as_tuple()
    return any(
        job.unit == step.demand.unit and job.args.as_tuple() == args
        for job in fleet.roster(step.node)
    )


def _shortfalls(fleet: Fleet, steps: Iterable[PlacementStep]) -> List[Shortfall]:
    out: List[Shortfall] = []
    for step in steps:
        try:
            free = fleet.node(step.node).free
        except Exception as e:  # node vanished between plan and dispatch
            logger.debug("[dispatch] node %s unreadable while diagnosing: %s", step.node, e)
            free = 0.0
        out.append(Shortfall(node=step.node, unit=step.demand.unit, required=step.cost, available=free))
    return out


def cancel(fleet: Fleet, handles: Iterable[JobHandle]) -> bool:
    """Terminate every handle; True when all kills succeeded (already-finished jobs count as failures)."""
    ok = True
    for h in handles:
        if h.job_id <= 0:
            continue
        ok = fleet.kill(h.job_id) and ok
    return ok


def alive(fleet: Fleet, handles: Sequence[JobHandle]) -> List[JobHandle]:
    return [h for h in handles if fleet.is_running(h.job_id)]


def execute(fleet: Fleet, placement: Placement) -> List[JobHandle]:
    """
    Start every step of `placement` in plan order. All-or-nothing: on the
    first failure every job this call already started is cancelled and
    DispatchFailure is raised with the shortfalls and the full plan.
    """
    started: List[JobHandle] = []

    def _abort(message: str, reason: str) -> DispatchFailure:
        cancel(fleet, started)
        # started steps are already rolled back
        shortfalls = _shortfalls(fleet, placement.steps[len(started):])
        logger.warning("[dispatch] %s; rolled back %d started job(s)", message, len(started))
        return DispatchFailure(
            message,
            reason=reason,
            shortfalls=shortfalls,
            plan_dump=placement.describe(),
        )

    for step in placement:
        unit = step.demand.unit
        if not fleet.has_unit(step.node, unit) and not fleet.copy_unit(step.node, unit):
            raise _abort(f"failed to copy {unit} to {step.node}", "copy")

        job_id = fleet.start(step.node, unit, step.threads, step.demand.args)
        if not job_id:
            if _is_duplicate(fleet, step):
                raise _abort(
                    f"{step.node} already runs {unit} with identical arguments {step.demand.args.as_dict()}",
                    "duplicate",
                )
            raise _abort(
                f"{step.node} refused {unit} x{step.threads} (needs {step.cost:.2f})",
                "capacity",
            )

        started.append(JobHandle(job_id=job_id, node=step.node, unit=unit, threads=step.threads, args=step.demand.args))

    if logger.isEnabledFor(logging.DEBUG):
        logger.debug("[dispatch] started %d job(s) for %.2f capacity", len(started), placement.total_cost)
    return started


__all__ = ["JobHandle", "execute", "cancel", "alive"]
