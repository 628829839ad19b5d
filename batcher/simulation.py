"""
In-process world for dry runs and tests: a fleet of nodes, targets that
respond to extract / replenish / stabilize jobs, and a virtual millisecond
clock advanced explicitly with `advance()`.

Job durations are fixed when the job is started, so a batch dispatched
against a ready target completes exactly on the computed schedule.
"""
from __future__ import annotations

import heapq
import json
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .channel import MessageChannel
from .interfaces import Node, RunningJob, TargetResource, UnitArgs

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

EXTRACT = "extract"
REPLENISH = "replenish"
STABILIZE = "stabilize"

DEFAULT_UNIT_COSTS: Dict[str, float] = {EXTRACT: 1.7, REPLENISH: 1.75, STABILIZE: 1.75}

EXTRACT_INSTABILITY_PER_THREAD = 0.002
REPLENISH_INSTABILITY_PER_THREAD = 0.004
STABILIZE_POWER_PER_THREAD = 0.05

_EPS = 1e-9


@dataclass
class SimTarget:
    name: str
    maximum: float
    available: float
    min_instability: float
    instability: float
    growth_rate: float = 1.003          # per replenish thread
    extract_rate: float = 0.002         # fraction of `available` one extract thread takes at zero instability
    base_time: float = 2_000.0          # extract duration (ms) at zero instability and skill

    def snapshot(self) -> TargetResource:
        return TargetResource(
            name=self.name,
            available=self.available,
            maximum=self.maximum,
            instability=self.instability,
            min_instability=self.min_instability,
        )


@dataclass
class SimNode:
    name: str
    total: float
    used: float = 0.0
    units: Set[str] = field(default_factory=set)


@dataclass
class SimJob:
    job_id: int
    node: str
    unit: str
    threads: int
    args: UnitArgs
    started_at: float
    finish_at: float
    cost: float


class SimulatedWorld:
    """Implements both `Fleet` and `Formulas` over simulated state."""

    def __init__(
        self,
        *,
        home: str = "home",
        skill: int = 1,
        unit_costs: Optional[Dict[str, float]] = None,
        effects: Optional[Dict[str, str]] = None,
        completions: Optional[MessageChannel] = None,
        start_time: float = 0.0,
    ) -> None:
        self.home = home
        self.skill = skill
        self.unit_costs = dict(unit_costs or DEFAULT_UNIT_COSTS)
        # unit name -> effect kind
        self.effects = dict(effects or {EXTRACT: EXTRACT, REPLENISH: REPLENISH, STABILIZE: STABILIZE})
        self.completions = completions
        self.copy_failures: Set[str] = set()

        self._now = float(start_time)
        self._nodes: Dict[str, SimNode] = {}
        self._targets: Dict[str, SimTarget] = {}
        self._jobs: Dict[int, SimJob] = {}
        self._heap: List[Tuple[float, int]] = []
        self._next_id = 1
        self.finished: List[SimJob] = []

    # ---------- setup ----------
    def add_node(self, name: str, total: float, used: float = 0.0) -> None:
        units = set(self.effects) if name == self.home else set()
        self._nodes[name] = SimNode(name=name, total=float(total), used=float(used), units=units)

    def remove_node(self, name: str) -> None:
        for job in [j for j in self._jobs.values() if j.node == name]:
            self.kill(job.job_id)
        self._nodes.pop(name, None)

    def add_target(self, target: SimTarget) -> None:
        self._targets[target.name] = target

    def sim_target(self, name: str) -> SimTarget:
        return self._targets[name]

    # ---------- clock ----------
    def now(self) -> float:
        return self._now

    def advance(self, ms: float) -> int:
        """Move the clock forward, finishing due jobs in finish order. Returns jobs finished."""
        return self.advance_to(self._now + max(0.0, ms))

    def advance_to(self, when: float) -> int:
        finished = 0
        while self._heap and self._heap[0][0] <= when + _EPS:
            finish_at, job_id = heapq.heappop(self._heap)
            job = self._jobs.pop(job_id, None)
            if job is None:
                continue
            self._now = max(self._now, finish_at)
            self._finish(job)
            finished += 1
        self._now = max(self._now, when)
        return finished

    def pending_jobs(self) -> int:
        return len(self._jobs)

    # ---------- Fleet ----------
    def discover(self) -> List[str]:
        return list(self._nodes)

    def node(self, name: str) -> Node:
        n = self._nodes[name]
        return Node(name=n.name, total=n.total, used=n.used)

    def unit_cost(self, unit: str) -> float:
        return self.unit_costs[unit]

    def has_unit(self, node: str, unit: str) -> bool:
        n = self._nodes.get(node)
        return n is not None and unit in n.units

    def copy_unit(self, node: str, unit: str) -> bool:
        n = self._nodes.get(node)
        if n is None or node in self.copy_failures or unit not in self.effects:
            return False
        n.units.add(unit)
        return True

    def start(self, node: str, unit: str, threads: int, args: UnitArgs) -> int:
        n = self._nodes.get(node)
        if n is None or threads <= 0 or unit not in n.units:
            return 0
        key = args.as_tuple()
        if any(j.node == node and j.unit == unit and j.args.as_tuple() == key for j in self._jobs.values()):
            return 0
        cost = threads * self.unit_costs[unit]
        if n.used + cost > n.total + _EPS:
            return 0

        duration = math.ceil(self._duration(self.effects[unit], args.target))
        job = SimJob(
            job_id=self._next_id,
            node=node,
            unit=unit,
            threads=threads,
            args=args,
            started_at=self._now,
            finish_at=self._now + max(0.0, args.delay) + duration,
            cost=cost,
        )
        self._next_id += 1
        n.used += cost
        self._jobs[job.job_id] = job
        heapq.heappush(self._heap, (job.finish_at, job.job_id))
        return job.job_id

    def kill(self, job_id: int) -> bool:
        job = self._jobs.pop(job_id, None)
        if job is None:
            return False
        self._release(job)
        return True

    def is_running(self, job_id: int) -> bool:
        return job_id in self._jobs

    def roster(self, node: str) -> List[RunningJob]:
        return [
            RunningJob(job_id=j.job_id, node=j.node, unit=j.unit, threads=j.threads, args=j.args)
            for j in self._jobs.values()
            if j.node == node
        ]

    # ---------- Formulas ----------
    def target(self, name: str) -> TargetResource:
        return self._targets[name].snapshot()

    def actor_skill(self) -> int:
        return self.skill

    def _extract_fraction(self, t: SimTarget) -> float:
        return t.extract_rate * max(0.0, 100.0 - t.instability) / 100.0 * (1.0 + self.skill / 1000.0)

    def extract_threads(self, target: str, amount: float) -> float:
        t = self._targets[target]
        frac = self._extract_fraction(t)
        if amount <= 0:
            return 0.0
        if t.available <= 0 or frac <= 0 or amount > t.available:
            return -1.0
        return amount / (t.available * frac)

    def extract_instability(self, threads: int) -> float:
        return EXTRACT_INSTABILITY_PER_THREAD * threads

    def stabilize_power(self, threads: int = 1) -> float:
        return STABILIZE_POWER_PER_THREAD * threads

    def regrowth_threads(self, target: str, multiplier: float) -> float:
        t = self._targets[target]
        if multiplier <= 1.0:
            return 0.0
        return math.log(multiplier) / math.log(t.growth_rate)

    def replenish_instability(self, threads: int) -> float:
        return REPLENISH_INSTABILITY_PER_THREAD * threads

    def extract_time(self, target: str) -> float:
        t = self._targets[target]
        return t.base_time * (1.0 + t.instability / 50.0) * 50.0 / (50.0 + self.skill)

    def replenish_time(self, target: str) -> float:
        return self.extract_time(target) * 3.2

    def stabilize_time(self, target: str) -> float:
        return self.extract_time(target) * 4.0

    # ---------- internals ----------
    def _duration(self, effect: str, target: str) -> float:
        if effect == EXTRACT:
            return self.extract_time(target)
        if effect == REPLENISH:
            return self.replenish_time(target)
        return self.stabilize_time(target)

    def _release(self, job: SimJob) -> None:
        n = self._nodes.get(job.node)
        if n is not None:
            n.used = max(0.0, n.used - job.cost)

    def _finish(self, job: SimJob) -> None:
        self._release(job)
        self.finished.append(job)
        t = self._targets.get(job.args.target)
        if t is not None:
            self._apply(self.effects[job.unit], t, job.threads)
        if job.args.token is not None and job.args.phase and job.args.batch is not None and self.completions:
            self.completions.write(json.dumps({
                "phase": job.args.phase,
                "target": job.args.target,
                "batch": job.args.batch,
                "finish_time": job.finish_at,
            }))

    def _apply(self, effect: str, t: SimTarget, threads: int) -> None:
        if effect == EXTRACT:
            taken = min(t.available, t.available * self._extract_fraction(t) * threads)
            t.available -= taken
            t.instability = min(100.0, t.instability + self.extract_instability(threads))
        elif effect == REPLENISH:
            t.available = min(t.maximum, max(t.available, 1.0) * t.growth_rate ** threads)
            t.instability = min(100.0, t.instability + self.replenish_instability(threads))
        else:
            t.instability = max(t.min_instability, t.instability - self.stabilize_power(threads))


def drive(orchestrator, world: SimulatedWorld, duration_ms: float, *, max_steps: int = 1_000_000) -> int:
    """
    Run the orchestrator against `world` in virtual time: apply commands,
    tick, then advance the clock by the returned wait hint. Returns ticks run.
    """
    end = world.now() + duration_ms
    steps = 0
    while world.now() < end and steps < max_steps and not orchestrator.stopped:
        orchestrator.apply_pending_commands()
        wait = orchestrator.tick()
        steps += 1
        world.advance(min(wait, end - world.now()))
    return steps


def build_demo_world(
    nodes: Iterable[Tuple[str, float]] = (("home", 256), ("n1", 64), ("n2", 32), ("n3", 16), ("n4", 8)),
    *,
    completions: Optional[MessageChannel] = None,
    skill: int = 10,
) -> SimulatedWorld:
    """A small fleet with two targets, one already ready and one not."""
    world = SimulatedWorld(completions=completions, skill=skill)
    for name, total in nodes:
        world.add_node(name, total)
    world.add_target(SimTarget("alpha", maximum=1_000_000, available=1_000_000, min_instability=5, instability=5))
    world.add_target(SimTarget("beta", maximum=2_500_000, available=400_000, min_instability=10, instability=22))
    return world


__all__ = [
    "DEFAULT_UNIT_COSTS",
    "SimTarget",
    "SimNode",
    "SimJob",
    "SimulatedWorld",
    "drive",
    "build_demo_world",
]
