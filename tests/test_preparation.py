import math

import pytest

from batcher.capacity import CapacityModel
from batcher.errors import PlanningInfeasible
from batcher.preparation import COMPLETE_STRATEGIES, PrepStrategy, is_ready, prepare
from batcher.simulation import SimTarget, SimulatedWorld

TIERS = ((32.0, 4.0), (128.0, 16.0), (1024.0, 64.0))


def _world(nodes, *, available=500_000, instability=10.0):
    w = SimulatedWorld()
    for name, total in nodes:
        w.add_node(name, total)
    w.add_target(SimTarget("t", maximum=1_000_000, available=available, min_instability=5, instability=instability))
    return w


def _model(w, home="home"):
    names = w.discover()
    return CapacityModel.from_fleet(w, names, home=home if home in names else None, tiers=TIERS)


def _threads_by_phase(result):
    out = {}
    for h in result.handles:
        out[h.args.phase] = out.get(h.args.phase, 0) + h.threads
    return out


def test_ready_target_needs_no_jobs():
    w = _world([("home", 512)], available=1_000_000, instability=5.0)
    result = prepare(w, w, _model(w), "t", spacer=20)
    assert result.strategy is PrepStrategy.ALREADY_READY
    assert result.handles == []
    assert result.complete is True


def test_compact_avoids_home_and_leaves_target_ready():
    w = _world([("home", 4096), ("n1", 2048)])
    result = prepare(w, w, _model(w), "t", spacer=20, clock=w.now)

    assert result.strategy is PrepStrategy.COMPACT
    assert result.complete is True
    assert {h.node for h in result.handles} == {"n1"}
    assert set(_threads_by_phase(result)) == {"prep_stabilize", "prep_replenish", "prep_stabilize_replenish"}
    assert result.expected_duration == math.ceil(w.stabilize_time("t")) + 40

    w.advance(result.expected_duration + 1)
    assert w.pending_jobs() == 0
    assert is_ready(w.target("t"))


def test_compact_reserve_falls_back_to_home():
    w = _world([("home", 2048), ("n1", 8)])
    result = prepare(w, w, _model(w), "t", spacer=20)
    assert result.strategy is PrepStrategy.COMPACT_RESERVE
    assert {h.node for h in result.handles} == {"home"}


def test_spread_when_no_node_holds_a_whole_phase():
    w = _world([("home", 32), ("n1", 300), ("n2", 300), ("n3", 100)])
    result = prepare(w, w, _model(w), "t", spacer=20)
    assert result.strategy is PrepStrategy.SPREAD
    assert result.complete is True
    assert len({h.node for h in result.handles}) > 1

    w.advance(result.expected_duration + 1)
    assert is_ready(w.target("t"))


def test_sequential_runs_only_the_first_needed_phase():
    w = _world([("n1", 120), ("n2", 120)])
    result = prepare(w, w, _model(w), "t", spacer=20)

    assert result.strategy is PrepStrategy.SEQUENTIAL
    assert result.complete is False
    assert result.strategy not in COMPLETE_STRATEGIES
    assert set(_threads_by_phase(result)) == {"prep_stabilize"}


def test_brute_force_fills_every_node_with_stabilize():
    w = _world([("n1", 50)])
    result = prepare(w, w, _model(w), "t", spacer=20)

    assert result.strategy is PrepStrategy.BRUTE_STABILIZE
    assert result.complete is False
    assert sum(h.threads for h in result.handles) == 28   # floor(50 / 1.75)


def test_brute_force_replenishes_when_availability_is_worse():
    w = _world([("n1", 50)], available=100_000, instability=5.0)
    result = prepare(w, w, _model(w), "t", spacer=20)
    assert result.strategy is PrepStrategy.BRUTE_REPLENISH
    assert _threads_by_phase(result) == {"prep_replenish": 28}


def test_no_capacity_at_all_is_infeasible():
    w = _world([("n1", 1)])
    with pytest.raises(PlanningInfeasible):
        prepare(w, w, _model(w), "t", spacer=20)


def test_intensity_scales_thread_counts():
    w1 = _world([("home", 8192), ("n1", 8192)])
    w5 = _world([("home", 8192), ("n1", 8192)])
    base = _threads_by_phase(prepare(w1, w1, _model(w1), "t", spacer=20))
    hot = _threads_by_phase(prepare(w5, w5, _model(w5), "t", spacer=20, intensity=5))
    assert hot["prep_stabilize"] == base["prep_stabilize"] * 5
    assert hot["prep_replenish"] == base["prep_replenish"] * 5
