import pytest

from batcher.errors import DispatchFailure
from batcher.executor import alive, cancel, execute
from batcher.interfaces import Node, UnitArgs
from batcher.planner import COMPACT, SPREAD, CapacityDemand, plan
from batcher.simulation import SimTarget, SimulatedWorld


def _world(**nodes):
    w = SimulatedWorld()
    for name, total in nodes.items():
        w.add_node(name, total)
    w.add_target(SimTarget("t", maximum=1000, available=1000, min_instability=1, instability=1))
    return w


def _demand(unit, threads, phase):
    cost = 1.7 if unit == "extract" else 1.75
    return CapacityDemand(unit, threads, cost, UnitArgs("t", 0.0, batch=0, phase=phase))


def test_execute_starts_every_step_and_copies_units():
    w = _world(n1=64, n2=64)
    demands = [_demand("extract", 10, "extract"), _demand("stabilize", 4, "stabilize_extract")]
    placement = plan([w.node("n1"), w.node("n2")], demands, COMPACT)

    handles = execute(w, placement)

    assert len(handles) == 2
    assert all(w.is_running(h.job_id) for h in handles)
    assert w.has_unit("n1", "extract") and w.has_unit("n1", "stabilize")
    assert alive(w, handles) == handles


def test_failed_start_rolls_back_everything_already_started():
    w = _world(n1=10)
    # plan against a stale, larger view of n1
    stale = [Node("n1", 100)]
    demands = [_demand("stabilize", 4, "a"), _demand("stabilize", 4, "b")]
    placement = plan(stale, demands, COMPACT)

    with pytest.raises(DispatchFailure) as exc:
        execute(w, placement)

    err = exc.value
    assert err.reason == "capacity"
    assert w.pending_jobs() == 0
    assert w.node("n1").used == pytest.approx(0.0)
    assert "plan:" in str(err)
    # the first step started, so only the second one is reported
    assert [s.node for s in err.shortfalls] == ["n1"]
    assert len(err.shortfalls) == 1


def test_started_steps_are_not_reported_as_short():
    w = _world(a=10, b=10)
    demands = [_demand("stabilize", 5, "big"), _demand("stabilize", 4, "small")]
    placement = plan([w.node("a"), w.node("b")], demands, COMPACT)
    assert [s.node for s in placement] == ["a", "b"]

    # b fills up between planning and dispatch
    w.copy_unit("b", "stabilize")
    assert w.start("b", "stabilize", 5, UnitArgs("t", 0.0, batch=0, phase="other"))

    with pytest.raises(DispatchFailure) as exc:
        execute(w, placement)

    err = exc.value
    assert err.reason == "capacity"
    assert [s.node for s in err.shortfalls] == ["b"]
    assert err.shortfalls[0].missing == pytest.approx(7.0 - 1.25)
    assert w.node("a").used == pytest.approx(0.0)
    assert "shortfall:" in str(err)


def test_duplicate_job_is_reported_as_such():
    w = _world(n1=64)
    w.copy_unit("n1", "stabilize")
    args = UnitArgs("t", 0.0, batch=0, phase="dup")
    assert w.start("n1", "stabilize", 1, args)

    placement = plan([w.node("n1")], [CapacityDemand("stabilize", 2, 1.75, args)], COMPACT)
    with pytest.raises(DispatchFailure) as exc:
        execute(w, placement)
    assert exc.value.reason == "duplicate"
    assert w.pending_jobs() == 1


def test_copy_failure_aborts_before_start():
    w = _world(home=64, n1=64)
    w.copy_failures.add("n1")
    placement = plan([w.node("home"), w.node("n1")], [_demand("replenish", 60, "r")], SPREAD)

    with pytest.raises(DispatchFailure) as exc:
        execute(w, placement)
    assert exc.value.reason == "copy"
    assert w.pending_jobs() == 0


def test_cancel_reports_already_finished_jobs():
    w = _world(n1=64)
    handles = execute(w, plan([w.node("n1")], [_demand("stabilize", 2, "s")], COMPACT))
    w.advance(10 ** 7)
    assert alive(w, handles) == []
    assert cancel(w, handles) is False
