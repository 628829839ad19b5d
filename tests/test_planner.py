import pytest

from batcher.errors import PlanningInfeasible
from batcher.interfaces import Node, UnitArgs
from batcher.planner import COMPACT, SPREAD, CapacityDemand, plan, try_plan


def _demand(unit, threads, cost, phase=None):
    return CapacityDemand(unit=unit, threads=threads, cost_per_thread=cost, args=UnitArgs("t", phase=phase))


def _assert_within_capacity(nodes, placement):
    free = {n.name: n.free for n in nodes}
    for node, used in placement.by_node().items():
        assert used <= free[node] + 1e-9


def test_compact_rejects_when_no_single_node_fits():
    nodes = [Node("big", 64), Node("small", 16)]
    demand = _demand("u", 10, 8.0)

    with pytest.raises(PlanningInfeasible):
        plan(nodes, [demand], COMPACT)
    assert try_plan(nodes, [demand], COMPACT) is None


def test_spread_splits_across_nodes_smallest_free_first():
    nodes = [Node("big", 64), Node("small", 16)]
    placement = plan(nodes, [_demand("u", 10, 8.0)], SPREAD)

    assert [(s.node, s.threads) for s in placement] == [("small", 2), ("big", 8)]
    assert placement.policy == "spread"
    _assert_within_capacity(nodes, placement)


def test_compact_prefers_largest_node_and_largest_demand_first():
    nodes = [Node("a", 32), Node("b", 64)]
    small = _demand("s", 10, 2.0)    # 20
    large = _demand("l", 20, 2.0)    # 40
    placement = plan(nodes, [small, large], COMPACT)

    assert [(s.demand.unit, s.node) for s in placement] == [("l", "b"), ("s", "b")]

    other = _demand("o", 15, 2.0)    # 30: no longer fits on b after l
    placement = plan(nodes, [large, other], COMPACT)
    assert dict((s.demand.unit, s.node) for s in placement) == {"l": "b", "o": "a"}


def test_compact_places_each_demand_whole():
    nodes = [Node("a", 40), Node("b", 40, used=10), Node("c", 8)]
    demands = [_demand("x", 10, 1.75), _demand("y", 6, 1.7), _demand("z", 3, 1.75), _demand("w", 1, 1.75)]
    placement = plan(nodes, demands, COMPACT)

    assert len(placement) == len(demands)
    for demand, parts in placement.by_demand():
        assert len(parts) == 1
        assert parts[0][1] == demand.threads
    _assert_within_capacity(nodes, placement)


@pytest.mark.parametrize("policy", [COMPACT, SPREAD])
@pytest.mark.parametrize(
    "totals",
    [(8, 8, 8, 8), (100, 3.5, 7, 1.75), (17.5, 17.5), (1000,)],
)
def test_placements_never_exceed_free_capacity(policy, totals):
    nodes = [Node(f"n{i}", t, used=t / 4) for i, t in enumerate(totals)]
    demands = [_demand("a", 3, 1.75), _demand("b", 2, 1.7), _demand("c", 1, 1.75)]
    placement = try_plan(nodes, demands, policy)
    if placement is None:
        return
    _assert_within_capacity(nodes, placement)
    placed = {}
    for step in placement:
        placed[step.demand.unit] = placed.get(step.demand.unit, 0) + step.threads
    assert placed == {"a": 3, "b": 2, "c": 1}


def test_spread_infeasible_when_total_is_short():
    nodes = [Node("a", 10), Node("b", 10)]
    with pytest.raises(PlanningInfeasible):
        plan(nodes, [_demand("u", 12, 1.75)], SPREAD)


def test_plan_does_not_touch_snapshot_and_skips_empty_demands():
    nodes = [Node("a", 10, used=2)]
    placement = plan(nodes, [_demand("u", 0, 1.0), _demand("v", 2, 1.0)], COMPACT)
    assert len(placement) == 1
    assert nodes[0].used == 2
    assert placement.total_cost == pytest.approx(2.0)


def test_describe_lists_every_step():
    nodes = [Node("a", 10), Node("b", 10)]
    placement = plan(nodes, [_demand("u", 8, 1.75, phase="extract")], SPREAD)
    dump = placement.describe()
    assert dump.count("\n") == len(placement) - 1
    assert "phase=extract" in dump
