import pytest

from batcher.errors import MetricsInfeasible
from batcher.interfaces import TargetResource
from batcher.timing import PHASE_ORDER, Phase, compute_batch_metrics


class StubFormulas:
    """Fixed durations and linear thread formulas."""

    def __init__(self, extract=3000.0, stabilize=4000.0, replenish=3500.0, per_thread=10.0):
        self.times = {"extract": extract, "stabilize": stabilize, "replenish": replenish}
        self.per_thread = per_thread

    def target(self, name):
        return TargetResource(name, available=1000, maximum=1000, instability=5, min_instability=5)

    def actor_skill(self):
        return 1

    def extract_threads(self, target, amount):
        if self.per_thread <= 0:
            return -1.0
        return amount / self.per_thread

    def extract_instability(self, threads):
        return 0.002 * threads

    def stabilize_power(self, threads=1):
        return 0.05 * threads

    def regrowth_threads(self, target, multiplier):
        return 7.0

    def replenish_instability(self, threads):
        return 0.004 * threads

    def extract_time(self, target):
        return self.times["extract"]

    def replenish_time(self, target):
        return self.times["replenish"]

    def stabilize_time(self, target):
        return self.times["stabilize"]


def test_delays_for_reference_durations():
    m = compute_batch_metrics(StubFormulas(), "t", 0.1, 1.3, 1.3, 20)

    assert m.stabilize_extract.delay == 0
    assert m.extract.delay == 980
    assert m.replenish.delay == 520
    assert m.stabilize_replenish.delay == 40


def test_completions_are_spaced_by_exactly_the_spacer():
    m = compute_batch_metrics(StubFormulas(), "t", 0.1, 1.3, 1.3, 20)

    finishes = [m.get(phase).finish_offset for phase in PHASE_ORDER]
    assert finishes == sorted(finishes)
    assert [b - a for a, b in zip(finishes, finishes[1:])] == [20, 20, 20]
    assert m.span == finishes[-1]


def test_thread_counts_apply_safety_factors():
    m = compute_batch_metrics(StubFormulas(), "t", 0.1, 1.3, 1.3, 20)

    assert m.extract_amount == 100
    assert m.extract.threads == 10
    assert m.stabilize_extract.threads == 1     # ceil(0.02 / 0.05 * 1.3)
    assert m.replenish.threads == 10            # ceil(7 * 1.3)
    assert m.stabilize_replenish.threads == 1   # ceil(0.04 / 0.05)
    assert m.total_threads == 22
    costs = {Phase.EXTRACT: 1.7, Phase.STABILIZE_EXTRACT: 1.75, Phase.REPLENISH: 1.75, Phase.STABILIZE_REPLENISH: 1.75}
    assert m.cost(costs) == pytest.approx(10 * 1.7 + 12 * 1.75)


def test_durations_are_rounded_up():
    m = compute_batch_metrics(StubFormulas(extract=2999.2, stabilize=3999.1, replenish=3499.5), "t", 0.1, 1.3, 1.3, 20)
    assert (m.extract.duration, m.stabilize_extract.duration, m.replenish.duration) == (3000, 4000, 3500)


def test_unready_target_is_infeasible():
    with pytest.raises(MetricsInfeasible):
        compute_batch_metrics(StubFormulas(per_thread=-1), "t", 0.1, 1.3, 1.3, 20)


def test_negative_delay_is_infeasible():
    with pytest.raises(MetricsInfeasible):
        compute_batch_metrics(StubFormulas(extract=4000.0), "t", 0.1, 1.3, 1.3, 20)
