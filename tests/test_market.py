"""Tests for multi-objective bid ranking."""

import pytest

from ai_delegation.delegation.market import (
    OptimizationWeights,
    capability_match,
    rank_bids,
    select_weights_for_task,
    should_bypass_delegation,
)
from ai_delegation.delegation.models import Bid, Criticality, Task
from ai_delegation.exceptions import ValidationError


def _bid(agent_id, cost=10.0, duration=60.0, confidence=0.8, capabilities=()):
    return Bid(
        task_id="t1",
        agent_id=agent_id,
        estimated_cost=cost,
        estimated_duration=duration,
        confidence=confidence,
        capabilities=capabilities,
    )


class TestWeights:
    @pytest.mark.parametrize(
        "profile",
        [
            OptimizationWeights.default(),
            OptimizationWeights.high_stakes(),
            OptimizationWeights.cost_optimized(),
        ],
    )
    def test_profiles_sum_to_one(self, profile):
        total = profile.cost + profile.speed + profile.trust + profile.confidence + profile.cap_match
        assert total == pytest.approx(1.0)

    def test_negative_weight_rejected(self):
        with pytest.raises(ValidationError, match="trust"):
            OptimizationWeights(cost=0.5, speed=0.5, trust=-0.1, confidence=0.0, cap_match=0.0)

    def test_profile_selection(self):
        assert select_weights_for_task(Task(task_id="t", criticality="critical")) == OptimizationWeights.high_stakes()
        assert select_weights_for_task(Task(task_id="t", criticality="high")) == OptimizationWeights.high_stakes()
        assert (
            select_weights_for_task(Task(task_id="t", criticality="low", complexity=3))
            == OptimizationWeights.cost_optimized()
        )
        assert (
            select_weights_for_task(Task(task_id="t", criticality="low", complexity=4))
            == OptimizationWeights.default()
        )
        assert select_weights_for_task(Task(task_id="t")) == OptimizationWeights.default()


class TestCapabilityMatch:
    def test_nothing_required(self):
        assert capability_match([], ["x"]) == 1.0

    def test_partial(self):
        assert capability_match(["a", "b", "c", "d"], ["a", "b", "z"]) == pytest.approx(0.5)

    def test_none_offered(self):
        assert capability_match(["a"], []) == 0.0


class TestRankBids:
    def test_empty(self):
        assert rank_bids([], OptimizationWeights.default(), {}, []) == []

    def test_cost_normalization(self):
        bids = [_bid("a", cost=18), _bid("b", cost=22), _bid("c", cost=25)]
        scored = rank_bids(bids, OptimizationWeights.default(), {}, [])
        by_agent = {s.bid.agent_id: s for s in scored}
        assert by_agent["a"].cost_score == pytest.approx(1.0)
        assert by_agent["b"].cost_score == pytest.approx(3 / 7)
        assert by_agent["c"].cost_score == pytest.approx(0.0)
        assert [s.bid.agent_id for s in scored] == ["a", "b", "c"]

    def test_single_bid_scores_full_on_cost_and_speed(self):
        (scored,) = rank_bids([_bid("solo")], OptimizationWeights.default(), {}, [])
        assert scored.cost_score == 1.0
        assert scored.speed_score == 1.0
        assert scored.trust_score == 0.5
        assert scored.cap_match_score == 1.0

    def test_total_is_weighted_sum(self):
        weights = OptimizationWeights.default()
        (scored,) = rank_bids([_bid("a", confidence=0.6)], weights, {"a": 0.9}, [])
        expected = 0.20 * 1.0 + 0.15 * 1.0 + 0.30 * 0.9 + 0.15 * 0.6 + 0.20 * 1.0
        assert scored.score == pytest.approx(expected)

    def test_trust_breaks_otherwise_equal_bids(self):
        bids = [_bid("meh"), _bid("trusted")]
        scored = rank_bids(bids, OptimizationWeights.default(), {"trusted": 0.95, "meh": 0.2}, [])
        assert scored[0].bid.agent_id == "trusted"

    def test_ties_keep_submission_order(self):
        bids = [_bid("first"), _bid("second"), _bid("third")]
        scored = rank_bids(bids, OptimizationWeights.default(), {}, [])
        assert [s.bid.agent_id for s in scored] == ["first", "second", "third"]

    def test_registered_capabilities_take_precedence(self):
        bids = [_bid("a", capabilities=("sql", "python")), _bid("b", capabilities=("sql",))]
        scored = rank_bids(
            bids,
            OptimizationWeights.default(),
            {},
            ["sql", "python"],
            capabilities_by_agent={"a": ["sql"]},
        )
        by_agent = {s.bid.agent_id: s for s in scored}
        assert by_agent["a"].cap_match_score == pytest.approx(0.5)
        assert by_agent["b"].cap_match_score == pytest.approx(0.5)

    def test_sorted_descending(self):
        bids = [_bid("slow", duration=600), _bid("fast", duration=30), _bid("mid", duration=120)]
        scored = rank_bids(bids, OptimizationWeights.cost_optimized(), {}, [])
        totals = [s.score for s in scored]
        assert totals == sorted(totals, reverse=True)
        assert scored[0].bid.agent_id == "fast"


class TestBypass:
    def test_trivial_task_bypasses(self):
        task = Task(task_id="t", criticality=Criticality.LOW, complexity=2, uncertainty=0.1, estimated_duration=30)
        assert should_bypass_delegation(task)

    @pytest.mark.parametrize(
        "overrides",
        [
            {"criticality": Criticality.MEDIUM},
            {"complexity": 3},
            {"uncertainty": 0.2},
            {"estimated_duration": 60},
        ],
    )
    def test_any_threshold_blocks_bypass(self, overrides):
        fields = dict(criticality=Criticality.LOW, complexity=2, uncertainty=0.1, estimated_duration=30)
        fields.update(overrides)
        assert not should_bypass_delegation(Task(task_id="t", **fields))
