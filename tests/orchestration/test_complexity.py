"""Tests for complexity scoring."""

import pytest

from workfleet.orchestration.complexity import (
    DEFAULT_WORK_ITEM_WEIGHTS,
    ComplexityScorer,
    ComplexityTier,
    tier_for_score,
)
from workfleet.orchestration.models import Effort, Goal, SuccessCriterion, WorkItem, WorkItemType


@pytest.fixture
def scorer():
    return ComplexityScorer()


def _item(**kwargs):
    return WorkItem(goal_id="g1", title=kwargs.pop("title", "Task"), **kwargs)


class TestTiers:
    @pytest.mark.parametrize(
        "score,tier",
        [
            (0, ComplexityTier.SIMPLE),
            (35, ComplexityTier.SIMPLE),
            (36, ComplexityTier.MEDIUM),
            (65, ComplexityTier.MEDIUM),
            (66, ComplexityTier.COMPLEX),
            (100, ComplexityTier.COMPLEX),
        ],
    )
    def test_boundaries(self, score, tier):
        assert tier_for_score(score) == tier


@pytest.mark.smoke
class TestWorkItemScoring:
    def test_default_item_is_medium(self, scorer):
        result = scorer.score(_item(title="Add endpoint"))
        # code 15 + effort M 15 + short description 3 + priority 50 -> 5
        assert result.score == 38
        assert result.tier == ComplexityTier.MEDIUM
        assert result.reasoning.startswith('Task "Add endpoint" scored 38/100 (medium tier)')

    def test_small_doc_is_simple(self, scorer):
        item = _item(item_type=WorkItemType.DOC, estimated_effort=Effort.S, priority=0)
        assert scorer.score(item).tier == ComplexityTier.SIMPLE

    def test_large_analysis_is_complex(self, scorer):
        item = _item(
            item_type=WorkItemType.ANALYSIS,
            estimated_effort=Effort.XL,
            dependencies=[f"d{i}" for i in range(5)],
            description="x" * 1200,
            priority=100,
            retry_count=2,
        )
        assert scorer.score(item).tier == ComplexityTier.COMPLEX

    def test_retries_never_lower_the_score(self, scorer):
        scores = [scorer.score(_item(retry_count=n)).score for n in range(4)]
        assert scores == sorted(scores)
        assert scores[-1] > scores[0]

    def test_score_is_deterministic(self, scorer):
        item = _item(description="refactor the parser", dependencies=["a"])
        assert scorer.score(item).score == scorer.score(item).score

    def test_priority_is_clamped(self, scorer):
        assert scorer.score(_item(priority=500)).score == scorer.score(_item(priority=100)).score

    def test_top_factors_ordered_by_contribution(self, scorer):
        top = scorer.score(_item()).top_factors(2)
        assert top[0].contribution >= top[1].contribution
        assert len(top) == 2


class TestGoalScoring:
    def test_minimal_goal(self, scorer):
        goal = Goal(title="Tiny", success_criteria=[SuccessCriterion("done")])
        result = scorer.score_goal(goal)
        # description 8 + one criterion 6 + priority 10 + unlimited budget 2
        assert result.score == 26
        assert result.tier == ComplexityTier.SIMPLE

    def test_large_budget_raises_score(self, scorer):
        small = Goal(title="g", budget_tokens=5_000)
        large = Goal(title="g", budget_tokens=200_000)
        assert scorer.score_goal(large).score > scorer.score_goal(small).score


class TestWeights:
    def test_weights_must_sum_to_one(self):
        weights = dict(DEFAULT_WORK_ITEM_WEIGHTS, item_type=0.5)
        with pytest.raises(ValueError, match="sum to 1.0"):
            ComplexityScorer(work_item_weights=weights)

    def test_missing_weight_rejected(self):
        weights = dict(DEFAULT_WORK_ITEM_WEIGHTS)
        del weights["priority"]
        with pytest.raises(ValueError, match="Missing"):
            ComplexityScorer(work_item_weights=weights)

    def test_custom_weights(self):
        weights = {k: 0.0 for k in DEFAULT_WORK_ITEM_WEIGHTS}
        weights["estimated_effort"] = 1.0
        scorer = ComplexityScorer(work_item_weights=weights)
        assert scorer.score(_item(estimated_effort=Effort.XL)).score == 100
