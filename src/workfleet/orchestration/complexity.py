"""
Complexity scoring for work items and goals.

A score is a weighted sum of factor values, each on a 0-100 scale. The
rounded total maps to a tier that the model selector routes on.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import StrEnum

from .models import Effort, Goal, WorkItem, WorkItemType


class ComplexityTier(StrEnum):
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"


# Upper bounds (inclusive) for the simple and medium tiers.
SIMPLE_MAX_SCORE = 35
MEDIUM_MAX_SCORE = 65

DEFAULT_WORK_ITEM_WEIGHTS: dict[str, float] = {
    "item_type": 0.25,
    "estimated_effort": 0.30,
    "dependencies": 0.15,
    "description_length": 0.15,
    "priority": 0.10,
    "retry_count": 0.05,
}

DEFAULT_GOAL_WEIGHTS: dict[str, float] = {
    "description_length": 0.40,
    "success_criteria": 0.30,
    "priority": 0.20,
    "budget_tokens": 0.10,
}

ITEM_TYPE_SCORES: dict[WorkItemType, int] = {
    WorkItemType.DOC: 20,
    WorkItemType.TEST: 40,
    WorkItemType.REFACTOR: 50,
    WorkItemType.CODE: 60,
    WorkItemType.ANALYSIS: 70,
}

EFFORT_SCORES: dict[Effort, int] = {
    Effort.S: 20,
    Effort.M: 50,
    Effort.L: 75,
    Effort.XL: 100,
}


@dataclass
class ComplexityFactor:
    name: str
    value: float
    weight: float
    reason: str

    @property
    def contribution(self) -> float:
        return self.value * self.weight


@dataclass
class ComplexityScore:
    score: int
    tier: ComplexityTier
    factors: list[ComplexityFactor] = field(default_factory=list)
    reasoning: str = ""

    def top_factors(self, n: int = 3) -> list[ComplexityFactor]:
        return sorted(self.factors, key=lambda f: f.contribution, reverse=True)[:n]


def tier_for_score(score: float) -> ComplexityTier:
    if score <= SIMPLE_MAX_SCORE:
        return ComplexityTier.SIMPLE
    if score <= MEDIUM_MAX_SCORE:
        return ComplexityTier.MEDIUM
    return ComplexityTier.COMPLEX


def _dependency_value(count: int) -> int:
    if count == 0:
        return 0
    if count <= 2:
        return 30
    if count <= 4:
        return 60
    return 100


def _description_value(length: int) -> int:
    if length < 100:
        return 20
    if length < 500:
        return 50
    if length < 1000:
        return 75
    return 100


def _retry_value(retry_count: int) -> int:
    if retry_count <= 0:
        return 0
    if retry_count == 1:
        return 50
    return 100


def _criteria_value(count: int) -> int:
    if count <= 1:
        return 20
    if count <= 3:
        return 50
    if count <= 5:
        return 75
    return 100


def _budget_tokens_value(budget_tokens: int | None) -> int:
    if budget_tokens is None or budget_tokens < 10_000:
        return 20
    if budget_tokens < 50_000:
        return 50
    if budget_tokens < 100_000:
        return 75
    return 100


def _clamp_priority(priority: int) -> int:
    return max(0, min(100, priority))


def _check_weights(weights: dict[str, float], required: dict[str, float]) -> None:
    missing = set(required) - set(weights)
    if missing:
        raise ValueError(f"Missing complexity weights: {sorted(missing)}")
    if not math.isclose(sum(weights.values()), 1.0, abs_tol=1e-6):
        raise ValueError(f"Complexity weights must sum to 1.0, got {sum(weights.values()):.4f}")


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class ComplexityScorer:
    """Deterministic weighted scorer; weights are validated to sum to 1.0."""

    def __init__(
        self,
        work_item_weights: dict[str, float] | None = None,
        goal_weights: dict[str, float] | None = None,
    ):
        self.work_item_weights = dict(work_item_weights or DEFAULT_WORK_ITEM_WEIGHTS)
        self.goal_weights = dict(goal_weights or DEFAULT_GOAL_WEIGHTS)
        _check_weights(self.work_item_weights, DEFAULT_WORK_ITEM_WEIGHTS)
        _check_weights(self.goal_weights, DEFAULT_GOAL_WEIGHTS)

    def score(self, work_item: WorkItem) -> ComplexityScore:
        w = self.work_item_weights
        desc_len = len(work_item.description or "")
        deps = len(work_item.dependencies)
        priority = _clamp_priority(work_item.priority)
        factors = [
            ComplexityFactor(
                "item_type", ITEM_TYPE_SCORES[work_item.item_type], w["item_type"], f"{work_item.item_type} work"
            ),
            ComplexityFactor(
                "estimated_effort",
                EFFORT_SCORES[work_item.estimated_effort],
                w["estimated_effort"],
                f"{work_item.estimated_effort} effort",
            ),
            ComplexityFactor("dependencies", _dependency_value(deps), w["dependencies"], f"{deps} dependencies"),
            ComplexityFactor(
                "description_length",
                _description_value(desc_len),
                w["description_length"],
                f"{desc_len} char description",
            ),
            ComplexityFactor("priority", priority, w["priority"], f"priority {priority}"),
            ComplexityFactor(
                "retry_count",
                _retry_value(work_item.retry_count),
                w["retry_count"],
                f"{work_item.retry_count} previous retries",
            ),
        ]
        return self._build(work_item.title, factors)

    def score_goal(self, goal: Goal) -> ComplexityScore:
        w = self.goal_weights
        desc_len = len(goal.description or "")
        criteria = len(goal.success_criteria)
        priority = _clamp_priority(goal.priority)
        budget = goal.budget_tokens
        factors = [
            ComplexityFactor(
                "description_length",
                _description_value(desc_len),
                w["description_length"],
                f"{desc_len} char description",
            ),
            ComplexityFactor(
                "success_criteria", _criteria_value(criteria), w["success_criteria"], f"{criteria} success criteria"
            ),
            ComplexityFactor("priority", priority, w["priority"], f"priority {priority}"),
            ComplexityFactor(
                "budget_tokens",
                _budget_tokens_value(budget),
                w["budget_tokens"],
                "unlimited token budget" if budget is None else f"{budget} token budget",
            ),
        ]
        return self._build(goal.title, factors)

    @staticmethod
    def _build(title: str, factors: list[ComplexityFactor]) -> ComplexityScore:
        total = _round_half_up(sum(f.contribution for f in factors))
        tier = tier_for_score(total)
        result = ComplexityScore(score=total, tier=tier, factors=factors)
        key = "; ".join(f"{f.reason} (+{f.contribution:.1f})" for f in result.top_factors())
        result.reasoning = f'Task "{title}" scored {total}/100 ({tier} tier). Key factors: {key}'
        return result
