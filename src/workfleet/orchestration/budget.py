"""
Per-goal budget tracking.

Read side computes remaining budget, warning levels and violations from a
Goal's declared limits and recorded spend. The write side is a single entry
point, ``record_usage``, which validates the deltas and hands them to the
callback registered for the goal (normally the repository's spend update).
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from loguru import logger

from .models import Goal

if TYPE_CHECKING:
    from workfleet.core.config_schema import BudgetConfig

# (goal_id, tokens, time_minutes, cost_usd)
UsageCallback = Callable[[str, int, float, float], Awaitable[None] | None]


class WarningLevel(StrEnum):
    NONE = "none"
    WARNING = "warning"
    CRITICAL = "critical"
    EXCEEDED = "exceeded"

    @property
    def severity(self) -> int:
        return _LEVEL_ORDER[self]


_LEVEL_ORDER = {
    WarningLevel.NONE: 0,
    WarningLevel.WARNING: 1,
    WarningLevel.CRITICAL: 2,
    WarningLevel.EXCEEDED: 3,
}


@dataclass
class ResourceBudget:
    limit: float | None
    spent: float

    @property
    def remaining(self) -> float | None:
        if self.limit is None:
            return None
        return max(0.0, self.limit - self.spent)


@dataclass
class BudgetInfo:
    tokens: ResourceBudget
    time_minutes: ResourceBudget
    cost_usd: ResourceBudget

    def resources(self) -> dict[str, ResourceBudget]:
        return {"tokens": self.tokens, "time_minutes": self.time_minutes, "cost_usd": self.cost_usd}


@dataclass
class BudgetViolation:
    resource: str
    limit: float
    current: float
    overage: float


@dataclass
class BudgetCheckResult:
    within_budget: bool
    violations: list[BudgetViolation] = field(default_factory=list)


@dataclass
class BudgetStatus:
    goal_id: str
    budget: BudgetInfo
    warning_level: WarningLevel
    levels: dict[str, WarningLevel]
    check_result: BudgetCheckResult

    @property
    def exceeded(self) -> bool:
        return self.warning_level == WarningLevel.EXCEEDED


class BudgetTracker:
    """Computes budget state for goals and funnels usage into the store."""

    def __init__(
        self,
        warning_threshold: float = 0.7,
        critical_threshold: float = 0.9,
        allow_overage: bool = False,
        max_overage_percent: float = 0.1,
    ):
        if warning_threshold > critical_threshold:
            raise ValueError("warning_threshold must not exceed critical_threshold")
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold
        self.allow_overage = allow_overage
        self.max_overage_percent = max_overage_percent
        self._callbacks: dict[str, UsageCallback] = {}
        self._seen_usage_keys: dict[str, set[str]] = {}

    @classmethod
    def from_settings(cls, settings: BudgetConfig) -> BudgetTracker:
        return cls(
            warning_threshold=settings.warning_threshold,
            critical_threshold=settings.critical_threshold,
            allow_overage=settings.allow_overage,
            max_overage_percent=settings.max_overage_percent,
        )

    # -- read side ----------------------------------------------------------

    def get_remaining_budget(self, goal: Goal) -> BudgetInfo:
        return BudgetInfo(
            tokens=ResourceBudget(goal.budget_tokens, goal.spent_tokens),
            time_minutes=ResourceBudget(goal.budget_time_minutes, goal.spent_time_minutes),
            cost_usd=ResourceBudget(goal.budget_cost_usd, goal.spent_cost_usd),
        )

    def get_warning_level(self, limit: float | None, spent: float) -> WarningLevel:
        if limit is None:
            return WarningLevel.NONE
        if limit <= 0:
            return WarningLevel.EXCEEDED if spent > 0 else WarningLevel.NONE
        ratio = spent / limit
        if ratio >= 1:
            return WarningLevel.EXCEEDED
        if ratio >= self.critical_threshold:
            return WarningLevel.CRITICAL
        if ratio >= self.warning_threshold:
            return WarningLevel.WARNING
        return WarningLevel.NONE

    def check_budget(self, goal: Goal) -> BudgetCheckResult:
        violations = [
            BudgetViolation(resource=name, limit=res.limit, current=res.spent, overage=res.spent - res.limit)
            for name, res in self.get_remaining_budget(goal).resources().items()
            if res.limit is not None and res.spent > res.limit
        ]
        return BudgetCheckResult(within_budget=not violations, violations=violations)

    def get_budget_status(self, goal: Goal) -> BudgetStatus:
        info = self.get_remaining_budget(goal)
        levels = {name: self.get_warning_level(res.limit, res.spent) for name, res in info.resources().items()}
        overall = max(levels.values(), key=lambda level: level.severity)
        return BudgetStatus(
            goal_id=goal.id,
            budget=info,
            warning_level=overall,
            levels=levels,
            check_result=self.check_budget(goal),
        )

    def will_exceed_budget(self, goal: Goal, estimated_tokens: int = 0, estimated_cost: float = 0.0) -> bool:
        """Would spending the estimate push tokens or cost past the limit?"""
        factor = 1 + self.max_overage_percent if self.allow_overage else 1.0
        if goal.budget_tokens is not None and goal.spent_tokens + estimated_tokens > goal.budget_tokens * factor:
            return True
        if goal.budget_cost_usd is not None and goal.spent_cost_usd + estimated_cost > goal.budget_cost_usd * factor:
            return True
        return False

    def get_usage_percentage(self, goal: Goal) -> dict[str, float | None]:
        """Spend as a percentage of each limit (None when unlimited)."""
        result: dict[str, float | None] = {}
        for name, res in self.get_remaining_budget(goal).resources().items():
            if res.limit is None:
                result[name] = None
            elif res.limit <= 0:
                result[name] = 100.0 if res.spent > 0 else 0.0
            else:
                result[name] = round(res.spent / res.limit * 100, 1)
        return result

    @staticmethod
    def format_budget_info(info: BudgetInfo) -> str:
        parts = []
        for name, res in info.resources().items():
            if res.limit is None:
                parts.append(f"{name}: {res.spent:g} (unlimited)")
            else:
                parts.append(f"{name}: {res.spent:g}/{res.limit:g} ({res.remaining:g} left)")
        return ", ".join(parts)

    # -- write side ---------------------------------------------------------

    def register_usage_callback(self, goal_id: str, callback: UsageCallback) -> None:
        self._callbacks[goal_id] = callback

    def unregister_usage_callback(self, goal_id: str) -> None:
        self._callbacks.pop(goal_id, None)
        self._seen_usage_keys.pop(goal_id, None)

    def has_usage_callback(self, goal_id: str) -> bool:
        return goal_id in self._callbacks

    async def record_usage(
        self,
        goal_id: str,
        tokens: int = 0,
        time_seconds: float = 0.0,
        cost_usd: float = 0.0,
        usage_key: str | None = None,
    ) -> bool:
        """Record spend for *goal_id*.

        Returns False when *usage_key* was already recorded or no callback is
        registered for the goal. Negative deltas raise ValueError.
        """
        if tokens < 0 or time_seconds < 0 or cost_usd < 0:
            raise ValueError(
                f"Usage deltas must be non-negative (tokens={tokens}, time={time_seconds}, cost={cost_usd})"
            )
        seen = self._seen_usage_keys.get(goal_id, set())
        if usage_key is not None and usage_key in seen:
            logger.debug(f"Usage {usage_key} for goal {goal_id} already recorded")
            return False

        callback = self._callbacks.get(goal_id)
        if callback is None:
            logger.warning(f"No usage callback registered for goal {goal_id}; usage dropped")
            return False

        result = callback(goal_id, tokens, time_seconds / 60.0, cost_usd)
        if inspect.isawaitable(result):
            await result
        if usage_key is not None:
            self._seen_usage_keys.setdefault(goal_id, set()).add(usage_key)
        return True
