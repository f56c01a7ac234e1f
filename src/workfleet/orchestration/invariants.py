"""Single-pass invariant checks for goals and work items.

Validators collect every violation and return them; they never raise.
Callers decide whether a non-empty list rejects the input.
"""

from __future__ import annotations

from collections.abc import Collection, Iterable, Mapping
from dataclasses import dataclass

from .graph import find_cycles, index_items, missing_dependencies
from .models import Effort, Goal, WorkItem, WorkItemStatus, WorkItemType

_ITEM_TYPES = frozenset(t.value for t in WorkItemType)
_EFFORTS = frozenset(e.value for e in Effort)


@dataclass(frozen=True)
class InvariantViolation:
    field: str
    message: str
    entity_id: str | None = None

    def __str__(self) -> str:
        prefix = f"{self.entity_id}: " if self.entity_id else ""
        return f"{prefix}{self.field}: {self.message}"


def validate_goal(goal: Goal) -> list[InvariantViolation]:
    violations: list[InvariantViolation] = []

    def add(field: str, message: str) -> None:
        violations.append(InvariantViolation(field, message, goal.id))

    if not goal.title or not goal.title.strip():
        add("title", "title must not be empty")
    if not goal.success_criteria:
        add("success_criteria", "at least one success criterion is required")
    if not 0 <= goal.priority <= 100:
        add("priority", f"priority must be within 0-100, got {goal.priority}")

    for resource, limit, spent in (
        ("tokens", goal.budget_tokens, goal.spent_tokens),
        ("time_minutes", goal.budget_time_minutes, goal.spent_time_minutes),
        ("cost_usd", goal.budget_cost_usd, goal.spent_cost_usd),
    ):
        if limit is not None and limit <= 0:
            add(f"budget_{resource}", f"declared budget must be positive, got {limit}")
        if spent < 0:
            add(f"spent_{resource}", f"spend must not be negative, got {spent}")
        if limit is not None and limit > 0 and spent > limit:
            add(f"spent_{resource}", f"spend {spent} exceeds budget {limit}")

    return violations


def validate_work_item(
    item: WorkItem,
    all_items: Mapping[str, WorkItem],
    goal_ids: Collection[str] | None = None,
) -> list[InvariantViolation]:
    """Check one item against its siblings.

    *goal_ids*, when given, is the set of known goal ids for the reference
    check.
    """
    violations: list[InvariantViolation] = []

    def add(field: str, message: str) -> None:
        violations.append(InvariantViolation(field, message, item.id))

    if not item.title or not item.title.strip():
        add("title", "title must not be empty")
    if not item.goal_id:
        add("goal_id", "goal_id is required")
    elif goal_ids is not None and item.goal_id not in goal_ids:
        add("goal_id", f"goal {item.goal_id} does not exist")
    if not 0 <= item.priority <= 100:
        add("priority", f"priority must be within 0-100, got {item.priority}")
    if item.retry_count < 0:
        add("retry_count", "retry_count must not be negative")
    if item.max_retries < 0:
        add("max_retries", "max_retries must not be negative")
    if item.item_type not in _ITEM_TYPES:
        add("item_type", f"unknown item type {item.item_type!r}")
    if item.estimated_effort not in _EFFORTS:
        add("estimated_effort", f"unknown effort {item.estimated_effort!r}")

    if item.id in item.dependencies:
        add("dependencies", "work item depends on itself")
    for dep_id in missing_dependencies(item, all_items):
        add("dependencies", f"dependency {dep_id} does not exist")
    for dep_id in item.dependencies:
        dep = all_items.get(dep_id)
        if dep is not None and dep.goal_id != item.goal_id:
            add("dependencies", f"dependency {dep_id} belongs to another goal")

    if item.status == WorkItemStatus.READY:
        unfinished = [
            dep_id
            for dep_id in item.dependencies
            if dep_id in all_items and all_items[dep_id].status != WorkItemStatus.DONE
        ]
        if unfinished:
            add("status", f"ready while dependencies are not done: {', '.join(unfinished)}")

    return violations


def validate_plan(items: Iterable[WorkItem], goal_ids: Collection[str] | None = None) -> list[InvariantViolation]:
    """Validate a batch of items together, including cycle detection."""
    by_id = index_items(items)
    violations: list[InvariantViolation] = []
    for item in by_id.values():
        violations.extend(validate_work_item(item, by_id, goal_ids))
    for cycle in find_cycles(by_id):
        if len(cycle) == 1:
            # already reported as a self-dependency
            continue
        path = " -> ".join([*cycle, cycle[0]])
        violations.append(InvariantViolation("dependencies", f"circular dependency: {path}", cycle[0]))
    return violations
