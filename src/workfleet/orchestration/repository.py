"""InMemoryRepository — thread-safe, in-process Repository implementation.

Every public method takes the lock, so each call is one atomic
read-modify-write. Records are copied on the way in and out; callers never
hold a live reference to stored state.
"""

from __future__ import annotations

import copy
import threading
from collections import Counter
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any

from loguru import logger

from workfleet.core.exceptions import NotFoundError, RepositoryError

from .collaborators import RunCompletion
from .graph import build_blocks
from .models import (
    Escalation,
    EscalationStatus,
    EscalationType,
    Goal,
    GoalStatus,
    Run,
    RunStatus,
    Severity,
    VerificationStatus,
    WorkItem,
    WorkItemStatus,
    compute_error_signature,
    utcnow,
    validate_goal_transition,
    validate_work_item_transition,
)


class InMemoryRepository:
    """Lock-guarded dict store for goals, work items, runs and escalations."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._lock = threading.RLock()
        self._clock = clock
        self._goals: dict[str, Goal] = {}
        self._items: dict[str, WorkItem] = {}
        self._runs: dict[str, Run] = {}
        self._escalations: dict[str, Escalation] = {}
        self._open = False

    # -- lifecycle -----------------------------------------------------------

    def initialize(self) -> None:
        with self._lock:
            self._open = True
        logger.debug("In-memory repository initialized")

    def close(self) -> None:
        with self._lock:
            self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def _check_open(self) -> None:
        if not self._open:
            raise RepositoryError("Repository is closed")

    # -- goals ---------------------------------------------------------------

    def create_goal(self, goal: Goal) -> Goal:
        with self._lock:
            self._check_open()
            if goal.id in self._goals:
                raise RepositoryError(f"Goal {goal.id} already exists")
            self._goals[goal.id] = copy.deepcopy(goal)
            return copy.deepcopy(goal)

    def get_goal(self, goal_id: str) -> Goal | None:
        with self._lock:
            self._check_open()
            goal = self._goals.get(goal_id)
            return copy.deepcopy(goal) if goal else None

    def list_goals(self, status: GoalStatus | None = None) -> list[Goal]:
        with self._lock:
            self._check_open()
            goals = [g for g in self._goals.values() if status is None or g.status == status]
            goals.sort(key=lambda g: (-g.priority, g.created_at))
            return copy.deepcopy(goals)

    def update_goal_status(self, goal_id: str, status: GoalStatus) -> Goal:
        with self._lock:
            self._check_open()
            goal = self._require_goal(goal_id)
            validate_goal_transition(goal.status, status)
            goal.status = status
            goal.updated_at = self._clock()
            return copy.deepcopy(goal)

    def update_goal_spending(self, goal_id: str, tokens: int, time_minutes: float, cost_usd: float) -> Goal:
        """Add spend deltas. Spend only ever grows."""
        if tokens < 0 or time_minutes < 0 or cost_usd < 0:
            raise RepositoryError("Spend deltas must be non-negative")
        with self._lock:
            self._check_open()
            goal = self._require_goal(goal_id)
            goal.spent_tokens += tokens
            goal.spent_time_minutes += time_minutes
            goal.spent_cost_usd += cost_usd
            goal.updated_at = self._clock()
            return copy.deepcopy(goal)

    # -- work items ----------------------------------------------------------

    def create_work_items(self, items: Sequence[WorkItem]) -> list[WorkItem]:
        with self._lock:
            self._check_open()
            for item in items:
                if item.id in self._items:
                    raise RepositoryError(f"Work item {item.id} already exists")
                if item.goal_id not in self._goals:
                    raise NotFoundError(f"Goal {item.goal_id} not found")
            stored = copy.deepcopy(list(items))
            for item in stored:
                self._items[item.id] = item
            # blocks is derived from every item of the affected goals
            for goal_id in {item.goal_id for item in stored}:
                build_blocks(item for item in self._items.values() if item.goal_id == goal_id)
            return copy.deepcopy([self._items[item.id] for item in stored])

    def get_work_item(self, work_item_id: str) -> WorkItem | None:
        with self._lock:
            self._check_open()
            item = self._items.get(work_item_id)
            return copy.deepcopy(item) if item else None

    def get_work_items_by_goal(self, goal_id: str) -> list[WorkItem]:
        with self._lock:
            self._check_open()
            items = [i for i in self._items.values() if i.goal_id == goal_id]
            items.sort(key=lambda i: i.created_at)
            return copy.deepcopy(items)

    def get_work_items_by_status(self, status: WorkItemStatus, goal_id: str | None = None) -> list[WorkItem]:
        with self._lock:
            self._check_open()
            items = [
                i for i in self._items.values() if i.status == status and (goal_id is None or i.goal_id == goal_id)
            ]
            items.sort(key=lambda i: i.created_at)
            return copy.deepcopy(items)

    def get_ready_work_items(self, goal_id: str | None = None) -> list[WorkItem]:
        """Ready items, highest priority first, then oldest first."""
        with self._lock:
            self._check_open()
            items = [
                i
                for i in self._items.values()
                if i.status == WorkItemStatus.READY and (goal_id is None or i.goal_id == goal_id)
            ]
            items.sort(key=lambda i: (-i.priority, i.created_at))
            return copy.deepcopy(items)

    def get_blocked_work_items(self, completed_item_id: str) -> list[WorkItem]:
        """Items that depend on *completed_item_id*."""
        with self._lock:
            self._check_open()
            return copy.deepcopy([i for i in self._items.values() if completed_item_id in i.dependencies])

    def update_work_item_status(self, work_item_id: str, status: WorkItemStatus) -> WorkItem:
        with self._lock:
            self._check_open()
            item = self._require_item(work_item_id)
            validate_work_item_transition(item.status, status)
            item.status = status
            item.updated_at = self._clock()
            return copy.deepcopy(item)

    def update_work_item_status_if_dependencies_met(self, work_item_id: str) -> bool:
        """Promote a queued item to ready once all its dependencies are done.

        Check and write happen under one lock hold.
        """
        with self._lock:
            self._check_open()
            item = self._require_item(work_item_id)
            if item.status != WorkItemStatus.QUEUED:
                return False
            for dep_id in item.dependencies:
                dep = self._items.get(dep_id)
                if dep is None or dep.status != WorkItemStatus.DONE:
                    return False
            item.status = WorkItemStatus.READY
            item.updated_at = self._clock()
            return True

    def update_verification_status(self, work_item_id: str, status: VerificationStatus) -> WorkItem:
        with self._lock:
            self._check_open()
            item = self._require_item(work_item_id)
            item.verification_status = status
            item.updated_at = self._clock()
            return copy.deepcopy(item)

    def increment_work_item_retry(self, work_item_id: str) -> WorkItem:
        with self._lock:
            self._check_open()
            item = self._require_item(work_item_id)
            item.retry_count += 1
            item.updated_at = self._clock()
            return copy.deepcopy(item)

    # -- runs ----------------------------------------------------------------

    def create_run(self, work_item_id: str, goal_id: str, agent_type: str, model: str | None = None) -> Run:
        with self._lock:
            self._check_open()
            self._require_item(work_item_id)
            sequence = 1 + max((r.run_sequence for r in self._runs.values() if r.work_item_id == work_item_id), default=0)
            run = Run(
                work_item_id=work_item_id,
                goal_id=goal_id,
                agent_type=agent_type,
                run_sequence=sequence,
                model=model,
                created_at=self._clock(),
            )
            self._runs[run.id] = run
            return copy.deepcopy(run)

    def complete_run(self, run_id: str, completion: RunCompletion) -> Run:
        if completion.status == RunStatus.RUNNING:
            raise RepositoryError("A run cannot be completed with status running")
        with self._lock:
            self._check_open()
            run = self._runs.get(run_id)
            if run is None:
                raise NotFoundError(f"Run {run_id} not found")
            if run.status != RunStatus.RUNNING:
                raise RepositoryError(f"Run {run_id} already completed ({run.status})")
            run.status = completion.status
            run.tokens_used = completion.tokens_used
            run.cost_usd = completion.cost_usd
            run.time_seconds = completion.time_seconds
            run.artifacts = list(completion.artifacts)
            run.error_message = completion.error_message
            run.error_signature = compute_error_signature(completion.error_message)
            run.execution_log = completion.execution_log
            run.completed_at = self._clock()
            return copy.deepcopy(run)

    def get_run(self, run_id: str) -> Run | None:
        with self._lock:
            self._check_open()
            run = self._runs.get(run_id)
            return copy.deepcopy(run) if run else None

    def get_runs_by_work_item(self, work_item_id: str) -> list[Run]:
        with self._lock:
            self._check_open()
            runs = [r for r in self._runs.values() if r.work_item_id == work_item_id]
            runs.sort(key=lambda r: r.run_sequence)
            return copy.deepcopy(runs)

    def get_runs_by_status(self, status: RunStatus, goal_id: str | None = None) -> list[Run]:
        with self._lock:
            self._check_open()
            runs = [r for r in self._runs.values() if r.status == status and (goal_id is None or r.goal_id == goal_id)]
            runs.sort(key=lambda r: r.created_at)
            return copy.deepcopy(runs)

    def get_repeated_error_signatures(self, work_item_id: str, threshold: int) -> dict[str, int]:
        """Error signatures of failed runs seen at least *threshold* times."""
        with self._lock:
            self._check_open()
            counts = Counter(
                r.error_signature
                for r in self._runs.values()
                if r.work_item_id == work_item_id and r.status == RunStatus.FAILURE and r.error_signature
            )
            return {sig: n for sig, n in counts.items() if n >= threshold}

    # -- escalations ---------------------------------------------------------

    def create_escalation(
        self,
        work_item_id: str,
        goal_id: str,
        escalation_type: EscalationType,
        title: str,
        description: str = "",
        severity: Severity = Severity.MEDIUM,
        run_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> Escalation:
        with self._lock:
            self._check_open()
            self._require_item(work_item_id)
            escalation = Escalation(
                work_item_id=work_item_id,
                goal_id=goal_id,
                escalation_type=escalation_type,
                title=title,
                description=description,
                severity=severity,
                run_id=run_id,
                context=dict(context or {}),
                created_at=self._clock(),
            )
            self._escalations[escalation.id] = escalation
            return copy.deepcopy(escalation)

    def get_open_escalations(self, goal_id: str | None = None, work_item_id: str | None = None) -> list[Escalation]:
        with self._lock:
            self._check_open()
            found = [
                e
                for e in self._escalations.values()
                if e.status == EscalationStatus.OPEN
                and (goal_id is None or e.goal_id == goal_id)
                and (work_item_id is None or e.work_item_id == work_item_id)
            ]
            found.sort(key=lambda e: e.created_at)
            return copy.deepcopy(found)

    # -- internals -----------------------------------------------------------

    def _require_goal(self, goal_id: str) -> Goal:
        goal = self._goals.get(goal_id)
        if goal is None:
            raise NotFoundError(f"Goal {goal_id} not found")
        return goal

    def _require_item(self, work_item_id: str) -> WorkItem:
        item = self._items.get(work_item_id)
        if item is None:
            raise NotFoundError(f"Work item {work_item_id} not found")
        return item
