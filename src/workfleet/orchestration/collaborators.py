"""Contracts for the services the daemon drives.

The daemon only talks to these Protocols. The repository is synchronous and
each call is atomic; the planning, execution, verification and evaluation
services are async and may be slow or fail.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from .models import (
    Decision,
    Escalation,
    EscalationType,
    Goal,
    GoalStatus,
    Run,
    RunStatus,
    Severity,
    VerificationStatus,
    WorkItem,
    WorkItemStatus,
)

if TYPE_CHECKING:
    from .budget import BudgetStatus
    from .model_selector import ModelSelection


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class PlanResult:
    """Work items for a goal plus an optional id -> dependency ids map.

    Entries in ``dependencies`` replace the matching item's own list.
    """

    work_items: list[WorkItem] = field(default_factory=list)
    dependencies: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class ExecutionContext:
    """Everything an executor gets besides the item and its run."""

    model: ModelSelection | None
    cancel_event: asyncio.Event
    budget: BudgetStatus | None = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


@dataclass
class ExecutionResult:
    success: bool
    tokens_used: int = 0
    cost_usd: float = 0.0
    time_seconds: float = 0.0
    artifacts: list[str] = field(default_factory=list)
    error_message: str | None = None
    execution_log: str | None = None


@dataclass
class GateResult:
    name: str
    passed: bool
    output: str = ""


@dataclass
class VerificationResult:
    passed: bool
    gate_results: list[GateResult] = field(default_factory=list)
    failure_reason: str | None = None


@dataclass
class EvaluationResult:
    decision: Decision
    reasoning: str = ""
    next_actions: list[str] = field(default_factory=list)


@dataclass
class RunCompletion:
    """Outcome written onto a run when it finishes."""

    status: RunStatus
    tokens_used: int = 0
    cost_usd: float = 0.0
    time_seconds: float = 0.0
    artifacts: list[str] = field(default_factory=list)
    error_message: str | None = None
    execution_log: str | None = None

    @classmethod
    def from_execution(cls, result: ExecutionResult) -> RunCompletion:
        return cls(
            status=RunStatus.SUCCESS if result.success else RunStatus.FAILURE,
            tokens_used=result.tokens_used,
            cost_usd=result.cost_usd,
            time_seconds=result.time_seconds,
            artifacts=list(result.artifacts),
            error_message=result.error_message,
            execution_log=result.execution_log,
        )

    @classmethod
    def failure(cls, error_message: str, time_seconds: float = 0.0) -> RunCompletion:
        return cls(status=RunStatus.FAILURE, error_message=error_message, time_seconds=time_seconds)


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class Repository(Protocol):
    def initialize(self) -> None: ...

    def close(self) -> None: ...

    # goals
    def create_goal(self, goal: Goal) -> Goal: ...

    def get_goal(self, goal_id: str) -> Goal | None: ...

    def list_goals(self, status: GoalStatus | None = None) -> list[Goal]: ...

    def update_goal_status(self, goal_id: str, status: GoalStatus) -> Goal: ...

    def update_goal_spending(self, goal_id: str, tokens: int, time_minutes: float, cost_usd: float) -> Goal: ...

    # work items
    def create_work_items(self, items: Sequence[WorkItem]) -> list[WorkItem]: ...

    def get_work_item(self, work_item_id: str) -> WorkItem | None: ...

    def get_work_items_by_goal(self, goal_id: str) -> list[WorkItem]: ...

    def get_work_items_by_status(self, status: WorkItemStatus, goal_id: str | None = None) -> list[WorkItem]: ...

    def get_ready_work_items(self, goal_id: str | None = None) -> list[WorkItem]: ...

    def get_blocked_work_items(self, completed_item_id: str) -> list[WorkItem]: ...

    def update_work_item_status(self, work_item_id: str, status: WorkItemStatus) -> WorkItem: ...

    def update_work_item_status_if_dependencies_met(self, work_item_id: str) -> bool: ...

    def update_verification_status(self, work_item_id: str, status: VerificationStatus) -> WorkItem: ...

    def increment_work_item_retry(self, work_item_id: str) -> WorkItem: ...

    # runs
    def create_run(self, work_item_id: str, goal_id: str, agent_type: str, model: str | None = None) -> Run: ...

    def complete_run(self, run_id: str, completion: RunCompletion) -> Run: ...

    def get_run(self, run_id: str) -> Run | None: ...

    def get_runs_by_work_item(self, work_item_id: str) -> list[Run]: ...

    def get_runs_by_status(self, status: RunStatus, goal_id: str | None = None) -> list[Run]: ...

    def get_repeated_error_signatures(self, work_item_id: str, threshold: int) -> dict[str, int]: ...

    # escalations
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
    ) -> Escalation: ...

    def get_open_escalations(
        self, goal_id: str | None = None, work_item_id: str | None = None
    ) -> list[Escalation]: ...


class PlanningService(Protocol):
    async def plan_work_items(self, goal: Goal) -> PlanResult: ...


class ExecutionService(Protocol):
    async def execute_work_item(self, work_item: WorkItem, run: Run, context: ExecutionContext) -> ExecutionResult: ...


class VerificationService(Protocol):
    async def verify_work_item(self, work_item: WorkItem, run: Run) -> VerificationResult: ...


class EvaluationService(Protocol):
    async def evaluate_run(
        self, work_item: WorkItem, run: Run, verification: VerificationResult
    ) -> EvaluationResult: ...
