"""Data models for goal/work-item orchestration.

Defines goals, work items, runs and escalations plus their status state
machines. Pure data: no I/O.

Work item state machine:
    queued -> ready -> in_progress -> done
    in_progress -> ready (retry) | blocked (escalate/replan) | failed
    blocked -> ready | queued (human resolution)
    done and failed are terminal

Goal state machine:
    queued -> active -> completed
    queued/active -> cancelled
"""

from __future__ import annotations

import hashlib
import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from workfleet.core.exceptions import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class GoalStatus(StrEnum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class WorkItemStatus(StrEnum):
    QUEUED = "queued"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DONE = "done"
    FAILED = "failed"


class WorkItemType(StrEnum):
    CODE = "code"
    TEST = "test"
    DOC = "doc"
    REFACTOR = "refactor"
    ANALYSIS = "analysis"


class Effort(StrEnum):
    S = "S"
    M = "M"
    L = "L"
    XL = "XL"


class VerificationStatus(StrEnum):
    NOT_STARTED = "not_started"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(StrEnum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"


class EscalationType(StrEnum):
    STUCK = "stuck"
    VALIDATION_FAILED = "validation_failed"
    CIRCULAR_DEPENDENCY = "circular_dependency"
    MISSING_DEPENDENCY = "missing_dependency"
    BUDGET_EXCEEDED = "budget_exceeded"
    AMBIGUOUS = "ambiguous"
    RISK = "risk"
    CREDENTIAL = "credential"


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class EscalationStatus(StrEnum):
    OPEN = "open"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class Decision(StrEnum):
    """Outcome of evaluating a run; drives the daemon's next transition."""

    PUBLISH = "publish"
    RETRY = "retry"
    ESCALATE = "escalate"
    REPLAN = "replan"


GOAL_TRANSITIONS: dict[GoalStatus, set[GoalStatus]] = {
    GoalStatus.QUEUED: {GoalStatus.ACTIVE, GoalStatus.CANCELLED},
    GoalStatus.ACTIVE: {GoalStatus.COMPLETED, GoalStatus.CANCELLED},
    GoalStatus.COMPLETED: set(),
    GoalStatus.CANCELLED: set(),
}

WORK_ITEM_TRANSITIONS: dict[WorkItemStatus, set[WorkItemStatus]] = {
    WorkItemStatus.QUEUED: {WorkItemStatus.READY, WorkItemStatus.BLOCKED, WorkItemStatus.FAILED},
    WorkItemStatus.READY: {WorkItemStatus.IN_PROGRESS, WorkItemStatus.BLOCKED, WorkItemStatus.FAILED},
    WorkItemStatus.IN_PROGRESS: {
        WorkItemStatus.DONE,
        WorkItemStatus.READY,  # retry
        WorkItemStatus.BLOCKED,
        WorkItemStatus.FAILED,
    },
    WorkItemStatus.BLOCKED: {WorkItemStatus.READY, WorkItemStatus.QUEUED, WorkItemStatus.FAILED},
    WorkItemStatus.DONE: set(),
    WorkItemStatus.FAILED: set(),
}

TERMINAL_WORK_ITEM_STATUSES = {WorkItemStatus.DONE, WorkItemStatus.FAILED}
TERMINAL_GOAL_STATUSES = {GoalStatus.COMPLETED, GoalStatus.CANCELLED}


def validate_goal_transition(current: GoalStatus, target: GoalStatus) -> None:
    """Raise InvalidTransitionError if *current* -> *target* is not allowed.

    Re-asserting the current status is a no-op.
    """
    if current == target:
        return
    if target not in GOAL_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(f"Invalid goal transition: {current} -> {target}")


def validate_work_item_transition(current: WorkItemStatus, target: WorkItemStatus) -> None:
    if current == target:
        return
    if target not in WORK_ITEM_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(f"Invalid work item transition: {current} -> {target}")


# ---------------------------------------------------------------------------
# Error signatures
# ---------------------------------------------------------------------------

_PATH_RE = re.compile(r"/\S+")
_HEX_RE = re.compile(r"0x[0-9a-fA-F]+")
_NUM_RE = re.compile(r"\d+")
_SIGNATURE_SOURCE_LIMIT = 500


def normalize_error_message(message: str) -> str:
    """Strip run-specific noise (paths, addresses, numbers) from an error."""
    normalized = _PATH_RE.sub("<PATH>", message)
    normalized = _HEX_RE.sub("<HEX>", normalized)
    normalized = _NUM_RE.sub("<NUM>", normalized)
    return normalized.lower().strip()[:_SIGNATURE_SOURCE_LIMIT]


def compute_error_signature(message: str | None) -> str | None:
    """Stable 16-char signature so identical failures can be counted."""
    if not message:
        return None
    return hashlib.sha256(normalize_error_message(message).encode()).hexdigest()[:16]


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class SuccessCriterion:
    description: str
    type: str = "manual"  # test | build | lint | manual | custom
    verification_method: str = ""
    required: bool = True


@dataclass
class Goal:
    """Top-level objective; owns its work items."""

    title: str
    description: str = ""
    success_criteria: list[SuccessCriterion] = field(default_factory=list)
    id: str = field(default_factory=lambda: new_id("goal"))
    status: GoalStatus = GoalStatus.QUEUED
    priority: int = 50
    budget_tokens: int | None = None
    budget_time_minutes: float | None = None
    budget_cost_usd: float | None = None
    spent_tokens: int = 0
    spent_time_minutes: float = 0.0
    spent_cost_usd: float = 0.0
    tags: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class WorkItem:
    """A unit of work belonging to a goal, executed by one or more runs."""

    goal_id: str
    title: str
    description: str = ""
    item_type: WorkItemType = WorkItemType.CODE
    id: str = field(default_factory=lambda: new_id("wi"))
    status: WorkItemStatus = WorkItemStatus.QUEUED
    priority: int = 50
    dependencies: list[str] = field(default_factory=list)
    blocks: list[str] = field(default_factory=list)
    estimated_effort: Effort = Effort.M
    retry_count: int = 0
    max_retries: int = 3
    verification_status: VerificationStatus = VerificationStatus.NOT_STARTED
    assigned_agent: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def retries_exhausted(self) -> bool:
        return self.retry_count >= self.max_retries


@dataclass
class Run:
    """One execution attempt of a work item."""

    work_item_id: str
    goal_id: str
    agent_type: str = "default"
    run_sequence: int = 1
    id: str = field(default_factory=lambda: new_id("run"))
    model: str | None = None
    status: RunStatus = RunStatus.RUNNING
    tokens_used: int = 0
    cost_usd: float = 0.0
    time_seconds: float = 0.0
    artifacts: list[str] = field(default_factory=list)
    error_message: str | None = None
    error_signature: str | None = None
    execution_log: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None


@dataclass
class Escalation:
    """A request for human attention on a work item."""

    work_item_id: str
    goal_id: str
    escalation_type: EscalationType
    title: str
    description: str = ""
    severity: Severity = Severity.MEDIUM
    run_id: str | None = None
    id: str = field(default_factory=lambda: new_id("esc"))
    status: EscalationStatus = EscalationStatus.OPEN
    resolution_action: str | None = None
    resolver: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    resolved_at: datetime | None = None
