"""
Stuck detection for work items and runs.

The detector is read-only towards the repository: it inspects time in
state, retry counts, error signatures and the dependency graph, then
reports findings (and publishes them on the event bus). Acting on a finding
(escalating, cancelling a run) is the daemon's job.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING

from loguru import logger

from workfleet.core.events import EventBus

from .events import DEPENDENCY_CYCLE, RUN_STUCK, WORK_ITEM_STUCK
from .graph import find_cycles, index_items, missing_dependencies
from .models import RunStatus, WorkItem, WorkItemStatus, compute_error_signature, utcnow

if TYPE_CHECKING:
    from workfleet.core.config_schema import StuckConfig

    from .collaborators import Repository


class StuckReason(StrEnum):
    TIMEOUT_IN_PROGRESS = "timeout_in_progress"
    TIMEOUT_READY = "timeout_ready"
    REPEATED_SAME_ERROR = "repeated_same_error"
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"
    CIRCULAR_DEPENDENCY = "circular_dependency"
    MISSING_DEPENDENCY = "missing_dependency"
    RUN_TIMEOUT = "run_timeout"
    NO_PROGRESS = "no_progress"


class StuckAction(StrEnum):
    RETRY = "retry"
    ESCALATE = "escalate"
    SKIP = "skip"
    REASSIGN = "reassign"
    SPLIT = "split"
    UNBLOCK_DEPENDENCY = "unblock_dependency"
    INCREASE_TIMEOUT = "increase_timeout"
    CHANGE_APPROACH = "change_approach"


SUGGESTED_ACTIONS: dict[StuckReason, list[StuckAction]] = {
    StuckReason.TIMEOUT_IN_PROGRESS: [StuckAction.INCREASE_TIMEOUT, StuckAction.ESCALATE, StuckAction.SKIP],
    StuckReason.TIMEOUT_READY: [StuckAction.REASSIGN, StuckAction.ESCALATE],
    StuckReason.REPEATED_SAME_ERROR: [StuckAction.CHANGE_APPROACH, StuckAction.ESCALATE, StuckAction.SKIP],
    StuckReason.MAX_RETRIES_EXCEEDED: [StuckAction.ESCALATE, StuckAction.SKIP, StuckAction.CHANGE_APPROACH],
    StuckReason.CIRCULAR_DEPENDENCY: [StuckAction.UNBLOCK_DEPENDENCY, StuckAction.ESCALATE],
    StuckReason.MISSING_DEPENDENCY: [StuckAction.UNBLOCK_DEPENDENCY, StuckAction.ESCALATE],
    StuckReason.RUN_TIMEOUT: [StuckAction.INCREASE_TIMEOUT, StuckAction.SPLIT, StuckAction.ESCALATE],
    StuckReason.NO_PROGRESS: [StuckAction.CHANGE_APPROACH, StuckAction.SPLIT, StuckAction.ESCALATE],
}

# Retrying cannot fix these; they always need a human.
STRUCTURAL_REASONS = frozenset(
    {StuckReason.CIRCULAR_DEPENDENCY, StuckReason.MISSING_DEPENDENCY, StuckReason.REPEATED_SAME_ERROR}
)

_WATCHED_STATUSES = (WorkItemStatus.QUEUED, WorkItemStatus.READY, WorkItemStatus.IN_PROGRESS)

_FIX_HINTS: list[tuple[tuple[str, ...], str]] = [
    (("timeout", "timed out"), "Increase the run timeout or split the work item into smaller pieces"),
    (("permission", "denied", "unauthorized", "forbidden"), "Check credentials and file permissions for the agent"),
    (
        ("module not found", "no module named", "cannot find module", "dependency", "import"),
        "Install or declare the missing dependency",
    ),
    (("syntax",), "Fix the syntax error reported in the last run before retrying"),
]


@dataclass(frozen=True)
class StuckDetectionConfig:
    max_in_progress_duration_ms: int = 30 * 60 * 1000
    max_ready_duration_ms: int = 60 * 60 * 1000
    max_same_error_retries: int = 3
    max_total_retries: int = 5
    check_interval_ms: int = 60 * 1000
    auto_escalate: bool = True

    @classmethod
    def from_settings(cls, settings: StuckConfig) -> StuckDetectionConfig:
        return cls(**settings.model_dump())


@dataclass
class StuckWorkItem:
    work_item_id: str
    goal_id: str
    title: str
    status: WorkItemStatus
    reason: StuckReason
    details: str
    detected_at: datetime
    time_in_state_ms: int = 0
    retry_count: int = 0
    last_error: str | None = None
    suggested_actions: list[StuckAction] = field(default_factory=list)

    @property
    def recommended_action(self) -> StuckAction | None:
        return self.suggested_actions[0] if self.suggested_actions else None

    @property
    def requires_escalation(self) -> bool:
        if self.reason in STRUCTURAL_REASONS:
            return True
        return StuckAction.ESCALATE in self.suggested_actions and StuckAction.RETRY not in self.suggested_actions


@dataclass
class StuckRun:
    run_id: str
    work_item_id: str
    goal_id: str
    reason: StuckReason
    running_for_ms: int
    detected_at: datetime
    suggested_actions: list[StuckAction] = field(default_factory=list)


@dataclass
class ErrorPattern:
    signature: str
    count: int
    sample_message: str
    first_seen: datetime
    last_seen: datetime


@dataclass
class ErrorPatternAnalysis:
    work_item_id: str
    patterns: list[ErrorPattern]
    is_repeating: bool
    suggested_fix: str | None = None


def _ms_between(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() * 1000)


class StuckDetector:
    """Flags work items and runs that stopped making progress."""

    def __init__(
        self,
        repository: Repository,
        config: StuckDetectionConfig | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._repo = repository
        self._config = config or StuckDetectionConfig()
        self._bus = event_bus
        self._clock = clock
        self._acknowledged: dict[str, datetime] = {}
        self._last_check: datetime | None = None

    @property
    def config(self) -> StuckDetectionConfig:
        return self._config

    def update_config(self, **changes) -> StuckDetectionConfig:
        self._config = replace(self._config, **changes)
        logger.info(f"Stuck detection config updated: {changes}")
        return self._config

    # -- acknowledgement -----------------------------------------------------

    def acknowledge_stuck(self, work_item_id: str, duration_ms: int = 30 * 60 * 1000) -> None:
        """Suppress reports for *work_item_id* for *duration_ms*."""
        self._acknowledged[work_item_id] = self._clock() + timedelta(milliseconds=duration_ms)

    def is_acknowledged(self, work_item_id: str) -> bool:
        until = self._acknowledged.get(work_item_id)
        if until is None:
            return False
        if self._clock() >= until:
            del self._acknowledged[work_item_id]
            return False
        return True

    # -- work items ----------------------------------------------------------

    async def check_work_item(self, work_item_id: str) -> StuckWorkItem | None:
        item = self._repo.get_work_item(work_item_id)
        if item is None:
            return None
        siblings = index_items(self._repo.get_work_items_by_goal(item.goal_id))
        return self._evaluate(item, siblings)

    async def check_all_work_items(self, goal_id: str | None = None, force: bool = False) -> list[StuckWorkItem]:
        """Check every watched item, at most once per check interval.

        Returns an empty list when throttled.
        """
        now = self._clock()
        if (
            not force
            and self._last_check is not None
            and _ms_between(self._last_check, now) < self._config.check_interval_ms
        ):
            return []
        self._last_check = now

        watched: list[WorkItem] = []
        for status in _WATCHED_STATUSES:
            watched.extend(self._repo.get_work_items_by_status(status, goal_id))

        stuck: list[StuckWorkItem] = []
        reported: set[str] = set()
        siblings_by_goal: dict[str, dict[str, WorkItem]] = {}

        for item in watched:
            if self.is_acknowledged(item.id):
                continue
            if item.goal_id not in siblings_by_goal:
                siblings_by_goal[item.goal_id] = index_items(self._repo.get_work_items_by_goal(item.goal_id))
            finding = self._evaluate(item, siblings_by_goal[item.goal_id])
            if finding is not None:
                stuck.append(finding)
                reported.add(item.id)

        for gid, siblings in siblings_by_goal.items():
            for cycle in self._cycles(siblings):
                head = siblings[cycle[0]]
                if head.id in reported or self.is_acknowledged(head.id):
                    continue
                path = " -> ".join([*cycle, cycle[0]])
                stuck.append(self._finding(head, StuckReason.CIRCULAR_DEPENDENCY, f"Circular dependency: {path}", now))
                reported.add(head.id)
                await self._emit(DEPENDENCY_CYCLE, {"goal_id": gid, "cycle": cycle})

        for finding in stuck:
            logger.warning(f"Work item {finding.work_item_id} stuck ({finding.reason}): {finding.details}")
            await self._emit(
                WORK_ITEM_STUCK,
                {
                    "work_item_id": finding.work_item_id,
                    "goal_id": finding.goal_id,
                    "reason": str(finding.reason),
                    "suggested_actions": [str(a) for a in finding.suggested_actions],
                },
            )
        return stuck

    def _evaluate(self, item: WorkItem, siblings: dict[str, WorkItem]) -> StuckWorkItem | None:
        cfg = self._config
        now = self._clock()
        in_state_ms = _ms_between(item.updated_at, now)

        if item.status == WorkItemStatus.IN_PROGRESS and in_state_ms > cfg.max_in_progress_duration_ms:
            return self._finding(
                item,
                StuckReason.TIMEOUT_IN_PROGRESS,
                f"In progress for {in_state_ms // 60000} min (limit {cfg.max_in_progress_duration_ms // 60000} min)",
                now,
            )
        if item.status == WorkItemStatus.READY and in_state_ms > cfg.max_ready_duration_ms:
            return self._finding(
                item,
                StuckReason.TIMEOUT_READY,
                f"Ready but not picked up for {in_state_ms // 60000} min",
                now,
            )
        if item.retry_count >= cfg.max_total_retries:
            return self._finding(
                item,
                StuckReason.MAX_RETRIES_EXCEEDED,
                f"Retried {item.retry_count} times (limit {cfg.max_total_retries})",
                now,
            )

        repeated = self._repo.get_repeated_error_signatures(item.id, cfg.max_same_error_retries)
        if repeated:
            signature, count = max(repeated.items(), key=lambda kv: kv[1])
            return self._finding(
                item,
                StuckReason.REPEATED_SAME_ERROR,
                f"Same error {signature} seen {count} times",
                now,
                last_error=self._last_error(item.id),
            )

        missing = missing_dependencies(item, siblings)
        if missing:
            return self._finding(
                item,
                StuckReason.MISSING_DEPENDENCY,
                f"Depends on unknown work items: {', '.join(missing)}",
                now,
            )
        return None

    def _finding(
        self,
        item: WorkItem,
        reason: StuckReason,
        details: str,
        now: datetime,
        last_error: str | None = None,
    ) -> StuckWorkItem:
        actions = list(SUGGESTED_ACTIONS[reason])
        if item.retry_count < item.max_retries:
            actions.insert(0, StuckAction.RETRY)
        return StuckWorkItem(
            work_item_id=item.id,
            goal_id=item.goal_id,
            title=item.title,
            status=item.status,
            reason=reason,
            details=details,
            detected_at=now,
            time_in_state_ms=_ms_between(item.updated_at, now),
            retry_count=item.retry_count,
            last_error=last_error,
            suggested_actions=actions,
        )

    def _last_error(self, work_item_id: str) -> str | None:
        for run in reversed(self._repo.get_runs_by_work_item(work_item_id)):
            if run.error_message:
                return run.error_message
        return None

    # -- runs ----------------------------------------------------------------

    async def check_run(self, run_id: str) -> StuckRun | None:
        run = self._repo.get_run(run_id)
        if run is None or run.status != RunStatus.RUNNING:
            return None
        now = self._clock()
        running_for = _ms_between(run.created_at, now)
        if running_for <= self._config.max_in_progress_duration_ms:
            return None
        return StuckRun(
            run_id=run.id,
            work_item_id=run.work_item_id,
            goal_id=run.goal_id,
            reason=StuckReason.RUN_TIMEOUT,
            running_for_ms=running_for,
            detected_at=now,
            suggested_actions=list(SUGGESTED_ACTIONS[StuckReason.RUN_TIMEOUT]),
        )

    async def check_all_runs(self, goal_id: str | None = None) -> list[StuckRun]:
        stuck: list[StuckRun] = []
        for run in self._repo.get_runs_by_status(RunStatus.RUNNING, goal_id):
            finding = await self.check_run(run.id)
            if finding is None:
                continue
            stuck.append(finding)
            logger.warning(f"Run {finding.run_id} for {finding.work_item_id} running for {finding.running_for_ms} ms")
            await self._emit(
                RUN_STUCK,
                {"run_id": finding.run_id, "work_item_id": finding.work_item_id, "goal_id": finding.goal_id},
            )
        return stuck

    # -- graph and error analysis --------------------------------------------

    def detect_circular_dependencies(self, goal_id: str) -> list[list[str]]:
        return self._cycles(index_items(self._repo.get_work_items_by_goal(goal_id)))

    @staticmethod
    def _cycles(items: dict[str, WorkItem]) -> list[list[str]]:
        live = {k: v for k, v in items.items() if v.status not in (WorkItemStatus.DONE, WorkItemStatus.FAILED)}
        return find_cycles(live)

    def analyze_error_patterns(self, work_item_id: str) -> ErrorPatternAnalysis:
        grouped: dict[str, ErrorPattern] = {}
        for run in self._repo.get_runs_by_work_item(work_item_id):
            if run.status != RunStatus.FAILURE or not run.error_message:
                continue
            signature = run.error_signature or compute_error_signature(run.error_message)
            seen_at = run.completed_at or run.created_at
            pattern = grouped.get(signature)
            if pattern is None:
                grouped[signature] = ErrorPattern(signature, 1, run.error_message, seen_at, seen_at)
            else:
                pattern.count += 1
                pattern.first_seen = min(pattern.first_seen, seen_at)
                pattern.last_seen = max(pattern.last_seen, seen_at)

        patterns = sorted(grouped.values(), key=lambda p: p.count, reverse=True)
        is_repeating = any(p.count >= self._config.max_same_error_retries for p in patterns)
        suggested_fix = _suggest_fix(patterns[0].sample_message) if patterns else None
        return ErrorPatternAnalysis(work_item_id, patterns, is_repeating, suggested_fix)

    async def _emit(self, name: str, payload: dict) -> None:
        if self._bus is not None:
            await self._bus.publish(name, payload, source="stuck_detector")


def _suggest_fix(message: str) -> str | None:
    lowered = message.lower()
    for keywords, hint in _FIX_HINTS:
        if any(k in lowered for k in keywords):
            return hint
    return None
