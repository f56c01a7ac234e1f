"""OrchestrationDaemon — the scheduling loop that drives goals to completion.

Each cycle:
1. Plan queued goals into work items (rejecting invalid plans).
2. Promote queued items whose dependencies are done.
3. Sweep for stuck items and runs.
4. Dispatch up to ``max_concurrent_runs - active`` ready items concurrently.
5. Sleep ``polling_interval_ms`` if nothing was dispatched.

Per item: in_progress -> run -> verification -> evaluation -> decision
(publish / retry / escalate / replan). The active-run registry keyed by
work item id is the only source of truth for what is in flight: at most one
handle per item, at most ``max_concurrent_runs`` handles overall.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum
from time import monotonic
from typing import TYPE_CHECKING, Any

from loguru import logger

from workfleet.core.events import EventBus
from workfleet.core.exceptions import CollaboratorError, ConfigurationError, NotFoundError, WorkfleetError

from .budget import BudgetTracker, WarningLevel
from .collaborators import (
    EvaluationResult,
    EvaluationService,
    ExecutionContext,
    ExecutionResult,
    ExecutionService,
    PlanningService,
    Repository,
    RunCompletion,
    VerificationResult,
    VerificationService,
)
from .evaluation import RuleBasedEvaluator
from .events import (
    ALL_EVENT_TYPES,
    BUDGET_EXCEEDED,
    BUDGET_WARNING,
    CYCLE_FAILED,
    DAEMON_STARTED,
    DAEMON_STOPPED,
    DECISION_APPLIED,
    ESCALATION_CREATED,
    GOAL_ACTIVATED,
    GOAL_CANCELLED,
    GOAL_COMPLETED,
    GOAL_PLAN_REJECTED,
    GOAL_PLANNING_FAILED,
    RUN_COMPLETED,
    RUN_STARTED,
    WORK_ITEM_DISPATCHED,
    WORK_ITEM_STATUS_CHANGED,
)
from .graph import build_blocks
from .invariants import validate_goal, validate_plan
from .model_selector import ModelSelector, load_model_tier_config
from .models import (
    TERMINAL_GOAL_STATUSES,
    TERMINAL_WORK_ITEM_STATUSES,
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
    utcnow,
)
from .stuck import StuckDetectionConfig, StuckDetector, StuckReason, StuckWorkItem

if TYPE_CHECKING:
    from workfleet.core.config import Config
    from workfleet.core.config_schema import OrchestratorConfig, StuckConfig


class BudgetPolicy(StrEnum):
    BLOCK = "block"
    WARN = "warn"


@dataclass
class DaemonConfig:
    max_concurrent_runs: int = 3
    polling_interval_ms: int = 5000
    goal_id: str | None = None  # restrict the daemon to one goal
    agent_type: str = "default"
    run_timeout_seconds: float | None = None
    budget_policy: BudgetPolicy = BudgetPolicy.BLOCK
    estimated_tokens_per_run: int = 0
    estimated_cost_per_run: float = 0.0
    max_same_error_retries: int = 3

    def __post_init__(self) -> None:
        if self.max_concurrent_runs < 1:
            raise ConfigurationError(f"max_concurrent_runs must be >= 1, got {self.max_concurrent_runs}")
        if self.polling_interval_ms < 0:
            raise ConfigurationError("polling_interval_ms must not be negative")
        self.budget_policy = BudgetPolicy(self.budget_policy)

    @classmethod
    def from_settings(cls, orchestrator: OrchestratorConfig, stuck: StuckConfig | None = None) -> DaemonConfig:
        return cls(
            max_concurrent_runs=orchestrator.max_concurrent_runs,
            polling_interval_ms=orchestrator.polling_interval_ms,
            goal_id=orchestrator.goal_id,
            agent_type=orchestrator.agent_type,
            run_timeout_seconds=orchestrator.run_timeout_seconds,
            budget_policy=BudgetPolicy(orchestrator.budget_policy),
            estimated_tokens_per_run=orchestrator.estimated_tokens_per_run,
            estimated_cost_per_run=orchestrator.estimated_cost_per_run,
            max_same_error_retries=stuck.max_same_error_retries if stuck else 3,
        )


@dataclass
class RunHandle:
    """Cancellation handle for one in-flight work item."""

    work_item_id: str
    goal_id: str
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None
    run_id: str | None = None
    cancel_reason: str | None = None
    release_status: WorkItemStatus = WorkItemStatus.READY
    started_at: float = field(default_factory=monotonic)

    @property
    def cancelled(self) -> bool:
        # a run timeout signals the executor through cancel_event without cancelling the handle
        return self.cancel_reason is not None

    def cancel(self, reason: str, release_status: WorkItemStatus = WorkItemStatus.READY) -> None:
        self.cancel_reason = reason
        self.release_status = release_status
        self.cancel_event.set()
        if self.task is not None and not self.task.done():
            self.task.cancel()


@dataclass
class DaemonStatus:
    running: bool
    active_runs: list[str]
    cycle_count: int
    error_count: int
    last_cycle_at: datetime | None


_STUCK_ESCALATION_TYPES = {
    StuckReason.CIRCULAR_DEPENDENCY: EscalationType.CIRCULAR_DEPENDENCY,
    StuckReason.MISSING_DEPENDENCY: EscalationType.MISSING_DEPENDENCY,
}


class OrchestrationDaemon:
    """Concurrency-bounded scheduler for goals and their work items."""

    def __init__(
        self,
        repository: Repository,
        planner: PlanningService,
        executor: ExecutionService,
        verifier: VerificationService,
        evaluator: EvaluationService,
        config: DaemonConfig | None = None,
        *,
        budget_tracker: BudgetTracker | None = None,
        model_selector: ModelSelector | None = None,
        stuck_detector: StuckDetector | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._repo = repository
        self._planner = planner
        self._executor = executor
        self._verifier = verifier
        self._evaluator = evaluator
        self._config = config or DaemonConfig()
        self._budget = budget_tracker or BudgetTracker()
        self._selector = model_selector or ModelSelector()
        self._stuck = stuck_detector
        self._bus = event_bus or EventBus(known_events=ALL_EVENT_TYPES)

        self._active_runs: dict[str, RunHandle] = {}
        self._budget_levels: dict[str, WarningLevel] = {}
        self._running = False
        self._stopping = False
        self._wake: asyncio.Event | None = None
        self._watchdog: asyncio.Task | None = None
        self._cycle_count = 0
        self._error_count = 0
        self._last_cycle_at: datetime | None = None

    # -- properties ----------------------------------------------------------

    @property
    def config(self) -> DaemonConfig:
        return self._config

    @property
    def event_bus(self) -> EventBus:
        return self._bus

    @property
    def budget_tracker(self) -> BudgetTracker:
        return self._budget

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def active_runs(self) -> Mapping[str, RunHandle]:
        return dict(self._active_runs)

    def status(self) -> DaemonStatus:
        return DaemonStatus(
            running=self._running,
            active_runs=sorted(self._active_runs),
            cycle_count=self._cycle_count,
            error_count=self._error_count,
            last_cycle_at=self._last_cycle_at,
        )

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Run the loop until stop() is called."""
        if self._running:
            logger.warning("Orchestration daemon already running")
            return

        self._repo.initialize()
        self._running = True
        self._stopping = False
        self._wake = asyncio.Event()
        self._recover_orphans()

        logger.info(
            f"Orchestration daemon started (max_concurrent_runs={self._config.max_concurrent_runs}, "
            f"polling_interval_ms={self._config.polling_interval_ms}, goal={self._config.goal_id or 'all'})"
        )
        await self._emit(DAEMON_STARTED, {"max_concurrent_runs": self._config.max_concurrent_runs})

        if self._stuck is not None:
            self._watchdog = asyncio.create_task(self._watch_stuck(), name="workfleet-stuck-watchdog")

        try:
            while self._running:
                dispatched = 0
                try:
                    dispatched = await self.run_cycle()
                except Exception as e:
                    self._error_count += 1
                    logger.error(f"Orchestration cycle {self._cycle_count} failed: {e}")
                    await self._emit(CYCLE_FAILED, {"cycle": self._cycle_count, "error": str(e)})
                if not self._running:
                    break
                if dispatched == 0:
                    await self._idle()
        finally:
            self._running = False
            if self._watchdog is not None:
                self._watchdog.cancel()
                self._watchdog = None
            logger.info(f"Orchestration daemon stopped after {self._cycle_count} cycles")
            await self._emit(DAEMON_STOPPED, {"cycles": self._cycle_count, "errors": self._error_count})

    def stop(self) -> None:
        """Abort every active run and release resources. Safe to call twice."""
        if not self._running and not self._active_runs:
            return
        self._running = False
        self._stopping = True

        handles = list(self._active_runs.values())
        if handles:
            logger.info(f"Stopping daemon: aborting {len(handles)} active runs")
        for handle in handles:
            handle.cancel("Daemon stopping")
        self._active_runs.clear()

        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None
        if self._wake is not None:
            self._wake.set()
        self._repo.close()

    async def _idle(self) -> None:
        interval = self._config.polling_interval_ms / 1000
        if self._wake is None:
            await asyncio.sleep(interval)
            return
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=interval)
        except TimeoutError:
            pass

    async def _watch_stuck(self) -> None:
        # Runs alongside the cycle so in-flight runs get checked too
        while self._running:
            interval = max(self._stuck.config.check_interval_ms / 1000, 0.05)
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=interval)
            except TimeoutError:
                pass
            if not self._running:
                break
            try:
                await self._sweep_stuck()
            except Exception as e:
                logger.error(f"Stuck sweep failed: {e}")

    def _recover_orphans(self) -> None:
        """Release items and runs left in flight by a previous process."""
        for run in self._repo.get_runs_by_status(RunStatus.RUNNING, self._config.goal_id):
            self._repo.complete_run(run.id, RunCompletion.failure("Run interrupted before completion"))
            logger.warning(f"Closed orphaned run {run.id} for {run.work_item_id}")
        for item in self._repo.get_work_items_by_status(WorkItemStatus.IN_PROGRESS, self._config.goal_id):
            if item.id not in self._active_runs:
                self._repo.update_work_item_status(item.id, WorkItemStatus.READY)
                logger.warning(f"Recovered orphaned work item {item.id} -> ready")

    # -- cycle ---------------------------------------------------------------

    async def run_cycle(self) -> int:
        """Run one scheduling cycle. Returns the number of items dispatched."""
        self._cycle_count += 1
        self._last_cycle_at = utcnow()

        await self._plan_queued_goals()
        await self._promote_ready_items()
        if self._stuck is not None:
            await self._sweep_stuck()
        if self._stopping:
            return 0
        return await self._dispatch()

    # planning

    async def _plan_queued_goals(self) -> None:
        for goal in self._scoped_goals(GoalStatus.QUEUED):
            if self._stopping:
                return
            await self._plan_goal(goal)

    async def _plan_goal(self, goal: Goal) -> bool:
        violations = validate_goal(goal)
        if violations:
            await self._reject_plan(goal, [str(v) for v in violations])
            return False

        try:
            plan = await self._planner.plan_work_items(goal)
        except Exception as e:
            logger.error(f"Planning failed for goal {goal.id}: {e}")
            await self._emit(GOAL_PLANNING_FAILED, {"goal_id": goal.id, "error": str(e)})
            return False

        items = list(plan.work_items)
        if not items:
            logger.warning(f"Planning produced no work items for goal {goal.id}; leaving it queued")
            await self._emit(GOAL_PLANNING_FAILED, {"goal_id": goal.id, "error": "no work items"})
            return False

        for item in items:
            if item.id in plan.dependencies:
                item.dependencies = list(plan.dependencies[item.id])
            item.status = WorkItemStatus.QUEUED
        build_blocks(items)

        violations = [str(v) for v in validate_plan(items, goal_ids={goal.id})]
        violations.extend(
            f"{item.id}: id: work item {item.id} already exists"
            for item in items
            if self._repo.get_work_item(item.id) is not None
        )
        if violations:
            await self._reject_plan(goal, violations)
            return False

        try:
            self._repo.create_work_items(items)
            self._repo.update_goal_status(goal.id, GoalStatus.ACTIVE)
        except WorkfleetError as e:
            logger.error(f"Could not store plan for goal {goal.id}: {e}")
            await self._emit(GOAL_PLANNING_FAILED, {"goal_id": goal.id, "error": str(e)})
            return False
        self._ensure_usage_callback(goal.id)
        logger.info(f"Goal {goal.id} ({goal.title}) active with {len(items)} work items")
        await self._emit(GOAL_ACTIVATED, {"goal_id": goal.id, "work_items": [i.id for i in items]})
        return True

    async def _reject_plan(self, goal: Goal, violations: list[str]) -> None:
        logger.warning(f"Rejected plan for goal {goal.id} ({len(violations)} violations): {violations[0]}")
        await self._emit(GOAL_PLAN_REJECTED, {"goal_id": goal.id, "violations": violations})

    # promotion

    async def _promote_ready_items(self) -> None:
        for goal in self._scoped_goals(GoalStatus.ACTIVE):
            self._ensure_usage_callback(goal.id)
            for item in self._repo.get_work_items_by_status(WorkItemStatus.QUEUED, goal.id):
                await self._promote(item.id)
            await self._maybe_complete_goal(goal.id)

    async def _promote(self, work_item_id: str) -> bool:
        if not self._repo.update_work_item_status_if_dependencies_met(work_item_id):
            return False
        logger.debug(f"Work item {work_item_id} ready")
        await self._emit(
            WORK_ITEM_STATUS_CHANGED,
            {"work_item_id": work_item_id, "from": str(WorkItemStatus.QUEUED), "to": str(WorkItemStatus.READY)},
        )
        return True

    # stuck handling

    async def _sweep_stuck(self) -> None:
        detector = self._stuck
        for finding in await detector.check_all_work_items(self._config.goal_id):
            handle = self._active_runs.get(finding.work_item_id)
            if finding.requires_escalation:
                if detector.config.auto_escalate:
                    await self._escalate_stuck(finding, handle)
            elif finding.reason == StuckReason.TIMEOUT_IN_PROGRESS:
                if handle is not None:
                    self.cancel_run(finding.work_item_id, f"Stuck: {finding.details}")
                else:
                    await self._transition(finding.work_item_id, WorkItemStatus.READY)
                detector.acknowledge_stuck(finding.work_item_id)

        for stuck_run in await detector.check_all_runs(self._config.goal_id):
            handle = self._active_runs.get(stuck_run.work_item_id)
            if handle is not None and handle.run_id == stuck_run.run_id:
                self.cancel_run(stuck_run.work_item_id, f"Run exceeded {stuck_run.running_for_ms} ms")
            elif handle is None:
                self._repo.complete_run(stuck_run.run_id, RunCompletion.failure("Run orphaned"))
                logger.warning(f"Closed orphaned run {stuck_run.run_id}")

    async def _escalate_stuck(self, finding: StuckWorkItem, handle: RunHandle | None) -> None:
        if self._repo.get_open_escalations(work_item_id=finding.work_item_id):
            self._stuck.acknowledge_stuck(finding.work_item_id)
            return

        escalation = self._repo.create_escalation(
            work_item_id=finding.work_item_id,
            goal_id=finding.goal_id,
            escalation_type=_STUCK_ESCALATION_TYPES.get(finding.reason, EscalationType.STUCK),
            title=f"Work item stuck: {finding.title}",
            description=finding.details,
            severity=Severity.HIGH,
            run_id=handle.run_id if handle else None,
            context={
                "reason": str(finding.reason),
                "retry_count": finding.retry_count,
                "last_error": finding.last_error,
                "suggested_actions": [str(a) for a in finding.suggested_actions],
            },
        )
        if handle is not None:
            self.cancel_run(finding.work_item_id, f"Escalated: {finding.details}", WorkItemStatus.BLOCKED)
        else:
            await self._transition(finding.work_item_id, WorkItemStatus.BLOCKED)
        self._stuck.acknowledge_stuck(finding.work_item_id)
        await self._announce_escalation(escalation)

    # dispatch

    async def _dispatch(self) -> int:
        available = self._config.max_concurrent_runs - len(self._active_runs)
        if available <= 0:
            logger.debug(f"All {self._config.max_concurrent_runs} run slots busy")
            return 0

        goals: dict[str, Goal | None] = {}
        # estimated spend of items already picked this round, per goal
        reserved: dict[str, tuple[int, float]] = {}
        selected: list[tuple[WorkItem, Goal]] = []
        for item in self._repo.get_ready_work_items(self._config.goal_id):
            if len(selected) >= available:
                break
            if item.id in self._active_runs:
                continue
            if item.goal_id not in goals:
                goals[item.goal_id] = self._repo.get_goal(item.goal_id)
            goal = goals[item.goal_id]
            if goal is None or goal.status != GoalStatus.ACTIVE:
                continue
            tokens, cost = reserved.get(goal.id, (0, 0.0))
            tokens += self._config.estimated_tokens_per_run
            cost += self._config.estimated_cost_per_run
            if not await self._budget_allows(goal, item, tokens, cost):
                continue
            reserved[goal.id] = (tokens, cost)
            selected.append((item, goal))

        if not selected:
            return 0

        handles: list[RunHandle] = []
        for item, goal in selected:
            handle = RunHandle(work_item_id=item.id, goal_id=item.goal_id)
            self._active_runs[item.id] = handle
            handle.task = asyncio.create_task(self._execute_work_item(item, goal, handle), name=f"work-item-{item.id}")
            handles.append(handle)

        logger.info(f"Dispatched {len(handles)} work items ({len(self._active_runs)} active)")
        results = await asyncio.gather(*(h.task for h in handles), return_exceptions=True)

        for handle, result in zip(handles, results, strict=True):
            # a task cancelled before it started never reaches its finally
            if self._active_runs.get(handle.work_item_id) is handle:
                del self._active_runs[handle.work_item_id]
            if isinstance(result, asyncio.CancelledError) and handle.cancelled and not self._stopping:
                await self._release_unstarted(handle)
            elif isinstance(result, Exception):
                logger.error(f"Work item {handle.work_item_id} crashed: {result}")
        return len(handles)

    async def _budget_allows(self, goal: Goal, item: WorkItem, estimated_tokens: int, estimated_cost: float) -> bool:
        status = self._budget.get_budget_status(goal)
        previous = self._budget_levels.get(goal.id, WarningLevel.NONE)
        self._budget_levels[goal.id] = status.warning_level
        if status.warning_level in (WarningLevel.WARNING, WarningLevel.CRITICAL) and status.warning_level != previous:
            logger.warning(
                f"Goal {goal.id} budget {status.warning_level}: {self._budget.format_budget_info(status.budget)}"
            )
            await self._emit(BUDGET_WARNING, {"goal_id": goal.id, "level": str(status.warning_level)})

        will_exceed = self._budget.will_exceed_budget(goal, estimated_tokens, estimated_cost)
        if not status.exceeded and not will_exceed:
            return True

        payload = {
            "goal_id": goal.id,
            "work_item_id": item.id,
            "policy": str(self._config.budget_policy),
            "violations": [v.resource for v in status.check_result.violations],
        }
        await self._emit(BUDGET_EXCEEDED, payload)

        if self._config.budget_policy == BudgetPolicy.WARN:
            logger.warning(f"Goal {goal.id} is over budget; dispatching {item.id} anyway (policy=warn)")
            return True

        logger.warning(f"Goal {goal.id} is over budget; blocking {item.id}")
        if not self._repo.get_open_escalations(work_item_id=item.id):
            escalation = self._repo.create_escalation(
                work_item_id=item.id,
                goal_id=goal.id,
                escalation_type=EscalationType.BUDGET_EXCEEDED,
                title=f"Budget exceeded: {goal.title}",
                description=self._budget.format_budget_info(status.budget),
                severity=Severity.CRITICAL,
                context={"violations": payload["violations"], "will_exceed": will_exceed},
            )
            await self._announce_escalation(escalation)
        await self._transition(item.id, WorkItemStatus.BLOCKED)
        return False

    # -- per-item execution --------------------------------------------------

    async def _execute_work_item(self, item: WorkItem, goal: Goal, handle: RunHandle) -> None:
        run: Run | None = None
        try:
            await self._transition(item.id, WorkItemStatus.IN_PROGRESS)
            selection = self._selector.select_model(item)
            run = self._repo.create_run(
                item.id,
                item.goal_id,
                agent_type=item.assigned_agent or self._config.agent_type,
                model=selection.model,
            )
            handle.run_id = run.id
            logger.info(f"Run {run.id} #{run.run_sequence} for {item.id} on {selection.model} ({selection.tier})")
            await self._emit(
                WORK_ITEM_DISPATCHED,
                {"work_item_id": item.id, "goal_id": item.goal_id, "model": selection.model, "tier": str(selection.tier)},
            )
            await self._emit(RUN_STARTED, {"run_id": run.id, "work_item_id": item.id, "goal_id": item.goal_id})

            context = ExecutionContext(
                model=selection,
                cancel_event=handle.cancel_event,
                budget=self._budget.get_budget_status(goal),
            )
            result = await self._invoke_executor(item, run, context, handle)
            run = self._repo.complete_run(run.id, RunCompletion.from_execution(result))
            await self._emit(
                RUN_COMPLETED,
                {"run_id": run.id, "work_item_id": item.id, "goal_id": item.goal_id, "status": str(run.status)},
            )
            await self._budget.record_usage(
                run.goal_id, run.tokens_used, run.time_seconds, run.cost_usd, usage_key=run.id
            )

            verification = await self._verify(item, run, result)
            evaluation = await self._evaluator.evaluate_run(item, run, verification)
            evaluation = self._enforce_exhaustion(item, evaluation)
            await self._apply_decision(item, run, verification, evaluation)
        except asyncio.CancelledError:
            if self._stopping:
                raise
            current = asyncio.current_task()
            if current is not None:
                current.uncancel()
            await self._release_cancelled(item, run, handle)
        except Exception as e:
            logger.error(f"Work item {item.id} failed: {e}")
            await self._fail_item(item, run, e)
        finally:
            if self._active_runs.get(item.id) is handle:
                del self._active_runs[item.id]

    async def _invoke_executor(
        self, item: WorkItem, run: Run, context: ExecutionContext, handle: RunHandle
    ) -> ExecutionResult:
        started = monotonic()
        timeout = self._config.run_timeout_seconds
        coro = self._executor.execute_work_item(item, run, context)
        if timeout:
            try:
                result = await asyncio.wait_for(coro, timeout=timeout)
            except TimeoutError:
                handle.cancel_event.set()
                logger.warning(f"Run {run.id} for {item.id} timed out after {timeout}s")
                return ExecutionResult(
                    success=False,
                    time_seconds=monotonic() - started,
                    error_message=f"Run timed out after {timeout}s",
                )
        else:
            result = await coro
        if not isinstance(result, ExecutionResult):
            raise CollaboratorError(f"Executor returned {type(result).__name__} for {item.id}")
        if result.time_seconds <= 0:
            result = replace(result, time_seconds=monotonic() - started)
        return result

    async def _verify(self, item: WorkItem, run: Run, result: ExecutionResult) -> VerificationResult:
        if not result.success:
            self._repo.update_verification_status(item.id, VerificationStatus.SKIPPED)
            return VerificationResult(passed=False, failure_reason=result.error_message or "Execution failed")
        verification = await self._verifier.verify_work_item(item, run)
        if not isinstance(verification, VerificationResult):
            raise CollaboratorError(f"Verifier returned {type(verification).__name__} for {item.id}")
        self._repo.update_verification_status(
            item.id, VerificationStatus.PASSED if verification.passed else VerificationStatus.FAILED
        )
        return verification

    def _enforce_exhaustion(self, item: WorkItem, evaluation: EvaluationResult) -> EvaluationResult:
        """Turn a retry into an escalation once retries or patience run out."""
        if evaluation.decision != Decision.RETRY:
            return evaluation
        if item.retries_exhausted:
            return replace(
                evaluation,
                decision=Decision.ESCALATE,
                reasoning=f"{evaluation.reasoning}; retries exhausted ({item.retry_count}/{item.max_retries})",
            )
        repeated = self._repo.get_repeated_error_signatures(item.id, self._config.max_same_error_retries)
        if repeated:
            return replace(
                evaluation,
                decision=Decision.ESCALATE,
                reasoning=f"{evaluation.reasoning}; same error repeated {max(repeated.values())} times",
            )
        return evaluation

    async def _apply_decision(
        self, item: WorkItem, run: Run, verification: VerificationResult, evaluation: EvaluationResult
    ) -> None:
        decision = evaluation.decision
        logger.info(f"Work item {item.id}: {decision} ({evaluation.reasoning})")

        if decision == Decision.PUBLISH:
            await self._transition(item.id, WorkItemStatus.DONE)
            for dependent in self._repo.get_blocked_work_items(item.id):
                await self._promote(dependent.id)
            await self._maybe_complete_goal(item.goal_id)
        elif decision == Decision.RETRY:
            self._repo.increment_work_item_retry(item.id)
            await self._transition(item.id, WorkItemStatus.READY)
        elif decision == Decision.ESCALATE:
            validation_failed = run.status == RunStatus.SUCCESS and not verification.passed
            escalation = self._repo.create_escalation(
                work_item_id=item.id,
                goal_id=item.goal_id,
                escalation_type=EscalationType.VALIDATION_FAILED if validation_failed else EscalationType.STUCK,
                title=f"Verification failed: {item.title}" if validation_failed else f"Work item stuck: {item.title}",
                description=evaluation.reasoning,
                severity=Severity.HIGH,
                run_id=run.id,
                context={
                    "error_signature": run.error_signature,
                    "retry_count": item.retry_count,
                    "last_error": run.error_message,
                    "next_actions": list(evaluation.next_actions),
                },
            )
            await self._transition(item.id, WorkItemStatus.BLOCKED)
            await self._announce_escalation(escalation)
        elif decision == Decision.REPLAN:
            await self._transition(item.id, WorkItemStatus.BLOCKED)

        await self._emit(
            DECISION_APPLIED,
            {"work_item_id": item.id, "run_id": run.id, "decision": str(decision), "reasoning": evaluation.reasoning},
        )

    async def _release_cancelled(self, item: WorkItem, run: Run | None, handle: RunHandle) -> None:
        reason = handle.cancel_reason or "Run cancelled"
        logger.warning(f"Run for {item.id} cancelled: {reason}")
        if run is not None and run.status == RunStatus.RUNNING:
            self._repo.complete_run(run.id, RunCompletion.failure(reason, monotonic() - handle.started_at))
        current = self._repo.get_work_item(item.id)
        if current is None or current.status != WorkItemStatus.IN_PROGRESS:
            return
        if handle.release_status == WorkItemStatus.READY:
            self._repo.increment_work_item_retry(item.id)
        await self._transition(item.id, handle.release_status)

    async def _release_unstarted(self, handle: RunHandle) -> None:
        if handle.release_status == WorkItemStatus.READY:
            return
        current = self._repo.get_work_item(handle.work_item_id)
        if current is not None and current.status == WorkItemStatus.READY:
            await self._transition(handle.work_item_id, handle.release_status)

    async def _fail_item(self, item: WorkItem, run: Run | None, error: Exception) -> None:
        try:
            if run is not None and run.status == RunStatus.RUNNING:
                self._repo.complete_run(run.id, RunCompletion.failure(str(error)))
            current = self._repo.get_work_item(item.id)
            if current is not None and current.status not in TERMINAL_WORK_ITEM_STATUSES:
                await self._transition(item.id, WorkItemStatus.FAILED)
        except WorkfleetError as e:
            logger.error(f"Could not mark work item {item.id} failed: {e}")

    async def _maybe_complete_goal(self, goal_id: str) -> bool:
        items = self._repo.get_work_items_by_goal(goal_id)
        if not items or any(i.status != WorkItemStatus.DONE for i in items):
            return False
        goal = self._repo.get_goal(goal_id)
        if goal is None or goal.status != GoalStatus.ACTIVE:
            return False
        self._repo.update_goal_status(goal_id, GoalStatus.COMPLETED)
        self._budget.unregister_usage_callback(goal_id)
        self._budget_levels.pop(goal_id, None)
        logger.info(f"Goal {goal_id} ({goal.title}) completed")
        await self._emit(GOAL_COMPLETED, {"goal_id": goal_id})
        return True

    # -- external commands ---------------------------------------------------

    def cancel_run(
        self,
        work_item_id: str,
        reason: str = "Run cancelled",
        release_status: WorkItemStatus = WorkItemStatus.READY,
    ) -> bool:
        """Abort the active run of *work_item_id*, if any.

        The item moves to *release_status* once the run has unwound.
        """
        handle = self._active_runs.get(work_item_id)
        if handle is None or handle.cancelled:
            return False
        handle.cancel(reason, release_status)
        return True

    async def cancel_goal(self, goal_id: str) -> bool:
        """Cancel a goal, abort its runs and fail its unfinished items."""
        goal = self._repo.get_goal(goal_id)
        if goal is None:
            raise NotFoundError(f"Goal {goal_id} not found")
        if goal.status in TERMINAL_GOAL_STATUSES:
            return False

        self._repo.update_goal_status(goal_id, GoalStatus.CANCELLED)
        for item in self._repo.get_work_items_by_goal(goal_id):
            if item.status in TERMINAL_WORK_ITEM_STATUSES:
                continue
            handle = self._active_runs.get(item.id)
            if handle is not None:
                handle.cancel("Goal cancelled", WorkItemStatus.FAILED)
            if handle is None or item.status != WorkItemStatus.IN_PROGRESS:
                await self._transition(item.id, WorkItemStatus.FAILED)

        self._budget.unregister_usage_callback(goal_id)
        self._budget_levels.pop(goal_id, None)
        logger.info(f"Goal {goal_id} cancelled")
        await self._emit(GOAL_CANCELLED, {"goal_id": goal_id})
        return True

    # -- helpers -------------------------------------------------------------

    def _scoped_goals(self, status: GoalStatus) -> list[Goal]:
        goals = self._repo.list_goals(status)
        if self._config.goal_id:
            goals = [g for g in goals if g.id == self._config.goal_id]
        return goals

    def _ensure_usage_callback(self, goal_id: str) -> None:
        if not self._budget.has_usage_callback(goal_id):
            self._budget.register_usage_callback(goal_id, self._apply_usage)

    def _apply_usage(self, goal_id: str, tokens: int, time_minutes: float, cost_usd: float) -> None:
        self._repo.update_goal_spending(goal_id, tokens, time_minutes, cost_usd)

    async def _transition(self, work_item_id: str, status: WorkItemStatus) -> WorkItem:
        before = self._repo.get_work_item(work_item_id)
        item = self._repo.update_work_item_status(work_item_id, status)
        if before is not None and before.status != status:
            await self._emit(
                WORK_ITEM_STATUS_CHANGED,
                {"work_item_id": work_item_id, "from": str(before.status), "to": str(status)},
            )
        return item

    async def _announce_escalation(self, escalation: Escalation) -> None:
        logger.warning(
            f"Escalation {escalation.id} ({escalation.escalation_type}, {escalation.severity}) "
            f"for {escalation.work_item_id}: {escalation.title}"
        )
        await self._emit(
            ESCALATION_CREATED,
            {
                "escalation_id": escalation.id,
                "work_item_id": escalation.work_item_id,
                "goal_id": escalation.goal_id,
                "type": str(escalation.escalation_type),
                "severity": str(escalation.severity),
            },
        )

    async def _emit(self, name: str, payload: dict[str, Any]) -> None:
        await self._bus.publish(name, payload, source="daemon")


def create_daemon(
    config: Config,
    repository: Repository,
    planner: PlanningService,
    executor: ExecutionService,
    verifier: VerificationService,
    evaluator: EvaluationService | None = None,
    *,
    event_bus: EventBus | None = None,
    is_model_available: Callable[[str], bool] | None = None,
) -> OrchestrationDaemon:
    """Build a daemon and its helpers from a Config.

    Without an *evaluator*, the rule-based evaluator is used.
    """
    settings = config.validated()
    bus = event_bus or EventBus(known_events=ALL_EVENT_TYPES)
    stuck_config = StuckDetectionConfig.from_settings(settings.stuck)
    return OrchestrationDaemon(
        repository,
        planner,
        executor,
        verifier,
        evaluator or RuleBasedEvaluator(repository, stuck_config.max_same_error_retries),
        DaemonConfig.from_settings(settings.orchestrator, settings.stuck),
        budget_tracker=BudgetTracker.from_settings(settings.budget),
        model_selector=ModelSelector(
            load_model_tier_config(settings.models),
            is_model_available=is_model_available,
        ),
        stuck_detector=StuckDetector(repository, stuck_config, event_bus=bus),
        event_bus=bus,
    )
