"""Cycle-level tests for OrchestrationDaemon, driven with run_cycle()."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from workfleet.core.exceptions import ConfigurationError, NotFoundError, RepositoryError
from workfleet.orchestration.budget import BudgetTracker
from workfleet.orchestration.collaborators import ExecutionResult, PlanResult
from workfleet.orchestration.daemon import BudgetPolicy, DaemonConfig
from workfleet.orchestration.events import (
    BUDGET_EXCEEDED,
    BUDGET_WARNING,
    DECISION_APPLIED,
    ESCALATION_CREATED,
    GOAL_ACTIVATED,
    GOAL_COMPLETED,
    GOAL_PLAN_REJECTED,
    GOAL_PLANNING_FAILED,
)
from workfleet.orchestration.models import (
    Decision,
    EscalationType,
    GoalStatus,
    RunStatus,
    Severity,
    VerificationStatus,
    WorkItem,
    WorkItemStatus,
)
from workfleet.orchestration.stuck import StuckDetectionConfig, StuckDetector


def plan(planner, goal, *titles, dependencies=None, **item_kwargs):
    """Register a plan of items whose ids equal their titles."""
    items = [WorkItem(id=t, goal_id=goal.id, title=t, **item_kwargs) for t in titles]
    planner.plans[goal.id] = PlanResult(work_items=items, dependencies=dependencies or {})
    return items


def names(events):
    return [e.name for e in events]


class TestDaemonConfig:
    def test_rejects_zero_concurrency(self):
        with pytest.raises(ConfigurationError):
            DaemonConfig(max_concurrent_runs=0)

    def test_rejects_negative_polling(self):
        with pytest.raises(ConfigurationError):
            DaemonConfig(polling_interval_ms=-1)

    def test_policy_coerced(self):
        assert DaemonConfig(budget_policy="warn").budget_policy == BudgetPolicy.WARN


@pytest.mark.smoke
class TestPlanning:
    async def test_plan_activates_goal(self, repo, planner, make_goal, daemon, events):
        goal = make_goal()
        plan(planner, goal, "a", "b", dependencies={"b": ["a"]})
        await daemon.run_cycle()

        assert repo.get_goal(goal.id).status == GoalStatus.ACTIVE
        assert repo.get_work_item("b").dependencies == ["a"]
        assert repo.get_work_item("a").blocks == ["b"]
        assert GOAL_ACTIVATED in names(events)

    async def test_cyclic_plan_rejected(self, repo, planner, make_goal, daemon, events):
        goal = make_goal()
        plan(planner, goal, "a", "b", dependencies={"a": ["b"], "b": ["a"]})
        assert await daemon.run_cycle() == 0

        assert repo.get_goal(goal.id).status == GoalStatus.QUEUED
        assert repo.get_work_items_by_goal(goal.id) == []
        (rejected,) = [e for e in events if e.name == GOAL_PLAN_REJECTED]
        assert "circular dependency" in rejected.payload["violations"][0]

    async def test_missing_dependency_rejected(self, repo, planner, make_goal, daemon):
        goal = make_goal()
        plan(planner, goal, "a", dependencies={"a": ["ghost"]})
        await daemon.run_cycle()
        assert repo.get_goal(goal.id).status == GoalStatus.QUEUED

    async def test_colliding_item_id_rejected(self, repo, planner, executor, make_goal, daemon, events):
        first = make_goal("first", priority=90)
        second = make_goal("second", priority=10)
        plan(planner, first, "shared")
        plan(planner, second, "shared")

        await daemon.run_cycle()
        await daemon.run_cycle()

        assert executor.calls == ["shared"]
        assert repo.get_goal(first.id).status == GoalStatus.COMPLETED
        assert repo.get_goal(second.id).status == GoalStatus.QUEUED
        assert repo.get_work_item("shared").goal_id == first.id
        rejected = [e for e in events if e.name == GOAL_PLAN_REJECTED]
        assert {e.payload["goal_id"] for e in rejected} == {second.id}
        assert "already exists" in rejected[0].payload["violations"][0]

    async def test_storage_error_leaves_goal_queued(
        self, repo, planner, executor, make_goal, daemon, events, monkeypatch
    ):
        goal = make_goal()
        plan(planner, goal, "a")
        real = repo.create_work_items
        attempts = []

        def flaky(items):
            attempts.append(len(items))
            if len(attempts) == 1:
                raise RepositoryError("disk full")
            return real(items)

        monkeypatch.setattr(repo, "create_work_items", flaky)
        assert await daemon.run_cycle() == 0
        assert repo.get_goal(goal.id).status == GoalStatus.QUEUED
        (failed,) = [e for e in events if e.name == GOAL_PLANNING_FAILED]
        assert failed.payload["error"] == "disk full"

        await daemon.run_cycle()
        assert executor.calls == ["a"]

    async def test_unknown_item_type_rejected(self, repo, planner, executor, make_goal, daemon, events):
        goal = make_goal()
        plan(planner, goal, "a", item_type="feature")
        await daemon.run_cycle()

        assert repo.get_goal(goal.id).status == GoalStatus.QUEUED
        assert repo.get_work_items_by_goal(goal.id) == []
        assert executor.calls == []
        (rejected,) = [e for e in events if e.name == GOAL_PLAN_REJECTED]
        assert "unknown item type" in rejected.payload["violations"][0]

    async def test_invalid_goal_not_planned(self, repo, planner, make_goal, daemon, events):
        goal = make_goal(success_criteria=[])
        await daemon.run_cycle()
        assert planner.calls == []
        assert GOAL_PLAN_REJECTED in names(events)
        assert repo.get_goal(goal.id).status == GoalStatus.QUEUED

    async def test_planner_error(self, repo, planner, make_goal, daemon, events):
        goal = make_goal()
        planner.error = RuntimeError("model unavailable")
        await daemon.run_cycle()
        assert GOAL_PLANNING_FAILED in names(events)
        assert repo.get_goal(goal.id).status == GoalStatus.QUEUED

    async def test_empty_plan(self, repo, make_goal, daemon, events):
        make_goal()
        await daemon.run_cycle()
        (failed,) = [e for e in events if e.name == GOAL_PLANNING_FAILED]
        assert failed.payload["error"] == "no work items"

    async def test_goal_scope(self, repo, planner, make_goal, make_daemon):
        mine = make_goal("mine")
        other = make_goal("other")
        plan(planner, mine, "a")
        plan(planner, other, "b")
        await make_daemon(goal_id=mine.id).run_cycle()
        assert planner.calls == [mine.id]
        assert repo.get_goal(other.id).status == GoalStatus.QUEUED


@pytest.mark.smoke
class TestExecution:
    async def test_dependency_chain_end_to_end(self, repo, planner, executor, verifier, make_goal, daemon, events):
        goal = make_goal()
        plan(planner, goal, "a", "b", dependencies={"b": ["a"]})

        assert await daemon.run_cycle() == 1
        assert repo.get_work_item("a").status == WorkItemStatus.DONE
        assert repo.get_work_item("b").status == WorkItemStatus.READY

        assert await daemon.run_cycle() == 1
        assert executor.calls == ["a", "b"]
        assert verifier.calls == ["a", "b"]
        assert repo.get_work_item("b").verification_status == VerificationStatus.PASSED

        stored = repo.get_goal(goal.id)
        assert stored.status == GoalStatus.COMPLETED
        assert stored.spent_tokens == 200
        assert stored.spent_cost_usd == pytest.approx(0.02)
        assert stored.spent_time_minutes == pytest.approx(2 / 60)
        assert names(events).count(GOAL_COMPLETED) == 1
        assert not daemon.budget_tracker.has_usage_callback(goal.id)

    async def test_runs_are_recorded(self, repo, planner, make_goal, daemon):
        goal = make_goal()
        plan(planner, goal, "a")
        await daemon.run_cycle()
        (run,) = repo.get_runs_by_work_item("a")
        assert run.status == RunStatus.SUCCESS
        assert run.model == "claude-sonnet-4-5"
        assert run.agent_type == "default"
        assert run.tokens_used == 100

    async def test_assigned_agent_used(self, repo, planner, make_goal, daemon):
        goal = make_goal()
        plan(planner, goal, "a", assigned_agent="reviewer")
        await daemon.run_cycle()
        assert repo.get_runs_by_work_item("a")[0].agent_type == "reviewer"

    async def test_concurrency_limit(self, repo, planner, executor, make_goal, daemon):
        goal = make_goal()
        plan(planner, goal, *"abcde")
        executor.delay = 0.01

        dispatched = []
        while repo.get_goal(goal.id).status != GoalStatus.COMPLETED:
            dispatched.append(await daemon.run_cycle())

        assert dispatched == [2, 2, 1]
        assert executor.max_in_flight == 2
        assert daemon.active_runs == {}

    async def test_priority_order(self, repo, planner, executor, make_goal, make_daemon):
        goal = make_goal()
        planner.plans[goal.id] = PlanResult(
            work_items=[
                WorkItem(id="low", goal_id=goal.id, title="low", priority=10),
                WorkItem(id="high", goal_id=goal.id, title="high", priority=90),
            ]
        )
        await make_daemon(max_concurrent_runs=1).run_cycle()
        assert executor.calls == ["high"]

    async def test_executor_exception_fails_item(self, repo, planner, executor, make_goal, daemon):
        goal = make_goal()
        plan(planner, goal, "a")
        executor.results["a"] = [RuntimeError("sandbox crashed")]
        await daemon.run_cycle()

        assert repo.get_work_item("a").status == WorkItemStatus.FAILED
        (run,) = repo.get_runs_by_work_item("a")
        assert run.status == RunStatus.FAILURE
        assert run.error_message == "sandbox crashed"
        assert daemon.active_runs == {}

    async def test_evaluator_error_fails_item(self, repo, planner, make_goal, make_daemon):
        goal = make_goal()
        plan(planner, goal, "a")
        evaluator = MagicMock()
        evaluator.evaluate_run = AsyncMock(side_effect=RuntimeError("judge offline"))
        await make_daemon(evaluator=evaluator).run_cycle()

        evaluator.evaluate_run.assert_awaited_once()
        assert repo.get_work_item("a").status == WorkItemStatus.FAILED
        # the run itself finished before evaluation
        assert repo.get_runs_by_work_item("a")[0].status == RunStatus.SUCCESS

    async def test_malformed_executor_result_fails_item(
        self, repo, planner, executor, make_goal, make_daemon, monkeypatch
    ):
        goal = make_goal()
        plan(planner, goal, "a")
        monkeypatch.setattr(executor, "execute_work_item", AsyncMock(return_value=None))
        await make_daemon().run_cycle()

        assert repo.get_work_item("a").status == WorkItemStatus.FAILED
        (run,) = repo.get_runs_by_work_item("a")
        assert run.status == RunStatus.FAILURE
        assert run.error_message == "Executor returned NoneType for a"

    async def test_run_timeout_becomes_failed_run(self, repo, planner, executor, make_goal, make_daemon):
        goal = make_goal()
        plan(planner, goal, "a")
        executor.delay = 5
        await make_daemon(run_timeout_seconds=0.05).run_cycle()

        (run,) = repo.get_runs_by_work_item("a")
        assert run.status == RunStatus.FAILURE
        assert run.error_message == "Run timed out after 0.05s"
        assert executor.contexts[0].cancelled
        item = repo.get_work_item("a")
        assert item.status == WorkItemStatus.READY
        assert item.retry_count == 1
        assert item.verification_status == VerificationStatus.SKIPPED

    async def test_timed_out_run_can_still_be_cancelled(self, repo, planner, executor, make_goal, make_daemon):
        goal = make_goal()
        plan(planner, goal, "a")
        executor.delay = 5
        accepted = []

        async def evaluate(item, run, verification):
            accepted.append(daemon.cancel_run(item.id, "Escalated", WorkItemStatus.BLOCKED))
            await asyncio.sleep(0)

        evaluator = MagicMock()
        evaluator.evaluate_run = AsyncMock(side_effect=evaluate)
        daemon = make_daemon(evaluator=evaluator, run_timeout_seconds=0.05)
        await daemon.run_cycle()

        assert accepted == [True]
        assert executor.contexts[0].cancelled
        item = repo.get_work_item("a")
        assert item.status == WorkItemStatus.BLOCKED
        assert item.retry_count == 0
        assert daemon.active_runs == {}


class TestDecisions:
    async def test_retry(self, repo, planner, make_goal, make_daemon, scripted_evaluator, events):
        goal = make_goal()
        plan(planner, goal, "a")
        daemon = make_daemon(evaluator=scripted_evaluator(Decision.RETRY))

        await daemon.run_cycle()
        item = repo.get_work_item("a")
        assert item.status == WorkItemStatus.READY
        assert item.retry_count == 1

        await daemon.run_cycle()
        assert repo.get_work_item("a").status == WorkItemStatus.DONE
        assert [r.run_sequence for r in repo.get_runs_by_work_item("a")] == [1, 2]
        assert names(events).count(DECISION_APPLIED) == 2

    async def test_escalate_creates_one_escalation(
        self, repo, planner, make_goal, make_daemon, scripted_evaluator, events
    ):
        goal = make_goal()
        plan(planner, goal, "a")
        daemon = make_daemon(evaluator=scripted_evaluator(Decision.ESCALATE))

        await daemon.run_cycle()
        assert await daemon.run_cycle() == 0

        assert repo.get_work_item("a").status == WorkItemStatus.BLOCKED
        (escalation,) = repo.get_open_escalations(goal_id=goal.id)
        assert escalation.escalation_type == EscalationType.STUCK
        assert escalation.severity == Severity.HIGH
        assert escalation.title == "Work item stuck: a"
        assert escalation.run_id == repo.get_runs_by_work_item("a")[0].id
        assert names(events).count(ESCALATION_CREATED) == 1
        assert repo.get_goal(goal.id).status == GoalStatus.ACTIVE

    async def test_failed_verification_escalation(
        self, repo, planner, verifier, make_goal, make_daemon, scripted_evaluator
    ):
        goal = make_goal()
        plan(planner, goal, "a")
        verifier.passed["a"] = False
        await make_daemon(evaluator=scripted_evaluator(Decision.ESCALATE)).run_cycle()

        (escalation,) = repo.get_open_escalations(work_item_id="a")
        assert escalation.escalation_type == EscalationType.VALIDATION_FAILED
        assert escalation.title == "Verification failed: a"
        assert repo.get_work_item("a").verification_status == VerificationStatus.FAILED

    async def test_replan_blocks(self, repo, planner, make_goal, make_daemon, scripted_evaluator):
        goal = make_goal()
        plan(planner, goal, "a")
        await make_daemon(evaluator=scripted_evaluator(Decision.REPLAN)).run_cycle()
        assert repo.get_work_item("a").status == WorkItemStatus.BLOCKED
        assert repo.get_open_escalations() == []

    async def test_publish_of_last_item_completes_goal(
        self, repo, planner, make_goal, make_daemon, scripted_evaluator, events
    ):
        goal = make_goal()
        plan(planner, goal, "a", "b")
        evaluator = scripted_evaluator(Decision.PUBLISH, Decision.RETRY)
        daemon = make_daemon(evaluator=evaluator)

        await daemon.run_cycle()
        assert repo.get_goal(goal.id).status == GoalStatus.ACTIVE
        await daemon.run_cycle()
        assert repo.get_goal(goal.id).status == GoalStatus.COMPLETED
        assert names(events).count(GOAL_COMPLETED) == 1

    async def test_retry_becomes_escalation_when_exhausted(
        self, repo, planner, make_goal, make_daemon, scripted_evaluator
    ):
        goal = make_goal()
        plan(planner, goal, "a", max_retries=1)
        daemon = make_daemon(evaluator=scripted_evaluator(default=Decision.RETRY))

        await daemon.run_cycle()
        assert repo.get_work_item("a").retry_count == 1
        await daemon.run_cycle()

        assert repo.get_work_item("a").status == WorkItemStatus.BLOCKED
        assert len(repo.get_open_escalations(work_item_id="a")) == 1

    async def test_repeated_identical_failures_escalate_once(self, repo, planner, executor, make_goal, daemon):
        goal = make_goal()
        plan(planner, goal, "c")
        executor.results["c"] = [
            ExecutionResult(success=False, error_message=f"ModuleNotFoundError at /srv/app/{n}/main.py")
            for n in range(5)
        ]

        for _ in range(5):
            await daemon.run_cycle()

        assert executor.calls == ["c", "c", "c"]
        item = repo.get_work_item("c")
        assert item.status == WorkItemStatus.BLOCKED
        assert item.retry_count == 2
        (escalation,) = repo.get_open_escalations(goal_id=goal.id)
        assert escalation.severity == Severity.HIGH
        assert escalation.escalation_type == EscalationType.STUCK
        assert escalation.context["last_error"].startswith("ModuleNotFoundError")


class TestBudget:
    async def test_block_policy(self, repo, planner, make_goal, make_daemon, events):
        goal = make_goal(budget_tokens=100)
        plan(planner, goal, "a", "b")
        daemon = make_daemon(max_concurrent_runs=1)

        await daemon.run_cycle()
        assert await daemon.run_cycle() == 0

        blocked = [i.id for i in repo.get_work_items_by_goal(goal.id) if i.status == WorkItemStatus.BLOCKED]
        assert len(blocked) == 1
        (escalation,) = repo.get_open_escalations(goal_id=goal.id)
        assert escalation.escalation_type == EscalationType.BUDGET_EXCEEDED
        assert escalation.severity == Severity.CRITICAL
        assert escalation.work_item_id == blocked[0]
        assert BUDGET_EXCEEDED in names(events)

        # a second cycle does not pile up escalations
        await daemon.run_cycle()
        assert len(repo.get_open_escalations(goal_id=goal.id)) == 1

    async def test_warn_policy_dispatches(self, repo, planner, executor, make_goal, make_daemon, events):
        goal = make_goal(budget_tokens=100)
        plan(planner, goal, "a", "b")
        daemon = make_daemon(max_concurrent_runs=1, budget_policy="warn")

        await daemon.run_cycle()
        await daemon.run_cycle()

        assert len(executor.calls) == 2
        assert BUDGET_EXCEEDED in names(events)
        assert repo.get_open_escalations() == []
        assert repo.get_goal(goal.id).status == GoalStatus.COMPLETED

    async def test_estimate_blocks_before_spend(self, repo, planner, executor, make_goal, make_daemon):
        goal = make_goal(budget_cost_usd=1.0)
        plan(planner, goal, "a")
        await make_daemon(estimated_cost_per_run=2.0).run_cycle()
        assert executor.calls == []
        assert repo.get_work_item("a").status == WorkItemStatus.BLOCKED

    async def test_estimates_accumulate_within_one_dispatch(self, repo, planner, executor, make_goal, make_daemon):
        goal = make_goal(budget_tokens=100)
        plan(planner, goal, "a", "b")
        assert await make_daemon(estimated_tokens_per_run=60).run_cycle() == 1

        assert len(executor.calls) == 1
        statuses = sorted(str(i.status) for i in repo.get_work_items_by_goal(goal.id))
        assert statuses == ["blocked", "done"]
        (escalation,) = repo.get_open_escalations(goal_id=goal.id)
        assert escalation.context["will_exceed"]

    async def test_warning_emitted_once_per_level(self, repo, planner, make_goal, make_daemon, events):
        goal = make_goal(budget_tokens=130)
        plan(planner, goal, "a", "b", "c")
        daemon = make_daemon(max_concurrent_runs=1, budget_policy="warn")
        for _ in range(3):
            await daemon.run_cycle()
        warnings = [e for e in events if e.name == BUDGET_WARNING]
        assert [w.payload["level"] for w in warnings] == ["warning"]

    async def test_custom_tracker_thresholds(self, repo, planner, make_goal, make_daemon, events):
        goal = make_goal(budget_tokens=1000)
        plan(planner, goal, "a", "b")
        tracker = BudgetTracker(warning_threshold=0.05, critical_threshold=0.5)
        daemon = make_daemon(max_concurrent_runs=1, budget_tracker=tracker)
        await daemon.run_cycle()
        await daemon.run_cycle()
        assert BUDGET_WARNING in names(events)


class TestStuckSweep:
    async def test_exhausted_item_escalated_and_blocked(
        self, repo, planner, make_goal, make_daemon, scripted_evaluator
    ):
        goal = make_goal()
        plan(planner, goal, "a", max_retries=1)
        detector = StuckDetector(repo, StuckDetectionConfig(max_total_retries=1, check_interval_ms=0))
        daemon = make_daemon(evaluator=scripted_evaluator(Decision.RETRY), stuck_detector=detector)

        await daemon.run_cycle()
        assert repo.get_work_item("a").status == WorkItemStatus.READY
        assert await daemon.run_cycle() == 0

        assert repo.get_work_item("a").status == WorkItemStatus.BLOCKED
        (escalation,) = repo.get_open_escalations(work_item_id="a")
        assert escalation.severity == Severity.HIGH
        assert escalation.context["reason"] == "max_retries_exceeded"

    async def test_orphaned_in_progress_item_released(self, repo, planner, make_goal, make_daemon):
        goal = make_goal()
        plan(planner, goal, "a")
        detector = StuckDetector(repo, StuckDetectionConfig(max_in_progress_duration_ms=1, check_interval_ms=0))
        daemon = make_daemon(stuck_detector=detector)

        await daemon._plan_queued_goals()
        await daemon._promote_ready_items()
        repo.update_work_item_status("a", WorkItemStatus.IN_PROGRESS)
        await asyncio.sleep(0.01)

        await daemon._sweep_stuck()
        assert repo.get_work_item("a").status == WorkItemStatus.READY


class TestCommands:
    async def test_cancel_unknown_goal(self, daemon):
        with pytest.raises(NotFoundError):
            await daemon.cancel_goal("nope")

    async def test_cancel_queued_goal_fails_items(self, repo, planner, make_goal, daemon, events):
        goal = make_goal()
        plan(planner, goal, "a", "b", dependencies={"b": ["a"]})
        await daemon._plan_queued_goals()

        assert await daemon.cancel_goal(goal.id)
        assert repo.get_goal(goal.id).status == GoalStatus.CANCELLED
        assert {i.status for i in repo.get_work_items_by_goal(goal.id)} == {WorkItemStatus.FAILED}
        assert await daemon.run_cycle() == 0

    async def test_cancel_finished_goal(self, repo, planner, make_goal, daemon):
        goal = make_goal()
        plan(planner, goal, "a")
        await daemon.run_cycle()
        assert not await daemon.cancel_goal(goal.id)

    def test_cancel_run_without_handle(self, daemon):
        assert not daemon.cancel_run("nope")

    async def test_status(self, daemon):
        await daemon.run_cycle()
        status = daemon.status()
        assert status.cycle_count == 1
        assert not status.running
        assert status.active_runs == []
        assert status.last_cycle_at is not None
