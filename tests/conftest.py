"""Shared test fixtures for workfleet."""

import asyncio
import os
import tempfile

import pytest

from workfleet.core.events import Event, EventBus
from workfleet.orchestration.collaborators import (
    EvaluationResult,
    ExecutionResult,
    PlanResult,
    VerificationResult,
)
from workfleet.orchestration.daemon import DaemonConfig, OrchestrationDaemon
from workfleet.orchestration.evaluation import RuleBasedEvaluator
from workfleet.orchestration.events import ALL_EVENT_TYPES
from workfleet.orchestration.models import Decision, Goal, SuccessCriterion
from workfleet.orchestration.repository import InMemoryRepository


@pytest.fixture
def tmp_dir():
    """Provide a temporary directory that is cleaned up after the test."""
    with tempfile.TemporaryDirectory() as d:
        yield d


@pytest.fixture
def tmp_config_file(tmp_dir):
    """Create a temporary YAML config file."""
    import yaml

    config_data = {
        "paths": {"data_dir": os.path.join(tmp_dir, "data")},
        "orchestrator": {"max_concurrent_runs": 2, "polling_interval_ms": 10},
        "budget": {"warning_threshold": 0.6},
        "stuck": {"check_interval_ms": 0},
    }
    config_path = os.path.join(tmp_dir, "config.yaml")
    with open(config_path, "w") as f:
        yaml.dump(config_data, f)
    return config_path


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------


class FakePlanner:
    """Returns a preset PlanResult per goal id."""

    def __init__(self):
        self.plans: dict[str, PlanResult] = {}
        self.calls: list[str] = []
        self.error: Exception | None = None

    async def plan_work_items(self, goal):
        self.calls.append(goal.id)
        if self.error is not None:
            raise self.error
        return self.plans.get(goal.id, PlanResult())


class FakeExecutor:
    """Scripted executor that tracks how many runs are in flight."""

    def __init__(self):
        self.results: dict[str, list] = {}
        self.default = ExecutionResult(success=True, tokens_used=100, cost_usd=0.01, time_seconds=1.0)
        self.delay = 0.0
        self.gate: asyncio.Event | None = None
        self.calls: list[str] = []
        self.contexts: list = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def execute_work_item(self, work_item, run, context):
        self.calls.append(work_item.id)
        self.contexts.append(context)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            elif self.delay:
                await asyncio.sleep(self.delay)
            queue = self.results.get(work_item.id)
            result = queue.pop(0) if queue else self.default
            if isinstance(result, Exception):
                raise result
            return result
        finally:
            self.in_flight -= 1


class FakeVerifier:
    def __init__(self):
        self.passed: dict[str, bool] = {}
        self.calls: list[str] = []

    async def verify_work_item(self, work_item, run):
        self.calls.append(work_item.id)
        passed = self.passed.get(work_item.id, True)
        return VerificationResult(passed=passed, failure_reason=None if passed else "tests failed")


class ScriptedEvaluator:
    """Returns queued decisions, then *default*."""

    def __init__(self, *decisions, default=Decision.PUBLISH):
        self.decisions = list(decisions)
        self.default = default
        self.calls: list[tuple[str, bool]] = []

    async def evaluate_run(self, work_item, run, verification):
        self.calls.append((work_item.id, verification.passed))
        decision = self.decisions.pop(0) if self.decisions else self.default
        return EvaluationResult(decision=decision, reasoning=f"scripted {decision}")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def repo():
    repository = InMemoryRepository()
    repository.initialize()
    yield repository
    repository.close()


@pytest.fixture
def planner():
    return FakePlanner()


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def event_bus():
    return EventBus(known_events=ALL_EVENT_TYPES)


@pytest.fixture
def events(event_bus):
    """Every event published on ``event_bus``, in order."""
    received: list[Event] = []
    event_bus.on_all(received.append)
    return received


@pytest.fixture
def make_goal(repo):
    """Create and store a valid queued goal."""

    def _make(title="Ship feature", **kwargs):
        kwargs.setdefault("success_criteria", [SuccessCriterion("all tests pass", type="test")])
        return repo.create_goal(Goal(title=title, **kwargs))

    return _make


@pytest.fixture
def daemon(repo, planner, executor, verifier, event_bus):
    return OrchestrationDaemon(
        repo,
        planner,
        executor,
        verifier,
        RuleBasedEvaluator(repo, max_same_error_retries=3),
        DaemonConfig(max_concurrent_runs=2, polling_interval_ms=10),
        event_bus=event_bus,
    )


@pytest.fixture
def scripted_evaluator():
    """The ScriptedEvaluator class, for tests that drive decisions directly."""
    return ScriptedEvaluator


@pytest.fixture
def make_daemon(repo, planner, executor, verifier, event_bus):
    """Build a daemon with a custom evaluator and config overrides."""

    def _make(evaluator=None, stuck_detector=None, budget_tracker=None, **config):
        config.setdefault("max_concurrent_runs", 2)
        config.setdefault("polling_interval_ms", 10)
        return OrchestrationDaemon(
            repo,
            planner,
            executor,
            verifier,
            evaluator or RuleBasedEvaluator(repo, max_same_error_retries=config.get("max_same_error_retries", 3)),
            DaemonConfig(**config),
            stuck_detector=stuck_detector,
            budget_tracker=budget_tracker,
            event_bus=event_bus,
        )

    return _make
