"""Autonomous work orchestration.

Goals are planned into dependency graphs of work items, which a
concurrency-bounded daemon executes under budgets, with retry, escalation
and stuck detection.

Quick start::

    from workfleet.core.config import Config
    from workfleet.orchestration import InMemoryRepository, create_daemon

    repo = InMemoryRepository()
    daemon = create_daemon(Config(), repo, planner, executor, verifier)
    await daemon.start()
"""

from .budget import (
    BudgetCheckResult,
    BudgetInfo,
    BudgetStatus,
    BudgetTracker,
    BudgetViolation,
    ResourceBudget,
    WarningLevel,
)
from .collaborators import (
    EvaluationResult,
    EvaluationService,
    ExecutionContext,
    ExecutionResult,
    ExecutionService,
    GateResult,
    PlanningService,
    PlanResult,
    Repository,
    RunCompletion,
    VerificationResult,
    VerificationService,
)
from .complexity import ComplexityFactor, ComplexityScore, ComplexityScorer, ComplexityTier
from .daemon import BudgetPolicy, DaemonConfig, DaemonStatus, OrchestrationDaemon, RunHandle, create_daemon
from .evaluation import RuleBasedEvaluator
from .graph import build_blocks, dependents_of, detect_cycle, find_cycles, is_ready, missing_dependencies
from .invariants import InvariantViolation, validate_goal, validate_plan, validate_work_item
from .model_selector import DEFAULT_TIER_CONFIG, ModelSelection, ModelSelector, TierModels, load_model_tier_config
from .models import (
    GOAL_TRANSITIONS,
    WORK_ITEM_TRANSITIONS,
    Decision,
    Effort,
    Escalation,
    EscalationStatus,
    EscalationType,
    Goal,
    GoalStatus,
    Run,
    RunStatus,
    Severity,
    SuccessCriterion,
    VerificationStatus,
    WorkItem,
    WorkItemStatus,
    WorkItemType,
    compute_error_signature,
    validate_goal_transition,
    validate_work_item_transition,
)
from .repository import InMemoryRepository
from .stuck import (
    ErrorPattern,
    ErrorPatternAnalysis,
    StuckAction,
    StuckDetectionConfig,
    StuckDetector,
    StuckReason,
    StuckRun,
    StuckWorkItem,
)

__all__ = [
    "DEFAULT_TIER_CONFIG",
    "GOAL_TRANSITIONS",
    "WORK_ITEM_TRANSITIONS",
    "BudgetCheckResult",
    "BudgetInfo",
    "BudgetPolicy",
    "BudgetStatus",
    "BudgetTracker",
    "BudgetViolation",
    "ComplexityFactor",
    "ComplexityScore",
    "ComplexityScorer",
    "ComplexityTier",
    "DaemonConfig",
    "DaemonStatus",
    "Decision",
    "Effort",
    "ErrorPattern",
    "ErrorPatternAnalysis",
    "Escalation",
    "EscalationStatus",
    "EscalationType",
    "EvaluationResult",
    "EvaluationService",
    "ExecutionContext",
    "ExecutionResult",
    "ExecutionService",
    "GateResult",
    "Goal",
    "GoalStatus",
    "InMemoryRepository",
    "InvariantViolation",
    "ModelSelection",
    "ModelSelector",
    "OrchestrationDaemon",
    "PlanResult",
    "PlanningService",
    "Repository",
    "ResourceBudget",
    "RuleBasedEvaluator",
    "Run",
    "RunCompletion",
    "RunHandle",
    "RunStatus",
    "Severity",
    "StuckAction",
    "StuckDetectionConfig",
    "StuckDetector",
    "StuckReason",
    "StuckRun",
    "StuckWorkItem",
    "SuccessCriterion",
    "TierModels",
    "VerificationResult",
    "VerificationService",
    "VerificationStatus",
    "WarningLevel",
    "WorkItem",
    "WorkItemStatus",
    "WorkItemType",
    "build_blocks",
    "compute_error_signature",
    "create_daemon",
    "dependents_of",
    "detect_cycle",
    "find_cycles",
    "is_ready",
    "load_model_tier_config",
    "missing_dependencies",
    "validate_goal",
    "validate_goal_transition",
    "validate_plan",
    "validate_work_item",
    "validate_work_item_transition",
]
