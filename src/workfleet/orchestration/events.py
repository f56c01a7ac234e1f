"""Event names published on the EventBus by the orchestration engine.

Payloads always carry the relevant ids (``goal_id``, ``work_item_id``,
``run_id``) plus event-specific fields.
"""

DAEMON_STARTED = "daemon.started"
DAEMON_STOPPED = "daemon.stopped"
CYCLE_FAILED = "cycle.failed"

GOAL_ACTIVATED = "goal.activated"
GOAL_PLAN_REJECTED = "goal.plan_rejected"
GOAL_PLANNING_FAILED = "goal.planning_failed"
GOAL_COMPLETED = "goal.completed"
GOAL_CANCELLED = "goal.cancelled"

WORK_ITEM_DISPATCHED = "work_item.dispatched"
WORK_ITEM_STATUS_CHANGED = "work_item.status_changed"
WORK_ITEM_STUCK = "work_item.stuck"

RUN_STARTED = "run.started"
RUN_COMPLETED = "run.completed"
RUN_STUCK = "run.stuck"

DECISION_APPLIED = "decision.applied"
ESCALATION_CREATED = "escalation.created"

BUDGET_WARNING = "budget.warning"
BUDGET_EXCEEDED = "budget.exceeded"

DEPENDENCY_CYCLE = "dependency.cycle"

ALL_EVENT_TYPES = frozenset(
    {
        DAEMON_STARTED,
        DAEMON_STOPPED,
        CYCLE_FAILED,
        GOAL_ACTIVATED,
        GOAL_PLAN_REJECTED,
        GOAL_PLANNING_FAILED,
        GOAL_COMPLETED,
        GOAL_CANCELLED,
        WORK_ITEM_DISPATCHED,
        WORK_ITEM_STATUS_CHANGED,
        WORK_ITEM_STUCK,
        RUN_STARTED,
        RUN_COMPLETED,
        RUN_STUCK,
        DECISION_APPLIED,
        ESCALATION_CREATED,
        BUDGET_WARNING,
        BUDGET_EXCEEDED,
        DEPENDENCY_CYCLE,
    }
)
