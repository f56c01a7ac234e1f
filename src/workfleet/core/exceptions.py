"""
Workfleet exception hierarchy.

All workfleet exceptions inherit from WorkfleetError, so embedders can catch
library-level errors while still distinguishing specific failure modes.
"""


class WorkfleetError(Exception):
    """Base exception class for all workfleet errors."""


class ConfigurationError(WorkfleetError):
    """Raised for configuration errors (missing files, invalid values)."""


class RepositoryError(WorkfleetError):
    """Raised when the persistence layer rejects or fails an operation."""


class NotFoundError(RepositoryError, KeyError):
    """Raised when a goal, work item, run or escalation id is unknown."""

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return str(self.args[0]) if self.args else ""


class InvalidTransitionError(WorkfleetError, ValueError):
    """Raised for a status change the state machine does not allow."""


class CollaboratorError(WorkfleetError):
    """Raised by planning/execution/verification/evaluation adapters."""
