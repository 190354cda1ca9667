"""Scheduler error taxonomy.

Infeasible placements are not errors: they are reported per task as skip
reasons in the partial results returned by the allocator and redistribution.
"""

from typing import Any, Dict, Optional


class SchedulerError(Exception):
    """Base class for all scheduling engine errors."""

    status_code = 500
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "error": type(self).__name__,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(SchedulerError):
    """Malformed or missing plan/task fields, or infeasible preconditions."""

    status_code = 400


class InvalidTransition(ValidationError):
    """Raised when a status change is not allowed by a state machine."""


class OwnershipError(SchedulerError):
    """Plan, task or conflict belongs to a different user."""

    status_code = 403


class NotFoundError(SchedulerError):
    """Plan, task or conflict does not exist."""

    status_code = 404


class ConcurrencyConflict(SchedulerError):
    """A versioned write lost a race against another writer."""

    status_code = 409
    retryable = True


class HydrationFailure(SchedulerError):
    """A plan is still missing required fields after hydration.

    Signals a corrupted record. Fatal and never retried.
    """

    status_code = 500
