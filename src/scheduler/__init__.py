"""Scheduling engine - slot packing, conflicts, exam phases and redistribution."""

from src.scheduler.errors import (
    ConcurrencyConflict,
    HydrationFailure,
    InvalidTransition,
    NotFoundError,
    OwnershipError,
    SchedulerError,
    ValidationError,
)
from src.scheduler.models import (
    StudyPlan,
    StudyTask,
    TaskStatus,
    TimeBlockConflict,
    TriggeredBy,
)
from src.scheduler.redistribution import RedistributionOptions, RedistributionResult
from src.scheduler.service import AutoScheduleResult, SchedulingService
from src.scheduler.strategies import StrategyContext

__all__ = [
    "ConcurrencyConflict",
    "HydrationFailure",
    "InvalidTransition",
    "NotFoundError",
    "OwnershipError",
    "SchedulerError",
    "ValidationError",
    "StudyPlan",
    "StudyTask",
    "TaskStatus",
    "TimeBlockConflict",
    "TriggeredBy",
    "RedistributionOptions",
    "RedistributionResult",
    "AutoScheduleResult",
    "SchedulingService",
    "StrategyContext",
]
