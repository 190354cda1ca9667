"""Store interfaces consumed by the scheduling engine.

Implementations: in-memory (tests, CLI dry runs) and PostgreSQL.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import AsyncContextManager, List, Optional, Sequence, Tuple

from src.scheduler.models import (
    BehaviorProfile,
    ResolutionStatus,
    SchedulingLog,
    StudyPlan,
    StudyTask,
    TimeBlockConflict,
)


class PlanStore(ABC):
    """Study plan documents with optimistic concurrency."""

    @abstractmethod
    async def get_plan(self, plan_id: str) -> Optional[StudyPlan]:
        """Load a plan, or None if it does not exist."""

    @abstractmethod
    async def create_plan(self, plan: StudyPlan) -> StudyPlan:
        """Insert a new plan."""

    @abstractmethod
    async def save_plan(self, plan: StudyPlan) -> StudyPlan:
        """Write a plan if its version still matches the stored one.

        Returns:
            The stored plan with its version incremented

        Raises:
            ConcurrencyConflict: Another writer saved the plan first
            NotFoundError: The plan does not exist
        """

    @abstractmethod
    def plan_lock(self, plan_id: str) -> AsyncContextManager[None]:
        """Mutual exclusion for multi-step operations on one plan."""


class TaskStore(ABC):
    """Study tasks. Writes of several tasks happen as one batch."""

    @abstractmethod
    async def get_task(self, task_id: str) -> Optional[StudyTask]:
        """Load a task, or None."""

    @abstractmethod
    async def list_tasks(self, plan_id: str) -> List[StudyTask]:
        """All non-deleted tasks of a plan."""

    @abstractmethod
    async def list_user_active_tasks(self, owner_id: str) -> List[StudyTask]:
        """Scheduled, non-terminal tasks of a user across all plans."""

    @abstractmethod
    async def list_overdue(self, owner_id: str, plan_id: str, now: datetime) -> List[StudyTask]:
        """Pending/rescheduled tasks of a plan whose window started before now."""

    @abstractmethod
    async def plans_with_overdue(self, now: datetime) -> List[str]:
        """IDs of plans holding at least one overdue task."""

    @abstractmethod
    async def create_tasks(self, tasks: Sequence[StudyTask]) -> None:
        """Insert new tasks."""

    @abstractmethod
    async def save_tasks(self, tasks: Sequence[StudyTask]) -> None:
        """Replace existing tasks in one batch."""

    async def save_task(self, task: StudyTask) -> None:
        await self.save_tasks([task])


class ConflictStore(ABC):
    """TimeBlockConflict records, one per unordered task pair."""

    @abstractmethod
    async def get_conflict(self, conflict_id: str) -> Optional[TimeBlockConflict]:
        """Load a conflict, or None."""

    @abstractmethod
    async def find_by_pair(self, plan_id: str, pair: Tuple[str, str]) -> Optional[TimeBlockConflict]:
        """Conflict for a canonical (sorted) task pair."""

    @abstractmethod
    async def upsert_conflict(self, conflict: TimeBlockConflict) -> TimeBlockConflict:
        """Insert or update by canonical pair."""

    @abstractmethod
    async def list_conflicts(
        self, plan_id: str, status: Optional[ResolutionStatus] = None
    ) -> List[TimeBlockConflict]:
        """Conflicts of a plan, optionally filtered by resolution status."""


class AuditLogStore(ABC):
    """Append-only scheduling log."""

    @abstractmethod
    async def append(self, entry: SchedulingLog) -> None:
        """Append one entry."""

    @abstractmethod
    async def list_logs(
        self,
        plan_id: Optional[str] = None,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
        success: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[SchedulingLog]:
        """Entries matching every given filter, newest first."""


class BehaviorProfileProvider(ABC):
    """Read-only source of learned behaviour summaries."""

    @abstractmethod
    async def get_profile(self, user_id: str) -> Optional[BehaviorProfile]:
        """Profile for a user, or None if none was learned yet."""
