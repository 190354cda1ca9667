"""In-memory stores. Used by tests and for running without a database."""

import asyncio
import copy
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from src.scheduler.errors import ConcurrencyConflict, NotFoundError, ValidationError
from src.scheduler.models import (
    BehaviorProfile,
    ResolutionStatus,
    SchedulingLog,
    StudyPlan,
    StudyTask,
    TimeBlockConflict,
    pair_key,
)
from src.stores.base import (
    AuditLogStore,
    BehaviorProfileProvider,
    ConflictStore,
    PlanStore,
    TaskStore,
)


class MemoryPlanStore(PlanStore):
    """Plans kept in a dict. Stored values are copies."""

    def __init__(self):
        self._plans: Dict[str, StudyPlan] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get_plan(self, plan_id: str) -> Optional[StudyPlan]:
        plan = self._plans.get(plan_id)
        return copy.deepcopy(plan) if plan else None

    async def create_plan(self, plan: StudyPlan) -> StudyPlan:
        if plan.id in self._plans:
            raise ValidationError(f"Plan {plan.id} already exists")
        self._plans[plan.id] = copy.deepcopy(plan)
        return copy.deepcopy(plan)

    async def save_plan(self, plan: StudyPlan) -> StudyPlan:
        stored = self._plans.get(plan.id)
        if stored is None:
            raise NotFoundError(f"Plan {plan.id} not found")
        if stored.version != plan.version:
            raise ConcurrencyConflict(
                f"Plan {plan.id} was modified concurrently "
                f"(expected version {plan.version}, found {stored.version})",
                {"plan_id": plan.id},
            )
        saved = replace(copy.deepcopy(plan), version=plan.version + 1, updated_at=datetime.now())
        self._plans[plan.id] = saved
        return copy.deepcopy(saved)

    @asynccontextmanager
    async def plan_lock(self, plan_id: str):
        async with self._locks[plan_id]:
            yield

    def all_plans(self) -> List[StudyPlan]:
        return [copy.deepcopy(p) for p in self._plans.values()]


class MemoryTaskStore(TaskStore):
    """Tasks kept in insertion order. Tasks are immutable so no copies are needed."""

    def __init__(self):
        self._tasks: Dict[str, StudyTask] = {}

    async def get_task(self, task_id: str) -> Optional[StudyTask]:
        return self._tasks.get(task_id)

    async def list_tasks(self, plan_id: str) -> List[StudyTask]:
        return [t for t in self._tasks.values() if t.plan_id == plan_id and not t.is_deleted]

    async def list_user_active_tasks(self, owner_id: str) -> List[StudyTask]:
        return [
            t for t in self._tasks.values()
            if t.owner_id == owner_id
            and not t.is_deleted
            and not t.is_terminal
            and t.window_start is not None
        ]

    async def list_overdue(self, owner_id: str, plan_id: str, now: datetime) -> List[StudyTask]:
        return [
            t for t in self._tasks.values()
            if t.owner_id == owner_id
            and t.plan_id == plan_id
            and not t.is_deleted
            and t.is_overdue(now)
        ]

    async def plans_with_overdue(self, now: datetime) -> List[str]:
        plan_ids: List[str] = []
        for task in self._tasks.values():
            if task.is_deleted:
                continue
            if task.is_overdue(now) and task.plan_id not in plan_ids:
                plan_ids.append(task.plan_id)
        return plan_ids

    async def create_tasks(self, tasks: Sequence[StudyTask]) -> None:
        for task in tasks:
            if task.id in self._tasks:
                raise ValidationError(f"Task {task.id} already exists")
        for task in tasks:
            self._tasks[task.id] = task

    async def save_tasks(self, tasks: Sequence[StudyTask]) -> None:
        missing = [t.id for t in tasks if t.id not in self._tasks]
        if missing:
            raise NotFoundError(f"Tasks not found: {', '.join(missing)}")
        for task in tasks:
            self._tasks[task.id] = task


class MemoryConflictStore(ConflictStore):
    """Conflicts indexed by id and by (plan, canonical pair)."""

    def __init__(self):
        self._conflicts: Dict[str, TimeBlockConflict] = {}
        self._by_pair: Dict[Tuple[str, Tuple[str, str]], str] = {}

    async def get_conflict(self, conflict_id: str) -> Optional[TimeBlockConflict]:
        conflict = self._conflicts.get(conflict_id)
        return copy.deepcopy(conflict) if conflict else None

    async def find_by_pair(self, plan_id: str, pair: Tuple[str, str]) -> Optional[TimeBlockConflict]:
        conflict_id = self._by_pair.get((plan_id, pair_key(*pair)))
        return await self.get_conflict(conflict_id) if conflict_id else None

    async def upsert_conflict(self, conflict: TimeBlockConflict) -> TimeBlockConflict:
        key = (conflict.plan_id, conflict.pair_key)
        existing_id = self._by_pair.get(key)
        if existing_id is not None and existing_id != conflict.id:
            conflict = replace(conflict, id=existing_id)
        self._conflicts[conflict.id] = copy.deepcopy(conflict)
        self._by_pair[key] = conflict.id
        return copy.deepcopy(conflict)

    async def list_conflicts(
        self, plan_id: str, status: Optional[ResolutionStatus] = None
    ) -> List[TimeBlockConflict]:
        return [
            copy.deepcopy(c) for c in self._conflicts.values()
            if c.plan_id == plan_id and (status is None or c.resolution_status == status)
        ]


class MemoryAuditLogStore(AuditLogStore):
    """Audit entries in a list."""

    def __init__(self):
        self.entries: List[SchedulingLog] = []

    async def append(self, entry: SchedulingLog) -> None:
        self.entries.append(entry)

    async def list_logs(
        self,
        plan_id: Optional[str] = None,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
        success: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[SchedulingLog]:
        matches = [
            e for e in reversed(self.entries)
            if (plan_id is None or e.plan_id == plan_id)
            and (user_id is None or e.user_id == user_id)
            and (since is None or e.created_at >= since)
            and (success is None or e.success == success)
        ]
        return matches[:limit] if limit is not None else matches


class MemoryBehaviorProfiles(BehaviorProfileProvider):
    """Profiles set directly by tests or seed data."""

    def __init__(self, profiles: Optional[Dict[str, BehaviorProfile]] = None):
        self.profiles: Dict[str, BehaviorProfile] = dict(profiles or {})

    async def get_profile(self, user_id: str) -> Optional[BehaviorProfile]:
        return self.profiles.get(user_id)


class MemoryStores:
    """Bundle of in-memory stores sharing one process."""

    def __init__(self):
        self.plans = MemoryPlanStore()
        self.tasks = MemoryTaskStore()
        self.conflicts = MemoryConflictStore()
        self.audit = MemoryAuditLogStore()
        self.profiles = MemoryBehaviorProfiles()
