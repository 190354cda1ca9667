"""PostgreSQL stores built on the shared asyncpg pool.

Each record is kept as a JSONB document next to the handful of columns the
scheduler filters on. Timestamps are naive local wall-clock values, so the
columns are TIMESTAMP rather than TIMESTAMPTZ.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import asyncpg

from src.db.pool import Database
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

logger = logging.getLogger(__name__)


async def ensure_scheduler_tables(db: Database) -> None:
    """Create scheduler tables if they don't exist."""
    # Plans table
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS study_plans (
            id TEXT PRIMARY KEY,
            owner_id TEXT NOT NULL,
            status TEXT,
            is_archived BOOLEAN DEFAULT FALSE,
            version INT NOT NULL DEFAULT 0,
            data JSONB NOT NULL,
            created_at TIMESTAMP DEFAULT NOW(),
            updated_at TIMESTAMP DEFAULT NOW()
        )
        """
    )
    await db.execute(
        "CREATE INDEX IF NOT EXISTS idx_study_plans_owner ON study_plans(owner_id)"
    )

    # Tasks table
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS study_tasks (
            id TEXT PRIMARY KEY,
            plan_id TEXT NOT NULL REFERENCES study_plans(id),
            owner_id TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            window_start TIMESTAMP,
            is_deleted BOOLEAN DEFAULT FALSE,
            data JSONB NOT NULL,
            created_at TIMESTAMP DEFAULT NOW(),
            updated_at TIMESTAMP DEFAULT NOW()
        )
        """
    )
    await db.execute(
        "CREATE INDEX IF NOT EXISTS idx_study_tasks_plan ON study_tasks(plan_id)"
    )
    await db.execute(
        "CREATE INDEX IF NOT EXISTS idx_study_tasks_owner_window "
        "ON study_tasks(owner_id, window_start)"
    )

    # Conflicts table, one row per unordered task pair
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS time_block_conflicts (
            id TEXT PRIMARY KEY,
            plan_id TEXT NOT NULL,
            pair_a TEXT NOT NULL,
            pair_b TEXT NOT NULL,
            resolution_status TEXT NOT NULL DEFAULT 'detected',
            data JSONB NOT NULL,
            updated_at TIMESTAMP DEFAULT NOW(),
            UNIQUE (plan_id, pair_a, pair_b)
        )
        """
    )
    await db.execute(
        "CREATE INDEX IF NOT EXISTS idx_time_block_conflicts_plan "
        "ON time_block_conflicts(plan_id, resolution_status)"
    )

    # Audit log, append-only
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS scheduling_logs (
            id TEXT PRIMARY KEY,
            user_id TEXT,
            plan_id TEXT,
            action TEXT NOT NULL,
            success BOOLEAN NOT NULL,
            duration_ms DOUBLE PRECISION DEFAULT 0,
            data JSONB NOT NULL,
            created_at TIMESTAMP DEFAULT NOW()
        )
        """
    )
    await db.execute(
        "CREATE INDEX IF NOT EXISTS idx_scheduling_logs_plan ON scheduling_logs(plan_id, created_at DESC)"
    )
    await db.execute(
        "CREATE INDEX IF NOT EXISTS idx_scheduling_logs_user ON scheduling_logs(user_id, created_at DESC)"
    )

    # Behaviour profiles, written by the analytics side
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS behavior_profiles (
            user_id TEXT PRIMARY KEY,
            profile JSONB NOT NULL DEFAULT '{}',
            updated_at TIMESTAMP DEFAULT NOW()
        )
        """
    )
    logger.info("[Stores] Scheduler tables ready")


def _load_json(value: Any) -> Dict[str, Any]:
    if isinstance(value, str):
        return json.loads(value or "{}")
    return dict(value or {})


def _row_to_plan(row) -> StudyPlan:
    """Convert DB row to StudyPlan; the version column is authoritative."""
    plan = StudyPlan.from_dict(_load_json(row["data"]))
    return replace(plan, id=row["id"], version=row["version"])


def _row_to_task(row) -> StudyTask:
    return StudyTask.from_dict(_load_json(row["data"]))


def _row_to_conflict(row) -> TimeBlockConflict:
    conflict = TimeBlockConflict.from_dict(_load_json(row["data"]))
    return replace(conflict, id=row["id"])


class PostgresPlanStore(PlanStore):
    """Plans with optimistic versioning and advisory locks."""

    def __init__(self, db: Database, lock_poll_interval: float = 0.05, lock_poll_max: float = 1.0):
        self.db = db
        self.lock_poll_interval = lock_poll_interval
        self.lock_poll_max = lock_poll_max

    async def get_plan(self, plan_id: str) -> Optional[StudyPlan]:
        row = await self.db.fetchrow(
            "SELECT id, version, data FROM study_plans WHERE id = $1", plan_id
        )
        return _row_to_plan(row) if row else None

    async def create_plan(self, plan: StudyPlan) -> StudyPlan:
        try:
            await self.db.execute(
                """
                INSERT INTO study_plans (id, owner_id, status, is_archived, version, data, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8)
                """,
                plan.id, plan.owner_id, plan.status.value if plan.status else None,
                plan.is_archived, plan.version, json.dumps(plan.to_dict()),
                plan.created_at, plan.updated_at,
            )
        except asyncpg.UniqueViolationError as e:
            raise ValidationError(f"Plan {plan.id} already exists") from e
        return plan

    async def save_plan(self, plan: StudyPlan) -> StudyPlan:
        saved = replace(plan, version=plan.version + 1, updated_at=datetime.now())
        version = await self.db.fetchval(
            """
            UPDATE study_plans
            SET owner_id = $3, status = $4, is_archived = $5, version = $6,
                data = $7::jsonb, updated_at = $8
            WHERE id = $1 AND version = $2
            RETURNING version
            """,
            plan.id, plan.version, saved.owner_id,
            saved.status.value if saved.status else None, saved.is_archived,
            saved.version, json.dumps(saved.to_dict()), saved.updated_at,
        )
        if version is not None:
            return saved

        current = await self.db.fetchval("SELECT version FROM study_plans WHERE id = $1", plan.id)
        if current is None:
            raise NotFoundError(f"Plan {plan.id} not found")
        raise ConcurrencyConflict(
            f"Plan {plan.id} was modified concurrently "
            f"(expected version {plan.version}, found {current})",
            {"plan_id": plan.id},
        )

    @asynccontextmanager
    async def plan_lock(self, plan_id: str):
        # Advisory locks belong to the session that took them: lock and unlock
        # share one lock-pool connection. Waiters give theirs back between tries.
        delay = self.lock_poll_interval
        while True:
            async with self.db.lock_connection() as conn:
                if await conn.fetchval("SELECT pg_try_advisory_lock(hashtext($1))", plan_id):
                    try:
                        yield
                    finally:
                        await conn.execute("SELECT pg_advisory_unlock(hashtext($1))", plan_id)
                    return
            logger.debug(f"[PlanStore] Plan {plan_id} is locked, retrying in {delay:.2f}s")
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.lock_poll_max)


_TASK_COLUMNS = "id, plan_id, owner_id, status, window_start, is_deleted, data"


class PostgresTaskStore(TaskStore):
    """Tasks; multi-task writes share one transaction."""

    def __init__(self, db: Database):
        self.db = db

    async def get_task(self, task_id: str) -> Optional[StudyTask]:
        row = await self.db.fetchrow(f"SELECT {_TASK_COLUMNS} FROM study_tasks WHERE id = $1", task_id)
        return _row_to_task(row) if row else None

    async def list_tasks(self, plan_id: str) -> List[StudyTask]:
        rows = await self.db.fetch(
            f"""
            SELECT {_TASK_COLUMNS} FROM study_tasks
            WHERE plan_id = $1 AND NOT is_deleted
            ORDER BY created_at, id
            """,
            plan_id,
        )
        return [_row_to_task(row) for row in rows]

    async def list_user_active_tasks(self, owner_id: str) -> List[StudyTask]:
        rows = await self.db.fetch(
            f"""
            SELECT {_TASK_COLUMNS} FROM study_tasks
            WHERE owner_id = $1
              AND NOT is_deleted
              AND status NOT IN ('completed', 'skipped')
              AND window_start IS NOT NULL
            ORDER BY window_start, id
            """,
            owner_id,
        )
        return [_row_to_task(row) for row in rows]

    async def list_overdue(self, owner_id: str, plan_id: str, now: datetime) -> List[StudyTask]:
        rows = await self.db.fetch(
            f"""
            SELECT {_TASK_COLUMNS} FROM study_tasks
            WHERE owner_id = $1
              AND plan_id = $2
              AND NOT is_deleted
              AND status IN ('pending', 'rescheduled')
              AND window_start < $3
            ORDER BY window_start, id
            """,
            owner_id, plan_id, now,
        )
        return [_row_to_task(row) for row in rows]

    async def plans_with_overdue(self, now: datetime) -> List[str]:
        rows = await self.db.fetch(
            """
            SELECT DISTINCT plan_id FROM study_tasks
            WHERE NOT is_deleted
              AND status IN ('pending', 'rescheduled')
              AND window_start < $1
            ORDER BY plan_id
            """,
            now,
        )
        return [row["plan_id"] for row in rows]

    async def create_tasks(self, tasks: Sequence[StudyTask]) -> None:
        if not tasks:
            return
        try:
            await self.db.executemany(
                """
                INSERT INTO study_tasks (id, plan_id, owner_id, status, window_start, is_deleted, data)
                VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb)
                """,
                [_task_params(task) for task in tasks],
            )
        except asyncpg.UniqueViolationError as e:
            raise ValidationError(f"Task already exists: {e}") from e

    async def save_tasks(self, tasks: Sequence[StudyTask]) -> None:
        if not tasks:
            return
        ids = [task.id for task in tasks]
        async with self.db.transaction() as conn:
            rows = await conn.fetch("SELECT id FROM study_tasks WHERE id = ANY($1::text[])", ids)
            found = {row["id"] for row in rows}
            missing = [task_id for task_id in ids if task_id not in found]
            if missing:
                raise NotFoundError(f"Tasks not found: {', '.join(missing)}")
            await conn.executemany(
                """
                UPDATE study_tasks
                SET plan_id = $2, owner_id = $3, status = $4, window_start = $5,
                    is_deleted = $6, data = $7::jsonb, updated_at = NOW()
                WHERE id = $1
                """,
                [_task_params(task) for task in tasks],
            )


def _task_params(task: StudyTask) -> Tuple:
    return (
        task.id, task.plan_id, task.owner_id, task.status.value,
        task.window_start, task.is_deleted, json.dumps(task.to_dict()),
    )


class PostgresConflictStore(ConflictStore):
    """Conflicts keyed by (plan, canonical pair)."""

    def __init__(self, db: Database):
        self.db = db

    async def get_conflict(self, conflict_id: str) -> Optional[TimeBlockConflict]:
        row = await self.db.fetchrow("SELECT id, data FROM time_block_conflicts WHERE id = $1", conflict_id)
        return _row_to_conflict(row) if row else None

    async def find_by_pair(self, plan_id: str, pair: Tuple[str, str]) -> Optional[TimeBlockConflict]:
        first, second = pair_key(*pair)
        row = await self.db.fetchrow(
            """
            SELECT id, data FROM time_block_conflicts
            WHERE plan_id = $1 AND pair_a = $2 AND pair_b = $3
            """,
            plan_id, first, second,
        )
        return _row_to_conflict(row) if row else None

    async def upsert_conflict(self, conflict: TimeBlockConflict) -> TimeBlockConflict:
        first, second = conflict.pair_key
        stored_id = await self.db.fetchval(
            """
            INSERT INTO time_block_conflicts (id, plan_id, pair_a, pair_b, resolution_status, data, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7)
            ON CONFLICT (plan_id, pair_a, pair_b) DO UPDATE SET
                resolution_status = EXCLUDED.resolution_status,
                data = EXCLUDED.data,
                updated_at = EXCLUDED.updated_at
            RETURNING id
            """,
            conflict.id, conflict.plan_id, first, second,
            conflict.resolution_status.value, json.dumps(conflict.to_dict()), conflict.updated_at,
        )
        return replace(conflict, id=stored_id)

    async def list_conflicts(
        self, plan_id: str, status: Optional[ResolutionStatus] = None
    ) -> List[TimeBlockConflict]:
        query = "SELECT id, data FROM time_block_conflicts WHERE plan_id = $1"
        params: List[Any] = [plan_id]
        if status is not None:
            query += " AND resolution_status = $2"
            params.append(status.value)
        query += " ORDER BY updated_at DESC, id"
        rows = await self.db.fetch(query, *params)
        return [_row_to_conflict(row) for row in rows]


class PostgresAuditLogStore(AuditLogStore):
    """Append-only scheduling log table."""

    def __init__(self, db: Database):
        self.db = db

    async def append(self, entry: SchedulingLog) -> None:
        await self.db.execute(
            """
            INSERT INTO scheduling_logs (id, user_id, plan_id, action, success, duration_ms, data, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8)
            """,
            entry.id, entry.user_id, entry.plan_id, entry.action, entry.success,
            entry.duration_ms, json.dumps(entry.to_dict()), entry.created_at,
        )

    async def list_logs(
        self,
        plan_id: Optional[str] = None,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
        success: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[SchedulingLog]:
        query = "SELECT data FROM scheduling_logs WHERE 1=1"
        params: List[Any] = []
        param_idx = 1

        for column, value in (("plan_id", plan_id), ("user_id", user_id), ("success", success)):
            if value is not None:
                query += f" AND {column} = ${param_idx}"
                params.append(value)
                param_idx += 1

        if since is not None:
            query += f" AND created_at >= ${param_idx}"
            params.append(since)
            param_idx += 1

        query += " ORDER BY created_at DESC, id DESC"
        if limit is not None:
            query += f" LIMIT ${param_idx}"
            params.append(limit)

        rows = await self.db.fetch(query, *params)
        return [SchedulingLog.from_dict(_load_json(row["data"])) for row in rows]


class PostgresBehaviorProfiles(BehaviorProfileProvider):
    """Reads learned behaviour profiles."""

    def __init__(self, db: Database):
        self.db = db

    async def get_profile(self, user_id: str) -> Optional[BehaviorProfile]:
        row = await self.db.fetchrow(
            "SELECT profile FROM behavior_profiles WHERE user_id = $1", user_id
        )
        return BehaviorProfile.from_dict(_load_json(row["profile"])) if row else None


class PostgresStores:
    """Bundle of PostgreSQL stores sharing one pool."""

    def __init__(self, db: Database):
        self.db = db
        self.plans = PostgresPlanStore(db)
        self.tasks = PostgresTaskStore(db)
        self.conflicts = PostgresConflictStore(db)
        self.audit = PostgresAuditLogStore(db)
        self.profiles = PostgresBehaviorProfiles(db)
