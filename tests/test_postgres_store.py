"""Tests for the PostgreSQL stores against a mocked database."""

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.db.pool import Database
from src.scheduler.errors import ConcurrencyConflict, NotFoundError
from src.scheduler.models import (
    ConflictSeverity,
    ConflictType,
    ResolutionStatus,
    TimeBlockConflict,
)
from src.stores.postgres import (
    PostgresAuditLogStore,
    PostgresBehaviorProfiles,
    PostgresConflictStore,
    PostgresPlanStore,
    PostgresStores,
    PostgresTaskStore,
    ensure_scheduler_tables,
)

NOW = datetime(2025, 3, 3, 7, 0)


@pytest.fixture
def mock_conn():
    """Connection handed out by connection() and transaction()."""
    conn = MagicMock()
    conn.execute = AsyncMock()
    conn.executemany = AsyncMock()
    conn.fetch = AsyncMock(return_value=[])
    return conn


@pytest.fixture
def mock_db(mock_conn):
    """Create mock database."""
    db = MagicMock()
    db.fetchrow = AsyncMock(return_value=None)
    db.fetch = AsyncMock(return_value=[])
    db.fetchval = AsyncMock()
    db.execute = AsyncMock()
    db.executemany = AsyncMock()

    @asynccontextmanager
    async def _conn():
        yield mock_conn

    db.connection = _conn
    db.lock_connection = _conn
    db.transaction = _conn
    return db


class LockingConnection:
    """Connection whose advisory locks live in a dict shared by both pools."""

    def __init__(self, locks):
        self.locks = locks

    async def fetchval(self, query, *args):
        if "pg_try_advisory_lock" in query:
            if self.locks.get(args[0]) not in (None, self):
                return False
            self.locks[args[0]] = self
            return True
        return 1

    async def execute(self, query, *args):
        if "pg_advisory_unlock" in query and self.locks.get(args[0]) is self:
            del self.locks[args[0]]
        return "SELECT 1"


class BoundedPool:
    """Pool that blocks acquire() once max_size connections are out."""

    def __init__(self, max_size, locks):
        self.slots = asyncio.Semaphore(max_size)
        self.locks = locks

    @asynccontextmanager
    async def acquire(self):
        async with self.slots:
            yield LockingConnection(self.locks)


def task_row(task):
    return {
        "id": task.id,
        "plan_id": task.plan_id,
        "owner_id": task.owner_id,
        "status": task.status.value,
        "window_start": task.window_start,
        "is_deleted": task.is_deleted,
        "data": json.dumps(task.to_dict()),
    }


class TestPlanStore:
    """Tests for PostgresPlanStore."""

    @pytest.mark.asyncio
    async def test_get_plan_uses_version_column(self, mock_db, make_plan):
        """Should read the document and trust the version column."""
        plan = make_plan()
        mock_db.fetchrow.return_value = {"id": "PLAN-1", "version": 7, "data": json.dumps(plan.to_dict())}

        loaded = await PostgresPlanStore(mock_db).get_plan("PLAN-1")

        assert loaded.id == "PLAN-1"
        assert loaded.version == 7
        assert loaded.daily_study_hours == 4

    @pytest.mark.asyncio
    async def test_get_plan_accepts_decoded_json(self, mock_db, make_plan):
        """Should accept JSONB already decoded to a dict."""
        plan = make_plan()
        mock_db.fetchrow.return_value = {"id": "PLAN-1", "version": 1, "data": plan.to_dict()}

        loaded = await PostgresPlanStore(mock_db).get_plan("PLAN-1")

        assert loaded.title == "Linear Algebra"

    @pytest.mark.asyncio
    async def test_get_missing_plan(self, mock_db):
        assert await PostgresPlanStore(mock_db).get_plan("PLAN-X") is None

    @pytest.mark.asyncio
    async def test_save_plan_bumps_version(self, mock_db, make_plan):
        """Should update only the expected version and return the next one."""
        mock_db.fetchval.return_value = 1

        saved = await PostgresPlanStore(mock_db).save_plan(make_plan())

        assert saved.version == 1
        args = mock_db.fetchval.call_args.args
        assert "WHERE id = $1 AND version = $2" in args[0]
        assert args[1:3] == ("PLAN-1", 0)

    @pytest.mark.asyncio
    async def test_save_stale_plan(self, mock_db, make_plan):
        """Should raise ConcurrencyConflict when another writer got there first."""
        mock_db.fetchval.side_effect = [None, 3]

        with pytest.raises(ConcurrencyConflict) as exc_info:
            await PostgresPlanStore(mock_db).save_plan(make_plan())

        assert "found 3" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_save_missing_plan(self, mock_db, make_plan):
        mock_db.fetchval.side_effect = [None, None]

        with pytest.raises(NotFoundError):
            await PostgresPlanStore(mock_db).save_plan(make_plan())

    @pytest.mark.asyncio
    async def test_create_plan(self, mock_db, make_plan):
        await PostgresPlanStore(mock_db).create_plan(make_plan())

        args = mock_db.execute.call_args.args
        assert "INSERT INTO study_plans" in args[0]
        assert args[1:6] == ("PLAN-1", "user-1", "active", False, 0)

    @pytest.mark.asyncio
    async def test_plan_lock_uses_one_connection(self, mock_db, mock_conn):
        """Should take and release the advisory lock on the same connection."""
        mock_conn.fetchval = AsyncMock(return_value=True)

        async with PostgresPlanStore(mock_db).plan_lock("PLAN-1"):
            mock_conn.execute.assert_not_called()

        mock_conn.fetchval.assert_awaited_once_with("SELECT pg_try_advisory_lock(hashtext($1))", "PLAN-1")
        mock_conn.execute.assert_awaited_once_with("SELECT pg_advisory_unlock(hashtext($1))", "PLAN-1")

    @pytest.mark.asyncio
    async def test_plan_lock_released_on_error(self, mock_db, mock_conn):
        mock_conn.fetchval = AsyncMock(return_value=True)

        with pytest.raises(RuntimeError):
            async with PostgresPlanStore(mock_db).plan_lock("PLAN-1"):
                raise RuntimeError("boom")

        assert "pg_advisory_unlock" in mock_conn.execute.call_args.args[0]

    @pytest.mark.asyncio
    async def test_plan_lock_retries_while_held(self, mock_db, mock_conn):
        mock_conn.fetchval = AsyncMock(side_effect=[False, False, True])
        store = PostgresPlanStore(mock_db, lock_poll_interval=0.001)

        async with store.plan_lock("PLAN-1"):
            pass

        assert mock_conn.fetchval.await_count == 3
        mock_conn.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_waiters_do_not_exhaust_query_pool(self):
        """More same-plan callers than query connections should all finish."""
        locks = {}
        db = Database(max_size=10)
        db.pool = BoundedPool(db.max_size, locks)
        db.lock_pool = BoundedPool(db.lock_pool_size, locks)
        store = PostgresPlanStore(db, lock_poll_interval=0.001, lock_poll_max=0.01)
        holders = []
        finished = []

        async def operation(n):
            async with store.plan_lock("PLAN-1"):
                holders.append(n)
                assert len(holders) == 1
                await db.fetchval("SELECT version FROM study_plans WHERE id = $1", "PLAN-1")
                await asyncio.sleep(0)
                holders.remove(n)
            finished.append(n)

        await asyncio.wait_for(
            asyncio.gather(*(operation(n) for n in range(db.max_size + 1))), timeout=5
        )

        assert sorted(finished) == list(range(11))
        assert locks == {}


class TestTaskStore:
    """Tests for PostgresTaskStore."""

    @pytest.mark.asyncio
    async def test_list_overdue(self, mock_db, make_task):
        task = make_task("T1", window_start=datetime(2025, 3, 1, 9))
        mock_db.fetch.return_value = [task_row(task)]

        tasks = await PostgresTaskStore(mock_db).list_overdue("user-1", "PLAN-1", NOW)

        assert [t.id for t in tasks] == ["T1"]
        assert tasks[0].window_start == datetime(2025, 3, 1, 9)
        query, *params = mock_db.fetch.call_args.args
        assert "status IN ('pending', 'rescheduled')" in query
        assert params == ["user-1", "PLAN-1", NOW]

    @pytest.mark.asyncio
    async def test_plans_with_overdue(self, mock_db):
        mock_db.fetch.return_value = [{"plan_id": "PLAN-1"}, {"plan_id": "PLAN-2"}]

        assert await PostgresTaskStore(mock_db).plans_with_overdue(NOW) == ["PLAN-1", "PLAN-2"]

    @pytest.mark.asyncio
    async def test_create_tasks_batches(self, mock_db, make_task):
        await PostgresTaskStore(mock_db).create_tasks([make_task("T1"), make_task("T2")])

        query, rows = mock_db.executemany.call_args.args
        assert "INSERT INTO study_tasks" in query
        assert [row[0] for row in rows] == ["T1", "T2"]

    @pytest.mark.asyncio
    async def test_create_no_tasks(self, mock_db):
        await PostgresTaskStore(mock_db).create_tasks([])

        mock_db.executemany.assert_not_called()

    @pytest.mark.asyncio
    async def test_save_tasks_in_one_transaction(self, mock_db, mock_conn, make_task):
        mock_conn.fetch.return_value = [{"id": "T1"}, {"id": "T2"}]

        await PostgresTaskStore(mock_db).save_tasks([make_task("T1"), make_task("T2")])

        query, rows = mock_conn.executemany.call_args.args
        assert query.strip().startswith("UPDATE study_tasks")
        assert len(rows) == 2

    @pytest.mark.asyncio
    async def test_save_tasks_rejects_unknown_ids(self, mock_db, mock_conn, make_task):
        """Should write nothing when any task is missing."""
        mock_conn.fetch.return_value = [{"id": "T1"}]

        with pytest.raises(NotFoundError, match="T2"):
            await PostgresTaskStore(mock_db).save_tasks([make_task("T1"), make_task("T2")])

        mock_conn.executemany.assert_not_called()


class TestConflictStore:
    """Tests for PostgresConflictStore."""

    @pytest.fixture
    def conflict(self):
        return TimeBlockConflict(
            plan_id="PLAN-1",
            owner_id="user-1",
            task1_id="T2",
            task2_id="T1",
            overlap_start=datetime(2025, 3, 3, 9),
            overlap_end=datetime(2025, 3, 3, 10),
            overlap_minutes=60,
            conflict_type=ConflictType.DIRECT_OVERLAP,
            severity=ConflictSeverity.HIGH,
            id="CONF-NEW",
        )

    @pytest.mark.asyncio
    async def test_upsert_keeps_stored_id(self, mock_db, conflict):
        """Should key on the canonical pair and return the surviving row id."""
        mock_db.fetchval.return_value = "CONF-OLD"

        stored = await PostgresConflictStore(mock_db).upsert_conflict(conflict)

        assert stored.id == "CONF-OLD"
        query, *params = mock_db.fetchval.call_args.args
        assert "ON CONFLICT (plan_id, pair_a, pair_b)" in query
        assert params[:5] == ["CONF-NEW", "PLAN-1", "T1", "T2", "detected"]

    @pytest.mark.asyncio
    async def test_find_by_pair_is_order_insensitive(self, mock_db):
        await PostgresConflictStore(mock_db).find_by_pair("PLAN-1", ("T2", "T1"))

        assert mock_db.fetchrow.call_args.args[1:] == ("PLAN-1", "T1", "T2")

    @pytest.mark.asyncio
    async def test_list_by_status(self, mock_db, conflict):
        mock_db.fetch.return_value = [{"id": "CONF-NEW", "data": json.dumps(conflict.to_dict())}]

        conflicts = await PostgresConflictStore(mock_db).list_conflicts("PLAN-1", ResolutionStatus.DETECTED)

        assert [c.id for c in conflicts] == ["CONF-NEW"]
        query, *params = mock_db.fetch.call_args.args
        assert "resolution_status = $2" in query
        assert params == ["PLAN-1", "detected"]


class TestAuditLogStore:
    """Tests for PostgresAuditLogStore."""

    @pytest.mark.asyncio
    async def test_list_logs_builds_filters(self, mock_db):
        since = datetime(2025, 3, 1)

        await PostgresAuditLogStore(mock_db).list_logs(user_id="user-1", since=since, success=False, limit=5)

        query, *params = mock_db.fetch.call_args.args
        assert "user_id = $1" in query
        assert "success = $2" in query
        assert "created_at >= $3" in query
        assert query.endswith("LIMIT $4")
        assert params == ["user-1", False, since, 5]

    @pytest.mark.asyncio
    async def test_list_logs_without_filters(self, mock_db):
        await PostgresAuditLogStore(mock_db).list_logs()

        query, *params = mock_db.fetch.call_args.args
        assert "$1" not in query
        assert params == []


class TestSchema:
    """Tests for ensure_scheduler_tables() and the store bundle."""

    @pytest.mark.asyncio
    async def test_creates_tables(self, mock_db):
        await ensure_scheduler_tables(mock_db)

        statements = " ".join(c.args[0] for c in mock_db.execute.call_args_list)
        for table in ("study_plans", "study_tasks", "time_block_conflicts", "scheduling_logs", "behavior_profiles"):
            assert f"CREATE TABLE IF NOT EXISTS {table}" in statements

    @pytest.mark.asyncio
    async def test_profiles(self, mock_db):
        mock_db.fetchrow.return_value = {"profile": json.dumps({"optimal_time_of_day": "evening", "is_reliable": True})}

        profile = await PostgresBehaviorProfiles(mock_db).get_profile("user-1")

        assert profile.optimal_time_of_day == "evening"
        assert profile.is_reliable is True

    def test_bundle_shares_database(self, mock_db):
        stores = PostgresStores(mock_db)

        assert stores.plans.db is stores.tasks.db is stores.audit.db is mock_db
