"""Tests for the scheduling audit log."""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from src.scheduler.audit import AuditLog
from src.scheduler.models import SchedulingLog, TriggeredBy
from src.stores.memory import MemoryAuditLogStore


@pytest.fixture
def store():
    return MemoryAuditLogStore()


@pytest.fixture
def audit(store):
    return AuditLog(store)


class TestTrack:
    """Tests for AuditLog.track()."""

    @pytest.mark.asyncio
    async def test_records_success(self, audit, store):
        async with audit.track("auto_schedule", "user-1", "PLAN-1", TriggeredBy.USER_ACTION) as record:
            record.task_ids = ["T1", "T2"]
            record.details["allocated_tasks"] = 2

        [entry] = store.entries
        assert entry.success is True
        assert entry.action == "auto_schedule"
        assert entry.task_ids == ("T1", "T2")
        assert entry.details == {"allocated_tasks": 2}
        assert entry.triggered_by == TriggeredBy.USER_ACTION
        assert entry.duration_ms >= 0
        assert entry.error_message is None

    @pytest.mark.asyncio
    async def test_records_failure_and_reraises(self, audit, store):
        with pytest.raises(RuntimeError, match="boom"):
            async with audit.track("detect_conflicts", "user-1", "PLAN-1") as record:
                record.task_ids = ["T1"]
                raise RuntimeError("boom")

        [entry] = store.entries
        assert entry.success is False
        assert entry.error_message == "boom"
        assert entry.task_ids == ("T1",)

    @pytest.mark.asyncio
    async def test_original_error_wins_when_logging_fails(self, caplog):
        broken = MemoryAuditLogStore()
        broken.append = AsyncMock(side_effect=OSError("disk full"))

        with pytest.raises(ValueError, match="bad plan"):
            async with AuditLog(broken).track("auto_schedule", "user-1", "PLAN-1"):
                raise ValueError("bad plan")

        assert "Failed to record failure of auto_schedule" in caplog.text

    @pytest.mark.asyncio
    async def test_enum_actions_are_stored_as_values(self, audit, store):
        from src.scheduler.models import AuditAction

        async with audit.track(AuditAction.SWEEP, None):
            pass

        assert store.entries[0].action == "sweep"
        assert store.entries[0].user_id is None


class TestStatistics:
    """Tests for the audit summaries."""

    @pytest.mark.asyncio
    async def test_plan_stats(self, audit, store):
        await store.append(SchedulingLog("user-1", "PLAN-1", "auto_schedule", True, duration_ms=100))
        await store.append(SchedulingLog("user-1", "PLAN-1", "auto_schedule", False, duration_ms=300))
        await store.append(SchedulingLog("user-1", "PLAN-1", "reschedule_task", True, duration_ms=1200))
        await store.append(SchedulingLog("user-1", "PLAN-2", "auto_schedule", True, duration_ms=50))

        stats = await audit.plan_stats("PLAN-1")

        assert stats == {
            "total_actions": 3,
            "successful_actions": 2,
            "failed_actions": 1,
            "avg_duration_ms": 533.333,
            "slow_actions_count": 1,
            "action_breakdown": {"auto_schedule": 2, "reschedule_task": 1},
        }

    @pytest.mark.asyncio
    async def test_user_stats(self, audit, store):
        await store.append(SchedulingLog("user-1", "PLAN-1", "auto_schedule", True, ("T1", "T2"), duration_ms=100))
        await store.append(SchedulingLog("user-1", "PLAN-1", "auto_schedule", False, duration_ms=300))
        await store.append(SchedulingLog("user-1", "PLAN-2", "resolve_conflict", True, ("T9",), duration_ms=200))
        await store.append(SchedulingLog("user-2", "PLAN-3", "auto_schedule", True, duration_ms=50))

        stats = await audit.user_stats("user-1")

        assert stats["total_actions"] == 3
        assert stats["success_rate"] == 66.7
        assert stats["avg_duration_ms"] == 200.0
        assert stats["plans_scheduled"] == 2
        assert stats["tasks_affected"] == 3

    @pytest.mark.asyncio
    async def test_empty_stats(self, audit):
        assert (await audit.user_stats("nobody"))["success_rate"] == 0.0
        assert (await audit.plan_stats("PLAN-X"))["avg_duration_ms"] == 0.0

    @pytest.mark.asyncio
    async def test_recent_failures_window(self, audit, store):
        now = datetime(2025, 3, 10, 12, 0)
        await store.append(SchedulingLog("user-1", "PLAN-1", "auto_schedule", False, created_at=now - timedelta(days=1)))
        await store.append(SchedulingLog("user-1", "PLAN-1", "auto_schedule", False, created_at=now - timedelta(days=9)))
        await store.append(SchedulingLog("user-1", "PLAN-1", "auto_schedule", True, created_at=now - timedelta(hours=1)))

        failures = await audit.recent_failures("user-1", days=7, now=now)

        assert len(failures) == 1
        assert failures[0].created_at == now - timedelta(days=1)

    @pytest.mark.asyncio
    async def test_slow_actions_slowest_first(self, audit, store):
        await store.append(SchedulingLog("user-1", "PLAN-1", "auto_schedule", True, duration_ms=1500))
        await store.append(SchedulingLog("user-1", "PLAN-1", "auto_schedule", True, duration_ms=900))
        await store.append(SchedulingLog("user-1", "PLAN-1", "detect_conflicts", True, duration_ms=4000))

        slow = await audit.slow_actions(plan_id="PLAN-1")

        assert [log.duration_ms for log in slow] == [4000, 1500]
