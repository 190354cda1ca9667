"""Tests for missed-work redistribution."""

from collections import Counter
from datetime import datetime, timedelta

import pytest

from src.scheduler.errors import OwnershipError
from src.scheduler.events import TasksRescheduled
from src.scheduler.models import (
    BehaviorProfile,
    TaskDifficulty,
    TaskPriority,
    TaskStatus,
)
from src.scheduler.redistribution import (
    SKIP_NO_AVAILABLE_SLOTS,
    SKIP_OVER_LIMIT,
    DayLoad,
    prioritize,
    score_task,
)

NOW = datetime(2025, 3, 3, 7, 0)


def missed(make_task, task_id: str, hour: int, **overrides):
    """Task whose window was on Saturday morning."""
    start = datetime(2025, 3, 1, hour, 0)
    return make_task(task_id, window_start=start, window_end=start + timedelta(hours=1), **overrides)


class TestScoring:
    """Tests for score_task() and prioritize()."""

    def test_score_without_exam(self, make_task):
        task = make_task(
            "T1",
            priority=TaskPriority.HIGH,
            window_start=NOW - timedelta(days=3),
            window_end=NOW - timedelta(days=3) + timedelta(hours=1),
        )

        # 20 neutral + 20 medium + 3 days * 2 + 10 efficiency + 10 high
        assert score_task(task, NOW, None) == 66

    def test_score_with_proximity(self, make_task):
        task = make_task("T1", difficulty=TaskDifficulty.EASY, window_start=NOW - timedelta(hours=1))

        # 80 * 0.4 + 10 easy + 0 days + 10 efficiency
        assert score_task(task, NOW, 80) == 52

    def test_overdue_points_capped(self, make_task):
        task = make_task(
            "T1",
            difficulty=TaskDifficulty.HARD,
            priority=TaskPriority.URGENT,
            window_start=NOW - timedelta(days=30),
        )

        assert score_task(task, NOW, None) == 20 + 30 + 20 + 10 + 15

    def test_efficiency_factor(self, make_task):
        task = make_task("T1", window_start=NOW - timedelta(hours=1))

        assert score_task(task, NOW, None, efficiency_factor=1.5) - score_task(task, NOW, None) == 5

    def test_prioritize_orders_by_score_then_id(self, make_task):
        tasks = [
            make_task("T3", window_start=NOW - timedelta(hours=1)),
            make_task("T1", window_start=NOW - timedelta(hours=1)),
            make_task("T2", window_start=NOW - timedelta(hours=1), difficulty=TaskDifficulty.HARD),
        ]

        assert [s.task.id for s in prioritize(tasks, NOW, None)] == ["T2", "T1", "T3"]

    def test_prioritize_uses_exam_proximity(self, make_task):
        exam = NOW + timedelta(days=5)
        tasks = [make_task("T1", window_start=NOW - timedelta(hours=1))]

        [scored] = prioritize(tasks, NOW, exam)

        assert scored.proximity is not None
        assert scored.score == scored.proximity * 0.4 + 20 + 10


class TestDayLoad:
    """Tests for DayLoad."""

    def test_caps(self, make_task):
        load = DayLoad(max_tasks=2, max_hard=1, max_minutes=150)
        day = NOW.date()
        hard = make_task("H1", difficulty=TaskDifficulty.HARD)

        assert load.fits(day, hard, 60)
        load.add(day, hard, 60)
        assert not load.fits(day, make_task("H2", difficulty=TaskDifficulty.HARD), 60)
        assert load.fits(day, make_task("E1"), 60)
        assert not load.fits(day, make_task("E2"), 120)
        load.add(day, make_task("E1"), 60)
        assert not load.fits(day, make_task("E3", duration=30), 30)


class TestRedistributionEngine:
    """Tests for RedistributionEngine via the scheduling service."""

    @pytest.fixture
    def plan(self, make_plan):
        return make_plan(end_date=datetime(2025, 3, 20))

    @pytest.mark.asyncio
    async def test_moves_overdue_tasks_to_future_slots(self, service, stores, events, seed, plan, make_task):
        await seed(plan, [missed(make_task, f"T{i}", 8 + i) for i in (1, 2, 3)])

        result = await service.redistribute_missed("user-1", "PLAN-1")

        assert result.total_overdue == 3
        assert result.rescheduled_count == 3
        assert result.skipped == []
        starts = [(await stores.tasks.get_task(f"T{i}")).window_start for i in (1, 2, 3)]
        assert starts == [datetime(2025, 3, 3, 8), datetime(2025, 3, 3, 9), datetime(2025, 3, 3, 10)]

        moved = await stores.tasks.get_task("T1")
        assert moved.status == TaskStatus.PENDING
        assert moved.is_rescheduled
        assert moved.reschedule_count == 1
        assert moved.reschedule_history[-1].run_id == result.run_id
        assert moved.reschedule_history[-1].old_start == datetime(2025, 3, 1, 9)

        stored_plan = await stores.plans.get_plan("PLAN-1")
        assert stored_plan.adaptation_count == 1
        assert stored_plan.missed_tasks_redistributed == 3
        assert stored_plan.last_run_id == result.run_id
        assert stored_plan.last_adapted_at == NOW

        [event] = events.drain()
        assert isinstance(event, TasksRescheduled)
        assert event.count == 3
        assert event.run_id == result.run_id

    @pytest.mark.asyncio
    async def test_same_run_id_is_applied_once(self, service, stores, events, seed, plan, make_task):
        await seed(plan, [missed(make_task, "T1", 9), missed(make_task, "T2", 10)])
        first = await service.redistribute_missed("user-1", "PLAN-1")
        events.drain()

        # A day later the new windows are overdue again, but the run is a retry
        retry = await service.redistribute_missed(
            "user-1",
            "PLAN-1",
            service.default_redistribution_options(run_id=first.run_id),
            now=NOW + timedelta(days=1),
        )

        assert retry.total_overdue == 2
        assert (await stores.tasks.get_task("T1")).reschedule_count == 1
        stored_plan = await stores.plans.get_plan("PLAN-1")
        assert stored_plan.adaptation_count == 1
        assert stored_plan.missed_tasks_redistributed == 2
        assert events.drain() == []

    @pytest.mark.asyncio
    async def test_hard_task_cap_per_day(self, service, stores, seed, plan, make_task):
        await seed(plan, [
            missed(make_task, f"H{i}", 8 + i, difficulty=TaskDifficulty.HARD) for i in (1, 2, 3)
        ])

        await service.redistribute_missed("user-1", "PLAN-1")

        days = Counter([(await stores.tasks.get_task(f"H{i}")).window_start.date() for i in (1, 2, 3)])
        assert days == {datetime(2025, 3, 3).date(): 2, datetime(2025, 3, 4).date(): 1}

    @pytest.mark.asyncio
    async def test_daily_minutes_buffer(self, service, stores, seed, plan, make_task):
        # 4 hours * 0.9 leaves room for three one-hour tasks a day
        await seed(plan, [missed(make_task, f"T{i}", 8 + i % 4) for i in range(1, 6)])

        await service.redistribute_missed("user-1", "PLAN-1")

        days = Counter([(await stores.tasks.get_task(f"T{i}")).window_start.date() for i in range(1, 6)])
        assert days == {datetime(2025, 3, 3).date(): 3, datetime(2025, 3, 4).date(): 2}

    @pytest.mark.asyncio
    async def test_max_to_reschedule(self, service, stores, seed, plan, make_task):
        await seed(plan, [missed(make_task, f"T{i}", 8 + i) for i in (1, 2, 3)])

        result = await service.redistribute_missed(
            "user-1", "PLAN-1", service.default_redistribution_options(max_to_reschedule=2)
        )

        assert result.rescheduled_count == 2
        assert [(s["task_id"], s["reason"]) for s in result.skipped] == [("T3", SKIP_OVER_LIMIT)]
        assert (await stores.tasks.get_task("T3")).window_start == datetime(2025, 3, 1, 11)

    @pytest.mark.asyncio
    async def test_no_slots_left_in_plan(self, service, seed, make_plan, make_task):
        await seed(
            make_plan(start_date=datetime(2025, 2, 24), end_date=datetime(2025, 3, 2)),
            [missed(make_task, "T1", 9)],
        )

        result = await service.redistribute_missed("user-1", "PLAN-1")

        assert result.rescheduled_count == 0
        assert result.skipped[0]["reason"] == SKIP_NO_AVAILABLE_SLOTS

    @pytest.mark.asyncio
    async def test_nothing_overdue(self, service, stores, seed, plan, make_task):
        await seed(plan, [make_task("T1")])

        result = await service.redistribute_missed("user-1", "PLAN-1")

        assert result.total_overdue == 0
        assert result.rescheduled == []
        assert stores.audit.entries[-1].details["total_overdue"] == 0
        assert stores.audit.entries[-1].success

    @pytest.mark.asyncio
    async def test_requires_ownership(self, service, seed, plan, make_task):
        await seed(plan, [missed(make_task, "T1", 9)])

        with pytest.raises(OwnershipError):
            await service.redistribute_missed("user-2", "PLAN-1")

    @pytest.mark.asyncio
    async def test_avoids_windows_of_other_plans(self, service, stores, seed, plan, make_plan, make_task):
        await seed(plan, [missed(make_task, "T1", 9)])
        await stores.plans.create_plan(make_plan(id="PLAN-2"))
        await stores.tasks.create_tasks([
            make_task(
                "OTHER",
                plan_id="PLAN-2",
                window_start=datetime(2025, 3, 3, 8),
                window_end=datetime(2025, 3, 3, 9),
            )
        ])

        await service.redistribute_missed("user-1", "PLAN-1")

        assert (await stores.tasks.get_task("T1")).window_start == datetime(2025, 3, 3, 9)

    @pytest.mark.asyncio
    async def test_prefers_optimal_time_of_day(self, service, stores, seed, make_plan, make_task):
        stores.profiles.profiles["user-1"] = BehaviorProfile(
            optimal_time_of_day="evening", efficiency_factor=1.2, is_reliable=True
        )
        await seed(
            make_plan(end_date=datetime(2025, 3, 20), preferred_time_slots=["morning", "evening"]),
            [missed(make_task, "T1", 9)],
        )

        await service.redistribute_missed("user-1", "PLAN-1")

        assert (await stores.tasks.get_task("T1")).window_start == datetime(2025, 3, 3, 18)

    @pytest.mark.asyncio
    async def test_exam_mode_records_phase_and_proximity(self, service, stores, seed, make_plan, make_task):
        await seed(
            make_plan(end_date=datetime(2025, 3, 30), exam_mode=True, exam_date=NOW + timedelta(days=20)),
            [missed(make_task, "T1", 9)],
        )

        result = await service.redistribute_missed("user-1", "PLAN-1")

        assert result.exam_phase == "revision"
        assert (await stores.tasks.get_task("T1")).exam_proximity_score > 0
        assert (await stores.plans.get_plan("PLAN-1")).current_phase == "revision"
