"""Tests for the plan hydrator and task guard."""

from datetime import datetime

import pytest

from src.scheduler.errors import HydrationFailure, NotFoundError, OwnershipError
from src.scheduler.hydrator import (
    guard_task,
    hydrate_plan,
    load_hydrated_plan,
    planner_config,
    validate_hydrated_plan,
)
from src.scheduler.models import (
    PlanDifficulty,
    PlanStatus,
    StudyPlan,
    StudyTask,
    TaskDifficulty,
    TaskPriority,
)
from src.stores.memory import MemoryPlanStore


def legacy_plan(**overrides) -> StudyPlan:
    values = dict(
        id="PLAN-1",
        owner_id="user-1",
        start_date=datetime(2025, 3, 3),
        end_date=datetime(2025, 3, 9),
    )
    values.update(overrides)
    return StudyPlan(**values)


class TestHydratePlan:
    """Tests for hydrate_plan()."""

    def test_fills_missing_fields_with_defaults(self):
        hydrated, changes = hydrate_plan(legacy_plan())

        assert hydrated.daily_study_hours == 4
        assert hydrated.max_session_length == 90
        assert hydrated.break_duration == 15
        assert hydrated.preferred_time_slots == []
        assert hydrated.difficulty == PlanDifficulty.INTERMEDIATE
        assert hydrated.status == PlanStatus.ACTIVE
        assert hydrated.exam_mode is False
        assert "daily_study_hours" in changes

    def test_promotes_legacy_config_hours(self):
        hydrated, changes = hydrate_plan(legacy_plan(config={"dailyStudyHours": 3}))

        assert hydrated.daily_study_hours == 3
        assert "daily_study_hours (from config)" in changes
        assert "daily_study_hours" not in changes

    def test_does_not_modify_input(self):
        original = legacy_plan()

        hydrate_plan(original)

        assert original.daily_study_hours is None
        assert original.status is None

    def test_complete_plan_is_unchanged(self, make_plan):
        plan = make_plan()

        hydrated, changes = hydrate_plan(plan)

        assert hydrated is plan
        assert changes == []

    def test_legacy_plan_hydrates_once(self):
        """Should reach a fixed point after the first hydration."""
        first, _ = hydrate_plan(legacy_plan(config={"dailyStudyHours": 3}))

        second, changes = hydrate_plan(first)

        assert second == first
        assert changes == []

    def test_keeps_existing_values(self):
        hydrated, _ = hydrate_plan(legacy_plan(daily_study_hours=6, status=PlanStatus.PAUSED))

        assert hydrated.daily_study_hours == 6
        assert hydrated.status == PlanStatus.PAUSED

    def test_default_list_is_not_shared(self):
        first, _ = hydrate_plan(legacy_plan())
        second, _ = hydrate_plan(legacy_plan(id="PLAN-2"))

        first.preferred_time_slots.append("morning")

        assert second.preferred_time_slots == []


class TestValidateHydratedPlan:
    """Tests for validate_hydrated_plan()."""

    def test_accepts_hydrated_plan(self):
        hydrated, _ = hydrate_plan(legacy_plan())

        validate_hydrated_plan(hydrated)

    def test_rejects_missing_owner(self):
        hydrated, _ = hydrate_plan(legacy_plan(owner_id=None))

        with pytest.raises(HydrationFailure) as exc_info:
            validate_hydrated_plan(hydrated)

        assert exc_info.value.details["missing"] == ["owner_id"]

    @pytest.mark.parametrize("hours", [0, -2, True, "4"])
    def test_rejects_invalid_hours(self, hours):
        hydrated, _ = hydrate_plan(legacy_plan(daily_study_hours=hours))

        with pytest.raises(HydrationFailure):
            validate_hydrated_plan(hydrated)


class TestPlannerConfig:
    """Tests for planner_config()."""

    def test_normalises_optional_fields(self):
        config = planner_config(legacy_plan(daily_study_hours=2))

        assert config["daily_study_hours"] == 2
        assert config["max_session_length"] == 90
        assert config["preferred_time_slots"] == []
        assert config["exam_mode"] is False


class TestGuardTask:
    """Tests for guard_task()."""

    def test_backfills_legacy_fields(self):
        legacy = StudyTask(
            id="T1", plan_id="PLAN-1", owner_id="user-1",
            duration=None, difficulty=None, priority=None,
        )

        guarded = guard_task(legacy)

        assert guarded.duration == 60
        assert guarded.difficulty == TaskDifficulty.MEDIUM
        assert guarded.priority == TaskPriority.MEDIUM

    def test_complete_task_is_returned_as_is(self, make_task):
        task = make_task("T1", duration=45)

        assert guard_task(task) is task


class TestLoadHydratedPlan:
    """Tests for load_hydrated_plan()."""

    @pytest.mark.asyncio
    async def test_raises_for_missing_plan(self):
        with pytest.raises(NotFoundError):
            await load_hydrated_plan(MemoryPlanStore(), "PLAN-X", "user-1")

    @pytest.mark.asyncio
    async def test_raises_for_other_owner(self):
        plans = MemoryPlanStore()
        await plans.create_plan(legacy_plan())

        with pytest.raises(OwnershipError):
            await load_hydrated_plan(plans, "PLAN-1", "user-2")

    @pytest.mark.asyncio
    async def test_persists_hydrated_plan(self):
        plans = MemoryPlanStore()
        await plans.create_plan(legacy_plan(config={"dailyStudyHours": 3}))

        hydrated = await load_hydrated_plan(plans, "PLAN-1", "user-1")
        stored = await plans.get_plan("PLAN-1")

        assert hydrated.daily_study_hours == 3
        assert stored.daily_study_hours == 3
        assert stored.version == 1

    @pytest.mark.asyncio
    async def test_complete_plan_is_not_rewritten(self, make_plan):
        plans = MemoryPlanStore()
        await plans.create_plan(make_plan())

        await load_hydrated_plan(plans, "PLAN-1", "user-1")

        assert (await plans.get_plan("PLAN-1")).version == 0

    @pytest.mark.asyncio
    async def test_unusable_plan_is_not_persisted(self):
        plans = MemoryPlanStore()
        await plans.create_plan(legacy_plan(daily_study_hours=-1))

        with pytest.raises(HydrationFailure):
            await load_hydrated_plan(plans, "PLAN-1", "user-1")

        assert (await plans.get_plan("PLAN-1")).version == 0
