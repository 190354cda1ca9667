"""Pytest configuration and fixtures."""

import os
from datetime import datetime
from typing import List

import pytest

from src.scheduler.events import QueueEventSink
from src.scheduler.models import PlanDifficulty, PlanStatus, StudyPlan, StudyTask
from src.scheduler.service import SchedulingService
from src.stores.memory import MemoryStores

# Set test environment
os.environ.pop("SCHEDULER_CONFIG_PATH", None)
os.environ["LOG_LEVEL"] = "WARNING"

# Monday 07:00, before the first morning slot
NOW = datetime(2025, 3, 3, 7, 0)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def stores() -> MemoryStores:
    """Fresh in-memory stores."""
    return MemoryStores()


@pytest.fixture
def events() -> QueueEventSink:
    return QueueEventSink()


@pytest.fixture
def service(stores, events) -> SchedulingService:
    """Scheduling service on memory stores with a frozen clock."""
    return SchedulingService(
        plans=stores.plans,
        tasks=stores.tasks,
        conflicts=stores.conflicts,
        audit_store=stores.audit,
        events=events,
        profiles=stores.profiles,
        clock=lambda: NOW,
    )


@pytest.fixture
def make_plan():
    """Factory for a fully populated one-week plan owned by user-1."""
    def _make(**overrides) -> StudyPlan:
        values = dict(
            id="PLAN-1",
            owner_id="user-1",
            title="Linear Algebra",
            start_date=datetime(2025, 3, 3),
            end_date=datetime(2025, 3, 9),
            daily_study_hours=4,
            max_session_length=90,
            break_duration=15,
            preferred_time_slots=["morning"],
            difficulty=PlanDifficulty.INTERMEDIATE,
            status=PlanStatus.ACTIVE,
            exam_mode=False,
        )
        values.update(overrides)
        return StudyPlan(**values)
    return _make


@pytest.fixture
def make_task():
    """Factory for a pending 60-minute task of PLAN-1."""
    def _make(task_id: str, **overrides) -> StudyTask:
        values = dict(
            id=task_id,
            plan_id="PLAN-1",
            owner_id="user-1",
            title=f"Task {task_id}",
            topic=f"topic-{task_id}",
        )
        values.update(overrides)
        return StudyTask(**values)
    return _make


@pytest.fixture
def seed(stores):
    """Coroutine storing a plan and its tasks."""
    async def _seed(plan: StudyPlan, tasks: List[StudyTask] = ()) -> StudyPlan:
        await stores.plans.create_plan(plan)
        await stores.tasks.create_tasks(list(tasks))
        return plan
    return _seed
