"""Plan hydrator and task guard.

Legacy and partially written plans are normalised here, once, before any
strategy runs. Everything downstream can assume the scheduling fields exist.
"""

import logging
from dataclasses import replace
from typing import Any, Dict, List, Tuple

from src.scheduler.errors import HydrationFailure, NotFoundError, OwnershipError
from src.scheduler.models import (
    PlanDifficulty,
    PlanStatus,
    StudyPlan,
    StudyTask,
    TaskDifficulty,
    TaskPriority,
)

logger = logging.getLogger(__name__)

PLANNER_DEFAULTS: Dict[str, Any] = {
    "daily_study_hours": 4,
    "max_session_length": 90,
    "break_duration": 15,
    "preferred_time_slots": [],
    "difficulty": PlanDifficulty.INTERMEDIATE,
    "status": PlanStatus.ACTIVE,
    "exam_mode": False,
}

LEGACY_HOURS_KEYS = ("dailyStudyHours", "daily_study_hours")

TASK_DEFAULTS: Dict[str, Any] = {
    "duration": 60,
    "difficulty": TaskDifficulty.MEDIUM,
    "priority": TaskPriority.MEDIUM,
}


def hydrate_plan(plan: StudyPlan) -> Tuple[StudyPlan, List[str]]:
    """Fill missing scheduling fields with defaults.

    A legacy nested ``config["dailyStudyHours"]`` is promoted before the
    default applies. The input is not modified.

    Args:
        plan: Plan as loaded from storage

    Returns:
        (hydrated plan, names of fields that were filled)
    """
    updates: Dict[str, Any] = {}
    changes: List[str] = []

    if plan.daily_study_hours is None:
        for key in LEGACY_HOURS_KEYS:
            legacy = (plan.config or {}).get(key)
            if legacy is not None:
                updates["daily_study_hours"] = legacy
                changes.append("daily_study_hours (from config)")
                break

    for name, default in PLANNER_DEFAULTS.items():
        if name in updates:
            continue
        if getattr(plan, name) is None:
            updates[name] = list(default) if isinstance(default, list) else default
            changes.append(name)

    if not changes:
        return plan, []

    logger.warning(
        f"[PlanHydrator] Plan {plan.id} was missing required fields, "
        f"applied defaults: {', '.join(changes)}"
    )
    return replace(plan, **updates), changes


def validate_hydrated_plan(plan: StudyPlan) -> None:
    """Check that hydration produced a usable plan.

    Raises:
        HydrationFailure: If identity or daily hours are still missing
    """
    missing = [name for name in ("id", "owner_id", "status") if not getattr(plan, name)]
    if missing:
        raise HydrationFailure(
            f"Plan hydration failed, missing fields: {', '.join(missing)}",
            {"plan_id": plan.id, "missing": missing},
        )

    hours = plan.daily_study_hours
    if isinstance(hours, bool) or not isinstance(hours, (int, float)) or hours <= 0:
        raise HydrationFailure(
            f"Plan {plan.id} has invalid daily_study_hours: {hours!r}",
            {"plan_id": plan.id},
        )


def planner_config(plan: StudyPlan) -> Dict[str, Any]:
    """Normalized planner view of a hydrated plan."""
    return {
        "daily_study_hours": plan.daily_study_hours,
        "max_session_length": plan.max_session_length or PLANNER_DEFAULTS["max_session_length"],
        "break_duration": plan.break_duration or PLANNER_DEFAULTS["break_duration"],
        "preferred_time_slots": list(plan.preferred_time_slots or []),
        "difficulty": plan.difficulty or PLANNER_DEFAULTS["difficulty"],
        "exam_mode": bool(plan.exam_mode),
        "exam_date": plan.exam_date,
    }


def guard_task(task: StudyTask) -> StudyTask:
    """Backfill duration, difficulty and priority on legacy task rows."""
    updates = {
        name: default
        for name, default in TASK_DEFAULTS.items()
        if getattr(task, name) is None
    }
    if not updates:
        return task

    logger.debug(f"[TaskGuard] Task {task.id} backfilled: {', '.join(updates)}")
    return replace(task, **updates)


async def load_hydrated_plan(plans, plan_id: str, user_id: str) -> StudyPlan:
    """Load a plan for a user, hydrated, validated and persisted if it changed.

    Args:
        plans: PlanStore
        plan_id: Plan to load
        user_id: Caller; must own the plan

    Raises:
        NotFoundError: No such plan
        OwnershipError: Plan belongs to someone else
        HydrationFailure: Plan is unusable even after hydration
    """
    plan = await plans.get_plan(plan_id)
    if plan is None:
        raise NotFoundError(f"Plan {plan_id} not found", {"plan_id": plan_id})
    if plan.owner_id != user_id:
        raise OwnershipError(f"User {user_id} does not own plan {plan_id}", {"plan_id": plan_id})

    hydrated, changes = hydrate_plan(plan)
    validate_hydrated_plan(hydrated)
    if changes:
        hydrated = await plans.save_plan(hydrated)
        logger.info(f"[PlanHydrator] Persisted hydrated plan {plan_id}")
    return hydrated
