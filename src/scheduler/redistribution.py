"""Adaptive redistribution of missed (overdue) work.

Overdue tasks are scored, then placed greedily into future slots under
per-day cognitive load caps. Everything a run writes is keyed by its run id
so a retried run does not double count.
"""

import logging
import math
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Set

from src.scheduler.audit import AuditLog
from src.scheduler.events import EventSink, TasksRescheduled
from src.scheduler.exam_strategy import ExamStrategy, ExamStrategyEngine, proximity_score
from src.scheduler.hydrator import load_hydrated_plan
from src.scheduler.models import (
    AuditAction,
    BehaviorProfile,
    StudyPlan,
    StudyTask,
    TaskDifficulty,
    TaskPriority,
    TaskStatus,
    TimeSlot,
    TriggeredBy,
    generate_id,
    reschedule,
    window_for_run,
)
from src.scheduler.slots import find_runs, generate_future_slots

logger = logging.getLogger(__name__)

DIFFICULTY_POINTS = {
    TaskDifficulty.EASY: 10,
    TaskDifficulty.MEDIUM: 20,
    TaskDifficulty.HARD: 30,
}
URGENCY_POINTS = {
    TaskPriority.URGENT: 15,
    TaskPriority.HIGH: 10,
}
NEUTRAL_PROXIMITY_POINTS = 20

SKIP_NO_SUITABLE_SLOT = "no_suitable_slot"
SKIP_NO_AVAILABLE_SLOTS = "no_available_slots"
SKIP_OVER_LIMIT = "max_to_reschedule"


@dataclass
class RedistributionOptions:
    """Knobs of one redistribution run."""

    reason: str = "missed_task"
    max_to_reschedule: Optional[int] = 50
    daily_hours_limit: Optional[float] = None
    max_tasks_per_day: int = 4
    max_hard_per_day: int = 2
    buffer_ratio: float = 0.9
    run_id: Optional[str] = None
    triggered_by: TriggeredBy = TriggeredBy.API_ENDPOINT


@dataclass
class ScoredTask:
    task: StudyTask
    score: float
    proximity: Optional[int] = None


@dataclass
class RedistributionResult:
    """What a run moved and what it could not place."""

    run_id: str
    total_overdue: int = 0
    rescheduled: List[Dict[str, Any]] = field(default_factory=list)
    skipped: List[Dict[str, Any]] = field(default_factory=list)
    exam_phase: Optional[str] = None

    @property
    def rescheduled_count(self) -> int:
        return len(self.rescheduled)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "run_id": self.run_id,
            "total_overdue": self.total_overdue,
            "tasks_rescheduled": self.rescheduled_count,
            "tasks_skipped": len(self.skipped),
            "rescheduled": self.rescheduled,
            "skipped": self.skipped,
            "exam_phase": self.exam_phase,
        }


def score_task(
    task: StudyTask,
    now: datetime,
    proximity: Optional[int],
    efficiency_factor: float = 1.0,
) -> float:
    """Priority of an overdue task; higher goes first.

    proximity*0.4 (20 without an exam) + difficulty + min(days overdue*2, 20)
    + efficiency*10 + urgency bonus.
    """
    score = proximity * 0.4 if proximity is not None else NEUTRAL_PROXIMITY_POINTS
    score += DIFFICULTY_POINTS.get(task.difficulty, 15)
    if task.window_start is not None:
        days_overdue = math.floor((now - task.window_start).total_seconds() / 86400)
        score += min(max(days_overdue, 0) * 2, 20)
    score += efficiency_factor * 10
    score += URGENCY_POINTS.get(task.priority, 0)
    return score


def prioritize(
    tasks: Sequence[StudyTask],
    now: datetime,
    exam_date: Optional[datetime],
    efficiency_factor: float = 1.0,
) -> List[ScoredTask]:
    """Score tasks and sort best first, ties by task id."""
    scored = []
    for task in tasks:
        proximity = proximity_score(exam_date, task.window_start, now) if exam_date else None
        scored.append(ScoredTask(task, score_task(task, now, proximity, efficiency_factor), proximity))
    scored.sort(key=lambda s: (-s.score, s.task.id))
    return scored


class DayLoad:
    """Running per-day totals used to enforce cognitive load caps."""

    def __init__(self, max_tasks: int, max_hard: int, max_minutes: float):
        self.max_tasks = max_tasks
        self.max_hard = max_hard
        self.max_minutes = max_minutes
        self.tasks: Counter = Counter()
        self.hard: Counter = Counter()
        self.minutes: Counter = Counter()

    def fits(self, day, task: StudyTask, minutes: int) -> bool:
        if self.tasks[day] >= self.max_tasks:
            return False
        if task.difficulty == TaskDifficulty.HARD and self.hard[day] >= self.max_hard:
            return False
        return self.minutes[day] + minutes <= self.max_minutes

    def add(self, day, task: StudyTask, minutes: int) -> None:
        self.tasks[day] += 1
        self.minutes[day] += minutes
        if task.difficulty == TaskDifficulty.HARD:
            self.hard[day] += 1


def place_tasks(
    scored: Sequence[ScoredTask],
    slots: Sequence[TimeSlot],
    load: DayLoad,
):
    """Greedy placement, optimal-for-user runs first.

    Returns:
        (placements as (ScoredTask, Window), skipped ScoredTasks)
    """
    used: Set[int] = set()
    placements = []
    skipped = []

    for item in scored:
        needed = item.task.required_slots
        runs = [
            (index, run) for index, run in find_runs(slots, needed, used)
            if run[0].day == run[-1].day
        ]
        ordered = [r for r in runs if r[1][0].optimal_for_user] + [r for r in runs if not r[1][0].optimal_for_user]

        chosen = None
        for index, run in ordered:
            window = window_for_run(run)
            if load.fits(run[0].day, item.task, window.minutes):
                chosen = (index, run, window)
                break

        if chosen is None:
            skipped.append(item)
            logger.warning(f"[Redistribution] Could not reschedule task {item.task.id}")
            continue

        index, run, window = chosen
        used.update(range(index, index + needed))
        load.add(run[0].day, item.task, window.minutes)
        placements.append((item, window))

    return placements, skipped


class RedistributionEngine:
    """Moves overdue tasks of a plan into future slots."""

    def __init__(
        self,
        plans,
        tasks,
        exam_engine: ExamStrategyEngine,
        events: EventSink,
        audit: AuditLog,
        profiles=None,
        lookahead_days: int = 30,
    ):
        self.plans = plans
        self.tasks = tasks
        self.exam_engine = exam_engine
        self.events = events
        self.audit = audit
        self.profiles = profiles
        self.lookahead_days = lookahead_days

    async def redistribute(
        self,
        user_id: str,
        plan_id: str,
        options: Optional[RedistributionOptions] = None,
        now: Optional[datetime] = None,
    ) -> RedistributionResult:
        """Redistribute the overdue tasks of a plan.

        Callers hold the plan lock.

        Returns:
            RedistributionResult; an empty one when nothing is overdue

        Raises:
            NotFoundError, OwnershipError, HydrationFailure, ConcurrencyConflict
        """
        options = options or RedistributionOptions()
        now = now or datetime.now()
        run_id = options.run_id or generate_id("RUN")
        result = RedistributionResult(run_id=run_id)

        async with self.audit.track(
            AuditAction.ADAPTIVE_RESCHEDULE, user_id, plan_id, options.triggered_by
        ) as record:
            plan = await load_hydrated_plan(self.plans, plan_id, user_id)
            overdue = await self.tasks.list_overdue(user_id, plan_id, now)
            result.total_overdue = len(overdue)
            record.details["run_id"] = run_id
            if not overdue:
                record.details["total_overdue"] = 0
                return result

            strategy = ExamStrategy(enabled=False)
            if plan.exam_mode and plan.exam_date:
                strategy, plan = await self.exam_engine.get_strategy(plan, now)
                result.exam_phase = strategy.phase

            profile: Optional[BehaviorProfile] = None
            if self.profiles is not None:
                profile = await self.profiles.get_profile(user_id)

            slots = await self._candidate_slots(user_id, plan, overdue, profile, now)
            exam_date = plan.exam_date if strategy.enabled else None
            efficiency = profile.efficiency_factor if profile else 1.0
            scored = prioritize(overdue, now, exam_date, efficiency)

            if options.max_to_reschedule is not None and len(scored) > options.max_to_reschedule:
                for item in scored[options.max_to_reschedule:]:
                    result.skipped.append(_skip(item, SKIP_OVER_LIMIT))
                scored = scored[:options.max_to_reschedule]

            if not slots:
                logger.warning(f"[Redistribution] No available slots for plan {plan_id}")
                result.skipped.extend(_skip(item, SKIP_NO_AVAILABLE_SLOTS) for item in scored)
                record.details.update(result.to_dict())
                return result

            daily_hours = options.daily_hours_limit or plan.daily_study_hours
            load = DayLoad(
                options.max_tasks_per_day,
                options.max_hard_per_day,
                daily_hours * 60 * options.buffer_ratio,
            )
            placements, unplaced = place_tasks(scored, slots, load)
            result.skipped.extend(_skip(item, SKIP_NO_SUITABLE_SLOT) for item in unplaced)

            await self._persist(plan, placements, options, run_id, now, result)
            record.task_ids = [entry["task_id"] for entry in result.rescheduled]
            record.details.update({
                "run_id": run_id,
                "total_overdue": result.total_overdue,
                "tasks_rescheduled": result.rescheduled_count,
                "tasks_skipped": len(result.skipped),
                "exam_phase": result.exam_phase,
            })

        logger.info(
            f"[Redistribution] Plan {plan_id}: {result.rescheduled_count}/{result.total_overdue} "
            f"overdue tasks rescheduled (run {run_id})"
        )
        return result

    async def _candidate_slots(
        self,
        user_id: str,
        plan: StudyPlan,
        overdue: Sequence[StudyTask],
        profile: Optional[BehaviorProfile],
        now: datetime,
    ) -> List[TimeSlot]:
        overdue_ids = {t.id for t in overdue}
        active = await self.tasks.list_user_active_tasks(user_id)
        busy = [t.window for t in active if t.id not in overdue_ids and t.window]
        optimal = profile.optimal_time_of_day if profile and profile.is_reliable else None
        buckets = [b for b in (plan.preferred_time_slots or []) if isinstance(b, str)]
        return generate_future_slots(
            now,
            plan.end_date,
            buckets,
            busy,
            optimal_bucket=optimal,
            lookahead_days=self.lookahead_days,
        )

    async def _persist(self, plan, placements, options, run_id, now, result) -> None:
        updated: List[StudyTask] = []
        for item, window in placements:
            task = item.task
            result.rescheduled.append({
                "task_id": task.id,
                "new_start": window.start.isoformat(),
                "new_end": window.end.isoformat(),
                "priority_score": round(item.score, 2),
            })
            if task.has_run(run_id):
                continue
            moved = reschedule(
                task,
                window.start,
                window.end,
                reason=options.reason,
                now=now,
                triggered_by=options.triggered_by.value,
                run_id=run_id,
                status=TaskStatus.PENDING,
            )
            if item.proximity is not None:
                moved = replace(moved, exam_proximity_score=float(item.proximity))
            updated.append(moved)

        if updated:
            await self.tasks.save_tasks(updated)

        if placements and plan.last_run_id != run_id:
            await self.plans.save_plan(replace(
                plan,
                adaptation_count=plan.adaptation_count + 1,
                missed_tasks_redistributed=plan.missed_tasks_redistributed + len(placements),
                last_adapted_at=now,
                last_run_id=run_id,
            ))

        if updated:
            await self.events.publish(TasksRescheduled(
                user_id=plan.owner_id,
                plan_id=plan.id,
                count=len(updated),
                task_ids=[t.id for t in updated],
                reason=options.reason,
                run_id=run_id,
            ))


def _skip(item: ScoredTask, reason: str) -> Dict[str, Any]:
    return {"task_id": item.task.id, "reason": reason, "priority_score": round(item.score, 2)}
