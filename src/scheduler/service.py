"""Scheduling service - the public operation surface of the engine.

Every mutating operation runs under the plan lock, inside an audit entry,
and is retried once when a versioned plan save loses a race.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from src.core.config import SchedulerSettings
from src.scheduler.allocator import allocate
from src.scheduler.audit import AuditLog
from src.scheduler.conflicts import (
    ConflictStateMachine,
    build_conflict,
    conflict_counts,
    detect_overlaps,
)
from src.scheduler.errors import (
    ConcurrencyConflict,
    NotFoundError,
    OwnershipError,
    ValidationError,
)
from src.scheduler.events import EventSink, LoggingEventSink
from src.scheduler.exam_strategy import ExamStrategyEngine, phase_timeline
from src.scheduler.hydrator import load_hydrated_plan
from src.scheduler.mode_resolver import ModeRecommendation, recommend
from src.scheduler.models import (
    AuditAction,
    ResolutionStatus,
    SchedulingLog,
    StudyPlan,
    StudyTask,
    TaskStatus,
    TimeBlockConflict,
    TriggeredBy,
    Window,
    assign_window,
    flag_conflicts,
    mark_skipped,
    pair_key,
    reschedule,
    unschedule,
    window_for_run,
)
from src.scheduler.redistribution import (
    RedistributionEngine,
    RedistributionOptions,
    RedistributionResult,
)
from src.scheduler.slots import find_runs, generate_slots, mark_busy, score_slot
from src.scheduler.strategies import StrategyContext, get_strategy

logger = logging.getLogger(__name__)


@dataclass
class AutoScheduleResult:
    """Outcome of packing a plan's tasks into slots."""

    plan_id: str
    total_tasks: int = 0
    allocated: Dict[str, Window] = field(default_factory=dict)
    unallocated: List[str] = field(default_factory=list)
    slots_generated: int = 0
    conflicts: List[TimeBlockConflict] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "plan_id": self.plan_id,
            "allocated": {task_id: w.to_dict() for task_id, w in self.allocated.items()},
            "unallocated": list(self.unallocated),
            "conflicts": [
                {
                    "task1_id": c.task1_id,
                    "task2_id": c.task2_id,
                    "overlap_minutes": c.overlap_minutes,
                }
                for c in self.conflicts
            ],
            "stats": {
                "total_tasks": self.total_tasks,
                "allocated_tasks": len(self.allocated),
                "unallocated_tasks": len(self.unallocated),
                "slots_generated": self.slots_generated,
                "conflicts_detected": len(self.conflicts),
            },
        }


class SchedulingService:
    """Facade over the scheduling components, wired to concrete stores."""

    def __init__(
        self,
        plans,
        tasks,
        conflicts,
        audit_store,
        events: Optional[EventSink] = None,
        profiles=None,
        settings: Optional[SchedulerSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the service.

        Args:
            plans: PlanStore
            tasks: TaskStore
            conflicts: ConflictStore
            audit_store: AuditLogStore
            events: EventSink, defaults to logging events
            profiles: Optional BehaviorProfileProvider
            settings: Engine tunables
            clock: Source of "now", injectable for tests
        """
        self.plans = plans
        self.tasks = tasks
        self.conflicts = conflicts
        self.events = events or LoggingEventSink()
        self.profiles = profiles
        self.settings = settings or SchedulerSettings()
        self.clock = clock or datetime.now
        self.audit = AuditLog(audit_store)
        self.conflict_states = ConflictStateMachine()
        self.exam_engine = ExamStrategyEngine(plans, self.events)
        self.redistribution = RedistributionEngine(
            plans,
            tasks,
            self.exam_engine,
            self.events,
            self.audit,
            profiles=profiles,
            lookahead_days=self.settings.lookahead_days,
        )

    def now(self, now: Optional[datetime] = None) -> datetime:
        return now or self.clock()

    async def run_locked(self, plan_id: str, operation: Callable[[], Awaitable[Any]]) -> Any:
        """Run operation under the plan lock, retrying once on a lost update."""
        try:
            async with self.plans.plan_lock(plan_id):
                return await operation()
        except ConcurrencyConflict:
            logger.warning(f"[Scheduler] Concurrent update on plan {plan_id}, retrying once")
        async with self.plans.plan_lock(plan_id):
            return await operation()

    # ==================== Lookups ====================

    async def get_owned_plan(self, user_id: str, plan_id: str) -> StudyPlan:
        """Plan as stored, after an ownership check. No hydration writes."""
        plan = await self.plans.get_plan(plan_id)
        if plan is None:
            raise NotFoundError(f"Plan {plan_id} not found", {"plan_id": plan_id})
        if plan.owner_id != user_id:
            raise OwnershipError(f"User {user_id} does not own plan {plan_id}", {"plan_id": plan_id})
        return plan

    async def get_owned_task(self, user_id: str, task_id: str) -> StudyTask:
        task = await self.tasks.get_task(task_id)
        if task is None or task.is_deleted:
            raise NotFoundError(f"Task {task_id} not found", {"task_id": task_id})
        if task.owner_id != user_id:
            raise OwnershipError(f"User {user_id} does not own task {task_id}", {"task_id": task_id})
        return task

    async def get_owned_conflict(self, user_id: str, conflict_id: str) -> TimeBlockConflict:
        conflict = await self.conflicts.get_conflict(conflict_id)
        if conflict is None:
            raise NotFoundError(f"Conflict {conflict_id} not found", {"conflict_id": conflict_id})
        if conflict.owner_id != user_id:
            raise OwnershipError(
                f"User {user_id} does not own conflict {conflict_id}", {"conflict_id": conflict_id}
            )
        return conflict

    async def plan_task_count(self, plan_id: str) -> int:
        return len(await self.tasks.list_tasks(plan_id))

    # ==================== Auto-schedule ====================

    async def auto_schedule(
        self,
        user_id: str,
        plan_id: str,
        only_unscheduled: bool = False,
        daily_hours: Optional[float] = None,
        max_tasks_per_day: Optional[int] = None,
        triggered_by: TriggeredBy = TriggeredBy.API_ENDPOINT,
        now: Optional[datetime] = None,
    ) -> AutoScheduleResult:
        """Pack a plan's pending work into slots and detect conflicts.

        Args:
            user_id: Caller
            plan_id: Plan to schedule
            only_unscheduled: Place only pending tasks without a window,
                around the windows already held, in future slots only
            daily_hours: Override of the plan's daily hours
            max_tasks_per_day: Optional per-day cap

        Returns:
            AutoScheduleResult
        """
        now = self.now(now)

        async def operation():
            async with self.audit.track(AuditAction.AUTO_SCHEDULE, user_id, plan_id, triggered_by) as record:
                plan = await load_hydrated_plan(self.plans, plan_id, user_id)
                result = await self.schedule_plan(
                    plan, only_unscheduled, daily_hours, max_tasks_per_day, now
                )
                record.task_ids = list(result.allocated)
                record.details.update(result.to_dict()["stats"])
                record.details["daily_study_hours"] = daily_hours or plan.daily_study_hours
                return result

        return await self.run_locked(plan_id, operation)

    async def schedule_plan(
        self,
        plan: StudyPlan,
        only_unscheduled: bool = False,
        daily_hours: Optional[float] = None,
        max_tasks_per_day: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> AutoScheduleResult:
        """Allocation step shared by auto_schedule and the strategies.

        Callers hold the plan lock and have hydrated the plan.
        """
        now = self.now(now)
        if plan.is_archived:
            raise ValidationError(f"Plan {plan.id} is archived")

        tasks = await self.tasks.list_tasks(plan.id)
        if only_unscheduled:
            to_place = [t for t in tasks if t.status == TaskStatus.PENDING and t.window is None]
        else:
            to_place = [t for t in tasks if t.status in (TaskStatus.PENDING, TaskStatus.RESCHEDULED)]

        result = AutoScheduleResult(plan_id=plan.id, total_tasks=len(to_place))
        if not to_place:
            logger.info(f"[AutoSchedule] No tasks to place for plan {plan.id}")
            return result

        placing = {t.id for t in to_place}
        occupied = [
            t.window for t in tasks
            if t.id not in placing and not t.is_terminal and t.window is not None
        ]
        slots = generate_slots(
            plan.start_date,
            plan.end_date,
            daily_hours or plan.daily_study_hours,
            plan.preferred_time_slots,
            now=now,
            exclude_past=only_unscheduled,
        )
        slots = mark_busy(slots, occupied)
        result.slots_generated = len(slots)
        logger.info(f"[AutoSchedule] Generated {len(slots)} time slots for plan {plan.id}")

        allocation = allocate(to_place, slots, max_tasks_per_day)
        result.allocated = allocation.allocated
        result.unallocated = allocation.unallocated

        by_id = {t.id: t for t in to_place}
        updated = [
            assign_window(by_id[task_id], window.start, window.end, now)
            for task_id, window in allocation.allocated.items()
        ]
        if updated:
            await self.tasks.save_tasks(updated)
        logger.info(f"[AutoSchedule] Allocated {len(updated)} tasks for plan {plan.id}")

        result.conflicts = await self.refresh_conflicts(plan, now)
        return result

    # ==================== Conflicts ====================

    async def detect_conflicts(
        self,
        user_id: str,
        plan_id: str,
        triggered_by: TriggeredBy = TriggeredBy.API_ENDPOINT,
        now: Optional[datetime] = None,
    ) -> List[TimeBlockConflict]:
        """Scan a plan for overlapping windows and upsert conflict records."""
        now = self.now(now)

        async def operation():
            async with self.audit.track(
                AuditAction.DETECT_CONFLICTS, user_id, plan_id, triggered_by
            ) as record:
                plan = await load_hydrated_plan(self.plans, plan_id, user_id)
                found = await self.refresh_conflicts(plan, now, detected_by="manual_check")
                record.details["conflicts_detected"] = len(found)
                record.task_ids = sorted({c.task1_id for c in found} | {c.task2_id for c in found})
                return found

        return await self.run_locked(plan_id, operation)

    async def refresh_conflicts(
        self, plan: StudyPlan, now: datetime, detected_by: str = "auto_schedule"
    ) -> List[TimeBlockConflict]:
        """Recompute task conflict flags and upsert one record per overlapping pair.

        Flags are recomputed from scratch so running this twice changes nothing.
        """
        tasks = await self.tasks.list_tasks(plan.id)
        overlaps = detect_overlaps(tasks)
        counts = conflict_counts(overlaps)

        changed = []
        for task in tasks:
            if task.is_terminal:
                continue
            count = counts.get(task.id, 0)
            if task.conflict_count != count or task.conflict_flag != (count > 0):
                changed.append(flag_conflicts(task, count))
        if changed:
            await self.tasks.save_tasks(changed)

        records = []
        for detected in overlaps:
            existing = await self.conflicts.find_by_pair(
                plan.id, pair_key(detected.task1_id, detected.task2_id)
            )
            conflict = build_conflict(detected, plan.id, plan.owner_id, now, existing, detected_by)
            records.append(await self.conflicts.upsert_conflict(conflict))

        if records:
            logger.info(f"[Conflicts] Plan {plan.id}: {len(records)} overlapping pairs")
        return records

    async def list_conflicts(
        self, user_id: str, plan_id: str, status: Optional[ResolutionStatus] = None
    ) -> List[TimeBlockConflict]:
        await self.get_owned_plan(user_id, plan_id)
        return await self.conflicts.list_conflicts(plan_id, status)

    async def resolve_conflict(
        self,
        user_id: str,
        conflict_id: str,
        triggered_by: TriggeredBy = TriggeredBy.API_ENDPOINT,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Try to move the later task of a conflict to the best free slot run.

        A failed attempt is counted on the conflict and returned, not raised.
        """
        now = self.now(now)
        conflict = await self.get_owned_conflict(user_id, conflict_id)

        async def operation():
            async with self.audit.track(
                AuditAction.RESOLVE_CONFLICT, user_id, conflict.plan_id, triggered_by
            ) as record:
                current = await self.get_owned_conflict(user_id, conflict_id)
                if not current.is_pending:
                    raise ValidationError(
                        f"Conflict {conflict_id} is already {current.resolution_status.value}"
                    )
                plan = await load_hydrated_plan(self.plans, current.plan_id, user_id)
                task = await self.tasks.get_task(current.task2_id)
                if task is None:
                    raise NotFoundError(f"Task {current.task2_id} not found")
                record.task_ids = [task.id]

                suggestions = await self._free_runs(plan, task, now)
                if not suggestions:
                    message = "No available time slots for rescheduling"
                    self.conflict_states.record_failed_attempt(current, message, now)
                    await self.conflicts.upsert_conflict(current)
                    record.details.update({"success": False, "message": message})
                    return {"success": False, "message": message, "conflict": current.to_dict()}

                best = suggestions[0]
                moved = reschedule(
                    task,
                    best["start"],
                    best["end"],
                    reason="auto_resolved_conflict",
                    now=now,
                    triggered_by=TriggeredBy.CONFLICT_DETECTION.value,
                )
                await self.tasks.save_task(moved)
                self.conflict_states.mark_auto_resolved(
                    current,
                    "rescheduled_later_task",
                    [task.id],
                    f"Moved task {task.id} to {best['start'].isoformat()}",
                    now,
                )
                saved = await self.conflicts.upsert_conflict(current)
                await self.refresh_conflicts(plan, now)
                record.details.update({"success": True, "new_start": best["start"].isoformat()})
                return {
                    "success": True,
                    "message": "Conflict resolved by rescheduling the later task",
                    "moved_task": task.id,
                    "new_window": Window(best["start"], best["end"]).to_dict(),
                    "conflict": saved.to_dict(),
                }

        return await self.run_locked(conflict.plan_id, operation)

    async def _set_conflict_status(self, user_id, conflict_id, apply, now) -> TimeBlockConflict:
        now = self.now(now)
        conflict = await self.get_owned_conflict(user_id, conflict_id)

        async def operation():
            async with self.audit.track(
                AuditAction.UPDATE_CONFLICT, user_id, conflict.plan_id, TriggeredBy.USER_ACTION
            ) as record:
                current = await self.get_owned_conflict(user_id, conflict_id)
                apply(current, now)
                record.task_ids = [current.task1_id, current.task2_id]
                record.details["resolution_status"] = current.resolution_status.value
                return await self.conflicts.upsert_conflict(current)

        return await self.run_locked(conflict.plan_id, operation)

    async def accept_conflict(
        self, user_id: str, conflict_id: str, reason: str = "", now: Optional[datetime] = None
    ) -> TimeBlockConflict:
        """Mark an overlap as intentional."""
        return await self._set_conflict_status(
            user_id, conflict_id, lambda c, ts: self.conflict_states.mark_accepted(c, reason, ts), now
        )

    async def ignore_conflict(
        self, user_id: str, conflict_id: str, now: Optional[datetime] = None
    ) -> TimeBlockConflict:
        return await self._set_conflict_status(
            user_id, conflict_id, self.conflict_states.mark_ignored, now
        )

    async def notify_conflict(
        self, user_id: str, conflict_id: str, now: Optional[datetime] = None
    ) -> TimeBlockConflict:
        return await self._set_conflict_status(
            user_id, conflict_id, self.conflict_states.notify, now
        )

    # ==================== Tasks ====================

    async def _free_runs(
        self, plan: StudyPlan, task: StudyTask, now: datetime
    ) -> List[Dict[str, Any]]:
        """Future slot runs long enough for task, clear of every other live task."""
        others = [
            t.window for t in await self.tasks.list_tasks(plan.id)
            if t.id != task.id and not t.is_terminal and t.window is not None
        ]
        slots = generate_slots(
            plan.start_date,
            plan.end_date,
            plan.daily_study_hours,
            plan.preferred_time_slots,
            now=now,
            exclude_past=True,
        )
        slots = mark_busy(slots, others)
        runs = []
        for _, run in find_runs(slots, task.required_slots):
            window = window_for_run(run)
            runs.append({"start": window.start, "end": window.end, "score": score_slot(window.start)})
        runs.sort(key=lambda r: (-r["score"], r["start"]))
        return runs

    async def suggest_time_slots(
        self, user_id: str, task_id: str, limit: Optional[int] = None, now: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        """Best free windows for a task, morning first."""
        now = self.now(now)
        task = await self.get_owned_task(user_id, task_id)
        plan = await load_hydrated_plan(self.plans, task.plan_id, user_id)
        runs = await self._free_runs(plan, task, now)
        return runs[: limit or self.settings.suggestion_count]

    async def reschedule_task(
        self,
        user_id: str,
        task_id: str,
        new_start: datetime,
        reason: str = "",
        triggered_by: TriggeredBy = TriggeredBy.USER_ACTION,
        now: Optional[datetime] = None,
    ) -> StudyTask:
        """Move a task to start at new_start, keeping its duration.

        Raises:
            ValidationError: The new window overlaps another live task
        """
        now = self.now(now)
        task = await self.get_owned_task(user_id, task_id)

        async def operation():
            async with self.audit.track(
                AuditAction.RESCHEDULE_TASK, user_id, task.plan_id, triggered_by
            ) as record:
                current = await self.get_owned_task(user_id, task_id)
                record.task_ids = [current.id]
                new_end = new_start + timedelta(minutes=current.duration or 60)
                clashes = [
                    t.id for t in await self.tasks.list_tasks(current.plan_id)
                    if t.id != current.id
                    and not t.is_terminal
                    and t.window is not None
                    and t.window.overlaps(new_start, new_end)
                ]
                if clashes:
                    raise ValidationError(
                        f"Cannot reschedule: conflicts with {len(clashes)} task(s)",
                        {"conflicting_tasks": clashes},
                    )
                moved = reschedule(
                    current, new_start, new_end, reason or "user_manual", now, triggered_by="user"
                )
                await self.tasks.save_task(moved)
                record.details.update({"reason": reason, "new_start": new_start.isoformat()})
                return moved

        return await self.run_locked(task.plan_id, operation)

    async def handle_missed_task(
        self, user_id: str, task_id: str, now: Optional[datetime] = None
    ) -> AutoScheduleResult:
        """Skip a missed task, free its window and re-pack the plan."""
        now = self.now(now)
        task = await self.get_owned_task(user_id, task_id)

        async def operation():
            async with self.audit.track(
                AuditAction.HANDLE_MISSED_TASK, user_id, task.plan_id, TriggeredBy.USER_ACTION
            ) as record:
                current = await self.get_owned_task(user_id, task_id)
                skipped = unschedule(mark_skipped(current, "missed", now, triggered_by="user"))
                await self.tasks.save_task(skipped)
                plan = await load_hydrated_plan(self.plans, current.plan_id, user_id)
                result = await self.schedule_plan(plan, now=now)
                record.task_ids = [current.id]
                record.details["redistributed_tasks"] = len(result.allocated)
                return result

        return await self.run_locked(task.plan_id, operation)

    # ==================== Redistribution & exam ====================

    async def redistribute_missed(
        self,
        user_id: str,
        plan_id: str,
        options: Optional[RedistributionOptions] = None,
        now: Optional[datetime] = None,
    ) -> RedistributionResult:
        """Move a plan's overdue tasks into future slots."""
        now = self.now(now)
        options = options or self.default_redistribution_options()
        return await self.run_locked(
            plan_id, lambda: self.redistribution.redistribute(user_id, plan_id, options, now)
        )

    def default_redistribution_options(self, **overrides) -> RedistributionOptions:
        values = {
            "max_to_reschedule": self.settings.max_to_reschedule,
            "max_tasks_per_day": self.settings.max_tasks_per_day,
            "max_hard_per_day": self.settings.max_hard_per_day,
            "buffer_ratio": self.settings.buffer_ratio,
        }
        values.update(overrides)
        return RedistributionOptions(**values)

    async def get_exam_strategy(
        self, user_id: str, plan_id: str, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Exam phase, intensity and advice for a plan, plus the phase calendar."""
        now = self.now(now)

        async def operation():
            async with self.audit.track(
                AuditAction.EXAM_PHASE_UPDATE, user_id, plan_id, TriggeredBy.API_ENDPOINT
            ) as record:
                plan = await load_hydrated_plan(self.plans, plan_id, user_id)
                strategy, plan = await self.exam_engine.get_strategy(plan, now)
                record.details.update({"phase": strategy.phase, "phase_changed": strategy.phase_changed})
                data = strategy.to_dict()
                data["timeline"] = phase_timeline(plan.exam_date, now) if strategy.enabled else []
                return data

        return await self.run_locked(plan_id, operation)

    async def adjust_plan_intensity(
        self, user_id: str, plan_id: str, phase: str, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Persist the plan's daily hours scaled to an exam phase."""
        now = self.now(now)

        async def operation():
            async with self.audit.track(
                AuditAction.EXAM_PHASE_UPDATE, user_id, plan_id, TriggeredBy.USER_ACTION
            ) as record:
                plan = await load_hydrated_plan(self.plans, plan_id, user_id)
                summary, _ = await self.exam_engine.adjust_plan_intensity(plan, phase, now)
                record.details.update(summary)
                return summary

        return await self.run_locked(plan_id, operation)

    # ==================== Strategies ====================

    async def execute_strategy(
        self,
        user_id: str,
        plan_id: str,
        mode: str,
        context=None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Run a scheduling mode ("balanced", "adaptive", "emergency" or "auto")."""
        now = self.now(now)
        context = context or StrategyContext()
        recommendation = None
        if mode == "auto":
            recommendation = await self.recommend_mode(user_id, plan_id, now)
            mode = recommendation.recommended_mode
            logger.info(f"[Strategy] Plan {plan_id}: auto mode resolved to {mode}")

        strategy = get_strategy(mode, self)
        result = await self.run_locked(
            plan_id, lambda: strategy.execute(plan_id, user_id, context, now)
        )
        if recommendation is not None:
            result["recommendation"] = recommendation.to_dict()
        return result

    async def recommend_mode(
        self, user_id: str, plan_id: str, now: Optional[datetime] = None
    ) -> ModeRecommendation:
        """Suggest balanced, adaptive or emergency from the plan's metrics."""
        now = self.now(now)
        plan = await self.get_owned_plan(user_id, plan_id)
        tasks = await self.tasks.list_tasks(plan_id)
        profile = await self.profiles.get_profile(user_id) if self.profiles else None
        return recommend(plan, tasks, profile, now)

    # ==================== Audit ====================

    async def plan_audit_stats(self, user_id: str, plan_id: str) -> Dict[str, Any]:
        await self.get_owned_plan(user_id, plan_id)
        return await self.audit.plan_stats(plan_id)

    async def user_audit_stats(self, user_id: str) -> Dict[str, Any]:
        return await self.audit.user_stats(user_id)

    async def recent_failures(
        self, user_id: str, days: int = 7, now: Optional[datetime] = None
    ) -> List[SchedulingLog]:
        return await self.audit.recent_failures(user_id, days, self.now(now))

    async def slow_actions(self, user_id: str, plan_id: Optional[str] = None) -> List[SchedulingLog]:
        if plan_id is not None:
            await self.get_owned_plan(user_id, plan_id)
        return await self.audit.slow_actions(plan_id=plan_id, user_id=user_id)
