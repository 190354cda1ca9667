"""Scheduling strategies: Balanced, Adaptive and Emergency.

Each strategy hydrates and validates the plan, then composes the allocation,
redistribution and compression steps of its mode. The service holds the plan
lock around execute().
"""

import logging
import math
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Type

from src.scheduler.errors import ValidationError
from src.scheduler.exam_strategy import intensity_hours, proximity_score
from src.scheduler.hydrator import load_hydrated_plan
from src.scheduler.models import (
    AuditAction,
    PlanStatus,
    StudyPlan,
    StudyTask,
    TaskDifficulty,
    TaskPriority,
    TaskStatus,
    TriggeredBy,
    days_until,
    generate_id,
    mark_skipped,
    merge_into_block,
)

logger = logging.getLogger(__name__)

PRIORITY_RANK = {
    TaskPriority.LOW: 1,
    TaskPriority.MEDIUM: 2,
    TaskPriority.HIGH: 3,
    TaskPriority.URGENT: 4,
}
DIFFICULTY_RANK = {
    TaskDifficulty.EASY: 1,
    TaskDifficulty.MEDIUM: 2,
    TaskDifficulty.HARD: 3,
}
PRUNABLE_DIFFICULTY = (TaskDifficulty.EASY, TaskDifficulty.MEDIUM)
PRUNABLE_PRIORITY = (TaskPriority.LOW, TaskPriority.MEDIUM)


@dataclass
class StrategyContext:
    """Per-run overrides passed to a strategy."""

    available_hours: Optional[float] = None
    max_tasks_per_day: Optional[int] = None
    intensity_multiplier: Optional[float] = None
    triggered_by: TriggeredBy = TriggeredBy.API_ENDPOINT
    run_id: Optional[str] = None


def upcoming_exam_days(plan: StudyPlan, now: datetime) -> Optional[int]:
    """Days until the exam, or None when there is no upcoming exam."""
    if plan.exam_date is None:
        return None
    days = days_until(plan.exam_date, now)
    return days if days >= 0 else None


def completion_rate(tasks: Sequence[StudyTask]) -> float:
    """Share of tasks completed, 0..1."""
    if not tasks:
        return 0.0
    return sum(1 for t in tasks if t.status == TaskStatus.COMPLETED) / len(tasks)


class BaseStrategy(ABC):
    """Shared plan checks and metadata of a scheduling mode."""

    mode = "base"
    name = "Base"
    description = ""

    def __init__(self, service):
        """Initialize the strategy.

        Args:
            service: SchedulingService providing stores and shared steps
        """
        self.service = service

    async def validate_plan(self, plan: StudyPlan, tasks: Sequence[StudyTask], now: datetime) -> StudyPlan:
        """Reject plans the mode cannot run on.

        Returns:
            The plan, possibly updated by the check

        Raises:
            ValidationError: If the plan is unusable for this mode
        """
        if plan.is_archived:
            raise ValidationError(f"Plan {plan.id} is archived")
        if plan.status != PlanStatus.ACTIVE:
            raise ValidationError(f"Plan {plan.id} is {plan.status.value}, expected active")
        if not plan.daily_study_hours or plan.daily_study_hours <= 0:
            raise ValidationError(f"Plan {plan.id} has no positive daily_study_hours")
        return plan

    @abstractmethod
    async def execute(
        self, plan_id: str, user_id: str, context: StrategyContext, now: datetime
    ) -> Dict[str, Any]:
        """Run the mode against a plan."""

    def describe(self) -> Dict[str, Any]:
        return {"mode": self.mode, "name": self.name, "description": self.description}

    async def prepare(self, plan_id: str, user_id: str, now: datetime):
        plan = await load_hydrated_plan(self.service.plans, plan_id, user_id)
        tasks = await self.service.tasks.list_tasks(plan_id)
        plan = await self.validate_plan(plan, tasks, now)
        return plan, tasks


class BalancedStrategy(BaseStrategy):
    """Plain first-fit-decreasing allocation."""

    mode = "balanced"
    name = "Balanced Mode"
    description = "Even distribution of tasks over the plan using first-fit-decreasing packing"

    async def validate_plan(self, plan, tasks, now):
        plan = await super().validate_plan(plan, tasks, now)
        if not tasks:
            raise ValidationError(f"Plan {plan.id} has no tasks to schedule")
        return plan

    async def execute(self, plan_id, user_id, context, now):
        async with self.service.audit.track(
            AuditAction.STRATEGY_EXECUTE, user_id, plan_id, context.triggered_by
        ) as record:
            plan, _ = await self.prepare(plan_id, user_id, now)
            result = await self.service.schedule_plan(
                plan,
                daily_hours=context.available_hours,
                max_tasks_per_day=context.max_tasks_per_day,
                now=now,
            )
            record.task_ids = list(result.allocated)
            record.details.update({"mode": self.mode, **result.to_dict()["stats"]})

        return {"success": True, "mode": self.mode, "strategy": self.name, "scheduling": result.to_dict()}


class AdaptiveStrategy(BaseStrategy):
    """Exam-driven scheduling: phase intensity, redistribution, then FFD."""

    mode = "adaptive"
    name = "Adaptive Mode"
    description = (
        "Exam-driven scheduling with phase intensity, priority scoring "
        "and cognitive load protection"
    )

    async def validate_plan(self, plan, tasks, now):
        plan = await super().validate_plan(plan, tasks, now)
        if plan.exam_date is None:
            raise ValidationError(f"Adaptive mode requires plan {plan.id} to have an exam date")
        if upcoming_exam_days(plan, now) is None:
            raise ValidationError(f"Exam date of plan {plan.id} has passed")
        return await enable_exam_mode(self.service, plan)

    async def execute(self, plan_id, user_id, context, now):
        async with self.service.audit.track(
            AuditAction.STRATEGY_EXECUTE, user_id, plan_id, context.triggered_by
        ) as record:
            plan, _ = await self.prepare(plan_id, user_id, now)
            steps = await run_adaptive_steps(self.service, plan, user_id, context, now)
            record.task_ids = steps["task_ids"]
            record.details.update({"mode": self.mode, **steps["summary"]})

        return {
            "success": True,
            "mode": self.mode,
            "strategy": self.name,
            "exam_phase": steps["exam"].phase,
            "exam_strategy": steps["exam"].to_dict(),
            "redistribution": steps["redistribution"].to_dict(),
            "scheduling": steps["scheduling"].to_dict(),
            "metadata": {
                "daily_hours": steps["daily_hours"],
                "cognitive_load_limit": context.max_tasks_per_day or self.service.settings.max_tasks_per_day,
                "max_hard_tasks_per_day": self.service.settings.max_hard_per_day,
            },
        }


async def enable_exam_mode(service, plan: StudyPlan) -> StudyPlan:
    if plan.exam_mode:
        return plan
    logger.warning(f"[Strategy] Plan {plan.id} has an exam date but exam_mode is off, enabling it")
    return await service.plans.save_plan(replace(plan, exam_mode=True))


async def run_adaptive_steps(
    service, plan: StudyPlan, user_id: str, context: StrategyContext, now: datetime
) -> Dict[str, Any]:
    """Phase refresh, redistribution at phase intensity, then FFD of unscheduled work."""
    exam, plan = await service.exam_engine.get_strategy(plan, now)
    multiplier = context.intensity_multiplier or exam.intensity_multiplier
    daily_hours = context.available_hours or intensity_hours(
        plan.daily_study_hours, multiplier, service.settings.max_daily_hours
    )
    max_per_day = context.max_tasks_per_day or service.settings.max_tasks_per_day

    redistribution = await service.redistribution.redistribute(
        user_id,
        plan.id,
        service.default_redistribution_options(
            reason="adaptive_engine",
            daily_hours_limit=daily_hours,
            max_tasks_per_day=max_per_day,
            run_id=context.run_id,
            triggered_by=context.triggered_by,
        ),
        now,
    )
    # redistribution may have bumped the plan version
    plan = await load_hydrated_plan(service.plans, plan.id, user_id)
    scheduling = await service.schedule_plan(
        plan,
        only_unscheduled=True,
        daily_hours=daily_hours,
        max_tasks_per_day=max_per_day,
        now=now,
    )
    task_ids = [r["task_id"] for r in redistribution.rescheduled] + list(scheduling.allocated)
    return {
        "exam": exam,
        "daily_hours": daily_hours,
        "redistribution": redistribution,
        "scheduling": scheduling,
        "task_ids": task_ids,
        "summary": {
            "exam_phase": exam.phase,
            "daily_hours": daily_hours,
            "missed_tasks_redistributed": redistribution.rescheduled_count,
            "new_tasks_scheduled": len(scheduling.allocated),
            "conflicts_detected": len(scheduling.conflicts),
        },
    }


def emergency_eligibility(
    days_to_exam: Optional[int], completion: float, backlog: int
) -> Optional[str]:
    """Reason emergency mode applies, or None when it does not."""
    if days_to_exam is not None:
        if days_to_exam <= 7 and completion < 0.6:
            return f"exam in {days_to_exam} days at {completion:.0%} completion"
        if days_to_exam <= 14 and completion < 0.4:
            return f"exam in {days_to_exam} days at {completion:.0%} completion"
        if days_to_exam <= 14 and backlog >= 20:
            return f"{backlog} overdue tasks with exam in {days_to_exam} days"
        if days_to_exam > 14 and backlog >= 20 and completion < 0.4:
            return f"{backlog} overdue tasks at {completion:.0%} completion"
        return None
    if backlog >= 15 and completion < 0.5:
        return f"{backlog} overdue tasks at {completion:.0%} completion, no upcoming exam"
    return None


def compression_rank(task: StudyTask) -> int:
    return PRIORITY_RANK.get(task.priority, 1) * 2 + DIFFICULTY_RANK.get(task.difficulty, 1)


def is_prunable(task: StudyTask) -> bool:
    """Pruning eligibility, independent of the ranking."""
    return task.difficulty in PRUNABLE_DIFFICULTY and task.priority in PRUNABLE_PRIORITY


def select_for_pruning(
    tasks: Sequence[StudyTask],
    exam_date: Optional[datetime],
    now: datetime,
    retention_ratio: float = 0.6,
) -> List[StudyTask]:
    """Tasks outside the retained top share that are also eligible for pruning.

    Ranking uses exam proximity when there is an exam, else priority*2 +
    difficulty. At least ceil(retention_ratio * n) tasks are always kept.
    """
    if exam_date is not None:
        def key(t):
            return (-proximity_score(exam_date, t.window_start, now), -compression_rank(t), t.id)
    else:
        def key(t):
            return (-compression_rank(t), t.id)

    ranked = sorted(tasks, key=key)
    keep = math.ceil(len(ranked) * retention_ratio)
    return [t for t in ranked[keep:] if is_prunable(t)]


def forms_block(group: Sequence[StudyTask], min_minutes: int) -> bool:
    """Several tasks reaching min_minutes, or one short task to pad."""
    total = sum(t.duration or 60 for t in group)
    if len(group) == 1:
        return total < min_minutes
    return total >= min_minutes


def build_hyper_blocks(
    tasks: Sequence[StudyTask],
    min_minutes: int = 90,
    max_minutes: int = 120,
) -> List[List[StudyTask]]:
    """Group consecutive same-day tasks into study blocks.

    A group closes once it reaches min_minutes, or before adding a task
    would push it past max_minutes. Only groups that form a block are
    returned; a long lone task or a short multi-task remainder is left
    alone. No task's minutes are dropped.
    """
    by_day = defaultdict(list)
    for task in tasks:
        by_day[task.window_start.date()].append(task)

    groups: List[List[StudyTask]] = []
    for day in sorted(by_day):
        ordered = sorted(
            by_day[day], key=lambda t: (t.window_start, -t.exam_proximity_score, t.id)
        )
        current: List[StudyTask] = []
        total = 0
        for task in ordered:
            minutes = task.duration or 60
            if current and total + minutes > max_minutes:
                groups.append(current)
                current, total = [], 0
            current.append(task)
            total += minutes
            if total >= min_minutes:
                groups.append(current)
                current, total = [], 0
        if current:
            groups.append(current)
    return [g for g in groups if forms_block(g, min_minutes)]


class EmergencyStrategy(BaseStrategy):
    """Crisis mode: compression, hyper blocks, doubled intensity, forced catch-up."""

    mode = "emergency"
    name = "Emergency Mode"
    description = "Crisis compression with hyper time blocks, syllabus pruning and aggressive scheduling"

    async def validate_plan(self, plan, tasks, now):
        plan = await super().validate_plan(plan, tasks, now)
        backlog = sum(1 for t in tasks if t.is_overdue(now))
        reason = emergency_eligibility(upcoming_exam_days(plan, now), completion_rate(tasks), backlog)
        if reason is None:
            raise ValidationError(
                f"Plan {plan.id} does not qualify for emergency mode, "
                "use balanced or adaptive instead",
                {"backlog": backlog},
            )
        logger.warning(f"[EmergencyStrategy] Crisis mode for plan {plan.id}: {reason}")
        return plan

    async def execute(self, plan_id, user_id, context, now):
        service = self.service
        settings = service.settings
        audit = service.audit
        triggered_by = context.triggered_by

        per_day = settings.emergency_tasks_per_day

        async with audit.track(AuditAction.SYLLABUS_COMPRESSION, user_id, plan_id, triggered_by) as record:
            plan, tasks = await self.prepare(plan_id, user_id, now)
            exam_days = upcoming_exam_days(plan, now)
            hours = (context.available_hours or plan.daily_study_hours) * settings.emergency_intensity
            compression = await self.compress_syllabus(plan, tasks, exam_days, now)
            record.task_ids = compression.pop("pruned_ids")
            record.details.update(compression)

        async with audit.track(AuditAction.HYPER_BLOCKS, user_id, plan_id, triggered_by) as record:
            hyper = await self.generate_hyper_blocks(plan_id, now)
            record.task_ids = hyper.pop("leader_ids")
            record.details.update(hyper)

        async with audit.track(AuditAction.STRATEGY_EXECUTE, user_id, plan_id, triggered_by) as record:
            step_context = StrategyContext(
                available_hours=hours,
                max_tasks_per_day=per_day,
                triggered_by=triggered_by,
                run_id=context.run_id,
            )
            plan = await load_hydrated_plan(service.plans, plan_id, user_id)
            if exam_days is not None:
                plan = await enable_exam_mode(service, plan)
                steps = await run_adaptive_steps(service, plan, user_id, step_context, now)
                scheduling = {
                    "exam_phase": steps["exam"].phase,
                    "redistribution": steps["redistribution"].to_dict(),
                    "scheduling": steps["scheduling"].to_dict(),
                }
                record.task_ids = steps["task_ids"]
            else:
                result = await service.schedule_plan(
                    plan, only_unscheduled=True, daily_hours=hours, max_tasks_per_day=per_day, now=now
                )
                scheduling = {"scheduling": result.to_dict()}
                record.task_ids = list(result.allocated)
            record.details.update({"mode": self.mode, "step": "intensive_scheduling", "daily_hours": hours})

        async with audit.track(AuditAction.FORCE_RESCHEDULE, user_id, plan_id, triggered_by) as record:
            forced = await service.redistribution.redistribute(
                user_id,
                plan_id,
                service.default_redistribution_options(
                    reason="emergency_force_reschedule",
                    max_to_reschedule=None,
                    daily_hours_limit=hours,
                    max_tasks_per_day=per_day,
                    max_hard_per_day=per_day,
                    buffer_ratio=1.0,
                    run_id=generate_id("RUN"),
                    triggered_by=triggered_by,
                ),
                now,
            )
            residual = len(await service.tasks.list_overdue(user_id, plan_id, now))
            record.task_ids = [r["task_id"] for r in forced.rescheduled]
            record.details.update({"forced": forced.rescheduled_count, "residual_backlog": residual})

        if residual:
            logger.warning(f"[EmergencyStrategy] Plan {plan_id} still has {residual} overdue tasks")

        return {
            "success": True,
            "mode": self.mode,
            "strategy": self.name,
            "warning": "Emergency mode activated: intensive study schedule applied",
            "compression": compression,
            "hyper_blocks": hyper,
            "adaptive_scheduling": scheduling,
            "force_reschedule": forced.to_dict(),
            "residual_backlog": residual,
            "metadata": {
                "intensity_multiplier": settings.emergency_intensity,
                "task_density_per_day": per_day,
                "hyper_block_minutes": [settings.hyper_block_min_minutes, settings.hyper_block_max_minutes],
            },
        }

    async def compress_syllabus(
        self, plan: StudyPlan, tasks: Sequence[StudyTask], exam_days: Optional[int], now: datetime
    ) -> Dict[str, Any]:
        pending = [t for t in tasks if t.status == TaskStatus.PENDING]
        if not pending:
            return {"pruned_count": 0, "retained_count": 0, "pruned_ids": []}

        exam_date = plan.exam_date if exam_days is not None else None
        ratio = self.service.settings.emergency_retention_ratio
        pruned = [
            mark_skipped(t, "emergency_compression", now, triggered_by="emergency_strategy")
            for t in select_for_pruning(pending, exam_date, now, ratio)
        ]
        if pruned:
            await self.service.tasks.save_tasks(pruned)

        logger.info(f"[EmergencyStrategy] Syllabus compression: {len(pruned)}/{len(pending)} tasks pruned")
        return {
            "pruned_count": len(pruned),
            "retained_count": len(pending) - len(pruned),
            "compression_ratio": ratio,
            "pruned_ids": [t.id for t in pruned],
        }

    async def generate_hyper_blocks(self, plan_id: str, now: datetime) -> Dict[str, Any]:
        settings = self.service.settings
        tasks = await self.service.tasks.list_tasks(plan_id)
        pending = [t for t in tasks if t.status == TaskStatus.PENDING and t.window_start]
        blocks = build_hyper_blocks(
            pending, settings.hyper_block_min_minutes, settings.hyper_block_max_minutes
        )

        updated: List[StudyTask] = []
        for block in blocks:
            leader = block[0]
            total = sum(t.duration or 60 for t in block)
            if len(block) > 1:
                title = "HYPER BLOCK: " + " + ".join(t.topic or t.title for t in block)
            else:
                title = f"EXTENDED BLOCK: {leader.title}"
            updated.append(merge_into_block(leader, max(total, settings.hyper_block_min_minutes), title))
            for follower in block[1:]:
                updated.append(mark_skipped(
                    follower,
                    f"Merged into hyper block: {leader.id}",
                    now,
                    triggered_by="emergency_strategy",
                ))
        if updated:
            await self.service.tasks.save_tasks(updated)

        logger.info(f"[EmergencyStrategy] Hyper blocks: {len(blocks)} created, {len(updated)} tasks modified")
        return {
            "hyper_blocks_created": len(blocks),
            "tasks_modified": len(updated),
            "leader_ids": [b[0].id for b in blocks],
        }


STRATEGIES: Dict[str, Type[BaseStrategy]] = {
    BalancedStrategy.mode: BalancedStrategy,
    AdaptiveStrategy.mode: AdaptiveStrategy,
    EmergencyStrategy.mode: EmergencyStrategy,
}


def get_strategy(mode: str, service) -> BaseStrategy:
    """Instantiate the strategy for a mode.

    Raises:
        ValidationError: Unknown mode
    """
    strategy_class = STRATEGIES.get(mode)
    if strategy_class is None:
        raise ValidationError(f"Unknown scheduling mode: {mode}", {"modes": sorted(STRATEGIES)})
    return strategy_class(service)


def describe_strategies(service) -> List[Dict[str, Any]]:
    return [cls(service).describe() for cls in STRATEGIES.values()]
