"""Exam strategy engine.

Maps the days left before an exam to a preparation phase, and the phase to
how hard the plan should push.
"""

import logging
import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from src.scheduler.errors import ValidationError
from src.scheduler.events import EventSink, ExamPhaseChanged
from src.scheduler.models import StudyPlan, days_until

logger = logging.getLogger(__name__)

EXAM_PASSED = "exam_passed"
MAX_DAILY_HOURS = 8.0


@dataclass(frozen=True)
class PhaseConfig:
    """Parameters of one exam preparation phase. Days bracket is [min, max)."""

    name: str
    min_days: int
    max_days: float
    intensity_multiplier: float
    task_density_per_day: int
    focus_areas: Tuple[str, ...]
    description: str
    task_distribution: Dict[str, float] = field(default_factory=dict)

    def contains(self, days_remaining: int) -> bool:
        return self.min_days <= days_remaining < self.max_days

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "days_before_exam": [
                self.min_days,
                None if math.isinf(self.max_days) else int(self.max_days),
            ],
            "intensity_multiplier": self.intensity_multiplier,
            "task_density_per_day": self.task_density_per_day,
            "focus_areas": list(self.focus_areas),
            "description": self.description,
            "task_distribution": dict(self.task_distribution),
        }


PHASE_CONFIGS: Dict[str, PhaseConfig] = {
    "concept_building": PhaseConfig(
        name="concept_building",
        min_days=90,
        max_days=math.inf,
        intensity_multiplier=1.0,
        task_density_per_day=2,
        focus_areas=("theory", "concepts", "understanding"),
        description="Building foundational understanding",
        task_distribution={"theory": 0.7, "practice": 0.2, "revision": 0.1},
    ),
    "practice_heavy": PhaseConfig(
        name="practice_heavy",
        min_days=30,
        max_days=90,
        intensity_multiplier=1.3,
        task_density_per_day=3,
        focus_areas=("practice", "application", "problem-solving"),
        description="Apply knowledge through practice",
        task_distribution={"theory": 0.2, "practice": 0.6, "revision": 0.2},
    ),
    "revision": PhaseConfig(
        name="revision",
        min_days=7,
        max_days=30,
        intensity_multiplier=1.5,
        task_density_per_day=4,
        focus_areas=("revision", "weak-areas", "mock-tests"),
        description="Intensive revision and weak area focus",
        task_distribution={"theory": 0.1, "practice": 0.3, "revision": 0.6},
    ),
    "light_review": PhaseConfig(
        name="light_review",
        min_days=0,
        max_days=7,
        intensity_multiplier=1.2,
        task_density_per_day=3,
        focus_areas=("quick-review", "formulas", "key-concepts"),
        description="Light review to avoid burnout",
        task_distribution={"theory": 0.2, "practice": 0.2, "revision": 0.6},
    ),
}

PHASE_ADVICE: Dict[str, List[str]] = {
    "concept_building": [
        "Focus on understanding core concepts before moving to practice",
        "Build strong fundamentals and don't rush through theory",
    ],
    "practice_heavy": [
        "Solve practice problems daily to reinforce learning",
        "Start identifying weak areas that need extra attention",
    ],
    "revision": [
        "Prioritize revision of completed topics over new material",
        "Take mock tests to assess readiness",
        "Create quick-reference notes for formulas and key concepts",
    ],
    "light_review": [
        "Avoid learning new topics, focus on quick reviews only",
        "Get adequate sleep and avoid burnout",
        "Review your quick-reference notes and formulas",
    ],
}


@dataclass(frozen=True)
class PhaseInfo:
    """Phase an exam date falls into, seen from a given moment."""

    phase: str
    config: Optional[PhaseConfig]
    days_remaining: int


@dataclass
class ExamStrategy:
    """Strategy summary returned for a plan."""

    enabled: bool
    phase: Optional[str] = None
    config: Optional[PhaseConfig] = None
    days_remaining: Optional[int] = None
    phase_changed: bool = False
    recommendations: List[str] = field(default_factory=list)

    @property
    def intensity_multiplier(self) -> float:
        return self.config.intensity_multiplier if self.config else 1.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "enabled": self.enabled,
            "phase": self.phase,
            "config": self.config.to_dict() if self.config else None,
            "days_remaining": self.days_remaining,
            "phase_changed": self.phase_changed,
            "recommendations": list(self.recommendations),
        }


def determine_phase(exam_date: Optional[datetime], now: datetime) -> Optional[PhaseInfo]:
    """Find the phase for an exam date.

    Returns None without an exam date, and phase "exam_passed" (no config)
    once the date is behind us.
    """
    if exam_date is None:
        return None

    days_remaining = days_until(exam_date, now)
    if days_remaining < 0:
        return PhaseInfo(EXAM_PASSED, None, days_remaining)

    for config in PHASE_CONFIGS.values():
        if config.contains(days_remaining):
            return PhaseInfo(config.name, config, days_remaining)

    return PhaseInfo("concept_building", PHASE_CONFIGS["concept_building"], days_remaining)


def proximity_score(
    exam_date: Optional[datetime],
    task_date: Optional[datetime],
    now: datetime,
) -> int:
    """Exam proximity score in [0, 100]; higher means more urgent.

    Final week 70-100, 8-30 days 50-70, 31-90 days 30-50, beyond 20-30.
    Tasks dated within 3 days of the exam get +10; undated tasks get no
    bonus. Without an exam the score is a neutral 50; after the exam it is 0.
    """
    if exam_date is None:
        return 50

    days_to_exam = days_until(exam_date, now)
    if days_to_exam < 0:
        return 0

    if days_to_exam <= 7:
        score = 70 + 30 * (7 - days_to_exam) / 7
    elif days_to_exam <= 30:
        score = 50 + 20 * (30 - days_to_exam) / 23
    elif days_to_exam <= 90:
        score = 30 + 20 * (90 - days_to_exam) / 60
    else:
        score = 20 + min(10, days_to_exam / 30)

    if task_date is not None and abs(days_until(task_date, now) - days_to_exam) <= 3:
        score += 10

    return int(min(100, max(0, round(score))))


def recommendations(phase: str, config: PhaseConfig, days_remaining: int, daily_hours: float) -> List[str]:
    """Actionable advice for the current phase."""
    advice = [f"{config.description} ({days_remaining} days until exam)"]
    advice.extend(PHASE_ADVICE.get(phase, []))
    if config.task_density_per_day > (daily_hours or 4):
        advice.append(f"Consider increasing daily study time to {config.task_density_per_day} hours")
    advice.append(f"Key focus areas: {', '.join(config.focus_areas)}")
    return advice


def phase_timeline(exam_date: Optional[datetime], now: datetime) -> List[Dict[str, Any]]:
    """Calendar of phases, earliest first, with the current one marked."""
    if exam_date is None:
        return []

    current = determine_phase(exam_date, now)
    timeline = []
    for config in PHASE_CONFIGS.values():
        end = exam_date - timedelta(days=config.min_days)
        if math.isinf(config.max_days):
            start = None
            duration_days = None
        else:
            start = exam_date - timedelta(days=config.max_days)
            duration_days = int(config.max_days - config.min_days)
        timeline.append({
            "phase": config.name,
            "label": config.description,
            "start_date": start.isoformat() if start else None,
            "end_date": end.isoformat(),
            "duration_days": duration_days,
            "is_current_phase": current is not None and current.phase == config.name,
        })
    return timeline


def intensity_hours(base_hours: float, multiplier: float, cap: float = MAX_DAILY_HOURS) -> float:
    """Daily hours scaled by a phase multiplier, never above cap."""
    return min(base_hours * multiplier, cap)


class ExamStrategyEngine:
    """Computes and persists the exam strategy of a plan."""

    def __init__(self, plans, events: EventSink):
        """Initialize the engine.

        Args:
            plans: PlanStore used to persist phase changes
            events: Sink for exam.phase.changed
        """
        self.plans = plans
        self.events = events

    async def get_strategy(
        self, plan: StudyPlan, now: Optional[datetime] = None
    ) -> Tuple[ExamStrategy, StudyPlan]:
        """Current strategy for a plan, persisting a phase change if any.

        Returns:
            (strategy, plan as stored afterwards)
        """
        now = now or datetime.now()
        if not plan.exam_mode or plan.exam_date is None:
            return ExamStrategy(enabled=False), plan

        info = determine_phase(plan.exam_date, now)
        phase_changed = plan.current_phase != info.phase

        if info.config is None:
            return ExamStrategy(
                enabled=True,
                phase=info.phase,
                days_remaining=info.days_remaining,
                phase_changed=phase_changed,
            ), plan

        if phase_changed:
            logger.info(
                f"[ExamStrategy] Plan {plan.id} phase {plan.current_phase} -> {info.phase} "
                f"({info.days_remaining} days remaining)"
            )
            old_phase = plan.current_phase
            plan = await self.plans.save_plan(replace(
                plan,
                current_phase=info.phase,
                phase_config=_phase_config_record(info.config, now),
            ))
            await self.events.publish(ExamPhaseChanged(
                user_id=plan.owner_id,
                plan_id=plan.id,
                old_phase=old_phase,
                new_phase=info.phase,
                days_remaining=info.days_remaining,
                description=info.config.description,
            ))

        return ExamStrategy(
            enabled=True,
            phase=info.phase,
            config=info.config,
            days_remaining=info.days_remaining,
            phase_changed=phase_changed,
            recommendations=recommendations(
                info.phase, info.config, info.days_remaining, plan.daily_study_hours
            ),
        ), plan

    async def adjust_plan_intensity(
        self, plan: StudyPlan, phase: str, now: Optional[datetime] = None
    ) -> Tuple[Dict[str, Any], StudyPlan]:
        """Persist daily hours scaled to a phase, capped at 8 hours.

        Raises:
            ValidationError: Unknown phase, or plan not in exam mode
        """
        config = PHASE_CONFIGS.get(phase)
        if config is None:
            raise ValidationError(f"Invalid phase: {phase}")
        if not plan.exam_mode:
            raise ValidationError(f"Plan {plan.id} is not in exam mode")

        now = now or datetime.now()
        base = plan.daily_study_hours or 4
        adjusted = intensity_hours(base, config.intensity_multiplier)
        plan = await self.plans.save_plan(replace(
            plan,
            current_phase=phase,
            phase_config=_phase_config_record(config, now),
            daily_study_hours=adjusted,
        ))
        logger.info(f"[ExamStrategy] Adjusted plan {plan.id}: phase={phase}, daily_hours={adjusted}")
        return {
            "phase": phase,
            "old_daily_hours": base,
            "new_daily_hours": adjusted,
            "task_density_per_day": config.task_density_per_day,
            "focus_areas": list(config.focus_areas),
        }, plan


def _phase_config_record(config: PhaseConfig, now: datetime) -> Dict[str, Any]:
    return {
        "intensity_multiplier": config.intensity_multiplier,
        "task_density_per_day": config.task_density_per_day,
        "last_phase_update": now.isoformat(),
    }
