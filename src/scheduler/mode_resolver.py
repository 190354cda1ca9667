"""Recommends a scheduling mode from plan metrics.

Decision tree, first match wins:
    emergency - the emergency eligibility rules of the emergency strategy
    adaptive  - an upcoming exam plus one of: exam mode with the exam
                within 30 days, more than 10 overdue tasks below 70% done,
                low consistency on a reliable profile, or a recent
                completion rate below 50%
    balanced  - everything else
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from src.scheduler.models import (
    BehaviorProfile,
    StudyPlan,
    StudyTask,
    TaskStatus,
    days_until,
)
from src.scheduler.strategies import emergency_eligibility

MODES = ("balanced", "adaptive", "emergency")


@dataclass
class PlanMetrics:
    """Snapshot of a plan's progress."""

    plan_id: str
    user_id: str
    total_tasks: int
    completed_tasks: int
    completion_rate: int
    backlog: int
    upcoming_tasks: int
    days_to_exam: Optional[int]
    exam_mode: bool
    consistency_score: int = 0
    has_reliable_data: bool = False
    recent_completion_rate: int = 0
    current_streak: int = 0
    adaptation_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return dict(self.__dict__)


@dataclass
class ModeRecommendation:
    """Recommended mode with the reasons behind it."""

    recommended_mode: str
    current_mode: str
    confidence: int
    metrics: PlanMetrics
    reasoning: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def should_switch(self) -> bool:
        return self.recommended_mode != self.current_mode

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "recommended_mode": self.recommended_mode,
            "current_mode": self.current_mode,
            "should_switch": self.should_switch,
            "confidence": self.confidence,
            "reasoning": list(self.reasoning),
            "warnings": list(self.warnings),
            "metrics": self.metrics.to_dict(),
            "timestamp": self.timestamp.isoformat(),
        }


def compute_metrics(
    plan: StudyPlan,
    tasks: Sequence[StudyTask],
    profile: Optional[BehaviorProfile],
    now: datetime,
) -> PlanMetrics:
    """Derive progress metrics from a plan's tasks."""
    live = [t for t in tasks if not t.is_deleted]
    completed = sum(1 for t in live if t.status == TaskStatus.COMPLETED)
    completion = round(completed / len(live) * 100) if live else 0
    week_ahead = now + timedelta(days=7)
    week_ago = now - timedelta(days=7)

    recent = [t for t in live if t.window_start and week_ago <= t.window_start < now]
    recent_done = sum(1 for t in recent if t.status == TaskStatus.COMPLETED)

    days_to_exam = None
    if plan.exam_date is not None:
        days = days_until(plan.exam_date, now)
        days_to_exam = days if days >= 0 else None

    return PlanMetrics(
        plan_id=plan.id,
        user_id=plan.owner_id,
        total_tasks=len(live),
        completed_tasks=completed,
        completion_rate=completion,
        backlog=sum(1 for t in live if t.is_overdue(now)),
        upcoming_tasks=sum(
            1 for t in live
            if t.status == TaskStatus.PENDING and t.window_start and now <= t.window_start <= week_ahead
        ),
        days_to_exam=days_to_exam,
        exam_mode=bool(plan.exam_mode),
        consistency_score=round(profile.consistency_score) if profile else 0,
        has_reliable_data=bool(profile and profile.is_reliable),
        recent_completion_rate=round(recent_done / len(recent) * 100) if recent else 0,
        current_streak=plan.current_streak,
        adaptation_count=plan.adaptation_count,
    )


def adaptive_signals(metrics: PlanMetrics) -> List[str]:
    """Reasons to prefer adaptive scheduling, empty when none apply."""
    days = metrics.days_to_exam
    done = metrics.completion_rate
    if metrics.exam_mode and days is not None and days <= 30:
        reasoning = [
            f"Exam in {days} days, adaptive mode applies exam-driven strategies",
            f"Current completion: {done}%",
        ]
        if metrics.backlog > 10:
            reasoning.append(f"{metrics.backlog} overdue tasks will be redistributed")
        return reasoning
    if metrics.backlog > 10 and done < 70:
        return [
            f"High backlog ({metrics.backlog} tasks) with completion rate {done}%",
            "Adaptive mode applies priority scoring and cognitive load balancing",
        ]
    if metrics.has_reliable_data and metrics.consistency_score < 60:
        return [
            f"Low consistency score ({metrics.consistency_score}/100) detected",
            "Adaptive mode uses behaviour data to optimize the schedule",
        ]
    if 0 < metrics.recent_completion_rate < 50:
        return [
            f"Recent completion rate ({metrics.recent_completion_rate}%) indicates scheduling issues",
        ]
    return []


def apply_decision_tree(metrics: PlanMetrics) -> Tuple[str, List[str], List[str]]:
    """Pick a mode the plan can actually run in.

    Emergency uses the same eligibility rules the emergency strategy checks.
    Adaptive needs an upcoming exam, so adaptive signals on a plan without
    one fall back to balanced with a warning.

    Returns:
        (mode, reasoning, warnings)
    """
    days = metrics.days_to_exam
    done = metrics.completion_rate

    reason = emergency_eligibility(days, done / 100, metrics.backlog)
    if reason is not None:
        return "emergency", [
            f"Emergency conditions met: {reason}",
            "Emergency mode applies syllabus compression and hyper time blocks",
        ], ["Intensive study schedule: up to 8 tasks/day in 90-120 minute blocks"]

    signals = adaptive_signals(metrics)
    if signals and days is not None:
        warnings = ["Focus on catching up with overdue tasks"] if metrics.backlog > 10 else []
        return "adaptive", signals, warnings

    if signals:
        return "balanced", signals + [
            "No upcoming exam date, so balanced scheduling is used",
        ], ["Set an upcoming exam date to enable adaptive mode"]

    reasoning = [
        "Plan metrics indicate standard scheduling is appropriate",
        f"Completion rate: {done}%, backlog: {metrics.backlog} tasks",
    ]
    if metrics.current_streak > 7:
        reasoning.append(f"Strong consistency ({metrics.current_streak}-day streak), keep current pace")
    return "balanced", reasoning, []


def confidence(metrics: PlanMetrics, mode: str) -> int:
    """0-100 confidence in a recommendation."""
    score = 50
    days = metrics.days_to_exam
    if mode == "emergency":
        if days is not None and days <= 7:
            score += 40
        if metrics.completion_rate < 50:
            score += 10
    elif mode == "adaptive":
        if metrics.exam_mode and days is not None and days <= 30:
            score += 30
        if metrics.backlog > 10:
            score += 10
        if metrics.has_reliable_data:
            score += 10
    else:
        if metrics.completion_rate > 70:
            score += 20
        if metrics.backlog < 5:
            score += 15
        if metrics.current_streak > 7:
            score += 15
    return min(score, 100)


def infer_current_mode(plan: StudyPlan, metrics: PlanMetrics) -> str:
    """Mode the plan is effectively running in today."""
    if plan.exam_mode and metrics.days_to_exam is not None:
        if metrics.days_to_exam <= 7 and metrics.completion_rate < 60:
            return "emergency"
        return "adaptive"
    return "balanced"


def recommend(
    plan: StudyPlan,
    tasks: Sequence[StudyTask],
    profile: Optional[BehaviorProfile],
    now: Optional[datetime] = None,
) -> ModeRecommendation:
    """Full recommendation for a hydrated plan."""
    now = now or datetime.now()
    metrics = compute_metrics(plan, tasks, profile, now)
    mode, reasoning, warnings = apply_decision_tree(metrics)
    return ModeRecommendation(
        recommended_mode=mode,
        current_mode=infer_current_mode(plan, metrics),
        confidence=confidence(metrics, mode),
        metrics=metrics,
        reasoning=reasoning,
        warnings=warnings,
        timestamp=now,
    )
