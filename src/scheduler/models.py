"""Data models for the scheduling engine - StudyPlan, StudyTask, conflicts, audit log."""

import math
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from src.scheduler.errors import InvalidTransition

SLOT_MINUTES = 30


class PlanStatus(str, Enum):
    """Study plan status enum."""
    ACTIVE = "active"
    COMPLETED = "completed"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class PlanDifficulty(str, Enum):
    """Study plan difficulty enum."""
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


class TaskStatus(str, Enum):
    """Study task status enum."""
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    RESCHEDULED = "rescheduled"


class TaskDifficulty(str, Enum):
    """Study task difficulty enum."""
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


class TaskPriority(str, Enum):
    """Study task priority enum."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class ConflictType(str, Enum):
    """Kind of overlap between two task windows."""
    DIRECT_OVERLAP = "direct_overlap"
    PARTIAL_OVERLAP = "partial_overlap"
    EDGE_CASE = "edge_case"


class ConflictSeverity(str, Enum):
    """Conflict severity enum."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ResolutionStatus(str, Enum):
    """Conflict resolution status enum."""
    DETECTED = "detected"
    USER_NOTIFIED = "user_notified"
    AUTO_RESOLVED = "auto_resolved"
    USER_RESOLVED = "user_resolved"
    ACCEPTED = "accepted"
    IGNORED = "ignored"


class AuditAction(str, Enum):
    """Actions recorded in the scheduling audit log."""
    AUTO_SCHEDULE = "auto_schedule"
    RESCHEDULE_TASK = "reschedule_task"
    RESOLVE_CONFLICT = "resolve_conflict"
    HANDLE_MISSED_TASK = "handle_missed_task"
    DETECT_CONFLICTS = "detect_conflicts"
    UPDATE_CONFLICT = "update_conflict"
    ADAPTIVE_RESCHEDULE = "adaptive_reschedule"
    EXAM_PHASE_UPDATE = "exam_phase_update"
    STRATEGY_EXECUTE = "strategy_execute"
    SYLLABUS_COMPRESSION = "syllabus_compression"
    HYPER_BLOCKS = "hyper_blocks"
    FORCE_RESCHEDULE = "force_reschedule"
    SWEEP = "sweep"


class TriggeredBy(str, Enum):
    """Origin of an audited action."""
    USER_ACTION = "user_action"
    API_ENDPOINT = "api_endpoint"
    BACKGROUND_JOB = "background_job"
    CONFLICT_DETECTION = "conflict_detection"


TERMINAL_TASK_STATUSES = (TaskStatus.COMPLETED, TaskStatus.SKIPPED)
OVERDUE_TASK_STATUSES = (TaskStatus.PENDING, TaskStatus.RESCHEDULED)


def generate_id(prefix: str) -> str:
    """Generate an ID like PLAN-1A2B3C4D."""
    return f"{prefix}-{uuid4().hex[:8].upper()}"


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse a datetime from an ISO string, date or datetime.

    Timezone-aware values are converted to local wall-clock time and made
    naive, since slot windows are expressed in the learner's local day.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        return datetime.combine(value, time.min)
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def days_until(target: datetime, now: datetime) -> int:
    """Whole days from now until target, rounded up."""
    return math.ceil((target - now).total_seconds() / 86400)


@dataclass(frozen=True)
class Window:
    """A concrete [start, end) time window assigned to a task."""

    start: datetime
    end: datetime

    @property
    def minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start < end and start < self.end

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass
class TimeSlot:
    """Ephemeral 30-minute candidate window produced per scheduling run."""

    start: datetime
    end: datetime
    available: bool = True
    task_id: Optional[str] = None
    bucket: Optional[str] = None
    optimal_for_user: bool = False

    @property
    def day(self) -> date:
        return self.start.date()

    @property
    def minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "available": self.available,
            "task_id": self.task_id,
            "bucket": self.bucket,
            "optimal_for_user": self.optimal_for_user,
        }


@dataclass
class StudyPlan:
    """A learner's study plan.

    Scheduling fields are Optional because legacy rows may lack them; the
    plan hydrator fills them before any strategy touches the plan.
    """

    id: Optional[str] = None
    owner_id: Optional[str] = None
    title: str = ""
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    daily_study_hours: Optional[float] = None
    max_session_length: Optional[int] = None
    break_duration: Optional[int] = None
    preferred_time_slots: Optional[List[Any]] = None
    difficulty: Optional[PlanDifficulty] = None
    status: Optional[PlanStatus] = None
    is_archived: bool = False
    exam_date: Optional[datetime] = None
    exam_mode: Optional[bool] = None
    current_phase: Optional[str] = None
    phase_config: Dict[str, Any] = field(default_factory=dict)
    current_streak: int = 0
    adaptation_count: int = 0
    missed_tasks_redistributed: int = 0
    last_adapted_at: Optional[datetime] = None
    last_run_id: Optional[str] = None
    config: Dict[str, Any] = field(default_factory=dict)
    version: int = 0
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "title": self.title,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "daily_study_hours": self.daily_study_hours,
            "max_session_length": self.max_session_length,
            "break_duration": self.break_duration,
            "preferred_time_slots": self.preferred_time_slots,
            "difficulty": self.difficulty.value if self.difficulty else None,
            "status": self.status.value if self.status else None,
            "is_archived": self.is_archived,
            "exam_date": _iso(self.exam_date),
            "exam_mode": self.exam_mode,
            "current_phase": self.current_phase,
            "phase_config": self.phase_config,
            "current_streak": self.current_streak,
            "adaptation_count": self.adaptation_count,
            "missed_tasks_redistributed": self.missed_tasks_redistributed,
            "last_adapted_at": _iso(self.last_adapted_at),
            "last_run_id": self.last_run_id,
            "config": self.config,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StudyPlan":
        """Create from dictionary."""
        return cls(
            id=data.get("id"),
            owner_id=data.get("owner_id"),
            title=data.get("title") or "",
            start_date=parse_datetime(data.get("start_date")),
            end_date=parse_datetime(data.get("end_date")),
            daily_study_hours=data.get("daily_study_hours"),
            max_session_length=data.get("max_session_length"),
            break_duration=data.get("break_duration"),
            preferred_time_slots=data.get("preferred_time_slots"),
            difficulty=PlanDifficulty(data["difficulty"]) if data.get("difficulty") else None,
            status=PlanStatus(data["status"]) if data.get("status") else None,
            is_archived=bool(data.get("is_archived", False)),
            exam_date=parse_datetime(data.get("exam_date")),
            exam_mode=data.get("exam_mode"),
            current_phase=data.get("current_phase"),
            phase_config=data.get("phase_config") or {},
            current_streak=data.get("current_streak") or 0,
            adaptation_count=data.get("adaptation_count") or 0,
            missed_tasks_redistributed=data.get("missed_tasks_redistributed") or 0,
            last_adapted_at=parse_datetime(data.get("last_adapted_at")),
            last_run_id=data.get("last_run_id"),
            config=data.get("config") or {},
            version=data.get("version") or 0,
            created_at=parse_datetime(data.get("created_at")) or datetime.now(),
            updated_at=parse_datetime(data.get("updated_at")) or datetime.now(),
        )


@dataclass(frozen=True)
class RescheduleEntry:
    """One entry in a task's append-only reschedule history."""

    timestamp: datetime
    reason: str
    old_start: Optional[datetime] = None
    new_start: Optional[datetime] = None
    triggered_by: str = "system"
    run_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "reason": self.reason,
            "old_start": _iso(self.old_start),
            "new_start": _iso(self.new_start),
            "triggered_by": self.triggered_by,
            "run_id": self.run_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RescheduleEntry":
        """Create from dictionary."""
        return cls(
            timestamp=parse_datetime(data.get("timestamp")) or datetime.now(),
            reason=data.get("reason", ""),
            old_start=parse_datetime(data.get("old_start")),
            new_start=parse_datetime(data.get("new_start")),
            triggered_by=data.get("triggered_by", "system"),
            run_id=data.get("run_id"),
        )


@dataclass(frozen=True)
class StudyTask:
    """A discrete unit of study work.

    Immutable: every change goes through one of the transition functions
    below, which return a new value for the store to persist.
    """

    id: str
    plan_id: str
    owner_id: str
    title: str = ""
    topic: Optional[str] = None
    duration: Optional[int] = 60
    difficulty: Optional[TaskDifficulty] = TaskDifficulty.MEDIUM
    priority: Optional[TaskPriority] = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    reschedule_history: Tuple[RescheduleEntry, ...] = ()
    reschedule_count: int = 0
    rescheduled_reason: Optional[str] = None
    is_auto_scheduled: bool = False
    is_rescheduled: bool = False
    conflict_flag: bool = False
    conflict_count: int = 0
    last_scheduled_at: Optional[datetime] = None
    exam_proximity_score: float = 0.0
    completed_at: Optional[datetime] = None
    is_deleted: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    @property
    def window(self) -> Optional[Window]:
        if self.window_start is None or self.window_end is None:
            return None
        return Window(self.window_start, self.window_end)

    @property
    def required_slots(self) -> int:
        return max(1, math.ceil((self.duration or 0) / SLOT_MINUTES))

    def is_overdue(self, now: datetime) -> bool:
        return (
            self.status in OVERDUE_TASK_STATUSES
            and self.window_start is not None
            and self.window_start < now
        )

    def has_run(self, run_id: str) -> bool:
        return any(entry.run_id == run_id for entry in self.reschedule_history)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "plan_id": self.plan_id,
            "owner_id": self.owner_id,
            "title": self.title,
            "topic": self.topic,
            "duration": self.duration,
            "difficulty": self.difficulty.value if self.difficulty else None,
            "priority": self.priority.value if self.priority else None,
            "status": self.status.value,
            "window_start": _iso(self.window_start),
            "window_end": _iso(self.window_end),
            "reschedule_history": [e.to_dict() for e in self.reschedule_history],
            "reschedule_count": self.reschedule_count,
            "rescheduled_reason": self.rescheduled_reason,
            "is_auto_scheduled": self.is_auto_scheduled,
            "is_rescheduled": self.is_rescheduled,
            "conflict_flag": self.conflict_flag,
            "conflict_count": self.conflict_count,
            "last_scheduled_at": _iso(self.last_scheduled_at),
            "exam_proximity_score": self.exam_proximity_score,
            "completed_at": _iso(self.completed_at),
            "is_deleted": self.is_deleted,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StudyTask":
        """Create from dictionary. Legacy gaps are left for guard_task()."""
        return cls(
            id=data["id"],
            plan_id=data["plan_id"],
            owner_id=data["owner_id"],
            title=data.get("title") or "",
            topic=data.get("topic"),
            duration=data.get("duration"),
            difficulty=TaskDifficulty(data["difficulty"]) if data.get("difficulty") else None,
            priority=TaskPriority(data["priority"]) if data.get("priority") else None,
            status=TaskStatus(data.get("status") or "pending"),
            window_start=parse_datetime(data.get("window_start")),
            window_end=parse_datetime(data.get("window_end")),
            reschedule_history=tuple(
                RescheduleEntry.from_dict(e) for e in data.get("reschedule_history") or []
            ),
            reschedule_count=data.get("reschedule_count") or 0,
            rescheduled_reason=data.get("rescheduled_reason"),
            is_auto_scheduled=bool(data.get("is_auto_scheduled", False)),
            is_rescheduled=bool(data.get("is_rescheduled", False)),
            conflict_flag=bool(data.get("conflict_flag", False)),
            conflict_count=data.get("conflict_count") or 0,
            last_scheduled_at=parse_datetime(data.get("last_scheduled_at")),
            exam_proximity_score=float(data.get("exam_proximity_score") or 0),
            completed_at=parse_datetime(data.get("completed_at")),
            is_deleted=bool(data.get("is_deleted", False)),
        )


# ==================== Task Transitions ====================

TASK_TRANSITIONS: Dict[TaskStatus, List[TaskStatus]] = {
    TaskStatus.PENDING: [
        TaskStatus.IN_PROGRESS,
        TaskStatus.COMPLETED,
        TaskStatus.SKIPPED,
        TaskStatus.RESCHEDULED,
    ],
    TaskStatus.IN_PROGRESS: [TaskStatus.COMPLETED, TaskStatus.SKIPPED, TaskStatus.RESCHEDULED],
    TaskStatus.RESCHEDULED: [
        TaskStatus.PENDING,
        TaskStatus.IN_PROGRESS,
        TaskStatus.COMPLETED,
        TaskStatus.SKIPPED,
        TaskStatus.RESCHEDULED,
    ],
    TaskStatus.COMPLETED: [],
    TaskStatus.SKIPPED: [],
}


def can_transition(task: StudyTask, new_status: TaskStatus) -> bool:
    """Check if a task can move to new_status."""
    return new_status in TASK_TRANSITIONS.get(task.status, [])


def transition(task: StudyTask, new_status: TaskStatus) -> StudyTask:
    """Return the task moved to new_status.

    Raises:
        InvalidTransition: If the transition is not allowed
    """
    if not can_transition(task, new_status):
        raise InvalidTransition(
            f"Cannot transition task {task.id} from {task.status.value} to {new_status.value}"
        )
    return replace(task, status=new_status)


def assign_window(
    task: StudyTask,
    start: datetime,
    end: datetime,
    now: datetime,
    auto_scheduled: bool = True,
) -> StudyTask:
    """Place a task into a window without recording it as a reschedule."""
    if task.is_terminal:
        raise InvalidTransition(f"Cannot schedule task {task.id} in status {task.status.value}")
    return replace(
        task,
        window_start=start,
        window_end=end,
        is_auto_scheduled=auto_scheduled,
        last_scheduled_at=now,
        conflict_flag=False,
    )


def reschedule(
    task: StudyTask,
    start: datetime,
    end: datetime,
    reason: str,
    now: datetime,
    triggered_by: str = "user",
    run_id: Optional[str] = None,
    status: TaskStatus = TaskStatus.RESCHEDULED,
) -> StudyTask:
    """Move a task to a new window, appending to its reschedule history.

    Redistribution passes status=PENDING so the task re-enters the normal
    flow; manual moves leave it RESCHEDULED.
    """
    if task.is_terminal:
        raise InvalidTransition(f"Cannot reschedule task {task.id} in status {task.status.value}")
    if status != task.status and status != TaskStatus.PENDING and not can_transition(task, status):
        raise InvalidTransition(
            f"Cannot transition task {task.id} from {task.status.value} to {status.value}"
        )
    entry = RescheduleEntry(
        timestamp=now,
        reason=reason,
        old_start=task.window_start,
        new_start=start,
        triggered_by=triggered_by,
        run_id=run_id,
    )
    return replace(
        task,
        window_start=start,
        window_end=end,
        status=status,
        reschedule_history=task.reschedule_history + (entry,),
        reschedule_count=task.reschedule_count + 1,
        rescheduled_reason=reason,
        is_rescheduled=True,
        conflict_flag=False,
        last_scheduled_at=now,
    )


def mark_skipped(task: StudyTask, reason: str, now: datetime, triggered_by: str = "system") -> StudyTask:
    """Skip a task, keeping an audit entry of the window it gave up."""
    skipped = transition(task, TaskStatus.SKIPPED)
    entry = RescheduleEntry(
        timestamp=now,
        reason=reason,
        old_start=task.window_start,
        new_start=None,
        triggered_by=triggered_by,
    )
    return replace(
        skipped,
        rescheduled_reason=reason,
        reschedule_history=task.reschedule_history + (entry,),
    )


def reset_to_pending(task: StudyTask) -> StudyTask:
    """Return a rescheduled task to the normal pending flow."""
    if task.status == TaskStatus.PENDING:
        return task
    return transition(task, TaskStatus.PENDING)


def start(task: StudyTask) -> StudyTask:
    """Move a task to in-progress."""
    return transition(task, TaskStatus.IN_PROGRESS)


def complete(task: StudyTask, now: datetime) -> StudyTask:
    """Mark a task completed."""
    return replace(transition(task, TaskStatus.COMPLETED), completed_at=now)


def flag_conflicts(task: StudyTask, count: int) -> StudyTask:
    """Record how many live conflicts currently involve this task."""
    return replace(task, conflict_flag=count > 0, conflict_count=count)


def unschedule(task: StudyTask) -> StudyTask:
    """Clear a task's window so the allocator places it again."""
    return replace(task, window_start=None, window_end=None, is_auto_scheduled=False)


def merge_into_block(task: StudyTask, duration: int, title: str) -> StudyTask:
    """Turn a task into an intensive study block led by this task."""
    return replace(
        unschedule(task),
        duration=duration,
        title=title,
        priority=TaskPriority.URGENT,
    )


# ==================== Conflicts & Audit ====================


@dataclass
class ResolutionDetails:
    """Outcome of the last resolution of a conflict."""

    action: str
    affected_tasks: List[str] = field(default_factory=list)
    success: bool = True
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "action": self.action,
            "affected_tasks": self.affected_tasks,
            "success": self.success,
            "message": self.message,
        }


@dataclass
class TimeBlockConflict:
    """Overlap audit record for one unordered pair of tasks."""

    plan_id: str
    owner_id: str
    task1_id: str
    task2_id: str
    overlap_start: datetime
    overlap_end: datetime
    overlap_minutes: int
    conflict_type: ConflictType
    severity: ConflictSeverity
    id: str = field(default_factory=lambda: generate_id("CONF"))
    resolution_status: ResolutionStatus = ResolutionStatus.DETECTED
    resolution_attempt_count: int = 0
    last_resolution_attempt_at: Optional[datetime] = None
    resolution_details: Optional[ResolutionDetails] = None
    detected_by: str = "auto_schedule"
    detected_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def pair_key(self) -> Tuple[str, str]:
        return pair_key(self.task1_id, self.task2_id)

    @property
    def is_resolved(self) -> bool:
        return self.resolution_status in (
            ResolutionStatus.AUTO_RESOLVED,
            ResolutionStatus.USER_RESOLVED,
            ResolutionStatus.ACCEPTED,
        )

    @property
    def is_pending(self) -> bool:
        return self.resolution_status in (ResolutionStatus.DETECTED, ResolutionStatus.USER_NOTIFIED)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "plan_id": self.plan_id,
            "owner_id": self.owner_id,
            "task1_id": self.task1_id,
            "task2_id": self.task2_id,
            "overlap_start": self.overlap_start.isoformat(),
            "overlap_end": self.overlap_end.isoformat(),
            "overlap_minutes": self.overlap_minutes,
            "conflict_type": self.conflict_type.value,
            "severity": self.severity.value,
            "resolution_status": self.resolution_status.value,
            "resolution_attempt_count": self.resolution_attempt_count,
            "last_resolution_attempt_at": _iso(self.last_resolution_attempt_at),
            "resolution_details": self.resolution_details.to_dict() if self.resolution_details else None,
            "detected_by": self.detected_by,
            "detected_at": self.detected_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TimeBlockConflict":
        """Create from dictionary."""
        details = data.get("resolution_details")
        return cls(
            id=data["id"],
            plan_id=data["plan_id"],
            owner_id=data["owner_id"],
            task1_id=data["task1_id"],
            task2_id=data["task2_id"],
            overlap_start=parse_datetime(data["overlap_start"]),
            overlap_end=parse_datetime(data["overlap_end"]),
            overlap_minutes=int(data["overlap_minutes"]),
            conflict_type=ConflictType(data["conflict_type"]),
            severity=ConflictSeverity(data["severity"]),
            resolution_status=ResolutionStatus(data.get("resolution_status", "detected")),
            resolution_attempt_count=data.get("resolution_attempt_count") or 0,
            last_resolution_attempt_at=parse_datetime(data.get("last_resolution_attempt_at")),
            resolution_details=ResolutionDetails(**details) if details else None,
            detected_by=data.get("detected_by", "auto_schedule"),
            detected_at=parse_datetime(data.get("detected_at")) or datetime.now(),
            updated_at=parse_datetime(data.get("updated_at")) or datetime.now(),
        )


def pair_key(task_a: str, task_b: str) -> Tuple[str, str]:
    """Canonical key of an unordered task pair."""
    return (task_a, task_b) if task_a <= task_b else (task_b, task_a)


SLOW_ACTION_MS = 1000


@dataclass(frozen=True)
class SchedulingLog:
    """Append-only audit entry. Never mutated after creation."""

    user_id: Optional[str]
    plan_id: Optional[str]
    action: str
    success: bool
    task_ids: Tuple[str, ...] = ()
    error_message: Optional[str] = None
    duration_ms: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)
    triggered_by: TriggeredBy = TriggeredBy.API_ENDPOINT
    id: str = field(default_factory=lambda: generate_id("LOG"))
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def is_slow(self) -> bool:
        return self.duration_ms > SLOW_ACTION_MS

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "plan_id": self.plan_id,
            "action": self.action,
            "success": self.success,
            "task_ids": list(self.task_ids),
            "error_message": self.error_message,
            "duration_ms": self.duration_ms,
            "details": self.details,
            "triggered_by": self.triggered_by.value,
            "created_at": self.created_at.isoformat(),
            "is_slow": self.is_slow,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SchedulingLog":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            user_id=data.get("user_id"),
            plan_id=data.get("plan_id"),
            action=data["action"],
            success=bool(data["success"]),
            task_ids=tuple(data.get("task_ids") or ()),
            error_message=data.get("error_message"),
            duration_ms=float(data.get("duration_ms") or 0),
            details=data.get("details") or {},
            triggered_by=TriggeredBy(data.get("triggered_by", "api_endpoint")),
            created_at=parse_datetime(data.get("created_at")) or datetime.now(),
        )


@dataclass
class BehaviorProfile:
    """Opaque summary of a learner's study behaviour."""

    optimal_time_of_day: Optional[str] = None
    efficiency_factor: float = 1.0
    is_reliable: bool = False
    consistency_score: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BehaviorProfile":
        """Create from dictionary."""
        return cls(
            optimal_time_of_day=data.get("optimal_time_of_day"),
            efficiency_factor=float(data.get("efficiency_factor") or 1.0),
            is_reliable=bool(data.get("is_reliable", False)),
            consistency_score=float(data.get("consistency_score") or 0),
        )


def window_for_run(slots: List[TimeSlot]) -> Window:
    """Window spanning a contiguous run of slots."""
    return Window(slots[0].start, slots[-1].end)


def minutes_between(start: datetime, end: datetime) -> int:
    return int((end - start) / timedelta(minutes=1))
