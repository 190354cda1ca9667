"""Conflict detection and the conflict resolution state machine."""

from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from src.scheduler.errors import InvalidTransition
from src.scheduler.models import (
    ConflictSeverity,
    ConflictType,
    ResolutionDetails,
    ResolutionStatus,
    StudyTask,
    TimeBlockConflict,
)

EDGE_CASE_MINUTES = 5
HIGH_SEVERITY_MINUTES = 30
MEDIUM_SEVERITY_MINUTES = 15


@dataclass(frozen=True)
class Overlap:
    """Overlap between two windows."""

    conflict_type: ConflictType
    minutes: int
    start: datetime
    end: datetime


@dataclass(frozen=True)
class DetectedOverlap:
    """An overlapping task pair. task2 is the one starting later."""

    task1_id: str
    task2_id: str
    overlap: Overlap

    @property
    def severity(self) -> ConflictSeverity:
        return classify_severity(self.overlap.minutes)


def task_bounds(task: StudyTask):
    """(start, end) of a scheduled task; end falls back to start + duration."""
    start = task.window_start
    end = task.window_end or start + timedelta(minutes=task.duration or 60)
    return start, end


def check_overlap(
    s1: datetime, e1: datetime, s2: datetime, e2: datetime
) -> Optional[Overlap]:
    """Return the overlap of [s1, e1) and [s2, e2), or None.

    Symmetric in its two windows.
    """
    if not (s1 < e2 and s2 < e1):
        return None

    start, end = max(s1, s2), min(e1, e2)
    minutes = max(1, round((end - start).total_seconds() / 60))

    if s1 == s2 and e1 == e2:
        conflict_type = ConflictType.DIRECT_OVERLAP
    elif minutes < EDGE_CASE_MINUTES:
        conflict_type = ConflictType.EDGE_CASE
    else:
        conflict_type = ConflictType.PARTIAL_OVERLAP

    return Overlap(conflict_type=conflict_type, minutes=minutes, start=start, end=end)


def check_task_overlap(task1: StudyTask, task2: StudyTask) -> Optional[Overlap]:
    return check_overlap(*task_bounds(task1), *task_bounds(task2))


def classify_severity(minutes: int) -> ConflictSeverity:
    if minutes >= HIGH_SEVERITY_MINUTES:
        return ConflictSeverity.HIGH
    if minutes >= MEDIUM_SEVERITY_MINUTES:
        return ConflictSeverity.MEDIUM
    return ConflictSeverity.LOW


def detect_overlaps(tasks: Sequence[StudyTask]) -> List[DetectedOverlap]:
    """Pairwise scan of scheduled, non-terminal tasks.

    Quadratic in the number of tasks, which is fine for plans of a few
    hundred tasks.
    """
    active = sorted(
        (t for t in tasks if not t.is_terminal and not t.is_deleted and t.window_start),
        key=lambda t: (t.window_start, t.id),
    )
    found: List[DetectedOverlap] = []
    for i, first in enumerate(active):
        for second in active[i + 1:]:
            overlap = check_task_overlap(first, second)
            if overlap:
                found.append(DetectedOverlap(first.id, second.id, overlap))
    return found


def conflict_counts(overlaps: Sequence[DetectedOverlap]) -> Dict[str, int]:
    """Number of overlaps each task takes part in."""
    counts: Counter = Counter()
    for item in overlaps:
        counts[item.task1_id] += 1
        counts[item.task2_id] += 1
    return dict(counts)


def build_conflict(
    detected: DetectedOverlap,
    plan_id: str,
    owner_id: str,
    now: datetime,
    existing: Optional[TimeBlockConflict] = None,
    detected_by: str = "auto_schedule",
) -> TimeBlockConflict:
    """Create a conflict record, or refresh an existing one for the same pair."""
    overlap = detected.overlap
    if existing is None:
        return TimeBlockConflict(
            plan_id=plan_id,
            owner_id=owner_id,
            task1_id=detected.task1_id,
            task2_id=detected.task2_id,
            overlap_start=overlap.start,
            overlap_end=overlap.end,
            overlap_minutes=overlap.minutes,
            conflict_type=overlap.conflict_type,
            severity=detected.severity,
            detected_by=detected_by,
            detected_at=now,
            updated_at=now,
        )

    existing.overlap_start = overlap.start
    existing.overlap_end = overlap.end
    existing.overlap_minutes = overlap.minutes
    existing.conflict_type = overlap.conflict_type
    existing.severity = detected.severity
    existing.updated_at = now
    return existing


class ConflictStateMachine:
    """Resolution lifecycle of a TimeBlockConflict."""

    TERMINAL = [
        ResolutionStatus.AUTO_RESOLVED,
        ResolutionStatus.USER_RESOLVED,
        ResolutionStatus.ACCEPTED,
        ResolutionStatus.IGNORED,
    ]

    TRANSITIONS: Dict[ResolutionStatus, List[ResolutionStatus]] = {
        ResolutionStatus.DETECTED: [ResolutionStatus.USER_NOTIFIED] + TERMINAL,
        ResolutionStatus.USER_NOTIFIED: list(TERMINAL),
        ResolutionStatus.AUTO_RESOLVED: [],
        ResolutionStatus.USER_RESOLVED: [],
        ResolutionStatus.ACCEPTED: [],
        ResolutionStatus.IGNORED: [],
    }

    def can_transition(self, conflict: TimeBlockConflict, new_status: ResolutionStatus) -> bool:
        """Check if a conflict can move to new_status."""
        return new_status in self.TRANSITIONS.get(conflict.resolution_status, [])

    def transition(
        self,
        conflict: TimeBlockConflict,
        new_status: ResolutionStatus,
        now: Optional[datetime] = None,
        details: Optional[ResolutionDetails] = None,
    ) -> TimeBlockConflict:
        """Move a conflict to new_status.

        Raises:
            InvalidTransition: If the transition is not allowed
        """
        if not self.can_transition(conflict, new_status):
            raise InvalidTransition(
                f"Cannot transition conflict {conflict.id} from "
                f"{conflict.resolution_status.value} to {new_status.value}"
            )
        conflict.resolution_status = new_status
        conflict.updated_at = now or datetime.now()
        if details is not None:
            conflict.resolution_details = details
        return conflict

    def notify(self, conflict: TimeBlockConflict, now: Optional[datetime] = None) -> TimeBlockConflict:
        return self.transition(conflict, ResolutionStatus.USER_NOTIFIED, now)

    def mark_auto_resolved(
        self,
        conflict: TimeBlockConflict,
        action: str,
        affected_tasks: List[str],
        message: str,
        now: Optional[datetime] = None,
    ) -> TimeBlockConflict:
        """Record a successful automatic resolution."""
        details = ResolutionDetails(
            action=action, affected_tasks=list(affected_tasks), success=True, message=message
        )
        conflict = self.transition(conflict, ResolutionStatus.AUTO_RESOLVED, now, details)
        conflict.resolution_attempt_count += 1
        conflict.last_resolution_attempt_at = conflict.updated_at
        return conflict

    def mark_user_resolved(
        self, conflict: TimeBlockConflict, message: str = "", now: Optional[datetime] = None
    ) -> TimeBlockConflict:
        details = ResolutionDetails(action="user_resolved", success=True, message=message)
        return self.transition(conflict, ResolutionStatus.USER_RESOLVED, now, details)

    def mark_accepted(
        self, conflict: TimeBlockConflict, reason: str = "", now: Optional[datetime] = None
    ) -> TimeBlockConflict:
        """User accepts the overlap as intentional."""
        details = ResolutionDetails(action="user_accepted", success=True, message=reason)
        return self.transition(conflict, ResolutionStatus.ACCEPTED, now, details)

    def mark_ignored(self, conflict: TimeBlockConflict, now: Optional[datetime] = None) -> TimeBlockConflict:
        details = ResolutionDetails(action="user_ignored", success=True, message="")
        return self.transition(conflict, ResolutionStatus.IGNORED, now, details)

    def record_failed_attempt(
        self, conflict: TimeBlockConflict, message: str, now: Optional[datetime] = None
    ) -> TimeBlockConflict:
        """Count a failed resolution attempt. The status is left as it was."""
        now = now or datetime.now()
        conflict.resolution_attempt_count += 1
        conflict.last_resolution_attempt_at = now
        conflict.updated_at = now
        conflict.resolution_details = ResolutionDetails(
            action="reschedule_attempt",
            affected_tasks=[conflict.task2_id],
            success=False,
            message=message,
        )
        return conflict
