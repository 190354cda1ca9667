"""Tests for scheduler data models and task transitions."""

from datetime import datetime, timedelta, timezone

import pytest

from src.scheduler.errors import InvalidTransition
from src.scheduler.models import (
    SchedulingLog,
    StudyPlan,
    StudyTask,
    TaskStatus,
    Window,
    assign_window,
    complete,
    days_until,
    mark_skipped,
    pair_key,
    parse_datetime,
    reschedule,
    start,
    transition,
)

NOW = datetime(2025, 3, 3, 7, 0)


def task(**overrides) -> StudyTask:
    values = dict(id="T1", plan_id="PLAN-1", owner_id="user-1", title="Eigenvalues")
    values.update(overrides)
    return StudyTask(**values)


class TestTaskTransitions:
    """Tests for the task status state machine."""

    def test_pending_to_in_progress(self):
        assert start(task()).status == TaskStatus.IN_PROGRESS

    def test_complete_sets_completed_at(self):
        done = complete(task(), NOW)

        assert done.status == TaskStatus.COMPLETED
        assert done.completed_at == NOW

    @pytest.mark.parametrize("terminal", [TaskStatus.COMPLETED, TaskStatus.SKIPPED])
    def test_terminal_status_is_final(self, terminal):
        """Completed and skipped tasks accept no further transitions."""
        finished = task(status=terminal)

        for target in TaskStatus:
            with pytest.raises(InvalidTransition):
                transition(finished, target)

    def test_transition_returns_new_value(self):
        original = task()
        moved = transition(original, TaskStatus.RESCHEDULED)

        assert original.status == TaskStatus.PENDING
        assert moved.status == TaskStatus.RESCHEDULED


class TestReschedule:
    """Tests for reschedule() and the reschedule history."""

    def test_appends_history_entry(self):
        original = task(window_start=datetime(2025, 3, 1, 9), window_end=datetime(2025, 3, 1, 10))
        new_start = datetime(2025, 3, 4, 9)

        moved = reschedule(original, new_start, new_start + timedelta(hours=1), "missed", NOW)

        assert moved.status == TaskStatus.RESCHEDULED
        assert moved.reschedule_count == 1
        assert moved.is_rescheduled is True
        assert moved.rescheduled_reason == "missed"
        entry = moved.reschedule_history[-1]
        assert entry.old_start == datetime(2025, 3, 1, 9)
        assert entry.new_start == new_start
        assert original.reschedule_history == ()

    def test_redistribution_keeps_task_pending(self):
        new_start = datetime(2025, 3, 4, 9)

        moved = reschedule(
            task(), new_start, new_start + timedelta(hours=1), "missed_task", NOW,
            run_id="RUN-1", status=TaskStatus.PENDING,
        )

        assert moved.status == TaskStatus.PENDING
        assert moved.has_run("RUN-1")
        assert not moved.has_run("RUN-2")

    def test_cannot_reschedule_completed_task(self):
        with pytest.raises(InvalidTransition):
            reschedule(task(status=TaskStatus.COMPLETED), NOW, NOW + timedelta(hours=1), "x", NOW)

    def test_cannot_assign_window_to_skipped_task(self):
        with pytest.raises(InvalidTransition):
            assign_window(task(status=TaskStatus.SKIPPED), NOW, NOW + timedelta(hours=1), NOW)

    def test_mark_skipped_records_old_window(self):
        scheduled = task(window_start=datetime(2025, 3, 2, 9), window_end=datetime(2025, 3, 2, 10))

        skipped = mark_skipped(scheduled, "missed", NOW, triggered_by="user")

        assert skipped.status == TaskStatus.SKIPPED
        assert skipped.reschedule_history[-1].old_start == datetime(2025, 3, 2, 9)
        assert skipped.reschedule_history[-1].new_start is None


class TestTaskProperties:
    """Tests for derived task properties."""

    @pytest.mark.parametrize("duration,slots", [(30, 1), (45, 2), (60, 2), (90, 3), (None, 1)])
    def test_required_slots(self, duration, slots):
        assert task(duration=duration).required_slots == slots

    def test_is_overdue(self):
        past = task(window_start=datetime(2025, 3, 2, 9), window_end=datetime(2025, 3, 2, 10))

        assert past.is_overdue(NOW)
        assert not past.is_overdue(datetime(2025, 3, 1))
        assert not complete(past, NOW).is_overdue(NOW)

    def test_unscheduled_task_is_never_overdue(self):
        assert not task().is_overdue(NOW)

    def test_from_dict_keeps_history(self):
        moved = reschedule(task(), NOW, NOW + timedelta(hours=1), "manual", NOW, run_id="RUN-9")

        restored = StudyTask.from_dict(moved.to_dict())

        assert restored.reschedule_history == moved.reschedule_history
        assert restored.status == TaskStatus.RESCHEDULED


class TestHelpers:
    """Tests for small model helpers."""

    def test_parse_datetime_drops_timezone(self):
        parsed = parse_datetime(datetime(2025, 3, 3, 9, tzinfo=timezone.utc))

        assert parsed.tzinfo is None

    def test_parse_datetime_from_date_string(self):
        assert parse_datetime("2025-03-03") == datetime(2025, 3, 3)
        assert parse_datetime(None) is None
        assert parse_datetime("") is None

    def test_days_until_rounds_up(self):
        assert days_until(NOW + timedelta(hours=1), NOW) == 1
        assert days_until(NOW + timedelta(days=5), NOW) == 5
        assert days_until(NOW - timedelta(days=2), NOW) == -2

    def test_pair_key_is_order_independent(self):
        assert pair_key("T2", "T1") == pair_key("T1", "T2") == ("T1", "T2")

    def test_window_overlap_is_half_open(self):
        window = Window(datetime(2025, 3, 3, 9), datetime(2025, 3, 3, 10))

        assert window.overlaps(datetime(2025, 3, 3, 9, 30), datetime(2025, 3, 3, 11))
        assert not window.overlaps(datetime(2025, 3, 3, 10), datetime(2025, 3, 3, 11))
        assert window.minutes == 60

    def test_slow_log_threshold(self):
        assert SchedulingLog("u", "p", "auto_schedule", True, duration_ms=1500).is_slow
        assert not SchedulingLog("u", "p", "auto_schedule", True, duration_ms=1000).is_slow

    def test_plan_from_dict_tolerates_missing_fields(self):
        plan = StudyPlan.from_dict({"id": "PLAN-1", "owner_id": "user-1"})

        assert plan.daily_study_hours is None
        assert plan.status is None
        assert plan.version == 0
