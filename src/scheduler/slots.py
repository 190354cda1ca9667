"""Slot generator.

Turns a plan's date range and daily budget into 30-minute candidate windows.
Slots carry no identity across runs; they are regenerated every time.
"""

import logging
import math
from dataclasses import replace
from datetime import date, datetime, timedelta
from typing import Any, Iterable, Iterator, List, Optional, Sequence, Tuple

from src.scheduler.errors import ValidationError
from src.scheduler.models import SLOT_MINUTES, TimeSlot, Window, days_until

logger = logging.getLogger(__name__)

# Named time-of-day buckets as [start, end) minutes from midnight
TIME_OF_DAY_BUCKETS = {
    "morning": (8 * 60, 12 * 60),
    "afternoon": (13 * 60, 17 * 60),
    "evening": (18 * 60, 22 * 60),
    "night": (22 * 60, 24 * 60),
}

DEFAULT_BLOCKS = [
    {"start": "08:00", "end": "12:00"},
    {"start": "14:00", "end": "18:00"},
]

DEFAULT_REDISTRIBUTION_BUCKETS = ["morning", "afternoon", "evening"]

Block = Tuple[int, int, Optional[str]]


def parse_hhmm(value: str) -> int:
    """Parse "HH:MM" into minutes from midnight. "24:00" is allowed."""
    try:
        hours, minutes = (int(part) for part in str(value).split(":"))
    except ValueError:
        raise ValidationError(f"Invalid time of day: {value!r}")
    total = hours * 60 + minutes
    if not 0 <= minutes < 60 or not 0 <= total <= 24 * 60:
        raise ValidationError(f"Invalid time of day: {value!r}")
    return total


def resolve_blocks(preferred: Optional[Sequence[Any]]) -> List[Block]:
    """Resolve preferred time blocks into (start_min, end_min, bucket) triples.

    Accepts bucket names ("morning") and explicit {"start", "end"} dicts.
    Unknown bucket names are ignored. Falls back to the default blocks when
    nothing usable is given.
    """
    blocks: List[Block] = []
    for item in preferred or []:
        if isinstance(item, str):
            bounds = TIME_OF_DAY_BUCKETS.get(item)
            if bounds is None:
                logger.warning(f"[Slots] Ignoring unknown time-of-day bucket: {item}")
                continue
            blocks.append((bounds[0], bounds[1], item))
        elif isinstance(item, dict):
            start, end = parse_hhmm(item["start"]), parse_hhmm(item["end"])
            if end <= start:
                raise ValidationError(f"Time block ends before it starts: {item}")
            blocks.append((start, end, bucket_for_minute(start)))
        else:
            raise ValidationError(f"Unsupported time block: {item!r}")

    if not blocks:
        return resolve_blocks(DEFAULT_BLOCKS)
    return blocks


def bucket_for_minute(minute: int) -> Optional[str]:
    for name, (start, end) in TIME_OF_DAY_BUCKETS.items():
        if start <= minute < end:
            return name
    return None


def bucket_for(moment: datetime) -> Optional[str]:
    """Name of the time-of-day bucket containing moment, if any."""
    return bucket_for_minute(moment.hour * 60 + moment.minute)


def daily_quota(daily_hours: float, slot_minutes: int = SLOT_MINUTES) -> int:
    """Number of slots a day may offer."""
    return int(math.floor(daily_hours * 60 / slot_minutes))


def _days(first: date, last: date) -> Iterator[date]:
    current = first
    while current <= last:
        yield current
        current += timedelta(days=1)


def generate_slots(
    start: datetime,
    end: datetime,
    daily_hours: float,
    preferred_blocks: Optional[Sequence[Any]] = None,
    now: Optional[datetime] = None,
    exclude_past: bool = False,
    slot_minutes: int = SLOT_MINUTES,
) -> List[TimeSlot]:
    """Emit consecutive slots inside the preferred blocks of every day.

    Each day stops at floor(daily_hours*60/slot_minutes) slots or when its
    blocks run out. Past slots are dropped without using up quota when
    exclude_past is set.

    Args:
        start: First day of the range (time of day ignored)
        end: Last day of the range, inclusive
        daily_hours: Study budget per day
        preferred_blocks: Bucket names or {"start", "end"} dicts
        now: Reference time for exclude_past
        exclude_past: Skip slots starting before now

    Returns:
        Slots in day order, then block order
    """
    if daily_hours is None or daily_hours <= 0:
        raise ValidationError(f"daily_hours must be positive, got {daily_hours!r}")
    if end < start:
        raise ValidationError("Plan end date is before its start date")

    now = now or datetime.now()
    quota = daily_quota(daily_hours, slot_minutes)
    blocks = resolve_blocks(preferred_blocks)
    step = timedelta(minutes=slot_minutes)
    slots: List[TimeSlot] = []

    for day in _days(start.date(), end.date()):
        midnight = datetime.combine(day, datetime.min.time())
        emitted = 0
        for block_start, block_end, bucket in blocks:
            minute = block_start
            while minute + slot_minutes <= block_end and emitted < quota:
                slot_start = midnight + timedelta(minutes=minute)
                minute += slot_minutes
                if exclude_past and slot_start < now:
                    continue
                slots.append(TimeSlot(start=slot_start, end=slot_start + step, bucket=bucket))
                emitted += 1
            if emitted >= quota:
                break

    return slots


def generate_future_slots(
    now: datetime,
    plan_end: Optional[datetime],
    buckets: Optional[Sequence[str]],
    busy_windows: Iterable[Window],
    optimal_bucket: Optional[str] = None,
    lookahead_days: int = 30,
    slot_minutes: int = SLOT_MINUTES,
) -> List[TimeSlot]:
    """Candidate slots for redistribution, starting today.

    Looks ahead min(days until plan end, lookahead_days) days over the named
    buckets, skipping past slots and anything overlapping busy_windows.
    Slots in optimal_bucket are flagged optimal_for_user.
    """
    days = lookahead_days
    if plan_end is not None:
        days = min(days_until(plan_end, now), lookahead_days)
    if days <= 0:
        return []

    names = [name for name in (buckets or []) if name in TIME_OF_DAY_BUCKETS]
    if not names:
        names = list(DEFAULT_REDISTRIBUTION_BUCKETS)

    busy = list(busy_windows)
    step = timedelta(minutes=slot_minutes)
    slots: List[TimeSlot] = []

    for offset in range(days):
        midnight = datetime.combine(now.date() + timedelta(days=offset), datetime.min.time())
        for name in names:
            block_start, block_end = TIME_OF_DAY_BUCKETS[name]
            for minute in range(block_start, block_end - slot_minutes + 1, slot_minutes):
                slot_start = midnight + timedelta(minutes=minute)
                slot_end = slot_start + step
                if slot_start < now:
                    continue
                if any(w.overlaps(slot_start, slot_end) for w in busy):
                    continue
                slots.append(
                    TimeSlot(
                        start=slot_start,
                        end=slot_end,
                        bucket=name,
                        optimal_for_user=optimal_bucket is not None and name == optimal_bucket,
                    )
                )

    return slots


def mark_busy(slots: Sequence[TimeSlot], busy_windows: Iterable[Window]) -> List[TimeSlot]:
    """Copy of slots with any slot overlapping a busy window made unavailable."""
    busy = list(busy_windows)
    return [
        replace(slot, available=False)
        if slot.available and any(w.overlaps(slot.start, slot.end) for w in busy)
        else replace(slot)
        for slot in slots
    ]


def score_slot(start: datetime) -> int:
    """Preference score of a slot start: morning > afternoon > evening > other."""
    hour = start.hour
    if 8 <= hour < 12:
        return 10
    if 14 <= hour < 18:
        return 8
    if 18 <= hour < 21:
        return 6
    return 4


def is_contiguous(run: Sequence[TimeSlot]) -> bool:
    """True if every slot ends exactly where the next one starts."""
    return all(a.end == b.start for a, b in zip(run, run[1:]))


def find_runs(
    slots: Sequence[TimeSlot],
    required: int,
    used: Optional[set] = None,
) -> Iterator[Tuple[int, List[TimeSlot]]]:
    """Yield (index, run) for every temporally contiguous free run.

    A run is `required` consecutive slots in list order that are available,
    not in `used` (a set of slot indexes) and back-to-back in time.
    """
    used = used or set()
    for i in range(len(slots) - required + 1):
        run = slots[i:i + required]
        if any(not s.available or s.task_id for s in run):
            continue
        if any(i + k in used for k in range(required)):
            continue
        if is_contiguous(run):
            yield i, list(run)
