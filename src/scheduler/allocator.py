"""First-fit-decreasing allocator.

Longest tasks pick first; each takes the first contiguous run of free slots
long enough for its duration rounded up to the slot grid.
"""

import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set

from src.scheduler.models import SLOT_MINUTES, StudyTask, TimeSlot, Window, window_for_run
from src.scheduler.slots import find_runs

logger = logging.getLogger(__name__)

DEFAULT_DURATION = 60


@dataclass
class AllocationResult:
    """Outcome of one allocation pass. Unplaceable tasks are data, not errors."""

    allocated: Dict[str, Window] = field(default_factory=dict)
    unallocated: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "allocated": {task_id: w.to_dict() for task_id, w in self.allocated.items()},
            "unallocated": list(self.unallocated),
        }


def required_slots(duration: Optional[int], slot_minutes: int = SLOT_MINUTES) -> int:
    return max(1, math.ceil((duration or DEFAULT_DURATION) / slot_minutes))


def ffd_order(tasks: Sequence[StudyTask]) -> List[StudyTask]:
    """Duration descending; equal durations in task id order."""
    return sorted(tasks, key=lambda t: (-(t.duration or DEFAULT_DURATION), t.id))


def allocate(
    tasks: Sequence[StudyTask],
    slots: Sequence[TimeSlot],
    max_per_day: Optional[int] = None,
    slot_minutes: int = SLOT_MINUTES,
) -> AllocationResult:
    """Pack tasks into slots.

    The slots passed in are left untouched; occupancy is tracked locally.

    Args:
        tasks: Tasks to place
        slots: Candidate slots, as produced by the slot generator
        max_per_day: Optional cap on tasks placed per calendar day

    Returns:
        AllocationResult with a window per placed task
    """
    result = AllocationResult()
    used: Set[int] = set()
    per_day: Counter = Counter()

    for task in ffd_order(tasks):
        needed = required_slots(task.duration, slot_minutes)
        placed = next(
            (
                (index, run) for index, run in find_runs(slots, needed, used)
                if max_per_day is None or per_day[run[0].day] < max_per_day
            ),
            None,
        )
        if placed is None:
            result.unallocated.append(task.id)
            continue

        index, run = placed
        used.update(range(index, index + needed))
        per_day[run[0].day] += 1
        result.allocated[task.id] = window_for_run(run)

    if result.unallocated:
        logger.info(
            f"[Allocator] Placed {len(result.allocated)} tasks, "
            f"{len(result.unallocated)} did not fit"
        )
    return result
