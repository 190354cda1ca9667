"""Typed event channel for scheduler notifications.

The engine publishes events; delivery (notifications, websockets) belongs to
whoever consumes the sink.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SchedulerEvent:
    """Base class for published events."""

    name: ClassVar[str] = "scheduler.event"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        data["event"] = self.name
        return data


@dataclass(frozen=True)
class TasksRescheduled(SchedulerEvent):
    """Overdue tasks were moved into new windows."""

    name: ClassVar[str] = "tasks.rescheduled"

    user_id: str
    plan_id: str
    count: int
    task_ids: List[str] = field(default_factory=list)
    reason: str = ""
    run_id: Optional[str] = None
    occurred_at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class ExamPhaseChanged(SchedulerEvent):
    """A plan entered a new exam preparation phase."""

    name: ClassVar[str] = "exam.phase.changed"

    user_id: str
    plan_id: str
    old_phase: Optional[str]
    new_phase: str
    days_remaining: int
    description: str = ""
    occurred_at: datetime = field(default_factory=datetime.now)


class EventSink(ABC):
    """Destination for scheduler events."""

    @abstractmethod
    async def publish(self, event: SchedulerEvent) -> None:
        """Publish one event."""


class QueueEventSink(EventSink):
    """Puts events on an asyncio queue for an in-process consumer."""

    def __init__(self, maxsize: int = 0):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    async def publish(self, event: SchedulerEvent) -> None:
        await self.queue.put(event)

    def drain(self) -> List[SchedulerEvent]:
        """Return and remove everything currently queued."""
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events


class LoggingEventSink(EventSink):
    """Writes events to the log. Default when no consumer is wired."""

    async def publish(self, event: SchedulerEvent) -> None:
        logger.info(f"[Events] {event.name}: {event.to_dict()}")
