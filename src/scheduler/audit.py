"""Scheduling audit log: per-operation tracking and summary statistics."""

import logging
import time
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from src.scheduler.models import SchedulingLog, TriggeredBy

logger = logging.getLogger(__name__)


@dataclass
class AuditRecord:
    """Mutable scratch pad the tracked block fills in before the entry is written."""

    task_ids: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)
    plan_id: Optional[str] = None


class AuditLog:
    """Writes one SchedulingLog entry per tracked operation."""

    def __init__(self, store):
        """Initialize the audit log.

        Args:
            store: AuditLogStore to append entries to
        """
        self.store = store

    @asynccontextmanager
    async def track(
        self,
        action: str,
        user_id: Optional[str],
        plan_id: Optional[str] = None,
        triggered_by: TriggeredBy = TriggeredBy.API_ENDPOINT,
    ):
        """Record the outcome and duration of the enclosed block.

        A failure entry is written before the exception propagates. If that
        write fails too, it is logged and the original exception wins.

        Yields:
            AuditRecord to attach task ids and details to
        """
        record = AuditRecord(plan_id=plan_id)
        started = time.perf_counter()
        try:
            yield record
        except Exception as e:
            entry = self._entry(action, user_id, record, triggered_by, started, False, str(e))
            try:
                await self.store.append(entry)
            except Exception:
                logger.exception(f"[Audit] Failed to record failure of {action}")
            raise
        entry = self._entry(action, user_id, record, triggered_by, started, True, None)
        await self.store.append(entry)
        if entry.is_slow:
            logger.warning(f"[Audit] Slow {action} on plan {record.plan_id}: {entry.duration_ms:.0f}ms")

    @staticmethod
    def _entry(action, user_id, record, triggered_by, started, success, error) -> SchedulingLog:
        return SchedulingLog(
            user_id=user_id,
            plan_id=record.plan_id,
            action=action.value if hasattr(action, "value") else action,
            success=success,
            task_ids=tuple(record.task_ids),
            error_message=error,
            duration_ms=round((time.perf_counter() - started) * 1000, 3),
            details=dict(record.details),
            triggered_by=triggered_by,
        )

    # ==================== Statistics ====================

    async def plan_stats(self, plan_id: str) -> Dict[str, Any]:
        """Summary of everything that happened to a plan."""
        logs = await self.store.list_logs(plan_id=plan_id)
        actions = Counter(log.action for log in logs)
        return {
            "total_actions": len(logs),
            "successful_actions": sum(1 for log in logs if log.success),
            "failed_actions": sum(1 for log in logs if not log.success),
            "avg_duration_ms": _average(log.duration_ms for log in logs),
            "slow_actions_count": sum(1 for log in logs if log.is_slow),
            "action_breakdown": dict(actions),
        }

    async def user_stats(self, user_id: str) -> Dict[str, Any]:
        """Summary of a user's scheduling activity."""
        logs = await self.store.list_logs(user_id=user_id)
        successes = sum(1 for log in logs if log.success)
        return {
            "total_actions": len(logs),
            "success_rate": round(successes / len(logs) * 100, 1) if logs else 0.0,
            "avg_duration_ms": _average(log.duration_ms for log in logs),
            "plans_scheduled": len({log.plan_id for log in logs if log.plan_id}),
            "tasks_affected": sum(len(log.task_ids) for log in logs),
        }

    async def recent_failures(
        self, user_id: str, days: int = 7, now: Optional[datetime] = None
    ) -> List[SchedulingLog]:
        """Failed entries of the last `days` days, newest first."""
        since = (now or datetime.now()) - timedelta(days=days)
        return await self.store.list_logs(user_id=user_id, since=since, success=False)

    async def slow_actions(
        self, plan_id: Optional[str] = None, user_id: Optional[str] = None, limit: int = 20
    ) -> List[SchedulingLog]:
        """Slowest entries above the slow threshold."""
        logs = await self.store.list_logs(plan_id=plan_id, user_id=user_id)
        slow = sorted((log for log in logs if log.is_slow), key=lambda log: -log.duration_ms)
        return slow[:limit]


def _average(values) -> float:
    values = list(values)
    return round(sum(values) / len(values), 3) if values else 0.0
