"""Background sweep - periodic redistribution of overdue work.

Every interval, plans holding overdue tasks are redistributed one at a time
under their plan lock. Runs never overlap within a process.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from src.scheduler.models import AuditAction, PlanStatus, TriggeredBy

logger = logging.getLogger(__name__)

SWEEP_INTERVAL_MINUTES = 15
SWEEP_REASON = "background_sweep"


@dataclass
class SweepResult:
    """Outcome of one sweep over all plans."""

    started_at: datetime
    plans_checked: int = 0
    plans_redistributed: int = 0
    tasks_rescheduled: int = 0
    skipped_plans: List[str] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "started_at": self.started_at.isoformat(),
            "plans_checked": self.plans_checked,
            "plans_redistributed": self.plans_redistributed,
            "tasks_rescheduled": self.tasks_rescheduled,
            "skipped_plans": list(self.skipped_plans),
            "errors": list(self.errors),
        }


async def run_sweep_once(service, now: Optional[datetime] = None) -> SweepResult:
    """Redistribute overdue tasks of every active plan.

    A failure on one plan is logged and reported, and the sweep moves on
    to the next plan.

    Args:
        service: SchedulingService
        now: Sweep time, defaults to the service clock

    Returns:
        SweepResult
    """
    now = service.now(now)
    result = SweepResult(started_at=now)

    async with service.audit.track(AuditAction.SWEEP, None, None, TriggeredBy.BACKGROUND_JOB) as record:
        plan_ids = await service.tasks.plans_with_overdue(now)
        result.plans_checked = len(plan_ids)

        for plan_id in plan_ids:
            plan = await service.plans.get_plan(plan_id)
            if plan is None or plan.is_archived or plan.status not in (None, PlanStatus.ACTIVE):
                result.skipped_plans.append(plan_id)
                continue

            options = service.default_redistribution_options(
                reason=SWEEP_REASON,
                triggered_by=TriggeredBy.BACKGROUND_JOB,
            )
            try:
                outcome = await service.redistribute_missed(plan.owner_id, plan_id, options, now)
            except Exception as e:
                logger.exception(f"[Sweep] Redistribution failed for plan {plan_id}")
                result.errors.append({"plan_id": plan_id, "error": str(e)})
                continue

            if outcome.rescheduled_count:
                result.plans_redistributed += 1
                result.tasks_rescheduled += outcome.rescheduled_count

        record.details.update(result.to_dict())

    logger.info(
        f"[Sweep] Checked {result.plans_checked} plans, rescheduled "
        f"{result.tasks_rescheduled} tasks in {result.plans_redistributed} plans, "
        f"{len(result.errors)} errors"
    )
    return result


class SweepService:
    """Runs run_sweep_once on a fixed interval."""

    def __init__(self, service, interval_minutes: int = SWEEP_INTERVAL_MINUTES, enabled: bool = True):
        """Initialize the sweep.

        Args:
            service: SchedulingService
            interval_minutes: Minutes between sweeps
            enabled: Whether scheduled runs do any work
        """
        self.service = service
        self.interval_minutes = interval_minutes
        self.enabled = enabled
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self._last_run: Optional[datetime] = None
        self._last_result: Optional[SweepResult] = None

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    async def run_once(self, now: Optional[datetime] = None) -> Optional[SweepResult]:
        """Run one sweep, or return None when one is already in progress."""
        if self._lock.locked():
            logger.info("[Sweep] Previous sweep still running, skipping")
            return None
        async with self._lock:
            result = await run_sweep_once(self.service, now)
            self._last_run = result.started_at
            self._last_result = result
            return result

    async def _loop(self) -> None:
        while self._running:
            if self.enabled:
                try:
                    await self.run_once()
                except Exception:
                    logger.exception("[Sweep] Sweep failed")
            await asyncio.sleep(self.interval_minutes * 60)

    def start(self) -> None:
        """Schedule the sweep loop on the running event loop."""
        if self._task is not None and not self._task.done():
            logger.warning("[Sweep] Sweep loop already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(f"[Sweep] Started, interval {self.interval_minutes} minutes")

    async def stop(self) -> None:
        """Stop the loop and wait for it to exit."""
        self._running = False
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("[Sweep] Stopped")

    def enable(self) -> Dict[str, Any]:
        self.enabled = True
        return self.get_status()

    def disable(self) -> Dict[str, Any]:
        self.enabled = False
        return self.get_status()

    def get_status(self) -> Dict[str, Any]:
        """Enabled flag, interval, last and next run, last result."""
        next_run = None
        if self.enabled and self._running:
            base = self._last_run or self.service.now()
            next_run = (base + timedelta(minutes=self.interval_minutes)).isoformat()
        return {
            "enabled": self.enabled,
            "running": self._running,
            "in_progress": self.in_progress,
            "interval_minutes": self.interval_minutes,
            "last_run": self._last_run.isoformat() if self._last_run else None,
            "next_run": next_run,
            "last_result": self._last_result.to_dict() if self._last_result else None,
        }
