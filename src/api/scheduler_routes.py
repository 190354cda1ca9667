"""Scheduler API routes.

Provides endpoints for auto-scheduling, conflicts, task moves, missed-work
redistribution, exam strategy, scheduling modes, audit stats and the
background sweep. The caller is identified by the X-User-Id header.
"""

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from src.scheduler.errors import SchedulerError
from src.scheduler.models import ResolutionStatus, TriggeredBy, parse_datetime
from src.scheduler.service import SchedulingService
from src.scheduler.strategies import STRATEGIES, StrategyContext, describe_strategies
from src.state.sweep import SweepService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/scheduler", tags=["scheduler"])

DEFAULT_SYNC_TASK_LIMIT = 300


# Request models
class AutoScheduleRequest(BaseModel):
    """Request to auto-schedule a plan."""

    only_unscheduled: bool = False
    daily_hours: Optional[float] = Field(None, gt=0, le=24)
    max_tasks_per_day: Optional[int] = Field(None, ge=1)


class RescheduleRequest(BaseModel):
    """Request to move a task."""

    new_start: datetime
    reason: str = ""


class AcceptConflictRequest(BaseModel):
    """Request to accept an overlap as intentional."""

    reason: str = ""


class RedistributeRequest(BaseModel):
    """Request to redistribute overdue tasks."""

    reason: str = "missed_task"
    max_to_reschedule: Optional[int] = Field(None, ge=1)
    daily_hours_limit: Optional[float] = Field(None, gt=0, le=24)
    max_tasks_per_day: Optional[int] = Field(None, ge=1)


class StrategyRequest(BaseModel):
    """Per-run overrides for a scheduling mode."""

    available_hours: Optional[float] = Field(None, gt=0, le=24)
    max_tasks_per_day: Optional[int] = Field(None, ge=1)
    intensity_multiplier: Optional[float] = Field(None, gt=0)


class IntensityRequest(BaseModel):
    """Request to persist a phase's intensity on a plan."""

    phase: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: bool
    sweep_enabled: bool


# Service dependency - will be set by main.py
_service: Optional[SchedulingService] = None
_sweep: Optional[SweepService] = None
_sync_task_limit: int = DEFAULT_SYNC_TASK_LIMIT
_database_connected: bool = False


def set_service(
    service: SchedulingService,
    sweep: Optional[SweepService] = None,
    sync_task_limit: int = DEFAULT_SYNC_TASK_LIMIT,
    database_connected: bool = False,
) -> None:
    """Set the scheduling service (and sweep) for routes."""
    global _service, _sweep, _sync_task_limit, _database_connected
    _service = service
    _sweep = sweep
    _sync_task_limit = sync_task_limit
    _database_connected = database_connected


def get_service() -> SchedulingService:
    """Get the scheduling service."""
    if _service is None:
        raise HTTPException(status_code=503, detail="Scheduler not initialized")
    return _service


def get_sweep() -> SweepService:
    if _sweep is None:
        raise HTTPException(status_code=503, detail="Sweep not initialized")
    return _sweep


def current_user(x_user_id: Optional[str] = Header(None)) -> str:
    """Caller identity from the X-User-Id header."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="X-User-Id header required")
    return x_user_id


async def _call(awaitable: Awaitable[Any]) -> Any:
    """Await a service call, translating engine errors to HTTP errors."""
    try:
        return await awaitable
    except SchedulerError as e:
        if e.status_code >= 500:
            logger.error(f"[API] {type(e).__name__}: {e.message}")
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"[API] Unexpected error: {e}")
        raise HTTPException(status_code=500, detail=str(e))


async def _run_in_background(label: str, plan_id: str, operation: Callable[[], Awaitable[Any]]) -> None:
    try:
        await operation()
        logger.info(f"[API] Background {label} finished for plan {plan_id}")
    except Exception:
        logger.exception(f"[API] Background {label} failed for plan {plan_id}")


async def _offload_if_large(
    service: SchedulingService,
    background_tasks: BackgroundTasks,
    label: str,
    plan_id: str,
    operation: Callable[[], Awaitable[Any]],
) -> Optional[JSONResponse]:
    """Queue operation and return a 202 when the plan is over the sync limit."""
    count = await _call(service.plan_task_count(plan_id))
    if count <= _sync_task_limit:
        return None
    background_tasks.add_task(_run_in_background, label, plan_id, operation)
    logger.info(f"[API] Plan {plan_id} has {count} tasks, running {label} in background")
    return JSONResponse(
        status_code=202,
        content={"accepted": True, "plan_id": plan_id, "operation": label, "task_count": count},
    )


# ==================== Plans ====================

@router.post("/plans/{plan_id}/auto-schedule")
async def auto_schedule(
    plan_id: str,
    background_tasks: BackgroundTasks,
    request: Optional[AutoScheduleRequest] = None,
    user_id: str = Depends(current_user),
):
    """Pack the plan's pending tasks into time slots."""
    service = get_service()
    request = request or AutoScheduleRequest()
    await _call(service.get_owned_plan(user_id, plan_id))

    def operation():
        return service.auto_schedule(
            user_id,
            plan_id,
            only_unscheduled=request.only_unscheduled,
            daily_hours=request.daily_hours,
            max_tasks_per_day=request.max_tasks_per_day,
        )

    accepted = await _offload_if_large(service, background_tasks, "auto_schedule", plan_id, operation)
    if accepted is not None:
        return accepted
    result = await _call(operation())
    return {"success": True, **result.to_dict()}


@router.post("/plans/{plan_id}/conflicts/detect")
async def detect_conflicts(plan_id: str, user_id: str = Depends(current_user)):
    """Scan the plan for overlapping task windows."""
    service = get_service()
    conflicts = await _call(service.detect_conflicts(user_id, plan_id))
    return {"conflicts": [c.to_dict() for c in conflicts], "total": len(conflicts)}


@router.get("/plans/{plan_id}/conflicts")
async def list_conflicts(
    plan_id: str,
    status: Optional[str] = Query(None, description="Filter by resolution status"),
    user_id: str = Depends(current_user),
):
    """List conflict records of a plan."""
    service = get_service()
    resolution_status = None
    if status:
        try:
            resolution_status = ResolutionStatus(status)
        except ValueError:
            raise HTTPException(
                status_code=400,
                detail=f"Invalid status. Must be one of: {', '.join(s.value for s in ResolutionStatus)}",
            )
    conflicts = await _call(service.list_conflicts(user_id, plan_id, resolution_status))
    return {"conflicts": [c.to_dict() for c in conflicts], "total": len(conflicts)}


@router.post("/plans/{plan_id}/redistribute")
async def redistribute(
    plan_id: str,
    request: Optional[RedistributeRequest] = None,
    user_id: str = Depends(current_user),
):
    """Move overdue tasks of the plan into future slots."""
    service = get_service()
    request = request or RedistributeRequest()
    overrides: Dict[str, Any] = {"reason": request.reason, "triggered_by": TriggeredBy.API_ENDPOINT}
    if request.max_to_reschedule is not None:
        overrides["max_to_reschedule"] = request.max_to_reschedule
    if request.daily_hours_limit is not None:
        overrides["daily_hours_limit"] = request.daily_hours_limit
    if request.max_tasks_per_day is not None:
        overrides["max_tasks_per_day"] = request.max_tasks_per_day
    options = service.default_redistribution_options(**overrides)
    result = await _call(service.redistribute_missed(user_id, plan_id, options))
    return {"success": True, **result.to_dict()}


@router.get("/plans/{plan_id}/exam-strategy")
async def exam_strategy(plan_id: str, user_id: str = Depends(current_user)):
    """Current exam phase, intensity, advice and phase calendar."""
    service = get_service()
    return await _call(service.get_exam_strategy(user_id, plan_id))


@router.post("/plans/{plan_id}/exam-strategy/intensity")
async def adjust_intensity(plan_id: str, request: IntensityRequest, user_id: str = Depends(current_user)):
    """Persist the plan's daily hours scaled to a phase."""
    service = get_service()
    return await _call(service.adjust_plan_intensity(user_id, plan_id, request.phase))


@router.get("/strategies")
async def list_strategies():
    """Available scheduling modes."""
    service = get_service()
    return {"strategies": describe_strategies(service)}


@router.post("/plans/{plan_id}/strategy/{mode}")
async def execute_strategy(
    plan_id: str,
    mode: str,
    background_tasks: BackgroundTasks,
    request: Optional[StrategyRequest] = None,
    user_id: str = Depends(current_user),
):
    """Run a scheduling mode: balanced, adaptive, emergency or auto."""
    service = get_service()
    request = request or StrategyRequest()
    if mode != "auto" and mode not in STRATEGIES:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid mode. Must be one of: auto, {', '.join(STRATEGIES)}",
        )
    await _call(service.get_owned_plan(user_id, plan_id))
    context = StrategyContext(
        available_hours=request.available_hours,
        max_tasks_per_day=request.max_tasks_per_day,
        intensity_multiplier=request.intensity_multiplier,
    )

    def operation():
        return service.execute_strategy(user_id, plan_id, mode, context)

    accepted = await _offload_if_large(service, background_tasks, f"strategy:{mode}", plan_id, operation)
    if accepted is not None:
        return accepted
    return await _call(operation())


@router.get("/plans/{plan_id}/recommended-mode")
async def recommended_mode(plan_id: str, user_id: str = Depends(current_user)):
    """Mode the plan's metrics point to."""
    service = get_service()
    recommendation = await _call(service.recommend_mode(user_id, plan_id))
    return recommendation.to_dict()


@router.get("/plans/{plan_id}/audit/stats")
async def plan_audit_stats(plan_id: str, user_id: str = Depends(current_user)):
    service = get_service()
    return await _call(service.plan_audit_stats(user_id, plan_id))


@router.get("/plans/{plan_id}/audit/slow")
async def plan_slow_actions(plan_id: str, user_id: str = Depends(current_user)):
    """Audited actions of the plan that took longer than a second."""
    service = get_service()
    entries = await _call(service.slow_actions(user_id, plan_id))
    return {"entries": [e.to_dict() for e in entries], "total": len(entries)}


# ==================== Conflicts ====================

@router.post("/conflicts/{conflict_id}/resolve")
async def resolve_conflict(conflict_id: str, user_id: str = Depends(current_user)):
    """Move the later task of a conflict to the best free slot."""
    service = get_service()
    return await _call(service.resolve_conflict(user_id, conflict_id))


@router.post("/conflicts/{conflict_id}/accept")
async def accept_conflict(
    conflict_id: str,
    request: Optional[AcceptConflictRequest] = None,
    user_id: str = Depends(current_user),
):
    service = get_service()
    reason = request.reason if request else ""
    conflict = await _call(service.accept_conflict(user_id, conflict_id, reason))
    return conflict.to_dict()


@router.post("/conflicts/{conflict_id}/ignore")
async def ignore_conflict(conflict_id: str, user_id: str = Depends(current_user)):
    service = get_service()
    conflict = await _call(service.ignore_conflict(user_id, conflict_id))
    return conflict.to_dict()


# ==================== Tasks ====================

@router.post("/tasks/{task_id}/reschedule")
async def reschedule_task(task_id: str, request: RescheduleRequest, user_id: str = Depends(current_user)):
    """Move a task to a new start time, keeping its duration."""
    service = get_service()
    task = await _call(
        service.reschedule_task(user_id, task_id, parse_datetime(request.new_start), request.reason)
    )
    return {"success": True, "task": task.to_dict()}


@router.get("/tasks/{task_id}/suggestions")
async def suggestions(
    task_id: str,
    limit: int = Query(5, ge=1, le=50, description="Maximum suggestions"),
    user_id: str = Depends(current_user),
):
    """Best free windows for a task."""
    service = get_service()
    runs: List[Dict[str, Any]] = await _call(service.suggest_time_slots(user_id, task_id, limit))
    return {
        "task_id": task_id,
        "suggestions": [
            {"start": r["start"].isoformat(), "end": r["end"].isoformat(), "score": r["score"]}
            for r in runs
        ],
    }


@router.post("/tasks/{task_id}/missed")
async def missed_task(task_id: str, user_id: str = Depends(current_user)):
    """Skip a missed task and re-pack its plan."""
    service = get_service()
    result = await _call(service.handle_missed_task(user_id, task_id))
    return {"success": True, **result.to_dict()}


# ==================== Users ====================

@router.get("/users/{target_user_id}/audit/stats")
async def user_audit_stats(target_user_id: str, user_id: str = Depends(current_user)):
    if target_user_id != user_id:
        raise HTTPException(status_code=403, detail="Cannot read another user's audit stats")
    service = get_service()
    return await _call(service.user_audit_stats(user_id))


@router.get("/users/{target_user_id}/audit/failures")
async def user_failures(
    target_user_id: str,
    days: int = Query(7, ge=1, le=90),
    user_id: str = Depends(current_user),
):
    """Failed audited actions of the last few days."""
    if target_user_id != user_id:
        raise HTTPException(status_code=403, detail="Cannot read another user's audit log")
    service = get_service()
    entries = await _call(service.recent_failures(user_id, days))
    return {"entries": [e.to_dict() for e in entries], "total": len(entries)}


# ==================== Sweep ====================

@router.get("/sweep/status")
async def sweep_status():
    """Background sweep status."""
    return get_sweep().get_status()


@router.post("/sweep/run")
async def sweep_run():
    """Run one sweep now."""
    sweep = get_sweep()
    result = await _call(sweep.run_once())
    if result is None:
        return {"success": False, "skipped": True, "reason": "sweep already in progress"}
    return {"success": True, **result.to_dict()}


@router.post("/sweep/enable")
async def sweep_enable():
    return get_sweep().enable()


@router.post("/sweep/disable")
async def sweep_disable():
    return get_sweep().disable()


@router.get("/health", response_model=HealthResponse)
async def health():
    """Health check endpoint."""
    get_service()
    return HealthResponse(
        status="healthy",
        database=_database_connected,
        sweep_enabled=bool(_sweep and _sweep.enabled),
    )
