# routers/reports.py — Reports, scheduled runs, executions and export downloads
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import errors
from auth import require_permission, CurrentUser
from database import get_db_session
from models import (
    DeliveryMethod, Report, ReportExecution, ReportSchedule, ScheduleFrequency, iso,
)
from report_scheduler import ReportScheduler, get_scheduler, schedule_cron
from report_service import ReportService

router = APIRouter(prefix="/api/v1/reports", tags=["Reports"])


# ============================================================
# SCHEMAS
# ============================================================

class ReportCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=300)
    description: Optional[str] = None
    report_type: str = "table"
    config: dict = {}
    visualization: dict = {}
    custom_query: Optional[str] = None
    parameters: dict = {}
    timeout_seconds: int = Field(60, ge=1, le=600)
    cache_duration_minutes: int = Field(15, ge=0)


class ReportRun(BaseModel):
    parameters: dict = {}


class ScheduleCreate(BaseModel):
    report_id: str
    name: str = Field(..., min_length=1, max_length=300)
    description: Optional[str] = None
    frequency: ScheduleFrequency
    cron_expression: Optional[str] = None
    run_at: str = "09:00:00"
    day_of_week: Optional[int] = None
    day_of_month: Optional[int] = None
    timezone: str = "UTC"
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    parameters: dict = {}
    export_format: str = "csv"
    delivery_method: DeliveryMethod = DeliveryMethod.DOWNLOAD
    delivery_config: dict = {}
    is_active: bool = True


class ScheduleUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    frequency: Optional[ScheduleFrequency] = None
    cron_expression: Optional[str] = None
    run_at: Optional[str] = None
    day_of_week: Optional[int] = None
    day_of_month: Optional[int] = None
    timezone: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    parameters: Optional[dict] = None
    export_format: Optional[str] = None
    delivery_method: Optional[DeliveryMethod] = None
    delivery_config: Optional[dict] = None
    is_active: Optional[bool] = None


def _report_to_out(r: Report) -> dict:
    return {
        "id": r.id,
        "name": r.name,
        "description": r.description,
        "reportType": r.report_type,
        "config": r.config or {},
        "hasCustomQuery": bool(r.custom_query),
        "parameters": r.parameters or {},
        "timeoutSeconds": r.timeout_seconds,
        "cacheDurationMinutes": r.cache_duration_minutes,
        "executionCount": r.execution_count,
        "lastExecutedAt": iso(r.last_executed_at),
        "createdAt": iso(r.created_at),
    }


def _schedule_to_out(s: ReportSchedule, registered: bool = False) -> dict:
    return {
        "id": s.id,
        "reportId": s.report_id,
        "name": s.name,
        "description": s.description,
        "frequency": s.frequency.value,
        "cronExpression": schedule_cron(s),
        "runAt": s.run_at,
        "dayOfWeek": s.day_of_week,
        "dayOfMonth": s.day_of_month,
        "timezone": s.timezone,
        "startDate": iso(s.start_date),
        "endDate": iso(s.end_date),
        "parameters": s.parameters or {},
        "exportFormat": s.export_format,
        "deliveryMethod": s.delivery_method.value,
        "isActive": bool(s.is_active),
        "registered": registered,
        "executionCount": s.execution_count,
        "failureCount": s.failure_count,
        "lastRunAt": iso(s.last_run_at),
        "nextRunAt": iso(s.next_run_at),
        "lastError": s.last_error,
        "createdBy": s.created_by,
        "createdAt": iso(s.created_at),
    }


def _execution_to_out(e: ReportExecution) -> dict:
    return {
        "id": e.id,
        "reportId": e.report_id,
        "scheduleId": e.schedule_id,
        "executedBy": e.executed_by,
        "status": e.status.value,
        "startedAt": iso(e.started_at),
        "completedAt": iso(e.completed_at),
        "durationMs": e.duration_ms,
        "rowCount": e.row_count,
        "resultSize": e.result_size,
        "cacheHit": bool(e.cache_hit),
        "errorMessage": e.error_message,
        "exportFormat": e.export_format,
        "exportUrl": e.export_url,
        "exportExpiresAt": iso(e.export_expires_at),
        "deliveryMethod": e.delivery_method.value if e.delivery_method else None,
        "deliveryStatus": e.delivery_status.value if e.delivery_status else None,
        "deliveredAt": iso(e.delivered_at),
        "deliveryError": e.delivery_error,
    }


# ============================================================
# SCHEDULES
# ============================================================

@router.post("/schedules", status_code=201)
async def create_schedule(
    req: ScheduleCreate,
    user: CurrentUser = Depends(require_permission("reports:write")),
    db: AsyncSession = Depends(get_db_session),
    scheduler: ReportScheduler = Depends(get_scheduler),
):
    schedule = await scheduler.create_schedule(db, user.id, req.model_dump())
    return {"success": True, "data": _schedule_to_out(schedule, scheduler.is_registered(schedule.id))}


@router.get("/schedules")
async def list_schedules(
    report_id: Optional[str] = None,
    user: CurrentUser = Depends(require_permission("reports:read")),
    db: AsyncSession = Depends(get_db_session),
    scheduler: ReportScheduler = Depends(get_scheduler),
):
    schedules = await scheduler.list_schedules(db, user.id, report_id=report_id)
    return {"success": True, "data": [_schedule_to_out(s, scheduler.is_registered(s.id)) for s in schedules]}


@router.patch("/schedules/{schedule_id}")
async def update_schedule(
    schedule_id: str,
    req: ScheduleUpdate,
    user: CurrentUser = Depends(require_permission("reports:write")),
    db: AsyncSession = Depends(get_db_session),
    scheduler: ReportScheduler = Depends(get_scheduler),
):
    schedule = await scheduler.update_schedule(db, schedule_id, user.id, req.model_dump(exclude_unset=True))
    return {"success": True, "data": _schedule_to_out(schedule, scheduler.is_registered(schedule.id))}


@router.post("/schedules/{schedule_id}/toggle")
async def toggle_schedule(
    schedule_id: str,
    user: CurrentUser = Depends(require_permission("reports:write")),
    db: AsyncSession = Depends(get_db_session),
    scheduler: ReportScheduler = Depends(get_scheduler),
):
    schedule = await scheduler.toggle_schedule(db, schedule_id, user.id)
    return {"success": True, "data": _schedule_to_out(schedule, scheduler.is_registered(schedule.id))}


@router.delete("/schedules/{schedule_id}")
async def delete_schedule(
    schedule_id: str,
    user: CurrentUser = Depends(require_permission("reports:write")),
    db: AsyncSession = Depends(get_db_session),
    scheduler: ReportScheduler = Depends(get_scheduler),
):
    await scheduler.delete_schedule(db, schedule_id, user.id)
    return {"success": True, "message": "Schedule deleted"}


@router.post("/schedules/{schedule_id}/run")
async def run_schedule_now(
    schedule_id: str,
    user: CurrentUser = Depends(require_permission("reports:write")),
    db: AsyncSession = Depends(get_db_session),
    scheduler: ReportScheduler = Depends(get_scheduler),
):
    """Fire a schedule immediately; the regular cadence is unaffected"""
    schedule = await scheduler.get_owned_schedule(db, schedule_id, user.id)
    failures_before = schedule.failure_count or 0
    await scheduler.execute_schedule(schedule_id)

    await db.refresh(schedule)
    latest = await ReportService(db).list_executions(schedule_id=schedule_id, limit=1)
    return {
        "success": (schedule.failure_count or 0) == failures_before,
        "data": {
            "execution": _execution_to_out(latest[0]) if latest else None,
            "schedule": _schedule_to_out(schedule, scheduler.is_registered(schedule_id)),
        },
    }


# ============================================================
# EXECUTIONS & EXPORTS
# ============================================================

@router.get("/executions")
async def list_executions(
    report_id: Optional[str] = None,
    schedule_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    user: CurrentUser = Depends(require_permission("reports:read")),
    db: AsyncSession = Depends(get_db_session),
):
    executions = await ReportService(db).list_executions(report_id=report_id, schedule_id=schedule_id, limit=limit)
    return {"success": True, "data": [_execution_to_out(e) for e in executions]}


@router.get("/exports/{filename}")
async def download_export(
    filename: str,
    user: CurrentUser = Depends(require_permission("reports:read")),
    scheduler: ReportScheduler = Depends(get_scheduler),
):
    path = scheduler.exporter.resolve(filename)
    media_type = "text/csv" if path.suffix == ".csv" else "application/json"
    return FileResponse(path, media_type=media_type, filename=path.name)


@router.post("/exports/cleanup")
async def cleanup_exports(
    user: CurrentUser = Depends(require_permission("reports:admin")),
    db: AsyncSession = Depends(get_db_session),
    scheduler: ReportScheduler = Depends(get_scheduler),
):
    removed = await scheduler.exporter.cleanup_expired(db)
    return {"success": True, "data": {"removed": removed}}


# ============================================================
# REPORTS
# ============================================================

@router.post("", status_code=201)
async def create_report(
    req: ReportCreate,
    user: CurrentUser = Depends(require_permission("reports:write")),
    db: AsyncSession = Depends(get_db_session),
):
    if req.custom_query and not user.is_admin:
        raise errors.ForbiddenError("Custom SQL reports require an administrator")
    report = Report(owner_id=user.id, **req.model_dump())
    db.add(report)
    await db.commit()
    return {"success": True, "data": _report_to_out(report)}


@router.get("")
async def list_reports(
    user: CurrentUser = Depends(require_permission("reports:read")),
    db: AsyncSession = Depends(get_db_session),
):
    result = await db.execute(
        select(Report).where(Report.deleted_at.is_(None)).order_by(Report.created_at.desc())
    )
    return {"success": True, "data": [_report_to_out(r) for r in result.scalars().all()]}


@router.get("/{report_id}")
async def get_report(
    report_id: str,
    user: CurrentUser = Depends(require_permission("reports:read")),
    db: AsyncSession = Depends(get_db_session),
):
    report = await ReportService(db).get_report(report_id)
    return {"success": True, "data": _report_to_out(report)}


@router.post("/{report_id}/run")
async def run_report(
    report_id: str,
    req: ReportRun,
    user: CurrentUser = Depends(require_permission("reports:read")),
    db: AsyncSession = Depends(get_db_session),
):
    execution, result = await ReportService(db).execute_report(report_id, user, req.parameters)
    return {"success": True, "data": {"execution": _execution_to_out(execution), "result": result}}
