# report_scheduler.py — Cron-driven report schedules on the event loop
"""
Each active schedule is an ``asyncio.Task`` that sleeps until its next fire
time (computed with croniter in the schedule's timezone), runs the report,
exports it and delivers the export. The registry maps schedule id to task.

A failed fire bumps ``failure_count`` and records ``last_error``; the job keeps
its normal cadence. ``shutdown()`` cancels every sleeping job while fires
already in progress run to completion.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

import errors
from auth import to_current_user
from database import async_session_maker
from models import (
    DeliveryMethod, DeliveryStatus, Report, ReportExecution, ReportSchedule, ScheduleFrequency, User,
    as_utc, utcnow,
)
from report_delivery import ReportDelivery
from report_exports import EXPORT_FORMATS, ReportExporter
from report_service import ReportService

logger = logging.getLogger("exprsn.scheduler")

CLEANUP_JOB_ID = "__export_cleanup__"
CLEANUP_CRON = "0 2 * * *"
DEFAULT_RUN_AT = "09:00:00"

SCHEDULE_FIELDS = {
    "name", "description", "frequency", "cron_expression", "run_at", "day_of_week", "day_of_month",
    "timezone", "start_date", "end_date", "parameters", "export_format", "delivery_method",
    "delivery_config", "is_active",
}


# ============================================================
# CRON SYNTHESIS
# ============================================================

def parse_run_at(run_at: Optional[str]) -> Tuple[int, int]:
    parts = (run_at or DEFAULT_RUN_AT).split(":")
    try:
        hour, minute = int(parts[0]), int(parts[1])
    except (IndexError, ValueError):
        raise errors.ValidationError(f"Invalid runAt time: {run_at!r}")
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise errors.ValidationError(f"Invalid runAt time: {run_at!r}")
    return hour, minute


def build_cron_expression(
    frequency,
    run_at: Optional[str] = None,
    day_of_week: Optional[int] = None,
    day_of_month: Optional[int] = None,
    cron_expression: Optional[str] = None,
) -> Optional[str]:
    """5-field expression for a frequency; None for one-shot schedules"""
    frequency = ScheduleFrequency(frequency)
    if frequency == ScheduleFrequency.CUSTOM:
        return cron_expression
    if frequency == ScheduleFrequency.ONCE:
        return None

    hour, minute = parse_run_at(run_at)
    dow = 1 if day_of_week is None else day_of_week
    dom = 1 if day_of_month is None else day_of_month

    if frequency == ScheduleFrequency.DAILY:
        return f"{minute} {hour} * * *"
    if frequency == ScheduleFrequency.WEEKLY:
        return f"{minute} {hour} * * {dow}"
    if frequency == ScheduleFrequency.MONTHLY:
        return f"{minute} {hour} {dom} * *"
    if frequency == ScheduleFrequency.QUARTERLY:
        return f"{minute} {hour} {dom} 1,4,7,10 *"
    return f"{minute} {hour} {dom} 1 *"


def schedule_cron(schedule) -> Optional[str]:
    return build_cron_expression(
        schedule.frequency, schedule.run_at, schedule.day_of_week, schedule.day_of_month, schedule.cron_expression,
    )


def schedule_zone(schedule) -> ZoneInfo:
    try:
        return ZoneInfo(schedule.timezone or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        raise errors.ValidationError(f"Unknown timezone: {schedule.timezone}")


def calculate_next_run(schedule, now: Optional[datetime] = None) -> Optional[datetime]:
    """Next fire time in UTC, or None when the schedule will not fire again"""
    now = as_utc(now) or utcnow()
    start_date = as_utc(schedule.start_date)
    end_date = as_utc(schedule.end_date)

    if end_date is not None and end_date < now:
        return None
    if start_date is not None and start_date > now:
        return start_date
    if ScheduleFrequency(schedule.frequency) == ScheduleFrequency.ONCE:
        return None

    expression = schedule_cron(schedule)
    if not expression or not croniter.is_valid(expression):
        return None
    zone = schedule_zone(schedule)
    next_run = croniter(expression, now.astimezone(zone)).get_next(datetime)
    next_run = as_utc(next_run)
    if end_date is not None and next_run > end_date:
        return None
    return next_run


def validate_schedule_fields(fields: Dict[str, Any]) -> None:
    try:
        frequency = ScheduleFrequency(fields.get("frequency"))
    except ValueError:
        raise errors.ValidationError(f"Invalid frequency: {fields.get('frequency')!r}")
    parse_run_at(fields.get("run_at"))
    if fields.get("day_of_week") is not None and not 0 <= fields["day_of_week"] <= 6:
        raise errors.ValidationError("dayOfWeek must be between 0 and 6")
    if fields.get("day_of_month") is not None and not 1 <= fields["day_of_month"] <= 31:
        raise errors.ValidationError("dayOfMonth must be between 1 and 31")
    if frequency == ScheduleFrequency.CUSTOM:
        expression = fields.get("cron_expression")
        if not expression or not croniter.is_valid(expression):
            raise errors.ValidationError(f"Invalid cron expression: {expression!r}")
    if frequency == ScheduleFrequency.ONCE and not fields.get("start_date"):
        raise errors.ValidationError("One-time schedules require startDate")
    if fields.get("export_format", "csv") not in EXPORT_FORMATS:
        raise errors.ValidationError(f"Unsupported export format: {fields.get('export_format')}")
    try:
        ZoneInfo(fields.get("timezone") or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        raise errors.ValidationError(f"Unknown timezone: {fields.get('timezone')}")


# ============================================================
# SCHEDULER
# ============================================================

class ReportScheduler:
    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = async_session_maker,
        exporter: Optional[ReportExporter] = None,
        delivery: Optional[ReportDelivery] = None,
    ):
        self.session_factory = session_factory
        self.exporter = exporter or ReportExporter()
        self.delivery = delivery or ReportDelivery()
        self.jobs: Dict[str, asyncio.Task] = {}
        self.initialized = False

    # --------------------------------------------------------
    # Registry
    # --------------------------------------------------------

    async def initialize(self) -> int:
        """Register every active schedule plus the daily export cleanup"""
        if self.initialized:
            logger.warning("Report scheduler already initialized")
            return len(self.jobs)

        async with self.session_factory() as db:
            result = await db.execute(select(ReportSchedule).where(ReportSchedule.is_active.is_(True)))
            schedules = result.scalars().all()

        for schedule in schedules:
            self.start_schedule(schedule)
        self._start_job(CLEANUP_JOB_ID, self._cron_loop(CLEANUP_JOB_ID, CLEANUP_CRON, None, self.run_cleanup))
        self.initialized = True
        logger.info(f"Report scheduler initialized with {len(schedules)} schedules")
        return len(self.jobs)

    def _start_job(self, job_id: str, coro: Awaitable) -> None:
        self.stop_schedule(job_id)
        self.jobs[job_id] = asyncio.create_task(coro, name=f"report-schedule:{job_id}")

    def start_schedule(self, schedule: ReportSchedule) -> bool:
        """(Re)register a schedule's job; False when it stays dormant"""
        self.stop_schedule(schedule.id)
        if not schedule.is_active:
            return False

        try:
            zone = schedule_zone(schedule)
        except errors.ValidationError as e:
            logger.warning(f"Schedule {schedule.id} is dormant: {e.message}")
            return False

        schedule_id = schedule.id
        if ScheduleFrequency(schedule.frequency) == ScheduleFrequency.ONCE:
            run_at = as_utc(schedule.start_date)
            if run_at is None or run_at < utcnow():
                logger.warning(f"One-time schedule {schedule_id} has no future startDate; not registered")
                return False
            self._start_job(schedule_id, self._once(schedule_id, run_at))
            return True

        expression = schedule_cron(schedule)
        if not expression or not croniter.is_valid(expression):
            logger.warning(f"Schedule {schedule_id} is dormant: invalid cron expression {expression!r}")
            return False

        self._start_job(schedule_id, self._cron_loop(schedule_id, expression, zone, self.execute_schedule))
        logger.info(f"Registered schedule {schedule_id} ({expression} {zone.key})")
        return True

    def stop_schedule(self, schedule_id: str) -> bool:
        task = self.jobs.pop(schedule_id, None)
        if task is None:
            return False
        if task is not asyncio.current_task():
            task.cancel()
        return True

    def shutdown(self) -> None:
        for job_id in list(self.jobs):
            self.stop_schedule(job_id)
        self.initialized = False
        logger.info("Report scheduler stopped")

    def is_registered(self, schedule_id: str) -> bool:
        return schedule_id in self.jobs

    # --------------------------------------------------------
    # Job loops
    # --------------------------------------------------------

    async def _cron_loop(self, job_id: str, expression: str, zone: Optional[ZoneInfo],
                         callback: Callable[..., Awaitable]) -> None:
        while True:
            now = datetime.now(zone) if zone else datetime.now().astimezone()
            fire_at = croniter(expression, now).get_next(datetime)
            await asyncio.sleep(max(0.0, (fire_at - now).total_seconds()))
            try:
                # Cancellation stops the loop but lets a fire in progress finish
                await asyncio.shield(callback(job_id, now=as_utc(fire_at)))
            except (errors.PlatformError, SQLAlchemyError, OSError) as e:
                logger.error(f"Scheduled job {job_id} failed: {e}")

    async def _once(self, schedule_id: str, run_at: datetime) -> None:
        await asyncio.sleep(max(0.0, (run_at - utcnow()).total_seconds()))
        try:
            await asyncio.shield(self.execute_schedule(schedule_id, now=run_at))
        except (errors.PlatformError, SQLAlchemyError, OSError) as e:
            logger.error(f"One-time schedule {schedule_id} failed: {e}")
        finally:
            if self.jobs.get(schedule_id) is asyncio.current_task():
                del self.jobs[schedule_id]

    async def run_cleanup(self, job_id: str = CLEANUP_JOB_ID, now: Optional[datetime] = None) -> int:
        async with self.session_factory() as db:
            return await self.exporter.cleanup_expired(db)

    # --------------------------------------------------------
    # Execution pipeline
    # --------------------------------------------------------

    async def execute_schedule(self, schedule_id: str, now: Optional[datetime] = None) -> Optional[ReportExecution]:
        fired_at = as_utc(now) or utcnow()
        async with self.session_factory() as db:
            schedule = await db.get(ReportSchedule, schedule_id)
            if schedule is None or not schedule.is_active:
                logger.info(f"Schedule {schedule_id} missing or inactive; skipping fire")
                return None

            execution = None
            try:
                report = await ReportService(db).get_report(schedule.report_id)
                owner = await db.get(User, schedule.created_by)
                if owner is None:
                    raise errors.NotFoundError(f"Schedule owner not found: {schedule.created_by}")

                execution, result = await ReportService(db).execute_report(
                    report.id, to_current_user(owner), schedule.parameters or {}, schedule_id=schedule.id,
                )
                export = self.exporter.export(execution.id, report.name, result, schedule.export_format or "csv")
                execution.export_format = schedule.export_format or "csv"
                execution.export_path = export["exportPath"]
                execution.export_url = export["exportUrl"]
                execution.export_expires_at = export["expiresAt"]
                execution.delivery_method = DeliveryMethod(schedule.delivery_method or DeliveryMethod.DOWNLOAD)
                execution.delivery_status = DeliveryStatus.PENDING
                await db.commit()

                await self.delivery.deliver(db, execution, schedule, report)
            except (errors.PlatformError, SQLAlchemyError) as e:
                message = e.message if isinstance(e, errors.PlatformError) else str(e)
                await db.rollback()
                await db.refresh(schedule)
                if execution is not None:
                    await db.refresh(execution)
                schedule.failure_count = (schedule.failure_count or 0) + 1
                schedule.last_error = message
                await db.commit()
                logger.error(f"Schedule {schedule_id} fire failed: {message}")
                return execution

            schedule.last_run_at = fired_at
            schedule.execution_count = (schedule.execution_count or 0) + 1
            schedule.next_run_at = calculate_next_run(schedule, fired_at)
            await db.commit()
            logger.info(f"Schedule {schedule_id} fired; next run {schedule.next_run_at}")
            return execution

    # --------------------------------------------------------
    # Schedule CRUD (creator only)
    # --------------------------------------------------------

    async def get_owned_schedule(self, db: AsyncSession, schedule_id: str, user_id: str) -> ReportSchedule:
        schedule = await db.get(ReportSchedule, schedule_id)
        if schedule is None:
            raise errors.NotFoundError(f"Schedule not found: {schedule_id}")
        if schedule.created_by != user_id:
            raise errors.ForbiddenError("Only the schedule creator can modify it")
        return schedule

    async def create_schedule(self, db: AsyncSession, user_id: str, fields: Dict[str, Any]) -> ReportSchedule:
        unknown = set(fields) - SCHEDULE_FIELDS - {"report_id"}
        if unknown:
            raise errors.ValidationError(f"Unknown schedule fields: {sorted(unknown)}")
        await ReportService(db).get_report(fields.get("report_id", ""))
        validate_schedule_fields(fields)

        schedule = ReportSchedule(created_by=user_id, **fields)
        schedule.frequency = ScheduleFrequency(schedule.frequency)
        if schedule.delivery_method is not None:
            schedule.delivery_method = DeliveryMethod(schedule.delivery_method)
        schedule.run_at = schedule.run_at or DEFAULT_RUN_AT
        schedule.timezone = schedule.timezone or "UTC"
        if schedule.is_active is None:
            schedule.is_active = True
        schedule.next_run_at = calculate_next_run(schedule)
        db.add(schedule)
        await db.commit()

        if schedule.is_active:
            self.start_schedule(schedule)
        logger.info(f"Created schedule {schedule.id} for report {schedule.report_id}")
        return schedule

    async def update_schedule(self, db: AsyncSession, schedule_id: str, user_id: str,
                              updates: Dict[str, Any]) -> ReportSchedule:
        unknown = set(updates) - SCHEDULE_FIELDS
        if unknown:
            raise errors.ValidationError(f"Unknown schedule fields: {sorted(unknown)}")
        schedule = await self.get_owned_schedule(db, schedule_id, user_id)

        merged = {field: getattr(schedule, field) for field in SCHEDULE_FIELDS}
        merged.update(updates)
        validate_schedule_fields(merged)

        for field, value in updates.items():
            setattr(schedule, field, value)
        schedule.frequency = ScheduleFrequency(schedule.frequency)
        schedule.delivery_method = DeliveryMethod(schedule.delivery_method or DeliveryMethod.DOWNLOAD)
        schedule.next_run_at = calculate_next_run(schedule) if schedule.is_active else None
        await db.commit()

        if schedule.is_active:
            self.start_schedule(schedule)
        else:
            self.stop_schedule(schedule.id)
        return schedule

    async def toggle_schedule(self, db: AsyncSession, schedule_id: str, user_id: str) -> ReportSchedule:
        schedule = await self.get_owned_schedule(db, schedule_id, user_id)
        schedule.is_active = not schedule.is_active
        schedule.next_run_at = calculate_next_run(schedule) if schedule.is_active else None
        await db.commit()

        if schedule.is_active:
            self.start_schedule(schedule)
        else:
            self.stop_schedule(schedule.id)
        logger.info(f"Schedule {schedule_id} {'activated' if schedule.is_active else 'paused'}")
        return schedule

    async def delete_schedule(self, db: AsyncSession, schedule_id: str, user_id: str) -> None:
        schedule = await self.get_owned_schedule(db, schedule_id, user_id)
        self.stop_schedule(schedule_id)
        await db.delete(schedule)
        await db.commit()

    async def list_schedules(self, db: AsyncSession, user_id: str,
                             report_id: Optional[str] = None) -> List[ReportSchedule]:
        stmt = select(ReportSchedule).where(ReportSchedule.created_by == user_id)
        if report_id:
            stmt = stmt.where(ReportSchedule.report_id == report_id)
        result = await db.execute(stmt.order_by(ReportSchedule.created_at.desc()))
        return list(result.scalars().all())


scheduler = ReportScheduler()


def get_scheduler() -> ReportScheduler:
    """Dependency for the process-wide scheduler (FastAPI Depends)"""
    return scheduler
