# report_service.py — Report execution with timeouts and a short-lived result cache
import json
import time
import asyncio
import hashlib
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

import errors
from models import Base, ExecutionStatus, Report, ReportExecution, utcnow

logger = logging.getLogger("exprsn.reports")

DEFAULT_ROW_LIMIT = 1000
MAX_ROW_LIMIT = 10000
MIN_TIMEOUT_SECONDS = 1
MAX_TIMEOUT_SECONDS = 600

# Never reportable through config-described selects
PROTECTED_TABLES = {"git_ssh_keys", "git_personal_access_tokens", "git_oauth_applications", "audit_logs"}

# cache_key -> (expires_at, result)
_result_cache: Dict[str, Tuple[datetime, Dict[str, Any]]] = {}


def cache_key_for(report_id: str, parameters: Dict[str, Any]) -> str:
    raw = report_id + ":" + json.dumps(parameters or {}, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _cache_get(key: str) -> Optional[Dict[str, Any]]:
    entry = _result_cache.get(key)
    if entry is None:
        return None
    expires_at, result = entry
    if expires_at <= utcnow():
        del _result_cache[key]
        return None
    return result


def _cache_put(key: str, result: Dict[str, Any], minutes: int) -> None:
    if minutes and minutes > 0:
        _result_cache[key] = (utcnow() + timedelta(minutes=minutes), result)


def clear_result_cache() -> None:
    _result_cache.clear()


class ReportService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_report(self, report_id: str) -> Report:
        report = await self.db.get(Report, report_id)
        if report is None or report.deleted_at is not None:
            raise errors.NotFoundError(f"Report not found: {report_id}")
        return report

    def _build_select(self, config: Dict[str, Any], parameters: Dict[str, Any]):
        source = config.get("source")
        table = Base.metadata.tables.get(source or "")
        if table is None or source in PROTECTED_TABLES:
            raise errors.ValidationError(f"Unknown report source: {source}")

        column_names = config.get("columns") or [c.name for c in table.columns]
        unknown = [c for c in column_names if c not in table.c]
        if unknown:
            raise errors.ValidationError(f"Unknown columns for {source}: {unknown}")
        stmt = select(*[table.c[c] for c in column_names])

        filters = {**(config.get("filters") or {}), **(parameters.get("filters") or {})}
        for name, value in filters.items():
            if name not in table.c:
                raise errors.ValidationError(f"Unknown filter column for {source}: {name}")
            stmt = stmt.where(table.c[name] == value)

        for sort in config.get("sorting") or []:
            column = sort.get("column")
            if column not in table.c:
                raise errors.ValidationError(f"Unknown sort column for {source}: {column}")
            order = table.c[column].desc() if str(sort.get("direction", "asc")).lower() == "desc" else table.c[column].asc()
            stmt = stmt.order_by(order)

        limit = int(parameters.get("limit") or config.get("limit") or DEFAULT_ROW_LIMIT)
        return stmt.limit(max(1, min(limit, MAX_ROW_LIMIT)))

    async def _run(self, report: Report, user, parameters: Dict[str, Any]) -> Dict[str, Any]:
        if report.custom_query:
            if not getattr(user, "is_admin", False):
                raise errors.ForbiddenError("Custom SQL reports require an administrator")
            sql = report.custom_query.strip()
            if not sql.lower().startswith(("select", "with")):
                raise errors.ValidationError("Custom report queries must be SELECT statements")
            bind = {k: v for k, v in parameters.items() if isinstance(v, (str, int, float, bool)) or v is None}
            result = await self.db.execute(text(sql), bind)
        else:
            result = await self.db.execute(self._build_select(report.config or {}, parameters))

        columns: List[str] = list(result.keys())
        rows = [dict(zip(columns, row)) for row in result.all()]
        return {"columns": columns, "rows": rows, "rowCount": len(rows)}

    async def execute_report(
        self,
        report_id: str,
        user,
        parameters: Optional[Dict[str, Any]] = None,
        schedule_id: Optional[str] = None,
    ) -> Tuple[ReportExecution, Dict[str, Any]]:
        """Run a report for ``user`` (needs ``id`` and ``is_admin``); returns (execution, result)"""
        report = await self.get_report(report_id)
        if not report.is_active:
            raise errors.ValidationError(f"Report is inactive: {report_id}")

        merged = {**(report.parameters or {}), **(parameters or {})}
        key = cache_key_for(report.id, merged)
        execution = ReportExecution(
            report_id=report.id,
            schedule_id=schedule_id,
            executed_by=getattr(user, "id", None),
            status=ExecutionStatus.RUNNING,
            parameters=merged,
            cache_key=key,
            started_at=utcnow(),
        )
        self.db.add(execution)
        await self.db.commit()

        started = time.monotonic()
        result = _cache_get(key)
        cache_hit = result is not None
        if not cache_hit:
            timeout = max(MIN_TIMEOUT_SECONDS, min(report.timeout_seconds or 60, MAX_TIMEOUT_SECONDS))
            try:
                result = await asyncio.wait_for(self._run(report, user, merged), timeout=timeout)
            except asyncio.TimeoutError:
                await self._fail(execution, ExecutionStatus.TIMEOUT, f"Report timed out after {timeout}s", started)
                raise errors.ReportTimeoutError(f"Report {report.name} timed out after {timeout}s")
            except errors.PlatformError as e:
                await self._fail(execution, ExecutionStatus.FAILED, e.message, started)
                raise
            except SQLAlchemyError as e:
                await self._fail(execution, ExecutionStatus.FAILED, str(e.orig if hasattr(e, "orig") else e), started)
                raise errors.StorageError(f"Report query failed: {e.__class__.__name__}")
            _cache_put(key, result, report.cache_duration_minutes)

        execution.status = ExecutionStatus.COMPLETED
        execution.cache_hit = cache_hit
        execution.completed_at = utcnow()
        execution.duration_ms = int((time.monotonic() - started) * 1000)
        execution.row_count = result["rowCount"]
        execution.result_size = len(json.dumps(result["rows"], default=str))
        report.execution_count = (report.execution_count or 0) + 1
        report.last_executed_at = execution.completed_at
        await self.db.commit()

        logger.info(
            f"Report {report.name} executed in {execution.duration_ms}ms "
            f"({execution.row_count} rows{', cached' if cache_hit else ''})"
        )
        return execution, result

    async def _fail(self, execution: ReportExecution, status: ExecutionStatus, message: str, started: float) -> None:
        await self.db.rollback()
        await self.db.refresh(execution)
        execution.status = status
        execution.error_message = message
        execution.completed_at = utcnow()
        execution.duration_ms = int((time.monotonic() - started) * 1000)
        await self.db.commit()
        logger.error(f"Report execution {execution.id} {status.value}: {message}")

    async def list_executions(self, report_id: Optional[str] = None, schedule_id: Optional[str] = None,
                              limit: int = 50) -> List[ReportExecution]:
        stmt = select(ReportExecution)
        if report_id:
            stmt = stmt.where(ReportExecution.report_id == report_id)
        if schedule_id:
            stmt = stmt.where(ReportExecution.schedule_id == schedule_id)
        result = await self.db.execute(stmt.order_by(ReportExecution.started_at.desc()).limit(limit))
        return list(result.scalars().all())
