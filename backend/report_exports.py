# report_exports.py — Write report results to downloadable files
import os
import csv
import json
import logging
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import errors
from artifact_codec import slug
from models import ReportExecution, iso, utcnow

logger = logging.getLogger("exprsn.reports")

REPORT_EXPORT_ROOT = os.getenv("REPORT_EXPORT_ROOT", "/data/report-exports")
REPORT_EXPORT_BASE_URL = os.getenv("REPORT_EXPORT_BASE_URL", "/api/v1/reports/exports")
REPORT_EXPORT_TTL_HOURS = int(os.getenv("REPORT_EXPORT_TTL_HOURS", "24"))

EXPORT_FORMATS = ("csv", "json")


class ReportExporter:
    def __init__(self, root: Optional[str] = None, base_url: Optional[str] = None, ttl_hours: Optional[int] = None):
        self.root = Path(root or REPORT_EXPORT_ROOT)
        self.base_url = (base_url or REPORT_EXPORT_BASE_URL).rstrip("/")
        self.ttl_hours = ttl_hours if ttl_hours is not None else REPORT_EXPORT_TTL_HOURS

    def export(self, execution_id: str, report_name: str, result: Dict[str, Any], fmt: str = "csv") -> Dict[str, Any]:
        if fmt not in EXPORT_FORMATS:
            raise errors.ValidationError(f"Unsupported export format: {fmt}")

        filename = f"{slug(report_name) or 'report'}-{execution_id}.{fmt}"
        path = self.root / filename
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            if fmt == "csv":
                with open(path, "w", newline="", encoding="utf-8") as fh:
                    writer = csv.DictWriter(fh, fieldnames=result["columns"], extrasaction="ignore")
                    writer.writeheader()
                    writer.writerows(result["rows"])
            else:
                with open(path, "w", encoding="utf-8") as fh:
                    json.dump({
                        "columns": result["columns"],
                        "rows": result["rows"],
                        "rowCount": result["rowCount"],
                        "generatedAt": iso(utcnow()),
                    }, fh, indent=2, default=str)
        except OSError as e:
            raise errors.StorageError(f"Cannot write export {filename}: {e}")

        expires_at = utcnow() + timedelta(hours=self.ttl_hours)
        logger.info(f"Exported report {report_name} to {path}")
        return {
            "exportPath": str(path),
            "exportUrl": f"{self.base_url}/{filename}",
            "expiresAt": expires_at,
            "size": path.stat().st_size,
        }

    def resolve(self, filename: str) -> Path:
        """Path of an export file by name, refusing anything outside the export root"""
        path = (self.root / filename).resolve()
        if path.parent != self.root.resolve() or not path.is_file():
            raise errors.NotFoundError(f"Export not found: {filename}")
        return path

    async def cleanup_expired(self, db: AsyncSession) -> int:
        """Delete export files past their expiry; returns how many were removed"""
        now = utcnow()
        result = await db.execute(
            select(ReportExecution).where(
                ReportExecution.export_path.is_not(None),
                ReportExecution.export_expires_at < now,
            )
        )
        removed = 0
        for execution in result.scalars().all():
            try:
                os.remove(execution.export_path)
                removed += 1
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.error(f"Cannot delete expired export {execution.export_path}: {e}")
                continue
            execution.export_path = None
            execution.export_url = None
        await db.commit()
        logger.info(f"Export cleanup removed {removed} expired files")
        return removed
