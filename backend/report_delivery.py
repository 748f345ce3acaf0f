# report_delivery.py — Hand a finished export to its destination
import logging
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

import errors
from models import DeliveryMethod, DeliveryStatus, Report, ReportExecution, ReportSchedule, iso, utcnow
from service_notifier import ServiceNotifier

logger = logging.getLogger("exprsn.reports")

WEBHOOK_TIMEOUT_SECONDS = 10


class ReportDelivery:
    def __init__(self, notifier: Optional[ServiceNotifier] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.notifier = notifier or ServiceNotifier(transport)
        self.transport = transport

    async def deliver(self, db: AsyncSession, execution: ReportExecution, schedule: ReportSchedule,
                      report: Report) -> None:
        """pending -> sent | failed on the execution; raises DeliveryError on failure"""
        method = DeliveryMethod(schedule.delivery_method or DeliveryMethod.DOWNLOAD)
        execution.delivery_method = method
        execution.delivery_status = DeliveryStatus.PENDING
        config = schedule.delivery_config or {}

        try:
            if method == DeliveryMethod.WEBHOOK:
                await self._deliver_webhook(config, execution, schedule, report)
            elif method == DeliveryMethod.EMAIL:
                await self._deliver_email(config, execution, report)
            # storage and download: the file is already addressable under the export root
        except errors.DeliveryError as e:
            execution.delivery_status = DeliveryStatus.FAILED
            execution.delivery_error = e.message
            await db.commit()
            logger.error(f"Delivery of execution {execution.id} via {method.value} failed: {e.message}")
            raise

        execution.delivery_status = DeliveryStatus.SENT
        execution.delivered_at = utcnow()
        execution.delivery_error = None
        await db.commit()

    async def _deliver_webhook(self, config: dict, execution: ReportExecution, schedule: ReportSchedule,
                               report: Report) -> None:
        url = config.get("webhookUrl") or config.get("url")
        if not url:
            raise errors.DeliveryError("Webhook delivery requires delivery_config.webhookUrl")
        body = {
            "scheduleId": schedule.id,
            "reportId": report.id,
            "reportName": report.name,
            "exportUrl": execution.export_url,
            "exportFormat": execution.export_format,
            "executedAt": iso(execution.completed_at or execution.started_at),
        }
        try:
            async with httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT_SECONDS, transport=self.transport) as client:
                response = await client.post(url, json=body, headers=config.get("headers") or {})
        except httpx.HTTPError as e:
            raise errors.DeliveryError(f"Webhook request failed: {e}")
        if response.status_code >= 400:
            raise errors.DeliveryError(f"Webhook returned HTTP {response.status_code}")

    async def _deliver_email(self, config: dict, execution: ReportExecution, report: Report) -> None:
        recipients = config.get("recipients") or []
        if not recipients:
            raise errors.DeliveryError("Email delivery requires delivery_config.recipients")
        subject = config.get("subject") or f"Scheduled report: {report.name}"
        body = (
            f"The report '{report.name}' is ready.\n\n"
            f"Download: {execution.export_url}\n"
            f"Rows: {execution.row_count}\n"
        )
        try:
            await self.notifier.send_email(recipients, subject, body, [{
                "url": execution.export_url,
                "format": execution.export_format,
            }])
        except errors.ExternalServiceError as e:
            raise errors.DeliveryError(e.message)
