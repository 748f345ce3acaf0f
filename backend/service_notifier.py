# service_notifier.py — Outbound calls to Herald, Spark and the CI service
# Notification and CI calls are non-critical: failures are logged and swallowed
# so the primary operation completes. Email delivery is the exception and raises.

import os
import logging
from typing import Any, Dict, List, Optional

import httpx

import errors

logger = logging.getLogger("exprsn.notifications")

CI_SERVICE_URL = os.getenv("CI_SERVICE_URL", "http://localhost:5001")
HERALD_URL = os.getenv("HERALD_URL", "http://localhost:3014")
SPARK_URL = os.getenv("SPARK_URL", "http://localhost:3002")
SERVICE_TIMEOUT = float(os.getenv("SERVICE_TIMEOUT_SECONDS", "10"))


class ServiceNotifier:
    """httpx client wrapper; pass a transport to stub the services in tests"""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.transport = transport

    async def _post(self, url: str, body: Dict[str, Any]) -> httpx.Response:
        async with httpx.AsyncClient(timeout=SERVICE_TIMEOUT, transport=self.transport) as client:
            response = await client.post(url, json=body)
            response.raise_for_status()
            return response

    async def notify(self, user_id: str, notification_type: str, title: str, message: str,
                     data: Optional[Dict[str, Any]] = None, priority: str = "normal") -> bool:
        body = {
            "userId": user_id,
            "type": notification_type,
            "title": title,
            "message": message,
            "data": data or {},
            "priority": priority,
        }
        try:
            await self._post(f"{HERALD_URL}/api/notifications", body)
            return True
        except httpx.HTTPError as e:
            logger.warning(f"Herald notification '{notification_type}' to {user_id} failed: {e}")
            return False

    async def notify_many(self, user_ids: List[str], notification_type: str, title: str, message: str,
                          data: Optional[Dict[str, Any]] = None, priority: str = "normal") -> int:
        sent = 0
        for user_id in dict.fromkeys(u for u in user_ids if u):
            if await self.notify(user_id, notification_type, title, message, data, priority):
                sent += 1
        return sent

    async def send_message(self, recipient_id: str, content: str, metadata: Optional[Dict[str, Any]] = None) -> bool:
        body = {"recipientId": recipient_id, "content": content, "metadata": metadata or {}}
        try:
            await self._post(f"{SPARK_URL}/api/messages/send", body)
            return True
        except httpx.HTTPError as e:
            logger.warning(f"Spark message to {recipient_id} failed: {e}")
            return False

    async def trigger_pipeline(self, pipeline_id: str, body: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Returns the CI service's JSON body, or None when the call failed"""
        try:
            response = await self._post(f"{CI_SERVICE_URL}/lowcode/api/git/pipelines/{pipeline_id}/trigger", body)
        except httpx.HTTPError as e:
            logger.error(f"CI trigger for pipeline {pipeline_id} failed: {e}")
            return None
        try:
            return response.json()
        except ValueError:
            return {}

    async def send_email(self, recipients: List[str], subject: str, body: str,
                         attachments: Optional[List[Dict[str, Any]]] = None) -> None:
        payload = {
            "type": "email",
            "recipients": recipients,
            "subject": subject,
            "body": body,
            "attachments": attachments or [],
        }
        try:
            await self._post(f"{HERALD_URL}/api/notifications/email", payload)
        except httpx.HTTPError as e:
            raise errors.ExternalServiceError(f"Email dispatch failed: {e}")


def get_notifier() -> ServiceNotifier:
    """Dependency for outbound service calls (FastAPI Depends)"""
    return ServiceNotifier()
