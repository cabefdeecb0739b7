"""
Push notification client.

Delivers billing notifications (payment results, refunds, disputes, reminders)
to a push gateway over HTTP. Without a configured endpoint notifications are
only logged.
"""

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import aiohttp
from pydantic import BaseModel, Field
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..core.config import NotificationConfig
from ..core.logging_config import get_logger

logger = get_logger(__name__)


class PushNotification(BaseModel):
    """One notification addressed to a user."""
    notification_id: str = Field(default_factory=lambda: f"ntf_{uuid.uuid4().hex[:16]}")
    user_id: int
    kind: str
    title: str
    body: str
    data: Dict[str, str] = Field(default_factory=dict)
    high_priority: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class PushResponse(BaseModel):
    """Delivery outcome."""
    notification_id: str
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class PushNotificationClient:
    """HTTP push gateway client."""

    def __init__(self, config: NotificationConfig):
        self.config = config
        self.session: Optional[aiohttp.ClientSession] = None

    @property
    def enabled(self) -> bool:
        return bool(self.config.push_url)

    async def initialize(self) -> None:
        """Open the HTTP session when an endpoint is configured."""
        if not self.enabled or self.session is not None:
            return
        headers = {"Content-Type": "application/json"}
        if self.config.push_api_key:
            headers["Authorization"] = f"Bearer {self.config.push_api_key}"
        self.session = aiohttp.ClientSession(
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=self.config.timeout_seconds),
        )
        logger.info(f"Push notification client initialized for {self.config.push_url}")

    async def send(self, notification: PushNotification) -> PushResponse:
        """Send one notification; transport errors become an unsuccessful response."""
        if not self.enabled:
            logger.info(
                f"Notification {notification.kind} for user {notification.user_id}: "
                f"{notification.title} - {notification.body}"
            )
            return PushResponse(notification_id=notification.notification_id, success=True)

        if self.session is None:
            await self.initialize()

        try:
            return await self._post(notification)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Push delivery failed for {notification.notification_id}: {e}")
            return PushResponse(notification_id=notification.notification_id, success=False, error=str(e))

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        retry=retry_if_exception_type((aiohttp.ClientError, asyncio.TimeoutError)),
        reraise=True,
    )
    async def _post(self, notification: PushNotification) -> PushResponse:
        payload: Dict[str, Any] = {
            "to": str(notification.user_id),
            "priority": "high" if notification.high_priority else "normal",
            "notification": {"title": notification.title, "body": notification.body},
            "data": {**notification.data, "kind": notification.kind},
        }
        async with self.session.post(self.config.push_url, json=payload) as response:
            response_data = await response.json(content_type=None)
            if response.status < 300:
                return PushResponse(
                    notification_id=notification.notification_id,
                    success=True,
                    message_id=(response_data or {}).get("message_id"),
                )
            error_msg = (response_data or {}).get("error", f"HTTP {response.status}")
            logger.error(f"Push gateway rejected {notification.notification_id}: {error_msg}")
            return PushResponse(notification_id=notification.notification_id, success=False, error=str(error_msg))

    async def cleanup(self) -> None:
        """Clean up resources."""
        if self.session:
            await self.session.close()
            self.session = None
