"""
Bus subscribers that deliver notifications and analytics events.
"""

import logging

from ..integrations.push_notification_client import PushNotification, PushNotificationClient
from ..services.notifications import HIGH_PRIORITY_KINDS, NotificationKind, render_notification
from .event_bus import EventBus
from .event_types import Event, EventType

analytics_logger = logging.getLogger("coursebilling.analytics")


def register_subscribers(bus: EventBus, push_client: PushNotificationClient) -> None:
    """Wire notification delivery and analytics logging onto the bus."""

    async def deliver_notification(event: Event) -> None:
        kind = NotificationKind(event.get_data_field("kind"))
        payload = event.get_data_field("payload", {})
        title, body = render_notification(kind, payload)
        await push_client.send(
            PushNotification(
                user_id=int(event.get_data_field("user_id")),
                kind=kind.value,
                title=title,
                body=body,
                data=payload,
                high_priority=kind in HIGH_PRIORITY_KINDS,
            )
        )

    async def record_analytics(event: Event) -> None:
        name = event.get_data_field("name")
        properties = event.get_data_field("properties", {})
        analytics_logger.info(
            f"analytics event {name}",
            extra={"analytics_event": name, "analytics_properties": properties},
        )

    bus.subscribe(EventType.NOTIFICATION_REQUESTED, deliver_notification)
    bus.subscribe(EventType.ANALYTICS_LOGGED, record_analytics)
