"""
Notification sink.

Billing code calls `notify(user_id, kind, payload)` and moves on: delivery is
fire-and-forget and a delivery problem never rolls back a billing state change.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from ..core.logging_config import get_logger
from ..events.event_bus import EventBus
from ..events.event_types import EventType

logger = get_logger(__name__)


class NotificationKind(str, Enum):
    """Kinds of user-facing billing notifications."""
    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_REFUNDED = "payment_refunded"
    PAYMENT_DISPUTED = "payment_disputed"
    DISPUTE_CREATED = "dispute_created"
    DISPUTE_UPDATED = "dispute_updated"
    PAYMENT_REMINDER = "payment_reminder"
    SUBSCRIPTION_RENEWED = "subscription_renewed"


HIGH_PRIORITY_KINDS = frozenset({NotificationKind.PAYMENT_FAILED, NotificationKind.PAYMENT_DISPUTED})


def format_amount(amount: Any, currency: Optional[str] = None) -> str:
    currency = (currency or "USD").upper()
    value = Decimal(str(amount or 0))
    if currency == "IDR":
        return f"Rp{value:,.0f}"
    symbol = {"USD": "$", "EUR": "€", "GBP": "£"}.get(currency)
    return f"{symbol}{value:,.2f}" if symbol else f"{value:,.2f} {currency}"


def render_notification(kind: NotificationKind, payload: Dict[str, Any]) -> Tuple[str, str]:
    """Title and body text for a notification."""
    amount = format_amount(payload.get("amount"), payload.get("currency"))
    if kind == NotificationKind.PAYMENT_SUCCESS:
        return "Payment Successful", f"Your payment of {amount} was successful"
    if kind == NotificationKind.PAYMENT_FAILED:
        reason = payload.get("reason")
        suffix = f": {reason}" if reason else ""
        return "Payment Failed", f"Your payment of {amount} failed{suffix}. Please try again"
    if kind == NotificationKind.PAYMENT_REFUNDED:
        return "Payment Refunded", f"Your payment of {amount} has been refunded"
    if kind == NotificationKind.PAYMENT_DISPUTED:
        return "Payment Disputed", f"Your payment of {amount} is under dispute: {payload.get('reason', 'unspecified')}"
    if kind == NotificationKind.DISPUTE_CREATED:
        return "Dispute Opened", f"We received your dispute for {amount}: {payload.get('reason', 'unspecified')}"
    if kind == NotificationKind.DISPUTE_UPDATED:
        status = str(payload.get("status", "")).replace("_", " ").lower()
        resolution = payload.get("resolution")
        body = f"Your dispute for {amount} is now {status}"
        return "Dispute Updated", f"{body}. {resolution}" if resolution else body
    if kind == NotificationKind.PAYMENT_REMINDER:
        return "Payment Pending", f"Your payment of {amount} is still waiting to be completed"
    if kind == NotificationKind.SUBSCRIPTION_RENEWED:
        return "Subscription Renewed", f"Your subscription was renewed for {amount}"
    return "Billing Update", str(payload)


class NotificationSink(ABC):
    """Fire-and-forget notification delivery."""

    def notify(self, user_id: int, kind: NotificationKind, payload: Optional[Dict[str, Any]] = None) -> None:
        try:
            self._deliver(user_id, kind, payload or {})
        except Exception as e:
            logger.warning(f"Dropped {kind.value} notification for user {user_id}: {e}")

    @abstractmethod
    def _deliver(self, user_id: int, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        ...


class EventBusNotificationSink(NotificationSink):
    """Queues notifications on the event bus; a subscriber pushes them out."""

    def __init__(self, bus: EventBus):
        self.bus = bus

    def _deliver(self, user_id: int, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        self.bus.publish_nowait(
            EventType.NOTIFICATION_REQUESTED,
            {"user_id": user_id, "kind": kind.value, "payload": {k: "" if v is None else str(v) for k, v in payload.items()}},
        )
