"""
Raw gateway callbacks, stored before any side effect is applied.
"""

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from ..base import Base, utcnow


class WebhookEvent(Base):
    """
    Webhook event model.

    Attributes:
        event_id: Gateway-assigned id, the idempotency key
        event_type: Raw event type string
        payload: Raw request body exactly as received
        signature_valid: Whether the signature header matched
        processed: Flips to true once every derived state change committed
        error: Last failure text, if any
    """

    __tablename__ = "webhook_events"

    event_id = Column(String(200), primary_key=True)
    event_type = Column(String(100), nullable=False, index=True)
    payload = Column(Text, nullable=False)
    received_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    signature_valid = Column(Boolean, nullable=False, default=False)
    processed = Column(Boolean, nullable=False, default=False, index=True)
    processed_at = Column(DateTime, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<WebhookEvent {self.event_id} type={self.event_type} processed={self.processed}>"
