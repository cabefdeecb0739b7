"""
Pydantic models for the HTTP surface.
"""

from .common import ErrorBody, ErrorResponse, HealthResponse, WebhookAck, WebhookRetryResponse
from .dispute import DisputeCreate, DisputeResponse, DisputeStatusUpdate, EvidenceSubmit
from .payment import (
    AlternativePaymentCreate,
    PaymentCreate,
    PaymentMethodCreate,
    PaymentMethodResponse,
    TransactionResponse,
)
from .subscription import (
    SubscriptionCancel,
    SubscriptionCreate,
    SubscriptionResponse,
    SubscriptionSummaryResponse,
)

__all__ = [
    "AlternativePaymentCreate",
    "DisputeCreate",
    "DisputeResponse",
    "DisputeStatusUpdate",
    "ErrorBody",
    "ErrorResponse",
    "EvidenceSubmit",
    "HealthResponse",
    "PaymentCreate",
    "PaymentMethodCreate",
    "PaymentMethodResponse",
    "SubscriptionCancel",
    "SubscriptionCreate",
    "SubscriptionResponse",
    "SubscriptionSummaryResponse",
    "TransactionResponse",
    "WebhookAck",
    "WebhookRetryResponse",
]
