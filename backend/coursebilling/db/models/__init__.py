"""
ORM models for the billing ledger.
"""

from .user import User, course_enrollments
from .course import Course, Difficulty
from .payment_method import PaymentMethod, PaymentType
from .transaction import Transaction, TransactionStatus
from .subscription import (
    LIVE_STATUSES,
    RENEWABLE_STATUSES,
    PlanType,
    Subscription,
    SubscriptionStatus,
)
from .dispute import OPEN_DISPUTE_STATUSES, Dispute, DisputeStatus
from .webhook_event import WebhookEvent

__all__ = [
    "User",
    "course_enrollments",
    "Course",
    "Difficulty",
    "PaymentMethod",
    "PaymentType",
    "Transaction",
    "TransactionStatus",
    "Subscription",
    "SubscriptionStatus",
    "PlanType",
    "LIVE_STATUSES",
    "RENEWABLE_STATUSES",
    "Dispute",
    "DisputeStatus",
    "OPEN_DISPUTE_STATUSES",
    "WebhookEvent",
]
