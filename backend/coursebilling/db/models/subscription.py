"""
subscription.py - Recurring course subscriptions

Lifecycle:
- created TRIALING (no charge) or ACTIVE (first charge succeeded)
- TRIALING -> ACTIVE on the first successful renewal charge
- ACTIVE/TRIALING -> PAST_DUE once a due charge stays unpaid past the grace period
- PAST_DUE -> ACTIVE on a later successful charge
- ACTIVE/TRIALING -> CANCELED on user cancellation (access lasts until end_date)
- ACTIVE/TRIALING/PAST_DUE -> EXPIRED once end_date is reached

CANCELED and EXPIRED are terminal.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Column, DateTime, Enum as SQLEnum, ForeignKey, Index, Integer, Numeric, String, text

from ..base import Base, TimestampMixin, utcnow


class PlanType(str, Enum):
    """Billing plans."""
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    YEARLY = "YEARLY"
    LIFETIME = "LIFETIME"


class SubscriptionStatus(str, Enum):
    """Subscription status."""
    ACTIVE = "ACTIVE"
    TRIALING = "TRIALING"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED)


LIVE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)
RENEWABLE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE)


class Subscription(Base, TimestampMixin):
    """
    Subscription model.

    A null next_billing_date means no further billing (LIFETIME plans).
    """

    __tablename__ = "subscriptions"
    __table_args__ = (
        # At most one live subscription per (user, course)
        Index(
            "uq_subscriptions_live_per_course",
            "user_id",
            "course_id",
            unique=True,
            sqlite_where=text("status IN ('ACTIVE', 'TRIALING')"),
            postgresql_where=text("status IN ('ACTIVE', 'TRIALING')"),
        ),
        Index("ix_subscriptions_status_next_billing", "status", "next_billing_date"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    course_id = Column(Integer, ForeignKey("courses.id", ondelete="CASCADE"), nullable=False, index=True)
    payment_method_id = Column(
        Integer,
        ForeignKey("payment_methods.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    plan_type = Column(SQLEnum(PlanType), nullable=False)
    status = Column(SQLEnum(SubscriptionStatus), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    start_date = Column(DateTime, nullable=False, default=utcnow)
    end_date = Column(DateTime, nullable=True)
    next_billing_date = Column(DateTime, nullable=True)
    last_billing_date = Column(DateTime, nullable=True)
    canceled_at = Column(DateTime, nullable=True)
    trial_end_date = Column(DateTime, nullable=True)

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    @property
    def is_trial(self) -> bool:
        return self.trial_end_date is not None

    def has_access(self, now: datetime) -> bool:
        """Canceled subscriptions keep access until their period ends."""
        if self.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE):
            return self.end_date is None or self.end_date > now
        if self.status == SubscriptionStatus.CANCELED:
            return self.end_date is not None and self.end_date > now
        return False

    def period_end(self) -> Optional[datetime]:
        return self.end_date or self.next_billing_date
