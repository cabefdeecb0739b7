"""
Chargebacks and disputes raised against completed transactions.
"""

from enum import Enum

from sqlalchemy import Column, DateTime, Enum as SQLEnum, ForeignKey, Integer, String, Text

from ..base import Base, utcnow


class DisputeStatus(str, Enum):
    """Dispute status."""
    PENDING = "PENDING"
    UNDER_REVIEW = "UNDER_REVIEW"
    RESOLVED_MERCHANT_WIN = "RESOLVED_MERCHANT_WIN"
    RESOLVED_CUSTOMER_WIN = "RESOLVED_CUSTOMER_WIN"
    CANCELLED = "CANCELLED"

    @property
    def is_resolved(self) -> bool:
        return self in (DisputeStatus.RESOLVED_MERCHANT_WIN, DisputeStatus.RESOLVED_CUSTOMER_WIN)

    @property
    def is_terminal(self) -> bool:
        return self.is_resolved or self == DisputeStatus.CANCELLED


OPEN_DISPUTE_STATUSES = (DisputeStatus.PENDING, DisputeStatus.UNDER_REVIEW)


class Dispute(Base):
    """
    Dispute model.

    resolved_at is written once, on entry into a terminal status.
    """

    __tablename__ = "disputes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(Integer, ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    reason = Column(String(500), nullable=False)
    evidence = Column(Text, nullable=True)
    status = Column(SQLEnum(DisputeStatus), nullable=False, default=DisputeStatus.PENDING, index=True)
    resolution = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    resolved_at = Column(DateTime, nullable=True)

    @property
    def resolution_seconds(self):
        if self.resolved_at is None:
            return None
        return (self.resolved_at - self.created_at).total_seconds()
