"""
transaction.py - Payment ledger entries

Every charge attempt, refund and alternative-instrument payment is one row.
Rows are append-only in spirit: a refund is a new negative row and the original
is only re-labelled REFUNDED.
"""

from enum import Enum
from typing import Any, Optional

from sqlalchemy import Column, DateTime, Enum as SQLEnum, ForeignKey, Integer, JSON, Numeric, String
from sqlalchemy.ext.mutable import MutableDict

from ..base import Base, utcnow


class TransactionStatus(str, Enum):
    """Transaction status."""
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"
    EXPIRED = "EXPIRED"
    AUTHORIZED = "AUTHORIZED"
    CAPTURED = "CAPTURED"

    @property
    def is_settled(self) -> bool:
        """Money actually moved to the merchant."""
        return self in (TransactionStatus.COMPLETED, TransactionStatus.CAPTURED)


# Legal status moves. PENDING resolves once; a settled charge may later be
# refunded or disputed.
ALLOWED_TRANSITIONS = {
    TransactionStatus.PENDING: {
        TransactionStatus.COMPLETED,
        TransactionStatus.FAILED,
        TransactionStatus.EXPIRED,
        TransactionStatus.CANCELLED,
        TransactionStatus.AUTHORIZED,
    },
    TransactionStatus.AUTHORIZED: {
        TransactionStatus.CAPTURED,
        TransactionStatus.COMPLETED,
        TransactionStatus.CANCELLED,
        TransactionStatus.FAILED,
    },
    TransactionStatus.CAPTURED: {TransactionStatus.REFUNDED, TransactionStatus.DISPUTED},
    TransactionStatus.COMPLETED: {TransactionStatus.REFUNDED, TransactionStatus.DISPUTED},
    TransactionStatus.DISPUTED: {TransactionStatus.REFUNDED, TransactionStatus.COMPLETED},
    TransactionStatus.FAILED: set(),
    TransactionStatus.REFUNDED: set(),
    TransactionStatus.CANCELLED: set(),
    # The gateway may still settle a row we expired on our side
    TransactionStatus.EXPIRED: {TransactionStatus.COMPLETED},
}


class Transaction(Base):
    """
    Transaction model.

    Attributes:
        id: Primary key
        user_id: Paying user
        course_id: Course being paid for
        amount: Signed amount, negative for refunds
        currency: ISO 4217 code
        status: Transaction status
        payment_method_id: Instrument used, nulled when the method is removed
        timestamp: Creation time
        reference: Unique reference round-tripped through the gateway
        meta: Free-form metadata (provider, subscription_id, failure_reason, ...)
    """

    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    course_id = Column(Integer, ForeignKey("courses.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(SQLEnum(TransactionStatus), nullable=False, default=TransactionStatus.PENDING, index=True)
    payment_method_id = Column(
        Integer,
        ForeignKey("payment_methods.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    timestamp = Column(DateTime, nullable=False, default=utcnow, index=True)
    reference = Column(String(100), nullable=False, unique=True, index=True)
    meta = Column("metadata", MutableDict.as_mutable(JSON), nullable=False, default=dict)

    def can_transition_to(self, new_status: TransactionStatus) -> bool:
        return new_status in ALLOWED_TRANSITIONS.get(self.status, set())

    def is_pending(self) -> bool:
        return self.status == TransactionStatus.PENDING

    def is_completed(self) -> bool:
        return self.status.is_settled

    @property
    def subscription_id(self) -> Optional[int]:
        value = (self.meta or {}).get("subscription_id")
        return int(value) if value is not None else None

    def get_meta(self, key: str, default: Any = None) -> Any:
        return (self.meta or {}).get(key, default)
