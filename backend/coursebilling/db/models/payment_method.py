"""
Stored payment instruments.

Only masked details and an encrypted gateway token are kept; raw card data never
reaches the ledger.
"""

from datetime import date
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, Column, Enum as SQLEnum, ForeignKey, Index, Integer, String, Text, text

from ..base import Base, TimestampMixin


class PaymentType(str, Enum):
    """Payment method types."""
    CREDIT_CARD = "CREDIT_CARD"
    DEBIT_CARD = "DEBIT_CARD"
    PAYPAL = "PAYPAL"
    BANK_TRANSFER = "BANK_TRANSFER"
    GOOGLE_PAY = "GOOGLE_PAY"
    APPLE_PAY = "APPLE_PAY"

    @property
    def is_card(self) -> bool:
        return self in (PaymentType.CREDIT_CARD, PaymentType.DEBIT_CARD)


class PaymentMethod(Base, TimestampMixin):
    """
    Payment method model.

    Attributes:
        user_id: Owning user
        type: Instrument type
        last_four_digits: Masked identifier
        expiry_month, expiry_year: Card expiry, null for non-card types
        card_brand: Brand reported by the gateway
        is_default: At most one default per user
        encrypted_token: Encrypted gateway-side instrument reference
    """

    __tablename__ = "payment_methods"
    __table_args__ = (
        Index(
            "uq_payment_methods_one_default",
            "user_id",
            unique=True,
            sqlite_where=text("is_default = 1"),
            postgresql_where=text("is_default"),
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(SQLEnum(PaymentType), nullable=False)
    last_four_digits = Column(String(4), nullable=True)
    expiry_month = Column(Integer, nullable=True)
    expiry_year = Column(Integer, nullable=True)
    card_brand = Column(String(50), nullable=True)
    is_default = Column(Boolean, nullable=False, default=False)
    encrypted_token = Column(Text, nullable=False)

    def is_expired(self, today: Optional[date] = None) -> bool:
        """Card expiry is inclusive of the expiry month."""
        if self.expiry_year is None or self.expiry_month is None:
            return False
        today = today or date.today()
        return (self.expiry_year, self.expiry_month) < (today.year, today.month)

    @property
    def display_name(self) -> str:
        brand = self.card_brand or self.type.value.replace("_", " ").title()
        return f"{brand} ****{self.last_four_digits}" if self.last_four_digits else brand
