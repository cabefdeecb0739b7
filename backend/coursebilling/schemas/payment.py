"""
Payment, refund and payment method request/response models.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..db.models import PaymentType, TransactionStatus
from ..integrations.payment_client import InstrumentKind


class PaymentCreate(BaseModel):
    user_id: int = Field(..., gt=0)
    course_id: int = Field(..., gt=0)
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    payment_method_id: Optional[int] = Field(None, gt=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)


class AlternativePaymentCreate(BaseModel):
    """
    Non-card payment: virtual account, e-wallet, QR code or retail outlet.

    `params` carries the instrument fields, always including `amount`.
    """
    user_id: int = Field(..., gt=0)
    course_id: int = Field(..., gt=0)
    kind: InstrumentKind
    params: Dict[str, Any] = Field(default_factory=dict)


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    course_id: int
    amount: Decimal
    currency: str
    status: TransactionStatus
    payment_method_id: Optional[int] = None
    timestamp: datetime
    reference: str
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="meta")


class PaymentMethodCreate(BaseModel):
    type: PaymentType
    details: Dict[str, Any] = Field(default_factory=dict)
    make_default: bool = False


class PaymentMethodResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    type: PaymentType
    last_four_digits: Optional[str] = None
    expiry_month: Optional[int] = None
    expiry_year: Optional[int] = None
    card_brand: Optional[str] = None
    is_default: bool
    display_name: str
