"""
Subscription request/response models.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..db.models import PlanType, SubscriptionStatus


class SubscriptionCreate(BaseModel):
    user_id: int = Field(..., gt=0)
    course_id: int = Field(..., gt=0)
    plan_type: PlanType
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    payment_method_id: Optional[int] = Field(None, gt=0)
    with_trial: bool = False
    currency: Optional[str] = Field(None, min_length=3, max_length=3)


class SubscriptionCancel(BaseModel):
    user_id: int = Field(..., gt=0)


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    course_id: int
    payment_method_id: Optional[int] = None
    plan_type: PlanType
    status: SubscriptionStatus
    amount: Decimal
    currency: str
    start_date: datetime
    end_date: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
    last_billing_date: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    trial_end_date: Optional[datetime] = None


class SubscriptionSummaryResponse(BaseModel):
    """A subscription as shown in a user's subscription list."""
    model_config = ConfigDict(from_attributes=True)

    subscription: SubscriptionResponse
    course_title: str
    payment_method: Optional[str] = None
