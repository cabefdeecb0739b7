"""
Subscription endpoints.
"""
from typing import List

from fastapi import APIRouter, Depends, status

from ...schemas import (
    SubscriptionCancel,
    SubscriptionCreate,
    SubscriptionResponse,
    SubscriptionSummaryResponse,
)
from ...services.billing import BillingEngine
from ..deps import get_billing, unwrap

router = APIRouter()


@router.post("/subscriptions", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    body: SubscriptionCreate,
    billing: BillingEngine = Depends(get_billing),
):
    """
    Start a subscription, optionally with a free trial.

    Without a trial the first period is charged immediately; a declined
    charge returns 502 and leaves no subscription behind.
    """
    result = await billing.create_subscription(
        user_id=body.user_id,
        course_id=body.course_id,
        plan_type=body.plan_type,
        amount=body.amount,
        payment_method_id=body.payment_method_id,
        with_trial=body.with_trial,
        currency=body.currency,
    )
    return unwrap(result)


@router.post("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    subscription_id: int,
    body: SubscriptionCancel,
    billing: BillingEngine = Depends(get_billing),
):
    """Cancel at period end; access lasts until the subscription's end date."""
    return unwrap(await billing.cancel_subscription(subscription_id, body.user_id))


@router.get("/users/{user_id}/subscriptions", response_model=List[SubscriptionSummaryResponse])
async def list_user_subscriptions(
    user_id: int,
    billing: BillingEngine = Depends(get_billing),
):
    return billing.get_user_subscriptions(user_id)
