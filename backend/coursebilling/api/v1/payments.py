"""
One-off payment and refund endpoints.
"""
from typing import List

from fastapi import APIRouter, Depends, status

from ...schemas import AlternativePaymentCreate, PaymentCreate, TransactionResponse
from ...services.payments import PaymentService
from ..deps import get_payments, unwrap

router = APIRouter()


@router.post("/payments", response_model=TransactionResponse, status_code=status.HTTP_201_CREATED)
async def create_payment(
    body: PaymentCreate,
    payments: PaymentService = Depends(get_payments),
):
    """Charge for a course; the user's default payment method is used when none is given."""
    result = await payments.process_payment(
        user_id=body.user_id,
        course_id=body.course_id,
        amount=body.amount,
        payment_method_id=body.payment_method_id,
        currency=body.currency,
    )
    return unwrap(result)


@router.post("/payments/alternative", response_model=TransactionResponse, status_code=status.HTTP_201_CREATED)
async def create_alternative_payment(
    body: AlternativePaymentCreate,
    payments: PaymentService = Depends(get_payments),
):
    """
    Open a virtual account, e-wallet charge, QR code or retail outlet code.

    The transaction stays PENDING; the presentable handle is under
    `metadata.instrument`.
    """
    return unwrap(await payments.create_alternative_payment(body.user_id, body.course_id, body.kind, body.params))


@router.post("/payments/{transaction_id}/refund", response_model=TransactionResponse)
async def refund_payment(
    transaction_id: int,
    payments: PaymentService = Depends(get_payments),
):
    """Returns the new negative refund transaction."""
    return unwrap(payments.process_refund(transaction_id))


@router.get("/users/{user_id}/transactions", response_model=List[TransactionResponse])
async def list_user_transactions(
    user_id: int,
    payments: PaymentService = Depends(get_payments),
):
    return payments.list_transactions(user_id)
