"""
Stored payment method endpoints.
"""
from typing import List

from fastapi import APIRouter, Depends, status

from ...schemas import PaymentMethodCreate, PaymentMethodResponse
from ...services.payment_methods import PaymentMethodService
from ..deps import get_payment_methods, unwrap

router = APIRouter(prefix="/users/{user_id}/payment-methods")


@router.get("", response_model=List[PaymentMethodResponse])
async def list_payment_methods(
    user_id: int,
    methods: PaymentMethodService = Depends(get_payment_methods),
):
    """Default first, then newest."""
    return methods.list_payment_methods(user_id)


@router.post("", response_model=PaymentMethodResponse, status_code=status.HTTP_201_CREATED)
async def add_payment_method(
    user_id: int,
    body: PaymentMethodCreate,
    methods: PaymentMethodService = Depends(get_payment_methods),
):
    """
    Tokenize and store an instrument.

    Raw card numbers never reach the ledger; only the last four digits, brand,
    expiry and the encrypted gateway token are kept.
    """
    return unwrap(await methods.add_payment_method(user_id, body.type, body.details, body.make_default))


@router.delete("/{payment_method_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_payment_method(
    user_id: int,
    payment_method_id: int,
    methods: PaymentMethodService = Depends(get_payment_methods),
):
    unwrap(await methods.remove_payment_method(user_id, payment_method_id))


@router.put("/{payment_method_id}/default", response_model=List[PaymentMethodResponse])
async def set_default_payment_method(
    user_id: int,
    payment_method_id: int,
    methods: PaymentMethodService = Depends(get_payment_methods),
):
    unwrap(await methods.set_default_payment_method(user_id, payment_method_id))
    return methods.list_payment_methods(user_id)
