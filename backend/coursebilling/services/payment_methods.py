"""
Stored payment instruments.
"""

from datetime import date
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError

from ..core.constants import AnalyticsEvents
from ..core.exceptions import InvalidStateError, NotFoundError, PaymentMethodNotFoundError, ValidationError
from ..core.logging_config import get_logger
from ..core.security import EncryptionManager
from ..db import LedgerStore
from ..db.models import PaymentMethod, PaymentType
from ..integrations.payment_client import PaymentClient, TokenizeFailure
from .analytics import AnalyticsSink
from .locks import KeyedLocks
from .results import Failure, Result, Success

logger = get_logger(__name__)


class PaymentMethodService:
    """Adds, removes and re-defaults a user's payment methods."""

    def __init__(
        self,
        store: LedgerStore,
        gateway: PaymentClient,
        encryption: EncryptionManager,
        analytics: AnalyticsSink,
        user_locks: Optional[KeyedLocks] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.encryption = encryption
        self.analytics = analytics
        self.user_locks = user_locks or KeyedLocks()

    async def add_payment_method(
        self,
        user_id: int,
        payment_type: PaymentType,
        raw_details: Dict[str, Any],
        make_default: bool = False,
    ) -> Result[PaymentMethod]:
        """
        Tokenize raw instrument details and store the masked result.

        Only the last four digits, brand, expiry and the encrypted gateway
        token are persisted. A user's first method becomes the default.
        """
        with self.store.unit_of_work() as uow:
            if uow.users.get(user_id) is None:
                return Failure(NotFoundError("User", user_id))

        outcome = await self.gateway.tokenize_instrument(payment_type, raw_details)
        if isinstance(outcome, TokenizeFailure):
            logger.info(f"Instrument rejected for user {user_id}: {outcome.reason}")
            return Failure(ValidationError(
                outcome.message or "Payment instrument was rejected",
                details={"reason": outcome.reason, "type": payment_type.value},
                code="INSTRUMENT_REJECTED",
            ))

        async with self.user_locks(user_id):
            try:
                with self.store.unit_of_work() as uow:
                    first = uow.payment_methods.count(user_id=user_id) == 0
                    is_default = first or make_default
                    if is_default:
                        uow.payment_methods.clear_defaults(user_id)
                    method = uow.payment_methods.create(
                        user_id=user_id,
                        type=payment_type,
                        last_four_digits=outcome.last_four,
                        expiry_month=outcome.expiry_month,
                        expiry_year=outcome.expiry_year,
                        card_brand=outcome.brand,
                        is_default=is_default,
                        encrypted_token=self.encryption.encrypt(outcome.token),
                    )
            except IntegrityError as e:
                logger.warning(f"Default payment method race for user {user_id}: {e}")
                return Failure(InvalidStateError("Payment methods changed concurrently, please retry"))

        logger.info(f"Added {payment_type.value} payment method {method.id} for user {user_id}")
        self.analytics.log_event(AnalyticsEvents.PAYMENT_METHOD_ADDED, {
            "user_id": user_id,
            "payment_method_id": method.id,
            "type": payment_type.value,
            "is_default": method.is_default,
        })
        return Success(method)

    async def remove_payment_method(self, user_id: int, payment_method_id: int) -> Result[int]:
        """
        Delete a method. Historical transactions and subscriptions keep their
        rows with the reference nulled; a removed default passes to the newest
        remaining method.
        """
        async with self.user_locks(user_id):
            with self.store.unit_of_work() as uow:
                method = uow.payment_methods.get_for_user(payment_method_id, user_id)
                if method is None:
                    return Failure(PaymentMethodNotFoundError(payment_method_id, user_id))
                was_default = method.is_default
                payment_type = method.type
                uow.payment_methods.detach_and_delete(method)

                promoted = None
                if was_default:
                    remaining = uow.payment_methods.list_for_user(user_id)
                    if remaining:
                        promoted = remaining[0].id
                        uow.payment_methods.set_default(user_id, promoted)

        if promoted is not None:
            logger.info(f"Payment method {promoted} is now the default for user {user_id}")
        self.analytics.log_event(AnalyticsEvents.PAYMENT_METHOD_REMOVED, {
            "user_id": user_id,
            "payment_method_id": payment_method_id,
            "type": payment_type.value,
        })
        return Success(payment_method_id)

    async def set_default_payment_method(self, user_id: int, payment_method_id: int) -> Result[int]:
        async with self.user_locks(user_id):
            if not self.store.set_default_payment_method(user_id, payment_method_id):
                return Failure(PaymentMethodNotFoundError(payment_method_id, user_id))
        return Success(payment_method_id)

    def list_payment_methods(self, user_id: int) -> List[PaymentMethod]:
        with self.store.unit_of_work() as uow:
            return uow.payment_methods.list_for_user(user_id)

    def get_default_payment_method(self, user_id: int) -> Optional[PaymentMethod]:
        with self.store.unit_of_work() as uow:
            return uow.payment_methods.get_default(user_id)

    def expired_payment_methods(self, user_id: int, today: Optional[date] = None) -> List[PaymentMethod]:
        with self.store.unit_of_work() as uow:
            return uow.payment_methods.expired_for_user(user_id, today or date.today())

    def count_by_type(self, user_id: int, payment_type: PaymentType) -> int:
        with self.store.unit_of_work() as uow:
            return uow.payment_methods.count_by_type(user_id, payment_type)
