"""
Payment processing: one-off purchases, renewal charges, refunds and
alternative-instrument payments.

Every charge attempt is recorded as a PENDING transaction before the gateway is
called, then resolved exactly once to COMPLETED or FAILED.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

import dateutil.parser

from ..core.config import BillingConfig
from ..core.constants import AnalyticsEvents, GatewayConstants
from ..core.exceptions import (
    GatewayError,
    InvalidStateError,
    NotFoundError,
    PaymentMethodNotFoundError,
    SecurityError,
    ValidationError,
)
from ..core.logging_config import bind_logger, get_logger
from ..core.security import EncryptionManager
from ..db import LedgerSession, LedgerStore, utcnow
from ..db.models import PaymentMethod, Transaction, TransactionStatus
from ..integrations.payment_client import (
    ChargeApproved,
    ChargeOutcome,
    InstrumentKind,
    PaymentClient,
    refund_reference,
)
from .analytics import AnalyticsSink
from .enrollment import EnrollmentService
from .notifications import NotificationKind, NotificationSink
from .results import Failure, Result, Success

logger = get_logger(__name__)


def record_refund(uow: LedgerSession, original: Transaction, now: datetime) -> Transaction:
    """
    Write the negative REFUND row for `original` unless it already exists.

    The caller is responsible for moving the original to REFUNDED.
    """
    reference = refund_reference(original.reference)
    existing = uow.transactions.get_by_reference(reference)
    if existing is not None:
        return existing
    return uow.transactions.create(
        user_id=original.user_id,
        course_id=original.course_id,
        amount=-Decimal(original.amount),
        currency=original.currency,
        status=TransactionStatus.REFUNDED,
        payment_method_id=original.payment_method_id,
        timestamp=now,
        reference=reference,
        meta={
            "provider": original.get_meta("provider"),
            "original_reference": original.reference,
            "original_transaction_id": original.id,
        },
    )


def transaction_payload(txn: Transaction, **extra: Any) -> Dict[str, Any]:
    """Notification and analytics properties for a transaction."""
    payload = {
        "transaction_id": txn.id,
        "reference": txn.reference,
        "course_id": txn.course_id,
        "amount": abs(Decimal(txn.amount)),
        "currency": txn.currency,
        "provider": txn.get_meta("provider"),
    }
    payload.update(extra)
    return payload


def payable_until(kind: InstrumentKind, params: Dict[str, Any], handle: Dict[str, Any], now: datetime) -> Optional[datetime]:
    """
    When an alternative instrument stops accepting money, as naive UTC.

    The gateway's own expiry wins; otherwise the default window for the
    instrument kind. E-wallet charges have no window of their own.
    """
    for key in ("expiration_date", "expires_at"):
        value = handle.get(key)
        if not value:
            continue
        try:
            parsed = dateutil.parser.isoparse(str(value))
        except ValueError:
            logger.warning(f"Unparseable instrument expiry {value!r}")
            continue
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed

    if kind == InstrumentKind.VIRTUAL_ACCOUNT:
        return now + timedelta(hours=GatewayConstants.VIRTUAL_ACCOUNT_EXPIRY_HOURS)
    if kind == InstrumentKind.RETAIL_OUTLET:
        return now + timedelta(hours=GatewayConstants.RETAIL_OUTLET_EXPIRY_HOURS)
    if kind == InstrumentKind.QR_CODE:
        return now + timedelta(seconds=int(params.get("expires_in", GatewayConstants.QR_CODE_EXPIRES_IN)))
    return None


class PaymentService:
    """
    Charges, refunds and pending-transaction housekeeping.

    The service owns the transaction ledger rows; the gateway is only ever
    called between two units of work so no database transaction is held open
    across a network round trip.
    """

    def __init__(
        self,
        store: LedgerStore,
        gateway: PaymentClient,
        encryption: EncryptionManager,
        notifier: NotificationSink,
        analytics: AnalyticsSink,
        enrollment: EnrollmentService,
        config: BillingConfig,
    ):
        self.store = store
        self.gateway = gateway
        self.encryption = encryption
        self.notifier = notifier
        self.analytics = analytics
        self.enrollment = enrollment
        self.config = config

    # ------------------------------------------------------------------
    # Charges
    # ------------------------------------------------------------------

    def _resolve_payment_method(
        self,
        uow: LedgerSession,
        user_id: int,
        payment_method_id: Optional[int],
    ) -> Tuple[Optional[PaymentMethod], Optional[Failure]]:
        if payment_method_id is None:
            return uow.payment_methods.get_default(user_id), None
        method = uow.payment_methods.get_for_user(payment_method_id, user_id)
        if method is None:
            return None, Failure(PaymentMethodNotFoundError(payment_method_id, user_id))
        return method, None

    def _instrument_token(self, method: Optional[PaymentMethod]) -> Optional[str]:
        if method is None:
            return None
        try:
            return self.encryption.decrypt(method.encrypted_token)
        except SecurityError as e:
            logger.error(f"Payment method {method.id} has an unreadable token: {e}")
            return None

    async def process_payment(
        self,
        user_id: int,
        course_id: int,
        amount: Any,
        payment_method_id: Optional[int] = None,
        currency: Optional[str] = None,
        subscription_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Result[Transaction]:
        """
        Charge `amount` for a course.

        Without an explicit payment method the user's default method is used.
        Unknown users, courses and payment methods fail before anything is
        written. Gateway failures always leave a FAILED transaction behind.

        Returns:
            Success(transaction) when COMPLETED, otherwise Failure
        """
        now = now or utcnow()
        try:
            amount = Decimal(str(amount))
        except InvalidOperation:
            return Failure(ValidationError(f"Invalid amount: {amount}"))
        if amount <= 0:
            return Failure(ValidationError("Amount must be positive", details={"amount": str(amount)}))

        with self.store.unit_of_work() as uow:
            if uow.users.get(user_id) is None:
                return Failure(NotFoundError("User", user_id))
            if uow.courses.get(course_id) is None:
                return Failure(NotFoundError("Course", course_id))
            method, failure = self._resolve_payment_method(uow, user_id, payment_method_id)
            if failure is not None:
                return failure

            payment_type = method.type if method else None
            provider = self.gateway.provider_for(payment_type)
            meta: Dict[str, Any] = {"provider": provider.provider_name}
            if subscription_id is not None:
                meta["subscription_id"] = subscription_id
            txn = uow.transactions.create(
                user_id=user_id,
                course_id=course_id,
                amount=amount,
                currency=currency or provider.currency,
                status=TransactionStatus.PENDING,
                payment_method_id=method.id if method else None,
                timestamp=now,
                reference=provider.new_reference(),
                meta=meta,
            )
            token = self._instrument_token(method)

        log = bind_logger(logger, transaction_reference=txn.reference)
        log.info(f"Charging {txn.amount} {txn.currency} for user {user_id}, course {course_id}")

        outcome = await self.gateway.charge(
            user_id, txn.amount, txn.currency, token, payment_type, txn.reference
        )
        return self._record_charge_outcome(txn.id, outcome, now)

    def _record_charge_outcome(self, transaction_id: int, outcome: ChargeOutcome, now: datetime) -> Result[Transaction]:
        resolved = False
        with self.store.unit_of_work() as uow:
            txn = uow.transactions.get(transaction_id)
            if isinstance(outcome, ChargeApproved):
                if uow.transactions.transition(txn, [TransactionStatus.PENDING], TransactionStatus.COMPLETED):
                    txn.meta["gateway_reference"] = outcome.gateway_reference
                    self.enrollment.enroll_in(uow, txn.user_id, txn.course_id, now)
                    resolved = True
            else:
                if uow.transactions.transition(txn, [TransactionStatus.PENDING], TransactionStatus.FAILED):
                    txn.meta["failure_reason"] = outcome.reason_code
                    if outcome.message:
                        txn.meta["failure_message"] = outcome.message
                    resolved = True

        log = bind_logger(logger, transaction_reference=txn.reference)
        if not resolved:
            # A webhook or the expiry sweep settled the row while the gateway call was in flight
            log.warning(f"Transaction already {txn.status.value} when the charge returned ok={outcome.ok}")

        if txn.status == TransactionStatus.COMPLETED:
            if resolved:
                log.info("Payment completed")
                self.notifier.notify(txn.user_id, NotificationKind.PAYMENT_SUCCESS, transaction_payload(txn))
                self.analytics.log_event(AnalyticsEvents.PAYMENT_SUCCESS, transaction_payload(txn, user_id=txn.user_id))
            return Success(txn)

        if isinstance(outcome, ChargeApproved):
            return Failure(InvalidStateError(
                "Charge was approved but the transaction was already settled",
                current_state=txn.status.value,
                details={"reference": txn.reference},
            ))

        if resolved:
            log.warning(f"Payment failed: {outcome.reason_code}")
            payload = transaction_payload(txn, reason=outcome.reason_code)
            self.notifier.notify(txn.user_id, NotificationKind.PAYMENT_FAILED, payload)
            self.analytics.log_event(AnalyticsEvents.PAYMENT_FAILED, dict(payload, user_id=txn.user_id))
        error = outcome.to_error()
        error.details["reference"] = txn.reference
        error.details["transaction_id"] = txn.id
        return Failure(error)

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    def process_refund(self, transaction_id: int, now: Optional[datetime] = None) -> Result[Transaction]:
        """
        Refund a COMPLETED transaction.

        Appends a REFUNDED row with the negated amount and reference
        `REFUND-<original>`, and marks the original REFUNDED, in one unit of work.

        Returns:
            Success(refund transaction)
        """
        now = now or utcnow()
        with self.store.unit_of_work() as uow:
            original = uow.transactions.get(transaction_id)
            if original is None:
                return Failure(NotFoundError("Transaction", transaction_id))
            if original.status != TransactionStatus.COMPLETED:
                return Failure(InvalidStateError(
                    "Only completed transactions can be refunded",
                    current_state=original.status.value,
                ))
            if not uow.transactions.transition(original, [TransactionStatus.COMPLETED], TransactionStatus.REFUNDED):
                return Failure(InvalidStateError("Transaction changed state during refund"))
            refund = record_refund(uow, original, now)

        logger.info(f"Refunded {original.reference} as {refund.reference}")
        self.notifier.notify(original.user_id, NotificationKind.PAYMENT_REFUNDED, transaction_payload(original))
        self.analytics.log_event(
            AnalyticsEvents.PAYMENT_REFUNDED,
            transaction_payload(original, user_id=original.user_id, refund_reference=refund.reference),
        )
        return Success(refund)

    # ------------------------------------------------------------------
    # Alternative instruments
    # ------------------------------------------------------------------

    async def create_alternative_payment(
        self,
        user_id: int,
        course_id: int,
        kind: InstrumentKind,
        params: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> Result[Transaction]:
        """
        Open a virtual account, e-wallet charge, QR code or retail outlet code.

        The transaction stays PENDING with the presentable handle in its
        metadata; the gateway settles it later by webhook.
        """
        now = now or utcnow()
        try:
            amount = Decimal(str(params["amount"]))
        except (KeyError, InvalidOperation):
            return Failure(ValidationError("A valid amount is required", field_errors={"amount": ["required"]}))
        if amount <= 0:
            return Failure(ValidationError("Amount must be positive", details={"amount": str(amount)}))

        provider = self.gateway.regional_provider
        with self.store.unit_of_work() as uow:
            if uow.users.get(user_id) is None:
                return Failure(NotFoundError("User", user_id))
            if uow.courses.get(course_id) is None:
                return Failure(NotFoundError("Course", course_id))
            txn = uow.transactions.create(
                user_id=user_id,
                course_id=course_id,
                amount=amount,
                currency=provider.currency,
                status=TransactionStatus.PENDING,
                timestamp=now,
                reference=provider.new_reference(),
                meta={"provider": provider.provider_name, "instrument_kind": kind.value},
            )

        outcome = await self.gateway.create_alternative_instrument(kind, params, txn.reference)

        with self.store.unit_of_work() as uow:
            txn = uow.transactions.get(txn.id)
            if outcome.ok:
                txn.meta["instrument"] = {key: None if value is None else str(value) for key, value in outcome.handle.items()}
                if outcome.provider_reference:
                    txn.meta["gateway_reference"] = outcome.provider_reference
                pay_by = payable_until(kind, params, outcome.handle, now)
                if pay_by is not None:
                    txn.meta["pay_by"] = pay_by.isoformat()
            elif uow.transactions.transition(txn, [TransactionStatus.PENDING], TransactionStatus.FAILED):
                txn.meta["failure_reason"] = outcome.reason
                if outcome.message:
                    txn.meta["failure_message"] = outcome.message

        if outcome.ok:
            logger.info(f"Created {kind.value} for {txn.reference}")
            return Success(txn)

        logger.warning(f"Creating {kind.value} for {txn.reference} failed: {outcome.reason}")
        payload = transaction_payload(txn, reason=outcome.reason)
        self.notifier.notify(user_id, NotificationKind.PAYMENT_FAILED, payload)
        self.analytics.log_event(AnalyticsEvents.PAYMENT_FAILED, dict(payload, user_id=user_id))
        return Failure(GatewayError(
            outcome.message or f"Could not create {kind.value}",
            reason_code=outcome.reason,
            provider=provider.provider_name,
            details={"reference": txn.reference, "transaction_id": txn.id},
        ))

    # ------------------------------------------------------------------
    # Pending-transaction housekeeping
    # ------------------------------------------------------------------

    @property
    def pending_ttl(self) -> timedelta:
        return timedelta(minutes=self.config.pending_transaction_ttl_minutes)

    def expire_stale_pending_transactions(self, now: Optional[datetime] = None) -> int:
        """
        PENDING transactions older than the TTL become EXPIRED.

        Alternative-instrument rows are kept until their instrument stops
        accepting payment, whichever is later.
        """
        now = now or utcnow()
        expired = 0
        with self.store.unit_of_work() as uow:
            for txn in uow.transactions.stale_pending(now - self.pending_ttl):
                pay_by = txn.get_meta("pay_by")
                if pay_by and datetime.fromisoformat(pay_by) > now:
                    continue
                if uow.transactions.transition(txn, [TransactionStatus.PENDING], TransactionStatus.EXPIRED):
                    expired += 1
        if expired:
            logger.info(f"Expired {expired} stale pending transactions")
        return expired

    def send_payment_reminders(self, now: Optional[datetime] = None) -> int:
        """One reminder per PENDING transaction older than half the TTL."""
        now = now or utcnow()
        reminders: List[Transaction] = []
        with self.store.unit_of_work() as uow:
            for txn in uow.transactions.stale_pending(now - self.pending_ttl / 2):
                if txn.get_meta("reminder_sent"):
                    continue
                txn.meta["reminder_sent"] = now.isoformat()
                reminders.append(txn)

        for txn in reminders:
            self.notifier.notify(txn.user_id, NotificationKind.PAYMENT_REMINDER, transaction_payload(txn))
        if reminders:
            logger.info(f"Sent {len(reminders)} payment reminders")
        return len(reminders)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_transaction(self, transaction_id: int) -> Optional[Transaction]:
        with self.store.unit_of_work() as uow:
            return uow.transactions.get(transaction_id)

    def list_transactions(self, user_id: int) -> List[Transaction]:
        with self.store.unit_of_work() as uow:
            return uow.transactions.list_for_user(user_id)

    def has_user_purchased_course(self, user_id: int, course_id: int) -> bool:
        with self.store.unit_of_work() as uow:
            return uow.transactions.has_completed_purchase(user_id, course_id)

    def latest_transaction_for_course(self, user_id: int, course_id: int) -> Optional[Transaction]:
        with self.store.unit_of_work() as uow:
            return uow.transactions.latest_for_course(user_id, course_id)

    def total_spent_in_period(self, user_id: int, start: datetime, end: datetime) -> Decimal:
        with self.store.unit_of_work() as uow:
            return uow.transactions.total_spent(user_id, start, end)
