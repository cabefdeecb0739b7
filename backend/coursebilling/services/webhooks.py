"""
Payment gateway webhook ingestion.

Per delivery: verify the HMAC signature, store the raw event, then claim it
(processed false -> true) and apply its state changes in one unit of work. A
delivery that loses the claim, or arrives after the event was processed, is a
no-op.
"""

import hashlib
import json
from contextlib import nullcontext
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError

from ..core.config import WebhookConfig
from ..core.constants import AnalyticsEvents
from ..core.exceptions import (
    AppException,
    DatabaseError,
    MalformedPayloadError,
    WebhookProcessingError,
    WebhookSignatureError,
)
from ..core.logging_config import bind_logger, get_logger
from ..core.security import verify_signature
from ..db import LedgerSession, LedgerStore, utcnow
from ..db.models import (
    RENEWABLE_STATUSES,
    Subscription,
    SubscriptionStatus,
    Transaction,
    TransactionStatus,
)
from .analytics import AnalyticsSink
from .billing import BillingEngine
from .disputes import open_dispute
from .locks import KeyedLocks
from .notifications import NotificationKind, NotificationSink
from .payments import record_refund, transaction_payload
from .results import WebhookOutcome, WebhookReceipt

logger = get_logger(__name__)

MAX_DELIVERY_ATTEMPTS = 5
UNHANDLED_NOTE = "unhandled event type"


class WebhookEventType(str, Enum):
    """Gateway event types this service applies."""
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"
    PAYMENT_DISPUTED = "payment.disputed"
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_ACTIVATED = "subscription.activated"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_EXPIRED = "subscription.expired"

    @classmethod
    def parse(cls, value: str) -> Optional["WebhookEventType"]:
        try:
            return cls(value)
        except ValueError:
            return None

    @property
    def is_payment_event(self) -> bool:
        return self.value.startswith("payment.")


class WebhookData(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    reference: Optional[str] = None
    status: Optional[str] = None
    failure_reason: Optional[str] = Field(default=None, alias="failureReason")
    dispute_reason: Optional[str] = Field(default=None, alias="disputeReason")
    subscription_id: Optional[int] = Field(default=None, alias="subscriptionId")


class WebhookPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1, max_length=200)
    type: str = Field(min_length=1, max_length=100)
    created: Optional[Union[int, str]] = None
    data: WebhookData = Field(default_factory=WebhookData)


def _decode(raw: Union[str, bytes]) -> str:
    if isinstance(raw, bytes):
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedPayloadError("Payload is not valid UTF-8") from e
    return raw


def _fallback_event_id(prefix: str, raw: str) -> str:
    return f"{prefix}-{hashlib.sha256(raw.encode('utf-8')).hexdigest()[:32]}"


def parse_payload(raw: str) -> WebhookPayload:
    """
    Parse and validate a webhook body.

    Raises:
        MalformedPayloadError: Invalid JSON, missing id/type, or a payment
            event without a transaction reference
    """
    try:
        document = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MalformedPayloadError(f"Payload is not valid JSON: {e.msg}") from e
    if not isinstance(document, dict):
        raise MalformedPayloadError("Payload must be a JSON object")
    try:
        payload = WebhookPayload.model_validate(document)
    except PydanticValidationError as e:
        raise MalformedPayloadError(
            "Payload does not match the webhook schema",
            details={"errors": [err["msg"] for err in e.errors()]},
        ) from e

    event_type = WebhookEventType.parse(payload.type)
    if event_type is not None and event_type.is_payment_event and not payload.data.reference:
        raise MalformedPayloadError(f"{payload.type} requires data.reference")
    return payload


class WebhookProcessor:
    """Verifies, deduplicates and applies gateway callbacks."""

    def __init__(
        self,
        store: LedgerStore,
        billing: BillingEngine,
        notifier: NotificationSink,
        analytics: AnalyticsSink,
        config: WebhookConfig,
        subscription_locks: Optional[KeyedLocks] = None,
    ):
        self.store = store
        self.billing = billing
        self.notifier = notifier
        self.analytics = analytics
        self.config = config
        self.locks = subscription_locks or billing.locks

        self._handlers: Dict[WebhookEventType, Callable] = {
            WebhookEventType.PAYMENT_SUCCEEDED: self._on_payment_succeeded,
            WebhookEventType.PAYMENT_FAILED: self._on_payment_failed,
            WebhookEventType.PAYMENT_REFUNDED: self._on_payment_refunded,
            WebhookEventType.PAYMENT_DISPUTED: self._on_payment_disputed,
            WebhookEventType.SUBSCRIPTION_CREATED: self._on_subscription_created,
            WebhookEventType.SUBSCRIPTION_ACTIVATED: self._on_subscription_activated,
            WebhookEventType.SUBSCRIPTION_CANCELLED: self._on_subscription_cancelled,
            WebhookEventType.SUBSCRIPTION_EXPIRED: self._on_subscription_expired,
        }

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def ingest(
        self,
        raw: Union[str, bytes],
        signature: Optional[str],
        now: Optional[datetime] = None,
    ) -> WebhookReceipt:
        """
        Handle one delivery. Never raises for bad input or failed dispatch;
        the receipt says what happened.
        """
        now = now or utcnow()
        try:
            text = _decode(raw)
        except MalformedPayloadError as e:
            logger.warning(f"Rejected webhook: {e.message}")
            return WebhookReceipt(None, WebhookOutcome.REJECTED, detail=e.message, error=e)

        if not self.config.secret:
            logger.error("Webhook secret is not configured; rejecting delivery")
            return self._reject_signature(text, now, "webhook secret not configured")
        if not verify_signature(self.config.secret, text, signature):
            return self._reject_signature(text, now, "signature mismatch")

        try:
            payload = parse_payload(text)
        except MalformedPayloadError as e:
            event_id = self._store_malformed(text, now, e)
            logger.warning(f"Rejected malformed webhook {event_id}: {e.message}")
            return WebhookReceipt(event_id, WebhookOutcome.REJECTED, detail=e.message, error=e)

        try:
            stored = self._store_verified(payload, text, now)
        except DatabaseError as e:
            logger.error(f"Could not store webhook {payload.id}: {e.message}")
            error = WebhookProcessingError("Webhook could not be stored", event_id=payload.id)
            return WebhookReceipt(payload.id, WebhookOutcome.FAILED, payload.type, e.message, error)
        if stored is not None:
            return stored
        return await self._process(payload, now)

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def _reject_signature(self, text: str, now: datetime, reason: str) -> WebhookReceipt:
        event_id, event_type = None, "unknown"
        try:
            document = json.loads(text)
            if isinstance(document, dict):
                event_id = str(document.get("id") or "") or None
                event_type = str(document.get("type") or "unknown")[:100]
        except json.JSONDecodeError:
            pass

        audit_id = _fallback_event_id("unverified", text)
        try:
            with self.store.unit_of_work() as uow:
                # Never let an unverified body overwrite a real event with the same id
                if event_id and uow.webhook_events.get(event_id) is None:
                    audit_id = event_id
                if uow.webhook_events.get(audit_id) is None:
                    uow.webhook_events.create(
                        event_id=audit_id,
                        event_type=event_type,
                        payload=text,
                        received_at=now,
                        signature_valid=False,
                        processed=False,
                        error=reason,
                    )
        except IntegrityError:
            logger.info(f"Webhook {audit_id} was stored concurrently; keeping that row")
        except DatabaseError as e:
            logger.error(f"Could not audit rejected webhook {audit_id}: {e.message}")

        logger.warning(f"Rejected webhook {event_id or audit_id}: {reason}")
        error = WebhookSignatureError(event_id=event_id)
        return WebhookReceipt(event_id, WebhookOutcome.REJECTED, event_type, reason, error)

    def _store_malformed(self, text: str, now: datetime, error: MalformedPayloadError) -> str:
        event_id = _fallback_event_id("malformed", text)
        try:
            with self.store.unit_of_work() as uow:
                if uow.webhook_events.get(event_id) is None:
                    uow.webhook_events.create(
                        event_id=event_id,
                        event_type="malformed",
                        payload=text,
                        received_at=now,
                        signature_valid=True,
                        processed=False,
                        attempts=MAX_DELIVERY_ATTEMPTS,
                        error=error.message,
                    )
        except IntegrityError:
            logger.info(f"Malformed webhook {event_id} was stored concurrently")
        except DatabaseError as e:
            logger.error(f"Could not store malformed webhook {event_id}: {e.message}")
        return event_id

    def _store_verified(self, payload: WebhookPayload, text: str, now: datetime) -> Optional[WebhookReceipt]:
        """Record the event before any side effect; short-circuit replays."""
        try:
            return self._record_verified(payload, text, now)
        except IntegrityError:
            # A concurrent delivery inserted the row first; its state decides
            logger.info(f"Webhook {payload.id} was stored concurrently, re-reading")
            return self._record_verified(payload, text, now)

    def _record_verified(self, payload: WebhookPayload, text: str, now: datetime) -> Optional[WebhookReceipt]:
        with self.store.unit_of_work() as uow:
            event = uow.webhook_events.get(payload.id)
            if event is None:
                uow.webhook_events.create(
                    event_id=payload.id,
                    event_type=payload.type[:100],
                    payload=text,
                    received_at=now,
                    signature_valid=True,
                    processed=False,
                )
                return None
            if event.processed:
                logger.info(f"Webhook {payload.id} already processed, skipping")
                return WebhookReceipt(payload.id, WebhookOutcome.SKIPPED, payload.type)
            if not event.signature_valid:
                event.signature_valid = True
                event.payload = text
                event.event_type = payload.type[:100]
                event.error = None
        return None

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _subscription_for(self, payload: WebhookPayload) -> Optional[int]:
        if payload.data.subscription_id is not None:
            return payload.data.subscription_id
        if not payload.data.reference:
            return None
        with self.store.unit_of_work() as uow:
            txn = uow.transactions.get_by_reference(payload.data.reference)
            return txn.subscription_id if txn is not None else None

    async def _process(self, payload: WebhookPayload, now: datetime) -> WebhookReceipt:
        log = bind_logger(logger, event_id=payload.id)
        event_type = WebhookEventType.parse(payload.type)

        subscription_id = self._subscription_for(payload)
        lock = self.locks(subscription_id) if subscription_id is not None else nullcontext()
        effects: List[Callable[[], None]] = []

        try:
            async with lock:
                with self.store.unit_of_work() as uow:
                    if not uow.webhook_events.claim(payload.id, now):
                        log.info("Lost the claim to a concurrent delivery, skipping")
                        return WebhookReceipt(payload.id, WebhookOutcome.SKIPPED, payload.type)
                    if event_type is None:
                        uow.webhook_events.update_by({"event_id": payload.id}, {"error": UNHANDLED_NOTE})
                    else:
                        self._handlers[event_type](uow, payload, now, effects)
        except Exception as e:
            log.error(f"Applying {payload.type} failed: {e}", exc_info=not isinstance(e, AppException))
            try:
                with self.store.unit_of_work() as uow:
                    uow.webhook_events.record_failure(payload.id, str(e) or e.__class__.__name__)
            except DatabaseError as store_error:
                log.error(f"Could not record the failure: {store_error.message}")
            error = WebhookProcessingError(str(e) or "Webhook processing failed", event_id=payload.id)
            return WebhookReceipt(payload.id, WebhookOutcome.FAILED, payload.type, str(e), error)

        self.analytics.log_event(AnalyticsEvents.WEBHOOK_RECEIVED, {
            "event_id": payload.id,
            "event_type": payload.type,
            "handled": event_type is not None,
        })
        if event_type is None:
            log.info(f"Stored {payload.type} without applying it: {UNHANDLED_NOTE}")
            return WebhookReceipt(payload.id, WebhookOutcome.IGNORED, payload.type, UNHANDLED_NOTE)

        for effect in effects:
            effect()
        log.info(f"Applied {payload.type}")
        return WebhookReceipt(payload.id, WebhookOutcome.APPLIED, payload.type)

    def _transaction(self, uow: LedgerSession, payload: WebhookPayload) -> Transaction:
        txn = uow.transactions.get_by_reference(payload.data.reference)
        if txn is None:
            # Possibly delivered before our own write committed; the gateway will redeliver
            raise WebhookProcessingError(f"Unknown transaction reference {payload.data.reference}", payload.id)
        return txn

    def _move(self, uow: LedgerSession, txn: Transaction, new_status: TransactionStatus, payload: WebhookPayload) -> bool:
        """Apply a transaction transition if legal; illegal ones are logged and ignored."""
        if txn.status == new_status:
            return False
        if not txn.can_transition_to(new_status):
            logger.warning(
                f"Ignoring {payload.type} for {txn.reference}: {txn.status.value} -> {new_status.value} is not allowed"
            )
            return False
        return uow.transactions.transition(txn, [txn.status], new_status)

    def _on_payment_succeeded(self, uow, payload, now, effects) -> None:
        txn = self._transaction(uow, payload)
        if not self._move(uow, txn, TransactionStatus.COMPLETED, payload):
            return
        uow.users.enroll(txn.user_id, txn.course_id, now)
        if txn.subscription_id is not None and self.billing.activate_after_payment(uow, txn.subscription_id, now):
            logger.info(f"Subscription {txn.subscription_id} reactivated by {txn.reference}")
        payload_props = transaction_payload(txn)
        effects.append(lambda: self.notifier.notify(txn.user_id, NotificationKind.PAYMENT_SUCCESS, payload_props))
        effects.append(lambda: self.analytics.log_event(
            AnalyticsEvents.PAYMENT_SUCCESS, dict(payload_props, user_id=txn.user_id, source="webhook")
        ))

    def _on_payment_failed(self, uow, payload, now, effects) -> None:
        txn = self._transaction(uow, payload)
        if not self._move(uow, txn, TransactionStatus.FAILED, payload):
            return
        reason = payload.data.failure_reason or "unknown"
        txn.meta["failure_reason"] = reason
        payload_props = transaction_payload(txn, reason=reason)
        effects.append(lambda: self.notifier.notify(txn.user_id, NotificationKind.PAYMENT_FAILED, payload_props))
        effects.append(lambda: self.analytics.log_event(
            AnalyticsEvents.PAYMENT_FAILED, dict(payload_props, user_id=txn.user_id, source="webhook")
        ))

    def _on_payment_refunded(self, uow, payload, now, effects) -> None:
        txn = self._transaction(uow, payload)
        moved = self._move(uow, txn, TransactionStatus.REFUNDED, payload)
        if txn.status != TransactionStatus.REFUNDED:
            return
        # Keep the ledger netting to zero even when the refund started at the gateway
        record_refund(uow, txn, now)
        if moved:
            payload_props = transaction_payload(txn)
            effects.append(lambda: self.notifier.notify(txn.user_id, NotificationKind.PAYMENT_REFUNDED, payload_props))
            effects.append(lambda: self.analytics.log_event(
                AnalyticsEvents.PAYMENT_REFUNDED, dict(payload_props, user_id=txn.user_id, source="webhook")
            ))

    def _on_payment_disputed(self, uow, payload, now, effects) -> None:
        txn = self._transaction(uow, payload)
        if txn.status != TransactionStatus.DISPUTED and not self._move(uow, txn, TransactionStatus.DISPUTED, payload):
            return
        dispute, created = open_dispute(uow, txn, payload.data.dispute_reason or "chargeback", None, now)
        if not created:
            return
        payload_props = transaction_payload(txn, reason=dispute.reason, dispute_id=dispute.id)
        effects.append(lambda: self.notifier.notify(txn.user_id, NotificationKind.PAYMENT_DISPUTED, payload_props))
        effects.append(lambda: self.analytics.log_event(
            AnalyticsEvents.DISPUTE_CREATED, dict(payload_props, user_id=txn.user_id, source="webhook")
        ))

    def _subscription(self, uow: LedgerSession, payload: WebhookPayload) -> Optional[Subscription]:
        subscription_id = payload.data.subscription_id
        if subscription_id is None and payload.data.reference:
            txn = uow.transactions.get_by_reference(payload.data.reference)
            subscription_id = txn.subscription_id if txn is not None else None
        subscription = uow.subscriptions.get(subscription_id) if subscription_id is not None else None
        if subscription is None:
            logger.warning(f"{payload.type} for unknown subscription {subscription_id}, nothing to apply")
            return None
        if subscription.status.is_terminal:
            logger.warning(
                f"Ignoring {payload.type} for subscription {subscription.id}: it is {subscription.status.value}"
            )
            return None
        return subscription

    def _on_subscription_created(self, uow, payload, now, effects) -> None:
        subscription = self._subscription(uow, payload)
        if subscription is not None:
            logger.info(f"Gateway confirmed subscription {subscription.id}")

    def _on_subscription_activated(self, uow, payload, now, effects) -> None:
        subscription = self._subscription(uow, payload)
        if subscription is None:
            return
        if subscription.status == SubscriptionStatus.ACTIVE:
            return
        self.billing.activate_after_payment(uow, subscription.id, now)

    def _on_subscription_cancelled(self, uow, payload, now, effects) -> None:
        subscription = self._subscription(uow, payload)
        if subscription is None:
            return
        uow.subscriptions.conditional_update(
            subscription.id,
            RENEWABLE_STATUSES,
            status=SubscriptionStatus.CANCELED,
            canceled_at=now,
            end_date=subscription.end_date or subscription.next_billing_date or now,
        )
        subscription_id = subscription.id
        effects.append(lambda: self.analytics.log_event(
            AnalyticsEvents.SUBSCRIPTION_CANCELED, {"subscription_id": subscription_id, "source": "webhook"}
        ))

    def _on_subscription_expired(self, uow, payload, now, effects) -> None:
        subscription = self._subscription(uow, payload)
        if subscription is None:
            return
        uow.subscriptions.conditional_update(
            subscription.id,
            RENEWABLE_STATUSES,
            status=SubscriptionStatus.EXPIRED,
            end_date=subscription.end_date or now,
        )
        subscription_id = subscription.id
        effects.append(lambda: self.analytics.log_event(
            AnalyticsEvents.SUBSCRIPTION_EXPIRED, {"subscription_id": subscription_id, "source": "webhook"}
        ))

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def retry_failed_events(self, now: Optional[datetime] = None, limit: int = 100) -> List[WebhookReceipt]:
        """Re-apply verified events that failed earlier, oldest first."""
        now = now or utcnow()
        with self.store.unit_of_work() as uow:
            pending = [
                (event.event_id, event.payload)
                for event in uow.webhook_events.list_unprocessed(
                    signature_valid=True, max_attempts=MAX_DELIVERY_ATTEMPTS, limit=limit
                )
            ]

        receipts = []
        for event_id, text in pending:
            try:
                payload = parse_payload(text)
            except MalformedPayloadError as e:
                with self.store.unit_of_work() as uow:
                    uow.webhook_events.record_failure(event_id, e.message)
                receipts.append(WebhookReceipt(event_id, WebhookOutcome.REJECTED, detail=e.message, error=e))
                continue
            receipts.append(await self._process(payload, now))

        if receipts:
            applied = sum(1 for r in receipts if r.outcome == WebhookOutcome.APPLIED)
            logger.info(f"Retried {len(receipts)} webhook events, {applied} applied")
        return receipts

    def purge_old_events(self, now: Optional[datetime] = None, retention_days: Optional[int] = None) -> int:
        now = now or utcnow()
        days = retention_days if retention_days is not None else self.config.retention_days
        with self.store.unit_of_work() as uow:
            deleted = uow.webhook_events.delete_older_than(now - timedelta(days=days))
        if deleted:
            logger.info(f"Purged {deleted} webhook events older than {days} days")
        return deleted
