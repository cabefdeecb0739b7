import asyncio
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from coursebilling.db.models import DisputeStatus, PlanType, SubscriptionStatus, TransactionStatus
from coursebilling.db.repositories import WebhookEventRepository
from coursebilling.integrations.payment_client import InstrumentKind
from coursebilling.services.results import WebhookOutcome
from coursebilling.services.webhooks import MAX_DELIVERY_ATTEMPTS, UNHANDLED_NOTE

NOW = datetime(2024, 6, 1, 8, 0)
REFERENCE = "TXN-0badc0de-1717228800000"


@pytest.fixture
def make_txn(store, user_id, course_id):
    def _make(reference=REFERENCE, status=TransactionStatus.PENDING, amount="49.99", **meta):
        with store.unit_of_work() as uow:
            return uow.transactions.create(
                user_id=user_id,
                course_id=course_id,
                amount=Decimal(amount),
                currency="USD",
                status=status,
                timestamp=NOW - timedelta(minutes=5),
                reference=reference,
                meta=dict(meta, provider="card"),
            )
    return _make


def event(event_id, event_type, **data):
    return {"id": event_id, "type": event_type, "created": 1717228800, "data": data}


async def deliver(container, sign, payload, now=NOW):
    body, signature = sign(payload)
    return await container.webhooks.ingest(body, signature, now=now)


def stored_event(store, event_id):
    with store.unit_of_work() as uow:
        return uow.webhook_events.get(event_id)


def txn_status(container, txn_id):
    return container.payments.get_transaction(txn_id).status


class TestPaymentEvents:
    async def test_succeeded_completes_and_enrolls(self, container, sign, notifier, make_txn, user_id, course_id):
        txn = make_txn()

        receipt = await deliver(container, sign, event("evt_1", "payment.succeeded", reference=REFERENCE))

        assert receipt.outcome == WebhookOutcome.APPLIED
        assert receipt.ok
        assert txn_status(container, txn.id) == TransactionStatus.COMPLETED
        assert container.enrollment.is_enrolled(user_id, course_id)
        assert [kind.value for kind in notifier.kinds()] == ["payment_success"]
        row = stored_event(container.store, "evt_1")
        assert row.processed
        assert row.signature_valid
        assert row.processed_at == NOW

    async def test_replay_is_skipped(self, container, sign, notifier, make_txn):
        make_txn()
        payload = event("evt_1", "payment.succeeded", reference=REFERENCE)

        first = await deliver(container, sign, payload)
        second = await deliver(container, sign, payload)

        assert first.outcome == WebhookOutcome.APPLIED
        assert second.outcome == WebhookOutcome.SKIPPED
        assert second.ok
        assert len(notifier.sent) == 1

    async def test_concurrent_deliveries_apply_once(self, container, sign, notifier, make_txn):
        make_txn()
        payload = event("evt_1", "payment.succeeded", reference=REFERENCE)

        receipts = await asyncio.gather(*(deliver(container, sign, payload) for _ in range(3)))

        outcomes = sorted(r.outcome for r in receipts)
        assert outcomes == [WebhookOutcome.APPLIED, WebhookOutcome.SKIPPED, WebhookOutcome.SKIPPED]
        assert len(notifier.sent) == 1

    async def test_failed_records_reason(self, container, sign, notifier, make_txn):
        txn = make_txn()

        receipt = await deliver(
            container, sign, event("evt_2", "payment.failed", reference=REFERENCE, failureReason="expired_card")
        )

        assert receipt.outcome == WebhookOutcome.APPLIED
        stored = container.payments.get_transaction(txn.id)
        assert stored.status == TransactionStatus.FAILED
        assert stored.get_meta("failure_reason") == "expired_card"
        assert [kind.value for kind in notifier.kinds()] == ["payment_failed"]

    async def test_refunded_writes_one_negative_row(self, container, sign, make_txn, user_id):
        txn = make_txn(status=TransactionStatus.COMPLETED)

        await deliver(container, sign, event("evt_3", "payment.refunded", reference=REFERENCE))
        await deliver(container, sign, event("evt_4", "payment.refunded", reference=REFERENCE))

        assert txn_status(container, txn.id) == TransactionStatus.REFUNDED
        rows = container.payments.list_transactions(user_id)
        refunds = [row for row in rows if row.reference == f"REFUND-{REFERENCE}"]
        assert len(refunds) == 1
        assert refunds[0].amount == Decimal("-49.99")
        assert sum(row.amount for row in rows) == Decimal("0")

    async def test_disputed_opens_a_single_dispute(self, container, sign, make_txn, user_id):
        txn = make_txn(status=TransactionStatus.COMPLETED)

        await deliver(container, sign, event("evt_5", "payment.disputed", reference=REFERENCE, disputeReason="fraudulent"))
        await deliver(container, sign, event("evt_6", "payment.disputed", reference=REFERENCE))

        assert txn_status(container, txn.id) == TransactionStatus.DISPUTED
        [dispute] = container.disputes.get_disputes_by_user(user_id)
        assert dispute.transaction_id == txn.id
        assert dispute.reason == "fraudulent"
        assert dispute.status == DisputeStatus.PENDING

    async def test_illegal_transition_is_ignored(self, container, sign, make_txn):
        txn = make_txn(status=TransactionStatus.FAILED)

        receipt = await deliver(container, sign, event("evt_7", "payment.succeeded", reference=REFERENCE))

        assert receipt.outcome == WebhookOutcome.APPLIED
        assert txn_status(container, txn.id) == TransactionStatus.FAILED
        assert stored_event(container.store, "evt_7").processed

    async def test_virtual_account_settles_after_the_pending_ttl(self, container, sign, user_id, course_id):
        txn = (await container.payments.create_alternative_payment(
            user_id, course_id, InstrumentKind.VIRTUAL_ACCOUNT, {"amount": "150000"}, now=NOW
        )).value
        await container.scheduler.run_once(NOW + timedelta(hours=2))

        receipt = await deliver(
            container, sign, event("evt_va", "payment.succeeded", reference=txn.reference), now=NOW + timedelta(hours=3)
        )

        assert receipt.outcome == WebhookOutcome.APPLIED
        assert txn_status(container, txn.id) == TransactionStatus.COMPLETED
        assert container.enrollment.is_enrolled(user_id, course_id)

    async def test_late_settlement_completes_an_expired_row(self, container, sign, user_id, course_id):
        txn = (await container.payments.create_alternative_payment(
            user_id, course_id, InstrumentKind.VIRTUAL_ACCOUNT, {"amount": "150000"}, now=NOW
        )).value
        container.payments.expire_stale_pending_transactions(NOW + timedelta(hours=25))
        assert txn_status(container, txn.id) == TransactionStatus.EXPIRED

        await deliver(
            container, sign, event("evt_late", "payment.succeeded", reference=txn.reference), now=NOW + timedelta(hours=26)
        )

        assert txn_status(container, txn.id) == TransactionStatus.COMPLETED
        assert container.enrollment.is_enrolled(user_id, course_id)


class TestRejections:
    async def test_tampered_body_is_rejected_and_audited(self, container, sign, make_txn):
        txn = make_txn()
        body, signature = sign(event("evt_8", "payment.succeeded", reference=REFERENCE))
        tampered = body.replace("evt_8", "evt_8 ")

        receipt = await container.webhooks.ingest(tampered, signature, now=NOW)

        assert receipt.outcome == WebhookOutcome.REJECTED
        assert not receipt.ok
        assert receipt.error.code == "INVALID_SIGNATURE"
        assert txn_status(container, txn.id) == TransactionStatus.PENDING
        row = stored_event(container.store, "evt_8 ")
        assert row is not None
        assert not row.signature_valid
        assert not row.processed

    async def test_genuine_delivery_after_forgery_still_applies(self, container, sign, make_txn):
        txn = make_txn()
        payload = event("evt_9", "payment.succeeded", reference=REFERENCE)
        body, _ = sign(payload)

        await container.webhooks.ingest(body, "0" * 64, now=NOW)
        receipt = await deliver(container, sign, payload)

        assert receipt.outcome == WebhookOutcome.APPLIED
        assert txn_status(container, txn.id) == TransactionStatus.COMPLETED
        assert stored_event(container.store, "evt_9").signature_valid

    async def test_missing_signature_is_rejected(self, container, sign, make_txn):
        body, _ = sign(event("evt_10", "payment.succeeded", reference=REFERENCE))

        receipt = await container.webhooks.ingest(body, None, now=NOW)

        assert receipt.outcome == WebhookOutcome.REJECTED
        assert receipt.error.status_code == 401

    async def test_unconfigured_secret_rejects_everything(self, container, sign, make_txn):
        txn = make_txn()
        container.webhooks.config.secret = None

        receipt = await deliver(container, sign, event("evt_11", "payment.succeeded", reference=REFERENCE))

        assert receipt.outcome == WebhookOutcome.REJECTED
        assert txn_status(container, txn.id) == TransactionStatus.PENDING

    async def test_malformed_payload_is_stored_but_never_retried(self, container, sign):
        body, signature = sign({"type": "payment.succeeded"})

        receipt = await container.webhooks.ingest(body, signature, now=NOW)

        assert receipt.outcome == WebhookOutcome.REJECTED
        assert receipt.error.code == "MALFORMED_PAYLOAD"
        row = stored_event(container.store, receipt.event_id)
        assert row.event_type == "malformed"
        assert row.attempts == MAX_DELIVERY_ATTEMPTS
        assert await container.webhooks.retry_failed_events(now=NOW) == []

    async def test_payment_event_without_reference_is_malformed(self, container, sign):
        receipt = await deliver(container, sign, event("evt_12", "payment.succeeded"))

        assert receipt.outcome == WebhookOutcome.REJECTED
        assert receipt.error.code == "MALFORMED_PAYLOAD"


class TestUnknownAndFailed:
    async def test_unknown_type_is_stored_and_marked_processed(self, container, sign, analytics):
        receipt = await deliver(container, sign, event("evt_13", "invoice.finalized", reference=REFERENCE))

        assert receipt.outcome == WebhookOutcome.IGNORED
        assert receipt.ok
        row = stored_event(container.store, "evt_13")
        assert row.processed
        assert row.error == UNHANDLED_NOTE

    async def test_unknown_reference_fails_then_succeeds_on_retry(self, container, sign, make_txn):
        receipt = await deliver(container, sign, event("evt_14", "payment.succeeded", reference=REFERENCE))

        assert receipt.outcome == WebhookOutcome.FAILED
        assert receipt.error.code == "WEBHOOK_PROCESSING_FAILED"
        assert receipt.error.retryable
        row = stored_event(container.store, "evt_14")
        assert not row.processed
        assert row.attempts == 1
        assert REFERENCE in row.error

        txn = make_txn()
        [retried] = await container.webhooks.retry_failed_events(now=NOW + timedelta(minutes=1))

        assert retried.outcome == WebhookOutcome.APPLIED
        assert txn_status(container, txn.id) == TransactionStatus.COMPLETED
        assert stored_event(container.store, "evt_14").processed

    async def test_event_stored_concurrently_is_applied_once(self, container, sign, notifier, make_txn, monkeypatch):
        txn = make_txn()
        read = WebhookEventRepository.get
        raced = []

        def get_then_lose_the_insert(repo, event_id):
            found = read(repo, event_id)
            if found is None and event_id == "evt_race" and not raced:
                raced.append(event_id)
                with container.store.unit_of_work() as other:
                    other.webhook_events.create(
                        event_id="evt_race",
                        event_type="payment.succeeded",
                        payload="{}",
                        received_at=NOW,
                        signature_valid=True,
                        processed=False,
                    )
            return found

        monkeypatch.setattr(WebhookEventRepository, "get", get_then_lose_the_insert)
        receipt = await deliver(container, sign, event("evt_race", "payment.succeeded", reference=REFERENCE))

        assert raced == ["evt_race"]
        assert receipt.outcome == WebhookOutcome.APPLIED
        assert txn_status(container, txn.id) == TransactionStatus.COMPLETED
        assert len(notifier.sent) == 1

    async def test_store_outage_is_a_retryable_failure(self, container, sign, monkeypatch):
        def unavailable(repo, event_id):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        monkeypatch.setattr(WebhookEventRepository, "get", unavailable)
        receipt = await deliver(container, sign, event("evt_down", "payment.succeeded", reference=REFERENCE))

        assert receipt.outcome == WebhookOutcome.FAILED
        assert receipt.error.code == "WEBHOOK_PROCESSING_FAILED"
        assert receipt.error.status_code == 503
        assert receipt.error.retryable

    async def test_purge_drops_old_events(self, container, sign):
        await deliver(container, sign, event("evt_old", "invoice.finalized"), now=NOW - timedelta(days=100))
        await deliver(container, sign, event("evt_new", "invoice.finalized"), now=NOW)

        assert container.webhooks.purge_old_events(now=NOW, retention_days=30) == 1
        assert stored_event(container.store, "evt_old") is None
        assert stored_event(container.store, "evt_new") is not None


class TestSubscriptionEvents:
    async def subscription(self, container, user_id, course_id):
        result = await container.billing.create_subscription(
            user_id, course_id, PlanType.MONTHLY, "19.99", now=NOW - timedelta(days=40)
        )
        return result.value

    async def test_payment_succeeded_reactivates_past_due_subscription(
        self, container, sign, make_txn, user_id, course_id, card_method_id
    ):
        subscription = await self.subscription(container, user_id, course_id)
        with container.store.unit_of_work() as uow:
            uow.subscriptions.update_by({"id": subscription.id}, {"status": SubscriptionStatus.PAST_DUE})
        make_txn(subscription_id=subscription.id)

        receipt = await deliver(container, sign, event("evt_20", "payment.succeeded", reference=REFERENCE))

        assert receipt.outcome == WebhookOutcome.APPLIED
        reactivated = container.billing.get_subscription(subscription.id)
        assert reactivated.status == SubscriptionStatus.ACTIVE
        assert reactivated.last_billing_date == NOW
        assert reactivated.next_billing_date == datetime(2024, 7, 1, 8, 0)

    async def test_subscription_activated_ends_trial(self, container, sign, user_id, course_id, card_method_id):
        trial = (await container.billing.create_subscription(
            user_id, course_id, PlanType.MONTHLY, "19.99", with_trial=True, now=NOW
        )).value

        await deliver(container, sign, event("evt_21", "subscription.activated", subscriptionId=trial.id))

        assert container.billing.get_subscription(trial.id).status == SubscriptionStatus.ACTIVE

    async def test_subscription_cancelled_keeps_period_end(self, container, sign, user_id, course_id, card_method_id):
        subscription = await self.subscription(container, user_id, course_id)

        receipt = await deliver(container, sign, event("evt_22", "subscription.cancelled", subscriptionId=subscription.id))

        assert receipt.outcome == WebhookOutcome.APPLIED
        canceled = container.billing.get_subscription(subscription.id)
        assert canceled.status == SubscriptionStatus.CANCELED
        assert canceled.canceled_at == NOW
        assert canceled.end_date == subscription.next_billing_date

    async def test_subscription_expired(self, container, sign, user_id, course_id, card_method_id):
        subscription = await self.subscription(container, user_id, course_id)

        await deliver(container, sign, event("evt_23", "subscription.expired", subscriptionId=subscription.id))

        expired = container.billing.get_subscription(subscription.id)
        assert expired.status == SubscriptionStatus.EXPIRED
        assert expired.end_date == NOW

    async def test_event_for_terminal_subscription_changes_nothing(self, container, sign, user_id, course_id, card_method_id):
        subscription = await self.subscription(container, user_id, course_id)
        await deliver(container, sign, event("evt_24", "subscription.expired", subscriptionId=subscription.id))

        await deliver(container, sign, event("evt_25", "subscription.activated", subscriptionId=subscription.id))

        assert container.billing.get_subscription(subscription.id).status == SubscriptionStatus.EXPIRED
