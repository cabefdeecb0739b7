import re
from datetime import datetime, timedelta
from decimal import Decimal

from coursebilling.core.constants import AnalyticsEvents
from coursebilling.db.models import TransactionStatus
from coursebilling.integrations.payment_client import InstrumentKind
from coursebilling.services.notifications import NotificationKind
from coursebilling.services.payments import payable_until
from coursebilling.services.results import Failure, Success

T0 = datetime(2024, 5, 1, 12, 0)


async def test_successful_payment_completes_and_enrolls(
    container, card_provider, notifier, analytics, user_id, course_id, card_method_id
):
    result = await container.payments.process_payment(user_id, course_id, "49.99", now=T0)

    assert isinstance(result, Success)
    txn = result.value
    assert txn.status == TransactionStatus.COMPLETED
    assert txn.amount == Decimal("49.99")
    assert txn.currency == "USD"
    assert txn.payment_method_id == card_method_id
    assert re.match(r"^TXN-[0-9a-f]{8}-\d{13}$", txn.reference)
    assert txn.get_meta("gateway_reference") == f"gw_{txn.reference}"

    [charge] = card_provider.charges
    assert charge["token"] == "tok_visa"
    assert charge["reference"] == txn.reference
    assert container.enrollment.is_enrolled(user_id, course_id)
    assert container.payments.has_user_purchased_course(user_id, course_id)
    assert notifier.kinds() == [NotificationKind.PAYMENT_SUCCESS]
    assert AnalyticsEvents.PAYMENT_SUCCESS in analytics.names()


async def test_declined_payment_is_recorded_as_failed(container, card_provider, notifier, user_id, course_id, card_method_id):
    card_provider.decline_next("insufficient_funds")

    result = await container.payments.process_payment(user_id, course_id, Decimal("49.99"), now=T0)

    assert isinstance(result, Failure)
    assert result.code == "GATEWAY_ERROR"
    [txn] = container.payments.list_transactions(user_id)
    assert txn.status == TransactionStatus.FAILED
    assert txn.get_meta("failure_reason") == "insufficient_funds"
    assert result.error.details["transaction_id"] == txn.id
    assert not container.enrollment.is_enrolled(user_id, course_id)
    assert notifier.kinds() == [NotificationKind.PAYMENT_FAILED]


async def test_non_positive_amount_is_rejected_before_anything_is_written(container, card_provider, user_id, course_id, card_method_id):
    result = await container.payments.process_payment(user_id, course_id, "0", now=T0)

    assert result.code == "VALIDATION_ERROR"
    assert card_provider.charges == []
    assert container.payments.list_transactions(user_id) == []


async def test_unknown_course_is_not_found(container, user_id, card_method_id):
    result = await container.payments.process_payment(user_id, 404, "10.00", now=T0)

    assert result.code == "NOT_FOUND"


async def test_refund_appends_negative_row_and_nets_to_zero(container, notifier, user_id, course_id, card_method_id):
    original = (await container.payments.process_payment(user_id, course_id, "49.99", now=T0)).value

    result = container.payments.process_refund(original.id, now=T0 + timedelta(days=1))

    refund = result.value
    assert refund.reference == f"REFUND-{original.reference}"
    assert refund.amount == Decimal("-49.99")
    assert refund.status == TransactionStatus.REFUNDED
    assert refund.get_meta("original_transaction_id") == original.id
    assert container.payments.get_transaction(original.id).status == TransactionStatus.REFUNDED
    rows = container.payments.list_transactions(user_id)
    assert sum(row.amount for row in rows) == Decimal("0")
    assert NotificationKind.PAYMENT_REFUNDED in notifier.kinds()


async def test_refund_twice_is_an_invalid_state(container, user_id, course_id, card_method_id):
    original = (await container.payments.process_payment(user_id, course_id, "49.99", now=T0)).value
    container.payments.process_refund(original.id, now=T0)

    result = container.payments.process_refund(original.id, now=T0)

    assert result.code == "INVALID_STATE"
    assert len(container.payments.list_transactions(user_id)) == 2


def test_refund_of_unknown_transaction_is_not_found(container):
    assert container.payments.process_refund(12345).code == "NOT_FOUND"


async def test_alternative_payment_stays_pending_with_handle(container, regional_provider, user_id, course_id):
    result = await container.payments.create_alternative_payment(
        user_id, course_id, InstrumentKind.VIRTUAL_ACCOUNT, {"amount": "150000", "bank_code": "BCA"}, now=T0
    )

    txn = result.value
    assert txn.status == TransactionStatus.PENDING
    assert txn.currency == "IDR"
    assert txn.reference.startswith("XND-")
    assert txn.get_meta("instrument")["account_number"] == "8808000123"
    assert txn.get_meta("instrument_kind") == "virtual_account"
    assert txn.get_meta("gateway_reference") == "va_1"


async def test_rejected_alternative_payment_fails_the_transaction(container, notifier, user_id, course_id):
    result = await container.payments.create_alternative_payment(
        user_id, course_id, InstrumentKind.EWALLET, {"amount": 1000, "reject": True}, now=T0
    )

    assert result.code == "GATEWAY_ERROR"
    assert result.error.reason_code == "channel_unavailable"
    [txn] = container.payments.list_transactions(user_id)
    assert txn.status == TransactionStatus.FAILED
    assert txn.get_meta("failure_reason") == "channel_unavailable"
    assert notifier.kinds() == [NotificationKind.PAYMENT_FAILED]


async def test_alternative_payment_requires_an_amount(container, user_id, course_id):
    result = await container.payments.create_alternative_payment(
        user_id, course_id, InstrumentKind.QR_CODE, {}, now=T0
    )

    assert result.code == "VALIDATION_ERROR"


async def test_pending_transactions_get_one_reminder_then_expire(container, notifier, user_id, course_id):
    txn = (await container.payments.create_alternative_payment(
        user_id, course_id, InstrumentKind.QR_CODE, {"amount": "150000", "expires_in": 600}, now=T0
    )).value

    assert container.payments.send_payment_reminders(T0 + timedelta(minutes=10)) == 0
    assert container.payments.send_payment_reminders(T0 + timedelta(minutes=31)) == 1
    assert container.payments.send_payment_reminders(T0 + timedelta(minutes=45)) == 0
    assert notifier.kinds() == [NotificationKind.PAYMENT_REMINDER]

    assert container.payments.expire_stale_pending_transactions(T0 + timedelta(minutes=59)) == 0
    assert container.payments.expire_stale_pending_transactions(T0 + timedelta(minutes=61)) == 1
    assert container.payments.get_transaction(txn.id).status == TransactionStatus.EXPIRED


async def test_virtual_account_stays_payable_past_the_pending_ttl(container, user_id, course_id):
    txn = (await container.payments.create_alternative_payment(
        user_id, course_id, InstrumentKind.VIRTUAL_ACCOUNT, {"amount": "150000"}, now=T0
    )).value

    assert txn.get_meta("pay_by") == (T0 + timedelta(hours=24)).isoformat()
    assert container.payments.expire_stale_pending_transactions(T0 + timedelta(hours=2)) == 0
    assert container.payments.get_transaction(txn.id).status == TransactionStatus.PENDING
    assert container.payments.expire_stale_pending_transactions(T0 + timedelta(hours=25)) == 1


def test_gateway_expiry_wins_over_the_default_window():
    handle = {"expiration_date": "2024-01-31T12:00:00+07:00"}

    assert payable_until(InstrumentKind.RETAIL_OUTLET, {}, handle, T0) == datetime(2024, 1, 31, 5, 0)
    assert payable_until(InstrumentKind.EWALLET, {}, {}, T0) is None


async def test_total_spent_counts_completed_payments_in_window(container, card_provider, user_id, course_id, second_course_id, card_method_id):
    await container.payments.process_payment(user_id, course_id, "49.99", now=T0)
    await container.payments.process_payment(user_id, second_course_id, "29.99", now=T0 + timedelta(days=2))
    card_provider.decline_next()
    await container.payments.process_payment(user_id, second_course_id, "29.99", now=T0 + timedelta(days=3))

    assert container.payments.total_spent_in_period(user_id, T0, T0 + timedelta(days=5)) == Decimal("79.98")
    assert container.payments.total_spent_in_period(user_id, T0 + timedelta(days=1), T0 + timedelta(days=5)) == Decimal("29.99")


async def test_latest_transaction_for_course(container, card_provider, user_id, course_id, card_method_id):
    await container.payments.process_payment(user_id, course_id, "49.99", now=T0)
    card_provider.decline_next()
    await container.payments.process_payment(user_id, course_id, "49.99", now=T0 + timedelta(hours=1))

    latest = container.payments.latest_transaction_for_course(user_id, course_id)

    assert latest.status == TransactionStatus.FAILED
