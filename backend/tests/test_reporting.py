from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from coursebilling.core.constants import AnalyticsEvents
from coursebilling.db.models import PlanType, TransactionStatus
from coursebilling.services.reporting import rate

T0 = datetime(2024, 4, 1, 10, 0)
WINDOW = (T0 - timedelta(days=1), T0 + timedelta(days=10))


@pytest.fixture
async def ledger(container, card_provider, user_id, other_user_id, course_id, second_course_id, card_method_id):
    """Three subscriptions and four charges spread over the first week of April."""
    billing = container.billing
    await billing.create_subscription(user_id, course_id, PlanType.MONTHLY, "19.99", now=T0)
    await billing.create_subscription(user_id, second_course_id, PlanType.YEARLY, "99.00", with_trial=True, now=T0)
    quarterly = (await billing.create_subscription(
        other_user_id, course_id, PlanType.QUARTERLY, "30.00", now=T0 + timedelta(days=1)
    )).value
    await billing.cancel_subscription(quarterly.id, other_user_id, now=T0 + timedelta(days=2))

    card_provider.decline_next()
    await container.payments.process_payment(user_id, second_course_id, "5.00", now=T0 + timedelta(days=3))

    await billing.run_renewal_cycle(T0 + timedelta(days=7))


def test_rate_of_empty_denominator_is_zero():
    assert rate(0, 0) == 0.0
    assert rate(3, 4) == 0.75


async def test_payment_analytics(container, analytics, ledger):
    report = container.reporting.payment_analytics(*WINDOW)

    assert report["total_transactions"] == 4
    assert report["successful_transactions"] == 3
    assert report["failed_transactions"] == 1
    assert report["success_rate"] == 0.75
    assert report["total_revenue"] == Decimal("148.99")
    assert report["average_amount"] == Decimal("49.66")
    assert report["payment_method_distribution"] == {"CREDIT_CARD": 3, "UNKNOWN": 1}
    assert sum(report["daily_transactions"].values()) == 4
    assert report["daily_transactions"]["2024-04-01"] == 1
    assert AnalyticsEvents.REPORT_GENERATED in analytics.names()


async def test_refund_rows_are_not_payment_attempts(container, user_id, course_id, card_method_id):
    txn = (await container.payments.process_payment(user_id, course_id, "49.99", now=T0)).value
    container.payments.process_refund(txn.id, now=T0 + timedelta(hours=1))

    report = container.reporting.payment_analytics(*WINDOW)

    assert report["total_transactions"] == 1
    assert report["successful_transactions"] == 0
    assert report["total_revenue"] == Decimal("0")
    assert container.payments.get_transaction(txn.id).status == TransactionStatus.REFUNDED


async def test_subscription_metrics(container, ledger):
    report = container.reporting.subscription_metrics()

    assert report["total_subscriptions"] == 3
    assert report["active_subscriptions"] == 2
    assert report["total_active_revenue"] == Decimal("118.99")
    assert report["subscriptions_by_plan"] == {"MONTHLY": 1, "YEARLY": 1, "QUARTERLY": 1}
    assert report["revenue_by_plan"] == {"MONTHLY": Decimal("19.99"), "YEARLY": Decimal("99.00")}
    assert report["subscriptions_by_status"] == {"ACTIVE": 2, "CANCELED": 1}
    assert report["churn_rate"] == pytest.approx(1 / 3)
    assert report["trial_conversion_rate"] == 1.0
    assert report["average_subscription_length_days"] == 91.0


async def test_subscription_metrics_for_one_user_and_window(container, ledger, other_user_id):
    per_user = container.reporting.subscription_metrics(user_id=other_user_id)
    later = container.reporting.subscription_metrics(start=T0 + timedelta(hours=12))

    assert per_user["total_subscriptions"] == 1
    assert per_user["churn_rate"] == 1.0
    assert later["total_subscriptions"] == 1


async def test_dispute_analytics(container, user_id, course_id, card_method_id):
    first = (await container.payments.process_payment(user_id, course_id, "10.00", now=T0)).value
    second = (await container.payments.process_payment(user_id, course_id, "10.00", now=T0)).value
    container.disputes.create_dispute(first.id, "fraudulent", now=T0)
    container.disputes.create_dispute(second.id, "fraudulent", now=T0 + timedelta(days=1))

    report = container.reporting.dispute_analytics(*WINDOW)

    assert report["total_disputes"] == 2
    assert report["dispute_reasons"] == {"fraudulent": 2}
    assert report["daily_disputes"] == {"2024-04-01": 1, "2024-04-02": 1}
    assert report["merchant_win_rate"] == 0.0


async def test_webhook_stats(container, sign):
    body, signature = sign({"id": "evt_ok", "type": "invoice.paid", "data": {}})
    await container.webhooks.ingest(body, signature, now=T0)
    await container.webhooks.ingest('{"id": "evt_forged", "type": "payment.succeeded"}', "bad", now=T0)

    report = container.reporting.webhook_stats(*WINDOW)

    assert report["total_events"] == 2
    assert report["events_by_type"] == {"invoice.paid": 1, "payment.succeeded": 1}
    assert report["processed"] == 1
    assert report["rejected_signatures"] == 1


def test_empty_ledger_reports_zeroes(container):
    payments = container.reporting.payment_analytics(*WINDOW)
    subscriptions = container.reporting.subscription_metrics()

    assert payments["total_transactions"] == 0
    assert payments["success_rate"] == 0.0
    assert payments["average_amount"] == Decimal("0")
    assert subscriptions["churn_rate"] == 0.0
    assert subscriptions["trial_conversion_rate"] == 0.0
    assert subscriptions["average_subscription_length_days"] == 0.0
