"""
Read-only rollups over the ledger.

Everything here is recomputed from the current ledger state on each call;
nothing is cached or persisted.
"""

from collections import Counter, defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from ..core.constants import AnalyticsEvents
from ..core.logging_config import get_logger
from ..db import LedgerStore
from ..db.models import Subscription, SubscriptionStatus, Transaction, TransactionStatus
from .analytics import AnalyticsSink
from .disputes import dispute_metrics

logger = get_logger(__name__)

ZERO = Decimal("0.00")


def rate(numerator: int, denominator: int) -> float:
    """Fraction in [0, 1]; an empty denominator yields 0.0."""
    return numerator / denominator if denominator else 0.0


def _daily_counts(timestamps: Iterable[datetime]) -> Dict[str, int]:
    counts = Counter(ts.date().isoformat() for ts in timestamps)
    return dict(sorted(counts.items()))


def _period(start: Optional[datetime], end: Optional[datetime]) -> Dict[str, Optional[str]]:
    return {
        "start": start.isoformat() if start else None,
        "end": end.isoformat() if end else None,
    }


def _trial_converted(subscription: Subscription) -> bool:
    # A trial that was ever charged, or is ACTIVE now, has converted
    return subscription.status == SubscriptionStatus.ACTIVE or subscription.last_billing_date is not None


def _length_days(subscription: Subscription) -> Optional[float]:
    ended = subscription.end_date or subscription.canceled_at
    if ended is None:
        return None
    return max((ended - subscription.start_date).total_seconds(), 0.0) / 86400


class ReportingService:
    """Payment, dispute, subscription and webhook rollups for a time window."""

    def __init__(self, store: LedgerStore, analytics: AnalyticsSink):
        self.store = store
        self.analytics = analytics

    def payment_analytics(self, start: datetime, end: datetime) -> Dict[str, Any]:
        with self.store.unit_of_work() as uow:
            # Refund rows are bookkeeping, not payment attempts
            transactions: List[Transaction] = [
                txn for txn in uow.transactions.in_window(start, end) if txn.amount > 0
            ]
            distribution = uow.transactions.method_type_counts(start, end)

        successful = [txn for txn in transactions if txn.status.is_settled]
        failed = [txn for txn in transactions if txn.status == TransactionStatus.FAILED]
        revenue = sum((txn.amount for txn in successful), ZERO)

        report = {
            "period": _period(start, end),
            "total_transactions": len(transactions),
            "successful_transactions": len(successful),
            "failed_transactions": len(failed),
            "success_rate": rate(len(successful), len(transactions)),
            "total_revenue": revenue,
            "average_amount": (revenue / len(successful)).quantize(ZERO) if successful else ZERO,
            "payment_method_distribution": distribution,
            "daily_transactions": _daily_counts(txn.timestamp for txn in transactions),
        }
        self._generated("payments", start, end)
        return report

    def dispute_analytics(self, start: datetime, end: datetime) -> Dict[str, Any]:
        with self.store.unit_of_work() as uow:
            disputes = uow.disputes.in_window(start, end)

        report = {"period": _period(start, end)}
        report.update(dispute_metrics(disputes))
        report["dispute_reasons"] = dict(Counter(d.reason for d in disputes).most_common())
        report["daily_disputes"] = _daily_counts(d.created_at for d in disputes)
        self._generated("disputes", start, end)
        return report

    def subscription_metrics(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        user_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Subscription rollup over subscriptions started inside the window.

        churn_rate is CANCELED / all; trial_conversion_rate is converted trials
        over all trials. Revenue figures count ACTIVE subscriptions only.
        """
        with self.store.unit_of_work() as uow:
            subscriptions = uow.subscriptions.all_in_window(start, end, user_id)

        active = [s for s in subscriptions if s.status == SubscriptionStatus.ACTIVE]
        canceled = [s for s in subscriptions if s.status == SubscriptionStatus.CANCELED]
        trials = [s for s in subscriptions if s.is_trial]

        by_plan: Dict[str, int] = Counter(s.plan_type.value for s in subscriptions)
        revenue_by_plan: Dict[str, Decimal] = defaultdict(lambda: ZERO)
        for subscription in active:
            revenue_by_plan[subscription.plan_type.value] += subscription.amount

        lengths = [
            days for days in (
                _length_days(s) for s in subscriptions
                if s.status in (SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED)
            )
            if days is not None
        ]

        report = {
            "period": _period(start, end),
            "user_id": user_id,
            "total_subscriptions": len(subscriptions),
            "active_subscriptions": len(active),
            "total_active_revenue": sum((s.amount for s in active), ZERO),
            "subscriptions_by_plan": dict(by_plan),
            "revenue_by_plan": dict(revenue_by_plan),
            "subscriptions_by_status": dict(Counter(s.status.value for s in subscriptions)),
            "average_subscription_length_days": sum(lengths) / len(lengths) if lengths else 0.0,
            "churn_rate": rate(len(canceled), len(subscriptions)),
            "trial_conversion_rate": rate(sum(1 for s in trials if _trial_converted(s)), len(trials)),
        }
        self._generated("subscriptions", start, end)
        return report

    def webhook_stats(self, start: datetime, end: datetime) -> Dict[str, Any]:
        with self.store.unit_of_work() as uow:
            by_type = uow.webhook_events.count_by_type(start, end)
            events = uow.webhook_events.in_window(start, end)

        processed = sum(1 for event in events if event.processed)
        report = {
            "period": _period(start, end),
            "total_events": len(events),
            "events_by_type": by_type,
            "processed": processed,
            "unprocessed": len(events) - processed,
            "rejected_signatures": sum(1 for event in events if not event.signature_valid),
        }
        self._generated("webhooks", start, end)
        return report

    def _generated(self, report: str, start: Optional[datetime], end: Optional[datetime]) -> None:
        logger.debug(f"Generated {report} report")
        self.analytics.log_event(AnalyticsEvents.REPORT_GENERATED, {
            "report": report,
            "start": start.isoformat() if start else None,
            "end": end.isoformat() if end else None,
        })
