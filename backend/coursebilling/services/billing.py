"""
Billing engine: subscription lifecycle.

Creation (with or without trial), cancellation, periodic renewal, overdue and
expiry sweeps. Every status write for a single subscription happens under that
subscription's lock and is conditional on the status it was read in.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.exc import IntegrityError

from ..core.config import BillingConfig
from ..core.constants import AnalyticsEvents
from ..core.exceptions import (
    DuplicateSubscriptionError,
    InvalidStateError,
    NotFoundError,
    PaymentMethodNotFoundError,
    ValidationError,
)
from ..core.logging_config import LoggingContext, bind_logger, get_logger
from ..db import LedgerSession, LedgerStore, utcnow
from ..db.models import (
    LIVE_STATUSES,
    RENEWABLE_STATUSES,
    PlanType,
    Subscription,
    SubscriptionStatus,
)
from .analytics import AnalyticsSink
from .billing_calendar import next_billing_date
from .locks import KeyedLocks
from .notifications import NotificationKind, NotificationSink
from .payments import PaymentService
from .results import Failure, Result, Success

logger = get_logger(__name__)


@dataclass
class SubscriptionSummary:
    """A subscription with the course title and payment method label."""
    subscription: Subscription
    course_title: str
    payment_method: Optional[str] = None


@dataclass
class RenewalReport:
    """What one renewal cycle did."""
    started_at: datetime
    expired: List[int] = field(default_factory=list)
    renewed: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    marked_past_due: List[int] = field(default_factory=list)
    expired_past_due: List[int] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "expired": list(self.expired),
            "renewed": list(self.renewed),
            "failed": list(self.failed),
            "skipped": list(self.skipped),
            "marked_past_due": list(self.marked_past_due),
            "expired_past_due": list(self.expired_past_due),
            "errors": dict(self.errors),
        }


class BillingEngine:
    """Owns the subscription state machine."""

    def __init__(
        self,
        store: LedgerStore,
        payments: PaymentService,
        notifier: NotificationSink,
        analytics: AnalyticsSink,
        config: BillingConfig,
        subscription_locks: Optional[KeyedLocks] = None,
    ):
        self.store = store
        self.payments = payments
        self.notifier = notifier
        self.analytics = analytics
        self.config = config
        self.locks = subscription_locks or KeyedLocks()
        self._creation_locks = KeyedLocks()

    @property
    def grace_period(self) -> timedelta:
        return timedelta(days=self.config.grace_period_days)

    # ------------------------------------------------------------------
    # Creation and cancellation
    # ------------------------------------------------------------------

    async def create_subscription(
        self,
        user_id: int,
        course_id: int,
        plan_type: PlanType,
        amount: Any,
        payment_method_id: Optional[int] = None,
        with_trial: bool = False,
        currency: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Result[Subscription]:
        """
        Start a subscription.

        With a trial nothing is charged: the subscription is TRIALING and first
        billed when the trial ends. Otherwise the first period is charged up
        front; a failed charge leaves only the FAILED transaction behind.
        """
        now = now or utcnow()
        try:
            amount = Decimal(str(amount))
        except InvalidOperation:
            return Failure(ValidationError(f"Invalid amount: {amount}"))
        if amount <= 0:
            return Failure(ValidationError("Amount must be positive", details={"amount": str(amount)}))

        async with self._creation_locks((user_id, course_id)):
            with self.store.unit_of_work() as uow:
                failure = self._check_new_subscription(uow, user_id, course_id, payment_method_id)
                if failure is not None:
                    return failure
                if with_trial:
                    return self._create_trial(uow, user_id, course_id, plan_type, amount, payment_method_id, currency, now)

            charge = await self.payments.process_payment(
                user_id, course_id, amount, payment_method_id=payment_method_id, currency=currency, now=now
            )
            if isinstance(charge, Failure):
                logger.info(f"First charge for user {user_id}, course {course_id} failed: {charge.code}")
                return charge

            txn = charge.value
            try:
                with self.store.unit_of_work() as uow:
                    subscription = uow.subscriptions.create(
                        user_id=user_id,
                        course_id=course_id,
                        payment_method_id=txn.payment_method_id,
                        plan_type=plan_type,
                        status=SubscriptionStatus.ACTIVE,
                        amount=amount,
                        currency=txn.currency,
                        start_date=now,
                        last_billing_date=now,
                        next_billing_date=next_billing_date(now, plan_type),
                    )
                    stored_txn = uow.transactions.get(txn.id)
                    stored_txn.meta["subscription_id"] = subscription.id
            except IntegrityError:
                # Another process created a live subscription while we were charging
                logger.warning(f"Duplicate subscription race for user {user_id}, course {course_id}; refunding {txn.reference}")
                self.payments.process_refund(txn.id, now=now)
                return Failure(DuplicateSubscriptionError(user_id, course_id))

        self._log_created(subscription)
        return Success(subscription)

    def _check_new_subscription(
        self,
        uow: LedgerSession,
        user_id: int,
        course_id: int,
        payment_method_id: Optional[int],
    ) -> Optional[Failure]:
        if uow.users.get(user_id) is None:
            return Failure(NotFoundError("User", user_id))
        if uow.courses.get(course_id) is None:
            return Failure(NotFoundError("Course", course_id))
        if payment_method_id is not None and uow.payment_methods.get_for_user(payment_method_id, user_id) is None:
            return Failure(PaymentMethodNotFoundError(payment_method_id, user_id))
        if uow.subscriptions.find_live(user_id, course_id) is not None:
            return Failure(DuplicateSubscriptionError(user_id, course_id))
        return None

    def _create_trial(
        self,
        uow: LedgerSession,
        user_id: int,
        course_id: int,
        plan_type: PlanType,
        amount: Decimal,
        payment_method_id: Optional[int],
        currency: Optional[str],
        now: datetime,
    ) -> Result[Subscription]:
        method = (
            uow.payment_methods.get(payment_method_id)
            if payment_method_id is not None
            else uow.payment_methods.get_default(user_id)
        )
        provider = self.payments.gateway.provider_for(method.type if method else None)
        trial_end = now + timedelta(days=self.config.trial_days)
        try:
            subscription = uow.subscriptions.create(
                user_id=user_id,
                course_id=course_id,
                payment_method_id=method.id if method else None,
                plan_type=plan_type,
                status=SubscriptionStatus.TRIALING,
                amount=amount,
                currency=currency or provider.currency,
                start_date=now,
                trial_end_date=trial_end,
                next_billing_date=trial_end,
            )
        except IntegrityError:
            uow.session.rollback()
            return Failure(DuplicateSubscriptionError(user_id, course_id))
        self._log_created(subscription)
        return Success(subscription)

    def _log_created(self, subscription: Subscription) -> None:
        logger.info(
            f"Subscription {subscription.id} created {subscription.status.value} "
            f"for user {subscription.user_id}, course {subscription.course_id}"
        )
        self.analytics.log_event(AnalyticsEvents.SUBSCRIPTION_CREATED, {
            "subscription_id": subscription.id,
            "user_id": subscription.user_id,
            "course_id": subscription.course_id,
            "plan_type": subscription.plan_type.value,
            "status": subscription.status.value,
            "amount": subscription.amount,
            "trial": subscription.is_trial,
        })

    async def cancel_subscription(
        self,
        subscription_id: int,
        user_id: int,
        now: Optional[datetime] = None,
    ) -> Result[Subscription]:
        """
        Cancel at period end.

        Status becomes CANCELED immediately but access lasts until `end_date`,
        which is set to the current period end when it is not already set.
        """
        now = now or utcnow()
        async with self.locks(subscription_id):
            with self.store.unit_of_work() as uow:
                subscription = uow.subscriptions.get(subscription_id)
                if subscription is None or subscription.user_id != user_id:
                    return Failure(NotFoundError("Subscription", subscription_id))
                if subscription.status not in LIVE_STATUSES:
                    return Failure(InvalidStateError(
                        "Only active or trialing subscriptions can be canceled",
                        current_state=subscription.status.value,
                    ))
                end_date = subscription.end_date or subscription.next_billing_date or now
                if not uow.subscriptions.conditional_update(
                    subscription_id,
                    LIVE_STATUSES,
                    status=SubscriptionStatus.CANCELED,
                    canceled_at=now,
                    end_date=end_date,
                ):
                    return Failure(InvalidStateError("Subscription changed state during cancellation"))

        logger.info(f"Subscription {subscription_id} canceled, access until {end_date.isoformat()}")
        self.analytics.log_event(AnalyticsEvents.SUBSCRIPTION_CANCELED, {
            "subscription_id": subscription_id,
            "user_id": user_id,
            "course_id": subscription.course_id,
            "plan_type": subscription.plan_type.value,
        })
        return Success(subscription)

    # ------------------------------------------------------------------
    # Transitions shared with webhook reconciliation
    # ------------------------------------------------------------------

    def activate_after_payment(self, uow: LedgerSession, subscription_id: int, now: datetime) -> bool:
        """
        TRIALING or PAST_DUE becomes ACTIVE after a successful out-of-band
        payment, and the billing dates move forward one period.

        The caller holds the subscription lock.
        """
        subscription = uow.subscriptions.get(subscription_id)
        if subscription is None:
            return False
        return uow.subscriptions.conditional_update(
            subscription_id,
            (SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE),
            status=SubscriptionStatus.ACTIVE,
            last_billing_date=now,
            next_billing_date=next_billing_date(now, subscription.plan_type),
        )

    # ------------------------------------------------------------------
    # Renewal cycle
    # ------------------------------------------------------------------

    async def run_renewal_cycle(self, now: Optional[datetime] = None) -> RenewalReport:
        """
        One renewal tick.

        Order matters: ended subscriptions expire first, so a subscription both
        due and past its end date is never charged. Then due subscriptions are
        charged with bounded parallelism, then unpaid ones are demoted to
        PAST_DUE once outside the grace period, then (optionally) long
        PAST_DUE subscriptions expire. Each step runs even if an earlier one
        failed.
        """
        now = now or utcnow()
        report = RenewalReport(started_at=now)

        with LoggingContext(logger, "renewal cycle"):
            await self._step("expire", self._expire_ended, now, report)
            await self._step("renew", self._renew_due, now, report)
            await self._step("overdue", self._mark_overdue, now, report)
            if self.config.past_due_expiry_days is not None:
                await self._step("past_due_expiry", self._expire_past_due, now, report)

        logger.info(
            f"Renewal cycle: {len(report.renewed)} renewed, {len(report.failed)} failed, "
            f"{len(report.expired) + len(report.expired_past_due)} expired, "
            f"{len(report.marked_past_due)} past due, {len(report.errors)} errors"
        )
        return report

    async def _step(self, name: str, step, now: datetime, report: RenewalReport) -> None:
        try:
            await step(now, report)
        except Exception as e:
            logger.error(f"Renewal step {name} failed: {e}", exc_info=True)
            report.errors[f"step:{name}"] = str(e)

    async def _expire_ended(self, now: datetime, report: RenewalReport) -> None:
        with self.store.unit_of_work() as uow:
            report.expired = uow.subscriptions.expire_ended(now, RENEWABLE_STATUSES)
        for subscription_id in report.expired:
            self.analytics.log_event(AnalyticsEvents.SUBSCRIPTION_EXPIRED, {
                "subscription_id": subscription_id,
                "reason": "end_date_reached",
            })

    def _renewable_statuses(self) -> Sequence[SubscriptionStatus]:
        if self.config.retry_past_due:
            return RENEWABLE_STATUSES
        return LIVE_STATUSES

    async def _renew_due(self, now: datetime, report: RenewalReport) -> None:
        statuses = self._renewable_statuses()
        with self.store.unit_of_work() as uow:
            due_ids = [s.id for s in uow.subscriptions.due_for_renewal(now, statuses)]
        if not due_ids:
            return

        semaphore = asyncio.Semaphore(self.config.renewal_concurrency)

        async def guarded(subscription_id: int) -> None:
            async with semaphore:
                try:
                    await self._renew_one(subscription_id, statuses, now, report)
                except Exception as e:
                    bind_logger(logger, subscription_id=subscription_id).error(
                        f"Renewal failed unexpectedly: {e}", exc_info=True
                    )
                    report.errors[str(subscription_id)] = str(e)

        await asyncio.gather(*(guarded(subscription_id) for subscription_id in due_ids))

    async def _renew_one(
        self,
        subscription_id: int,
        statuses: Sequence[SubscriptionStatus],
        now: datetime,
        report: RenewalReport,
    ) -> None:
        log = bind_logger(logger, subscription_id=subscription_id)
        async with self.locks(subscription_id):
            with self.store.unit_of_work() as uow:
                subscription = uow.subscriptions.get(subscription_id)
            if (
                subscription is None
                or subscription.status not in statuses
                or subscription.next_billing_date is None
                or subscription.next_billing_date > now
                or (subscription.end_date is not None and subscription.end_date <= now)
            ):
                report.skipped.append(subscription_id)
                return

            # Charge first, then persist: a crash in between means a second
            # attempt next tick, deduplicated only by the gateway idempotency key
            charge = await self.payments.process_payment(
                subscription.user_id,
                subscription.course_id,
                subscription.amount,
                payment_method_id=subscription.payment_method_id,
                currency=subscription.currency,
                subscription_id=subscription.id,
                now=now,
            )
            if isinstance(charge, Failure):
                log.warning(f"Renewal charge failed: {charge.code} {charge.message}")
                report.failed.append(subscription_id)
                return

            next_date = next_billing_date(now, subscription.plan_type)
            with self.store.unit_of_work() as uow:
                updated = uow.subscriptions.conditional_update(
                    subscription_id,
                    statuses,
                    status=SubscriptionStatus.ACTIVE,
                    last_billing_date=now,
                    next_billing_date=next_date,
                )
            if not updated:
                log.warning(f"Charged {charge.value.reference} but the subscription left {subscription.status.value}")
                report.errors[str(subscription_id)] = "status changed during renewal"
                return

        report.renewed.append(subscription_id)
        log.info(f"Renewed, next billing {next_date.isoformat() if next_date else 'never'}")
        self.notifier.notify(subscription.user_id, NotificationKind.SUBSCRIPTION_RENEWED, {
            "subscription_id": subscription_id,
            "amount": subscription.amount,
            "currency": subscription.currency,
            "next_billing_date": next_date.isoformat() if next_date else "",
        })
        self.analytics.log_event(AnalyticsEvents.SUBSCRIPTION_RENEWED, {
            "subscription_id": subscription_id,
            "user_id": subscription.user_id,
            "plan_type": subscription.plan_type.value,
            "amount": subscription.amount,
            "from_status": subscription.status.value,
        })

    async def _mark_overdue(self, now: datetime, report: RenewalReport) -> None:
        with self.store.unit_of_work() as uow:
            report.marked_past_due = uow.subscriptions.mark_overdue(now, now - self.grace_period)
        for subscription_id in report.marked_past_due:
            logger.info(f"Subscription {subscription_id} is past due")
            self.analytics.log_event(AnalyticsEvents.SUBSCRIPTION_PAST_DUE, {"subscription_id": subscription_id})

    async def _expire_past_due(self, now: datetime, report: RenewalReport) -> None:
        cutoff = now - self.grace_period - timedelta(days=self.config.past_due_expiry_days)
        with self.store.unit_of_work() as uow:
            report.expired_past_due = uow.subscriptions.expire_past_due(cutoff)
        for subscription_id in report.expired_past_due:
            self.analytics.log_event(AnalyticsEvents.SUBSCRIPTION_EXPIRED, {
                "subscription_id": subscription_id,
                "reason": "unpaid",
            })

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_subscription(self, subscription_id: int) -> Optional[Subscription]:
        with self.store.unit_of_work() as uow:
            return uow.subscriptions.get(subscription_id)

    def get_user_subscriptions(self, user_id: int) -> List[SubscriptionSummary]:
        with self.store.unit_of_work() as uow:
            rows = uow.subscriptions.list_for_user(user_id)
            return [
                SubscriptionSummary(subscription, title, method.display_name if method else None)
                for subscription, title, method in rows
            ]

    def active_subscription_count(self, user_id: int) -> int:
        with self.store.unit_of_work() as uow:
            return uow.subscriptions.active_count(user_id)

    def has_access(self, user_id: int, course_id: int, now: Optional[datetime] = None) -> bool:
        """Access is gated by status and dates, never by deletion."""
        now = now or utcnow()
        with self.store.unit_of_work() as uow:
            subscriptions = uow.subscriptions.get_all(user_id=user_id, course_id=course_id)
        return any(subscription.has_access(now) for subscription in subscriptions)
