"""
Dispute and chargeback management.
"""

from collections import Counter
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..core.constants import AnalyticsEvents
from ..core.exceptions import InvalidStateError, NotFoundError, ValidationError
from ..core.logging_config import get_logger
from ..db import LedgerSession, LedgerStore, utcnow
from ..db.models import OPEN_DISPUTE_STATUSES, Dispute, DisputeStatus, Transaction, TransactionStatus
from .analytics import AnalyticsSink
from .notifications import NotificationKind, NotificationSink
from .payments import record_refund
from .results import Failure, Result, Success

logger = get_logger(__name__)

DISPUTABLE_STATUSES = (TransactionStatus.COMPLETED, TransactionStatus.CAPTURED, TransactionStatus.DISPUTED)

# Where a DISPUTED transaction lands once its dispute closes
SETTLEMENT_FOR_RESOLUTION = {
    DisputeStatus.RESOLVED_MERCHANT_WIN: TransactionStatus.COMPLETED,
    DisputeStatus.RESOLVED_CUSTOMER_WIN: TransactionStatus.REFUNDED,
    DisputeStatus.CANCELLED: TransactionStatus.COMPLETED,
}


def open_dispute(
    uow: LedgerSession,
    txn: Transaction,
    reason: str,
    evidence: Optional[str],
    now: datetime,
) -> Tuple[Dispute, bool]:
    """
    Open a PENDING dispute for `txn`, or return the one already open.

    A settled transaction moves to DISPUTED.

    Returns:
        (dispute, created)
    """
    existing = uow.disputes.open_for_transaction(txn.id)
    if existing is not None:
        return existing, False
    if txn.status != TransactionStatus.DISPUTED:
        uow.transactions.transition(txn, (TransactionStatus.COMPLETED, TransactionStatus.CAPTURED), TransactionStatus.DISPUTED)
    dispute = uow.disputes.create(
        transaction_id=txn.id,
        user_id=txn.user_id,
        reason=reason,
        evidence=evidence,
        status=DisputeStatus.PENDING,
        created_at=now,
    )
    return dispute, True


def dispute_metrics(disputes: Iterable[Dispute]) -> Dict[str, Any]:
    """
    Win rate and resolution time over a set of disputes.

    merchant_win_rate = merchant wins / (merchant wins + customer wins);
    average resolution time covers the two RESOLVED_* states only.
    """
    disputes = list(disputes)
    by_status = Counter(d.status for d in disputes)
    merchant_wins = by_status[DisputeStatus.RESOLVED_MERCHANT_WIN]
    customer_wins = by_status[DisputeStatus.RESOLVED_CUSTOMER_WIN]
    decided = merchant_wins + customer_wins

    durations = [
        d.resolution_seconds
        for d in disputes
        if d.status.is_resolved and d.resolution_seconds is not None
    ]
    return {
        "total_disputes": len(disputes),
        "disputes_by_status": {status.value: by_status[status] for status in DisputeStatus},
        "merchant_win_rate": merchant_wins / decided if decided else 0.0,
        "average_resolution_seconds": sum(durations) / len(durations) if durations else 0.0,
    }


class DisputeManager:
    """Creates and advances disputes against transactions."""

    def __init__(self, store: LedgerStore, notifier: NotificationSink, analytics: AnalyticsSink):
        self.store = store
        self.notifier = notifier
        self.analytics = analytics

    def create_dispute(
        self,
        transaction_id: int,
        reason: str,
        evidence: Optional[str] = None,
        user_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Result[Dispute]:
        now = now or utcnow()
        if not reason or not reason.strip():
            return Failure(ValidationError("A dispute reason is required", field_errors={"reason": ["required"]}))

        with self.store.unit_of_work() as uow:
            txn = uow.transactions.get(transaction_id)
            if txn is None or (user_id is not None and txn.user_id != user_id):
                return Failure(NotFoundError("Transaction", transaction_id))
            if txn.status not in DISPUTABLE_STATUSES:
                return Failure(InvalidStateError(
                    "Only completed transactions can be disputed",
                    current_state=txn.status.value,
                ))
            dispute, created = open_dispute(uow, txn, reason.strip(), evidence, now)
            if not created:
                return Failure(InvalidStateError(
                    "Transaction already has an open dispute",
                    current_state=dispute.status.value,
                    details={"dispute_id": dispute.id},
                ))
            amount, currency = txn.amount, txn.currency

        logger.info(f"Dispute {dispute.id} opened for transaction {transaction_id}")
        self.notifier.notify(dispute.user_id, NotificationKind.DISPUTE_CREATED, {
            "dispute_id": dispute.id,
            "transaction_id": transaction_id,
            "amount": amount,
            "currency": currency,
            "reason": dispute.reason,
        })
        self.analytics.log_event(AnalyticsEvents.DISPUTE_CREATED, {
            "dispute_id": dispute.id,
            "transaction_id": transaction_id,
            "user_id": dispute.user_id,
            "reason": dispute.reason,
        })
        return Success(dispute)

    def update_dispute_status(
        self,
        dispute_id: int,
        status: DisputeStatus,
        resolution: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Result[Dispute]:
        """
        Move a dispute forward.

        `resolved_at` is stamped once, on entry into RESOLVED_* or CANCELLED.
        Closed disputes never change again. Closing a dispute also settles the
        disputed transaction: back to COMPLETED, or REFUNDED (with its refund
        row) when the customer wins.
        """
        now = now or utcnow()
        with self.store.unit_of_work() as uow:
            dispute = uow.disputes.get(dispute_id)
            if dispute is None:
                return Failure(NotFoundError("Dispute", dispute_id))
            if dispute.status.is_terminal:
                return Failure(InvalidStateError(
                    "Dispute is already closed",
                    current_state=dispute.status.value,
                ))

            values: Dict[str, Any] = {"status": status}
            if resolution is not None:
                values["resolution"] = resolution
            if status.is_terminal and dispute.resolved_at is None:
                values["resolved_at"] = now
            updated = uow.disputes.update_by({"id": dispute_id, "status": OPEN_DISPUTE_STATUSES}, values)
            if updated != 1:
                return Failure(InvalidStateError("Dispute changed state concurrently"))

            txn = uow.transactions.get(dispute.transaction_id)
            settlement = SETTLEMENT_FOR_RESOLUTION.get(status)
            if settlement is not None and txn is not None and txn.status == TransactionStatus.DISPUTED:
                if uow.transactions.transition(txn, [TransactionStatus.DISPUTED], settlement) and settlement == TransactionStatus.REFUNDED:
                    record_refund(uow, txn, now)
            amount = txn.amount if txn is not None else None
            currency = txn.currency if txn is not None else None

        logger.info(f"Dispute {dispute_id} is now {status.value}")
        self.notifier.notify(dispute.user_id, NotificationKind.DISPUTE_UPDATED, {
            "dispute_id": dispute_id,
            "status": status.value,
            "resolution": resolution,
            "amount": amount,
            "currency": currency,
        })
        self.analytics.log_event(AnalyticsEvents.DISPUTE_UPDATED, {
            "dispute_id": dispute_id,
            "status": status.value,
            "resolution_seconds": dispute.resolution_seconds,
        })
        return Success(dispute)

    def submit_evidence(
        self,
        dispute_id: int,
        evidence: str,
        append: bool = False,
    ) -> Result[Dispute]:
        """Replace (or append to) the evidence; status is untouched."""
        if not evidence or not evidence.strip():
            return Failure(ValidationError("Evidence must not be empty", field_errors={"evidence": ["required"]}))

        with self.store.unit_of_work() as uow:
            dispute = uow.disputes.get(dispute_id)
            if dispute is None:
                return Failure(NotFoundError("Dispute", dispute_id))
            if dispute.status.is_terminal:
                return Failure(InvalidStateError(
                    "Evidence cannot be added to a closed dispute",
                    current_state=dispute.status.value,
                ))
            if append and dispute.evidence:
                dispute.evidence = f"{dispute.evidence}\n\n{evidence}"
            else:
                dispute.evidence = evidence

        self.analytics.log_event(AnalyticsEvents.DISPUTE_EVIDENCE_SUBMITTED, {
            "dispute_id": dispute_id,
            "append": append,
            "length": len(dispute.evidence),
        })
        return Success(dispute)

    def get_dispute(self, dispute_id: int) -> Optional[Dispute]:
        with self.store.unit_of_work() as uow:
            return uow.disputes.get(dispute_id)

    def get_disputes_by_user(self, user_id: int) -> List[Dispute]:
        with self.store.unit_of_work() as uow:
            return uow.disputes.list_for_user(user_id)

    def count_by_status(self, status: DisputeStatus) -> int:
        with self.store.unit_of_work() as uow:
            return uow.disputes.count_by_status(status)
