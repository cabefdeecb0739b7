"""
Repository pattern implementation for data access.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Generic, Iterable, List, Optional, Sequence, Tuple, Type, TypeVar

from sqlalchemy import and_, delete, func, insert, select, update
from sqlalchemy.orm import Session

from .base import Base
from .models import (
    Course,
    Dispute,
    DisputeStatus,
    LIVE_STATUSES,
    OPEN_DISPUTE_STATUSES,
    PaymentMethod,
    PaymentType,
    Subscription,
    SubscriptionStatus,
    Transaction,
    TransactionStatus,
    User,
    WebhookEvent,
    course_enrollments,
)

T = TypeVar('T', bound=Base)


class BaseRepository(Generic[T]):
    """
    Base repository class for CRUD operations.
    """

    def __init__(self, model_class: Type[T], session: Session):
        """
        Initialize repository.

        Args:
            model_class: SQLAlchemy model class
            session: Database session
        """
        self.model_class = model_class
        self.session = session

    def get(self, id: Any) -> Optional[T]:
        """Get a record by primary key."""
        return self.session.get(self.model_class, id)

    def get_by(self, **kwargs) -> Optional[T]:
        """
        Get a single record by multiple criteria.

        Args:
            **kwargs: Filter criteria

        Returns:
            Model instance or None
        """
        query = select(self.model_class).where(self._build_filter_conditions(kwargs))
        return self.session.execute(query).scalars().first()

    def get_all(
        self,
        skip: int = 0,
        limit: Optional[int] = None,
        order_by: Optional[List] = None,
        **filters
    ) -> List[T]:
        """
        Get all records with optional filtering and pagination.

        Args:
            skip: Number of records to skip
            limit: Maximum number of records to return
            order_by: List of columns to order by
            **filters: Filter criteria

        Returns:
            List of model instances
        """
        query = select(self.model_class)
        if filters:
            query = query.where(self._build_filter_conditions(filters))
        if order_by:
            query = query.order_by(*order_by)
        if skip:
            query = query.offset(skip)
        if limit is not None:
            query = query.limit(limit)
        return list(self.session.execute(query).scalars().all())

    def add(self, instance: T) -> T:
        """Persist a new instance and flush so generated ids are available."""
        self.session.add(instance)
        self.session.flush()
        return instance

    def create(self, **kwargs) -> T:
        """Create a new record."""
        return self.add(self.model_class(**kwargs))

    def update_by(self, filters: Dict[str, Any], values: Dict[str, Any]) -> int:
        """
        Update multiple records matching filters.

        Returns:
            Number of records updated
        """
        stmt = update(self.model_class).where(
            self._build_filter_conditions(filters)
        ).values(**values).execution_options(synchronize_session="fetch")

        result = self.session.execute(stmt)
        self.session.flush()
        return result.rowcount

    def delete(self, instance: T) -> None:
        """Hard delete a record."""
        self.session.delete(instance)
        self.session.flush()

    def count(self, **filters) -> int:
        """Count records matching criteria."""
        query = select(func.count()).select_from(self.model_class)
        if filters:
            query = query.where(self._build_filter_conditions(filters))
        return self.session.execute(query).scalar_one()

    def exists(self, **kwargs) -> bool:
        return self.count(**kwargs) > 0

    def _build_filter_conditions(self, filters: Dict[str, Any]):
        conditions = []
        for key, value in filters.items():
            column = getattr(self.model_class, key)
            if isinstance(value, (list, tuple, set, frozenset)):
                conditions.append(column.in_(list(value)))
            elif value is None:
                conditions.append(column.is_(None))
            else:
                conditions.append(column == value)
        return and_(*conditions)


class UserRepository(BaseRepository[User]):
    """Users and course enrollments."""

    def __init__(self, session: Session):
        super().__init__(User, session)

    def get_by_email(self, email: str) -> Optional[User]:
        return self.get_by(email=email)

    def is_enrolled(self, user_id: int, course_id: int) -> bool:
        query = select(func.count()).select_from(course_enrollments).where(
            course_enrollments.c.user_id == user_id,
            course_enrollments.c.course_id == course_id,
        )
        return self.session.execute(query).scalar_one() > 0

    def enroll(self, user_id: int, course_id: int, enrolled_at: datetime) -> bool:
        """Idempotent; returns True only when a new enrollment was written."""
        if self.is_enrolled(user_id, course_id):
            return False
        self.session.execute(
            insert(course_enrollments).values(user_id=user_id, course_id=course_id, enrolled_at=enrolled_at)
        )
        user = self.session.get(User, user_id)
        if user is not None:
            self.session.expire(user, ["enrolled_courses"])
        return True


class CourseRepository(BaseRepository[Course]):
    def __init__(self, session: Session):
        super().__init__(Course, session)


class PaymentMethodRepository(BaseRepository[PaymentMethod]):
    """Payment methods; at most one default per user."""

    def __init__(self, session: Session):
        super().__init__(PaymentMethod, session)

    def get_for_user(self, payment_method_id: int, user_id: int) -> Optional[PaymentMethod]:
        return self.get_by(id=payment_method_id, user_id=user_id)

    def list_for_user(self, user_id: int) -> List[PaymentMethod]:
        """Default first, then newest first."""
        return self.get_all(
            user_id=user_id,
            order_by=[PaymentMethod.is_default.desc(), PaymentMethod.created_at.desc(), PaymentMethod.id.desc()],
        )

    def get_default(self, user_id: int) -> Optional[PaymentMethod]:
        return self.get_by(user_id=user_id, is_default=True)

    def clear_defaults(self, user_id: int) -> int:
        return self.update_by({"user_id": user_id, "is_default": True}, {"is_default": False})

    def set_default(self, user_id: int, payment_method_id: int) -> bool:
        """
        Clear-then-set inside the caller's transaction.

        Returns:
            False if the method does not belong to the user (nothing changed)
        """
        if self.get_for_user(payment_method_id, user_id) is None:
            return False
        self.clear_defaults(user_id)
        self.update_by({"id": payment_method_id, "user_id": user_id}, {"is_default": True})
        return True

    def count_by_type(self, user_id: int, payment_type: PaymentType) -> int:
        return self.count(user_id=user_id, type=payment_type)

    def expired_for_user(self, user_id: int, today: date) -> List[PaymentMethod]:
        query = select(PaymentMethod).where(
            PaymentMethod.user_id == user_id,
            PaymentMethod.expiry_year.is_not(None),
            PaymentMethod.expiry_month.is_not(None),
            (PaymentMethod.expiry_year < today.year)
            | and_(PaymentMethod.expiry_year == today.year, PaymentMethod.expiry_month < today.month),
        )
        return list(self.session.execute(query).scalars().all())

    def detach_and_delete(self, payment_method: PaymentMethod) -> None:
        """History keeps its rows; references to the removed method are nulled."""
        self.session.execute(
            update(Transaction)
            .where(Transaction.payment_method_id == payment_method.id)
            .values(payment_method_id=None)
            .execution_options(synchronize_session="fetch")
        )
        self.session.execute(
            update(Subscription)
            .where(Subscription.payment_method_id == payment_method.id)
            .values(payment_method_id=None)
            .execution_options(synchronize_session="fetch")
        )
        self.delete(payment_method)


class TransactionRepository(BaseRepository[Transaction]):
    """Transaction ledger queries."""

    def __init__(self, session: Session):
        super().__init__(Transaction, session)

    def get_by_reference(self, reference: str) -> Optional[Transaction]:
        return self.get_by(reference=reference)

    def list_for_user(self, user_id: int) -> List[Transaction]:
        return self.get_all(user_id=user_id, order_by=[Transaction.timestamp.desc(), Transaction.id.desc()])

    def latest_for_course(self, user_id: int, course_id: int) -> Optional[Transaction]:
        rows = self.get_all(
            user_id=user_id,
            course_id=course_id,
            order_by=[Transaction.timestamp.desc(), Transaction.id.desc()],
            limit=1,
        )
        return rows[0] if rows else None

    def has_completed_purchase(self, user_id: int, course_id: int) -> bool:
        return self.count(user_id=user_id, course_id=course_id, status=TransactionStatus.COMPLETED) > 0

    def total_spent(self, user_id: int, start: datetime, end: datetime) -> Decimal:
        query = select(func.coalesce(func.sum(Transaction.amount), 0)).where(
            Transaction.user_id == user_id,
            Transaction.status == TransactionStatus.COMPLETED,
            Transaction.timestamp.between(start, end),
        )
        return Decimal(str(self.session.execute(query).scalar_one()))

    def stale_pending(self, older_than: datetime) -> List[Transaction]:
        query = select(Transaction).where(
            Transaction.status == TransactionStatus.PENDING,
            Transaction.timestamp < older_than,
        ).order_by(Transaction.timestamp)
        return list(self.session.execute(query).scalars().all())

    def in_window(self, start: datetime, end: datetime) -> List[Transaction]:
        query = select(Transaction).where(Transaction.timestamp.between(start, end)).order_by(Transaction.timestamp)
        return list(self.session.execute(query).scalars().all())

    def method_type_counts(self, start: datetime, end: datetime) -> Dict[str, int]:
        """Transactions in the window grouped by payment method type; detached rows count as UNKNOWN."""
        query = (
            select(PaymentMethod.type, func.count(Transaction.id))
            .select_from(Transaction)
            .outerjoin(PaymentMethod, Transaction.payment_method_id == PaymentMethod.id)
            .where(Transaction.timestamp.between(start, end), Transaction.amount > 0)
            .group_by(PaymentMethod.type)
        )
        return {
            (payment_type.value if payment_type is not None else "UNKNOWN"): count
            for payment_type, count in self.session.execute(query).all()
        }

    def transition(self, transaction: Transaction, expected: Iterable[TransactionStatus], new_status: TransactionStatus) -> bool:
        """Conditional status write; False when the row moved on in the meantime."""
        updated = self.update_by(
            {"id": transaction.id, "status": tuple(expected)},
            {"status": new_status},
        )
        return updated == 1


class SubscriptionRepository(BaseRepository[Subscription]):
    """Subscription lifecycle queries and sweeps."""

    def __init__(self, session: Session):
        super().__init__(Subscription, session)

    def find_live(self, user_id: int, course_id: int) -> Optional[Subscription]:
        return self.get_by(
            user_id=user_id,
            course_id=course_id,
            status=(SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING),
        )

    def list_for_user(self, user_id: int) -> List[Tuple[Subscription, str, Optional[PaymentMethod]]]:
        """Subscriptions with course title and payment method summary."""
        query = (
            select(Subscription, Course.title, PaymentMethod)
            .join(Course, Subscription.course_id == Course.id)
            .outerjoin(PaymentMethod, Subscription.payment_method_id == PaymentMethod.id)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.start_date.desc(), Subscription.id.desc())
        )
        return [tuple(row) for row in self.session.execute(query).all()]

    def active_count(self, user_id: int) -> int:
        return self.count(user_id=user_id, status=(SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING))

    def due_for_renewal(self, now: datetime, statuses: Sequence[SubscriptionStatus]) -> List[Subscription]:
        query = select(Subscription).where(
            Subscription.status.in_(list(statuses)),
            Subscription.next_billing_date.is_not(None),
            Subscription.next_billing_date <= now,
        ).order_by(Subscription.next_billing_date, Subscription.id)
        return list(self.session.execute(query).scalars().all())

    def conditional_update(
        self,
        subscription_id: int,
        expected_statuses: Sequence[SubscriptionStatus],
        **values
    ) -> bool:
        """Write `values` only if the row is still in one of `expected_statuses`."""
        updated = self.update_by(
            {"id": subscription_id, "status": tuple(expected_statuses)},
            values,
        )
        return updated == 1

    def _sweep(self, condition, new_status: SubscriptionStatus) -> List[int]:
        ids = list(self.session.execute(select(Subscription.id).where(condition)).scalars().all())
        if ids:
            self.session.execute(
                update(Subscription)
                .where(Subscription.id.in_(ids), condition)
                .values(status=new_status)
                .execution_options(synchronize_session="fetch")
            )
            self.session.flush()
        return ids

    def expire_ended(self, now: datetime, statuses: Sequence[SubscriptionStatus]) -> List[int]:
        condition = and_(
            Subscription.status.in_(list(statuses)),
            Subscription.end_date.is_not(None),
            Subscription.end_date <= now,
        )
        return self._sweep(condition, SubscriptionStatus.EXPIRED)

    def mark_overdue(self, now: datetime, cutoff: datetime) -> List[int]:
        condition = and_(
            Subscription.status.in_(LIVE_STATUSES),
            Subscription.next_billing_date.is_not(None),
            Subscription.next_billing_date < now,
            Subscription.next_billing_date <= cutoff,
        )
        return self._sweep(condition, SubscriptionStatus.PAST_DUE)

    def expire_past_due(self, cutoff: datetime) -> List[int]:
        condition = and_(
            Subscription.status == SubscriptionStatus.PAST_DUE,
            Subscription.next_billing_date.is_not(None),
            Subscription.next_billing_date <= cutoff,
        )
        return self._sweep(condition, SubscriptionStatus.EXPIRED)

    def all_in_window(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        user_id: Optional[int] = None,
    ) -> List[Subscription]:
        query = select(Subscription)
        if start is not None:
            query = query.where(Subscription.start_date >= start)
        if end is not None:
            query = query.where(Subscription.start_date <= end)
        if user_id is not None:
            query = query.where(Subscription.user_id == user_id)
        return list(self.session.execute(query).scalars().all())


class DisputeRepository(BaseRepository[Dispute]):
    """Dispute queries."""

    def __init__(self, session: Session):
        super().__init__(Dispute, session)

    def list_for_user(self, user_id: int) -> List[Dispute]:
        return self.get_all(user_id=user_id, order_by=[Dispute.created_at.desc(), Dispute.id.desc()])

    def open_for_transaction(self, transaction_id: int) -> Optional[Dispute]:
        return self.get_by(transaction_id=transaction_id, status=OPEN_DISPUTE_STATUSES)

    def in_window(self, start: datetime, end: datetime) -> List[Dispute]:
        query = select(Dispute).where(Dispute.created_at.between(start, end)).order_by(Dispute.created_at.desc())
        return list(self.session.execute(query).scalars().all())

    def count_by_status(self, status: DisputeStatus) -> int:
        return self.count(status=status)


class WebhookEventRepository(BaseRepository[WebhookEvent]):
    """Webhook event log, keyed by gateway event id."""

    def __init__(self, session: Session):
        super().__init__(WebhookEvent, session)

    def claim(self, event_id: str, now: datetime) -> bool:
        """
        Atomically flip processed false -> true.

        Only the caller that wins the flip may apply the event's side effects,
        and it must do so in the same transaction.
        """
        stmt = (
            update(WebhookEvent)
            .where(WebhookEvent.event_id == event_id, WebhookEvent.processed.is_(False))
            .values(processed=True, processed_at=now, error=None, attempts=WebhookEvent.attempts + 1)
            .execution_options(synchronize_session="fetch")
        )
        return self.session.execute(stmt).rowcount == 1

    def record_failure(self, event_id: str, error: str) -> None:
        self.update_by(
            {"event_id": event_id},
            {"processed": False, "error": error[:2000], "attempts": WebhookEvent.attempts + 1},
        )

    def list_unprocessed(
        self,
        signature_valid: bool = True,
        max_attempts: Optional[int] = None,
        limit: int = 100,
    ) -> List[WebhookEvent]:
        query = select(WebhookEvent).where(
            WebhookEvent.processed.is_(False),
            WebhookEvent.signature_valid.is_(signature_valid),
        )
        if max_attempts is not None:
            query = query.where(WebhookEvent.attempts < max_attempts)
        query = query.order_by(WebhookEvent.received_at).limit(limit)
        return list(self.session.execute(query).scalars().all())

    def in_window(self, start: datetime, end: datetime) -> List[WebhookEvent]:
        query = select(WebhookEvent).where(WebhookEvent.received_at.between(start, end))
        return list(self.session.execute(query).scalars().all())

    def count_by_type(self, start: datetime, end: datetime) -> Dict[str, int]:
        query = (
            select(WebhookEvent.event_type, func.count())
            .where(WebhookEvent.received_at.between(start, end))
            .group_by(WebhookEvent.event_type)
        )
        return {event_type: count for event_type, count in self.session.execute(query).all()}

    def delete_older_than(self, before: datetime) -> int:
        stmt = delete(WebhookEvent).where(WebhookEvent.received_at < before)
        result = self.session.execute(stmt)
        self.session.flush()
        return result.rowcount
