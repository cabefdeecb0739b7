"""
The ledger store: the single source of truth for billing state.

The store is constructed explicitly and handed to each component; nothing in the
service reaches for a module-level database handle.
"""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import DatabaseError
from ..core.logging_config import get_logger
from .base import Base
from .repositories import (
    CourseRepository,
    DisputeRepository,
    PaymentMethodRepository,
    SubscriptionRepository,
    TransactionRepository,
    UserRepository,
    WebhookEventRepository,
)
from .session import create_session_factory, session_scope

logger = get_logger(__name__)


class LedgerSession:
    """One unit of work: a session plus a repository per entity."""

    def __init__(self, session: Session):
        self.session = session
        self.users = UserRepository(session)
        self.courses = CourseRepository(session)
        self.payment_methods = PaymentMethodRepository(session)
        self.transactions = TransactionRepository(session)
        self.subscriptions = SubscriptionRepository(session)
        self.disputes = DisputeRepository(session)
        self.webhook_events = WebhookEventRepository(session)

    def flush(self) -> None:
        self.session.flush()


class LedgerStore:
    """
    Durable storage for users, courses, payment methods, transactions,
    subscriptions, disputes and webhook events.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = create_session_factory(engine)

    def create_all(self) -> None:
        """Create every table and index that does not exist yet."""
        from . import models  # noqa: F401  registers all mappers

        Base.metadata.create_all(self.engine)
        logger.info("Ledger schema ensured")

    @contextmanager
    def unit_of_work(self) -> Generator[LedgerSession, None, None]:
        """
        Run a block inside one database transaction.

        Commits on success and rolls back on any error. Integrity violations are
        re-raised unchanged so callers can map them to domain errors; every other
        SQLAlchemy failure becomes a DatabaseError.
        """
        try:
            with session_scope(self._session_factory) as session:
                yield LedgerSession(session)
        except IntegrityError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Ledger operation failed: {e}")
            raise DatabaseError("Ledger operation failed", details={"error": str(e)}) from e

    def set_default_payment_method(self, user_id: int, payment_method_id: int) -> bool:
        """Atomically clear every default for the user and set the given one."""
        with self.unit_of_work() as uow:
            return uow.payment_methods.set_default(user_id, payment_method_id)

    def dispose(self) -> None:
        self.engine.dispose()
