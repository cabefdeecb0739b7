"""
Course enrollment bookkeeping.
"""

from datetime import datetime
from typing import List, Optional

from ..core.exceptions import NotFoundError
from ..core.logging_config import get_logger
from ..db import LedgerSession, LedgerStore, utcnow

logger = get_logger(__name__)


class EnrollmentService:
    """Grants course access once a purchase completes."""

    def __init__(self, store: LedgerStore):
        self.store = store

    def enroll(self, user_id: int, course_id: int, now: Optional[datetime] = None) -> bool:
        """Idempotent; True when a new enrollment was recorded."""
        with self.store.unit_of_work() as uow:
            return self.enroll_in(uow, user_id, course_id, now)

    def enroll_in(self, uow: LedgerSession, user_id: int, course_id: int, now: Optional[datetime] = None) -> bool:
        """Enroll inside the caller's unit of work."""
        if uow.users.get(user_id) is None:
            raise NotFoundError("User", user_id)
        if uow.courses.get(course_id) is None:
            raise NotFoundError("Course", course_id)
        created = uow.users.enroll(user_id, course_id, now or utcnow())
        if created:
            logger.info(f"User {user_id} enrolled in course {course_id}")
        return created

    def is_enrolled(self, user_id: int, course_id: int) -> bool:
        with self.store.unit_of_work() as uow:
            return uow.users.is_enrolled(user_id, course_id)

    def enrolled_course_ids(self, user_id: int) -> List[int]:
        with self.store.unit_of_work() as uow:
            user = uow.users.get(user_id)
            if user is None:
                raise NotFoundError("User", user_id)
            return user.enrolled_course_ids
