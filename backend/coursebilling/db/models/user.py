"""
Users and their course enrollments.
"""

from typing import List, TYPE_CHECKING

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Table
from sqlalchemy.orm import relationship

from ..base import Base, TimestampMixin, utcnow

if TYPE_CHECKING:
    from .course import Course


course_enrollments = Table(
    "course_enrollments",
    Base.metadata,
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("course_id", Integer, ForeignKey("courses.id", ondelete="CASCADE"), primary_key=True),
    Column("enrolled_at", DateTime, nullable=False, default=utcnow),
)


class User(Base, TimestampMixin):
    """
    Marketplace user.

    Users are never physically deleted by the billing service.
    """

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), nullable=False, unique=True, index=True)
    name = Column(String(200), nullable=False)
    profile_picture = Column(String(500), nullable=True)

    enrolled_courses = relationship(
        "Course",
        secondary=course_enrollments,
        lazy="selectin",
    )

    @property
    def enrolled_course_ids(self) -> List[int]:
        return sorted(course.id for course in self.enrolled_courses)

    def is_enrolled(self, course_id: int) -> bool:
        return any(course.id == course_id for course in self.enrolled_courses)
