"""
Course catalogue entries. Read-only reference data for billing.
"""

from enum import Enum

from sqlalchemy import Column, Enum as SQLEnum, Float, Integer, Numeric, String, Text

from ..base import Base, TimestampMixin


class Difficulty(str, Enum):
    """Course difficulty levels."""
    BEGINNER = "BEGINNER"
    INTERMEDIATE = "INTERMEDIATE"
    ADVANCED = "ADVANCED"


class Course(Base, TimestampMixin):
    """Course model."""

    __tablename__ = "courses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(300), nullable=False, index=True)
    description = Column(Text, nullable=True)
    instructor = Column(String(200), nullable=True)
    thumbnail_url = Column(String(500), nullable=True)
    video_url = Column(String(500), nullable=True)
    duration_minutes = Column(Integer, nullable=False, default=0)
    rating = Column(Float, nullable=False, default=0.0)
    price = Column(Numeric(12, 2), nullable=False, default=0)
    category = Column(String(100), nullable=True, index=True)
    difficulty = Column(SQLEnum(Difficulty), nullable=False, default=Difficulty.BEGINNER)
