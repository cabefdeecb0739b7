"""
Declarative base and shared column mixins.
"""

import re
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from typing import Any, Dict, Optional

from sqlalchemy import Column, DateTime
from sqlalchemy.orm import DeclarativeBase, declared_attr


def utcnow() -> datetime:
    """Naive UTC timestamp; every datetime column in the ledger is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy models.
    """

    @declared_attr.directive
    def __tablename__(cls) -> str:
        """
        Convert class name to snake_case plural for table name.
        Example: 'PaymentMethod' -> 'payment_methods'
        """
        name = re.sub(r'(?<!^)(?=[A-Z])', '_', cls.__name__).lower()
        return f"{name}s"

    def to_dict(self, exclude: Optional[list] = None) -> Dict[str, Any]:
        """
        Convert model instance to dictionary.

        Args:
            exclude: List of attribute names to exclude

        Returns:
            Dictionary representation
        """
        exclude = exclude or []
        result = {}

        for attr in self.__mapper__.column_attrs:
            if attr.key in exclude:
                continue
            value = getattr(self, attr.key)

            if isinstance(value, datetime):
                result[attr.key] = value.isoformat()
            elif isinstance(value, PyEnum):
                result[attr.key] = value.value
            elif isinstance(value, Decimal):
                result[attr.key] = str(value)
            elif isinstance(value, dict):
                result[attr.key] = dict(value)
            else:
                result[attr.key] = value

        return result

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} id={getattr(self, 'id', None)}>"


class TimestampMixin:
    """
    Mixin for created_at and updated_at timestamps.
    """
    created_at = Column(
        DateTime,
        nullable=False,
        default=utcnow,
        index=True,
        doc="Timestamp when the record was created"
    )
    updated_at = Column(
        DateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        doc="Timestamp when the record was last updated"
    )
