"""
Events carried on the in-process bus.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """`<domain>.<action>` names."""

    NOTIFICATION_REQUESTED = "notification.requested"
    ANALYTICS_LOGGED = "analytics.logged"


class Event(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: EventType
    data: Dict[str, Any] = Field(default_factory=dict)
    published_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def get_data_field(self, field: str, default: Any = None) -> Any:
        return self.data.get(field, default)
