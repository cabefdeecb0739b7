"""
Shared response models.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    error: ErrorBody


class WebhookAck(BaseModel):
    event_id: Optional[str] = None
    outcome: str
    event_type: Optional[str] = None
    detail: Optional[str] = None


class WebhookRetryResponse(BaseModel):
    retried: int
    applied: int
    receipts: List[WebhookAck]


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    version: str
    environment: str
    services: Dict[str, str]
    scheduler: Optional[Dict[str, Any]] = None
    event_bus: Optional[Dict[str, int]] = None
