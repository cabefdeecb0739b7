"""
Dispute request/response models.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..db.models import DisputeStatus


class DisputeCreate(BaseModel):
    transaction_id: int = Field(..., gt=0)
    reason: str = Field(..., min_length=1, max_length=500)
    evidence: Optional[str] = None
    user_id: Optional[int] = Field(None, gt=0)


class DisputeStatusUpdate(BaseModel):
    status: DisputeStatus
    resolution: Optional[str] = None


class EvidenceSubmit(BaseModel):
    evidence: str = Field(..., min_length=1)
    append: bool = False


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    transaction_id: int
    user_id: int
    reason: str
    evidence: Optional[str] = None
    status: DisputeStatus
    resolution: Optional[str] = None
    created_at: datetime
    resolved_at: Optional[datetime] = None
