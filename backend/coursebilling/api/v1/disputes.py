"""
Dispute endpoints.
"""
from typing import List

from fastapi import APIRouter, Depends, status

from ...schemas import DisputeCreate, DisputeResponse, DisputeStatusUpdate, EvidenceSubmit
from ...services.disputes import DisputeManager
from ..deps import get_disputes, unwrap

router = APIRouter()


@router.post("/disputes", response_model=DisputeResponse, status_code=status.HTTP_201_CREATED)
async def create_dispute(
    body: DisputeCreate,
    disputes: DisputeManager = Depends(get_disputes),
):
    return unwrap(disputes.create_dispute(body.transaction_id, body.reason, body.evidence, body.user_id))


@router.patch("/disputes/{dispute_id}/status", response_model=DisputeResponse)
async def update_dispute_status(
    dispute_id: int,
    body: DisputeStatusUpdate,
    disputes: DisputeManager = Depends(get_disputes),
):
    """Closing a dispute settles the disputed transaction; closed disputes are final."""
    return unwrap(disputes.update_dispute_status(dispute_id, body.status, body.resolution))


@router.post("/disputes/{dispute_id}/evidence", response_model=DisputeResponse)
async def submit_evidence(
    dispute_id: int,
    body: EvidenceSubmit,
    disputes: DisputeManager = Depends(get_disputes),
):
    return unwrap(disputes.submit_evidence(dispute_id, body.evidence, body.append))


@router.get("/users/{user_id}/disputes", response_model=List[DisputeResponse])
async def list_user_disputes(
    user_id: int,
    disputes: DisputeManager = Depends(get_disputes),
):
    return disputes.get_disputes_by_user(user_id)
