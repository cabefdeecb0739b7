"""
Payment gateway webhook endpoints.
"""
from typing import Any, Dict, Tuple
from datetime import datetime

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from ...schemas import WebhookAck, WebhookRetryResponse
from ...services.reporting import ReportingService
from ...services.results import WebhookOutcome, WebhookReceipt
from ...services.webhooks import WebhookProcessor
from ..deps import get_reporting, get_webhooks, report_window

router = APIRouter(prefix="/webhooks")


def _ack(receipt: WebhookReceipt) -> WebhookAck:
    return WebhookAck(
        event_id=receipt.event_id,
        outcome=receipt.outcome,
        event_type=receipt.event_type,
        detail=receipt.detail,
    )


@router.post("/payments")
async def payment_webhook(
    request: Request,
    webhooks: WebhookProcessor = Depends(get_webhooks),
) -> JSONResponse:
    """
    Receive a gateway callback.

    The signature header carries hex(HMAC-SHA256(secret, raw body)). Applied,
    replayed and unknown-type events answer 200; a failed dispatch answers 503
    so the gateway redelivers.
    """
    body = await request.body()
    signature = request.headers.get(webhooks.config.signature_header)
    receipt = await webhooks.ingest(body, signature)

    if receipt.ok:
        return JSONResponse(status_code=200, content=_ack(receipt).model_dump())

    content = receipt.error.to_dict() if receipt.error else {"error": {"code": receipt.outcome, "message": receipt.detail}}
    content["error"]["event_id"] = receipt.event_id
    status_code = receipt.error.status_code if receipt.error else 400
    return JSONResponse(status_code=status_code, content=content)


@router.post("/retry", response_model=WebhookRetryResponse)
async def retry_failed_webhooks(
    webhooks: WebhookProcessor = Depends(get_webhooks),
):
    """Reprocess verified events whose earlier dispatch failed."""
    receipts = await webhooks.retry_failed_events()
    return WebhookRetryResponse(
        retried=len(receipts),
        applied=sum(1 for r in receipts if r.outcome == WebhookOutcome.APPLIED),
        receipts=[_ack(r) for r in receipts],
    )


@router.get("/stats")
async def webhook_stats(
    window: Tuple[datetime, datetime] = Depends(report_window),
    reporting: ReportingService = Depends(get_reporting),
) -> Dict[str, Any]:
    return reporting.webhook_stats(*window)
