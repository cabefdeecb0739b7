"""
Billing analytics endpoints.
"""
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, Depends, Query

from ...services.reporting import ReportingService
from ..deps import get_reporting, naive_utc, report_window

router = APIRouter(prefix="/analytics")


@router.get("/payments")
async def payment_analytics(
    window: Tuple[datetime, datetime] = Depends(report_window),
    reporting: ReportingService = Depends(get_reporting),
) -> Dict[str, Any]:
    """
    Transaction totals, success rate, revenue, payment method distribution and
    daily counts for the window (default: last 30 days).
    """
    return reporting.payment_analytics(*window)


@router.get("/disputes")
async def dispute_analytics(
    window: Tuple[datetime, datetime] = Depends(report_window),
    reporting: ReportingService = Depends(get_reporting),
) -> Dict[str, Any]:
    return reporting.dispute_analytics(*window)


@router.get("/subscriptions")
async def subscription_metrics(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    user_id: Optional[int] = Query(None, gt=0),
    reporting: ReportingService = Depends(get_reporting),
) -> Dict[str, Any]:
    """Churn and trial conversion over subscriptions started in the window; unbounded by default."""
    return reporting.subscription_metrics(
        naive_utc(start) if start else None,
        naive_utc(end) if end else None,
        user_id,
    )
