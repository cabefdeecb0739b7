"""
Common FastAPI dependencies used across the API.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple, TypeVar

from fastapi import Query, Request

from ..container import Container
from ..core.exceptions import ValidationError
from ..db import utcnow
from ..services.billing import BillingEngine
from ..services.disputes import DisputeManager
from ..services.payment_methods import PaymentMethodService
from ..services.payments import PaymentService
from ..services.reporting import ReportingService
from ..services.results import Result, Success
from ..services.webhooks import WebhookProcessor

T = TypeVar("T")

DEFAULT_REPORT_DAYS = 30


def get_container(request: Request) -> Container:
    return request.app.state.container


def get_billing(request: Request) -> BillingEngine:
    return get_container(request).billing


def get_payments(request: Request) -> PaymentService:
    return get_container(request).payments


def get_payment_methods(request: Request) -> PaymentMethodService:
    return get_container(request).payment_methods


def get_disputes(request: Request) -> DisputeManager:
    return get_container(request).disputes


def get_webhooks(request: Request) -> WebhookProcessor:
    return get_container(request).webhooks


def get_reporting(request: Request) -> ReportingService:
    return get_container(request).reporting


def report_window(
    start: Optional[datetime] = Query(None, description="Window start (UTC); defaults to 30 days ago"),
    end: Optional[datetime] = Query(None, description="Window end (UTC); defaults to now"),
) -> Tuple[datetime, datetime]:
    """Reporting window, naive UTC like every stored timestamp."""
    end = naive_utc(end) if end else utcnow()
    start = naive_utc(start) if start else end - timedelta(days=DEFAULT_REPORT_DAYS)
    if start > end:
        raise ValidationError("start must not be after end", field_errors={"start": ["after end"]})
    return start, end


def naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def unwrap(result: Result[T]) -> T:
    """Value of a Success; a Failure's error is raised for the exception handler."""
    if isinstance(result, Success):
        return result.value
    raise result.error
