"""
API Version 1 Router
"""
from fastapi import APIRouter

from . import (
    analytics,
    disputes,
    health,
    payment_methods,
    payments,
    subscriptions,
    webhooks,
)

router = APIRouter(prefix="/v1", tags=["v1"])

# Include all routers
router.include_router(subscriptions.router, tags=["subscriptions"])
router.include_router(payments.router, tags=["payments"])
router.include_router(payment_methods.router, tags=["payment-methods"])
router.include_router(disputes.router, tags=["disputes"])
router.include_router(webhooks.router, tags=["webhooks"])
router.include_router(analytics.router, tags=["analytics"])
router.include_router(health.router, tags=["health"])
