"""
Health check endpoint for monitoring and uptime.
"""
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text

from ...container import Container
from ...core.logging_config import get_logger
from ...db import utcnow
from ...schemas import HealthResponse
from ..deps import get_container

logger = get_logger(__name__)

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(container: Container = Depends(get_container)):
    """
    Basic health check endpoint.

    Reports degraded (503) when the ledger database cannot be reached.
    """
    db_status = "healthy"
    try:
        with container.store.engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning(f"Health check could not reach the database: {e}")
        db_status = f"unhealthy: {e}"

    services = {
        "database": db_status,
        "event_bus": "healthy" if container.event_bus.is_running else "stopped",
        "push_notifications": "configured" if container.push_client.enabled else "log-only",
    }
    healthy = db_status == "healthy"
    response = HealthResponse(
        status="healthy" if healthy else "degraded",
        timestamp=utcnow(),
        version=container.config.api.version,
        environment=container.config.environment.value,
        services=services,
        scheduler=container.scheduler.status(),
        event_bus=container.event_bus.get_metrics(),
    )
    return JSONResponse(status_code=200 if healthy else 503, content=response.model_dump(mode="json"))
