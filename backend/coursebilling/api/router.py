"""
Main API router that assembles all API endpoints.
"""
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from .v1 import router as v1_router

# Create main router
router = APIRouter()

# Include API version routers
router.include_router(v1_router)


# Root endpoint
@router.get("/")
async def api_root(request: Request) -> JSONResponse:
    """
    API root endpoint showing available routes and API information.
    """
    config = request.app.state.container.config

    # Group API routes by their first path segment after the version
    organized_routes = {}
    for route in request.app.routes:
        path = getattr(route, "path", "")
        if not path.startswith(f"{config.api.prefix}/v1/"):
            continue
        endpoint = path[len(f"{config.api.prefix}/v1/"):].split("/")[0]
        organized_routes.setdefault(endpoint, []).append({
            "path": path,
            "methods": sorted(getattr(route, "methods", None) or []),
        })

    return JSONResponse(
        content={
            "message": f"Welcome to {config.api.title}",
            "description": config.api.description,
            "version": config.api.version,
            "documentation": {
                "swagger": config.api.docs_url,
                "openapi": "/openapi.json",
            },
            "api_versions": {
                "v1": {
                    "status": "stable",
                    "prefix": f"{config.api.prefix}/v1",
                    "endpoints": organized_routes,
                }
            },
            "links": {
                "health": f"{config.api.prefix}/v1/health",
            },
        }
    )


# Export the router
__all__ = ["router"]
