"""
FastAPI application factory.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .api.router import router as api_router
from .container import Container, build_container
from .core.config import Config, get_config
from .core.exceptions import AppException
from .core.logging_config import get_logger, setup_logging

logger = get_logger(__name__)


def create_app(config: Optional[Config] = None, container: Optional[Container] = None) -> FastAPI:
    """
    Build the application.

    Args:
        config: Configuration; defaults to the cached environment config
        container: Prebuilt service graph (tests); built from config otherwise
    """
    config = config or (container.config if container else get_config())
    setup_logging(config.logging)
    container = container or build_container(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await container.start()
        try:
            yield
        finally:
            await container.stop()

    app = FastAPI(
        title=config.api.title,
        version=config.api.version,
        description=config.api.description,
        docs_url=None if config.is_production() else config.api.docs_url,
        debug=config.debug,
        lifespan=lifespan,
    )
    app.state.container = container

    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={
                "error": {
                    "code": "VALIDATION_ERROR",
                    "message": "Request validation failed",
                    "details": {"errors": [
                        {"loc": list(err.get("loc", ())), "msg": err.get("msg")}
                        for err in exc.errors()
                    ]},
                }
            },
        )

    app.include_router(api_router, prefix=config.api.prefix)
    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_config()
    uvicorn.run(create_app(settings), host=settings.api.host, port=settings.api.port)
