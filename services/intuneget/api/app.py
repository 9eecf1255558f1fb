"""
FastAPI application factory for the IntuneGet migration service.

Uses lifespan handler for startup/shutdown with async resource management.
"""

import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from intuneget.catalog import close_catalog, init_catalog
from intuneget.catalog.protocol import CatalogUnavailableError
from intuneget.config import settings
from intuneget.db.session import close_db, init_db
from intuneget.logging_config import configure_logging, get_logger
from intuneget.redis.client import close_redis, init_redis
from intuneget.services import matching_orchestrator

from .health import router as health_router

logger = get_logger(__name__)

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan handler for startup and shutdown."""
    configure_logging(
        json_logs=settings.json_logs, log_level=settings.log_level, app_name=settings.app_name
    )
    logger.info("Starting IntuneGet migration service", version=VERSION)

    await init_db()
    await init_redis()
    await init_catalog()

    yield

    logger.info("Shutting down IntuneGet migration service")
    await matching_orchestrator.cancel_active_runs()
    await close_catalog()
    await close_redis()
    await close_db()


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="IntuneGet Migration API",
        description="SCCM application migration to Intune via Winget packages",
        version=VERSION,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )

    if settings.cors.allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors.allow_origins,
            allow_credentials=settings.cors.allow_credentials,
            allow_methods=settings.cors.allow_methods,
            allow_headers=settings.cors.allow_headers,
        )

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):  # type: ignore[no-untyped-def]
        """Bind a request ID to every log line of the request."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(CatalogUnavailableError)
    async def catalog_unavailable_handler(request: Request, exc: CatalogUnavailableError) -> JSONResponse:
        logger.warning("Package catalog unavailable", error=str(exc), path=str(request.url.path))
        return JSONResponse(status_code=503, content={"detail": "Package catalog unavailable"})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled errors."""
        logger.error("Unhandled exception", exc_info=exc, path=str(request.url.path))
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    app.include_router(health_router)

    from intuneget.api.routers.migrations import router as migrations_router

    app.include_router(migrations_router, prefix=settings.api_prefix)

    from intuneget.api.routers.migrate import router as migrate_router

    app.include_router(migrate_router, prefix=settings.api_prefix)

    from intuneget.api.routers.updates import router as updates_router

    app.include_router(updates_router, prefix=settings.api_prefix)

    from intuneget.api.routers.package import router as package_router

    app.include_router(package_router, prefix=settings.api_prefix)

    return app


# Application instance
app = create_application()
