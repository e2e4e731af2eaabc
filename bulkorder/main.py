"""
Bulk Order Service API
======================

FastAPI application: bulk CSV order ingestion, progress streaming,
operation history and rollback.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from bulkorder.config import settings
from bulkorder.core.database import close_db, init_db
from bulkorder.core.errors import BulkOrderError
from bulkorder.core.errors.middleware import bulkorder_error_handler
from bulkorder.core.errors.registry import error_registry
from bulkorder.core.log_middleware import CorrelationMiddleware
from bulkorder.core.structured_logging import APP_VERSION, setup_logging
from bulkorder.dependencies import ServiceContainer, build_services
from bulkorder.routers import bulk_orders, health

# Initialize structured logging before any logger calls
setup_logging(
    settings.log_directory,
    settings.log_file,
    log_level=logging.DEBUG if settings.debug else logging.INFO,
)

logger = logging.getLogger(__name__)

API_TITLE = "Bulk Order Service API"

TAGS_METADATA = [
    {"name": "health", "description": "Liveness and component checks."},
    {"name": "bulk-orders", "description": "Bulk CSV upload, progress stream, history and rollback."},
]


async def retention_loop(services: ServiceContainer) -> None:
    """Purge closed operations past the retention period, forever."""
    while True:
        try:
            purged = await services.ledger.purge_expired(settings.retention_days)
            if purged:
                logger.info("Retention sweep purged %d operation(s)", purged)
        except Exception as e:
            logger.error("Retention sweep failed (will retry): %s", e)
        try:
            swept = services.limiter.sweep()
            if swept:
                logger.debug("Rate limiter swept %d idle client(s)", swept)
        except Exception as e:
            logger.error("Rate limiter sweep failed: %s", e)
        try:
            swept = services.alerts.sweep()
            if swept:
                logger.debug("Threat monitor swept %d idle window(s)", swept)
        except Exception as e:
            logger.error("Threat monitor sweep failed: %s", e)
        await asyncio.sleep(settings.retention_sweep_interval_s)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting %s v%s", API_TITLE, APP_VERSION)

    error_registry.load()
    init_db()  # Create tables / run Alembic migrations
    logger.info("Database initialized")

    if getattr(app.state, "services", None) is None:
        app.state.services = build_services()
    services: ServiceContainer = app.state.services

    retention_task = asyncio.create_task(retention_loop(services))

    yield

    logger.info("Shutting down %s...", API_TITLE)
    retention_task.cancel()
    try:
        await retention_task
    except asyncio.CancelledError:
        pass

    await services.aclose()
    close_db()
    logger.info("Shutdown complete")


def create_app(services: Optional[ServiceContainer] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=API_TITLE,
        version=APP_VERSION,
        openapi_tags=TAGS_METADATA,
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    # Correlation ID middleware (request_id + correlation_id in every log)
    app.add_middleware(CorrelationMiddleware)

    # Structured error handler for BulkOrderError
    app.add_exception_handler(BulkOrderError, bulkorder_error_handler)

    # Catch-all handler so unhandled exceptions return JSON (not bare text)
    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal Server Error"},
        )

    app.include_router(health.router, prefix="/api", tags=["health"])
    app.include_router(bulk_orders.router, prefix="/api/bulk-orders", tags=["bulk-orders"])

    @app.get("/", tags=["health"], summary="API Root")
    async def root():
        return {
            "name": API_TITLE,
            "version": APP_VERSION,
            "status": "running",
            "docs": {"swagger": "/docs", "openapi": "/openapi.json"},
        }

    return app


# Create the app instance
app = create_app()
