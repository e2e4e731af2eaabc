"""
Health check endpoints.

- GET /api/health        cheap: process alive, version, uptime
- GET /api/health/deep   database round-trip and error registry state
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import text

from bulkorder.core.async_utils import run_sync
from bulkorder.core.errors.registry import error_registry
from bulkorder.core.structured_logging import APP_VERSION, SERVICE_NAME, get_uptime_s
from bulkorder.dependencies import ServiceContainer, get_services

logger = logging.getLogger(__name__)

router = APIRouter()

COMPONENT_TIMEOUT = 2.0  # seconds


@router.get("/health")
async def health_check():
    """Cheap health check, no I/O."""
    return {
        "status": "ok",
        "version": APP_VERSION,
        "service": SERVICE_NAME,
        "uptime_s": round(get_uptime_s(), 1),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/health/deep")
async def deep_health_check(services: ServiceContainer = Depends(get_services)):
    components = {"error_registry": {"status": "ok" if error_registry.loaded else "degraded",
                                     "codes": len(error_registry)}}

    def _ping() -> None:
        with services.ledger.engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    try:
        await run_sync(_ping, timeout=COMPONENT_TIMEOUT)
        components["database"] = {"status": "ok"}
    except Exception as exc:
        logger.warning("health_check_database_failed", extra={"error": str(exc)})
        components["database"] = {"status": "down", "error": type(exc).__name__}

    overall = "ok" if all(c["status"] == "ok" for c in components.values()) else "degraded"
    return {"status": overall, "components": components, "recent_alerts": len(services.alerts.recent_alerts)}
