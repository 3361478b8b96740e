"""
Health check endpoints for service monitoring.

Provides /healthz for load balancers and monitoring systems, including
renewal engine state and storage connectivity.
"""

from datetime import datetime, timezone
from typing import Any, Dict

import structlog
from fastapi import APIRouter, status
from sqlalchemy.exc import SQLAlchemyError

from webhook_renewal.dependencies import Container

router = APIRouter(tags=["health"])
logger = structlog.get_logger(__name__)


@router.get(
    "/healthz",
    status_code=status.HTTP_200_OK,
    summary="Health check",
    description="Returns service health, renewal engine state and storage status",
)
async def health_check(container: Container) -> Dict[str, Any]:
    """
    Health check endpoint for monitoring and load balancer health checks.

    Example response:
        {"status": "ok", "version": "0.1.0", "storage": {"backend": "memory"}, ...}
    """
    logger.debug("Health check requested")
    settings = container.settings

    storage: Dict[str, Any] = {"backend": container.storage_backend}
    overall = "ok"

    if container.storage_backend == "sql":
        from webhook_renewal.db.database import ping

        try:
            storage["latency_ms"] = round(await ping(), 2)
            storage["status"] = "ok"
        except (SQLAlchemyError, OSError) as e:
            logger.warning("Database health check failed", error=str(e))
            storage["status"] = "unavailable"
            overall = "degraded"

    return {
        "status": overall,
        "version": settings.app_version,
        "environment": settings.app_env,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "webhook_url": settings.notification_url,
        "storage": storage,
        "renewal_engine": container.renewal_engine.get_stats(),
        "token_refresh": container.token_manager.get_stats(),
    }


@router.get(
    "/healthz/live",
    status_code=status.HTTP_200_OK,
    summary="Liveness check",
    include_in_schema=False,
)
async def liveness() -> Dict[str, str]:
    """Returns 200 if the service is alive, regardless of dependencies."""
    return {"status": "alive"}
