"""Simple health and readiness endpoints."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from job_engine.api.dependencies.engine import get_container
from job_engine.core.container import Container
from job_engine.utils.redis_client import ping

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/health", tags=["health"])

SERVICE_NAME = "job-engine-api"


@router.get("/live", summary="Liveness probe")
async def live() -> dict[str, str]:
    """Indicates API process is running."""
    return {"status": "ok", "service": SERVICE_NAME}


@router.get("/ready", summary="Readiness probe")
def ready(container: Container = Depends(get_container)) -> dict[str, Any]:
    """Check readiness of dependencies.

    - Database connectivity
    - Redis connectivity, when progress goes through Redis
    - Embedded worker pool, when jobs run in this process

    Used by load balancers to determine if traffic should be routed to this instance.
    """
    checks: dict[str, Any] = {
        "status": "ok",
        "service": SERVICE_NAME,
        "checks": {},
    }
    all_healthy = True

    try:
        with container.engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        checks["checks"]["database"] = {
            "status": "healthy",
            "message": "Database connection successful",
        }
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}", exc_info=True)
        checks["checks"]["database"] = {
            "status": "unhealthy",
            "message": f"Database connection failed: {str(e)}",
        }
        all_healthy = False

    if container.redis is not None:
        if ping(container.redis):
            checks["checks"]["redis"] = {"status": "healthy", "message": "Redis connection successful"}
        else:
            checks["checks"]["redis"] = {"status": "unhealthy", "message": "Redis did not answer"}
            all_healthy = False

    if container.pool is not None:
        pool_status = container.pool.status()
        checks["checks"]["workers"] = {
            "status": "healthy" if pool_status["running"] else "unhealthy",
            **pool_status,
        }
        all_healthy = all_healthy and pool_status["running"]

    if not all_healthy:
        checks["status"] = "unhealthy"
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=checks,
        )

    return checks
