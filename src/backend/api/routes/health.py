"""
Health check endpoints.

Health, readiness and liveness probes for monitoring and orchestration.
"""

from __future__ import annotations

import time

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from api.dependencies import DB, AppSettings, Channel
from models.schemas.health import (
    DatabaseHealth,
    HealthResponse,
    LivenessResponse,
    ReadinessResponse,
    StreamChannelHealth,
)
from utils.db_utils import check_pool_health

router = APIRouter()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Database pool statistics and resumable stream status.",
    tags=["Health"],
)
async def health_check(db: DB, channel: Channel, settings: AppSettings, request: Request) -> HealthResponse:
    """Comprehensive health check endpoint."""
    db_health_data = await check_pool_health(db)
    db_healthy = bool(db_health_data.get("healthy", False))

    streams = StreamChannelHealth(backend=settings.resumable_stream_backend, enabled=channel is not None)
    if db_healthy and (streams.enabled or settings.resumable_stream_backend == "none"):
        status = "healthy"
    elif db_healthy:
        status = "degraded"
    else:
        status = "unhealthy"

    started_at = getattr(request.app.state, "started_at", time.monotonic())
    return HealthResponse(
        status=status,
        version=settings.app_version,
        uptime_seconds=round(time.monotonic() - started_at, 2),
        database=DatabaseHealth(
            healthy=db_healthy,
            pool_size=db_health_data.get("pool_size", 0),
            pool_min_size=db_health_data.get("pool_min_size", 0),
            pool_max_size=db_health_data.get("pool_max_size", 0),
            pool_free=db_health_data.get("free_connections", 0),
            pool_used=db_health_data.get("used_connections", 0),
            error=db_health_data.get("error"),
        ),
        streams=streams,
    )


@router.get(
    "/health/ready",
    response_model=ReadinessResponse,
    summary="Readiness probe",
    responses={503: {"description": "Service not ready"}},
    tags=["Health"],
)
async def readiness_check(db: DB) -> ReadinessResponse | JSONResponse:
    """Kubernetes-style readiness probe."""
    try:
        async with db.acquire(timeout=5.0) as conn:
            await conn.fetchval("SELECT 1")
        return ReadinessResponse(ready=True)
    except Exception as e:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "error": str(e)},
        )


@router.get(
    "/health/live",
    response_model=LivenessResponse,
    summary="Liveness probe",
    tags=["Health"],
)
async def liveness_check() -> LivenessResponse:
    """Kubernetes-style liveness probe."""
    return LivenessResponse(alive=True)
