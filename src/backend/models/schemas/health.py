"""
Response models for the health, readiness and liveness probes.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class DatabaseHealth(BaseModel):
    """Result of ``SELECT 1`` plus a snapshot of the asyncpg pool."""

    healthy: bool
    pool_size: int = Field(default=0, ge=0, description="Open connections")
    pool_min_size: int = Field(default=0, ge=0)
    pool_max_size: int = Field(default=0, ge=0)
    pool_free: int = Field(default=0, ge=0, description="Idle connections")
    pool_used: int = Field(default=0, ge=0, description="Borrowed connections")
    error: str | None = None


class StreamChannelHealth(BaseModel):
    """Whether resume requests can reattach to running generations."""

    backend: Literal["postgres", "memory", "none"]
    enabled: bool


class HealthResponse(BaseModel):
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "healthy",
                "version": "1.0.0",
                "uptime_seconds": 3600.5,
                "database": {
                    "healthy": True,
                    "pool_size": 4,
                    "pool_min_size": 2,
                    "pool_max_size": 10,
                    "pool_free": 3,
                    "pool_used": 1,
                },
                "streams": {"backend": "postgres", "enabled": True},
            }
        }
    )

    status: Literal["healthy", "degraded", "unhealthy"] = Field(
        ..., description="degraded: database up but resumable streams unavailable"
    )
    version: str
    uptime_seconds: float
    database: DatabaseHealth
    streams: StreamChannelHealth


class ReadinessResponse(BaseModel):
    ready: bool
    error: str | None = None


class LivenessResponse(BaseModel):
    alive: bool = True
