"""
Health check endpoints.
"""

import asyncio

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
import redis.asyncio as redis

from config import settings

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """
    Health check endpoint.
    Returns overall system health status.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "ffmpeg": "unknown",
    }

    # Check database connection
    try:
        from database import engine
        from sqlalchemy import text
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    # Redis only matters when a Redis-backed queue or status channel is configured
    if settings.PROCESSING_QUEUE_BACKEND == "rq" or settings.STATUS_CHANNEL_BACKEND == "redis":
        try:
            r = redis.from_url(settings.REDIS_URL)
            await r.ping()
            await r.aclose()
            health_status["redis"] = "up"
        except Exception as e:
            health_status["redis"] = f"down: {str(e)}"
            health_status["status"] = "degraded"
    else:
        health_status["redis"] = "not configured"

    # Missing ffmpeg is degraded, not down: uploads still complete without derived metadata
    runtime = request.app.state.runtime
    if await asyncio.to_thread(runtime.prober.is_available):
        health_status["ffmpeg"] = "up"
    else:
        health_status["ffmpeg"] = "missing"
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Kubernetes-style readiness probe."""
    runtime = request.app.state.runtime
    missing = []
    if not runtime.status_channel.is_ready:
        missing.append("status_channel")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
