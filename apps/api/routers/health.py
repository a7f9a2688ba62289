"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
import redis.asyncio as redis
from redis.exceptions import RedisError

from config import settings
from database import engine

router = APIRouter()


async def _database_status() -> str:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        return f"down: {e.__class__.__name__}"
    return "up"


async def _redis_status() -> str:
    try:
        r = redis.from_url(settings.REDIS_URL)
        try:
            await r.ping()
        finally:
            await r.aclose()
    except (RedisError, OSError) as e:
        return f"down: {e.__class__.__name__}"
    return "up"


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Database is required; Redis only backs shared rate-limit counters.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": await _database_status(),
        "redis": await _redis_status(),
        "billing": "enabled" if settings.BILLING_ENABLED else "disabled",
        "stripe_webhook_secret": "configured" if settings.STRIPE_WEBHOOK_SECRET else "missing",
    }
    if health_status["database"] != "up":
        health_status["status"] = "unhealthy"
    elif health_status["redis"] != "up":
        health_status["status"] = "degraded"
    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    missing = []
    if await _database_status() != "up":
        missing.append("DATABASE")
    if settings.BILLING_ENABLED and not settings.STRIPE_WEBHOOK_SECRET:
        missing.append("STRIPE_WEBHOOK_SECRET")

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
