"""
Health check endpoints.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import func, select
import redis.asyncio as redis

from config import settings
from database import engine
from models.generation_lock import GenerationLock

router = APIRouter()


async def _database_status() -> Dict[str, Any]:
    """Ping the store and count live generation locks."""
    now = datetime.now(timezone.utc)
    async with engine.connect() as conn:
        result = await conn.execute(
            select(func.count()).select_from(GenerationLock).where(GenerationLock.expires_at > now)
        )
        return {"database": "up", "active_generation_locks": int(result.scalar_one())}


async def _redis_status() -> str:
    client = redis.from_url(settings.REDIS_URL)
    try:
        await client.ping()
    finally:
        await client.aclose()
    return "up"


@router.get("/health")
async def health_check():
    """
    Overall service health.
    Redis only backs rate limiting, so an outage degrades instead of failing.
    """
    report: Dict[str, Any] = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "generation_provider": "configured" if settings.GENERATION_PROVIDER_API_KEY else "missing",
    }

    try:
        report.update(await _database_status())
    except Exception as exc:
        report["database"] = f"down: {exc.__class__.__name__}"
        report["status"] = "unhealthy"

    try:
        report["redis"] = await _redis_status()
    except Exception as exc:
        report["redis"] = f"down: {exc.__class__.__name__}"
        if report["status"] == "healthy":
            report["status"] = "degraded"

    return report


@router.get("/health/ready")
async def readiness_check():
    """Ready once the ledger store answers and the provider key is set."""
    missing: List[str] = []
    if not settings.GENERATION_PROVIDER_API_KEY:
        missing.append("GENERATION_PROVIDER_API_KEY")
    try:
        await _database_status()
    except Exception:
        missing.append("DATABASE")

    if missing:
        return JSONResponse(status_code=503, content={"ready": False, "missing": missing})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
