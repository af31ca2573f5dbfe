"""Health check endpoints."""

from typing import Any, Dict
from datetime import datetime
import logging

from fastapi import APIRouter
import redis.asyncio as redis

from syncengine.adapters import AdapterRegistry
from syncengine.core.config import get_settings
from syncengine.core.database import database, COLLECTIONS
from syncengine.models import SyncStatus

logger = logging.getLogger(__name__)

router = APIRouter()
settings = get_settings()


def _base_status() -> Dict[str, Any]:
    return {
        "status": "healthy",
        "service": settings.service_name,
        "environment": settings.environment,
        "timestamp": datetime.utcnow().isoformat(),
    }


async def _check_database() -> Dict[str, Any]:
    if not database.client:
        return {"status": "disconnected"}
    try:
        await database.client.admin.command("ping")
        running = await database.get_collection(COLLECTIONS["sync_jobs"]).count_documents(
            {"status": SyncStatus.RUNNING.value}
        )
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}
    return {"status": "healthy", "running_jobs": running}


async def _check_job_lock() -> Dict[str, Any]:
    if settings.lock_backend != "redis":
        return {"status": "healthy", "backend": settings.lock_backend}

    client = redis.from_url(settings.redis_url, decode_responses=True)
    try:
        await client.ping()
    except redis.RedisError as e:
        logger.warning(f"Redis health check failed: {e}")
        return {"status": "unhealthy", "backend": "redis", "error": str(e)}
    finally:
        await client.aclose()
    return {"status": "healthy", "backend": "redis"}


@router.get("/health")
async def health_check():
    """Basic health check."""
    return _base_status()


@router.get("/health/detailed")
async def detailed_health_check():
    """Database, job lock backend and registered adapters."""
    health_status = _base_status()
    health_status["checks"] = {
        "database": await _check_database(),
        "job_lock": await _check_job_lock(),
    }
    health_status["adapters"] = [t.value for t in AdapterRegistry.list_types()]

    if health_status["checks"]["database"]["status"] != "healthy":
        health_status["status"] = "unhealthy"
    elif health_status["checks"]["job_lock"]["status"] != "healthy":
        # Syncs cannot acquire their lock, reads still work
        health_status["status"] = "degraded"

    return health_status
