"""Health check utilities for worker monitoring.

Provides uptime tracking and health status for the /health endpoint.
"""
import time
from typing import Dict, Any, Optional, TYPE_CHECKING

from sqlalchemy import text

from core.logging import get_logger

if TYPE_CHECKING:
    from core.config import Settings
    from core.database import Database
    from services.queue import TaskQueue
    from services.storage import ArtifactStorage

logger = get_logger(__name__)

# Module-level startup time tracking
_startup_time: float = 0.0


def set_startup_time() -> None:
    """Record the application startup time. Call once during lifespan startup."""
    global _startup_time
    _startup_time = time.time()


def get_uptime() -> float:
    """Get uptime in seconds since startup."""
    return time.time() - _startup_time if _startup_time else 0.0


async def check_database(database: "Database") -> bool:
    """Check database connectivity."""
    try:
        async with database.get_session() as session:
            await session.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning("Database health check failed", error=str(e))
        return False


async def get_health_status(
    database: "Database",
    queue: "TaskQueue",
    settings: "Settings",
    storage: Optional["ArtifactStorage"] = None,
) -> Dict[str, Any]:
    """Get health status for /health endpoint.

    Returns:
        Dict containing status, uptime, queue backlog and feature flags.
    """
    db_healthy = await check_database(database)
    queue_stats = await queue.stats() if db_healthy else None

    return {
        "status": "healthy" if db_healthy else "degraded",
        "uptime_seconds": round(get_uptime(), 1),
        "checks": {
            "database": db_healthy,
        },
        "queue": queue_stats,
        "features": {
            "dialect": database.dialect,
            "skip_locked": database.supports_skip_locked,
            "recovery": settings.recovery_enabled,
            "durable_storage": storage.is_durable if storage is not None else settings.object_storage_enabled,
        },
    }
