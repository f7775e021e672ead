"""Health check utilities for daemon monitoring.

Provides uptime tracking and readiness status for the /health and /ready endpoints.
"""
import time
from typing import Dict, Any, TYPE_CHECKING

from core.exceptions import StorageError
from core.logging import get_logger

if TYPE_CHECKING:
    from core.database import Database
    from services.scheduler import TaskScheduler

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


def get_liveness() -> Dict[str, Any]:
    return {"status": "ok", "uptime_seconds": round(get_uptime(), 1)}


async def check_database(database: "Database") -> bool:
    """Check database connectivity."""
    try:
        return await database.ping()
    except StorageError as e:
        logger.warning("Database health check failed", error=str(e))
        return False


async def get_readiness(database: "Database", scheduler: "TaskScheduler") -> Dict[str, Any]:
    """Readiness status for /ready.

    Returns:
        Dict with overall status, per-component checks and scheduler state.
    """
    db_healthy = await check_database(database)

    return {
        "status": "ready" if db_healthy else "unavailable",
        "uptime_seconds": round(get_uptime(), 1),
        "checks": {
            "database": db_healthy,
        },
        "scheduler": {
            "running": scheduler.is_running,
            "armed_tasks": len(scheduler.armed_task_ids()),
        },
    }
