"""
Agent state and task scheduling service.

Hosts the embedded SQLite state store and the cron scheduler, and exposes
health checks plus the scheduled-task admin API.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.container import container
from core.config import Settings
from core.exceptions import StorageError
from core.health import set_startup_time
from core.logging import configure_logging, get_logger
from routers import health, tasks

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Startup
    logger.info("Starting agent state service")
    set_startup_time()

    database = container.database()
    scheduler = container.task_scheduler()

    await database.startup()
    try:
        await scheduler.start()
    except Exception:
        await database.shutdown()
        raise

    logger.info("Services started successfully", armed_tasks=len(scheduler.armed_task_ids()))
    yield

    # Shutdown in reverse order; executions already running finish before storage closes
    scheduler.stop()
    await scheduler.drain()
    await database.shutdown()
    logger.info("Services shutdown complete")


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except StorageError as e:
            logger.error("Storage unavailable", path=request.url.path, error=str(e))
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"error": "Storage unavailable", "detail": str(e)}
            )
        except Exception as e:
            logger.error("Unhandled exception", path=request.url.path,
                         error=f"{type(e).__name__}: {e}", exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"error": f"{type(e).__name__}: {e}", "detail": "Internal server error"}
            )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or container.settings()
    configure_logging(settings)

    app = FastAPI(
        title="Agent State Service",
        version="1.0.0",
        description="Embedded state store and cron task scheduler for the agent",
        lifespan=lifespan,
    )
    app.add_middleware(CatchAllExceptionsMiddleware)

    app.include_router(health.router)
    app.include_router(tasks.router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = container.settings()
    logger.info("Starting agent state service",
               host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        reload_dirs=["."] if settings.debug else None,
        reload_excludes=["*.pyc", "__pycache__", "*.log", "*.db"] if settings.debug else None,
    )
