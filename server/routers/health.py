"""Liveness and readiness routes."""

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from core.container import container
from core.database import Database
from core.health import get_liveness, get_readiness
from services.scheduler import TaskScheduler

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    return get_liveness()


@router.get("/ready")
async def readiness_check(
    database: Database = Depends(lambda: container.database()),
    scheduler: TaskScheduler = Depends(lambda: container.task_scheduler())
):
    """503 until the database answers."""
    readiness = await get_readiness(database, scheduler)
    if not readiness["checks"]["database"]:
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=readiness)
    return readiness
