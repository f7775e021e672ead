"""Scheduled task admin routes."""

from typing import Any, Dict, Optional, Union

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from core.container import container
from core.exceptions import ValidationError
from core.logging import get_logger
from models.tasks import ScheduledTask, TaskUpdate, iso_timestamp
from services.scheduler import TaskScheduler
from services.task_store import TaskStore
from services.task_tools import RUN_RESULT_CHARS, parse_delivery

logger = get_logger(__name__)
router = APIRouter(prefix="/api/tasks", tags=["tasks"])

DETAIL_RUNS_LIMIT = 20
DETAIL_RESULT_CHARS = 1000


class TaskUpdateRequest(BaseModel):
    name: Optional[str] = None
    cron: Optional[str] = None
    prompt: Optional[str] = None
    delivery: Optional[Union[Dict[str, Any], str]] = None
    enabled: Optional[bool] = None


def _not_found() -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"error": "Task not found"})


def _task_payload(task: ScheduledTask) -> Dict[str, Any]:
    return {
        "id": task.id,
        "name": task.name,
        "cron": task.cron,
        "prompt": task.prompt,
        "delivery": task.delivery_config or {},
        "enabled": bool(task.enabled),
        "lastRunAt": iso_timestamp(task.last_run_at),
        "nextRunAt": iso_timestamp(task.next_run_at),
        "createdAt": iso_timestamp(task.created_at),
    }


@router.get("")
async def list_tasks(
    task_store: TaskStore = Depends(lambda: container.task_store())
):
    tasks = await task_store.list_tasks()
    return {"tasks": [_task_payload(t) for t in tasks]}


@router.get("/{task_id}")
async def get_task(
    task_id: str,
    task_store: TaskStore = Depends(lambda: container.task_store())
):
    """Task definition with its most recent runs."""
    task = await task_store.get_task(task_id)
    if task is None:
        return _not_found()

    runs = await task_store.list_runs(task_id, DETAIL_RUNS_LIMIT)
    payload = _task_payload(task)
    payload["runs"] = [
        {
            "id": r.id,
            "status": r.status.value,
            "result": r.result[:DETAIL_RESULT_CHARS] if r.result is not None else None,
            "startedAt": iso_timestamp(r.started_at),
            "finishedAt": iso_timestamp(r.finished_at),
        }
        for r in runs
    ]
    return payload


@router.put("/{task_id}")
async def update_task(
    task_id: str,
    request: TaskUpdateRequest,
    task_store: TaskStore = Depends(lambda: container.task_store()),
    scheduler: TaskScheduler = Depends(lambda: container.task_scheduler())
):
    fields = request.model_dump(exclude_none=True)
    try:
        if "delivery" in fields:
            fields["delivery_config"] = parse_delivery(fields.pop("delivery"))
        updated = await task_store.update_task(task_id, TaskUpdate(**fields))
    except ValidationError as e:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(e)})

    if updated is None:
        return _not_found()

    await scheduler.reload(task_id)
    return {"updated": True, "id": task_id}


@router.delete("/{task_id}")
async def delete_task(
    task_id: str,
    task_store: TaskStore = Depends(lambda: container.task_store()),
    scheduler: TaskScheduler = Depends(lambda: container.task_scheduler())
):
    if await task_store.get_task(task_id) is None:
        return _not_found()

    scheduler.remove(task_id)
    await task_store.delete_task(task_id)
    return {"deleted": True, "id": task_id}


@router.post("/{task_id}/run")
async def run_task(
    task_id: str,
    scheduler: TaskScheduler = Depends(lambda: container.task_scheduler())
):
    """Execute the task now, outside its schedule."""
    result = await scheduler.run_now(task_id)
    if result is None:
        return _not_found()

    logger.info("Task run via API", task_id=task_id)
    return {"executed": True, "id": task_id, "result": result[:RUN_RESULT_CHARS]}
