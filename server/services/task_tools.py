"""Task-management tools exposed to the agent.

Each tool returns a JSON-ready dict. Expected failures (unknown task,
malformed cron) come back as ``{"error": ...}`` instead of raising, so the
agent can read them and correct itself.
"""

import json
import uuid
from typing import Any, Dict, Optional, Protocol, Union, TYPE_CHECKING

from core.exceptions import StateCoreError, ValidationError
from core.logging import get_logger
from models.tasks import TaskUpdate, iso_timestamp
from services.cron import next_fire_time, validate_cron

if TYPE_CHECKING:
    from services.task_store import TaskStore

logger = get_logger(__name__)

PROMPT_PREVIEW_CHARS = 200
RUN_RESULT_CHARS = 2000
HISTORY_RESULT_CHARS = 500


class SchedulerHandle(Protocol):
    async def reload(self, task_id: str) -> bool: ...

    def remove(self, task_id: str) -> bool: ...

    async def run_now(self, task_id: str) -> Optional[str]: ...


def parse_delivery(delivery: Union[str, Dict[str, Any], None]) -> Optional[Dict[str, Any]]:
    """Accept a delivery config as a dict or a JSON object string."""
    if delivery is None or isinstance(delivery, dict):
        return delivery or None
    try:
        parsed = json.loads(delivery) if delivery.strip() else {}
    except ValueError as e:
        raise ValidationError(f"Invalid delivery config: {e}") from e
    if not isinstance(parsed, dict):
        raise ValidationError("Delivery config must be a JSON object")
    return parsed or None


class TaskTools:
    def __init__(self, task_store: "TaskStore", scheduler: Optional[SchedulerHandle] = None,
                 runs_limit: int = 10):
        self.task_store = task_store
        self.scheduler = scheduler
        self.runs_limit = runs_limit

    async def create_task(self, name: str, cron: str, prompt: str,
                          delivery: Union[str, Dict[str, Any], None] = None) -> Dict[str, Any]:
        try:
            validate_cron(cron)
            delivery_config = parse_delivery(delivery)
        except ValidationError as e:
            return {"error": str(e)}

        upcoming = next_fire_time(cron)
        task_id = str(uuid.uuid4())
        await self.task_store.create_task(
            task_id, name, cron, prompt,
            delivery_config=delivery_config,
            next_run_at=upcoming.timestamp() if upcoming else None
        )

        if self.scheduler is not None:
            await self.scheduler.reload(task_id)

        return {
            "created": True,
            "id": task_id,
            "name": name,
            "cron": cron,
            "nextRun": upcoming.isoformat() if upcoming else None,
        }

    async def list_tasks(self) -> Dict[str, Any]:
        tasks = await self.task_store.list_tasks()
        return {
            "tasks": [
                {
                    "id": t.id,
                    "name": t.name,
                    "cron": t.cron,
                    "prompt": t.prompt[:PROMPT_PREVIEW_CHARS],
                    "delivery": t.delivery_config or {},
                    "enabled": bool(t.enabled),
                    "lastRunAt": iso_timestamp(t.last_run_at),
                    "nextRunAt": iso_timestamp(t.next_run_at),
                }
                for t in tasks
            ],
            "count": len(tasks),
        }

    async def update_task(self, id: str, name: Optional[str] = None, cron: Optional[str] = None,
                          prompt: Optional[str] = None,
                          delivery: Union[str, Dict[str, Any], None] = None,
                          enabled: Optional[bool] = None) -> Dict[str, Any]:
        """Only arguments that are not None are changed."""
        if await self.task_store.get_task(id) is None:
            return {"error": f"Task {id} not found"}

        fields: Dict[str, Any] = {}
        try:
            if cron is not None:
                validate_cron(cron)
                fields["cron"] = cron
            if delivery is not None:
                fields["delivery_config"] = parse_delivery(delivery)
        except ValidationError as e:
            return {"error": str(e)}

        if name is not None:
            fields["name"] = name
        if prompt is not None:
            fields["prompt"] = prompt
        if enabled is not None:
            fields["enabled"] = enabled

        updated = await self.task_store.update_task(id, TaskUpdate(**fields))
        if updated is None:
            return {"error": f"Task {id} not found"}

        if self.scheduler is not None:
            await self.scheduler.reload(id)
        return {"updated": True, "id": id}

    async def delete_task(self, id: str) -> Dict[str, Any]:
        existing = await self.task_store.get_task(id)
        if existing is None:
            return {"error": f"Task {id} not found"}

        if self.scheduler is not None:
            self.scheduler.remove(id)
        await self.task_store.delete_task(id)
        return {"deleted": True, "id": id, "name": existing.name}

    async def run_task_now(self, id: str) -> Dict[str, Any]:
        if self.scheduler is None:
            return {"error": "Scheduler not available"}

        try:
            result = await self.scheduler.run_now(id)
        except StateCoreError as e:
            logger.error("run_task_now failed", task_id=id, error=str(e))
            return {"error": str(e)}

        if result is None:
            return {"error": f"Task {id} not found"}
        return {"executed": True, "id": id, "result": result[:RUN_RESULT_CHARS]}

    async def list_task_runs(self, id: str, limit: Optional[int] = None) -> Dict[str, Any]:
        runs = await self.task_store.list_runs(id, limit or self.runs_limit)
        return {
            "runs": [
                {
                    "id": r.id,
                    "status": r.status.value,
                    "result": r.result[:HISTORY_RESULT_CHARS] if r.result is not None else None,
                    "startedAt": iso_timestamp(r.started_at),
                    "finishedAt": iso_timestamp(r.finished_at),
                }
                for r in runs
            ],
            "count": len(runs),
        }
