"""Persistence for scheduled tasks and their run history."""

import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union, TYPE_CHECKING

from sqlalchemy import delete, func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from core.exceptions import NotFoundError, ValidationError
from core.logging import get_logger
from models.tasks import RunStatus, ScheduledTask, TaskRun, TaskUpdate
from services.cron import build_trigger, validate_cron

if TYPE_CHECKING:
    from core.database import Database

logger = get_logger(__name__)

TRUNCATION_MARKER = "\n... [truncated]"


def truncate_result(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER


class TaskStore:
    """CRUD for task definitions plus append-only run history.

    Not-found lookups return None/False; only storage failures raise.
    """

    def __init__(self, database: "Database", result_max_chars: int = 10000):
        self.database = database
        self.result_max_chars = result_max_chars

    # ============================================================================
    # Tasks
    # ============================================================================

    async def create_task(self, task_id: str, name: str, cron: str, prompt: str,
                          delivery_config: Optional[Dict[str, Any]] = None,
                          next_run_at: Optional[float] = None) -> ScheduledTask:
        """Create an enabled task.

        The cron expression is parsed before anything is written; when
        ``next_run_at`` is omitted it is derived from the expression (UTC).
        """
        trigger = build_trigger(cron)
        if next_run_at is None:
            upcoming = trigger.get_next_fire_time(None, datetime.now(timezone.utc))
            next_run_at = upcoming.timestamp() if upcoming else None

        now = time.time()
        task = ScheduledTask(
            id=task_id,
            name=name,
            cron=cron,
            prompt=prompt,
            delivery_config=delivery_config or None,
            enabled=True,
            next_run_at=next_run_at,
            created_at=now,
            updated_at=now
        )

        async with self.database.get_session() as session:
            session.add(task)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise ValidationError(f"Task {task_id} already exists") from e

        logger.info("Task created", task_id=task_id, name=name, cron=cron, next_run_at=next_run_at)
        return task

    async def get_task(self, task_id: str) -> Optional[ScheduledTask]:
        async with self.database.get_session() as session:
            stmt = select(ScheduledTask).where(ScheduledTask.id == task_id)
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def list_tasks(self) -> List[ScheduledTask]:
        """All tasks, newest first."""
        async with self.database.get_session() as session:
            stmt = select(ScheduledTask).order_by(ScheduledTask.created_at.desc(), ScheduledTask.id.asc())
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_enabled_tasks(self) -> List[ScheduledTask]:
        async with self.database.get_session() as session:
            stmt = (
                select(ScheduledTask)
                .where(ScheduledTask.enabled == True)  # noqa: E712
                .order_by(ScheduledTask.created_at.desc(), ScheduledTask.id.asc())
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def count_tasks(self) -> int:
        async with self.database.get_session() as session:
            result = await session.execute(select(func.count()).select_from(ScheduledTask))
            return int(result.scalar_one())

    async def update_task(self, task_id: str,
                          changes: Union[TaskUpdate, Dict[str, Any]]) -> Optional[ScheduledTask]:
        """Apply only the explicitly provided fields.

        Returns the updated task, or None when it does not exist. An empty
        update leaves the row (including ``updated_at``) untouched.
        """
        if not isinstance(changes, TaskUpdate):
            changes = TaskUpdate(**changes)
        fields = changes.changes()

        if "cron" in fields:
            validate_cron(fields["cron"])

        async with self.database.get_session() as session:
            stmt = select(ScheduledTask).where(ScheduledTask.id == task_id)
            result = await session.execute(stmt)
            task = result.scalar_one_or_none()

            if task is None:
                return None
            if not fields:
                return task

            for name, value in fields.items():
                setattr(task, name, value)
            task.updated_at = time.time()

            await session.commit()

        logger.info("Task updated", task_id=task_id, fields=sorted(fields))
        return task

    async def mark_task_run(self, task_id: str, last_run_at: Optional[float],
                            next_run_at: Optional[float]) -> bool:
        """Record when the task last ran and when it fires next."""
        async with self.database.get_session() as session:
            result = await session.execute(
                update(ScheduledTask)
                .where(ScheduledTask.id == task_id)
                .values(last_run_at=last_run_at, next_run_at=next_run_at, updated_at=time.time())
            )
            await session.commit()
            return bool(result.rowcount)

    async def set_next_run(self, task_id: str, next_run_at: Optional[float]) -> bool:
        async with self.database.get_session() as session:
            result = await session.execute(
                update(ScheduledTask)
                .where(ScheduledTask.id == task_id)
                .values(next_run_at=next_run_at, updated_at=time.time())
            )
            await session.commit()
            return bool(result.rowcount)

    async def set_last_run(self, task_id: str, last_run_at: float) -> bool:
        async with self.database.get_session() as session:
            result = await session.execute(
                update(ScheduledTask)
                .where(ScheduledTask.id == task_id)
                .values(last_run_at=last_run_at, updated_at=time.time())
            )
            await session.commit()
            return bool(result.rowcount)

    async def delete_task(self, task_id: str) -> bool:
        """Delete a task; its runs go with it (ON DELETE CASCADE)."""
        async with self.database.get_session() as session:
            result = await session.execute(delete(ScheduledTask).where(ScheduledTask.id == task_id))
            await session.commit()

        deleted = bool(result.rowcount)
        if deleted:
            logger.info("Task deleted", task_id=task_id)
        return deleted

    async def get_due_tasks(self, now: Optional[float] = None) -> List[ScheduledTask]:
        """Enabled tasks whose next run time has passed."""
        now = time.time() if now is None else now
        async with self.database.get_session() as session:
            stmt = (
                select(ScheduledTask)
                .where(
                    ScheduledTask.enabled == True,  # noqa: E712
                    ScheduledTask.next_run_at.isnot(None),
                    ScheduledTask.next_run_at <= now
                )
                .order_by(ScheduledTask.next_run_at.asc())
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    # ============================================================================
    # Task runs
    # ============================================================================

    async def create_run(self, run_id: str, task_id: str) -> TaskRun:
        """Insert a run in the ``running`` state."""
        run = TaskRun(id=run_id, task_id=task_id, status=RunStatus.RUNNING, started_at=time.time())

        async with self.database.get_session() as session:
            session.add(run)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                if "FOREIGN KEY" in str(e.orig).upper():
                    raise NotFoundError("task", task_id) from e
                raise ValidationError(f"Task run {run_id} already exists") from e

        logger.debug("Task run started", task_id=task_id, run_id=run_id)
        return run

    async def complete_run(self, run_id: str, status: RunStatus, result: str) -> bool:
        """Finalize a run as success or error. Returns False for unknown runs."""
        status = RunStatus(status)
        if not status.is_finished:
            raise ValueError("A run can only be completed as success or error")

        stored = truncate_result(result or "", self.result_max_chars)

        async with self.database.get_session() as session:
            outcome = await session.execute(
                update(TaskRun)
                .where(TaskRun.id == run_id)
                .values(status=status, result=stored, finished_at=time.time())
            )
            await session.commit()

        logger.debug("Task run finished", run_id=run_id, status=status.value)
        return bool(outcome.rowcount)

    async def get_run(self, run_id: str) -> Optional[TaskRun]:
        async with self.database.get_session() as session:
            result = await session.execute(select(TaskRun).where(TaskRun.id == run_id))
            return result.scalar_one_or_none()

    async def list_runs(self, task_id: str, limit: int = 10) -> List[TaskRun]:
        """Most recent runs first."""
        async with self.database.get_session() as session:
            stmt = (
                select(TaskRun)
                .where(TaskRun.task_id == task_id)
                .order_by(TaskRun.started_at.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())
