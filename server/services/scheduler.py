"""Cron-driven task scheduler.

Task lifecycle as seen from here:

    unscheduled -> scheduled (timer armed) -> firing -> scheduled (re-armed)

with ``removed`` reachable from any state. Every enabled task owns one
timer; a fire runs the task's prompt through the injected prompt executor
and records the outcome as a TaskRun. Executor failures end up in the run
history and the log, never in the timer machinery.
"""

import asyncio
import json
import time
import uuid
from typing import List, Optional, Set, TYPE_CHECKING

from structlog.contextvars import bound_contextvars

from core.exceptions import InvalidCronError
from core.logging import get_logger, log_execution_time
from models.tasks import RunStatus, ScheduledTask
from services.cron import build_trigger, next_fire_time
from services.prompt_executor import as_prompt_executor
from services.timers import TimerRegistry

if TYPE_CHECKING:
    from services.prompt_executor import PromptExecutor
    from services.task_store import TaskStore

logger = get_logger(__name__)

NO_OUTPUT_TEXT = "Task completed (no text output)"
DELIVERY_INSTRUCTION = (
    "\n\nAfter completing the task, deliver the result using the "
    "deliver_message tool to: {delivery}"
)


def build_prompt(task: ScheduledTask) -> str:
    """The task prompt, plus a delivery instruction when the task has a delivery target."""
    delivery = task.delivery_config
    if isinstance(delivery, dict) and delivery.get("type"):
        return task.prompt + DELIVERY_INSTRUCTION.format(
            delivery=json.dumps(delivery, separators=(",", ":"), ensure_ascii=False)
        )
    return task.prompt


class TaskScheduler:
    """Arms one timer per enabled task and executes tasks when they fire."""

    def __init__(self, task_store: "TaskStore", executor: "PromptExecutor",
                 misfire_grace_time: int = 60, catch_up: bool = False):
        self.task_store = task_store
        self.executor = as_prompt_executor(executor)
        self.misfire_grace_time = misfire_grace_time
        self.catch_up = catch_up
        self._timers: Optional[TimerRegistry] = None
        self._inflight: Set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._timers is not None

    def armed_task_ids(self) -> List[str]:
        return self._timers.task_ids() if self._timers else []

    # ============================================================================
    # Lifecycle
    # ============================================================================

    async def start(self) -> None:
        """Arm timers for all enabled tasks. No-op when already running."""
        if self._timers is not None:
            return

        timers = TimerRegistry(misfire_grace_time=self.misfire_grace_time)
        timers.start()
        self._timers = timers

        try:
            # Missed runs go first; arming a timer overwrites next_run_at
            if self.catch_up:
                caught_up = await self.run_due_tasks()
                logger.info("Caught up missed tasks", count=caught_up)
            for task in await self.task_store.list_enabled_tasks():
                await self._schedule(task)
        except Exception:
            self.stop()
            raise

        logger.info("Scheduler started", active_tasks=len(timers))

    def stop(self) -> None:
        """Disarm every timer. Executions already in flight run to completion."""
        if self._timers is None:
            return
        timers, self._timers = self._timers, None
        timers.shutdown()
        logger.info("Scheduler stopped", in_flight=len(self._inflight))

    async def drain(self) -> None:
        """Wait for executions started by timers to finish."""
        while self._inflight:
            await asyncio.wait(set(self._inflight))

    # ============================================================================
    # Timer management
    # ============================================================================

    async def reload(self, task_id: str) -> bool:
        """Re-read a task after an external edit and re-arm it if still enabled.

        Returns True when a timer is armed afterwards.
        """
        if self._timers is not None:
            self._timers.disarm(task_id)

        task = await self.task_store.get_task(task_id)
        if task is None or not task.enabled or self._timers is None:
            logger.debug("Task not armed on reload", task_id=task_id,
                         found=task is not None, running=self.is_running)
            return False

        return await self._schedule(task)

    def remove(self, task_id: str) -> bool:
        """Forget the task's timer. The stored task is left alone."""
        if self._timers is None:
            return False
        return self._timers.disarm(task_id)

    async def _schedule(self, task: ScheduledTask) -> bool:
        try:
            trigger = build_trigger(task.cron)
        except InvalidCronError as e:
            logger.error("Invalid cron for task", task_id=task.id, cron=task.cron, error=str(e))
            return False

        next_run = self._timers.arm(task.id, trigger, self._fire)
        await self.task_store.set_next_run(task.id, next_run.timestamp() if next_run else None)
        return True

    async def _fire(self, task_id: str) -> None:
        """Timer callback.

        The execution runs as its own asyncio task so that stopping the
        scheduler (which cancels pending timer callbacks) cannot interrupt it.
        """
        execution = asyncio.ensure_future(self._run_scheduled(task_id))
        self._inflight.add(execution)
        execution.add_done_callback(self._execution_done)
        await asyncio.wait({execution})

    def _execution_done(self, execution: asyncio.Task) -> None:
        self._inflight.discard(execution)
        if execution.cancelled():
            return
        error = execution.exception()
        if error is not None:
            logger.critical("Scheduled execution aborted", error=str(error), error_type=type(error).__name__)

    async def _run_scheduled(self, task_id: str) -> None:
        task = await self.task_store.get_task(task_id)
        if task is None or not task.enabled:
            logger.warning("Timer fired for missing or disabled task", task_id=task_id)
            self.remove(task_id)
            return
        await self.execute_task(task)

    # ============================================================================
    # Execution
    # ============================================================================

    async def run_now(self, task_id: str) -> Optional[str]:
        """Execute immediately, outside the schedule. None if the task does not exist."""
        task = await self.task_store.get_task(task_id)
        if task is None:
            return None
        return await self.execute_task(task)

    async def run_due_tasks(self, now: Optional[float] = None) -> int:
        """Polling path: execute every enabled task whose next run time has passed.

        Each executed task has next_run_at moved to its next cron slot, so a
        second poll does not run it again.
        """
        due = await self.task_store.get_due_tasks(now)
        for task in due:
            logger.info("Running due task", task_id=task.id, next_run_at=task.next_run_at)
            await self.execute_task(task, advance_schedule=True)
        return len(due)

    async def execute_task(self, task: ScheduledTask, advance_schedule: bool = False) -> str:
        """Run the task once and record the run. Returns the response or the failure message.

        With ``advance_schedule`` an unarmed task gets next_run_at recomputed
        from its cron; otherwise next_run_at is left to the timer.
        """
        run_id = str(uuid.uuid4())
        started_at = time.time()
        await self.task_store.create_run(run_id, task.id)

        with bound_contextvars(task_id=task.id, run_id=run_id):
            logger.info("Running task", name=task.name)

            try:
                response = await self.executor.execute(build_prompt(task))
                text = response if isinstance(response, str) else NO_OUTPUT_TEXT
                status = RunStatus.SUCCESS
            except Exception as e:
                text = str(e) or type(e).__name__
                status = RunStatus.ERROR
                logger.error("Task failed", name=task.name, error=text)

            await self.task_store.complete_run(run_id, status, text)
            await self._record_run(task, started_at, advance_schedule)

            log_execution_time(logger, "execute_task", started_at, time.time(), status=status.value)
        return text

    async def _record_run(self, task: ScheduledTask, started_at: float, advance_schedule: bool) -> None:
        """Persist last_run_at, plus next_run_at from the armed timer or, when advancing, the cron."""
        if self._timers is not None and task.id in self._timers:
            next_run = self._timers.next_fire_time(task.id)
        elif advance_schedule:
            try:
                next_run = next_fire_time(task.cron)
            except InvalidCronError as e:
                logger.error("Invalid cron for task", task_id=task.id, cron=task.cron, error=str(e))
                next_run = None
        else:
            await self.task_store.set_last_run(task.id, started_at)
            return
        await self.task_store.mark_task_run(
            task.id, started_at, next_run.timestamp() if next_run else None
        )
