"""Per-task cron timers backed by APScheduler.

Each TaskScheduler owns its own registry; there is no module-level
scheduler, so independent instances (tests, multiple apps in one process)
never share timers.
"""
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger

from core.logging import get_logger
from services.cron import SCHEDULE_TIMEZONE

logger = get_logger(__name__)


class TimerRegistry:
    """Task id -> armed timer.

    Must be started from inside a running event loop.
    """

    def __init__(self, timezone: str = SCHEDULE_TIMEZONE, misfire_grace_time: int = 60):
        self._scheduler = AsyncIOScheduler(timezone=timezone)
        self.misfire_grace_time = misfire_grace_time

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()

    def shutdown(self) -> None:
        """Disarm every timer and stop the underlying scheduler."""
        self._scheduler.remove_all_jobs()
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)

    def arm(self, task_id: str, trigger: BaseTrigger,
            callback: Callable[[str], Awaitable[None]]) -> Optional[datetime]:
        """Arm (or re-arm) the timer for ``task_id``. Returns its next fire time.

        The callback receives the task id on every fire.

        ``max_instances=1`` keeps at most one pending fire per task.
        """
        job = self._scheduler.add_job(
            callback,
            trigger=trigger,
            id=task_id,
            replace_existing=True,
            args=[task_id],
            max_instances=1,
            coalesce=True,
            misfire_grace_time=self.misfire_grace_time,
        )
        next_run = getattr(job, "next_run_time", None)
        logger.debug("Timer armed", task_id=task_id, next_run=next_run.isoformat() if next_run else None)
        return next_run

    def disarm(self, task_id: str) -> bool:
        """Remove the timer. False if none was armed."""
        try:
            self._scheduler.remove_job(task_id)
        except JobLookupError:
            return False
        logger.debug("Timer disarmed", task_id=task_id)
        return True

    def next_fire_time(self, task_id: str) -> Optional[datetime]:
        job = self._scheduler.get_job(task_id)
        if job is None:
            return None
        return getattr(job, "next_run_time", None)

    def task_ids(self) -> List[str]:
        return [job.id for job in self._scheduler.get_jobs()]

    def __contains__(self, task_id: str) -> bool:
        return self._scheduler.get_job(task_id) is not None

    def __len__(self) -> int:
        return len(self._scheduler.get_jobs())
