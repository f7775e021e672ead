"""Scheduled task definitions and their execution history."""

import time
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any
from pydantic import BaseModel, field_validator
from sqlalchemy import Enum as SAEnum, ForeignKey, String
from sqlmodel import SQLModel, Field, Column, JSON


class RunStatus(str, Enum):
    """TaskRun lifecycle.

    State transitions:
        RUNNING -> SUCCESS
                -> ERROR
    """
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"

    @property
    def is_finished(self) -> bool:
        return self is not RunStatus.RUNNING


class ScheduledTask(SQLModel, table=True):
    """Cron-driven prompt that the scheduler runs on behalf of the user."""

    __tablename__ = "scheduled_tasks"

    id: str = Field(primary_key=True, max_length=255)
    name: str = Field(max_length=255)
    cron: str = Field(max_length=255)
    prompt: str = Field(max_length=50000)
    delivery_config: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    enabled: bool = Field(default=True, index=True)
    last_run_at: Optional[float] = Field(default=None)
    next_run_at: Optional[float] = Field(default=None, index=True)
    created_at: float = Field(default_factory=time.time, index=True)
    updated_at: float = Field(default_factory=time.time)


class TaskRun(SQLModel, table=True):
    """One execution of a scheduled task. Deleted with its task."""

    __tablename__ = "task_runs"

    id: str = Field(primary_key=True, max_length=255)
    task_id: str = Field(
        sa_column=Column(
            String(255),
            ForeignKey("scheduled_tasks.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        )
    )
    status: RunStatus = Field(
        default=RunStatus.RUNNING,
        sa_column=Column(
            SAEnum(
                RunStatus,
                native_enum=False,
                length=20,
                values_callable=lambda statuses: [s.value for s in statuses],
            ),
            nullable=False,
        )
    )
    result: Optional[str] = Field(default=None)
    started_at: float = Field(default_factory=time.time, index=True)
    finished_at: Optional[float] = Field(default=None)


class TaskUpdate(BaseModel):
    """Partial update of a task. Only fields that were explicitly set are applied."""

    name: Optional[str] = None
    cron: Optional[str] = None
    prompt: Optional[str] = None
    delivery_config: Optional[Dict[str, Any]] = None
    enabled: Optional[bool] = None
    next_run_at: Optional[float] = None

    @field_validator("name", "cron", "prompt", "enabled")
    @classmethod
    def reject_explicit_null(cls, v):
        if v is None:
            raise ValueError("field may be omitted but not set to null")
        return v

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


def iso_timestamp(ts: Optional[float]) -> Optional[str]:
    """Render an epoch timestamp as ISO-8601 UTC, or None."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
