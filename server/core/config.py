"""Environment-driven configuration with Pydantic v2."""

from typing import Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

MEMORY_SENTINEL = ":memory:"


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=3100, ge=1024, le=65535)
    debug: bool = Field(default=False)

    # Database Configuration
    database_url: str = Field(default="sqlite+aiosqlite:///data/agent.db")
    database_echo: bool = Field(default=False)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    # Locks
    lock_default_ttl: float = Field(default=30.0, gt=0)

    # Task history
    task_result_max_chars: int = Field(default=10000, ge=100)
    task_runs_default_limit: int = Field(default=10, ge=1, le=1000)

    # Scheduler
    scheduler_misfire_grace_time: int = Field(default=60, ge=1)
    scheduler_catch_up: bool = Field(default=False)

    # Prompt executor (the conversational agent's HTTP endpoint)
    prompt_executor_url: str = Field(default="http://localhost:3000")
    prompt_executor_timeout: float = Field(default=300.0, gt=0)

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite") and ":///" in v:
            db_path = v.split("///", 1)[1]
            if db_path and db_path != MEMORY_SENTINEL:
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @property
    def is_memory_database(self) -> bool:
        """True when the database lives only for the lifetime of the engine."""
        return self.database_url.endswith(MEMORY_SENTINEL) or self.database_url.endswith("://")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
    }


def database_url_for_path(path: str) -> str:
    """Translate a file path (or the ``:memory:`` sentinel) into an async SQLite URL."""
    if path == MEMORY_SENTINEL:
        return f"sqlite+aiosqlite:///{MEMORY_SENTINEL}"
    return f"sqlite+aiosqlite:///{path}"
