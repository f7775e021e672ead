"""Async storage engine built on SQLModel and SQLAlchemy 2.0.

The database is a single-writer SQLite file (or an in-memory database for
tests). Every table is created with "create if absent" semantics, so opening
the same path twice is harmless.
"""

from typing import Optional
from pathlib import Path
from contextlib import asynccontextmanager
from sqlalchemy import event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from core.config import MEMORY_SENTINEL, Settings, database_url_for_path
from core.exceptions import StorageError
from core.logging import get_logger

# Imported for their side effect of registering tables on SQLModel.metadata
from models.cache import CacheEntry  # noqa: F401
from models.state import ResourceLock, Subscription  # noqa: F401
from models.tasks import ScheduledTask, TaskRun  # noqa: F401

logger = get_logger(__name__)


def _configure_sqlite_connection(dbapi_connection, connection_record) -> None:
    """Durability and integrity pragmas, applied to every new connection."""
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=5000")
    finally:
        cursor.close()


class Database:
    """Async database service with SQLModel."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    @property
    def is_started(self) -> bool:
        return self.engine is not None

    async def startup(self):
        """Open the database, apply pragmas and create any missing tables."""
        if self.engine is not None:
            return

        try:
            engine_kwargs = {"echo": self.settings.database_echo, "future": True}
            if self.settings.is_memory_database:
                # One shared connection, otherwise every checkout sees a fresh empty database
                engine_kwargs["poolclass"] = StaticPool
                engine_kwargs["connect_args"] = {"check_same_thread": False}

            engine = create_async_engine(self.settings.database_url, **engine_kwargs)
            event.listen(engine.sync_engine, "connect", _configure_sqlite_connection)

            async with engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            self.engine = engine
            self.async_session = async_sessionmaker(
                bind=engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            logger.info("Database initialized", url=self.settings.database_url)

        except Exception as e:
            logger.error("Database startup failed", url=self.settings.database_url, error=str(e))
            raise StorageError(f"Cannot open database {self.settings.database_url}: {e}") from e

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self.async_session = None
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session.

        Driver failures are rolled back and re-raised as StorageError.
        """
        if not self.async_session:
            raise StorageError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error("Database operation failed", error=str(e))
                raise StorageError(str(e)) from e
            except BaseException:
                await session.rollback()
                raise

    async def ping(self) -> bool:
        """Round-trip a trivial query. Raises StorageError when unreachable."""
        async with self.get_session() as session:
            await session.execute(text("SELECT 1"))
        return True

    async def journal_mode(self) -> Optional[str]:
        async with self.get_session() as session:
            result = await session.execute(text("PRAGMA journal_mode"))
            row = result.first()
            return row[0] if row else None


async def open_database(path: str, settings: Optional[Settings] = None) -> Database:
    """Open (creating if needed) the database at ``path`` or ``:memory:``."""
    url = database_url_for_path(path)
    if settings is None:
        settings = Settings(database_url=url)
    else:
        if path != MEMORY_SENTINEL:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        settings = settings.model_copy(update={"database_url": url})
    database = Database(settings)
    await database.startup()
    return database
