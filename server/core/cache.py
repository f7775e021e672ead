"""TTL-qualified key/value cache persisted in SQLite.

Expiry is passive: nothing sweeps in the background, an expired entry is
deleted the next time somebody reads it.
"""

import json
import time
from typing import Any, Optional, TYPE_CHECKING

from sqlalchemy import delete
from sqlmodel import select

from core.logging import get_logger, log_cache_operation
from models.cache import CacheEntry

if TYPE_CHECKING:
    from core.database import Database

logger = get_logger(__name__)


class CacheStore:
    """Async cache over the ``cache_entries`` table.

    Values are JSON serialized on the way in and decoded on the way out.
    """

    def __init__(self, database: "Database"):
        self.database = database

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache. Returns None if expired or not found."""
        async with self.database.get_session() as session:
            stmt = select(CacheEntry).where(CacheEntry.key == key)
            result = await session.execute(stmt)
            entry = result.scalar_one_or_none()

            if not entry:
                log_cache_operation(logger, "get", key, hit=False)
                return None

            if entry.expires_at is not None and entry.expires_at < time.time():
                await session.delete(entry)
                await session.commit()
                log_cache_operation(logger, "get", key, hit=False, expired=True)
                return None

            log_cache_operation(logger, "get", key, hit=True)
            return json.loads(entry.value)

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Set value, replacing any existing entry. A missing or zero ttl means no expiry."""
        now = time.time()
        expires_at = now + ttl if ttl else None
        serialized = json.dumps(value, default=str)

        async with self.database.get_session() as session:
            stmt = select(CacheEntry).where(CacheEntry.key == key)
            result = await session.execute(stmt)
            existing = result.scalar_one_or_none()

            if existing:
                existing.value = serialized
                existing.expires_at = expires_at
                existing.created_at = now
            else:
                session.add(CacheEntry(
                    key=key,
                    value=serialized,
                    expires_at=expires_at,
                    created_at=now
                ))

            await session.commit()

        log_cache_operation(logger, "set", key, ttl=ttl)

    async def delete(self, key: str) -> None:
        """Delete cache entry by key. Missing keys are ignored."""
        async with self.database.get_session() as session:
            result = await session.execute(delete(CacheEntry).where(CacheEntry.key == key))
            await session.commit()

        log_cache_operation(logger, "delete", key, deleted=bool(result.rowcount))

    async def exists(self, key: str) -> bool:
        """Check if key exists and is not expired, without evicting it."""
        async with self.database.get_session() as session:
            stmt = select(CacheEntry).where(CacheEntry.key == key)
            result = await session.execute(stmt)
            entry = result.scalar_one_or_none()

        if not entry:
            return False
        return entry.expires_at is None or entry.expires_at >= time.time()

    async def cleanup_expired(self) -> int:
        """Remove all expired cache entries. Returns count deleted."""
        async with self.database.get_session() as session:
            stmt = delete(CacheEntry).where(
                CacheEntry.expires_at.isnot(None),
                CacheEntry.expires_at < time.time()
            )
            result = await session.execute(stmt)
            await session.commit()

        count = result.rowcount or 0
        if count > 0:
            logger.info("Cleaned up expired cache entries", count=count)
        return count
