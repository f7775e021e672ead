"""Token-based, non-blocking mutual exclusion per resource.

Each resource is either free or held by exactly one unexpired lock:

    free -> held(token, expires_at) -> free

A lock is proven by its token, never by caller identity. Expiry is passive:
stale rows are swept by the next acquire. There is no wait queue, a caller
that gets ``None`` back decides for itself whether to retry.
"""

import secrets
import time
from typing import Optional, TYPE_CHECKING

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from core.logging import get_logger
from models.state import Lock, ResourceLock

if TYPE_CHECKING:
    from core.database import Database

logger = get_logger(__name__)


def generate_token() -> str:
    """Unguessable lock token."""
    return secrets.token_urlsafe(32)


class LockManager:
    """Optimistic lock manager over the ``resource_locks`` table."""

    def __init__(self, database: "Database", default_ttl: float = 30.0):
        self.database = database
        self.default_ttl = default_ttl

    async def acquire(self, resource_id: str, ttl: Optional[float] = None) -> Optional[Lock]:
        """Try to take the lock for ``ttl`` seconds. Returns None if it is held."""
        ttl = self.default_ttl if ttl is None else ttl
        now = time.time()

        async with self.database.get_session() as session:
            # Stale holders never block a new acquirer
            await session.execute(delete(ResourceLock).where(ResourceLock.expires_at <= now))

            stmt = select(ResourceLock).where(ResourceLock.resource_id == resource_id)
            result = await session.execute(stmt)
            if result.scalar_one_or_none() is not None:
                await session.commit()
                logger.debug("Lock busy", resource_id=resource_id)
                return None

            lock = Lock(resource_id=resource_id, token=generate_token(), expires_at=now + ttl)
            session.add(ResourceLock(
                resource_id=lock.resource_id,
                token=lock.token,
                expires_at=lock.expires_at,
                acquired_at=now
            ))
            try:
                await session.commit()
            except IntegrityError:
                # Another acquirer inserted between our check and our insert
                await session.rollback()
                logger.debug("Lock lost race", resource_id=resource_id)
                return None

        logger.debug("Lock acquired", resource_id=resource_id, token=lock.token[:8], ttl=ttl)
        return lock

    async def extend(self, lock: Lock, ttl: Optional[float] = None) -> bool:
        """Push expiry to now + ttl. False unless ``lock`` still owns the resource."""
        expires_at = time.time() + (self.default_ttl if ttl is None else ttl)

        async with self.database.get_session() as session:
            stmt = select(ResourceLock).where(ResourceLock.resource_id == lock.resource_id)
            result = await session.execute(stmt)
            existing = result.scalar_one_or_none()

            if existing is None or existing.token != lock.token:
                return False

            await session.execute(
                update(ResourceLock)
                .where(ResourceLock.resource_id == lock.resource_id, ResourceLock.token == lock.token)
                .values(expires_at=expires_at)
            )
            await session.commit()

        logger.debug("Lock extended", resource_id=lock.resource_id, ttl=ttl)
        return True

    async def release(self, lock: Lock) -> None:
        """Drop the lock if ``lock`` still owns it; otherwise do nothing."""
        async with self.database.get_session() as session:
            result = await session.execute(
                delete(ResourceLock).where(
                    ResourceLock.resource_id == lock.resource_id,
                    ResourceLock.token == lock.token
                )
            )
            await session.commit()

        if result.rowcount:
            logger.debug("Lock released", resource_id=lock.resource_id)
