"""Set-membership of subscribed resources (chat threads, channels, ...)."""

import time
from typing import List, TYPE_CHECKING

from sqlalchemy import delete
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import select

from core.logging import get_logger
from models.state import Subscription

if TYPE_CHECKING:
    from core.database import Database

logger = get_logger(__name__)


class SubscriptionStore:
    """Subscribe and unsubscribe are both idempotent."""

    def __init__(self, database: "Database"):
        self.database = database

    async def is_subscribed(self, resource_id: str) -> bool:
        async with self.database.get_session() as session:
            stmt = select(Subscription).where(Subscription.resource_id == resource_id)
            result = await session.execute(stmt)
            return result.scalar_one_or_none() is not None

    async def subscribe(self, resource_id: str) -> None:
        """Mark subscribed. Repeating it only refreshes ``subscribed_at``."""
        now = time.time()
        stmt = sqlite_insert(Subscription).values(resource_id=resource_id, subscribed_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=[Subscription.resource_id],
            set_={"subscribed_at": now}
        )

        async with self.database.get_session() as session:
            await session.execute(stmt)
            await session.commit()

        logger.debug("Subscribed", resource_id=resource_id)

    async def unsubscribe(self, resource_id: str) -> None:
        async with self.database.get_session() as session:
            await session.execute(delete(Subscription).where(Subscription.resource_id == resource_id))
            await session.commit()

        logger.debug("Unsubscribed", resource_id=resource_id)

    async def list_subscriptions(self) -> List[str]:
        async with self.database.get_session() as session:
            stmt = select(Subscription.resource_id).order_by(Subscription.subscribed_at.asc())
            result = await session.execute(stmt)
            return list(result.scalars().all())
