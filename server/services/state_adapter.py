"""Single state object handed to chat-platform adapters.

Combines the cache, the lock manager and the subscription set. The
storage lifecycle belongs to the host process, so connect/disconnect do
nothing.
"""

from typing import Any, List, Optional, TYPE_CHECKING

from models.state import Lock

if TYPE_CHECKING:
    from core.cache import CacheStore
    from services.locks import LockManager
    from services.subscriptions import SubscriptionStore


class StateAdapter:
    def __init__(self, cache: "CacheStore", locks: "LockManager", subscriptions: "SubscriptionStore"):
        self.cache = cache
        self.locks = locks
        self.subscriptions = subscriptions

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    # Cache

    async def get(self, key: str) -> Optional[Any]:
        return await self.cache.get(key)

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        await self.cache.set(key, value, ttl)

    async def delete(self, key: str) -> None:
        await self.cache.delete(key)

    # Locks

    async def acquire_lock(self, resource_id: str, ttl: Optional[float] = None) -> Optional[Lock]:
        return await self.locks.acquire(resource_id, ttl)

    async def extend_lock(self, lock: Lock, ttl: Optional[float] = None) -> bool:
        return await self.locks.extend(lock, ttl)

    async def release_lock(self, lock: Lock) -> None:
        await self.locks.release(lock)

    # Subscriptions

    async def subscribe(self, resource_id: str) -> None:
        await self.subscriptions.subscribe(resource_id)

    async def unsubscribe(self, resource_id: str) -> None:
        await self.subscriptions.unsubscribe(resource_id)

    async def is_subscribed(self, resource_id: str) -> bool:
        return await self.subscriptions.is_subscribed(resource_id)

    async def list_subscriptions(self) -> List[str]:
        return await self.subscriptions.list_subscriptions()
