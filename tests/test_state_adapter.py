import pytest

from core.cache import CacheStore
from services.locks import LockManager
from services.state_adapter import StateAdapter
from services.subscriptions import SubscriptionStore


@pytest.mark.asyncio
async def test_adapter_delegates_to_stores(database):
    adapter = StateAdapter(CacheStore(database), LockManager(database), SubscriptionStore(database))
    await adapter.connect()

    await adapter.set("thread:1:state", {"mode": "chat"}, ttl=60)
    assert await adapter.get("thread:1:state") == {"mode": "chat"}
    await adapter.delete("thread:1:state")
    assert await adapter.get("thread:1:state") is None

    lock = await adapter.acquire_lock("thread-1", 30)
    assert await adapter.acquire_lock("thread-1", 30) is None
    assert await adapter.extend_lock(lock, 60) is True
    await adapter.release_lock(lock)
    assert await adapter.acquire_lock("thread-1", 30) is not None

    await adapter.subscribe("thread-1")
    assert await adapter.is_subscribed("thread-1") is True
    assert await adapter.list_subscriptions() == ["thread-1"]
    await adapter.unsubscribe("thread-1")
    assert await adapter.is_subscribed("thread-1") is False

    await adapter.disconnect()
