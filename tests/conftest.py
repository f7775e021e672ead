"""Shared fixtures: an in-memory database per test."""

import pytest_asyncio

from core.config import MEMORY_SENTINEL
from core.database import open_database
from services.task_store import TaskStore


@pytest_asyncio.fixture
async def database():
    db = await open_database(MEMORY_SENTINEL)
    yield db
    await db.shutdown()


@pytest_asyncio.fixture
async def task_store(database):
    return TaskStore(database)
