"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from core.cache import CacheStore
from services.locks import LockManager
from services.subscriptions import SubscriptionStore
from services.task_store import TaskStore
from services.prompt_executor import HttpPromptExecutor
from services.scheduler import TaskScheduler
from services.state_adapter import StateAdapter
from services.task_tools import TaskTools


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Storage engine shared by every store
    database = providers.Singleton(
        Database,
        settings=settings
    )

    # Chat adapter state
    cache_store = providers.Singleton(
        CacheStore,
        database=database
    )

    lock_manager = providers.Singleton(
        LockManager,
        database=database,
        default_ttl=settings.provided.lock_default_ttl
    )

    subscription_store = providers.Singleton(
        SubscriptionStore,
        database=database
    )

    state_adapter = providers.Singleton(
        StateAdapter,
        cache=cache_store,
        locks=lock_manager,
        subscriptions=subscription_store
    )

    # Scheduled tasks
    task_store = providers.Singleton(
        TaskStore,
        database=database,
        result_max_chars=settings.provided.task_result_max_chars
    )

    prompt_executor = providers.Singleton(
        HttpPromptExecutor,
        base_url=settings.provided.prompt_executor_url,
        timeout=settings.provided.prompt_executor_timeout
    )

    task_scheduler = providers.Singleton(
        TaskScheduler,
        task_store=task_store,
        executor=prompt_executor,
        misfire_grace_time=settings.provided.scheduler_misfire_grace_time,
        catch_up=settings.provided.scheduler_catch_up
    )

    task_tools = providers.Factory(
        TaskTools,
        task_store=task_store,
        scheduler=task_scheduler,
        runs_limit=settings.provided.task_runs_default_limit
    )


# Global container instance
container = Container()
