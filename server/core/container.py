"""Dependency injection container for the engine process."""

from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from core.cache import CacheService
from services.engine import Engine, EventBus, RecoverySweeper, StepWorker, create_dlq_handler
from services.plugins import PluginExecutor
from services.queue import create_work_queue


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Database (needed by CacheService for SQLite fallback)
    database = providers.Singleton(
        Database,
        settings=settings
    )

    # Cache service (uses Redis when available, SQLite otherwise)
    cache = providers.Singleton(
        CacheService,
        settings=settings,
        database=database
    )

    # Step job queue (memory or Redis)
    queue = providers.Singleton(
        create_work_queue,
        settings=settings
    )

    events = providers.Singleton(
        EventBus
    )

    plugins = providers.Singleton(
        PluginExecutor,
        settings=settings,
        cache=cache
    )

    dlq = providers.Singleton(
        create_dlq_handler,
        cache=cache,
        enabled=settings.provided.dlq_enabled
    )

    engine = providers.Singleton(
        Engine,
        database=database,
        queue=queue,
        plugins=plugins,
        events=events,
        settings=settings,
        dlq=dlq
    )

    worker = providers.Singleton(
        StepWorker,
        engine=engine,
        queue=queue,
        concurrency=settings.provided.worker_concurrency,
        poll_interval=settings.provided.queue_poll_interval
    )

    sweeper = providers.Singleton(
        RecoverySweeper,
        engine=engine,
        database=database,
        heartbeat_timeout=settings.provided.heartbeat_timeout,
        sweep_interval=settings.provided.sweep_interval
    )


# Global container instance
container = Container()
