"""Dependency injection container for the store."""

from contextlib import asynccontextmanager

from dependency_injector import containers, providers

from tieredstore.core.cache import CacheService
from tieredstore.core.config import load_settings
from tieredstore.core.database import Database
from tieredstore.core.logging import get_logger
from tieredstore.core.serialization import create_serializer
from tieredstore.services.entity_store import EntityStore
from tieredstore.services.kv_gc import KVGarbageCollector
from tieredstore.services.kv_store import KVStore

logger = get_logger(__name__)


class Container(containers.DeclarativeContainer):
    """Store dependency injection container."""

    settings = providers.Singleton(load_settings)

    database = providers.Singleton(
        Database,
        settings=settings
    )

    cache = providers.Singleton(
        CacheService,
        settings=settings
    )

    serializer = providers.Singleton(
        create_serializer,
        name=settings.provided.serializer
    )

    entity_store = providers.Singleton(
        EntityStore,
        database=database,
        cache=cache,
        serializer=serializer,
        key_prefix=settings.provided.cache_key_prefix,
        transaction_attempts=settings.provided.transaction_attempts
    )

    kv_store = providers.Singleton(
        KVStore,
        database=database,
        cache=cache,
        key_prefix=settings.provided.cache_key_prefix
    )

    kv_gc = providers.Singleton(
        KVGarbageCollector,
        database=database,
        budget=settings.provided.kv_sweep_budget,
        leeway=settings.provided.kv_sweep_leeway,
        batch_size=settings.provided.kv_sweep_batch_size,
        interval=settings.provided.kv_sweep_interval
    )


@asynccontextmanager
async def lifespan(container: Container, run_gc: bool = False):
    """Start the store's connections (and optionally the sweeper) for the block."""
    await container.database().startup()
    await container.cache().startup()
    if run_gc:
        await container.kv_gc().start()
    logger.info("Store services started", run_gc=run_gc)

    try:
        yield container
    finally:
        if run_gc:
            await container.kv_gc().stop()
        await container.cache().shutdown()
        await container.database().shutdown()
        logger.info("Store services shutdown complete")
