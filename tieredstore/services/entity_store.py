"""Cache-coherent entity store.

Reads go to the cache tier first and fall through to the durable store.
Writes go to the durable store first and then invalidate (never refresh)
the cache entry, so the durable store is always the source of truth and a
cache entry is at worst briefly stale.

Staleness window
----------------
Modify invalidates the cache *after* its transaction commits. Invalidating
before or inside the transaction would let a concurrent reader repopulate
the cache with pre-commit data that nothing would ever invalidate again.
After-commit invalidation bounds the window to the time between commit and
the cache delete completing, typically a few tens of milliseconds. Closing
that window entirely would need a transactional cache tier.
"""

import asyncio
import inspect
from typing import Awaitable, Callable, Iterable, List, Optional, Tuple, TypeVar, Union

from tieredstore.core.cache import CacheService
from tieredstore.core.database import Database, Transaction
from tieredstore.core.errors import (
    CacheFault,
    CacheInvalidationError,
    ConfigurationError,
    FieldMismatch,
    StorageFault,
)
from tieredstore.core.logging import get_logger
from tieredstore.core.serialization import JsonSerializer, Serializer
from tieredstore.models.entity import Entity
from tieredstore.services.advisory import advisory

logger = get_logger(__name__)

E = TypeVar("E", bound=Entity)
T = TypeVar("T")

Mutation = Callable[[E], Union[None, Awaitable[None]]]


class EntityStore:
    """Read, write, delete and transactionally modify entities across both tiers."""

    def __init__(self, database: Database, cache: CacheService,
                 serializer: Optional[Serializer] = None,
                 key_prefix: str = "",
                 transaction_attempts: Optional[int] = None):
        if database is None or cache is None:
            raise ConfigurationError("EntityStore requires both a database and a cache")
        self.database = database
        self.cache = cache
        self.serializer = serializer or JsonSerializer()
        self.key_prefix = key_prefix
        self.transaction_attempts = transaction_attempts

    def cache_key(self, entity: Entity) -> str:
        return f"{self.key_prefix}{entity.key()}"

    # =========================================================================
    # Public operations
    # =========================================================================

    async def read(self, entity: E) -> E:
        """Load ``entity`` in place from its key.

        Raises NotFound if the entity does not exist and StorageFault if the
        durable store fails. Cache trouble only costs a durable read.
        """
        ttl = entity.ttl()
        cache_key = self.cache_key(entity)

        if ttl > 0:
            payload = await self._cache_lookup(cache_key)
            if payload is not None and self._load_cached(entity, payload, cache_key):
                self._after_read(entity)
                return entity

        payload = await self.database.get(entity.key())
        self._load_durable(entity, payload)
        self._after_read(entity)

        if ttl > 0:
            await advisory("populate_cache", self.cache.set(cache_key, payload, ttl),
                           cache_key=cache_key)
        return entity

    async def write(self, entity: E) -> E:
        """Persist ``entity`` and invalidate its cache entry.

        Raises CacheInvalidationError (``committed=True``) if the write
        landed but the old cache entry could not be removed. The write is
        not rolled back; the stale entry ages out with its TTL.
        """
        self._before_write(entity)
        await self.database.put(entity.key(), self._encode(entity))
        await self._invalidate(entity)
        return entity

    async def delete(self, entity: Entity) -> None:
        """Remove ``entity`` from both tiers.

        The durable delete is attempted even if the cache could not be
        invalidated. When both fail, the cache error is raised.
        """
        cache_error: Optional[CacheInvalidationError] = None
        try:
            await self._invalidate(entity)
        except CacheInvalidationError as e:
            cache_error = e

        try:
            await self.database.delete(entity.key())
        except StorageFault as e:
            if cache_error is None:
                raise
            cache_error.committed = False
            raise cache_error from e

        if cache_error is not None:
            raise cache_error

    async def modify(self, entity: E, mutate: Mutation) -> E:
        """Atomically read, mutate and write back ``entity``.

        ``mutate`` receives the entity freshly loaded from the durable store
        and may be sync or async. It runs again on every retry, so it must
        only touch the entity. Anything it raises aborts the transaction and
        propagates unchanged. Raises NotFound if the entity does not exist
        and TransactionConflict if concurrent writers win every attempt.
        """
        caps = entity.capabilities()
        key = entity.key()

        async def attempt(txn: Transaction) -> None:
            if caps.reset_for_retry:
                entity.reset_for_retry()

            self._load_durable(entity, await txn.get(key))
            self._after_read(entity)

            result = mutate(entity)
            if inspect.isawaitable(result):
                await result

            self._before_write(entity)
            await txn.put(key, self._encode(entity))

        await self.database.run_in_transaction(attempt, attempts=self.transaction_attempts)

        # Committed: invalidate exactly once, and only log a failure since
        # the mutation must not be re-run
        if caps.cacheable:
            cache_key = self.cache_key(entity)
            await advisory("invalidate_after_modify", self.cache.delete(cache_key),
                           cache_key=cache_key)
        return entity

    async def batch_write(self, entities: Iterable[Entity]) -> List[Tuple[Entity, CacheInvalidationError]]:
        """Persist several entities in one durable commit, then invalidate each.

        A failed commit raises before any invalidation. Invalidation
        failures are logged and returned as ``(entity, error)`` pairs.
        """
        entities = list(entities)
        if not entities:
            return []

        for entity in entities:
            self._before_write(entity)
        await self.database.put_multi([(e.key(), self._encode(e)) for e in entities])

        results = await asyncio.gather(
            *(self._invalidate(e) for e in entities), return_exceptions=True
        )

        failures = []
        for entity, result in zip(entities, results):
            if isinstance(result, CacheInvalidationError):
                logger.warning("Cache invalidation failed after batch write",
                               cache_key=result.cache_key, error=str(result))
                failures.append((entity, result))
            elif isinstance(result, BaseException):
                raise result
        return failures

    async def clear_cache(self, entity: Entity) -> bool:
        """Drop ``entity``'s cache entry. Returns False if there was none.

        Safe to call repeatedly. Raises CacheFault if the cache tier fails.
        """
        return await self.cache.delete(self.cache_key(entity))

    async def run_in_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        """Run ``fn`` in a retried durable transaction."""
        return await self.database.run_in_transaction(fn, attempts=self.transaction_attempts)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _encode(self, entity: Entity) -> bytes:
        return self.serializer.dumps(entity.to_payload())

    def _load_durable(self, entity: Entity, payload: bytes) -> None:
        try:
            entity.load_payload(self.serializer.loads(payload))
        except FieldMismatch as e:
            logger.info("Field mismatch tolerated", key=str(entity.key()), fields=e.fields)
        except (ValueError, OSError) as e:
            raise StorageFault(f"Undecodable payload for {entity.key()}: {e}") from e

    def _load_cached(self, entity: Entity, payload: bytes, cache_key: str) -> bool:
        """Decode a cache hit. A corrupt entry is treated as a miss."""
        try:
            entity.load_payload(self.serializer.loads(payload))
        except FieldMismatch as e:
            logger.debug("Field mismatch in cached payload", cache_key=cache_key, fields=e.fields)
        except (ValueError, OSError) as e:
            logger.warning("Discarding undecodable cache entry", cache_key=cache_key, error=str(e))
            return False
        return True

    async def _cache_lookup(self, cache_key: str) -> Optional[bytes]:
        try:
            return await self.cache.get(cache_key)
        except CacheFault as e:
            logger.warning("Cache read failed, falling back to durable store",
                           cache_key=cache_key, error=str(e))
            return None

    async def _invalidate(self, entity: Entity) -> None:
        if not entity.capabilities().cacheable:
            return
        cache_key = self.cache_key(entity)
        try:
            await self.cache.delete(cache_key)
        except CacheFault as e:
            raise CacheInvalidationError(cache_key, str(e)) from e

    @staticmethod
    def _before_write(entity: Entity) -> None:
        if entity.capabilities().before_write:
            entity.before_write()

    @staticmethod
    def _after_read(entity: Entity) -> None:
        if entity.capabilities().after_read:
            entity.after_read()
