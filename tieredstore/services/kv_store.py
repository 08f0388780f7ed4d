"""Expiring key-value store on top of the durable store and cache tier."""

import time
from typing import Callable

from tieredstore.core.cache import CacheService
from tieredstore.core.database import Database
from tieredstore.core.errors import CacheFault, ConfigurationError, NotFound
from tieredstore.core.logging import get_logger
from tieredstore.models.kv import KV
from tieredstore.services.advisory import advisory

logger = get_logger(__name__)

KV_KIND = "kvs"


class KVStore:
    """Durable key-value pairs with optional expiration.

    Expired pairs read as NotFound immediately, but their rows stay in the
    durable store until KVGarbageCollector sweeps them.
    """

    def __init__(self, database: Database, cache: CacheService,
                 clock: Callable[[], float] = time.time,
                 key_prefix: str = ""):
        if database is None or cache is None:
            raise ConfigurationError("KVStore requires both a database and a cache")
        self.database = database
        self.cache = cache
        self.clock = clock
        self.key_prefix = key_prefix

    def cache_key(self, key: str) -> str:
        return f"{self.key_prefix}{KV_KIND}:{key}"

    async def find(self, key: str) -> KV:
        """Look up a live pair. Raises NotFound if absent or expired.

        A cache hit returns only the value; ``expires`` is populated only
        when the pair is read from the durable store.
        """
        cache_key = self.cache_key(key)
        payload = None
        try:
            payload = await self.cache.get(cache_key)
        except CacheFault as e:
            logger.warning("Cache read failed, falling back to durable store",
                           cache_key=cache_key, error=str(e))
        if payload is not None:
            return KV(key=key, value=payload)

        row = await self.database.get_kv(key)
        kv = KV(key=key, value=row.value, expires=row.expires_at)
        now = self.clock()
        if kv.is_expired(now):
            # Still physically present until swept; pretend it is gone
            raise NotFound(key)

        # The cache entry must not outlive the pair
        await advisory("populate_cache",
                       self.cache.set(cache_key, kv.value, kv.remaining(now)),
                       cache_key=cache_key)
        return kv

    async def put(self, kv: KV) -> KV:
        """Store a pair until its expiration.

        A positive ``ttl`` is converted into ``expires`` relative to now and
        then cleared.
        """
        if kv.ttl and kv.ttl > 0:
            kv.expires = self.clock() + kv.ttl
            kv.ttl = None

        await self.database.put_kv(kv.key, kv.value, kv.expires)

        cache_key = self.cache_key(kv.key)
        await advisory("invalidate_cache", self.cache.delete(cache_key), cache_key=cache_key)
        return kv

    async def delete(self, kv: KV) -> None:
        """Remove a pair from both tiers."""
        await self.database.delete_kv(kv.key)

        cache_key = self.cache_key(kv.key)
        await advisory("invalidate_cache", self.cache.delete(cache_key), cache_key=cache_key)
