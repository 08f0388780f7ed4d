"""Cache tier with Redis (production) or in-memory (development) backend.

The cache is an accelerator only. Callers must be able to tell a miss from a
fault, so unlike a plain key-value helper this client never hides errors:
``get`` returns None on a miss and raises CacheFault when the backend fails.
"""

import asyncio
import time
from typing import Callable, Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from tieredstore.core.config import Settings
from tieredstore.core.errors import CacheFault
from tieredstore.core.logging import get_logger, log_cache_operation

logger = get_logger(__name__)

# Network-level failures a Redis call may surface
_BACKEND_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


class CacheService:
    """Async cache tier client.

    Backend selection:
    - Redis: When REDIS_ENABLED=true and Redis answers a ping at startup
    - Memory: When Redis is disabled or unreachable (single process only)
    """

    def __init__(self, settings: Settings, clock: Callable[[], float] = time.time):
        self.settings = settings
        self.redis: Optional[redis.Redis] = None
        # key -> (payload, expires_at or None)
        self.memory_cache: Dict[str, Tuple[bytes, Optional[float]]] = {}
        self.use_redis = settings.redis_enabled
        self._clock = clock

    async def startup(self):
        """Initialize cache connection."""
        if self.use_redis and self.settings.redis_url:
            try:
                self.redis = redis.from_url(
                    self.settings.redis_url,
                    decode_responses=False,
                    socket_timeout=self.settings.redis_socket_timeout,
                    socket_connect_timeout=self.settings.redis_socket_timeout,
                    retry_on_timeout=True
                )
                await self.redis.ping()
                logger.info("Redis cache initialized", url=self.settings.redis_url)
            except _BACKEND_ERRORS as e:
                logger.warning("Redis connection failed, falling back to memory", error=str(e))
                self.use_redis = False
                self.redis = None
        else:
            logger.info("Using in-memory cache",
                        redis_enabled=self.settings.redis_enabled)

    async def shutdown(self):
        """Close cache connections."""
        if self.redis:
            await self.redis.aclose()
            self.redis = None
            logger.info("Redis cache connections closed")

        self.memory_cache.clear()

    async def get(self, key: str) -> Optional[bytes]:
        """Get payload from cache. Returns None on a miss."""
        if self.is_redis_available():
            try:
                value = await self.redis.get(key)
            except _BACKEND_ERRORS as e:
                raise CacheFault(f"get {key}: {e}") from e
        else:
            value = self._memory_get(key)

        log_cache_operation(logger, "get", key, hit=value is not None)
        return value

    async def set(self, key: str, payload: bytes, ttl: Optional[float] = None) -> None:
        """Store payload with an optional TTL in seconds."""
        if ttl is not None and ttl <= 0:
            ttl = None

        if self.is_redis_available():
            try:
                if ttl:
                    # Millisecond precision keeps short TTLs from rounding to zero
                    await self.redis.set(key, payload, px=max(1, int(ttl * 1000)))
                else:
                    await self.redis.set(key, payload)
            except _BACKEND_ERRORS as e:
                raise CacheFault(f"set {key}: {e}") from e
        else:
            expires_at = self._clock() + ttl if ttl else None
            self.memory_cache[key] = (payload, expires_at)

        log_cache_operation(logger, "set", key, ttl=ttl)

    async def delete(self, key: str) -> bool:
        """Delete a cache entry. Returns False if it was already absent."""
        if self.is_redis_available():
            try:
                deleted = bool(await self.redis.delete(key))
            except _BACKEND_ERRORS as e:
                raise CacheFault(f"delete {key}: {e}") from e
        else:
            deleted = self._memory_get(key) is not None
            self.memory_cache.pop(key, None)

        log_cache_operation(logger, "delete", key, deleted=deleted)
        return deleted

    def _memory_get(self, key: str) -> Optional[bytes]:
        entry = self.memory_cache.get(key)
        if entry is None:
            return None
        payload, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self.memory_cache[key]
            return None
        return payload

    def is_redis_available(self) -> bool:
        """Check if Redis is available and connected."""
        return self.use_redis and self.redis is not None
