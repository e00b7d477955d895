"""
Key/value cache with TTL.

Injected into adapters that need to memoise remote lookups, so nothing
keeps a module-level dictionary of its own.

Keys (with namespace):
- slot-engine:v1:cache:{key} -> value (JSON)
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.infra.redis import APP_PREFIX, get_redis

logger = logging.getLogger(__name__)


class Cache(ABC):
    """Minimal cache interface."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the cached value or None when absent or expired."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Store a JSON-serialisable value, optionally expiring after ``ttl`` seconds."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove a key. Returns True if something was removed."""


class InMemoryCache(Cache):
    """
    Process-local cache.

    Used in tests and as the fallback when Redis is unavailable.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._data: dict[str, tuple[Any, Optional[float]]] = {}
        self._clock = clock

    async def get(self, key: str) -> Optional[Any]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        expires_at = self._clock() + ttl if ttl else None
        self._data[key] = (value, expires_at)
        return True

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None


class RedisCache(Cache):
    """
    Redis-backed cache.

    Gracefully handles Redis unavailability: reads miss, writes report False.
    """

    CACHE_PREFIX = f"{APP_PREFIX}cache:"

    def __init__(self, redis_client: Optional[Redis]):
        self.redis = redis_client

    def _key(self, key: str) -> str:
        """Generate cache key with namespace."""
        return f"{self.CACHE_PREFIX}{key}"

    async def get(self, key: str) -> Optional[Any]:
        if self.redis is None:
            return None

        try:
            data = await self.redis.get(self._key(key))
            if data is None:
                return None
            return json.loads(data)
        except RedisError as e:
            logger.error(f"Failed to read cache key {key}: {e}")
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        if self.redis is None:
            logger.warning("Redis unavailable - cannot write cache")
            return False

        try:
            if ttl:
                await self.redis.setex(self._key(key), ttl, json.dumps(value))
            else:
                await self.redis.set(self._key(key), json.dumps(value))
            return True
        except RedisError as e:
            logger.error(f"Failed to write cache key {key}: {e}")
            return False

    async def delete(self, key: str) -> bool:
        if self.redis is None:
            return False

        try:
            return bool(await self.redis.delete(self._key(key)))
        except RedisError as e:
            logger.error(f"Failed to delete cache key {key}: {e}")
            return False


async def get_cache() -> Cache:
    """
    Get a cache instance.

    Returns RedisCache when Redis is reachable, InMemoryCache otherwise.
    """
    client = await get_redis()
    if client is None:
        logger.warning("Redis unavailable - using in-memory cache")
        return InMemoryCache()
    return RedisCache(client)
