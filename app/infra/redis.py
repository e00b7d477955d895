"""
Shared Redis connection for the lookup cache and org notifications.

Redis is optional for the engine: when it cannot be reached ``get_redis``
returns None, the cache falls back to process memory and notifications are
dropped with a log line. Slot state never lives in Redis.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import RedisError

from app.config import settings

logger = logging.getLogger(__name__)

# Namespace for every key and channel this service writes
APP_PREFIX = "slot-engine:v1:"


class RedisClient:
    """Process-wide Redis connection, opened lazily and re-tried on next use."""

    _client: Optional[Redis] = None
    _connected: bool = False

    @classmethod
    async def get_client(cls) -> Optional[Redis]:
        """Connected client, or None while Redis is unreachable."""
        if cls._client is not None and cls._connected:
            return cls._client

        try:
            cls._client = redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=settings.redis_timeout,
                socket_timeout=settings.redis_timeout,
                retry_on_timeout=True,
                retry=Retry(ExponentialBackoff(), retries=settings.redis_retries),
            )
            await cls._client.ping()
        except (RedisError, OSError) as e:
            logger.error(f"Redis unavailable, cache and notifications degraded: {e}")
            cls._client = None
            cls._connected = False
            return None

        cls._connected = True
        logger.info("Redis connected for cache and notifications")
        return cls._client

    @classmethod
    async def close(cls) -> None:
        if cls._client is None:
            return
        try:
            await cls._client.aclose()
        except RedisError as e:
            logger.error(f"Error closing Redis connection: {e}")
        finally:
            cls._client = None
            cls._connected = False


async def get_redis() -> Optional[Redis]:
    return await RedisClient.get_client()


async def check_redis_health() -> bool:
    """True when Redis answers a ping."""
    client = await get_redis()
    if client is None:
        return False
    try:
        await client.ping()
    except RedisError as e:
        logger.error(f"Redis health check failed: {e}")
        return False
    return True
