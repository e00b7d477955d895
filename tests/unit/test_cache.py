"""Tests for the lookup cache."""

import json
from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import ConnectionError

from app.infra.cache import InMemoryCache, RedisCache, get_cache


class TestInMemoryCache:

    @pytest.mark.asyncio
    async def test_ttl_expiry(self):
        now = [100.0]
        cache = InMemoryCache(clock=lambda: now[0])

        await cache.set("k", {"v": 1}, ttl=10)
        assert await cache.get("k") == {"v": 1}

        now[0] = 110.0
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_no_ttl_and_delete(self):
        cache = InMemoryCache()

        await cache.set("k", "v")
        assert await cache.delete("k") is True
        assert await cache.delete("k") is False
        assert await cache.get("k") is None


class TestRedisCache:

    @pytest.fixture
    def mock_redis(self):
        """Create mock Redis client."""
        mock = AsyncMock()
        mock.get = AsyncMock(return_value=None)
        mock.setex = AsyncMock()
        mock.set = AsyncMock()
        mock.delete = AsyncMock(return_value=1)
        return mock

    @pytest.mark.asyncio
    async def test_set_with_ttl_uses_namespace(self, mock_redis):
        cache = RedisCache(mock_redis)

        assert await cache.set("twilio:chat-service:CH1", "IS1", ttl=60) is True

        mock_redis.setex.assert_called_once_with(
            "slot-engine:v1:cache:twilio:chat-service:CH1", 60, json.dumps("IS1")
        )

    @pytest.mark.asyncio
    async def test_get_decodes_json(self, mock_redis):
        mock_redis.get = AsyncMock(return_value=json.dumps({"a": 1}))
        cache = RedisCache(mock_redis)

        assert await cache.get("k") == {"a": 1}

    @pytest.mark.asyncio
    async def test_redis_errors_degrade(self, mock_redis):
        mock_redis.get = AsyncMock(side_effect=ConnectionError("down"))
        mock_redis.set = AsyncMock(side_effect=ConnectionError("down"))
        cache = RedisCache(mock_redis)

        assert await cache.get("k") is None
        assert await cache.set("k", "v") is False

    @pytest.mark.asyncio
    async def test_without_client(self):
        cache = RedisCache(None)

        assert await cache.get("k") is None
        assert await cache.set("k", "v") is False
        assert await cache.delete("k") is False

    @pytest.mark.asyncio
    async def test_get_cache_falls_back_to_memory(self):
        with patch("app.infra.cache.get_redis", new=AsyncMock(return_value=None)):
            cache = await get_cache()

        assert isinstance(cache, InMemoryCache)
