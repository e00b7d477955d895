"""Tests for the notification channel."""

import json
from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import ConnectionError

from app.infra.notifications import SLOT_CONFIRMED, RedisNotificationChannel, org_room
from tests.factories import FakeChannel


def test_org_room():
    assert org_room("Iconic Smiles") == "iconic_smiles"
    assert org_room("  Clinic\tNorth ") == "clinic_north"


class TestRedisNotificationChannel:

    @pytest.fixture
    def mock_redis(self):
        mock = AsyncMock()
        mock.publish = AsyncMock(return_value=1)
        return mock

    @pytest.mark.asyncio
    async def test_publish(self, mock_redis):
        channel = RedisNotificationChannel(mock_redis, prefix="test:org:")

        assert await channel.publish("iconic_smiles", SLOT_CONFIRMED, {"slot": "s1"}) is True

        name, message = mock_redis.publish.call_args.args
        assert name == "test:org:iconic_smiles"
        assert json.loads(message) == {"event": SLOT_CONFIRMED, "payload": {"slot": "s1"}}

    @pytest.mark.asyncio
    async def test_publish_failure_returns_false(self, mock_redis):
        mock_redis.publish = AsyncMock(side_effect=ConnectionError("down"))
        channel = RedisNotificationChannel(mock_redis)

        assert await channel.publish("room", SLOT_CONFIRMED, {}) is False

    @pytest.mark.asyncio
    async def test_redis_unavailable(self):
        channel = RedisNotificationChannel()

        with patch("app.infra.notifications.get_redis", new=AsyncMock(return_value=None)):
            assert await channel.publish("room", SLOT_CONFIRMED, {}) is False


class TestPublishNowait:

    @pytest.mark.asyncio
    async def test_background_publish(self):
        channel = FakeChannel()

        channel.publish_nowait("room", SLOT_CONFIRMED, {"n": 1})
        await channel.drain()

        assert channel.events == [("room", SLOT_CONFIRMED, {"n": 1})]

    @pytest.mark.asyncio
    async def test_errors_are_swallowed(self):
        channel = FakeChannel()
        channel.publish = AsyncMock(side_effect=RuntimeError("boom"))

        task = channel.publish_nowait("room", SLOT_CONFIRMED, {})
        await channel.drain()

        assert task.result() is False
