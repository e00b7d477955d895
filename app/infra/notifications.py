"""
Real-time notification channel.

Events are published to a per-organization room. Delivery is
fire-and-forget and at-most-once: a failed publish is logged, never raised
to the caller whose state change already committed.

Channels (with namespace):
- slot-engine:v1:org:{room} -> JSON {"event": ..., "payload": ...}
"""

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.config import settings
from app.infra.redis import get_redis

logger = logging.getLogger(__name__)

# Event names
SLOT_CONFIRMED = "slot.confirmed"
SLOT_DECLINED = "slot.declined"
SLOT_RESCHEDULE_REQUESTED = "slot.reschedule_requested"
REPLY_NEEDS_ATTENTION = "reply.needs_attention"


def org_room(org_id: str) -> str:
    """Room name of an organization: lower-cased, whitespace as underscores."""
    return re.sub(r"\s+", "_", org_id.strip().lower())


class NotificationChannel(ABC):
    """Publishes events to organization rooms."""

    def __init__(self) -> None:
        self._pending: set[asyncio.Task] = set()

    @abstractmethod
    async def publish(self, room: str, event: str, payload: dict[str, Any]) -> bool:
        """Deliver one event. Returns False when delivery failed."""

    def publish_nowait(self, room: str, event: str, payload: dict[str, Any]) -> asyncio.Task:
        """Schedule ``publish`` in the background and return immediately."""
        task = asyncio.create_task(self._safe_publish(room, event, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _safe_publish(self, room: str, event: str, payload: dict[str, Any]) -> bool:
        try:
            return await self.publish(room, event, payload)
        except Exception as e:
            logger.error(f"Notification {event} to room {room} failed: {e}")
            return False

    async def drain(self) -> None:
        """Wait for in-flight background publishes (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class RedisNotificationChannel(NotificationChannel):
    """
    Redis pub/sub notification channel.

    Gracefully handles Redis unavailability: events are dropped with a
    warning.
    """

    def __init__(self, redis_client: Optional[Redis] = None, prefix: Optional[str] = None):
        super().__init__()
        self.redis = redis_client
        self.prefix = prefix if prefix is not None else settings.notification_prefix

    def _channel(self, room: str) -> str:
        """Generate channel name with namespace."""
        return f"{self.prefix}{room}"

    async def publish(self, room: str, event: str, payload: dict[str, Any]) -> bool:
        client = self.redis or await get_redis()
        if client is None:
            logger.warning(f"Redis unavailable - dropping {event} for room {room}")
            return False

        try:
            message = json.dumps({"event": event, "payload": payload}, default=str)
            receivers = await client.publish(self._channel(room), message)
            logger.debug(f"Published {event} to room {room} ({receivers} receivers)")
            return True
        except RedisError as e:
            logger.error(f"Failed to publish {event} to room {room}: {e}")
            return False
