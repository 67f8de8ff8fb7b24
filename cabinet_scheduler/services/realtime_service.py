"""Realtime appointment events over Redis publish/subscribe."""

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import redis
import structlog

from cabinet_scheduler.schemas.notifications import NotificationMessage

logger = structlog.get_logger(__name__)


def cabinet_topic(cabinet_id: str) -> str:
    """Pub/sub channel carrying the events of one cabinet."""
    return f"cabinet:{cabinet_id}:events"


class CabinetSubscription:
    """Open subscription to one cabinet topic. Closed by the owning context manager."""

    def __init__(self, pubsub: Any, cabinet_id: str):
        """Initialize with a subscribed pub/sub object."""
        self.pubsub = pubsub
        self.cabinet_id = cabinet_id

    def get_message(self, timeout: float = 1.0) -> NotificationMessage | None:
        """Wait up to `timeout` seconds for the next event."""
        raw = self.pubsub.get_message(ignore_subscribe_messages=True, timeout=timeout)
        if not raw or raw.get("type") != "message":
            return None
        return NotificationMessage.model_validate_json(raw["data"])


class CabinetEventChannel:
    """Publishes notifications to per-cabinet topics and opens subscriptions."""

    def __init__(self, redis_client: redis.Redis):
        """Initialize channel with a Redis client."""
        self.redis = redis_client

    def publish(self, message: NotificationMessage) -> int:
        """
        Publish a notification to its cabinet topic.

        Returns:
            Number of subscribers that received it
        """
        topic = cabinet_topic(message.cabinet_id)
        receivers = self.redis.publish(topic, message.model_dump_json())
        logger.debug(
            "realtime_event_published",
            topic=topic,
            notification_id=str(message.id),
            receivers=receivers,
        )
        return int(receivers)

    @asynccontextmanager
    async def subscribe(self, cabinet_id: str) -> AsyncIterator[CabinetSubscription]:
        """
        Subscribe to a cabinet topic for the duration of the block.

        The Redis calls block on the socket, so they run in worker threads.
        """
        pubsub = self.redis.pubsub()
        await asyncio.to_thread(pubsub.subscribe, cabinet_topic(cabinet_id))
        try:
            yield CabinetSubscription(pubsub, cabinet_id)
        finally:
            await asyncio.to_thread(pubsub.unsubscribe)
            await asyncio.to_thread(pubsub.close)


def encode_sse(message: NotificationMessage) -> str:
    """Server-sent event frame for one notification."""
    return f"event: {message.kind.value}\ndata: {json.dumps(message.to_payload())}\n\n"
