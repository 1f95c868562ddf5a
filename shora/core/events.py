"""
Redis Event Emission Module

Publishes decision change events to Redis Pub/Sub channels, one channel per
place. WebSocket clients joined to a place receive them through the relay in
``shora.decisions.router``.

Events are hints to re-fetch, not authoritative deltas: delivery is
best-effort, there is no replay, and ordering holds only per publisher
connection.

Event Types:
- decision-updated - A decision was created, edited, voted on or transitioned
"""

import asyncio
import json
import logging
from collections import deque
from collections.abc import AsyncIterator
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Protocol
from uuid import UUID

import redis.asyncio as redis

from shora.core.config import settings

logger = logging.getLogger(__name__)


class EventKind(StrEnum):
    """Event kinds published on place channels."""

    DECISION_UPDATED = "decision-updated"


class DecisionAction(StrEnum):
    """What happened to the decision that triggered the event."""

    CREATED = "created"
    UPDATED = "updated"
    PROPOSED = "proposed"
    VOTED = "voted"
    APPROVED = "approved"
    REJECTED = "rejected"
    IMPLEMENTED = "implemented"


@dataclass
class DecisionEvent:
    """Event structure for decision updates."""

    place_id: str
    decision: dict[str, Any]
    action: str
    kind: str = EventKind.DECISION_UPDATED
    actor_id: str | None = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_json(self) -> str:
        """Convert event to JSON string."""
        data = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(data, default=str)


class Publisher(Protocol):
    """Notification sink consumed by the decision engine."""

    async def publish(self, event: DecisionEvent) -> None: ...


class Subscription(Protocol):
    """Raw JSON payloads from one place channel, released by ``aclose()``."""

    def __aiter__(self) -> AsyncIterator[str]: ...

    async def aclose(self) -> None: ...


def place_channel(place_id: UUID | str, prefix: str | None = None) -> str:
    """Channel name for a place's subscribers."""
    return f"{prefix or settings.event_channel_prefix}:place:{place_id}"


class EventPublisher:
    """
    Emits decision events to Redis Pub/Sub.

    Usage:
        async with EventPublisher() as publisher:
            await publisher.publish(DecisionEvent(...))
    """

    def __init__(
        self,
        redis_url: str | None = None,
        enabled: bool = True,
        channel_prefix: str | None = None,
    ) -> None:
        """
        Initialize the event publisher.

        Args:
            redis_url: Redis connection URL (default from settings)
            enabled: Whether to emit events (can be disabled for testing)
            channel_prefix: Prefix for place channels (default from settings)
        """
        self.redis_url = redis_url or settings.redis_url
        self.enabled = enabled and settings.events_enabled
        self.channel_prefix = channel_prefix or settings.event_channel_prefix
        self._client: redis.Redis | None = None

    async def __aenter__(self) -> "EventPublisher":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def connect(self) -> None:
        """Connect to Redis; disables the publisher if Redis is unreachable."""
        if not self.enabled:
            return
        try:
            self._client = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            # Test connection
            await self._client.ping()
            logger.info("Event publisher connected to Redis")
        except Exception as e:
            logger.warning("Event publisher disabled: %s", e)
            self.enabled = False
            self._client = None

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def channel_for(self, place_id: UUID | str) -> str:
        return place_channel(place_id, self.channel_prefix)

    async def publish(self, event: DecisionEvent) -> None:
        """Publish event to the place channel. Never raises."""
        if not self.enabled or not self._client:
            return

        try:
            await self._client.publish(self.channel_for(event.place_id), event.to_json())
        except Exception as e:
            # Don't fail the write because of event emission
            logger.warning("Failed to emit %s event for place %s: %s", event.kind, event.place_id, e)

    async def subscribe(self, place_id: UUID | str) -> AsyncIterator[str]:
        """Yield raw JSON payloads published to a place channel."""
        if not self._client:
            return
        channel = self.channel_for(place_id)
        async with self._client.pubsub() as pubsub:
            await pubsub.subscribe(channel)
            try:
                async for message in pubsub.listen():
                    if message["type"] != "message":
                        continue
                    yield message["data"]
            finally:
                await pubsub.unsubscribe(channel)


class QueueSubscription:
    """
    One subscriber queue on an in-memory channel.

    The queue is registered on creation, so events published right after
    ``subscribe()`` returns are not missed. ``aclose()`` unregisters it.
    """

    def __init__(self, channels: dict[str, set[asyncio.Queue[str]]], channel: str) -> None:
        self._channels = channels
        self.channel = channel
        self.queue: asyncio.Queue[str] = asyncio.Queue()
        self.closed = False
        channels.setdefault(channel, set()).add(self.queue)

    def __aiter__(self) -> "QueueSubscription":
        return self

    async def __anext__(self) -> str:
        if self.closed:
            raise StopAsyncIteration
        return await self.queue.get()

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        subscribers = self._channels.get(self.channel)
        if subscribers is not None:
            subscribers.discard(self.queue)
            if not subscribers:
                del self._channels[self.channel]


class InMemoryEventPublisher:
    """
    Process-local publisher.

    Keeps the most recent published events in ``events`` and fans out to
    subscribers through asyncio queues. Used by the in-memory backend and in
    tests.
    """

    def __init__(self, channel_prefix: str | None = None, history: int = 1000) -> None:
        self.channel_prefix = channel_prefix or settings.event_channel_prefix
        self.events: deque[DecisionEvent] = deque(maxlen=history)
        self._queues: dict[str, set[asyncio.Queue[str]]] = {}

    def channel_for(self, place_id: UUID | str) -> str:
        return place_channel(place_id, self.channel_prefix)

    def subscriber_count(self, place_id: UUID | str) -> int:
        return len(self._queues.get(self.channel_for(place_id), ()))

    async def publish(self, event: DecisionEvent) -> None:
        self.events.append(event)
        payload = event.to_json()
        for queue in self._queues.get(self.channel_for(event.place_id), ()):
            queue.put_nowait(payload)

    def subscribe(self, place_id: UUID | str) -> QueueSubscription:
        return QueueSubscription(self._queues, self.channel_for(place_id))
