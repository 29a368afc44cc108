"""In-process publish/subscribe for live session events.

Best-effort and local to one process: a slow subscriber loses events once
its queue is full, and nothing is persisted. Durable delivery is the job of
the webhook pipeline.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, Optional

from session_relay.store import SessionStore

TOPIC_MESSAGE = "message"
TOPIC_STATUS = "status"
TOPICS = (TOPIC_MESSAGE, TOPIC_STATUS)


class FanoutEvent:
    """One published event."""

    def __init__(
        self,
        topic: str,
        session_id: str,
        kind: str,
        data: Optional[Dict[str, Any]] = None,
        ts: Optional[int] = None,
    ):
        self.topic = topic
        self.session_id = session_id
        self.kind = kind
        self.data = data or {}
        self.ts = ts if ts is not None else int(time.time() * 1000)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "topic": self.topic,
            "sessionId": self.session_id,
            "event": self.kind,
            "data": self.data,
            "ts": self.ts,
        }


class Subscription:
    """A subscriber's queue plus its tenant filter."""

    def __init__(
        self,
        topics: Iterable[str],
        owner_id: Optional[str],
        session_store: Optional[SessionStore],
        maxsize: int,
        logger: logging.Logger,
    ):
        self.topics = frozenset(topics)
        self.owner_id = owner_id
        self.session_store = session_store
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.logger = logger

    def offer(self, event: FanoutEvent) -> bool:
        if event.topic not in self.topics:
            return False
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            self.logger.debug(
                f"Subscriber queue full, dropped {event.kind} for session {event.session_id}"
            )
            return False
        return True

    async def is_visible(self, event: FanoutEvent) -> bool:
        """Whether this subscriber's tenant may see the event."""
        if self.owner_id is None or self.session_store is None:
            return True
        try:
            return await self.session_store.is_owned_by(event.session_id, self.owner_id)
        except Exception as e:
            self.logger.warning(
                f"Ownership check failed for session {event.session_id}, skipping event: {e}"
            )
            return False

    async def get(self) -> FanoutEvent:
        """Wait for the next event this subscriber is allowed to see."""
        while True:
            event = await self.queue.get()
            if await self.is_visible(event):
                return event

    def __aiter__(self) -> AsyncIterator[FanoutEvent]:
        return self

    async def __anext__(self) -> FanoutEvent:
        return await self.get()


class EventHub:
    """Topic-based broadcaster for live admin connections."""

    def __init__(
        self,
        session_store: Optional[SessionStore] = None,
        queue_size: int = 100,
        logger: Optional[logging.Logger] = None,
    ):
        self.session_store = session_store
        self.queue_size = queue_size
        self.logger = logger or logging.getLogger(__name__)
        self._subscribers: list[Subscription] = []

    def publish(
        self,
        topic: str,
        session_id: str,
        kind: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Broadcast an event without waiting on any subscriber."""
        event = FanoutEvent(topic, session_id, kind, data)
        delivered = 0
        for subscription in list(self._subscribers):
            if subscription.offer(event):
                delivered += 1
        return delivered

    @asynccontextmanager
    async def subscribe(
        self,
        topics: Iterable[str] = TOPICS,
        owner_id: Optional[str] = None,
    ) -> AsyncIterator[Subscription]:
        """
        Register a subscriber for the duration of the context.

        ``owner_id`` limits the subscriber to sessions owned by that tenant;
        None means every session.
        """
        topics = list(topics)
        unknown = set(topics) - set(TOPICS)
        if unknown:
            raise ValueError(f"Unknown topics: {sorted(unknown)}")

        subscription = Subscription(
            topics, owner_id, self.session_store, self.queue_size, self.logger
        )
        self._subscribers.append(subscription)
        try:
            yield subscription
        finally:
            self._subscribers.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
