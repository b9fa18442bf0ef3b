# src/bavard/services/message_bus.py
"""In-process publish/subscribe bus for committed state changes.

Writers publish through :meth:`MessageBus.publish_on_commit`, which defers
delivery until the surrounding SQLAlchemy transaction commits, so subscribers
never observe a change that was rolled back. Subscribers are asyncio queues
bound to the event loop that created them; publishing is thread-safe.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import defaultdict
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from sqlalchemy import event
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

_PENDING_EVENTS_KEY = "bavard.pending_bus_events"
_CLOSED = object()

STORIES_TOPIC = "stories"


def conversation_topic(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


def watermark_topic(user_id: str, conversation_id: str) -> str:
    return f"watermark:{user_id}:{conversation_id}"


def notification_topic(recipient_id: str) -> str:
    return f"notifications:{recipient_id}"


def contacts_topic(user_id: str) -> str:
    return f"contacts:{user_id}"


@dataclass(frozen=True)
class BusEvent:
    """A single change published on a topic."""

    topic: str
    kind: str
    payload: Any = None


class BusSubscription:
    """Live queue of events for one topic.

    Iterate with ``async for``; iteration stops once :meth:`close` is called.
    """

    def __init__(self, bus: MessageBus, topic: str, loop: asyncio.AbstractEventLoop) -> None:
        self.topic = topic
        self._bus = bus
        self._loop = loop
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        # Set once the close marker has been read; events queued before it are still delivered.
        self._drained = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _deliver(self, item: Any) -> None:
        if self._closed and item is not _CLOSED:
            return
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)
        except RuntimeError:
            # Subscriber loop already shut down.
            self._closed = True
            self._bus._unsubscribe(self)

    async def get(self) -> BusEvent:
        """Wait for the next event.

        Raises:
            StopAsyncIteration: If the subscription was closed.
        """
        if self._drained:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._drained = True
            raise StopAsyncIteration
        return item

    def __aiter__(self) -> BusSubscription:
        return self

    async def __anext__(self) -> BusEvent:
        return await self.get()

    def close(self) -> None:
        """Stop receiving events and wake any pending reader."""
        if self._closed:
            return
        self._bus._unsubscribe(self)
        self._deliver(_CLOSED)
        self._closed = True


class MessageBus:
    """Topic-keyed fan-out of events to every live subscriber."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, set[BusSubscription]] = defaultdict(set)
        self._lock = threading.Lock()

    def subscribe(self, topic: str) -> BusSubscription:
        """Open a subscription bound to the running event loop."""
        subscription = BusSubscription(self, topic, asyncio.get_running_loop())
        with self._lock:
            self._subscriptions[topic].add(subscription)
        return subscription

    def _unsubscribe(self, subscription: BusSubscription) -> None:
        with self._lock:
            subscribers = self._subscriptions.get(subscription.topic)
            if subscribers is None:
                return
            subscribers.discard(subscription)
            if not subscribers:
                del self._subscriptions[subscription.topic]

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(topic, ()))

    def publish(self, bus_event: BusEvent) -> int:
        """Deliver an event immediately; returns the number of subscribers reached."""
        with self._lock:
            subscribers = list(self._subscriptions.get(bus_event.topic, ()))
        for subscription in subscribers:
            subscription._deliver(bus_event)
        logger.debug("Published %s on %s to %d subscribers", bus_event.kind, bus_event.topic, len(subscribers))
        return len(subscribers)

    def publish_on_commit(self, db: Session, bus_event: BusEvent) -> None:
        """Queue an event for delivery once ``db`` commits; dropped on rollback."""
        # Rollback hooks only fire for a session that has a transaction.
        if not db.in_transaction():
            db.begin()
        db.info.setdefault(_PENDING_EVENTS_KEY, []).append((self, bus_event))

    async def stream(self, topic: str) -> AsyncIterator[BusEvent]:
        """Yield events published on ``topic`` until the consumer stops iterating."""
        subscription = self.subscribe(topic)
        try:
            async for bus_event in subscription:
                yield bus_event
        finally:
            subscription.close()


@event.listens_for(Session, "after_commit")
def _publish_pending_events(session: Session) -> None:
    pending = session.info.pop(_PENDING_EVENTS_KEY, [])
    for bus, bus_event in pending:
        bus.publish(bus_event)


@event.listens_for(Session, "after_rollback")
def _discard_pending_events(session: Session) -> None:
    session.info.pop(_PENDING_EVENTS_KEY, None)


class _MessageBusSingleton:
    """Singleton wrapper for the process-wide bus."""

    _instance: MessageBus | None = None

    @classmethod
    def get_instance(cls) -> MessageBus:
        if cls._instance is None:
            cls._instance = MessageBus()
        return cls._instance


def get_message_bus() -> MessageBus:
    """Return the process-wide message bus, creating it on first use."""
    return _MessageBusSingleton.get_instance()
