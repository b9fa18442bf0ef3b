# src/bavard/services/fanout.py
"""Per-client fan-out of live conversation, read, notification and story updates.

A :class:`ClientSession` owns one :class:`Subscription` per live stream a
connected client needs and turns their items into :class:`HubEvent` pushes.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Sequence
from enum import Enum
from typing import Any

from bavard.core.constants import ASSISTANT_USER_ID
from bavard.core.settings import settings
from bavard.db.session import SessionFactory
from bavard.schemas.live import HubEvent
from bavard.schemas.notification import NotificationRead
from bavard.schemas.story import StoryRead
from bavard.services.contacts import ContactService
from bavard.services.conversation_store import (
    EVENT_CLEARED,
    EVENT_MESSAGE,
    EVENT_TYPING,
    EVENT_VIEWED,
    ConversationStore,
    conversation_id_for,
)
from bavard.services.ephemeral import StoryService, render_message
from bavard.services.message_bus import BusEvent, contacts_topic
from bavard.services.notification_ledger import NotificationLedger
from bavard.services.read_tracking import ReadTracker

logger = logging.getLogger(__name__)

StreamFactory = Callable[[Any], AsyncIterator[Any]]
ItemHandler = Callable[[Any], Awaitable[None]]


class SubscriptionState(str, Enum):
    """Lifecycle of a live subscription."""

    INACTIVE = "inactive"
    SUBSCRIBING = "subscribing"
    LIVE = "live"
    ERROR = "error"
    TORN_DOWN = "torn_down"


class Subscription:
    """Revocable handle over one live stream.

    The stream is reopened from the last checkpoint with exponential backoff
    whenever it fails. :meth:`cancel` is synchronous: once it returns the
    handler is never invoked again.
    """

    def __init__(
        self,
        key: str,
        open_stream: StreamFactory,
        on_item: ItemHandler,
        checkpoint_of: Callable[[Any], Any] | None = None,
        checkpoint: Any = None,
        backoff_initial: float | None = None,
        backoff_max: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.key = key
        self.checkpoint = checkpoint
        self.state = SubscriptionState.INACTIVE
        self.failures = 0
        self._open_stream = open_stream
        self._on_item = on_item
        self._checkpoint_of = checkpoint_of
        self._backoff_initial = backoff_initial or settings.subscription_backoff_initial_seconds
        self._backoff_max = backoff_max or settings.subscription_backoff_max_seconds
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None

    @property
    def active(self) -> bool:
        return self.state not in (SubscriptionState.INACTIVE, SubscriptionState.TORN_DOWN)

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        return min(self._backoff_initial * (2 ** (attempt - 1)), self._backoff_max)

    def start(self) -> None:
        if self.state is not SubscriptionState.INACTIVE:
            return
        self.state = SubscriptionState.SUBSCRIBING
        self._task = asyncio.create_task(self._run(), name=f"subscription:{self.key}")

    def cancel(self) -> None:
        """Stop delivering items immediately and release the stream in the background."""
        if self.state is SubscriptionState.TORN_DOWN:
            return
        self.state = SubscriptionState.TORN_DOWN
        if self._task is not None:
            self._task.cancel()

    async def teardown(self) -> None:
        """Cancel and wait until the underlying stream has been released."""
        self.cancel()
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _run(self) -> None:
        attempt = 0
        while self.state is not SubscriptionState.TORN_DOWN:
            self.state = SubscriptionState.SUBSCRIBING
            stream = self._open_stream(self.checkpoint)
            try:
                async for item in stream:
                    if self.state is SubscriptionState.TORN_DOWN:
                        return
                    self.state = SubscriptionState.LIVE
                    attempt = 0
                    await self._on_item(item)
                    # Only handled items move the checkpoint; a failed one is replayed.
                    if self._checkpoint_of is not None:
                        checkpoint = self._checkpoint_of(item)
                        if checkpoint is not None:
                            self.checkpoint = checkpoint
                # Stream ended without failing; nothing left to follow.
                if self.state is not SubscriptionState.TORN_DOWN:
                    self.state = SubscriptionState.INACTIVE
                return
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if self.state is SubscriptionState.TORN_DOWN:
                    return
                attempt += 1
                self.failures += 1
                self.state = SubscriptionState.ERROR
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "Subscription %s failed (attempt %d), retrying in %.1fs: %s",
                    self.key,
                    attempt,
                    delay,
                    exc,
                )
                await self._sleep(delay)
            finally:
                await stream.aclose()


def select_initial_contact(remembered: str | None, contact_ids: Sequence[str]) -> str:
    """Pick the conversation to show on (re)connect.

    The remembered contact wins if still present, then the first contact, and
    the assistant otherwise.
    """
    if remembered and remembered in contact_ids:
        return remembered
    if contact_ids:
        return contact_ids[0]
    return ASSISTANT_USER_ID


def _message_checkpoint(bus_event: BusEvent) -> Any:
    if bus_event.kind == EVENT_MESSAGE:
        return bus_event.payload.created_at
    return None


class ClientSession:
    """Live state of one connected client."""

    def __init__(
        self,
        user_id: str,
        session_factory: SessionFactory,
        store: ConversationStore,
        tracker: ReadTracker,
        ledger: NotificationLedger,
        stories: StoryService,
        contacts: ContactService,
        alerted_ids: Iterable[int] = (),
        backoff_initial: float | None = None,
        backoff_max: float | None = None,
    ) -> None:
        self.user_id = user_id
        self.outbox: asyncio.Queue[HubEvent] = asyncio.Queue()
        self.selected: str | None = None
        self.unread: dict[str, int] = {}
        self.alerted: set[int] = set(alerted_ids)
        self._session_factory = session_factory
        self._store = store
        self._tracker = tracker
        self._ledger = ledger
        self._stories = stories
        self._contacts = contacts
        self._backoff = (backoff_initial, backoff_max)
        self._subscriptions: dict[str, Subscription] = {}
        self._contact_ids: list[str] = []
        self._story_ids: set[int] = set()
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def contact_ids(self) -> list[str]:
        return list(self._contact_ids)

    @property
    def subscriptions(self) -> dict[str, Subscription]:
        return dict(self._subscriptions)

    async def start(self, remembered: str | None = None) -> str:
        """Open every subscription and choose the initially selected contact."""
        with self._session_factory() as db:
            contact_ids = self._contacts.contact_ids(db, self.user_id)
        await self.set_contacts(contact_ids)

        self._open(
            "notifications",
            lambda _: self._ledger.stream(self._session_factory, self.user_id),
            self._on_notification,
        )
        self._open(
            "stories",
            lambda _: self._stories.stream_visible(self._session_factory, self._story_authors),
            self._on_story,
        )
        self._open(
            "contacts",
            lambda _: self._store.bus.stream(contacts_topic(self.user_id)),
            self._on_contacts_changed,
        )

        return self.select(select_initial_contact(remembered, self._contact_ids))

    def select(self, contact_id: str) -> str:
        """Switch the selected conversation; unknown contacts fall back to the default."""
        if contact_id not in self._contact_ids:
            contact_id = select_initial_contact(None, self._contact_ids)
        self.selected = contact_id
        self._emit(
            "selected",
            {
                "contact_id": contact_id,
                "conversation_id": conversation_id_for(self.user_id, contact_id),
            },
        )
        return contact_id

    async def set_contacts(self, contact_ids: Iterable[str]) -> None:
        """Reconcile per-contact subscriptions with a new contact list.

        Subscriptions of removed contacts are torn down before any for added
        contacts are opened, then active stories of added contacts are pushed.
        Calls are serialized.
        """
        async with self._lock:
            if self._closed:
                return
            wanted = [cid for cid in dict.fromkeys(contact_ids) if cid != self.user_id]
            removed = [cid for cid in self._contact_ids if cid not in wanted]
            added = [cid for cid in wanted if cid not in self._contact_ids]

            for contact_id in removed:
                for key in (f"messages:{contact_id}", f"watermark:{contact_id}"):
                    subscription = self._subscriptions.pop(key, None)
                    if subscription is not None:
                        await subscription.teardown()
                self.unread.pop(contact_id, None)

            for contact_id in added:
                self._open_contact(contact_id)

            self._contact_ids = wanted

        if removed or added:
            self._emit("contacts", {"contact_ids": list(self._contact_ids)})
            if self.selected is not None and self.selected not in self._contact_ids:
                self.select(select_initial_contact(None, self._contact_ids))
        # The stories stream only follows new publications once it is running.
        if added and "stories" in self._subscriptions:
            await self._push_active_stories(added)

    async def next_event(self) -> HubEvent:
        return await self.outbox.get()

    async def close(self) -> None:
        """Tear down every subscription. The session cannot be restarted."""
        async with self._lock:
            self._closed = True
            subscriptions = list(self._subscriptions.values())
            self._subscriptions.clear()
        for subscription in subscriptions:
            subscription.cancel()
        for subscription in subscriptions:
            await subscription.teardown()

    def _open(
        self,
        key: str,
        open_stream: StreamFactory,
        on_item: ItemHandler,
        checkpoint_of: Callable[[Any], Any] | None = None,
    ) -> Subscription:
        subscription = Subscription(
            key,
            open_stream,
            on_item,
            checkpoint_of=checkpoint_of,
            backoff_initial=self._backoff[0],
            backoff_max=self._backoff[1],
        )
        self._subscriptions[key] = subscription
        subscription.start()
        return subscription

    def _open_contact(self, contact_id: str) -> None:
        conversation_id = conversation_id_for(self.user_id, contact_id)

        async def on_conversation_event(bus_event: BusEvent) -> None:
            await self._on_conversation_event(contact_id, bus_event)

        async def on_watermark(_: Any) -> None:
            self._recompute_unread(contact_id)

        self._open(
            f"messages:{contact_id}",
            lambda after: self._store.stream_events(self._session_factory, conversation_id, after),
            on_conversation_event,
            checkpoint_of=_message_checkpoint,
        )
        self._open(
            f"watermark:{contact_id}",
            lambda _: self._tracker.stream_watermark(self._session_factory, self.user_id, conversation_id),
            on_watermark,
        )

    def _story_authors(self) -> list[str]:
        return [self.user_id, *self._contact_ids]

    def _emit(self, event_type: str, data: dict[str, Any]) -> None:
        if self._closed:
            return
        self.outbox.put_nowait(HubEvent(type=event_type, data=data))

    def _recompute_unread(self, contact_id: str) -> None:
        conversation_id = conversation_id_for(self.user_id, contact_id)
        with self._session_factory() as db:
            count = self._tracker.count_unread(db, self.user_id, conversation_id, contact_id)
        if self.unread.get(contact_id) == count:
            return
        self.unread[contact_id] = count
        self._emit(
            "unread",
            {"contact_id": contact_id, "conversation_id": conversation_id, "count": count},
        )

    async def _on_conversation_event(self, contact_id: str, bus_event: BusEvent) -> None:
        if bus_event.kind == EVENT_MESSAGE:
            message = bus_event.payload
            view = render_message(message, self.user_id)
            self._emit("message", {"contact_id": contact_id, "message": view.model_dump(mode="json")})
            if message.sender_id == contact_id:
                self._recompute_unread(contact_id)
        elif bus_event.kind == EVENT_CLEARED:
            self._emit("cleared", {"contact_id": contact_id, **bus_event.payload})
            self._recompute_unread(contact_id)
        elif bus_event.kind == EVENT_TYPING:
            if bus_event.payload["user_id"] != self.user_id:
                self._emit("typing", {"contact_id": contact_id, **bus_event.payload})
        elif bus_event.kind == EVENT_VIEWED:
            self._emit("viewed", {"contact_id": contact_id, **bus_event.payload})

    async def _on_notification(self, notification: NotificationRead) -> None:
        self._emit("notification", notification.model_dump(mode="json"))
        if notification.read or notification.id in self.alerted:
            return
        self.alerted.add(notification.id)
        self._emit(
            "alert",
            {
                "notification_id": notification.id,
                "sender_id": notification.sender_id,
                "sender_name": notification.sender_name,
                "conversation_id": notification.conversation_id,
            },
        )

    async def _push_active_stories(self, author_ids: Sequence[str]) -> None:
        with self._session_factory() as db:
            active = [StoryRead.model_validate(s) for s in self._stories.list_active(db, author_ids)]
        for story in reversed(active):
            await self._on_story(story)

    async def _on_story(self, story: StoryRead) -> None:
        if story.id in self._story_ids:
            return
        self._story_ids.add(story.id)
        self._emit("story", story.model_dump(mode="json"))

    async def _on_contacts_changed(self, _: BusEvent) -> None:
        with self._session_factory() as db:
            contact_ids = self._contacts.contact_ids(db, self.user_id)
        await self.set_contacts(contact_ids)
