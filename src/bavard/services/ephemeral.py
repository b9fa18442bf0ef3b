# src/bavard/services/ephemeral.py
"""Ephemeral content: time-boxed stories and view-once messages."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Iterable
from datetime import datetime, timedelta

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bavard.core.errors import OperationNotPermittedError, WriteError
from bavard.core.settings import settings
from bavard.db.session import SessionFactory, SessionLocal
from bavard.db.time import as_utc, utcnow
from bavard.models import Story
from bavard.schemas.message import MessageRead, MessageView, ViewOnceReveal
from bavard.schemas.story import StoryRead
from bavard.services.conversation_store import ConversationStore, to_message_read
from bavard.services.message_bus import STORIES_TOPIC, BusEvent, MessageBus, get_message_bus

logger = logging.getLogger(__name__)

EVENT_STORY = "story"


class StoryService:
    """Publishes stories and answers visibility queries.

    A story is visible iff ``now < expires_at``; deletion is only storage
    reclamation and never affects visibility.
    """

    def __init__(
        self,
        bus: MessageBus | None = None,
        clock: Callable[[], datetime] = utcnow,
        ttl_seconds: int | None = None,
    ) -> None:
        self._bus = bus or get_message_bus()
        self._clock = clock
        self.ttl = timedelta(seconds=ttl_seconds or settings.story_ttl_seconds)

    def publish(
        self,
        db: Session,
        author_id: str,
        media_url: str,
        media_type: str = "image",
    ) -> Story:
        created_at = as_utc(self._clock())
        story = Story(
            author_id=author_id,
            media_url=media_url,
            media_type=media_type,
            created_at=created_at,
            expires_at=created_at + self.ttl,
        )
        try:
            db.add(story)
            db.flush()
            self._bus.publish_on_commit(
                db,
                BusEvent(STORIES_TOPIC, EVENT_STORY, StoryRead.model_validate(story)),
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise WriteError("Story could not be published") from exc
        logger.info("Published story %s by %s", story.id, author_id)
        return story

    def list_active(
        self,
        db: Session,
        author_ids: Iterable[str],
        now: datetime | None = None,
    ) -> list[Story]:
        """Return unexpired stories of the given authors, newest first."""
        authors = list(set(author_ids))
        if not authors:
            return []
        moment = as_utc(now) if now is not None else as_utc(self._clock())
        return (
            db.query(Story)
            .filter(Story.author_id.in_(authors), Story.expires_at > moment)
            .order_by(Story.created_at.desc(), Story.id.desc())
            .all()
        )

    def is_visible(self, story: Story | StoryRead, now: datetime | None = None) -> bool:
        moment = as_utc(now) if now is not None else as_utc(self._clock())
        return moment < story.expires_at

    async def stream_visible(
        self,
        session_factory: SessionFactory,
        author_ids: Callable[[], Iterable[str]],
    ) -> AsyncIterator[StoryRead]:
        """Yield active stories of the current authors, then each new one as published.

        ``author_ids`` is re-evaluated per event so the stream follows contact
        list changes without being reopened.
        """
        subscription = self._bus.subscribe(STORIES_TOPIC)
        seen: set[int] = set()
        try:
            with session_factory() as db:
                active = [StoryRead.model_validate(s) for s in self.list_active(db, author_ids())]
            for story in reversed(active):
                seen.add(story.id)
                yield story
            async for bus_event in subscription:
                story = bus_event.payload
                if story.id in seen or story.author_id not in set(author_ids()):
                    continue
                if not self.is_visible(story):
                    continue
                seen.add(story.id)
                yield story
        finally:
            subscription.close()

    def reap_expired(
        self,
        db: Session,
        now: datetime | None = None,
        batch_size: int | None = None,
    ) -> int:
        """Delete up to ``batch_size`` expired stories; returns the count removed."""
        moment = as_utc(now) if now is not None else as_utc(self._clock())
        limit = batch_size or settings.story_reaper_batch_size
        ids = [
            row.id
            for row in db.query(Story.id)
            .filter(Story.expires_at <= moment)
            .order_by(Story.expires_at)
            .limit(limit)
        ]
        if not ids:
            return 0
        try:
            db.execute(delete(Story).where(Story.id.in_(ids)))
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise WriteError("Expired stories could not be reclaimed") from exc
        return len(ids)


class StoryReaper:
    """Background loop that reclaims storage of expired stories."""

    def __init__(
        self,
        service: StoryService,
        session_factory: SessionFactory = SessionLocal,
        interval_seconds: float | None = None,
    ) -> None:
        self.service = service
        self._session_factory = session_factory
        self._interval = interval_seconds or settings.story_reaper_interval_seconds
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    async def start(self) -> None:
        """Start the background loop."""
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the background loop and wait for it to finish."""
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None

    def reap_once(self) -> int:
        total = 0
        with self._session_factory() as db:
            while True:
                removed = self.service.reap_expired(db)
                total += removed
                if removed < settings.story_reaper_batch_size:
                    break
        if total:
            logger.info("Reclaimed %d expired stories", total)
        return total

    async def _run(self) -> None:
        interval = max(0.1, float(self._interval))
        while not self._stopping.is_set():
            try:
                self.reap_once()
            except WriteError as e:
                logger.warning("StoryReaper could not reclaim stories: %s", e)
            except SQLAlchemyError as e:
                logger.error("StoryReaper encountered database error: %s", e, exc_info=True)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except TimeoutError:
                continue


def render_message(message: MessageRead, viewer_id: str) -> MessageView:
    """Render a message for one viewer.

    View-once content is never included here; it is only released by
    :func:`reveal_view_once`. The sender always sees ``sent``.
    """
    view = MessageView(
        id=message.id,
        conversation_id=message.conversation_id,
        sender_id=message.sender_id,
        created_at=message.created_at,
        kind=message.kind,
        view_once=message.view_once,
    )
    if not message.view_once:
        view.text = message.text
        view.url = message.url
        view.file_name = message.file_name
        return view

    if message.sender_id == viewer_id:
        view.view_once_state = "sent"
    elif viewer_id in message.viewed_by:
        view.view_once_state = "viewed"
    else:
        view.view_once_state = "tap_to_reveal"
    return view


def reveal_view_once(
    db: Session,
    store: ConversationStore,
    message_id: int,
    viewer_id: str,
) -> ViewOnceReveal:
    """Open a message for ``viewer_id``, releasing view-once content at most once.

    Returns ``sent`` (no content) for the sender, ``revealed`` with content the
    first time a recipient opens it, and ``viewed`` (no content) afterwards.
    """
    message = store.get_message(db, message_id)
    conversation = store.get_conversation(db, message.conversation_id)
    if not conversation.has_participant(viewer_id):
        raise OperationNotPermittedError("Not a participant of this conversation")

    if message.sender_id == viewer_id:
        return ViewOnceReveal(state="sent")
    if not message.view_once:
        return ViewOnceReveal(state="revealed", message=to_message_read(message))

    if store.mark_viewed(db, message_id, viewer_id):
        return ViewOnceReveal(state="revealed", message=to_message_read(message))
    return ViewOnceReveal(state="viewed")
