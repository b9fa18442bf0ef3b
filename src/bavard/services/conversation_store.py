# src/bavard/services/conversation_store.py
"""Durable, ordered per-pair message logs."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from datetime import datetime, timedelta

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from bavard.core.errors import (
    InvalidRequestError,
    NotFoundError,
    OperationNotPermittedError,
    WriteError,
)
from bavard.core.settings import settings
from bavard.db.session import SessionFactory
from bavard.db.time import as_utc, utcnow
from bavard.models import Conversation, Message, MessageViewer
from bavard.schemas.message import MessagePayload, MessageRead
from bavard.services.message_bus import BusEvent, MessageBus, conversation_topic, get_message_bus

logger = logging.getLogger(__name__)

# Smallest step used to keep commit timestamps strictly increasing.
_TICK = timedelta(microseconds=1)

EVENT_MESSAGE = "message"
EVENT_CLEARED = "cleared"
EVENT_VIEWED = "viewed"
EVENT_TYPING = "typing"


def conversation_id_for(user_a: str, user_b: str) -> str:
    """Return the canonical conversation id for an unordered pair of users."""
    if user_a == user_b:
        raise InvalidRequestError("A conversation needs two distinct participants")
    return "_".join(sorted((user_a, user_b)))


def to_message_read(message: Message) -> MessageRead:
    return MessageRead(
        id=message.id,
        conversation_id=message.conversation_id,
        sender_id=message.sender_id,
        created_at=message.created_at,
        kind=message.kind,  # type: ignore[arg-type]
        text=message.text,
        url=message.media_url,
        file_name=message.file_name,
        view_once=message.view_once,
        viewed_by=message.viewed_by,
    )


class ConversationStore:
    """Append-only message store with live streaming.

    The store assigns the authoritative commit timestamp of every message; any
    client-side timestamp is advisory and ignored for ordering.
    """

    def __init__(
        self,
        bus: MessageBus | None = None,
        clock: Callable[[], datetime] = utcnow,
        purge_batch_size: int | None = None,
    ) -> None:
        self._bus = bus or get_message_bus()
        self._clock = clock
        self.purge_batch_size = purge_batch_size or settings.purge_batch_size

    @property
    def bus(self) -> MessageBus:
        return self._bus

    def ensure_conversation(self, db: Session, user_a: str, user_b: str) -> Conversation:
        """Return the pair's conversation, creating and flushing it if missing."""
        conversation_id = conversation_id_for(user_a, user_b)
        conversation = db.get(Conversation, conversation_id)
        if conversation is None:
            first, second = sorted((user_a, user_b))
            conversation = Conversation(
                id=conversation_id,
                participant_a=first,
                participant_b=second,
                created_at=self._clock(),
            )
            db.add(conversation)
            db.flush()
        return conversation

    def get_conversation(self, db: Session, conversation_id: str) -> Conversation:
        conversation = db.get(Conversation, conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    def _next_timestamp(self, conversation: Conversation) -> datetime:
        now = as_utc(self._clock())
        last = conversation.last_message_at
        if last is not None and now <= last:
            return last + _TICK
        return now

    def append(
        self,
        db: Session,
        conversation_id: str,
        sender_id: str,
        payload: MessagePayload,
        view_once: bool = False,
        *,
        commit: bool = True,
    ) -> Message:
        """Persist a message and publish it to live subscribers once committed.

        With ``commit=False`` the caller owns the transaction and publication
        waits for its commit.

        Raises:
            NotFoundError: If the conversation does not exist.
            OperationNotPermittedError: If the sender is not a participant.
            WriteError: If persistence failed; the message may still exist.
        """
        conversation = (
            db.query(Conversation)
            .filter(Conversation.id == conversation_id)
            .with_for_update()
            .first()
        )
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        if not conversation.has_participant(sender_id):
            raise OperationNotPermittedError("Sender is not a participant of this conversation")

        try:
            created_at = self._next_timestamp(conversation)
            message = Message(
                conversation_id=conversation_id,
                sender_id=sender_id,
                created_at=created_at,
                kind=payload.kind,
                text=payload.text if payload.kind == "text" else None,
                media_url=payload.url,
                file_name=payload.file_name,
                view_once=view_once,
                viewers=[],
            )
            db.add(message)
            conversation.last_message_at = created_at
            db.flush()
            self._bus.publish_on_commit(
                db,
                BusEvent(conversation_topic(conversation_id), EVENT_MESSAGE, to_message_read(message)),
            )
            if commit:
                db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("Append to %s failed: %s", conversation_id, exc)
            raise WriteError("Message could not be stored") from exc

        return message

    def get_message(self, db: Session, message_id: int) -> Message:
        message = db.get(Message, message_id)
        if message is None:
            raise NotFoundError(f"Message {message_id} not found")
        return message

    def messages_after(
        self,
        db: Session,
        conversation_id: str,
        after: datetime | None = None,
        limit: int | None = None,
    ) -> list[Message]:
        """Return committed messages strictly after ``after`` in commit order."""
        query = db.query(Message).filter(Message.conversation_id == conversation_id)
        if after is not None:
            query = query.filter(Message.created_at > as_utc(after))
        query = query.order_by(Message.created_at, Message.id)
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def recent(self, db: Session, conversation_id: str, limit: int) -> list[Message]:
        """Return the newest ``limit`` messages, oldest first."""
        rows = (
            db.query(Message)
            .filter(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(limit)
            .all()
        )
        rows.reverse()
        return rows

    async def stream_events(
        self,
        session_factory: SessionFactory,
        conversation_id: str,
        after: datetime | None = None,
    ) -> AsyncIterator[BusEvent]:
        """Yield backlog messages after ``after`` and then every live conversation event.

        The bus subscription is opened before the backlog is read so no commit
        can fall between the two. Message events at or before the last yielded
        timestamp are skipped, which makes the stream restartable from any
        yielded timestamp.
        """
        topic = conversation_topic(conversation_id)
        subscription = self._bus.subscribe(topic)
        try:
            with session_factory() as db:
                backlog = [to_message_read(m) for m in self.messages_after(db, conversation_id, after)]

            checkpoint = as_utc(after) if after is not None else None
            for message in backlog:
                checkpoint = message.created_at
                yield BusEvent(topic, EVENT_MESSAGE, message)

            async for bus_event in subscription:
                if bus_event.kind == EVENT_MESSAGE:
                    created_at = bus_event.payload.created_at
                    if checkpoint is not None and created_at <= checkpoint:
                        continue
                    checkpoint = created_at
                yield bus_event
        finally:
            subscription.close()

    async def stream_since(
        self,
        session_factory: SessionFactory,
        conversation_id: str,
        after: datetime | None = None,
    ) -> AsyncIterator[MessageRead]:
        """Live, ordered, restartable stream of messages; ends when closed."""
        events = self.stream_events(session_factory, conversation_id, after)
        try:
            async for bus_event in events:
                if bus_event.kind == EVENT_MESSAGE:
                    yield bus_event.payload
        finally:
            await events.aclose()

    def purge(self, db: Session, conversation_id: str, requested_by: str) -> int:
        """Delete up to one batch of messages, oldest first.

        Returns the number deleted. A result equal to :attr:`purge_batch_size`
        means more messages may remain and the caller should reissue.
        """
        conversation = self.get_conversation(db, conversation_id)
        if not conversation.has_participant(requested_by):
            raise OperationNotPermittedError("Only participants may clear a conversation")

        try:
            ids = [
                row.id
                for row in db.query(Message.id)
                .filter(Message.conversation_id == conversation_id)
                .order_by(Message.created_at, Message.id)
                .limit(self.purge_batch_size)
            ]
            if ids:
                db.execute(delete(MessageViewer).where(MessageViewer.message_id.in_(ids)))
                db.execute(delete(Message).where(Message.id.in_(ids)))
            self._bus.publish_on_commit(
                db,
                BusEvent(
                    conversation_topic(conversation_id),
                    EVENT_CLEARED,
                    {"conversation_id": conversation_id, "deleted": len(ids)},
                ),
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("Purge of %s failed: %s", conversation_id, exc)
            raise WriteError("Conversation could not be cleared") from exc

        db.expire_all()
        if len(ids) == self.purge_batch_size:
            logger.info(
                "Purge of %s hit the batch cap of %d; more messages may remain",
                conversation_id,
                self.purge_batch_size,
            )
        return len(ids)

    def mark_viewed(self, db: Session, message_id: int, viewer_id: str) -> bool:
        """Record a view-once reveal.

        Returns True only when the viewer was newly added: the message is
        view-once, the viewer is not the sender and had not viewed it before.
        """
        message = self.get_message(db, message_id)
        if not message.view_once or viewer_id == message.sender_id:
            return False
        if viewer_id in message.viewed_by:
            return False

        message.viewers.append(MessageViewer(message_id=message.id, viewer_id=viewer_id))
        self._bus.publish_on_commit(
            db,
            BusEvent(
                conversation_topic(message.conversation_id),
                EVENT_VIEWED,
                {"message_id": message.id, "viewer_id": viewer_id},
            ),
        )
        try:
            db.commit()
        except IntegrityError:
            # A concurrent reveal by the same viewer won the insert.
            db.rollback()
            return False
        except SQLAlchemyError as exc:
            db.rollback()
            raise WriteError("View state could not be stored") from exc
        return True

    def publish_typing(self, conversation_id: str, user_id: str, active: bool) -> None:
        """Broadcast a transient typing indicator; never persisted."""
        self._bus.publish(
            BusEvent(
                conversation_topic(conversation_id),
                EVENT_TYPING,
                {"conversation_id": conversation_id, "user_id": user_id, "active": active},
            )
        )
