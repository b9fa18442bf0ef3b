# src/bavard/services/read_tracking.py
"""Per-user read watermarks and derived unread counts."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bavard.core.errors import WriteError
from bavard.db.session import SessionFactory
from bavard.db.time import as_utc
from bavard.models import Message, ReadWatermark
from bavard.services.conversation_store import ConversationStore
from bavard.services.message_bus import BusEvent, MessageBus, get_message_bus, watermark_topic

logger = logging.getLogger(__name__)

EVENT_WATERMARK = "watermark"


class ReadTracker:
    """Maintains monotonic "read up to" watermarks.

    Unread counts are never stored: they are recomputed from the watermark and
    the conversation log, which remain the single source of truth.
    """

    def __init__(self, bus: MessageBus | None = None) -> None:
        self._bus = bus or get_message_bus()

    def get_watermark(self, db: Session, user_id: str, conversation_id: str) -> datetime | None:
        row = db.get(ReadWatermark, (user_id, conversation_id))
        return row.last_read if row is not None else None

    def ensure_watermark(self, db: Session, user_id: str, conversation_id: str) -> ReadWatermark:
        """Create the watermark row on first access to a conversation."""
        row = db.get(ReadWatermark, (user_id, conversation_id))
        if row is None:
            row = ReadWatermark(user_id=user_id, conversation_id=conversation_id, last_read=None)
            db.add(row)
            db.flush()
        return row

    def advance_watermark(
        self,
        db: Session,
        user_id: str,
        conversation_id: str,
        timestamp: datetime,
    ) -> bool:
        """Move the watermark forward to ``timestamp``.

        Timestamps at or before the stored value are ignored. Returns True when
        the stored value changed.
        """
        timestamp = as_utc(timestamp)
        try:
            row = (
                db.query(ReadWatermark)
                .filter(
                    ReadWatermark.user_id == user_id,
                    ReadWatermark.conversation_id == conversation_id,
                )
                .with_for_update()
                .first()
            )
            if row is None:
                row = ReadWatermark(user_id=user_id, conversation_id=conversation_id)
                db.add(row)
            elif row.last_read is not None and timestamp <= row.last_read:
                # Ends the transaction so the row lock is released.
                db.commit()
                return False

            row.last_read = timestamp
            self._bus.publish_on_commit(
                db,
                BusEvent(
                    watermark_topic(user_id, conversation_id),
                    EVENT_WATERMARK,
                    {"conversation_id": conversation_id, "last_read": timestamp},
                ),
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("Watermark update for %s/%s failed: %s", user_id, conversation_id, exc)
            raise WriteError("Read state could not be stored") from exc
        return True

    def count_unread(
        self,
        db: Session,
        user_id: str,
        conversation_id: str,
        counterpart_id: str,
    ) -> int:
        """Count ``counterpart_id`` messages newer than ``user_id``'s watermark."""
        watermark = self.get_watermark(db, user_id, conversation_id)
        query = db.query(func.count(Message.id)).filter(
            Message.conversation_id == conversation_id,
            Message.sender_id == counterpart_id,
        )
        if watermark is not None:
            query = query.filter(Message.created_at > watermark)
        return int(query.scalar() or 0)

    def open_conversation(
        self,
        db: Session,
        store: ConversationStore,
        user_id: str,
        peer_id: str,
    ) -> datetime | None:
        """Mark everything in the pair's conversation as read for ``user_id``.

        Creates the conversation and watermark on first access. Returns the
        resulting watermark.
        """
        conversation = store.ensure_conversation(db, user_id, peer_id)
        row = self.ensure_watermark(db, user_id, conversation.id)
        db.commit()

        latest = conversation.last_message_at
        if latest is not None:
            self.advance_watermark(db, user_id, conversation.id, latest)
        return row.last_read

    async def stream_watermark(
        self,
        session_factory: SessionFactory,
        user_id: str,
        conversation_id: str,
    ) -> AsyncIterator[datetime | None]:
        """Yield the current watermark and then every later value."""
        subscription = self._bus.subscribe(watermark_topic(user_id, conversation_id))
        try:
            with session_factory() as db:
                current = self.get_watermark(db, user_id, conversation_id)
            yield current
            async for bus_event in subscription:
                last_read = bus_event.payload["last_read"]
                if current is not None and last_read <= current:
                    continue
                current = last_read
                yield current
        finally:
            subscription.close()
