# src/bavard/services/notification_ledger.py
"""Durable per-recipient inbox of "new message" events."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable, Iterable
from datetime import datetime

from sqlalchemy import delete, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bavard.core.constants import ASSISTANT_USER_ID, NOTIFICATION_KIND_NEW_MESSAGE, RESERVED_USER_IDS
from bavard.core.errors import InvalidRequestError, WriteError
from bavard.db.session import SessionFactory
from bavard.db.time import utcnow
from bavard.models import Notification
from bavard.schemas.notification import NotificationRead
from bavard.services.message_bus import BusEvent, MessageBus, get_message_bus, notification_topic

logger = logging.getLogger(__name__)

EVENT_NOTIFICATION = "notification"


class NotificationLedger:
    """Append-only notification store; only the read flag is ever mutated."""

    def __init__(
        self,
        bus: MessageBus | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._bus = bus or get_message_bus()
        self._clock = clock

    def record(
        self,
        db: Session,
        recipient_id: str,
        sender_id: str,
        sender_name: str | None,
        conversation_id: str,
        *,
        commit: bool = True,
    ) -> Notification:
        """Append a "new message" notification for ``recipient_id``.

        Reserved peers have no inbox, and assistant replies never notify.
        """
        if recipient_id in RESERVED_USER_IDS:
            raise InvalidRequestError("Reserved peers do not receive notifications")
        if sender_id == ASSISTANT_USER_ID:
            raise InvalidRequestError("Assistant replies do not create notifications")

        try:
            notification = Notification(
                recipient_id=recipient_id,
                kind=NOTIFICATION_KIND_NEW_MESSAGE,
                sender_id=sender_id,
                sender_name=sender_name,
                conversation_id=conversation_id,
                created_at=self._clock(),
                read=False,
            )
            db.add(notification)
            db.flush()
            self._bus.publish_on_commit(
                db,
                BusEvent(
                    notification_topic(recipient_id),
                    EVENT_NOTIFICATION,
                    NotificationRead.model_validate(notification),
                ),
            )
            if commit:
                db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("Recording notification for %s failed: %s", recipient_id, exc)
            raise WriteError("Notification could not be stored") from exc
        return notification

    def list_recent(self, db: Session, recipient_id: str, limit: int = 50) -> list[Notification]:
        """Return the recipient's notifications, newest first."""
        return (
            db.query(Notification)
            .filter(Notification.recipient_id == recipient_id)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(limit)
            .all()
        )

    def list_unread(self, db: Session, recipient_id: str) -> list[Notification]:
        """Return unread notifications, oldest first."""
        return (
            db.query(Notification)
            .filter(Notification.recipient_id == recipient_id, Notification.read.is_(False))
            .order_by(Notification.created_at, Notification.id)
            .all()
        )

    def mark_read(self, db: Session, recipient_id: str, notification_ids: Iterable[int]) -> int:
        """Set ``read`` on the recipient's own notifications. Idempotent.

        Ids owned by other recipients are ignored. Returns the number of rows
        that flipped from unread to read.
        """
        ids = list(set(notification_ids))
        if not ids:
            return 0
        try:
            result = db.execute(
                update(Notification)
                .where(
                    Notification.recipient_id == recipient_id,
                    Notification.id.in_(ids),
                    Notification.read.is_(False),
                )
                .values(read=True)
                .execution_options(synchronize_session="fetch")
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise WriteError("Notifications could not be updated") from exc
        return int(result.rowcount or 0)

    def clear(self, db: Session, recipient_id: str) -> int:
        """Delete every notification of the recipient."""
        try:
            result = db.execute(
                delete(Notification).where(Notification.recipient_id == recipient_id)
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise WriteError("Notifications could not be cleared") from exc
        logger.info("Cleared %d notifications for %s", result.rowcount, recipient_id)
        return int(result.rowcount or 0)

    async def stream(
        self,
        session_factory: SessionFactory,
        recipient_id: str,
    ) -> AsyncIterator[NotificationRead]:
        """Replay unread notifications and then yield new ones as they are recorded."""
        subscription = self._bus.subscribe(notification_topic(recipient_id))
        seen: set[int] = set()
        try:
            with session_factory() as db:
                backlog = [NotificationRead.model_validate(n) for n in self.list_unread(db, recipient_id)]
            for notification in backlog:
                seen.add(notification.id)
                yield notification
            async for bus_event in subscription:
                notification = bus_event.payload
                if notification.id in seen:
                    continue
                seen.add(notification.id)
                yield notification
        finally:
            subscription.close()
