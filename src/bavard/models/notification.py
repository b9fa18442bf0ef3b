# src/bavard/models/notification.py
"""Per-recipient notification inbox."""

from datetime import datetime

from sqlalchemy import Boolean, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from bavard.db.session import Base
from bavard.db.time import UTCDateTime, utcnow


class Notification(Base):
    """A "new message" event delivered to one recipient.

    Independent of the conversation log; only the ``read`` flag ever changes.
    """

    __tablename__ = "notification"
    __table_args__ = (Index("ix_notification_recipient_created", "recipient_id", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    recipient_id: Mapped[str] = mapped_column(String(128), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False, default="new_message")
    sender_id: Mapped[str] = mapped_column(String(128), nullable=False)
    sender_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    conversation_id: Mapped[str] = mapped_column(String(260), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
