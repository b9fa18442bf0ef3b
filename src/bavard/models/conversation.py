# src/bavard/models/conversation.py
"""Models for two-party conversations, their messages and read watermarks."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bavard.db.session import Base
from bavard.db.time import UTCDateTime, utcnow


class Conversation(Base):
    """Durable message log owned by exactly two participants.

    The primary key is the canonical pair id, so either participant resolves to
    the same row. Rows are never deleted; purging only removes messages.
    """

    __tablename__ = "conversation"

    id: Mapped[str] = mapped_column(String(260), primary_key=True)
    participant_a: Mapped[str] = mapped_column(String(128), nullable=False)
    participant_b: Mapped[str] = mapped_column(String(128), nullable=False)
    # Timestamp of the newest message ever appended; keeps commit times strictly increasing.
    last_message_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    def has_participant(self, user_id: str) -> bool:
        return user_id in (self.participant_a, self.participant_b)

    def counterpart_of(self, user_id: str) -> str:
        return self.participant_b if user_id == self.participant_a else self.participant_a


class Message(Base):
    """A single entry in a conversation log."""

    __tablename__ = "message"
    __table_args__ = (Index("ix_message_conversation_created", "conversation_id", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[str] = mapped_column(
        String(260),
        ForeignKey("conversation.id"),
        nullable=False,
    )
    sender_id: Mapped[str] = mapped_column(String(128), nullable=False)
    # Server-assigned at commit; strictly increasing within a conversation.
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    # text | image | audio | file
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default="text")
    text: Mapped[str | None] = mapped_column(Text, nullable=True)
    media_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_name: Mapped[str | None] = mapped_column(Text, nullable=True)

    view_once: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    viewers: Mapped[list[MessageViewer]] = relationship(
        "MessageViewer",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="MessageViewer.viewed_at",
    )

    @property
    def viewed_by(self) -> list[str]:
        return [viewer.viewer_id for viewer in self.viewers]


class MessageViewer(Base):
    """Records that a non-sender revealed a view-once message."""

    __tablename__ = "message_viewer"

    message_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("message.id", ondelete="CASCADE"),
        primary_key=True,
    )
    viewer_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    viewed_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)


class ReadWatermark(Base):
    """Per-user, per-conversation "read up to" timestamp. Only moves forward."""

    __tablename__ = "read_watermark"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(String(260), primary_key=True)
    last_read: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )
