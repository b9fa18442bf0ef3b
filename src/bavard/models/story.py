# src/bavard/models/story.py
"""Ephemeral stories."""

from datetime import datetime

from sqlalchemy import Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from bavard.db.session import Base
from bavard.db.time import UTCDateTime


class Story(Base):
    """Author-published media visible until ``expires_at``.

    Visibility is a pure function of time; expired rows are reclaimed lazily.
    """

    __tablename__ = "story"
    __table_args__ = (Index("ix_story_author_expires", "author_id", "expires_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    author_id: Mapped[str] = mapped_column(String(128), nullable=False)
    media_url: Mapped[str] = mapped_column(Text, nullable=False)
    media_type: Mapped[str] = mapped_column(String(16), nullable=False, default="image")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
