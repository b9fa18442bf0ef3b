# src/bavard/models/user.py
"""SQLAlchemy model for users known to the service."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from bavard.db.session import Base
from bavard.db.time import UTCDateTime, utcnow


class User(Base):
    """Identity mirrored from the external auth provider.

    Rows are upserted from verified token claims; the provider remains the
    source of truth for identity.
    """

    __tablename__ = "user_account"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    display_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), unique=True, nullable=True, index=True)
    avatar_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    @property
    def name(self) -> str:
        """Return a printable name, falling back to the email or id."""
        return self.display_name or self.email or self.id
