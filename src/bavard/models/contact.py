# src/bavard/models/contact.py
"""Directed contact records; an edge is two of these."""

from datetime import datetime

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from bavard.db.session import Base
from bavard.db.time import UTCDateTime, utcnow


class ContactEdge(Base):
    """One direction of a symmetric contact relationship.

    ``(owner_id, contact_id)`` must always be accompanied by
    ``(contact_id, owner_id)``; both rows are written in the same transaction.
    """

    __tablename__ = "contact_edge"

    owner_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    contact_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    added_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
