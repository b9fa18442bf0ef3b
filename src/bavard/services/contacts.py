# src/bavard/services/contacts.py
"""Symmetric contact edges, written and removed as atomic two-record batches."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bavard.core.constants import ASSISTANT_USER_ID, RESERVED_USER_IDS
from bavard.core.errors import (
    InvalidRequestError,
    NotFoundError,
    PartialBatchError,
    WriteError,
)
from bavard.db.time import utcnow
from bavard.models import ContactEdge, User
from bavard.services.conversation_store import ConversationStore
from bavard.services.message_bus import BusEvent, MessageBus, contacts_topic

logger = logging.getLogger(__name__)

EVENT_CONTACTS_CHANGED = "contacts_changed"


@dataclass(frozen=True)
class ContactEntry:
    """One entry of a user's contact list."""

    contact_id: str
    added_at: datetime | None

    @property
    def is_assistant(self) -> bool:
        return self.contact_id == ASSISTANT_USER_ID


class ContactService:
    """Creates, verifies and removes contact edges."""

    def __init__(
        self,
        store: ConversationStore,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._clock = clock

    @property
    def _bus(self) -> MessageBus:
        return self._store.bus

    def lookup_user(
        self,
        db: Session,
        *,
        user_id: str | None = None,
        email: str | None = None,
    ) -> User:
        """Find a user by id or, failing that, by email."""
        user: User | None = None
        if user_id:
            user = db.get(User, user_id)
        if user is None and email:
            user = db.query(User).filter(User.email == email.strip().lower()).first()
        if user is None:
            raise NotFoundError("User not found")
        return user

    def edge_state(self, db: Session, user_a: str, user_b: str) -> tuple[bool, bool]:
        """Return whether ``a -> b`` and ``b -> a`` exist, read from the database."""
        rows = (
            db.query(ContactEdge.owner_id, ContactEdge.contact_id)
            .filter(
                or_(
                    (ContactEdge.owner_id == user_a) & (ContactEdge.contact_id == user_b),
                    (ContactEdge.owner_id == user_b) & (ContactEdge.contact_id == user_a),
                )
            )
            .all()
        )
        present = {(row.owner_id, row.contact_id) for row in rows}
        return (user_a, user_b) in present, (user_b, user_a) in present

    def are_contacts(self, db: Session, user_a: str, user_b: str) -> bool:
        """Return True when the edge exists in both directions.

        Raises:
            PartialBatchError: If only one direction exists.
        """
        forward, backward = self.edge_state(db, user_a, user_b)
        if forward != backward:
            logger.error("One-sided contact edge between %s and %s", user_a, user_b)
            raise PartialBatchError("Contact relationship is incomplete")
        return forward

    def add_contact(self, db: Session, owner_id: str, target: User) -> bool:
        """Connect ``owner_id`` and ``target`` in both directions.

        Returns False when they were already contacts. A one-sided edge is
        reported rather than rewritten, since blindly re-running the batch could
        resurrect an edge one side removed.
        """
        if target.id == owner_id:
            raise InvalidRequestError("You cannot add yourself as a contact")
        if target.id in RESERVED_USER_IDS:
            raise InvalidRequestError("Reserved peers cannot be added as contacts")

        forward, backward = self.edge_state(db, owner_id, target.id)
        if forward and backward:
            return False
        if forward or backward:
            logger.error("Refusing to overwrite one-sided edge %s <-> %s", owner_id, target.id)
            raise PartialBatchError("Contact relationship is incomplete")

        added_at = self._clock()
        try:
            db.add_all(
                [
                    ContactEdge(owner_id=owner_id, contact_id=target.id, added_at=added_at),
                    ContactEdge(owner_id=target.id, contact_id=owner_id, added_at=added_at),
                ]
            )
            self._store.ensure_conversation(db, owner_id, target.id)
            self._publish_change(db, owner_id, target.id)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("Adding contact %s -> %s failed: %s", owner_id, target.id, exc)
            raise WriteError("Contact could not be added") from exc

        forward, backward = self.edge_state(db, owner_id, target.id)
        if not (forward and backward):
            logger.error(
                "Contact batch %s <-> %s applied partially (forward=%s, backward=%s)",
                owner_id,
                target.id,
                forward,
                backward,
            )
            raise PartialBatchError("Contact relationship was only partially written")

        logger.info("Connected %s and %s", owner_id, target.id)
        return True

    def remove_contact(self, db: Session, owner_id: str, contact_id: str) -> None:
        """Delete both directions of an edge in one transaction."""
        forward, backward = self.edge_state(db, owner_id, contact_id)
        if not (forward or backward):
            raise NotFoundError("Contact not found")
        try:
            db.execute(
                delete(ContactEdge).where(
                    or_(
                        (ContactEdge.owner_id == owner_id) & (ContactEdge.contact_id == contact_id),
                        (ContactEdge.owner_id == contact_id) & (ContactEdge.contact_id == owner_id),
                    )
                )
            )
            self._publish_change(db, owner_id, contact_id)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise WriteError("Contact could not be removed") from exc
        db.expire_all()

    def list_contacts(self, db: Session, owner_id: str) -> list[ContactEntry]:
        """Return contacts ordered by when they were added, with the assistant last."""
        rows = (
            db.query(ContactEdge)
            .filter(ContactEdge.owner_id == owner_id)
            .order_by(ContactEdge.added_at, ContactEdge.contact_id)
            .all()
        )
        entries = [
            ContactEntry(contact_id=row.contact_id, added_at=row.added_at)
            for row in rows
            if row.contact_id != ASSISTANT_USER_ID
        ]
        entries.append(ContactEntry(contact_id=ASSISTANT_USER_ID, added_at=None))
        return entries

    def contact_ids(self, db: Session, owner_id: str) -> list[str]:
        return [entry.contact_id for entry in self.list_contacts(db, owner_id)]

    def _publish_change(self, db: Session, user_a: str, user_b: str) -> None:
        for user_id in (user_a, user_b):
            self._bus.publish_on_commit(
                db,
                BusEvent(contacts_topic(user_id), EVENT_CONTACTS_CHANGED, {"user_id": user_id}),
            )
