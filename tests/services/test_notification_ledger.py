# tests/services/test_notification_ledger.py
"""Tests for the notification ledger."""

import asyncio

import pytest
from sqlalchemy.orm import Session

from bavard.core.constants import ASSISTANT_USER_ID, SYSTEM_BROADCAST_USER_ID
from bavard.core.errors import InvalidRequestError
from bavard.models import Notification
from bavard.services.notification_ledger import NotificationLedger


def _record(db: Session, ledger: NotificationLedger, recipient: str = "bob", sender: str = "alice"):
    return ledger.record(db, recipient, sender, sender.title(), f"{min(recipient, sender)}_{max(recipient, sender)}")


def test_record_and_list(db_session: Session, ledger: NotificationLedger, clock) -> None:
    first = _record(db_session, ledger)
    clock.advance(seconds=1)
    second = _record(db_session, ledger, sender="carol")

    assert first.kind == "new_message"
    assert first.read is False
    assert first.sender_name == "Alice"

    recent = ledger.list_recent(db_session, "bob")
    assert [n.id for n in recent] == [second.id, first.id]

    unread = ledger.list_unread(db_session, "bob")
    assert [n.id for n in unread] == [first.id, second.id]
    assert ledger.list_recent(db_session, "alice") == []


@pytest.mark.parametrize("recipient", [ASSISTANT_USER_ID, SYSTEM_BROADCAST_USER_ID])
def test_reserved_recipients_have_no_inbox(db_session: Session, ledger: NotificationLedger, recipient: str) -> None:
    with pytest.raises(InvalidRequestError):
        ledger.record(db_session, recipient, "alice", "Alice", "conv")
    assert db_session.query(Notification).count() == 0


def test_assistant_replies_never_notify(db_session: Session, ledger: NotificationLedger) -> None:
    with pytest.raises(InvalidRequestError):
        ledger.record(db_session, "alice", ASSISTANT_USER_ID, "JUSU AI", "conv")


def test_mark_read_is_idempotent_and_scoped(db_session: Session, ledger: NotificationLedger) -> None:
    mine = _record(db_session, ledger)
    theirs = _record(db_session, ledger, recipient="carol")

    assert ledger.mark_read(db_session, "bob", [mine.id, theirs.id]) == 1
    assert ledger.mark_read(db_session, "bob", [mine.id]) == 0
    assert ledger.mark_read(db_session, "bob", []) == 0

    assert db_session.get(Notification, mine.id).read is True
    assert db_session.get(Notification, theirs.id).read is False
    assert ledger.list_unread(db_session, "bob") == []


def test_clear_removes_only_recipient_rows(db_session: Session, ledger: NotificationLedger) -> None:
    _record(db_session, ledger)
    _record(db_session, ledger, sender="carol")
    _record(db_session, ledger, recipient="carol")

    assert ledger.clear(db_session, "bob") == 2
    assert ledger.list_recent(db_session, "bob") == []
    assert len(ledger.list_recent(db_session, "carol")) == 1


@pytest.mark.asyncio
async def test_stream_replays_unread_then_follows(
    db_session: Session, session_factory, ledger: NotificationLedger
) -> None:
    read_one = _record(db_session, ledger)
    pending = _record(db_session, ledger, sender="carol")
    ledger.mark_read(db_session, "bob", [read_one.id])

    stream = ledger.stream(session_factory, "bob")
    try:
        replayed = await asyncio.wait_for(anext(stream), timeout=1.0)
        fresh = _record(db_session, ledger, sender="dave")
        live = await asyncio.wait_for(anext(stream), timeout=1.0)
    finally:
        await stream.aclose()

    assert replayed.id == pending.id
    assert live.id == fresh.id
    assert live.sender_name == "Dave"
