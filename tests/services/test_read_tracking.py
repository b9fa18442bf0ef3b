# tests/services/test_read_tracking.py
"""Tests for read watermarks and unread counts."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy.orm import Session

from bavard.models import ReadWatermark
from bavard.schemas.message import MessagePayload
from bavard.services.conversation_store import ConversationStore
from bavard.services.read_tracking import ReadTracker

from tests.conftest import T0


def _send(db: Session, store: ConversationStore, conversation_id: str, sender: str, body: str):
    return store.append(db, conversation_id, sender, MessagePayload(kind="text", text=body))


def test_watermark_only_moves_forward(db_session: Session, tracker: ReadTracker) -> None:
    later = T0 + timedelta(minutes=5)

    assert tracker.advance_watermark(db_session, "alice", "alice_bob", later) is True
    assert tracker.advance_watermark(db_session, "alice", "alice_bob", T0) is False
    assert tracker.advance_watermark(db_session, "alice", "alice_bob", later) is False
    assert tracker.get_watermark(db_session, "alice", "alice_bob") == later


def test_ignored_watermark_update_ends_transaction(db_session: Session, tracker: ReadTracker) -> None:
    later = T0 + timedelta(minutes=5)
    tracker.advance_watermark(db_session, "alice", "alice_bob", later)

    assert tracker.advance_watermark(db_session, "alice", "alice_bob", T0) is False
    assert not db_session.in_transaction()


def test_watermarks_are_per_user(db_session: Session, tracker: ReadTracker) -> None:
    tracker.advance_watermark(db_session, "alice", "alice_bob", T0)

    assert tracker.get_watermark(db_session, "bob", "alice_bob") is None


def test_count_unread_follows_watermark(
    db_session: Session, store: ConversationStore, tracker: ReadTracker, clock
) -> None:
    conversation = store.ensure_conversation(db_session, "alice", "bob")
    db_session.commit()
    from_bob = []
    for i in range(3):
        from_bob.append(_send(db_session, store, conversation.id, "bob", f"b{i}"))
        clock.advance(seconds=1)
    _send(db_session, store, conversation.id, "alice", "reply")

    assert tracker.count_unread(db_session, "alice", conversation.id, "bob") == 3
    # Alice's own message never counts for her.
    assert tracker.count_unread(db_session, "bob", conversation.id, "alice") == 1

    tracker.advance_watermark(db_session, "alice", conversation.id, from_bob[1].created_at)
    assert tracker.count_unread(db_session, "alice", conversation.id, "bob") == 1

    tracker.advance_watermark(db_session, "alice", conversation.id, from_bob[2].created_at)
    assert tracker.count_unread(db_session, "alice", conversation.id, "bob") == 0


def test_open_conversation_creates_state_on_first_access(
    db_session: Session, store: ConversationStore, tracker: ReadTracker
) -> None:
    last_read = tracker.open_conversation(db_session, store, "alice", "bob")

    assert last_read is None
    assert store.get_conversation(db_session, "alice_bob") is not None
    assert db_session.get(ReadWatermark, ("alice", "alice_bob")) is not None


def test_open_conversation_marks_everything_read(
    db_session: Session, store: ConversationStore, tracker: ReadTracker
) -> None:
    conversation = store.ensure_conversation(db_session, "alice", "bob")
    db_session.commit()
    _send(db_session, store, conversation.id, "bob", "one")
    latest = _send(db_session, store, conversation.id, "bob", "two")

    last_read = tracker.open_conversation(db_session, store, "alice", "bob")

    assert last_read == latest.created_at
    assert tracker.count_unread(db_session, "alice", conversation.id, "bob") == 0


@pytest.mark.asyncio
async def test_stream_watermark_yields_current_then_advances(
    db_session: Session, session_factory, tracker: ReadTracker
) -> None:
    later = T0 + timedelta(seconds=10)
    stream = tracker.stream_watermark(session_factory, "alice", "alice_bob")
    try:
        assert await asyncio.wait_for(anext(stream), timeout=1.0) is None

        tracker.advance_watermark(db_session, "alice", "alice_bob", T0)
        # A regression is ignored and never published.
        tracker.advance_watermark(db_session, "alice", "alice_bob", T0 - timedelta(seconds=1))
        tracker.advance_watermark(db_session, "alice", "alice_bob", later)

        assert await asyncio.wait_for(anext(stream), timeout=1.0) == T0
        assert await asyncio.wait_for(anext(stream), timeout=1.0) == later
    finally:
        await stream.aclose()
