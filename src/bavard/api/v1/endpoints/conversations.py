# src/bavard/api/v1/endpoints/conversations.py
"""Conversation endpoints: sending, listing, read state and clearing."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, BackgroundTasks, Query, status
from sqlalchemy.orm import Session

from bavard.core.constants import ASSISTANT_USER_ID, RESERVED_USER_IDS
from bavard.core.errors import (
    BavardError,
    InvalidRequestError,
    NotFoundError,
    OperationNotPermittedError,
)
from bavard.core.settings import settings
from bavard.db.time import as_utc
from bavard.models import Conversation, User
from bavard.schemas.message import (
    MediaMessageCreate,
    MessageCreate,
    MessagePayload,
    MessageView,
    PurgeResult,
    ReadState,
    WatermarkUpdate,
)
from bavard.services.contacts import ContactService
from bavard.services.conversation_store import conversation_id_for, to_message_read
from bavard.services.ephemeral import render_message

from ..dependencies import (
    ChatDep,
    ContactsDep,
    CurrentUserDep,
    SessionDep,
    SessionFactoryDep,
    StorageDep,
    StoreDep,
    TrackerDep,
    raise_http_error,
)

router = APIRouter(prefix="/conversations", tags=["conversations"])


def _check_peer(db: Session, contacts: ContactService, user: User, peer_id: str) -> str:
    """Return the pair's conversation id if ``user`` may read it."""
    if peer_id == user.id:
        raise InvalidRequestError("A conversation needs two distinct participants")
    if peer_id not in RESERVED_USER_IDS and not contacts.are_contacts(db, user.id, peer_id):
        raise OperationNotPermittedError("You can only open conversations with your contacts")
    return conversation_id_for(user.id, peer_id)


@router.get("/{peer_id}/messages", response_model=list[MessageView])
async def list_messages(
    peer_id: str,
    current_user: CurrentUserDep,
    db: SessionDep,
    store: StoreDep,
    contacts: ContactsDep,
    after: datetime | None = Query(None, description="Only messages committed after this time"),
    limit: int = Query(settings.conversation_page_size, ge=1, le=500),
) -> list[MessageView]:
    """List messages in commit order with view-once content redacted."""
    try:
        conversation_id = _check_peer(db, contacts, current_user, peer_id)
    except BavardError as exc:
        raise_http_error(exc)

    if db.get(Conversation, conversation_id) is None:
        return []
    if after is None:
        messages = store.recent(db, conversation_id, limit)
    else:
        messages = store.messages_after(db, conversation_id, after, limit)
    return [render_message(to_message_read(m), current_user.id) for m in messages]


@router.post("/{peer_id}/messages", response_model=MessageView, status_code=status.HTTP_201_CREATED)
async def send_message(
    peer_id: str,
    message_data: MessageCreate,
    current_user: CurrentUserDep,
    db: SessionDep,
    chat: ChatDep,
    session_factory: SessionFactoryDep,
    background_tasks: BackgroundTasks,
) -> MessageView:
    """Send a text message. Messages to the assistant are answered asynchronously."""
    payload = MessagePayload(kind="text", text=message_data.text)
    try:
        message = chat.send(db, current_user, peer_id, payload, message_data.view_once)
    except BavardError as exc:
        raise_http_error(exc, unsent=message_data.model_dump(mode="json"))

    if peer_id == ASSISTANT_USER_ID:
        background_tasks.add_task(
            chat.reply_as_assistant,
            session_factory,
            current_user.id,
            message_data.text,
        )
    return render_message(to_message_read(message), current_user.id)


@router.post("/{peer_id}/media", response_model=MessageView, status_code=status.HTTP_201_CREATED)
async def send_media_message(
    peer_id: str,
    media_data: MediaMessageCreate,
    current_user: CurrentUserDep,
    db: SessionDep,
    chat: ChatDep,
    storage: StorageDep,
) -> MessageView:
    """Upload media and send it; nothing is sent if the upload fails."""
    try:
        message = await chat.send_media(
            db,
            storage,
            current_user,
            peer_id,
            media_data.kind,
            media_data.data_uri,
            media_data.file_name,
            media_data.view_once,
        )
    except BavardError as exc:
        raise_http_error(
            exc,
            unsent={"kind": media_data.kind, "file_name": media_data.file_name},
        )
    return render_message(to_message_read(message), current_user.id)


@router.post("/{peer_id}/open", response_model=ReadState)
async def open_conversation(
    peer_id: str,
    current_user: CurrentUserDep,
    db: SessionDep,
    store: StoreDep,
    tracker: TrackerDep,
    contacts: ContactsDep,
) -> ReadState:
    """Open a conversation, marking everything in it as read."""
    try:
        conversation_id = _check_peer(db, contacts, current_user, peer_id)
        previous = tracker.get_watermark(db, current_user.id, conversation_id)
        last_read = tracker.open_conversation(db, store, current_user.id, peer_id)
    except BavardError as exc:
        raise_http_error(exc)

    return ReadState(
        conversation_id=conversation_id,
        last_read=last_read,
        unread=tracker.count_unread(db, current_user.id, conversation_id, peer_id),
        advanced=last_read != previous,
    )


@router.get("/{peer_id}/read-state", response_model=ReadState)
async def get_read_state(
    peer_id: str,
    current_user: CurrentUserDep,
    db: SessionDep,
    tracker: TrackerDep,
    contacts: ContactsDep,
) -> ReadState:
    """Return the caller's watermark and unread count without changing them."""
    try:
        conversation_id = _check_peer(db, contacts, current_user, peer_id)
    except BavardError as exc:
        raise_http_error(exc)

    return ReadState(
        conversation_id=conversation_id,
        last_read=tracker.get_watermark(db, current_user.id, conversation_id),
        unread=tracker.count_unread(db, current_user.id, conversation_id, peer_id),
    )


@router.put("/{peer_id}/watermark", response_model=ReadState)
async def advance_watermark(
    peer_id: str,
    update: WatermarkUpdate,
    current_user: CurrentUserDep,
    db: SessionDep,
    store: StoreDep,
    tracker: TrackerDep,
    contacts: ContactsDep,
) -> ReadState:
    """Move the caller's watermark forward; earlier timestamps are ignored."""
    try:
        conversation_id = _check_peer(db, contacts, current_user, peer_id)
        conversation = store.get_conversation(db, conversation_id)
        latest = conversation.last_message_at
        if latest is None:
            raise NotFoundError("Conversation has no messages yet")
        # Never past the newest committed message.
        timestamp = min(as_utc(update.timestamp), latest) if update.timestamp else latest
        advanced = tracker.advance_watermark(db, current_user.id, conversation_id, timestamp)
    except BavardError as exc:
        raise_http_error(exc)

    return ReadState(
        conversation_id=conversation_id,
        last_read=tracker.get_watermark(db, current_user.id, conversation_id),
        unread=tracker.count_unread(db, current_user.id, conversation_id, peer_id),
        advanced=advanced,
    )


@router.delete("/{peer_id}/messages", response_model=PurgeResult)
async def clear_conversation(
    peer_id: str,
    current_user: CurrentUserDep,
    db: SessionDep,
    store: StoreDep,
) -> PurgeResult:
    """Delete one batch of messages; reissue while ``complete`` is false."""
    try:
        conversation_id = conversation_id_for(current_user.id, peer_id)
        deleted = store.purge(db, conversation_id, current_user.id)
    except BavardError as exc:
        raise_http_error(exc)

    return PurgeResult(
        deleted=deleted,
        batch_size=store.purge_batch_size,
        complete=deleted < store.purge_batch_size,
    )
