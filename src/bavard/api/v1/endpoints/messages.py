# src/bavard/api/v1/endpoints/messages.py
"""Single-message endpoints, including the view-once reveal."""

from __future__ import annotations

from fastapi import APIRouter

from bavard.core.errors import BavardError, OperationNotPermittedError
from bavard.schemas.message import MessageView, ViewOnceReveal
from bavard.services.conversation_store import to_message_read
from bavard.services.ephemeral import render_message, reveal_view_once

from ..dependencies import CurrentUserDep, SessionDep, StoreDep, raise_http_error

router = APIRouter(prefix="/messages", tags=["messages"])


@router.get("/{message_id}", response_model=MessageView)
async def get_message(
    message_id: int,
    current_user: CurrentUserDep,
    db: SessionDep,
    store: StoreDep,
) -> MessageView:
    """Return one message as the caller sees it; view-once content stays hidden."""
    try:
        message = store.get_message(db, message_id)
        conversation = store.get_conversation(db, message.conversation_id)
        if not conversation.has_participant(current_user.id):
            raise OperationNotPermittedError("Not a participant of this conversation")
    except BavardError as exc:
        raise_http_error(exc)
    return render_message(to_message_read(message), current_user.id)


@router.post("/{message_id}/reveal", response_model=ViewOnceReveal)
async def reveal_message(
    message_id: int,
    current_user: CurrentUserDep,
    db: SessionDep,
    store: StoreDep,
) -> ViewOnceReveal:
    """Open a message. View-once content is returned at most once per viewer."""
    try:
        return reveal_view_once(db, store, message_id, current_user.id)
    except BavardError as exc:
        raise_http_error(exc)
