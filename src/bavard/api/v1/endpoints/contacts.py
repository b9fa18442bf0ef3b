# src/bavard/api/v1/endpoints/contacts.py
"""Contact list endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Response, status

from bavard.core.constants import ASSISTANT_DISPLAY_NAME
from bavard.core.errors import BavardError
from bavard.models import User
from bavard.schemas.contact import ContactCreate, ContactResponse
from bavard.services.contacts import ContactEntry
from bavard.services.conversation_store import conversation_id_for

from ..dependencies import (
    ContactsDep,
    CurrentUserDep,
    SessionDep,
    TrackerDep,
    raise_http_error,
)

router = APIRouter(prefix="/contacts", tags=["contacts"])


def _to_response(
    owner: User,
    entry: ContactEntry,
    user: User | None,
    unread: int,
) -> ContactResponse:
    if entry.is_assistant:
        display_name, avatar_url = ASSISTANT_DISPLAY_NAME, None
    else:
        display_name = user.name if user is not None else None
        avatar_url = user.avatar_url if user is not None else None
    return ContactResponse(
        id=entry.contact_id,
        display_name=display_name,
        avatar_url=avatar_url,
        conversation_id=conversation_id_for(owner.id, entry.contact_id),
        unread=unread,
        added_at=entry.added_at,
        is_assistant=entry.is_assistant,
    )


@router.get("", response_model=list[ContactResponse])
async def list_contacts(
    current_user: CurrentUserDep,
    db: SessionDep,
    contacts: ContactsDep,
    tracker: TrackerDep,
) -> list[ContactResponse]:
    """List contacts by when they were added, with the assistant last."""
    entries = contacts.list_contacts(db, current_user.id)
    ids = [entry.contact_id for entry in entries]
    users = {user.id: user for user in db.query(User).filter(User.id.in_(ids))}

    response = []
    for entry in entries:
        conversation_id = conversation_id_for(current_user.id, entry.contact_id)
        unread = tracker.count_unread(db, current_user.id, conversation_id, entry.contact_id)
        response.append(_to_response(current_user, entry, users.get(entry.contact_id), unread))
    return response


@router.post("", response_model=ContactResponse, status_code=status.HTTP_201_CREATED)
async def add_contact(
    contact_data: ContactCreate,
    current_user: CurrentUserDep,
    db: SessionDep,
    contacts: ContactsDep,
    response: Response,
) -> ContactResponse:
    """Connect with a user found by id or email. Re-adding is a no-op."""
    try:
        target = contacts.lookup_user(db, user_id=contact_data.user_id, email=contact_data.email)
        created = contacts.add_contact(db, current_user.id, target)
    except BavardError as exc:
        raise_http_error(exc)

    if not created:
        response.status_code = status.HTTP_200_OK
    entry = next(
        e for e in contacts.list_contacts(db, current_user.id) if e.contact_id == target.id
    )
    return _to_response(current_user, entry, target, 0)


@router.delete("/{contact_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_contact(
    contact_id: str,
    current_user: CurrentUserDep,
    db: SessionDep,
    contacts: ContactsDep,
) -> Response:
    """Remove a contact in both directions."""
    try:
        contacts.remove_contact(db, current_user.id, contact_id)
    except BavardError as exc:
        raise_http_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
