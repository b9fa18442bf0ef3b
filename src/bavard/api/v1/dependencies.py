# src/bavard/api/v1/dependencies.py
"""Shared API dependencies for authentication, services and error translation."""

from __future__ import annotations

import logging
from typing import Annotated, Any, NoReturn

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bavard.core.errors import (
    BavardError,
    InvalidRequestError,
    NotFoundError,
    OperationNotPermittedError,
    PartialBatchError,
    TransientIOError,
)
from bavard.core.security import InvalidTokenError, TokenIdentity, decode_access_token
from bavard.db.session import SessionFactory, get_db, get_session_factory
from bavard.models import User
from bavard.services.chat import ChatService, get_chat_service
from bavard.services.contacts import ContactService
from bavard.services.conversation_store import ConversationStore
from bavard.services.ephemeral import StoryService
from bavard.services.generation import GenerationClient, get_generation_client
from bavard.services.message_bus import MessageBus, get_message_bus
from bavard.services.notification_ledger import NotificationLedger
from bavard.services.read_tracking import ReadTracker
from bavard.services.storage import ObjectStorage, get_object_storage

logger = logging.getLogger(__name__)

# HTTP Bearer scheme for auth-provider tokens
bearer_scheme = HTTPBearer()

# Type alias for database session dependency
SessionDep = Annotated[Session, Depends(get_db)]
SessionFactoryDep = Annotated[SessionFactory, Depends(get_session_factory)]


def upsert_user(db: Session, identity: TokenIdentity) -> User:
    """Mirror the token's identity claims into the local user table."""
    user = db.get(User, identity.user_id)
    email = identity.email.strip().lower() if identity.email else None
    if user is None:
        user = User(
            id=identity.user_id,
            display_name=identity.display_name,
            email=email,
            avatar_url=identity.avatar_url,
        )
        db.add(user)
    else:
        if identity.display_name:
            user.display_name = identity.display_name
        if email:
            user.email = email
        if identity.avatar_url:
            user.avatar_url = identity.avatar_url
        if not db.is_modified(user):
            return user
    try:
        db.commit()
    except IntegrityError:
        # Another account already claims this email; keep the identity without it.
        db.rollback()
        user = db.get(User, identity.user_id) or User(id=identity.user_id)
        user.display_name = identity.display_name
        user.avatar_url = identity.avatar_url
        db.add(user)
        db.commit()
    return user


def authenticate_token(db: Session, token: str) -> User:
    """Verify a bearer token and return the matching local user.

    Raises:
        HTTPException: If the token is invalid.
    """
    try:
        identity = decode_access_token(token)
    except InvalidTokenError as err:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        ) from err
    return upsert_user(db, identity)


def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
    db: SessionDep,
) -> User:
    """Get the current authenticated user from the bearer token.

    Args:
        credentials: HTTP Bearer token credentials
        db: Database session

    Returns:
        User object for the authenticated user

    Raises:
        HTTPException: If the token is invalid
    """
    return authenticate_token(db, credentials.credentials)


# Type alias for current user dependency
CurrentUserDep = Annotated[User, Depends(get_current_user)]


def get_bus() -> MessageBus:
    """Return the process-wide message bus."""
    return get_message_bus()


BusDep = Annotated[MessageBus, Depends(get_bus)]


def get_conversation_store(bus: BusDep) -> ConversationStore:
    return ConversationStore(bus)


def get_read_tracker(bus: BusDep) -> ReadTracker:
    return ReadTracker(bus)


def get_notification_ledger(bus: BusDep) -> NotificationLedger:
    return NotificationLedger(bus)


def get_story_service(bus: BusDep) -> StoryService:
    return StoryService(bus)


StoreDep = Annotated[ConversationStore, Depends(get_conversation_store)]


def get_contact_service(store: StoreDep) -> ContactService:
    return ContactService(store)


def get_chat() -> ChatService:
    return get_chat_service()


def get_storage() -> ObjectStorage:
    return get_object_storage()


def get_generation() -> GenerationClient:
    return get_generation_client()


TrackerDep = Annotated[ReadTracker, Depends(get_read_tracker)]
LedgerDep = Annotated[NotificationLedger, Depends(get_notification_ledger)]
StoriesDep = Annotated[StoryService, Depends(get_story_service)]
ContactsDep = Annotated[ContactService, Depends(get_contact_service)]
ChatDep = Annotated[ChatService, Depends(get_chat)]
StorageDep = Annotated[ObjectStorage, Depends(get_storage)]
GenerationDep = Annotated[GenerationClient, Depends(get_generation)]


_STATUS_BY_ERROR: tuple[tuple[type[BavardError], int], ...] = (
    (OperationNotPermittedError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (PartialBatchError, status.HTTP_409_CONFLICT),
    (InvalidRequestError, status.HTTP_400_BAD_REQUEST),
    (TransientIOError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def raise_http_error(exc: BavardError, unsent: dict[str, Any] | None = None) -> NoReturn:
    """Translate a service error into an ``HTTPException``.

    ``unsent`` is echoed back on transient failures so the client can restore
    what it tried to send.
    """
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code = code
            break

    detail: Any = str(exc)
    if status_code == status.HTTP_503_SERVICE_UNAVAILABLE:
        logger.warning("Transient failure: %s", exc)
        if unsent is not None:
            detail = {"message": str(exc), "unsent": unsent}
    elif status_code == status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error("Unhandled service error: %s", exc, exc_info=True)
    raise HTTPException(status_code=status_code, detail=detail) from exc

