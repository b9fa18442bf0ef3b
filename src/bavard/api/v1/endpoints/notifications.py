# src/bavard/api/v1/endpoints/notifications.py
"""Notification inbox endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Query

from bavard.core.errors import BavardError
from bavard.schemas.notification import NotificationMarkRead, NotificationRead

from ..dependencies import CurrentUserDep, LedgerDep, SessionDep, raise_http_error

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=list[NotificationRead])
async def list_notifications(
    current_user: CurrentUserDep,
    db: SessionDep,
    ledger: LedgerDep,
    limit: int = Query(50, ge=1, le=200),
    unread_only: bool = Query(False),
) -> list[NotificationRead]:
    """List the caller's notifications, newest first."""
    if unread_only:
        rows = list(reversed(ledger.list_unread(db, current_user.id)))[:limit]
    else:
        rows = ledger.list_recent(db, current_user.id, limit)
    return [NotificationRead.model_validate(row) for row in rows]


@router.post("/read")
async def mark_notifications_read(
    body: NotificationMarkRead,
    current_user: CurrentUserDep,
    db: SessionDep,
    ledger: LedgerDep,
) -> dict[str, int]:
    """Mark notifications as read. Ids belonging to other users are ignored."""
    try:
        updated = ledger.mark_read(db, current_user.id, body.ids)
    except BavardError as exc:
        raise_http_error(exc)
    return {"updated": updated}


@router.delete("")
async def clear_notifications(
    current_user: CurrentUserDep,
    db: SessionDep,
    ledger: LedgerDep,
) -> dict[str, int]:
    """Delete every notification in the caller's inbox."""
    try:
        deleted = ledger.clear(db, current_user.id)
    except BavardError as exc:
        raise_http_error(exc)
    return {"deleted": deleted}
