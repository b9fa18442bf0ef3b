# src/bavard/api/v1/endpoints/media.py
"""Serves media held by the in-memory storage backend."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Response, status

from bavard.core.errors import NotFoundError
from bavard.services.storage import InMemoryObjectStorage

from ..dependencies import StorageDep

router = APIRouter(prefix="/media", tags=["media"])


@router.get("/{address}")
async def get_media(address: str, storage: StorageDep) -> Response:
    """Return stored bytes by content address."""
    if not isinstance(storage, InMemoryObjectStorage):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Media is served by the storage gateway",
        )
    try:
        content, mime_type = storage.load(address)
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return Response(
        content=content,
        media_type=mime_type,
        headers={"Cache-Control": "public, max-age=31536000, immutable"},
    )
