# src/bavard/api/v1/endpoints/stories.py
"""Story endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Query, status

from bavard.core.constants import RESERVED_USER_IDS
from bavard.core.errors import BavardError
from bavard.schemas.story import StoryCreate, StoryRead
from bavard.services.storage import store_data_uri

from ..dependencies import (
    ContactsDep,
    CurrentUserDep,
    SessionDep,
    StorageDep,
    StoriesDep,
    raise_http_error,
)

router = APIRouter(prefix="/stories", tags=["stories"])


@router.post("", response_model=StoryRead, status_code=status.HTTP_201_CREATED)
async def publish_story(
    story_data: StoryCreate,
    current_user: CurrentUserDep,
    db: SessionDep,
    stories: StoriesDep,
    storage: StorageDep,
) -> StoryRead:
    """Upload media and publish it as a story visible for 24 hours."""
    try:
        stored = await store_data_uri(storage, story_data.data_uri, story_data.file_name)
        story = stories.publish(db, current_user.id, stored.url, story_data.media_type)
    except BavardError as exc:
        raise_http_error(exc)
    return StoryRead.model_validate(story)


@router.get("", response_model=list[StoryRead])
async def list_active_stories(
    current_user: CurrentUserDep,
    db: SessionDep,
    stories: StoriesDep,
    contacts: ContactsDep,
    author_id: str | None = Query(None, description="Restrict to one author"),
) -> list[StoryRead]:
    """List unexpired stories of the caller and their contacts, newest first."""
    authors = {current_user.id}
    authors.update(
        cid for cid in contacts.contact_ids(db, current_user.id) if cid not in RESERVED_USER_IDS
    )
    if author_id is not None:
        authors &= {author_id}
    return [StoryRead.model_validate(story) for story in stories.list_active(db, authors)]
