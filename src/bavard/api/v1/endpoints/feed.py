# src/bavard/api/v1/endpoints/feed.py
"""Ranked "for you" feed endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from bavard.core.constants import RESERVED_USER_IDS
from bavard.schemas.feed import FeedRankRequest, FeedRankResponse
from bavard.services.generation import rank_posts

from ..dependencies import ContactsDep, CurrentUserDep, GenerationDep, SessionDep

router = APIRouter(prefix="/feed", tags=["feed"])


@router.post("/rank", response_model=FeedRankResponse)
async def rank_feed(
    request: FeedRankRequest,
    current_user: CurrentUserDep,
    db: SessionDep,
    contacts: ContactsDep,
    generation: GenerationDep,
) -> FeedRankResponse:
    """Order candidate posts for the caller, falling back to newest first."""
    contact_ids = [
        cid for cid in contacts.contact_ids(db, current_user.id) if cid not in RESERVED_USER_IDS
    ]
    ranked, fallback = await rank_posts(generation, current_user.id, request.posts, contact_ids)
    return FeedRankResponse(ranked_post_ids=ranked, fallback=fallback)
