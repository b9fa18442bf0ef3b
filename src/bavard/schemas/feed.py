# src/bavard/schemas/feed.py
"""Feed ranking schemas."""

from datetime import datetime

from pydantic import BaseModel, Field


class FeedPost(BaseModel):
    """A post candidate for the ranked feed."""

    id: str
    title: str
    description: str | None = None
    user_id: str
    likes: list[str] = Field(default_factory=list)
    created_at: datetime


class FeedRankRequest(BaseModel):
    """Posts to rank for the current user."""

    posts: list[FeedPost] = Field(default_factory=list, max_length=500)


class FeedRankResponse(BaseModel):
    """Ranked post ids, and whether the deterministic fallback was used."""

    ranked_post_ids: list[str]
    fallback: bool = False
