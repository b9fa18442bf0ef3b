# src/bavard/api/v1/__init__.py
"""Version 1 API endpoints."""

from .endpoints import (
    contacts_router,
    conversations_router,
    feed_router,
    live_router,
    media_router,
    messages_router,
    notifications_router,
    stories_router,
)

__all__ = [
    "contacts_router",
    "conversations_router",
    "feed_router",
    "live_router",
    "media_router",
    "messages_router",
    "notifications_router",
    "stories_router",
]
