# src/bavard/api/v1/endpoints/__init__.py
"""API endpoint modules for version 1."""

from .contacts import router as contacts_router
from .conversations import router as conversations_router
from .feed import router as feed_router
from .live import router as live_router
from .media import router as media_router
from .messages import router as messages_router
from .notifications import router as notifications_router
from .stories import router as stories_router

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
