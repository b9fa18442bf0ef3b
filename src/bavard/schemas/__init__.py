# src/bavard/schemas/__init__.py
"""
Pydantic schemas for API request/response models.

These schemas define the structure of API data for serialization and validation.
"""

from .contact import ContactCreate, ContactResponse
from .feed import FeedPost, FeedRankRequest, FeedRankResponse
from .live import HubEvent
from .message import (
    MediaMessageCreate,
    MessageCreate,
    MessagePayload,
    MessageRead,
    MessageView,
    PurgeResult,
    ReadState,
    ViewOnceReveal,
    WatermarkUpdate,
)
from .notification import NotificationMarkRead, NotificationRead
from .story import StoryCreate, StoryRead

__all__ = [
    "ContactCreate", "ContactResponse",
    "FeedPost", "FeedRankRequest", "FeedRankResponse",
    "HubEvent",
    "MediaMessageCreate", "MessageCreate", "MessagePayload", "MessageRead",
    "MessageView", "PurgeResult", "ReadState", "ViewOnceReveal", "WatermarkUpdate",
    "NotificationMarkRead", "NotificationRead",
    "StoryCreate", "StoryRead",
]
