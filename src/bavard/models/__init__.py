# src/bavard/models/__init__.py
"""SQLAlchemy models for the BAVARD service."""

from .contact import ContactEdge
from .conversation import Conversation, Message, MessageViewer, ReadWatermark
from .notification import Notification
from .story import Story
from .user import User

__all__ = [
    "ContactEdge",
    "Conversation", "Message", "MessageViewer", "ReadWatermark",
    "Notification",
    "Story",
    "User",
]
