# src/bavard/services/__init__.py
"""Business logic services for the BAVARD application."""

from .chat import ChatService
from .contacts import ContactService
from .conversation_store import ConversationStore
from .ephemeral import StoryReaper, StoryService
from .fanout import ClientSession, Subscription, SubscriptionState
from .generation import GenerationClient
from .message_bus import MessageBus
from .notification_ledger import NotificationLedger
from .read_tracking import ReadTracker
from .story_viewer import StoryViewer

__all__ = [
    "ChatService",
    "ClientSession",
    "ContactService",
    "ConversationStore",
    "GenerationClient",
    "MessageBus",
    "NotificationLedger",
    "ReadTracker",
    "StoryReaper",
    "StoryService",
    "StoryViewer",
    "Subscription",
    "SubscriptionState",
]
