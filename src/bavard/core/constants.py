# src/bavard/core/constants.py
"""Reserved identities and fixed product values."""

from typing import Final

# Reserved UID for the assistant peer. Present in every contact list without an edge.
ASSISTANT_USER_ID: Final[str] = "jusu_ai_assistant"
ASSISTANT_DISPLAY_NAME: Final[str] = "JUSU AI"

# Reserved UID for official BAVARD communications. Can send, never receives.
SYSTEM_BROADCAST_USER_ID: Final[str] = "bavard_system_user"
SYSTEM_BROADCAST_DISPLAY_NAME: Final[str] = "BAVARD"

RESERVED_USER_IDS: Final[frozenset[str]] = frozenset(
    {ASSISTANT_USER_ID, SYSTEM_BROADCAST_USER_ID}
)

ASSISTANT_APOLOGY: Final[str] = (
    "I seem to be experiencing a technical difficulty. Please try again later."
)

NOTIFICATION_KIND_NEW_MESSAGE: Final[str] = "new_message"

MESSAGE_KINDS: Final[tuple[str, ...]] = ("text", "image", "audio", "file")
