# src/bavard/schemas/live.py
"""Events pushed to live clients."""

from typing import Any

from pydantic import BaseModel, Field


class HubEvent(BaseModel):
    """One push event on a client's live connection.

    ``type`` is one of ``selected``, ``message``, ``typing``, ``cleared``,
    ``unread``, ``notification``, ``alert``, ``story`` or ``contacts``.
    """

    type: str
    data: dict[str, Any] = Field(default_factory=dict)
