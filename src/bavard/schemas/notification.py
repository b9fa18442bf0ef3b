# src/bavard/schemas/notification.py
"""Notification schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class NotificationRead(BaseModel):
    """Notification information returned by the API."""

    id: int
    kind: str
    sender_id: str
    sender_name: str | None
    conversation_id: str
    created_at: datetime
    read: bool

    model_config = ConfigDict(from_attributes=True)


class NotificationMarkRead(BaseModel):
    """Ids of notifications to mark as read."""

    ids: list[int] = Field(..., min_length=1, max_length=500)
