# src/bavard/schemas/message.py
"""Message-related Pydantic schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

MessageKind = Literal["text", "image", "audio", "file"]
ViewOnceState = Literal["sent", "tap_to_reveal", "viewed"]


class MessagePayload(BaseModel):
    """Body of a message: either text or a reference to stored media."""

    kind: MessageKind = "text"
    text: str | None = None
    url: str | None = Field(None, description="Public URL of externally stored media")
    file_name: str | None = Field(None, description="Optional display filename")

    @model_validator(mode="after")
    def check_body(self) -> MessagePayload:
        if self.kind == "text":
            if not self.text or not self.text.strip():
                raise ValueError("Text messages require non-empty text")
        elif not self.url:
            raise ValueError(f"{self.kind} messages require a media url")
        return self


class MessageCreate(BaseModel):
    """Schema for sending a text message."""

    text: str = Field(..., min_length=1, max_length=10_000)
    view_once: bool = False
    # Advisory only; the store assigns the authoritative timestamp.
    client_timestamp: datetime | None = None


class MediaMessageCreate(BaseModel):
    """Schema for sending a media message uploaded as a data URI."""

    kind: Literal["image", "audio", "file"]
    data_uri: str = Field(..., description="data:<mime>;base64,<payload>")
    file_name: str = Field(..., min_length=1, max_length=255)
    view_once: bool = False


class MessageRead(BaseModel):
    """Committed message as stored, including content."""

    id: int
    conversation_id: str
    sender_id: str
    created_at: datetime
    kind: MessageKind
    text: str | None = None
    url: str | None = None
    file_name: str | None = None
    view_once: bool = False
    viewed_by: list[str] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class MessageView(BaseModel):
    """A message as rendered for one viewer; view-once content is always redacted."""

    id: int
    conversation_id: str
    sender_id: str
    created_at: datetime
    kind: MessageKind
    text: str | None = None
    url: str | None = None
    file_name: str | None = None
    view_once: bool = False
    view_once_state: ViewOnceState | None = None


class ViewOnceReveal(BaseModel):
    """Outcome of an attempt to open a view-once message."""

    state: Literal["sent", "revealed", "viewed"]
    message: MessageRead | None = None


class WatermarkUpdate(BaseModel):
    """Request to advance the caller's read watermark."""

    timestamp: datetime | None = Field(
        None,
        description="Read-up-to time; defaults to the newest message in the conversation",
    )


class PurgeResult(BaseModel):
    """Result of a bounded clear-chat call."""

    deleted: int
    batch_size: int
    complete: bool


class ReadState(BaseModel):
    """The caller's read position in one conversation."""

    conversation_id: str
    last_read: datetime | None = None
    unread: int = 0
    advanced: bool = False
