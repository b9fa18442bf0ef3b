# src/bavard/schemas/contact.py
"""Contact schemas."""

from datetime import datetime

from pydantic import BaseModel, Field, model_validator


class ContactCreate(BaseModel):
    """Identify a user to add, by id or by email."""

    user_id: str | None = Field(None, max_length=128)
    email: str | None = Field(None, max_length=320)

    @model_validator(mode="after")
    def check_lookup(self) -> "ContactCreate":
        if not (self.user_id or self.email):
            raise ValueError("Provide a user_id or an email")
        return self


class ContactResponse(BaseModel):
    """A contact as listed for the current user."""

    id: str
    display_name: str | None = None
    avatar_url: str | None = None
    conversation_id: str
    unread: int = 0
    added_at: datetime | None = None
    is_assistant: bool = False
