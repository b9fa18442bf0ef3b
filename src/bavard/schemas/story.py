# src/bavard/schemas/story.py
"""Story schemas."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class StoryCreate(BaseModel):
    """Schema for publishing a story from an uploaded data URI."""

    data_uri: str = Field(..., description="data:<mime>;base64,<payload>")
    file_name: str = Field(..., min_length=1, max_length=255)
    media_type: Literal["image", "video"] = "image"


class StoryRead(BaseModel):
    """Story information returned by the API."""

    id: int
    author_id: str
    media_url: str
    media_type: str
    created_at: datetime
    expires_at: datetime

    model_config = ConfigDict(from_attributes=True)
