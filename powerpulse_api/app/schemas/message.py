"""
Pydantic schemas for messenger content (WhatsApp, Telegram, SMS).
"""

from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class MessageButton(BaseModel):
    text: str
    url: str


class MessageContent(BaseModel):
    """Channel-neutral message; ``MessageFormatter`` renders it per platform."""

    user_id: int
    type: Literal["daily_audio", "reminder", "milestone", "custom"] = "custom"
    title: str
    body: str
    media_url: Optional[str] = None
    buttons: List[MessageButton] = Field(default_factory=list)
