"""
Pydantic schemas for daily content (audio sessions) and listening streaks.

Audio sessions are produced by the script/TTS pipeline outside this
service and registered here so the scheduler can deliver them.  A
session without ``user_id`` belongs to the shared library.
"""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, Field


class AudioSessionCreate(BaseModel):
    title: str
    description: Optional[str] = None
    script: Optional[str] = None
    duration_seconds: int = Field(0, ge=0)
    category: Optional[str] = None
    audio_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    user_id: Optional[int] = None
    delivery_date: Optional[date] = None
    is_active: bool = True


class AudioSessionRead(BaseModel):
    id: int
    user_id: Optional[int] = None
    title: str
    description: Optional[str] = None
    duration_seconds: int
    category: Optional[str] = None
    audio_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    delivery_date: Optional[date] = None
    is_active: bool
    created_at: Optional[datetime] = None


class StreakRead(BaseModel):
    user_id: int
    current_streak: int = 0
    longest_streak: int = 0
    last_listen_date: Optional[date] = None
    milestone_reached: Optional[int] = None
