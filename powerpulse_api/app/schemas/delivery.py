"""
Pydantic schemas for delivery preferences, schedules, the delivery
queue and delivery logs.

Channel codes are shared by every layer: the preferences table stores
one ``<channel>_enabled`` flag per code, queue items store a JSON list
of codes and delivery logs record the code that was attempted.
"""

import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


CHANNELS = ("email", "whatsapp", "telegram", "sms", "push", "in_app")
MESSAGING_CHANNELS = ("whatsapp", "telegram", "sms")
NOTIFICATION_CHANNELS = ("push", "in_app")
# Channels that interrupt the user and therefore honour quiet hours.
INTERRUPTING_CHANNELS = ("push", "sms", "whatsapp", "telegram")

QUEUE_TYPES = ("daily_audio", "streak_milestone", "re_engagement", "welcome")
QUEUE_STATUSES = ("pending", "processing", "delivered", "failed")

HHMM_PATTERN = re.compile(r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$")


def normalize_channels(value: Any) -> List[str]:
    """Validate a channel list, dropping duplicates while keeping order.

    A comma-separated string is accepted in place of a list.  Raises
    ``ValueError`` for unknown codes or an empty result.
    """
    if isinstance(value, str):
        value = [item.strip() for item in value.split(",") if item.strip()]
    if not isinstance(value, (list, tuple)):
        raise ValueError("channels must be a list of strings")
    seen = set()
    channels: List[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ValueError("channels must be strings")
        code = item.strip().lower()
        if code not in CHANNELS:
            raise ValueError(f"Unsupported channel '{item}'. Allowed: {', '.join(CHANNELS)}")
        if code not in seen:
            seen.add(code)
            channels.append(code)
    if not channels:
        raise ValueError("at least one channel is required")
    return channels


def check_hhmm(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    if not HHMM_PATTERN.match(value):
        raise ValueError("time must be in HH:MM format")
    return value


class PreferencesRead(BaseModel):
    """Notification preferences of a user (defaults when none are stored)."""

    email_enabled: bool = True
    whatsapp_enabled: bool = False
    telegram_enabled: bool = False
    sms_enabled: bool = False
    push_enabled: bool = True
    in_app_enabled: bool = True
    telegram_chat_id: Optional[str] = None
    telegram_link_token: Optional[str] = None

    daily_audio_notifications: bool = True
    streak_reminders: bool = True
    milestone_notifications: bool = True
    new_content_alerts: bool = True
    social_notifications: bool = False

    quiet_hours_enabled: bool = False
    quiet_hours_start: str = "22:00"
    quiet_hours_end: str = "08:00"


class PreferencesUpdate(BaseModel):
    """Partial update of preferences; omitted or ``null`` fields are left unchanged.

    ``preferred_delivery_time`` and ``timezone`` are not preference
    columns: they update (or create) the user's active delivery schedule.
    """

    email_enabled: Optional[bool] = None
    whatsapp_enabled: Optional[bool] = None
    telegram_enabled: Optional[bool] = None
    sms_enabled: Optional[bool] = None
    push_enabled: Optional[bool] = None
    in_app_enabled: Optional[bool] = None
    telegram_chat_id: Optional[str] = None

    daily_audio_notifications: Optional[bool] = None
    streak_reminders: Optional[bool] = None
    milestone_notifications: Optional[bool] = None
    new_content_alerts: Optional[bool] = None
    social_notifications: Optional[bool] = None

    quiet_hours_enabled: Optional[bool] = None
    quiet_hours_start: Optional[str] = None
    quiet_hours_end: Optional[str] = None

    preferred_delivery_time: Optional[str] = Field(None, examples=["08:00"])
    timezone: Optional[str] = Field(None, examples=["Europe/Berlin"])

    @field_validator("quiet_hours_start", "quiet_hours_end", "preferred_delivery_time")
    @classmethod
    def validate_hhmm(cls, v: Optional[str]) -> Optional[str]:
        return check_hhmm(v)


class ScheduleRead(BaseModel):
    id: int
    user_id: int
    scheduled_time: str
    timezone: str
    is_active: bool
    paused_at: Optional[datetime] = None


class DeliveryPreferencesResponse(BaseModel):
    preferences: PreferencesRead
    schedule: Optional[ScheduleRead] = None


class QueueItemRead(BaseModel):
    """A row of the delivery queue."""

    id: int
    user_id: int
    type: str
    scheduled_for: datetime
    timezone: str
    delivery_date: Optional[str] = None
    channels: List[str]
    data: Dict[str, Any] = Field(default_factory=dict)
    attempts: int = 0
    max_attempts: int = 3
    status: str = "pending"
    delivery_results: Dict[str, bool] = Field(default_factory=dict)
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class DeliveryLogRead(BaseModel):
    id: int
    user_id: int
    channel: str
    type: str
    status: str
    provider_message_id: Optional[str] = None
    message: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime


class ChannelStats(BaseModel):
    total: int = 0
    successful: int = 0
    failed: int = 0


class DeliveryStats(BaseModel):
    total: int = 0
    successful: int = 0
    failed: int = 0
    pending: int = 0
    delivery_rate: float = 0.0
    by_channel: Dict[str, ChannelStats] = Field(default_factory=dict)


class DeliveryStatusResponse(BaseModel):
    logs: List[DeliveryLogRead]
    schedule: Optional[ScheduleRead] = None
    stats: DeliveryStats


class TestNotificationRequest(BaseModel):
    channel: str

    @field_validator("channel")
    @classmethod
    def validate_channel(cls, v: str) -> str:
        return normalize_channels([v])[0]


class ActionResult(BaseModel):
    success: bool
    message: Optional[str] = None
