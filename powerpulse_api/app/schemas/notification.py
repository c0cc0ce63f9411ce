"""
Pydantic schemas for web push subscriptions and in-app notifications.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


NotificationType = Literal[
    "daily_audio",
    "streak_reminder",
    "milestone_achieved",
    "new_content",
    "system",
    "social",
]


class NotificationAction(BaseModel):
    action: str
    title: str
    icon: Optional[str] = None


class Notification(BaseModel):
    """A notification rendered to push and/or the in-app inbox."""

    type: NotificationType
    title: str
    body: str
    icon: Optional[str] = None
    badge: Optional[str] = None
    image: Optional[str] = None
    actions: Optional[List[NotificationAction]] = None
    data: Optional[Dict[str, Any]] = None
    require_interaction: bool = False
    silent: bool = False
    tag: Optional[str] = None

    def push_payload(self) -> Dict[str, Any]:
        """Payload delivered to the service worker (camelCase keys)."""
        return {
            "title": self.title,
            "body": self.body,
            "icon": self.icon or "/icon-192x192.png",
            "badge": self.badge or "/badge-72x72.png",
            "image": self.image,
            "actions": [a.model_dump() for a in self.actions] if self.actions else None,
            "data": self.data,
            "requireInteraction": self.require_interaction,
            "silent": self.silent,
            "tag": self.tag,
        }


class PushSubscriptionKeys(BaseModel):
    p256dh: str
    auth: str


class PushSubscriptionIn(BaseModel):
    """Subscription object as produced by ``PushManager.subscribe()``."""

    endpoint: str = Field(..., pattern=r"^https?://")
    keys: PushSubscriptionKeys
    expiration_time: Optional[int] = Field(None, alias="expirationTime")

    model_config = {"populate_by_name": True}


class PushUnsubscribe(BaseModel):
    endpoint: str


class PushSubscriptionSummary(BaseModel):
    id: int
    endpoint: str
    created_at: datetime


class PushSubscriptionStatus(BaseModel):
    has_subscriptions: bool
    subscription_count: int
    subscriptions: List[PushSubscriptionSummary]


class InAppNotificationRead(BaseModel):
    id: int
    user_id: int
    type: str
    title: str
    body: str
    icon: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    read: bool
    created_at: datetime


class UnreadCount(BaseModel):
    unread: int
