"""
Push and in-app notifications.

Browser push goes to every subscription a user has registered; an
endpoint the push service reports as gone (404/410) is deleted on the
spot.  In-app notifications are rows in ``in_app_notifications`` that
the web app lists and marks as read.

Both channels honour the per-type switches of the user's preferences.
Push additionally respects quiet hours in the user's own timezone;
in-app notifications are silent and are always stored.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

from powerpulse_api.app.core.db import from_db_time, get_connection, to_db_time, utcnow
from powerpulse_api.app.schemas.delivery import PreferencesRead
from powerpulse_api.app.schemas.notification import (
    InAppNotificationRead,
    Notification,
    PushSubscriptionIn,
    PushSubscriptionStatus,
    PushSubscriptionSummary,
)
from powerpulse_api.app.services.delivery_log_service import DeliveryLogService
from powerpulse_api.app.services.preference_service import PreferenceService
from powerpulse_api.app.services.providers import DeliveryError, WebPushClient
from powerpulse_api.app.services.schedule_math import in_quiet_hours, local_now


logger = logging.getLogger(__name__)

_TYPE_PREFERENCE = {
    "daily_audio": "daily_audio_notifications",
    "streak_reminder": "streak_reminders",
    "milestone_achieved": "milestone_notifications",
    "new_content": "new_content_alerts",
    "social": "social_notifications",
}


def should_send(notification_type: str, prefs: PreferencesRead) -> bool:
    """True if the user accepts notifications of ``notification_type``."""
    if notification_type == "system":
        return True
    flag = _TYPE_PREFERENCE.get(notification_type)
    return bool(flag and getattr(prefs, flag))


def _row_to_in_app(row) -> InAppNotificationRead:
    return InAppNotificationRead(
        id=row["id"],
        user_id=row["user_id"],
        type=row["type"],
        title=row["title"],
        body=row["body"],
        icon=row["icon"],
        data=json.loads(row["data"]) if row["data"] else None,
        read=bool(row["read"]),
        created_at=from_db_time(row["created_at"]),
    )


class NotificationService:
    """Send push notifications and manage the in-app inbox."""

    push = WebPushClient()

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------
    @classmethod
    async def _subscriptions(cls, user_id: int) -> List[Dict[str, Any]]:
        conn = get_connection()
        try:
            rows = conn.execute(
                "SELECT id, endpoint, p256dh, auth FROM push_subscriptions WHERE user_id = ?",
                (user_id,),
            ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    @classmethod
    async def _delete_subscription(cls, subscription_id: int) -> None:
        conn = get_connection()
        try:
            conn.execute("DELETE FROM push_subscriptions WHERE id = ?", (subscription_id,))
            conn.commit()
        finally:
            conn.close()

    @classmethod
    async def _skip_reason(
        cls,
        user_id: int,
        notification: Notification,
        now: datetime,
    ) -> Optional[str]:
        prefs = await PreferenceService.get_preferences(user_id)
        if not prefs.push_enabled:
            return "push disabled"
        if not should_send(notification.type, prefs):
            return f"{notification.type} notifications disabled"
        if prefs.quiet_hours_enabled:
            tz_name = await PreferenceService.user_timezone(user_id)
            if in_quiet_hours(prefs.quiet_hours_start, prefs.quiet_hours_end, local_now(tz_name, now)):
                return "quiet hours"
        return None

    @classmethod
    async def send_push(
        cls,
        user_id: int,
        notification: Notification,
        now: Optional[datetime] = None,
        log_type: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Send ``notification`` to every push subscription of the user.

        Returns ``True`` if at least one subscription accepted it.
        """
        log_type = log_type or notification.type
        reason = await cls._skip_reason(user_id, notification, now or utcnow())
        subscriptions: List[Dict[str, Any]] = []
        if reason is None:
            subscriptions = await cls._subscriptions(user_id)
            if not subscriptions:
                reason = "no push subscriptions"
        if reason is not None:
            logger.info("Push to user %s skipped: %s", user_id, reason)
            await DeliveryLogService.log(
                user_id, "push", log_type, "failed", message=reason, metadata=metadata
            )
            return False

        payload = notification.push_payload()
        sent = 0
        errors: List[str] = []
        for sub in subscriptions:
            info = {"endpoint": sub["endpoint"], "keys": {"p256dh": sub["p256dh"], "auth": sub["auth"]}}
            try:
                await asyncio.to_thread(cls.push.send, info, payload)
                sent += 1
            except DeliveryError as exc:
                errors.append(str(exc))
                if exc.gone:
                    logger.info("Removing expired push subscription %s of user %s", sub["id"], user_id)
                    await cls._delete_subscription(sub["id"])
                else:
                    logger.error("Push to user %s failed: %s", user_id, exc)

        await DeliveryLogService.log(
            user_id,
            "push",
            log_type,
            "delivered" if sent else "failed",
            message=f"sent to {sent}/{len(subscriptions)} subscriptions" if sent else "; ".join(errors),
            metadata=metadata,
        )
        return sent > 0

    # ------------------------------------------------------------------
    # In-app
    # ------------------------------------------------------------------
    @classmethod
    async def create_in_app(cls, user_id: int, notification: Notification) -> int:
        conn = get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO in_app_notifications (user_id, type, title, body, icon, data)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    notification.type,
                    notification.title,
                    notification.body,
                    notification.icon,
                    json.dumps(notification.data) if notification.data is not None else None,
                ),
            )
            conn.commit()
            return cursor.lastrowid
        finally:
            conn.close()

    @classmethod
    async def _send_in_app(
        cls,
        user_id: int,
        notification: Notification,
        log_type: str,
        metadata: Optional[Dict[str, Any]],
    ) -> bool:
        prefs = await PreferenceService.get_preferences(user_id)
        if not prefs.in_app_enabled or not should_send(notification.type, prefs):
            await DeliveryLogService.log(
                user_id, "in_app", log_type, "failed",
                message="in-app notifications disabled", metadata=metadata,
            )
            return False
        notification_id = await cls.create_in_app(user_id, notification)
        await DeliveryLogService.log(
            user_id, "in_app", log_type, "delivered",
            provider_message_id=str(notification_id), metadata=metadata,
        )
        return True

    @classmethod
    async def send_notification(
        cls,
        user_id: int,
        notification: Notification,
        channels: Sequence[str] = ("push", "in_app"),
        now: Optional[datetime] = None,
        log_type: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, bool]:
        """Send on the requested notification channels.

        Returns a mapping with one boolean per requested channel
        (``push`` and/or ``in_app``).
        """
        log_type = log_type or notification.type
        results: Dict[str, bool] = {}
        if "push" in channels:
            results["push"] = await cls.send_push(user_id, notification, now, log_type, metadata)
        if "in_app" in channels:
            results["in_app"] = await cls._send_in_app(user_id, notification, log_type, metadata)
        return results

    @classmethod
    async def send_batch(cls, notifications: Sequence[Mapping[str, Any]]) -> List[Dict[str, bool]]:
        """Send many notifications; each entry has ``user_id``, ``notification`` and optional ``channels``."""
        results: List[Dict[str, bool]] = []
        for entry in notifications:
            channels = entry.get("channels") or ("push", "in_app")
            results.append(await cls.send_notification(entry["user_id"], entry["notification"], channels))
        return results

    @classmethod
    async def list_in_app(
        cls,
        user_id: int,
        unread_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> List[InAppNotificationRead]:
        sql = "SELECT * FROM in_app_notifications WHERE user_id = ?"
        if unread_only:
            sql += " AND read = 0"
        sql += " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
        conn = get_connection()
        try:
            rows = conn.execute(sql, (user_id, limit, offset)).fetchall()
            return [_row_to_in_app(row) for row in rows]
        finally:
            conn.close()

    @classmethod
    async def mark_read(cls, user_id: int, notification_id: int) -> None:
        conn = get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                "UPDATE in_app_notifications SET read = 1 WHERE id = ? AND user_id = ?",
                (notification_id, user_id),
            )
            conn.commit()
            if cursor.rowcount == 0:
                raise ValueError(f"Notification {notification_id} not found")
        finally:
            conn.close()

    @classmethod
    async def mark_all_read(cls, user_id: int) -> int:
        conn = get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                "UPDATE in_app_notifications SET read = 1 WHERE user_id = ? AND read = 0",
                (user_id,),
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    @classmethod
    async def unread_count(cls, user_id: int) -> int:
        conn = get_connection()
        try:
            row = conn.execute(
                "SELECT COUNT(*) AS c FROM in_app_notifications WHERE user_id = ? AND read = 0",
                (user_id,),
            ).fetchone()
            return row["c"]
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    @classmethod
    async def save_subscription(cls, user_id: int, subscription: PushSubscriptionIn) -> None:
        """Store a browser subscription, refreshing the keys of a known endpoint."""
        stamp = to_db_time(utcnow())
        conn = get_connection()
        try:
            conn.execute(
                """
                INSERT INTO push_subscriptions (user_id, endpoint, p256dh, auth)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, endpoint)
                DO UPDATE SET p256dh = excluded.p256dh, auth = excluded.auth, updated_at = ?
                """,
                (user_id, subscription.endpoint, subscription.keys.p256dh, subscription.keys.auth, stamp),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info("Push subscription saved for user %s", user_id)

    @classmethod
    async def remove_subscription(cls, user_id: int, endpoint: str) -> bool:
        conn = get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                "DELETE FROM push_subscriptions WHERE user_id = ? AND endpoint = ?",
                (user_id, endpoint),
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    @classmethod
    async def subscription_status(cls, user_id: int) -> PushSubscriptionStatus:
        conn = get_connection()
        try:
            rows = conn.execute(
                """
                SELECT id, endpoint, created_at FROM push_subscriptions
                WHERE user_id = ? ORDER BY id
                """,
                (user_id,),
            ).fetchall()
        finally:
            conn.close()
        subscriptions = [
            PushSubscriptionSummary(
                id=row["id"],
                endpoint=row["endpoint"],
                created_at=from_db_time(row["created_at"]),
            )
            for row in rows
        ]
        return PushSubscriptionStatus(
            has_subscriptions=bool(subscriptions),
            subscription_count=len(subscriptions),
            subscriptions=subscriptions,
        )
