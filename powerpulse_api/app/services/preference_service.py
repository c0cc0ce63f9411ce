"""
Service for notification preferences and delivery schedules.

Preferences hold one ``<channel>_enabled`` flag per delivery channel,
per-type switches (daily audio, streak reminders, milestones, ...) and
the quiet hours window.  A user without a stored row gets the defaults
from :class:`PreferencesRead`.

The delivery schedule is the wall-clock time (``HH:MM``) and IANA
timezone at which the daily audio goes out.  Only one schedule per user
is active; pausing deactivates it and switches off the interrupting
channels, resuming brings both back.
"""

import logging
import secrets
from typing import Any, Dict, List, Optional

from powerpulse_api.app.core.config import settings
from powerpulse_api.app.core.db import from_db_time, get_connection, to_db_time, utcnow
from powerpulse_api.app.schemas.delivery import (
    CHANNELS,
    DeliveryPreferencesResponse,
    PreferencesRead,
    PreferencesUpdate,
    ScheduleRead,
)
from powerpulse_api.app.services.delivery_log_service import DeliveryLogService
from powerpulse_api.app.services.schedule_math import is_valid_timezone


_BOOL_FIELDS = (
    "email_enabled",
    "whatsapp_enabled",
    "telegram_enabled",
    "sms_enabled",
    "push_enabled",
    "in_app_enabled",
    "daily_audio_notifications",
    "streak_reminders",
    "milestone_notifications",
    "new_content_alerts",
    "social_notifications",
    "quiet_hours_enabled",
)
_TEXT_FIELDS = ("telegram_chat_id", "quiet_hours_start", "quiet_hours_end")

_PAUSED_CHANNELS = ("email", "whatsapp", "telegram", "sms", "push")
_RESUMED_CHANNELS = ("email", "push")


def _row_to_preferences(row) -> PreferencesRead:
    values: Dict[str, Any] = {name: bool(row[name]) for name in _BOOL_FIELDS}
    for name in _TEXT_FIELDS + ("telegram_link_token",):
        values[name] = row[name]
    return PreferencesRead(**values)


def _row_to_schedule(row) -> ScheduleRead:
    return ScheduleRead(
        id=row["id"],
        user_id=row["user_id"],
        scheduled_time=row["scheduled_time"],
        timezone=row["timezone"],
        is_active=bool(row["is_active"]),
        paused_at=from_db_time(row["paused_at"]),
    )


def _validate_timezone(tz_name: str) -> None:
    if not is_valid_timezone(tz_name):
        raise ValueError(f"Unknown timezone '{tz_name}'")


class PreferenceService:
    """Read and change notification preferences and delivery schedules."""

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------
    @classmethod
    async def create_defaults(cls, user_id: int) -> PreferencesRead:
        """Store the default preferences for a new user (no-op if present)."""
        conn = get_connection()
        try:
            conn.execute(
                """
                INSERT OR IGNORE INTO notification_preferences (user_id, telegram_link_token)
                VALUES (?, ?)
                """,
                (user_id, secrets.token_urlsafe(16)),
            )
            conn.commit()
        finally:
            conn.close()
        return await cls.get_preferences(user_id)

    @classmethod
    async def get_preferences(cls, user_id: int) -> PreferencesRead:
        conn = get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM notification_preferences WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        finally:
            conn.close()
        return _row_to_preferences(row) if row else PreferencesRead()

    @classmethod
    async def has_preferences(cls, user_id: int) -> bool:
        conn = get_connection()
        try:
            row = conn.execute(
                "SELECT 1 FROM notification_preferences WHERE user_id = ?",
                (user_id,),
            ).fetchone()
            return row is not None
        finally:
            conn.close()

    @classmethod
    async def update_preferences(cls, user_id: int, update: PreferencesUpdate) -> DeliveryPreferencesResponse:
        """Upsert the fields present in ``update``; ``null`` leaves a field as is.

        ``preferred_delivery_time`` and ``timezone`` are applied to the
        active schedule, which is created when missing.

        Raises
        ------
        ValueError
            If ``timezone`` is not a known IANA zone name.
        """
        logger = logging.getLogger(__name__)
        changes = update.model_dump(exclude_unset=True, exclude_none=True)
        tz_name = changes.pop("timezone", None)
        delivery_time = changes.pop("preferred_delivery_time", None)
        if tz_name is not None:
            _validate_timezone(tz_name)

        await cls.create_defaults(user_id)
        columns = [name for name in changes if name in _BOOL_FIELDS or name in _TEXT_FIELDS]
        if columns:
            values: List[Any] = [
                int(changes[name]) if name in _BOOL_FIELDS else changes[name] for name in columns
            ]
            assignments = ", ".join(f"{name} = ?" for name in columns)
            conn = get_connection()
            try:
                conn.execute(
                    f"UPDATE notification_preferences SET {assignments}, updated_at = ? WHERE user_id = ?",
                    (*values, to_db_time(utcnow()), user_id),
                )
                conn.commit()
            finally:
                conn.close()
            logger.info("Preferences of user %s updated: %s", user_id, ", ".join(columns))

        if tz_name is not None or delivery_time is not None:
            await cls.upsert_schedule(user_id, scheduled_time=delivery_time, tz_name=tz_name)

        return DeliveryPreferencesResponse(
            preferences=await cls.get_preferences(user_id),
            schedule=await cls.get_schedule(user_id),
        )

    @classmethod
    async def set_channel_enabled(cls, user_id: int, channel: str, enabled: bool) -> None:
        if channel not in CHANNELS:
            raise ValueError(f"Unsupported channel '{channel}'")
        await cls.create_defaults(user_id)
        conn = get_connection()
        try:
            conn.execute(
                f"UPDATE notification_preferences SET {channel}_enabled = ?, updated_at = ? WHERE user_id = ?",
                (int(enabled), to_db_time(utcnow()), user_id),
            )
            conn.commit()
        finally:
            conn.close()

    @classmethod
    async def link_telegram(cls, token: str, chat_id: str) -> Optional[int]:
        """Attach ``chat_id`` to the user owning ``token`` and enable Telegram.

        The token is single use: it is rotated once the chat is linked.
        Returns the user id, or ``None`` for an unknown token.
        """
        conn = get_connection()
        try:
            row = conn.execute(
                "SELECT user_id FROM notification_preferences WHERE telegram_link_token = ?",
                (token,),
            ).fetchone()
            if not row:
                return None
            conn.execute(
                """
                UPDATE notification_preferences
                SET telegram_chat_id = ?, telegram_enabled = 1,
                    telegram_link_token = ?, updated_at = ?
                WHERE user_id = ?
                """,
                (chat_id, secrets.token_urlsafe(16), to_db_time(utcnow()), row["user_id"]),
            )
            conn.commit()
            return row["user_id"]
        finally:
            conn.close()

    @classmethod
    async def find_user_by_chat_id(cls, chat_id: str) -> Optional[int]:
        conn = get_connection()
        try:
            row = conn.execute(
                "SELECT user_id FROM notification_preferences WHERE telegram_chat_id = ?",
                (chat_id,),
            ).fetchone()
            return row["user_id"] if row else None
        finally:
            conn.close()

    @staticmethod
    def enabled_channels(prefs: PreferencesRead) -> List[str]:
        """Enabled channels in the fixed order of ``CHANNELS``."""
        return [channel for channel in CHANNELS if getattr(prefs, f"{channel}_enabled")]

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------
    @classmethod
    async def get_schedule(cls, user_id: int) -> Optional[ScheduleRead]:
        """Return the user's active schedule, or ``None``."""
        conn = get_connection()
        try:
            row = conn.execute(
                """
                SELECT * FROM delivery_schedules
                WHERE user_id = ? AND is_active = 1
                ORDER BY id DESC LIMIT 1
                """,
                (user_id,),
            ).fetchone()
            return _row_to_schedule(row) if row else None
        finally:
            conn.close()

    @classmethod
    async def upsert_schedule(
        cls,
        user_id: int,
        scheduled_time: Optional[str] = None,
        tz_name: Optional[str] = None,
    ) -> ScheduleRead:
        """Update the active schedule or create one from the defaults."""
        if tz_name is not None:
            _validate_timezone(tz_name)
        stamp = to_db_time(utcnow())
        current = await cls.get_schedule(user_id)
        conn = get_connection()
        try:
            if current:
                conn.execute(
                    """
                    UPDATE delivery_schedules
                    SET scheduled_time = ?, timezone = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        scheduled_time or current.scheduled_time,
                        tz_name or current.timezone,
                        stamp,
                        current.id,
                    ),
                )
            else:
                conn.execute(
                    """
                    INSERT INTO delivery_schedules (user_id, scheduled_time, timezone, is_active)
                    VALUES (?, ?, ?, 1)
                    """,
                    (
                        user_id,
                        scheduled_time or settings.default_delivery_time,
                        tz_name or settings.default_timezone,
                    ),
                )
            conn.commit()
        finally:
            conn.close()
        return await cls.get_schedule(user_id)

    @classmethod
    async def user_timezone(cls, user_id: int) -> str:
        """Timezone of the active schedule, falling back to the default zone."""
        schedule = await cls.get_schedule(user_id)
        return schedule.timezone if schedule else settings.default_timezone

    @classmethod
    async def active_schedules(cls) -> List[Dict[str, Any]]:
        """Active schedules of users that are not deleted.

        Each entry carries the schedule fields plus the user's
        ``subscription_status`` so callers can filter on billing state.
        """
        conn = get_connection()
        try:
            rows = conn.execute(
                """
                SELECT s.id, s.user_id, s.scheduled_time, s.timezone, u.subscription_status
                FROM delivery_schedules s
                JOIN users u ON u.id = s.user_id
                WHERE s.is_active = 1 AND u.deleted_at IS NULL
                ORDER BY s.id
                """
            ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Pause / resume
    # ------------------------------------------------------------------
    @classmethod
    async def pause(cls, user_id: int) -> None:
        """Stop daily deliveries and switch off every outbound channel but in-app."""
        logger = logging.getLogger(__name__)
        stamp = to_db_time(utcnow())
        await cls.create_defaults(user_id)
        assignments = ", ".join(f"{channel}_enabled = 0" for channel in _PAUSED_CHANNELS)
        conn = get_connection()
        try:
            conn.execute(
                """
                UPDATE delivery_schedules
                SET is_active = 0, paused_at = ?, updated_at = ?
                WHERE user_id = ? AND is_active = 1
                """,
                (stamp, stamp, user_id),
            )
            conn.execute(
                f"UPDATE notification_preferences SET {assignments}, updated_at = ? WHERE user_id = ?",
                (stamp, user_id),
            )
            conn.commit()
        finally:
            conn.close()
        await DeliveryLogService.log(user_id, "system", "system", "paused", message="Deliveries paused")
        logger.info("Deliveries paused for user %s", user_id)

    @classmethod
    async def resume(cls, user_id: int) -> ScheduleRead:
        """Reactivate the latest paused schedule (or create one) and re-enable email and push."""
        logger = logging.getLogger(__name__)
        stamp = to_db_time(utcnow())
        await cls.create_defaults(user_id)
        conn = get_connection()
        try:
            active = conn.execute(
                "SELECT id FROM delivery_schedules WHERE user_id = ? AND is_active = 1",
                (user_id,),
            ).fetchone()
            if not active:
                paused = conn.execute(
                    """
                    SELECT id FROM delivery_schedules
                    WHERE user_id = ? AND paused_at IS NOT NULL
                    ORDER BY paused_at DESC, id DESC LIMIT 1
                    """,
                    (user_id,),
                ).fetchone()
                if paused:
                    conn.execute(
                        """
                        UPDATE delivery_schedules
                        SET is_active = 1, paused_at = NULL, updated_at = ?
                        WHERE id = ?
                        """,
                        (stamp, paused["id"]),
                    )
            assignments = ", ".join(f"{channel}_enabled = 1" for channel in _RESUMED_CHANNELS)
            conn.execute(
                f"UPDATE notification_preferences SET {assignments}, updated_at = ? WHERE user_id = ?",
                (stamp, user_id),
            )
            conn.commit()
        finally:
            conn.close()
        schedule = await cls.get_schedule(user_id) or await cls.upsert_schedule(user_id)
        await DeliveryLogService.log(user_id, "system", "system", "resumed", message="Deliveries resumed")
        logger.info("Deliveries resumed for user %s", user_id)
        return schedule
