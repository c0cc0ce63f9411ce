"""
Service layer for user management.

Registration stores the user, writes default notification preferences
and an active delivery schedule, and queues a welcome email.  The first
user ever registered becomes an administrator; everybody else gets the
regular user role.  Deleting an account is a soft delete: the row stays
(delivery logs reference it) but the user no longer receives anything.
"""

import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional

from powerpulse_api.app.core.config import settings
from powerpulse_api.app.core.db import from_db_time, get_connection, to_db_time, utcnow
from powerpulse_api.app.core.security import ADMIN_ROLE, USER_ROLE, hash_password, verify_password
from powerpulse_api.app.schemas.user import UserCreate, UserRead
from powerpulse_api.app.services.preference_service import PreferenceService
from powerpulse_api.app.services.queue_service import QueueService
from powerpulse_api.app.services.schedule_math import is_valid_timezone


def _row_to_user(row: sqlite3.Row) -> UserRead:
    return UserRead(
        id=row["id"],
        email=row["email"],
        name=row["name"],
        phone_number=row["phone_number"],
        role_id=row["role_id"],
        subscription_status=row["subscription_status"],
        last_active_at=from_db_time(row["last_active_at"]),
        created_at=from_db_time(row["created_at"]),
    )


class UserService:
    """Service for registering, authenticating and managing users."""

    @classmethod
    async def create_user(cls, data: UserCreate) -> UserRead:
        """Register a user and set up their delivery defaults.

        Raises
        ------
        ValueError
            If the email is already registered or the timezone is unknown.
        """
        logger = logging.getLogger(__name__)
        tz_name = data.timezone or settings.default_timezone
        if not is_valid_timezone(tz_name):
            raise ValueError(f"Unknown timezone '{tz_name}'")
        conn = get_connection()
        try:
            cursor = conn.cursor()
            if cursor.execute("SELECT id FROM users WHERE email = ?", (data.email,)).fetchone():
                raise ValueError("User with this email already exists")
            user_count = cursor.execute("SELECT COUNT(*) AS c FROM users").fetchone()["c"]
            role_id = ADMIN_ROLE if user_count == 0 else USER_ROLE
            cursor.execute(
                """
                INSERT INTO users (email, name, phone_number, password, role_id, last_active_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    data.email,
                    data.name,
                    data.phone_number,
                    hash_password(data.password),
                    role_id,
                    to_db_time(utcnow()),
                ),
            )
            user_id = cursor.lastrowid
            conn.commit()
        finally:
            conn.close()

        await PreferenceService.create_defaults(user_id)
        await PreferenceService.upsert_schedule(
            user_id,
            scheduled_time=data.preferred_delivery_time or settings.default_delivery_time,
            tz_name=tz_name,
        )
        await QueueService.enqueue(
            user_id,
            "welcome",
            ["email"],
            scheduled_for=utcnow(),
            timezone=tz_name,
        )
        logger.info("User %s registered (role %s)", data.email, role_id)
        return await cls.get_user(user_id)

    @classmethod
    async def authenticate(cls, email: str, password: str) -> Optional[UserRead]:
        conn = get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM users WHERE email = ? AND deleted_at IS NULL",
                (email,),
            ).fetchone()
        finally:
            conn.close()
        if not row or not row["password"] or not verify_password(password, row["password"]):
            return None
        return _row_to_user(row)

    @classmethod
    async def get_user(cls, user_id: int) -> UserRead:
        conn = get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM users WHERE id = ? AND deleted_at IS NULL",
                (user_id,),
            ).fetchone()
        finally:
            conn.close()
        if not row:
            raise ValueError(f"User {user_id} not found")
        return _row_to_user(row)

    @classmethod
    async def touch_activity(cls, user_id: int, when: Optional[datetime] = None) -> None:
        conn = get_connection()
        try:
            stamp = to_db_time(when or utcnow())
            conn.execute(
                "UPDATE users SET last_active_at = ?, updated_at = ? WHERE id = ?",
                (stamp, stamp, user_id),
            )
            conn.commit()
        finally:
            conn.close()

    @classmethod
    async def soft_delete(cls, user_id: int) -> None:
        """Mark the user deleted and deactivate their schedules."""
        logger = logging.getLogger(__name__)
        stamp = to_db_time(utcnow())
        conn = get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                "UPDATE users SET deleted_at = ?, updated_at = ? WHERE id = ? AND deleted_at IS NULL",
                (stamp, stamp, user_id),
            )
            if cursor.rowcount == 0:
                raise ValueError(f"User {user_id} not found")
            cursor.execute(
                "UPDATE delivery_schedules SET is_active = 0, updated_at = ? WHERE user_id = ?",
                (stamp, user_id),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info("User %s deleted", user_id)

    @classmethod
    async def inactive_users(cls, before: datetime) -> List[Dict[str, Any]]:
        """Users (not deleted) whose last activity is older than ``before``."""
        conn = get_connection()
        try:
            rows = conn.execute(
                """
                SELECT id, last_active_at FROM users
                WHERE deleted_at IS NULL AND last_active_at IS NOT NULL AND last_active_at < ?
                ORDER BY id
                """,
                (to_db_time(before),),
            ).fetchall()
            return [
                {"id": row["id"], "last_active_at": from_db_time(row["last_active_at"])}
                for row in rows
            ]
        finally:
            conn.close()
