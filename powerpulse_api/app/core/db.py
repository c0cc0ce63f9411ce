"""
SQLite database integration and simple migration system.

This module provides functions for obtaining a database connection
(``get_connection``), applying migrations on application start
(``init_db``) and helpers for converting timestamps.  All timestamps
are stored as UTC strings in the fixed format ``YYYY-MM-DDTHH:MM:SSZ``
so that plain string comparison in SQL orders them correctly; column
defaults use the same format through ``strftime``.

The migration mechanism stores applied migration versions in the
``migrations`` table and executes new migrations in order.
"""

import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from .config import settings


DB_TIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# SQL expression producing "now" in DB_TIME_FORMAT.
_NOW = "(strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))"


def to_db_time(value: datetime) -> str:
    """Serialise an aware (or naive UTC) datetime for storage."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(DB_TIME_FORMAT)


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp back into an aware UTC datetime."""
    if not value:
        return None
    return datetime.strptime(value, DB_TIME_FORMAT).replace(tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_database_path() -> str:
    """Compute the path to the SQLite database file.

    If ``settings.database_url`` is an absolute path, use it directly.
    Otherwise resolve it relative to the ``powerpulse_api`` package.
    """
    db_url = settings.database_url
    if os.path.isabs(db_url):
        return db_url
    base_dir = Path(__file__).resolve().parent.parent.parent  # powerpulse_api/
    return str((base_dir / db_url).resolve())


def get_connection() -> sqlite3.Connection:
    """Create and return a new SQLite connection.

    Rows are returned as ``sqlite3.Row`` so columns can be accessed by
    name.  Foreign key enforcement is switched on per connection.
    """
    conn = sqlite3.connect(get_database_path())
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def get_cursor() -> Iterator[sqlite3.Cursor]:
    """Context manager that yields a cursor, commits and closes the connection."""
    conn = get_connection()
    try:
        yield conn.cursor()
        conn.commit()
    finally:
        conn.close()


MIGRATIONS: list[tuple[int, str]] = [
    # Migration 1: users, content, preferences and schedules
    (
        1,
        f"""
        CREATE TABLE IF NOT EXISTS roles (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE
        );

        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            email TEXT NOT NULL UNIQUE,
            name TEXT,
            phone_number TEXT,
            password TEXT,
            role_id INTEGER NOT NULL DEFAULT 2,
            subscription_status TEXT NOT NULL DEFAULT 'trialing',
            email_verified INTEGER NOT NULL DEFAULT 0,
            last_active_at TEXT,
            deleted_at TEXT,
            created_at TEXT DEFAULT {_NOW},
            updated_at TEXT DEFAULT {_NOW},
            FOREIGN KEY(role_id) REFERENCES roles(id)
        );

        CREATE TABLE IF NOT EXISTS audio_sessions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER,
            title TEXT NOT NULL,
            description TEXT,
            script TEXT,
            duration_seconds INTEGER NOT NULL DEFAULT 0,
            category TEXT,
            audio_url TEXT,
            thumbnail_url TEXT,
            delivery_date TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT DEFAULT {_NOW},
            FOREIGN KEY(user_id) REFERENCES users(id)
        );

        CREATE TABLE IF NOT EXISTS notification_preferences (
            user_id INTEGER PRIMARY KEY,
            email_enabled INTEGER NOT NULL DEFAULT 1,
            whatsapp_enabled INTEGER NOT NULL DEFAULT 0,
            telegram_enabled INTEGER NOT NULL DEFAULT 0,
            sms_enabled INTEGER NOT NULL DEFAULT 0,
            push_enabled INTEGER NOT NULL DEFAULT 1,
            in_app_enabled INTEGER NOT NULL DEFAULT 1,
            telegram_chat_id TEXT,
            telegram_link_token TEXT UNIQUE,
            daily_audio_notifications INTEGER NOT NULL DEFAULT 1,
            streak_reminders INTEGER NOT NULL DEFAULT 1,
            milestone_notifications INTEGER NOT NULL DEFAULT 1,
            new_content_alerts INTEGER NOT NULL DEFAULT 1,
            social_notifications INTEGER NOT NULL DEFAULT 0,
            quiet_hours_enabled INTEGER NOT NULL DEFAULT 0,
            quiet_hours_start TEXT NOT NULL DEFAULT '22:00',
            quiet_hours_end TEXT NOT NULL DEFAULT '08:00',
            created_at TEXT DEFAULT {_NOW},
            updated_at TEXT DEFAULT {_NOW},
            FOREIGN KEY(user_id) REFERENCES users(id)
        );

        CREATE TABLE IF NOT EXISTS delivery_schedules (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            scheduled_time TEXT NOT NULL,
            timezone TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            paused_at TEXT,
            created_at TEXT DEFAULT {_NOW},
            updated_at TEXT DEFAULT {_NOW},
            FOREIGN KEY(user_id) REFERENCES users(id)
        );
        """,
    ),
    # Migration 2: delivery queue and delivery logs
    (
        2,
        f"""
        CREATE TABLE IF NOT EXISTS delivery_queue (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            type TEXT NOT NULL,
            scheduled_for TEXT NOT NULL,
            timezone TEXT NOT NULL,
            delivery_date TEXT,
            channels TEXT NOT NULL,
            data TEXT,
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 3,
            status TEXT NOT NULL DEFAULT 'pending',
            delivery_results TEXT,
            last_error TEXT,
            created_at TEXT DEFAULT {_NOW},
            updated_at TEXT DEFAULT {_NOW},
            completed_at TEXT,
            FOREIGN KEY(user_id) REFERENCES users(id)
        );
        CREATE INDEX IF NOT EXISTS idx_delivery_queue_due
            ON delivery_queue(status, scheduled_for);
        CREATE INDEX IF NOT EXISTS idx_delivery_queue_user_type_date
            ON delivery_queue(user_id, type, delivery_date);

        CREATE TABLE IF NOT EXISTS delivery_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            channel TEXT NOT NULL,
            type TEXT NOT NULL,
            status TEXT NOT NULL,
            provider_message_id TEXT,
            message TEXT,
            metadata TEXT,
            created_at TEXT DEFAULT {_NOW},
            FOREIGN KEY(user_id) REFERENCES users(id)
        );
        CREATE INDEX IF NOT EXISTS idx_delivery_logs_user_created
            ON delivery_logs(user_id, created_at);
        """,
    ),
    # Migration 3: push subscriptions, in-app notifications and streaks
    (
        3,
        f"""
        CREATE TABLE IF NOT EXISTS push_subscriptions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            endpoint TEXT NOT NULL,
            p256dh TEXT NOT NULL,
            auth TEXT NOT NULL,
            created_at TEXT DEFAULT {_NOW},
            updated_at TEXT DEFAULT {_NOW},
            UNIQUE(user_id, endpoint),
            FOREIGN KEY(user_id) REFERENCES users(id)
        );

        CREATE TABLE IF NOT EXISTS in_app_notifications (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            type TEXT NOT NULL,
            title TEXT NOT NULL,
            body TEXT NOT NULL,
            icon TEXT,
            data TEXT,
            read INTEGER NOT NULL DEFAULT 0,
            created_at TEXT DEFAULT {_NOW},
            FOREIGN KEY(user_id) REFERENCES users(id)
        );
        CREATE INDEX IF NOT EXISTS idx_in_app_notifications_user
            ON in_app_notifications(user_id, read);

        CREATE TABLE IF NOT EXISTS user_streaks (
            user_id INTEGER PRIMARY KEY,
            current_streak INTEGER NOT NULL DEFAULT 0,
            longest_streak INTEGER NOT NULL DEFAULT 0,
            last_listen_date TEXT,
            updated_at TEXT DEFAULT {_NOW},
            FOREIGN KEY(user_id) REFERENCES users(id)
        );
        """,
    ),
]


def init_db() -> None:
    """Initialise the database and apply pending migrations.

    Creates the ``migrations`` table if it does not exist, checks the
    current schema version and applies any newer entries of
    ``MIGRATIONS``.  Append new migrations with an incremented version.
    """
    with get_cursor() as cursor:
        cursor.execute(
            "CREATE TABLE IF NOT EXISTS migrations (version INTEGER PRIMARY KEY)"
        )
        cursor.execute("SELECT MAX(version) as version FROM migrations")
        row = cursor.fetchone()
        current_version = row["version"] if row and row["version"] is not None else 0

        for version, sql in MIGRATIONS:
            if version > current_version:
                cursor.executescript(sql)
                cursor.execute(
                    "INSERT INTO migrations (version) VALUES (?)", (version,)
                )
                current_version = version

        # Default roles: admin (id=1) and user (id=2)
        cursor.execute("INSERT OR IGNORE INTO roles (id, name) VALUES (1, 'admin')")
        cursor.execute("INSERT OR IGNORE INTO roles (id, name) VALUES (2, 'user')")
