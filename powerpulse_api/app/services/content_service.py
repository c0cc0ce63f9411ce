"""
Service for daily content (audio sessions).

Sessions are registered by the content pipeline through the admin
endpoint.  A session either belongs to one user (personalised content,
optionally bound to a local ``delivery_date``) or to nobody, in which
case it is part of the shared library that every user can fall back to.
"""

import logging
import sqlite3
from datetime import date
from typing import List, Optional

from powerpulse_api.app.core.db import from_db_time, get_connection
from powerpulse_api.app.schemas.content import AudioSessionCreate, AudioSessionRead


def _row_to_session(row: sqlite3.Row) -> AudioSessionRead:
    return AudioSessionRead(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        description=row["description"],
        duration_seconds=row["duration_seconds"],
        category=row["category"],
        audio_url=row["audio_url"],
        thumbnail_url=row["thumbnail_url"],
        delivery_date=date.fromisoformat(row["delivery_date"]) if row["delivery_date"] else None,
        is_active=bool(row["is_active"]),
        created_at=from_db_time(row["created_at"]),
    )


class ContentService:
    """Create and look up audio sessions."""

    @classmethod
    async def create_session(cls, data: AudioSessionCreate) -> AudioSessionRead:
        logger = logging.getLogger(__name__)
        conn = get_connection()
        try:
            cursor = conn.cursor()
            if data.user_id is not None:
                if not cursor.execute("SELECT id FROM users WHERE id = ?", (data.user_id,)).fetchone():
                    raise ValueError(f"User {data.user_id} not found")
            cursor.execute(
                """
                INSERT INTO audio_sessions
                    (user_id, title, description, script, duration_seconds, category,
                     audio_url, thumbnail_url, delivery_date, is_active)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    data.user_id,
                    data.title,
                    data.description,
                    data.script,
                    data.duration_seconds,
                    data.category,
                    data.audio_url,
                    data.thumbnail_url,
                    data.delivery_date.isoformat() if data.delivery_date else None,
                    int(data.is_active),
                ),
            )
            session_id = cursor.lastrowid
            conn.commit()
        finally:
            conn.close()
        logger.info("Audio session %s '%s' created", session_id, data.title)
        return await cls.get_session(session_id)

    @classmethod
    async def get_session(cls, session_id: int) -> AudioSessionRead:
        conn = get_connection()
        try:
            row = conn.execute("SELECT * FROM audio_sessions WHERE id = ?", (session_id,)).fetchone()
        finally:
            conn.close()
        if not row:
            raise ValueError(f"Audio session {session_id} not found")
        return _row_to_session(row)

    @classmethod
    async def get_todays_session(cls, user_id: int, local_date: date) -> Optional[AudioSessionRead]:
        """Pick the session to deliver to ``user_id`` on ``local_date``.

        Preference order: the user's session dated ``local_date``, then
        the user's newest undated session, then the newest shared
        session.  Sessions without audio are never picked.
        """
        queries = (
            (
                """
                SELECT * FROM audio_sessions
                WHERE user_id = ? AND delivery_date = ? AND is_active = 1 AND audio_url IS NOT NULL
                ORDER BY id DESC LIMIT 1
                """,
                (user_id, local_date.isoformat()),
            ),
            (
                """
                SELECT * FROM audio_sessions
                WHERE user_id = ? AND delivery_date IS NULL AND is_active = 1 AND audio_url IS NOT NULL
                ORDER BY created_at DESC, id DESC LIMIT 1
                """,
                (user_id,),
            ),
            (
                """
                SELECT * FROM audio_sessions
                WHERE user_id IS NULL AND is_active = 1 AND audio_url IS NOT NULL
                ORDER BY created_at DESC, id DESC LIMIT 1
                """,
                (),
            ),
        )
        conn = get_connection()
        try:
            for sql, params in queries:
                row = conn.execute(sql, params).fetchone()
                if row:
                    return _row_to_session(row)
            return None
        finally:
            conn.close()

    @classmethod
    async def list_library(cls, user_id: int, limit: int = 20, offset: int = 0) -> List[AudioSessionRead]:
        conn = get_connection()
        try:
            rows = conn.execute(
                """
                SELECT * FROM audio_sessions
                WHERE (user_id = ? OR user_id IS NULL) AND is_active = 1
                ORDER BY created_at DESC, id DESC
                LIMIT ? OFFSET ?
                """,
                (user_id, limit, offset),
            ).fetchall()
            return [_row_to_session(row) for row in rows]
        finally:
            conn.close()
