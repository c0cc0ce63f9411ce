"""
Service for the delivery queue.

The queue is a plain table polled by the scheduler.  An item describes
one message for one user (a daily audio, a streak milestone, a
re-engagement nudge or a welcome) together with the channels it should
go out on.  Items move through ``pending -> processing -> delivered |
failed``:

* the scheduler fetches ``pending`` items whose ``scheduled_for`` has
  passed and claims each one with a conditional UPDATE, so two workers
  never process the same item;
* after sending, the per-channel results are merged into
  ``delivery_results``; channels that already succeeded are skipped on
  the next attempt;
* a partially failed item goes back to ``pending`` with a backoff delay
  until ``max_attempts`` is reached.

Daily deliveries are deduplicated by ``(user_id, type, delivery_date)``
where ``delivery_date`` is the user's local date.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from powerpulse_api.app.core.config import settings
from powerpulse_api.app.core.db import from_db_time, get_connection, to_db_time, utcnow
from powerpulse_api.app.schemas.delivery import QUEUE_TYPES, QueueItemRead, normalize_channels


logger = logging.getLogger(__name__)


def _row_to_item(row: sqlite3.Row) -> QueueItemRead:
    return QueueItemRead(
        id=row["id"],
        user_id=row["user_id"],
        type=row["type"],
        scheduled_for=from_db_time(row["scheduled_for"]),
        timezone=row["timezone"],
        delivery_date=row["delivery_date"],
        channels=json.loads(row["channels"]),
        data=json.loads(row["data"]) if row["data"] else {},
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        status=row["status"],
        delivery_results=json.loads(row["delivery_results"]) if row["delivery_results"] else {},
        last_error=row["last_error"],
        created_at=from_db_time(row["created_at"]),
        completed_at=from_db_time(row["completed_at"]),
    )


def backoff_delay(attempts: int, schedule: Optional[Sequence[int]] = None) -> timedelta:
    """Delay before the next attempt after ``attempts`` attempts were made.

    The last entry of the schedule is reused once the list runs out.
    """
    schedule = list(schedule or settings.retry_backoff_minutes or [5])
    index = min(max(attempts - 1, 0), len(schedule) - 1)
    return timedelta(minutes=schedule[index])


class QueueService:
    """Enqueue, claim and settle delivery queue items."""

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------
    @classmethod
    async def enqueue(
        cls,
        user_id: int,
        type: str,
        channels: Sequence[str],
        scheduled_for: datetime,
        timezone: str,
        delivery_date: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        max_attempts: Optional[int] = None,
    ) -> int:
        """Insert a pending item and return its id.

        Raises
        ------
        ValueError
            If the type is unknown or the channel list is empty or
            contains unknown channels.
        """
        if type not in QUEUE_TYPES:
            raise ValueError(f"Unknown queue item type '{type}'")
        channel_list = normalize_channels(list(channels))
        attempts_limit = max_attempts if max_attempts is not None else settings.max_delivery_attempts
        conn = get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO delivery_queue
                    (user_id, type, scheduled_for, timezone, delivery_date,
                     channels, data, max_attempts, status, delivery_results)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'pending', '{}')
                """,
                (
                    user_id,
                    type,
                    to_db_time(scheduled_for),
                    timezone,
                    delivery_date,
                    json.dumps(channel_list),
                    json.dumps(data or {}),
                    attempts_limit,
                ),
            )
            item_id = cursor.lastrowid
            conn.commit()
        finally:
            conn.close()
        logger.info(
            "Queued %s item %s for user %s on %s",
            type, item_id, user_id, ",".join(channel_list),
        )
        return item_id

    @classmethod
    async def get(cls, item_id: int) -> QueueItemRead:
        conn = get_connection()
        try:
            row = conn.execute("SELECT * FROM delivery_queue WHERE id = ?", (item_id,)).fetchone()
            if not row:
                raise ValueError(f"Queue item {item_id} not found")
            return _row_to_item(row)
        finally:
            conn.close()

    @classmethod
    async def exists_for_date(cls, user_id: int, type: str, delivery_date: str) -> bool:
        """True if an item for this user, type and local date exists in any status."""
        conn = get_connection()
        try:
            row = conn.execute(
                """
                SELECT 1 FROM delivery_queue
                WHERE user_id = ? AND type = ? AND delivery_date = ?
                LIMIT 1
                """,
                (user_id, type, delivery_date),
            ).fetchone()
            return row is not None
        finally:
            conn.close()

    @classmethod
    async def exists_since(cls, user_id: int, type: str, since: datetime) -> bool:
        """True if an item of ``type`` was created for the user after ``since``."""
        conn = get_connection()
        try:
            row = conn.execute(
                """
                SELECT 1 FROM delivery_queue
                WHERE user_id = ? AND type = ? AND created_at >= ?
                LIMIT 1
                """,
                (user_id, type, to_db_time(since)),
            ).fetchone()
            return row is not None
        finally:
            conn.close()

    @classmethod
    async def fetch_due(cls, now: datetime, limit: int) -> List[QueueItemRead]:
        """Pending items scheduled no later than ``now``, oldest first."""
        conn = get_connection()
        try:
            rows = conn.execute(
                """
                SELECT * FROM delivery_queue
                WHERE status = 'pending'
                  AND scheduled_for <= ?
                  AND attempts < max_attempts
                ORDER BY scheduled_for ASC, id ASC
                LIMIT ?
                """,
                (to_db_time(now), limit),
            ).fetchall()
            return [_row_to_item(row) for row in rows]
        finally:
            conn.close()

    @classmethod
    async def list_for_user(cls, user_id: int, limit: int = 50) -> List[QueueItemRead]:
        conn = get_connection()
        try:
            rows = conn.execute(
                """
                SELECT * FROM delivery_queue
                WHERE user_id = ?
                ORDER BY scheduled_for DESC, id DESC
                LIMIT ?
                """,
                (user_id, limit),
            ).fetchall()
            return [_row_to_item(row) for row in rows]
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------
    @classmethod
    async def claim(cls, item: QueueItemRead, now: Optional[datetime] = None) -> bool:
        """Move ``item`` from pending to processing and spend one attempt.

        Returns ``False`` when the row was claimed by someone else (or is
        no longer eligible); ``item`` is updated in place on success.
        """
        stamp = to_db_time(now or utcnow())
        conn = get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE delivery_queue
                SET status = 'processing', attempts = attempts + 1, updated_at = ?
                WHERE id = ? AND status = 'pending' AND attempts < max_attempts
                """,
                (stamp, item.id),
            )
            conn.commit()
            claimed = cursor.rowcount == 1
        finally:
            conn.close()
        if claimed:
            item.status = "processing"
            item.attempts += 1
        return claimed

    @classmethod
    async def record_result(
        cls,
        item: QueueItemRead,
        results: Dict[str, bool],
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> str:
        """Merge per-channel ``results`` into the item and settle its status.

        A channel that succeeded on an earlier attempt stays successful.
        Returns the new status.
        """
        now = now or utcnow()
        merged: Dict[str, bool] = dict(item.delivery_results)
        for channel, ok in results.items():
            merged[channel] = bool(ok) or merged.get(channel, False)

        all_ok = all(merged.get(channel, False) for channel in item.channels)
        any_ok = any(merged.values())
        scheduled_for = item.scheduled_for
        completed_at: Optional[datetime] = None
        if all_ok:
            status = "delivered"
            completed_at = now
        elif item.attempts < item.max_attempts:
            status = "pending"
            scheduled_for = now + backoff_delay(item.attempts)
        else:
            status = "delivered" if any_ok else "failed"
            completed_at = now

        conn = get_connection()
        try:
            conn.execute(
                """
                UPDATE delivery_queue
                SET status = ?, delivery_results = ?, last_error = ?,
                    scheduled_for = ?, completed_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    status,
                    json.dumps(merged),
                    error,
                    to_db_time(scheduled_for),
                    to_db_time(completed_at) if completed_at else None,
                    to_db_time(now),
                    item.id,
                ),
            )
            conn.commit()
        finally:
            conn.close()

        item.status = status
        item.delivery_results = merged
        item.last_error = error
        item.scheduled_for = scheduled_for
        item.completed_at = completed_at
        if status == "pending":
            logger.info(
                "Queue item %s partially failed (attempt %s/%s), retry at %s",
                item.id, item.attempts, item.max_attempts, to_db_time(scheduled_for),
            )
        else:
            logger.info("Queue item %s %s after %s attempt(s)", item.id, status, item.attempts)
        return status

    @classmethod
    async def defer(cls, item_id: int, until: datetime) -> None:
        """Reschedule a pending item without spending an attempt."""
        conn = get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE delivery_queue
                SET scheduled_for = ?, updated_at = ?
                WHERE id = ? AND status = 'pending'
                """,
                (to_db_time(until), to_db_time(utcnow()), item_id),
            )
            conn.commit()
            if cursor.rowcount != 1:
                raise ValueError(f"Queue item {item_id} not found")
        finally:
            conn.close()
        logger.info("Queue item %s deferred until %s", item_id, to_db_time(until))

    @classmethod
    async def recover_stale(cls, now: datetime, minutes: int) -> int:
        """Release items stuck in ``processing`` for longer than ``minutes``.

        A worker that died mid-send leaves its item in ``processing``.
        Items with attempts left return to ``pending``; exhausted items
        are settled the same way ``record_result`` would settle them.
        """
        cutoff = to_db_time(now - timedelta(minutes=minutes))
        stamp = to_db_time(now)
        recovered = 0
        conn = get_connection()
        try:
            cursor = conn.cursor()
            rows = cursor.execute(
                """
                SELECT id, attempts, max_attempts, delivery_results
                FROM delivery_queue
                WHERE status = 'processing' AND updated_at < ?
                """,
                (cutoff,),
            ).fetchall()
            for row in rows:
                if row["attempts"] < row["max_attempts"]:
                    cursor.execute(
                        """
                        UPDATE delivery_queue
                        SET status = 'pending', updated_at = ?
                        WHERE id = ? AND status = 'processing'
                        """,
                        (stamp, row["id"]),
                    )
                else:
                    results = json.loads(row["delivery_results"]) if row["delivery_results"] else {}
                    cursor.execute(
                        """
                        UPDATE delivery_queue
                        SET status = ?, last_error = 'processing timed out',
                            completed_at = ?, updated_at = ?
                        WHERE id = ? AND status = 'processing'
                        """,
                        ("delivered" if any(results.values()) else "failed", stamp, stamp, row["id"]),
                    )
                recovered += cursor.rowcount
            conn.commit()
        finally:
            conn.close()
        if recovered:
            logger.warning("Recovered %s stale queue item(s)", recovered)
        return recovered

    @classmethod
    async def cleanup(cls, before: datetime) -> int:
        """Delete finished items completed before ``before``."""
        conn = get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                """
                DELETE FROM delivery_queue
                WHERE status IN ('delivered', 'failed') AND completed_at < ?
                """,
                (to_db_time(before),),
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()
