"""
Service for the delivery log.

Every attempt to reach a user over a channel leaves one row in
``delivery_logs``: the channel, the message type, the outcome and the
provider message id when the provider returned one.  Pause/resume and
channel switches from messenger webhooks are logged with the
``system`` channel.  The log feeds ``GET /delivery/status`` and is
pruned by the nightly cleanup job.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from powerpulse_api.app.core.db import from_db_time, get_connection, to_db_time
from powerpulse_api.app.schemas.delivery import ChannelStats, DeliveryLogRead, DeliveryStats


logger = logging.getLogger(__name__)

SUCCESS_STATUSES = ("delivered", "sent")


def _row_to_log(row) -> DeliveryLogRead:
    return DeliveryLogRead(
        id=row["id"],
        user_id=row["user_id"],
        channel=row["channel"],
        type=row["type"],
        status=row["status"],
        provider_message_id=row["provider_message_id"],
        message=row["message"],
        metadata=json.loads(row["metadata"]) if row["metadata"] else None,
        created_at=from_db_time(row["created_at"]),
    )


class DeliveryLogService:
    """Write and query delivery log entries."""

    @classmethod
    async def log(
        cls,
        user_id: int,
        channel: str,
        type: str,
        status: str,
        provider_message_id: Optional[str] = None,
        message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        conn = get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO delivery_logs
                    (user_id, channel, type, status, provider_message_id, message, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    channel,
                    type,
                    status,
                    provider_message_id,
                    message,
                    json.dumps(metadata) if metadata is not None else None,
                ),
            )
            conn.commit()
            return cursor.lastrowid
        finally:
            conn.close()

    @classmethod
    async def list_logs(
        cls,
        user_id: int,
        channel: str = "all",
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 50,
    ) -> List[DeliveryLogRead]:
        """Return the user's logs, newest first.

        ``channel == "all"`` disables the channel filter; ``start`` and
        ``end`` form the half-open interval ``[start, end)``.
        """
        clauses = ["user_id = ?"]
        params: List[Any] = [user_id]
        if channel and channel != "all":
            clauses.append("channel = ?")
            params.append(channel)
        if start is not None:
            clauses.append("created_at >= ?")
            params.append(to_db_time(start))
        if end is not None:
            clauses.append("created_at < ?")
            params.append(to_db_time(end))
        params.append(limit)
        conn = get_connection()
        try:
            rows = conn.execute(
                f"""
                SELECT * FROM delivery_logs
                WHERE {' AND '.join(clauses)}
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                tuple(params),
            ).fetchall()
            return [_row_to_log(row) for row in rows]
        finally:
            conn.close()

    @staticmethod
    def stats(logs: Iterable[DeliveryLogRead]) -> DeliveryStats:
        """Aggregate a list of logs into totals and a per-channel breakdown."""
        result = DeliveryStats()
        for entry in logs:
            result.total += 1
            channel = result.by_channel.setdefault(entry.channel, ChannelStats())
            channel.total += 1
            if entry.status in SUCCESS_STATUSES:
                result.successful += 1
                channel.successful += 1
            elif entry.status == "failed":
                result.failed += 1
                channel.failed += 1
            elif entry.status == "pending":
                result.pending += 1
        if result.total:
            result.delivery_rate = round(result.successful / result.total * 100, 2)
        return result

    @classmethod
    async def cleanup(cls, before: datetime) -> int:
        """Delete log entries created before ``before``; return the count."""
        conn = get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                "DELETE FROM delivery_logs WHERE created_at < ?",
                (to_db_time(before),),
            )
            conn.commit()
            if cursor.rowcount:
                logger.info("Deleted %s delivery logs older than %s", cursor.rowcount, to_db_time(before))
            return cursor.rowcount
        finally:
            conn.close()
