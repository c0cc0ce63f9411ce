"""
Listening streaks.

A listen counts for the user's local date.  Listening again on the same
day changes nothing, listening the next day extends the streak and a
missed day starts over at one.  Reaching one of the milestone lengths
queues a ``streak_milestone`` delivery.
"""

import logging
from datetime import date, timedelta
from typing import Optional

from powerpulse_api.app.core.db import get_connection, to_db_time, utcnow
from powerpulse_api.app.schemas.content import StreakRead
from powerpulse_api.app.services.email_service import MILESTONES
from powerpulse_api.app.services.preference_service import PreferenceService
from powerpulse_api.app.services.queue_service import QueueService
from powerpulse_api.app.services.user_service import UserService


logger = logging.getLogger(__name__)

MILESTONE_CHANNELS = ("email", "push", "in_app")


class StreakService:
    @classmethod
    async def get_streak(cls, user_id: int) -> StreakRead:
        conn = get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM user_streaks WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        finally:
            conn.close()
        if not row:
            return StreakRead(user_id=user_id)
        return StreakRead(
            user_id=user_id,
            current_streak=row["current_streak"],
            longest_streak=row["longest_streak"],
            last_listen_date=date.fromisoformat(row["last_listen_date"]) if row["last_listen_date"] else None,
        )

    @classmethod
    async def record_listen(cls, user_id: int, local_date: date) -> StreakRead:
        """Count a listen on ``local_date`` and return the updated streak.

        ``milestone_reached`` is set on the result when this listen made
        the streak hit a milestone.
        """
        streak = await cls.get_streak(user_id)
        last = streak.last_listen_date
        if last == local_date or (last is not None and last > local_date):
            await UserService.touch_activity(user_id)
            return streak
        if last is not None and local_date - last == timedelta(days=1):
            current = streak.current_streak + 1
        else:
            current = 1
        longest = max(streak.longest_streak, current)

        conn = get_connection()
        try:
            conn.execute(
                """
                INSERT INTO user_streaks (user_id, current_streak, longest_streak, last_listen_date, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    current_streak = excluded.current_streak,
                    longest_streak = excluded.longest_streak,
                    last_listen_date = excluded.last_listen_date,
                    updated_at = excluded.updated_at
                """,
                (user_id, current, longest, local_date.isoformat(), to_db_time(utcnow())),
            )
            conn.commit()
        finally:
            conn.close()
        await UserService.touch_activity(user_id)

        milestone: Optional[int] = current if current in MILESTONES else None
        if milestone is not None:
            await cls._queue_milestone(user_id, milestone)
        return StreakRead(
            user_id=user_id,
            current_streak=current,
            longest_streak=longest,
            last_listen_date=local_date,
            milestone_reached=milestone,
        )

    @classmethod
    async def _queue_milestone(cls, user_id: int, milestone: int) -> None:
        prefs = await PreferenceService.get_preferences(user_id)
        if not prefs.milestone_notifications:
            logger.info("User %s reached a %s-day streak with milestone notifications off", user_id, milestone)
            return
        enabled = PreferenceService.enabled_channels(prefs)
        channels = [channel for channel in MILESTONE_CHANNELS if channel in enabled]
        if not channels:
            logger.info("User %s reached a %s-day streak but has no milestone channel", user_id, milestone)
            return
        await QueueService.enqueue(
            user_id,
            "streak_milestone",
            channels,
            scheduled_for=utcnow(),
            timezone=await PreferenceService.user_timezone(user_id),
            data={"milestone": milestone},
        )
