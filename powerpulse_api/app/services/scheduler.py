"""
Delivery scheduler.

:class:`DeliveryScheduler` owns an APScheduler ``AsyncIOScheduler`` that
runs inside the API process with three cron jobs:

``main`` (every minute)
    Queue the daily audio for every user whose local delivery time has
    come, then work through the due part of the delivery queue.
``cleanup`` (03:00 UTC)
    Drop delivery logs and finished queue items past the retention
    period.
``re_engagement`` (10:00 UTC)
    Queue a comeback message for users who have been inactive for a
    while.

The same operations back the ``/cron`` endpoints, so an external cron
can drive a deployment that runs with ``SCHEDULER_ENABLED=false``.
Every operation takes an optional aware UTC ``now``.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import pytz
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from powerpulse_api.app.core.config import settings
from powerpulse_api.app.core.db import utcnow
from powerpulse_api.app.schemas.delivery import (
    INTERRUPTING_CHANNELS,
    MESSAGING_CHANNELS,
    NOTIFICATION_CHANNELS,
    QueueItemRead,
)
from powerpulse_api.app.schemas.notification import Notification
from powerpulse_api.app.services.content_service import ContentService
from powerpulse_api.app.services.delivery_log_service import DeliveryLogService
from powerpulse_api.app.services.email_service import EmailService, re_engagement_message
from powerpulse_api.app.services.messaging_service import MessagingService
from powerpulse_api.app.services.notification_service import NotificationService
from powerpulse_api.app.services.preference_service import PreferenceService
from powerpulse_api.app.services.queue_service import QueueService
from powerpulse_api.app.services.schedule_math import in_quiet_hours, is_delivery_due, local_now, quiet_hours_end_utc
from powerpulse_api.app.services.user_service import UserService


logger = logging.getLogger(__name__)

BILLABLE_STATUSES = ("active", "trialing")
INACTIVITY_THRESHOLDS = [3, 7, 14, 30]
RE_ENGAGEMENT_COOLDOWN_DAYS = 7
RE_ENGAGEMENT_CHANNELS = ("email", "push")

QUEUE_TO_NOTIFICATION_TYPE = {
    "daily_audio": "daily_audio",
    "streak_milestone": "milestone_achieved",
    "re_engagement": "system",
    "welcome": "system",
}


def notification_text(item_type: str, data: Dict[str, Any]) -> Tuple[str, str]:
    """Title and body used for push, in-app and messenger text of a queue item."""
    if item_type == "daily_audio":
        return (
            "🎧 Your Daily PowerPulse is Ready!",
            "Your personalized audio session is waiting. Tap to listen now.",
        )
    if item_type == "streak_milestone":
        milestone = data.get("milestone", 0)
        return (
            f"🏆 {milestone} Day Streak!",
            f"Amazing! You've listened {milestone} days in a row. Keep the momentum going!",
        )
    if item_type == "re_engagement":
        return "We miss you! 🌟", re_engagement_message(int(data.get("days_inactive", 0)))
    if item_type == "welcome":
        return (
            "Welcome to PowerPulse! 🚀",
            "Your first personalized audio session is on its way.",
        )
    return "PowerPulse Notification", "You have a new update from PowerPulse."


def build_notification(item: QueueItemRead) -> Notification:
    title, body = notification_text(item.type, item.data)
    data: Dict[str, Any] = {"queue_id": item.id, "type": item.type}
    if item.type == "daily_audio" and item.data.get("audio_session_id"):
        data["url"] = f"/audio/{item.data['audio_session_id']}"
    return Notification(
        type=QUEUE_TO_NOTIFICATION_TYPE.get(item.type, "system"),
        title=title,
        body=body,
        data=data,
        tag=item.type,
    )


class DeliveryScheduler:
    """Cron-driven producer and consumer of the delivery queue."""

    def __init__(self) -> None:
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._processing = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """Register the cron jobs and start the scheduler (needs a running loop)."""
        if self.running:
            logger.info("Delivery scheduler already running")
            return
        scheduler = AsyncIOScheduler(timezone=pytz.utc)
        scheduler.add_job(
            self.run_main,
            CronTrigger(minute="*", timezone=pytz.utc),
            id="main",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.add_job(
            self.cleanup_old_logs,
            CronTrigger(hour=3, minute=0, timezone=pytz.utc),
            id="cleanup",
            replace_existing=True,
        )
        scheduler.add_job(
            self.check_for_inactive_users,
            CronTrigger(hour=10, minute=0, timezone=pytz.utc),
            id="re_engagement",
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Delivery scheduler started")

    def stop(self) -> None:
        if not self.running:
            logger.info("Delivery scheduler is not running")
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Delivery scheduler stopped")

    def jobs(self) -> List[Dict[str, Any]]:
        if not self.running:
            return []
        return [
            {"id": job.id, "next_run_time": job.next_run_time}
            for job in self._scheduler.get_jobs()
        ]

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------
    async def run_main(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        queued = await self.check_and_queue_deliveries(now)
        processed = await self.process_delivery_queue(now)
        return {"queued": queued, "processed": processed}

    async def check_and_queue_deliveries(self, now: Optional[datetime] = None) -> int:
        """Queue the daily audio for every schedule that is due now."""
        now = now or utcnow()
        queued = 0
        for schedule in await PreferenceService.active_schedules():
            user_id = schedule["user_id"]
            if schedule["subscription_status"] not in BILLABLE_STATUSES:
                continue
            try:
                due, local_date = is_delivery_due(
                    schedule["timezone"],
                    schedule["scheduled_time"],
                    now,
                    settings.delivery_window_minutes,
                )
                if not due:
                    continue
                if await QueueService.exists_for_date(user_id, "daily_audio", local_date.isoformat()):
                    continue
                if await self.queue_daily_delivery(user_id, schedule["timezone"], local_date, now):
                    queued += 1
            except Exception:
                logger.exception("Failed to check delivery schedule %s of user %s", schedule["id"], user_id)
        if queued:
            logger.info("Queued %s daily deliveries", queued)
        return queued

    async def queue_daily_delivery(
        self,
        user_id: int,
        tz_name: str,
        local_date: date,
        now: Optional[datetime] = None,
    ) -> Optional[int]:
        """Queue today's audio for one user; return the item id or ``None``."""
        now = now or utcnow()
        if not await PreferenceService.has_preferences(user_id):
            logger.warning("User %s has no notification preferences, skipping daily audio", user_id)
            return None
        prefs = await PreferenceService.get_preferences(user_id)
        channels = PreferenceService.enabled_channels(prefs)
        if not prefs.daily_audio_notifications:
            # Push and in-app are filtered by notification type.
            channels = [channel for channel in channels if channel not in NOTIFICATION_CHANNELS]
        if not channels:
            logger.info("User %s has no channel for the daily audio", user_id)
            return None
        session = await ContentService.get_todays_session(user_id, local_date)
        if session is None:
            logger.warning("No audio session available for user %s on %s", user_id, local_date)
            return None
        return await QueueService.enqueue(
            user_id,
            "daily_audio",
            channels,
            scheduled_for=now,
            timezone=tz_name,
            delivery_date=local_date.isoformat(),
            data={"audio_session_id": session.id},
        )

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------
    async def process_delivery_queue(self, now: Optional[datetime] = None) -> int:
        """Process one batch of due items; return how many were attempted.

        Only one pass runs at a time: a call made while another pass is
        in progress returns 0 immediately.
        """
        if self._processing:
            logger.debug("Queue pass already in progress")
            return 0
        self._processing = True
        now = now or utcnow()
        processed = 0
        try:
            await QueueService.recover_stale(now, settings.stale_processing_minutes)
            items = await QueueService.fetch_due(now, settings.queue_batch_size)
            for item in items:
                try:
                    outcome = await self.process_queue_item(item, now)
                except Exception:
                    logger.exception("Unexpected error while processing queue item %s", item.id)
                    continue
                if outcome not in ("deferred", "skipped"):
                    processed += 1
        finally:
            self._processing = False
        return processed

    async def process_queue_item(self, item: QueueItemRead, now: Optional[datetime] = None) -> str:
        """Deliver one queue item.

        Returns ``deferred`` (quiet hours), ``skipped`` (claimed by
        another worker) or the item's new status.
        """
        now = now or utcnow()
        prefs = await PreferenceService.get_preferences(item.user_id)
        if prefs.quiet_hours_enabled and set(item.channels) & set(INTERRUPTING_CHANNELS):
            tz_name = await PreferenceService.user_timezone(item.user_id)
            if in_quiet_hours(prefs.quiet_hours_start, prefs.quiet_hours_end, local_now(tz_name, now)):
                until = quiet_hours_end_utc(tz_name, prefs.quiet_hours_end, now)
                await QueueService.defer(item.id, until)
                return "deferred"

        if not await QueueService.claim(item, now):
            logger.info("Queue item %s was claimed elsewhere", item.id)
            return "skipped"

        metadata = {"queue_id": item.id, "attempts": item.attempts}
        results: Dict[str, bool] = {}
        errors: List[str] = []
        for channel in item.channels:
            if item.delivery_results.get(channel):
                continue
            try:
                ok = await self._send_channel(item, channel, now, metadata)
            except Exception as exc:
                logger.error("Channel %s of queue item %s raised: %s", channel, item.id, exc)
                errors.append(f"{channel}: {exc}")
                await DeliveryLogService.log(
                    item.user_id, channel, item.type, "failed", message=str(exc), metadata=metadata
                )
                ok = False
            else:
                if not ok:
                    errors.append(f"{channel}: delivery failed")
            results[channel] = ok
        return await QueueService.record_result(item, results, "; ".join(errors) or None, now)

    async def _send_channel(
        self,
        item: QueueItemRead,
        channel: str,
        now: datetime,
        metadata: Dict[str, Any],
    ) -> bool:
        if channel == "email":
            return await self._send_email(item, metadata)
        if channel in MESSAGING_CHANNELS:
            if item.type == "daily_audio":
                results = await MessagingService.send_daily_audio(
                    item.user_id, item.data["audio_session_id"], [channel], metadata
                )
                return results.get(channel, False)
            title, body = notification_text(item.type, item.data)
            return await MessagingService.send_text(
                item.user_id, channel, title, body, log_type=item.type, metadata=metadata
            )
        if channel in NOTIFICATION_CHANNELS:
            results = await NotificationService.send_notification(
                item.user_id,
                build_notification(item),
                [channel],
                now=now,
                log_type=item.type,
                metadata=metadata,
            )
            return results.get(channel, False)
        raise ValueError(f"Unsupported channel '{channel}'")

    async def _send_email(self, item: QueueItemRead, metadata: Dict[str, Any]) -> bool:
        if item.type == "daily_audio":
            return await EmailService.send_daily_audio_email(
                item.user_id, item.data["audio_session_id"], metadata
            )
        if item.type == "welcome":
            return await EmailService.send_welcome_email(item.user_id, metadata)
        if item.type == "streak_milestone":
            return await EmailService.send_streak_milestone_email(
                item.user_id, int(item.data["milestone"]), metadata
            )
        if item.type == "re_engagement":
            return await EmailService.send_re_engagement_email(
                item.user_id, int(item.data["days_inactive"]), metadata
            )
        raise ValueError(f"No email template for '{item.type}'")

    # ------------------------------------------------------------------
    # Re-engagement and housekeeping
    # ------------------------------------------------------------------
    async def check_for_inactive_users(self, now: Optional[datetime] = None) -> int:
        """Queue a comeback message for users inactive past a threshold."""
        now = now or utcnow()
        queued = 0
        cutoff = now - timedelta(days=min(INACTIVITY_THRESHOLDS))
        cooldown = now - timedelta(days=RE_ENGAGEMENT_COOLDOWN_DAYS)
        for user in await UserService.inactive_users(cutoff):
            user_id = user["id"]
            days_inactive = (now - user["last_active_at"]).days
            passed = [t for t in INACTIVITY_THRESHOLDS if days_inactive >= t]
            if not passed:
                continue
            try:
                if await QueueService.exists_since(user_id, "re_engagement", cooldown):
                    continue
                prefs = await PreferenceService.get_preferences(user_id)
                enabled = PreferenceService.enabled_channels(prefs)
                channels = [channel for channel in RE_ENGAGEMENT_CHANNELS if channel in enabled]
                if not channels:
                    continue
                await QueueService.enqueue(
                    user_id,
                    "re_engagement",
                    channels,
                    scheduled_for=now,
                    timezone=await PreferenceService.user_timezone(user_id),
                    data={"days_inactive": max(passed)},
                    max_attempts=1,
                )
                queued += 1
            except Exception:
                logger.exception("Failed to queue re-engagement for user %s", user_id)
        if queued:
            logger.info("Queued %s re-engagement messages", queued)
        return queued

    async def cleanup_old_logs(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        before = now - timedelta(days=settings.log_retention_days)
        logs = await DeliveryLogService.cleanup(before)
        items = await QueueService.cleanup(before)
        logger.info("Cleanup removed %s logs and %s queue items", logs, items)
        return {"logs": logs, "queue_items": items}

    # ------------------------------------------------------------------
    # Manual triggers
    # ------------------------------------------------------------------
    async def trigger_daily_delivery(self, user_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Queue and process today's audio for one user, ignoring the dedup check."""
        now = now or utcnow()
        await UserService.get_user(user_id)
        tz_name = await PreferenceService.user_timezone(user_id)
        local_date = local_now(tz_name, now).date()
        item_id = await self.queue_daily_delivery(user_id, tz_name, local_date, now)
        processed = await self.process_delivery_queue(now)
        return {"queued": item_id is not None, "queue_id": item_id, "processed": processed}

    async def trigger_re_engagement(
        self,
        user_id: int,
        days_inactive: int,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = now or utcnow()
        await UserService.get_user(user_id)
        item_id = await QueueService.enqueue(
            user_id,
            "re_engagement",
            ["email"],
            scheduled_for=now,
            timezone=await PreferenceService.user_timezone(user_id),
            data={"days_inactive": days_inactive},
            max_attempts=1,
        )
        processed = await self.process_delivery_queue(now)
        return {"queued": True, "queue_id": item_id, "processed": processed}


delivery_scheduler = DeliveryScheduler()
