"""
Email delivery through Resend.

Each public method loads what its template needs from the database,
renders the HTML, sends it and records the outcome in the delivery log.
Methods return ``True``/``False`` instead of raising so the scheduler can
treat email like any other channel.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from powerpulse_api.app.core.config import settings
from powerpulse_api.app.core.db import get_connection
from powerpulse_api.app.schemas.user import UserRead
from powerpulse_api.app.services import email_templates
from powerpulse_api.app.services.content_service import ContentService
from powerpulse_api.app.services.delivery_log_service import DeliveryLogService
from powerpulse_api.app.services.providers import DeliveryError, ResendClient
from powerpulse_api.app.services.user_service import UserService


logger = logging.getLogger(__name__)

MILESTONES = [3, 7, 14, 21, 30, 50, 75, 100, 150, 200, 365]

_BADGES = {
    3: "/badges/bronze-starter.png",
    7: "/badges/silver-week.png",
    14: "/badges/gold-fortnight.png",
    21: "/badges/platinum-three-weeks.png",
    30: "/badges/diamond-month.png",
    50: "/badges/emerald-fifty.png",
    75: "/badges/ruby-seventy-five.png",
    100: "/badges/legendary-century.png",
}


def next_milestone(current: int) -> int:
    for milestone in MILESTONES:
        if milestone > current:
            return milestone
    return current + 100


def milestone_badge_url(milestone: int) -> str:
    return _BADGES.get(milestone, "/badges/default.png")


def re_engagement_message(days_away: int) -> str:
    if days_away <= 3:
        return "Just a quick check-in! Your daily audio is waiting for you."
    if days_away <= 7:
        return "It's been a week! Let's get back to building that positive momentum."
    if days_away <= 14:
        return "Two weeks is the perfect time for a fresh start. Your journey continues!"
    if days_away <= 30:
        return "A month away means you're ready for something new. Welcome back!"
    return "No matter how long it's been, today is the perfect day to restart your journey."


def _display_name(user: UserRead) -> str:
    return user.name or "Friend"


def _current_streak(user_id: int) -> int:
    conn = get_connection()
    try:
        row = conn.execute(
            "SELECT current_streak FROM user_streaks WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        return row["current_streak"] if row else 0
    finally:
        conn.close()


class EmailService:
    """Render and send transactional emails."""

    client = ResendClient()

    @classmethod
    async def _send(
        cls,
        user: UserRead,
        type: str,
        subject: str,
        html: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        try:
            message_id = await asyncio.to_thread(cls.client.send_email, user.email, subject, html)
        except DeliveryError as exc:
            logger.error("Email '%s' to user %s failed: %s", type, user.id, exc)
            await DeliveryLogService.log(
                user.id, "email", type, "failed", message=str(exc), metadata=metadata
            )
            return False
        await DeliveryLogService.log(
            user.id, "email", type, "delivered", provider_message_id=message_id, metadata=metadata
        )
        return True

    @classmethod
    async def _load_user(cls, user_id: int, type: str) -> Optional[UserRead]:
        try:
            return await UserService.get_user(user_id)
        except ValueError:
            logger.error("Cannot send '%s' email: user %s not found", type, user_id)
            return None

    @classmethod
    async def send_daily_audio_email(
        cls,
        user_id: int,
        session_id: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        user = await cls._load_user(user_id, "daily_audio")
        if user is None:
            return False
        try:
            session = await ContentService.get_session(session_id)
        except ValueError as exc:
            logger.error("Daily audio email for user %s: %s", user_id, exc)
            await DeliveryLogService.log(
                user_id, "email", "daily_audio", "failed", message=str(exc), metadata=metadata
            )
            return False
        html = email_templates.daily_audio(
            user_name=_display_name(user),
            audio_title=session.title,
            duration_seconds=session.duration_seconds,
            audio_url=f"{settings.app_url}/audio/{session.id}",
            streak_count=_current_streak(user_id),
            app_url=settings.app_url,
            category=session.category,
            preview_text=session.description,
        )
        return await cls._send(
            user, "daily_audio", f"🎧 Your Daily PowerPulse: {session.title}", html, metadata
        )

    @classmethod
    async def send_welcome_email(cls, user_id: int, metadata: Optional[Dict[str, Any]] = None) -> bool:
        user = await cls._load_user(user_id, "welcome")
        if user is None:
            return False
        html = email_templates.welcome(_display_name(user), settings.app_url)
        return await cls._send(
            user, "welcome", "Welcome to PowerPulse! 🚀 Start Your Journey", html, metadata
        )

    @classmethod
    async def send_streak_milestone_email(
        cls,
        user_id: int,
        milestone: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        user = await cls._load_user(user_id, "streak_milestone")
        if user is None:
            return False
        html = email_templates.streak_milestone(
            user_name=_display_name(user),
            milestone=milestone,
            next_milestone=next_milestone(milestone),
            badge_url=milestone_badge_url(milestone),
            app_url=settings.app_url,
        )
        return await cls._send(
            user,
            "streak_milestone",
            f"🏆 Incredible! You've hit a {milestone}-day streak!",
            html,
            metadata,
        )

    @classmethod
    async def send_re_engagement_email(
        cls,
        user_id: int,
        days_inactive: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        user = await cls._load_user(user_id, "re_engagement")
        if user is None:
            return False
        name = _display_name(user)
        html = email_templates.comeback(
            name, days_inactive, re_engagement_message(days_inactive), settings.app_url
        )
        return await cls._send(
            user, "re_engagement", f"{name}, we miss you! 🌟 Come back to PowerPulse", html, metadata
        )

    @classmethod
    async def send_test_email(cls, user_id: int) -> bool:
        user = await cls._load_user(user_id, "test")
        if user is None:
            return False
        html = email_templates.test_message(_display_name(user), settings.app_url)
        return await cls._send(user, "test", "PowerPulse test email", html)
