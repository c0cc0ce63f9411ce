"""
Messenger delivery: WhatsApp and SMS through Twilio, Telegram through
the Bot API.

A :class:`MessageContent` is channel neutral; :class:`MessageFormatter`
renders it for each platform (Markdown + inline keyboard for Telegram,
numbered links for WhatsApp, a single truncated text for SMS).

The service also handles inbound webhooks so users can unsubscribe from
a messenger by replying ``STOP`` (Twilio) or ``/stop`` (Telegram), and
link their Telegram chat by opening the bot with ``/start <token>``.
"""

import asyncio
import logging
import math
from functools import partial
from typing import Any, Dict, List, Mapping, Optional

from powerpulse_api.app.core.config import settings
from powerpulse_api.app.core.db import get_connection
from powerpulse_api.app.schemas.content import AudioSessionRead
from powerpulse_api.app.schemas.delivery import MESSAGING_CHANNELS
from powerpulse_api.app.schemas.message import MessageButton, MessageContent
from powerpulse_api.app.services.content_service import ContentService
from powerpulse_api.app.services.delivery_log_service import DeliveryLogService
from powerpulse_api.app.services.preference_service import PreferenceService
from powerpulse_api.app.services.providers import DeliveryError, TelegramClient, TwilioClient
from powerpulse_api.app.services.user_service import UserService


logger = logging.getLogger(__name__)

SMS_MAX_LENGTH = 1600

TELEGRAM_STOP_REPLY = "You have been unsubscribed from daily audio messages."
TELEGRAM_START_REPLY = "Welcome to PowerPulse! You will receive daily audio content."
TELEGRAM_LINKED_REPLY = "Your Telegram is now linked to PowerPulse. Your daily audio will arrive here."
TELEGRAM_UNKNOWN_REPLY = "We couldn't find your PowerPulse account. Open the link from your settings page to connect."
TWILIO_STOP_REPLY = "You have been unsubscribed from PowerPulse {channel} messages. Reply START to resubscribe."
TWILIO_START_REPLY = "You are subscribed to PowerPulse {channel} messages again."


class MessageFormatter:
    """Render :class:`MessageContent` for each messenger."""

    @staticmethod
    def for_whatsapp(content: MessageContent) -> str:
        message = f"*{content.title}*\n\n{content.body}"
        if content.buttons:
            lines = [f"{index}. {button.text}: {button.url}" for index, button in enumerate(content.buttons, 1)]
            message += "\n\n" + "\n".join(lines)
        return message

    @staticmethod
    def for_telegram(content: MessageContent) -> Dict[str, Any]:
        formatted: Dict[str, Any] = {
            "text": f"*{content.title}*\n\n{content.body}",
            "parse_mode": "Markdown",
            "reply_markup": None,
        }
        if content.buttons:
            formatted["reply_markup"] = {
                "inline_keyboard": [[{"text": b.text, "url": b.url} for b in content.buttons]]
            }
        return formatted

    @staticmethod
    def for_sms(content: MessageContent) -> str:
        message = f"{content.title}\n\n{content.body}"
        if content.buttons:
            primary = content.buttons[0]
            message += f"\n\n{primary.text}: {primary.url}"
        if len(message) > SMS_MAX_LENGTH:
            message = message[: SMS_MAX_LENGTH - 3] + "..."
        return message


def _user_id_by_phone(phone_number: str) -> Optional[int]:
    conn = get_connection()
    try:
        row = conn.execute(
            "SELECT id FROM users WHERE phone_number = ? AND deleted_at IS NULL",
            (phone_number,),
        ).fetchone()
        return row["id"] if row else None
    finally:
        conn.close()


class MessagingService:
    """Send messenger messages and process messenger webhooks."""

    twilio = TwilioClient()
    telegram = TelegramClient()

    # ------------------------------------------------------------------
    # Single-channel senders
    # ------------------------------------------------------------------
    @classmethod
    async def _finish(
        cls,
        channel: str,
        content: MessageContent,
        send,
        log_type: Optional[str],
        metadata: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        log_type = log_type or content.type
        try:
            message_id = await asyncio.to_thread(send)
        except DeliveryError as exc:
            logger.error("%s message to user %s failed: %s", channel, content.user_id, exc)
            await DeliveryLogService.log(
                content.user_id, channel, log_type, "failed", message=str(exc), metadata=metadata
            )
            return {"success": False, "message_id": None, "error": str(exc)}
        await DeliveryLogService.log(
            content.user_id,
            channel,
            log_type,
            "delivered",
            provider_message_id=str(message_id),
            metadata=metadata,
        )
        return {"success": True, "message_id": str(message_id)}

    @classmethod
    async def send_whatsapp(
        cls,
        phone_number: str,
        content: MessageContent,
        log_type: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        body = MessageFormatter.for_whatsapp(content)
        return await cls._finish(
            "whatsapp",
            content,
            partial(cls.twilio.send_whatsapp, phone_number, body, media_url=content.media_url),
            log_type,
            metadata,
        )

    @classmethod
    async def send_telegram(
        cls,
        chat_id: str,
        content: MessageContent,
        log_type: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        formatted = MessageFormatter.for_telegram(content)
        if content.media_url:
            send = partial(
                cls.telegram.send_photo,
                chat_id,
                content.media_url,
                caption=formatted["text"],
                parse_mode=formatted["parse_mode"],
                reply_markup=formatted["reply_markup"],
            )
        else:
            send = partial(
                cls.telegram.send_message,
                chat_id,
                formatted["text"],
                parse_mode=formatted["parse_mode"],
                reply_markup=formatted["reply_markup"],
            )
        return await cls._finish("telegram", content, send, log_type, metadata)

    @classmethod
    async def send_sms(
        cls,
        phone_number: str,
        content: MessageContent,
        log_type: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        body = MessageFormatter.for_sms(content)
        return await cls._finish(
            "sms",
            content,
            partial(cls.twilio.send_sms, phone_number, body),
            log_type,
            metadata,
        )

    # ------------------------------------------------------------------
    # User-level delivery
    # ------------------------------------------------------------------
    @staticmethod
    def build_daily_audio_content(user_id: int, session: AudioSessionRead) -> MessageContent:
        minutes = math.ceil(session.duration_seconds / 60)
        lines = []
        if session.description:
            lines.append(session.description)
            lines.append("")
        lines.append(f"Duration: {minutes} minutes")
        if session.category:
            lines.append(f"Category: {session.category}")
        return MessageContent(
            user_id=user_id,
            type="daily_audio",
            title=f"🎧 Daily PowerPulse: {session.title}",
            body="\n".join(lines),
            media_url=session.thumbnail_url,
            buttons=[
                MessageButton(text="Listen Now", url=f"{settings.app_url}/audio/{session.id}"),
                MessageButton(text="View Progress", url=f"{settings.app_url}/progress"),
            ],
        )

    @classmethod
    async def _deliver(
        cls,
        channel: str,
        content: MessageContent,
        log_type: str,
        metadata: Optional[Dict[str, Any]],
    ) -> bool:
        """Send ``content`` to the user's address for ``channel``.

        A user without an address for the channel (no phone number, no
        linked Telegram chat) counts as a failed delivery.
        """
        user = await UserService.get_user(content.user_id)
        if channel == "telegram":
            prefs = await PreferenceService.get_preferences(content.user_id)
            recipient = prefs.telegram_chat_id
        else:
            recipient = user.phone_number
        if not recipient:
            reason = "no Telegram chat linked" if channel == "telegram" else "no phone number"
            logger.warning("Skipping %s for user %s: %s", channel, content.user_id, reason)
            await DeliveryLogService.log(
                content.user_id, channel, log_type, "failed", message=reason, metadata=metadata
            )
            return False
        sender = {
            "whatsapp": cls.send_whatsapp,
            "telegram": cls.send_telegram,
            "sms": cls.send_sms,
        }[channel]
        result = await sender(recipient, content, log_type=log_type, metadata=metadata)
        return result["success"]

    @classmethod
    async def send_daily_audio(
        cls,
        user_id: int,
        session_id: int,
        channels: List[str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, bool]:
        """Send today's audio on each requested messenger channel."""
        session = await ContentService.get_session(session_id)
        content = cls.build_daily_audio_content(user_id, session)
        results: Dict[str, bool] = {}
        for channel in channels:
            if channel not in MESSAGING_CHANNELS:
                continue
            results[channel] = await cls._deliver(channel, content, "daily_audio", metadata)
        return results

    @classmethod
    async def send_text(
        cls,
        user_id: int,
        channel: str,
        title: str,
        body: str,
        log_type: str = "custom",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        if channel not in MESSAGING_CHANNELS:
            raise ValueError(f"'{channel}' is not a messaging channel")
        content = MessageContent(
            user_id=user_id,
            type="milestone" if log_type == "streak_milestone" else "custom",
            title=title,
            body=body,
            buttons=[MessageButton(text="Open PowerPulse", url=f"{settings.app_url}/dashboard")],
        )
        return await cls._deliver(channel, content, log_type, metadata)

    @classmethod
    async def send_batch(cls, messages: List[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        """Send many messages; one failure never stops the batch.

        Each message is a mapping with ``channel``, ``recipient`` and
        ``content`` (a :class:`MessageContent`).
        """
        senders = {
            "whatsapp": cls.send_whatsapp,
            "telegram": cls.send_telegram,
            "sms": cls.send_sms,
        }
        results: List[Dict[str, Any]] = []
        for message in messages:
            channel = message.get("channel")
            sender = senders.get(channel)
            if sender is None:
                results.append({"success": False, "message_id": None, "error": f"unsupported channel '{channel}'"})
                continue
            results.append(await sender(message["recipient"], message["content"]))
        return results

    # ------------------------------------------------------------------
    # Inbound webhooks
    # ------------------------------------------------------------------
    @classmethod
    async def _switch_channel(cls, user_id: int, channel: str, enabled: bool, source: str) -> None:
        await PreferenceService.set_channel_enabled(user_id, channel, enabled)
        await DeliveryLogService.log(
            user_id,
            "system",
            "system",
            "resumed" if enabled else "paused",
            message=f"{channel} {'enabled' if enabled else 'disabled'} via {source}",
            metadata={"channel": channel},
        )
        logger.info("User %s %s %s via %s", user_id, "enabled" if enabled else "disabled", channel, source)

    @classmethod
    async def _reply_telegram(cls, chat_id: str, text: str) -> None:
        try:
            await asyncio.to_thread(cls.telegram.send_message, chat_id, text)
        except DeliveryError as exc:
            logger.error("Telegram reply to chat %s failed: %s", chat_id, exc)

    @classmethod
    async def handle_telegram_update(cls, update: Mapping[str, Any]) -> Optional[str]:
        """Process a Bot API update; return the action taken, if any."""
        message = update.get("message") or {}
        text = (message.get("text") or "").strip()
        chat = message.get("chat") or {}
        if not text or "id" not in chat:
            return None
        chat_id = str(chat["id"])
        command, _, argument = text.partition(" ")
        command = command.split("@", 1)[0].lower()
        argument = argument.strip()

        if command == "/start" and argument:
            user_id = await PreferenceService.link_telegram(argument, chat_id)
            if user_id is None:
                await cls._reply_telegram(chat_id, TELEGRAM_UNKNOWN_REPLY)
                return None
            await DeliveryLogService.log(
                user_id, "system", "system", "resumed",
                message="telegram linked", metadata={"channel": "telegram"},
            )
            await cls._reply_telegram(chat_id, TELEGRAM_LINKED_REPLY)
            return "linked"

        if command not in ("/start", "/stop"):
            return None
        user_id = await PreferenceService.find_user_by_chat_id(chat_id)
        if user_id is None:
            await cls._reply_telegram(chat_id, TELEGRAM_UNKNOWN_REPLY)
            return None
        enabled = command == "/start"
        await cls._switch_channel(user_id, "telegram", enabled, "telegram")
        await cls._reply_telegram(chat_id, TELEGRAM_START_REPLY if enabled else TELEGRAM_STOP_REPLY)
        return "subscribed" if enabled else "unsubscribed"

    @classmethod
    async def handle_twilio_inbound(cls, form: Mapping[str, Any]) -> Optional[str]:
        """Process an inbound SMS/WhatsApp message; return the reply text, if any."""
        sender = (form.get("From") or "").strip()
        body = (form.get("Body") or "").strip().upper()
        if not sender or body not in ("STOP", "START"):
            return None
        if sender.startswith("whatsapp:"):
            channel = "whatsapp"
            phone_number = sender[len("whatsapp:"):]
        else:
            channel = "sms"
            phone_number = sender
        user_id = _user_id_by_phone(phone_number)
        if user_id is None:
            logger.info("Inbound %s from unknown number ignored", channel)
            return None
        enabled = body == "START"
        await cls._switch_channel(user_id, channel, enabled, channel)
        label = "WhatsApp" if channel == "whatsapp" else "SMS"
        return (TWILIO_START_REPLY if enabled else TWILIO_STOP_REPLY).format(channel=label)
