"""
Thin HTTP clients for the delivery providers.

Each client wraps exactly one hosted API and knows nothing about users
or queue items:

* :class:`ResendClient` – transactional email through Resend.
* :class:`TwilioClient` – SMS and WhatsApp messages through Twilio's
  REST API.
* :class:`TelegramClient` – the Telegram Bot API (``sendMessage`` /
  ``sendPhoto``), with ``Retry-After`` handling for rate limits.
* :class:`WebPushClient` – browser push via ``pywebpush`` and VAPID.

All clients talk plain HTTP through ``requests`` (``pywebpush`` uses it
as well) and raise :class:`DeliveryError` for any failure, including a
missing configuration.  Callers decide whether a failure is fatal; the
scheduler treats it as a failed channel for that attempt.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Optional

import requests
from pywebpush import WebPushException, webpush

from powerpulse_api.app.core.config import settings


logger = logging.getLogger(__name__)


class DeliveryError(Exception):
    """A provider rejected a message or could not be reached."""

    def __init__(
        self,
        provider: str,
        message: str,
        *,
        status_code: Optional[int] = None,
        gone: bool = False,
    ) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status_code = status_code
        # True when the recipient address is permanently invalid
        # (e.g. an expired push subscription).
        self.gone = gone


def _error_detail(resp: requests.Response) -> str:
    try:
        return json.dumps(resp.json())
    except ValueError:
        return resp.text[:500]


class ResendClient:
    """Client for the Resend email API."""

    api_url = "https://api.resend.com/emails"

    def __init__(self, api_key: Optional[str] = None, timeout: int = 10) -> None:
        self._api_key = api_key
        self.timeout = timeout

    @property
    def api_key(self) -> str:
        return self._api_key if self._api_key is not None else settings.resend_api_key

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def send_email(self, to: str, subject: str, html: str, from_: Optional[str] = None) -> str:
        """Send an HTML email and return the provider message id."""
        if not self.is_configured:
            raise DeliveryError("resend", "RESEND_API_KEY is not configured")
        payload = {
            "from": from_ or settings.email_from,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        try:
            resp = requests.post(
                self.api_url,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise DeliveryError("resend", str(exc)) from exc
        if resp.status_code >= 400:
            raise DeliveryError("resend", _error_detail(resp), status_code=resp.status_code)
        return str(resp.json().get("id", ""))


class TwilioClient:
    """Client for Twilio's Messages resource (SMS and WhatsApp)."""

    base_url = "https://api.twilio.com/2010-04-01"

    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        timeout: int = 10,
    ) -> None:
        self._account_sid = account_sid
        self._auth_token = auth_token
        self.timeout = timeout

    @property
    def account_sid(self) -> str:
        return self._account_sid if self._account_sid is not None else settings.twilio_account_sid

    @property
    def auth_token(self) -> str:
        return self._auth_token if self._auth_token is not None else settings.twilio_auth_token

    @property
    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token)

    def send_message(
        self,
        to: str,
        body: str,
        from_: str,
        media_url: Optional[str] = None,
    ) -> str:
        """Create a message and return its ``sid``."""
        if not self.is_configured:
            raise DeliveryError("twilio", "Twilio credentials are not configured")
        if not from_:
            raise DeliveryError("twilio", "sender number is not configured")
        data: Dict[str, Any] = {"To": to, "From": from_, "Body": body}
        if media_url:
            data["MediaUrl"] = media_url
        url = f"{self.base_url}/Accounts/{self.account_sid}/Messages.json"
        try:
            resp = requests.post(
                url,
                data=data,
                auth=(self.account_sid, self.auth_token),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise DeliveryError("twilio", str(exc)) from exc
        if resp.status_code >= 400:
            raise DeliveryError("twilio", _error_detail(resp), status_code=resp.status_code)
        return str(resp.json().get("sid", ""))

    def send_sms(self, phone_number: str, body: str) -> str:
        return self.send_message(phone_number, body, settings.twilio_sms_number)

    def send_whatsapp(self, phone_number: str, body: str, media_url: Optional[str] = None) -> str:
        sender = settings.twilio_whatsapp_number
        return self.send_message(
            f"whatsapp:{phone_number}",
            body,
            f"whatsapp:{sender}" if sender else "",
            media_url=media_url,
        )


class TelegramClient:
    """Client for the Telegram Bot API.

    Rate-limited calls (HTTP 429) are retried after the delay announced
    by Telegram, at most ``max_retries`` times, so a burst of daily
    deliveries does not turn into a burst of failures.
    """

    def __init__(
        self,
        bot_token: Optional[str] = None,
        timeout: int = 10,
        max_retries: int = 3,
    ) -> None:
        self._bot_token = bot_token
        self.timeout = timeout
        self.max_retries = max_retries

    @property
    def bot_token(self) -> str:
        return self._bot_token if self._bot_token is not None else settings.telegram_bot_token

    @property
    def is_configured(self) -> bool:
        return bool(self.bot_token)

    def _request(self, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.is_configured:
            raise DeliveryError("telegram", "TELEGRAM_BOT_TOKEN is not configured")
        url = f"https://api.telegram.org/bot{self.bot_token}/{method}"
        attempt = 0
        while True:
            try:
                resp = requests.post(url, json=payload, timeout=self.timeout)
            except requests.RequestException as exc:
                raise DeliveryError("telegram", str(exc)) from exc
            if resp.status_code == 429 and attempt < self.max_retries:
                attempt += 1
                delay = self._retry_after(resp)
                logger.warning("Telegram %s rate limited, retrying in %.1fs", method, delay)
                time.sleep(delay)
                continue
            try:
                data = resp.json()
            except ValueError:
                raise DeliveryError("telegram", resp.text[:500], status_code=resp.status_code) from None
            if not isinstance(data, dict):
                raise DeliveryError("telegram", resp.text[:500], status_code=resp.status_code)
            if resp.status_code >= 400 or not data.get("ok"):
                raise DeliveryError(
                    "telegram",
                    data.get("description", "request failed"),
                    status_code=resp.status_code,
                    gone=resp.status_code == 403,
                )
            return data.get("result") or {}

    @staticmethod
    def _retry_after(resp: requests.Response) -> float:
        header = resp.headers.get("Retry-After")
        if header is not None:
            try:
                return float(header)
            except ValueError:
                pass
        try:
            return float(resp.json().get("parameters", {}).get("retry_after", 1))
        except (ValueError, TypeError, AttributeError):
            return 1.0

    def send_message(
        self,
        chat_id: str,
        text: str,
        *,
        parse_mode: Optional[str] = None,
        reply_markup: Optional[Dict[str, Any]] = None,
    ) -> int:
        payload: Dict[str, Any] = {"chat_id": chat_id, "text": text}
        if parse_mode:
            payload["parse_mode"] = parse_mode
        if reply_markup:
            payload["reply_markup"] = reply_markup
        return int(self._request("sendMessage", payload).get("message_id", 0))

    def send_photo(
        self,
        chat_id: str,
        photo: str,
        *,
        caption: Optional[str] = None,
        parse_mode: Optional[str] = None,
        reply_markup: Optional[Dict[str, Any]] = None,
    ) -> int:
        payload: Dict[str, Any] = {"chat_id": chat_id, "photo": photo}
        if caption:
            payload["caption"] = caption
        if parse_mode:
            payload["parse_mode"] = parse_mode
        if reply_markup:
            payload["reply_markup"] = reply_markup
        return int(self._request("sendPhoto", payload).get("message_id", 0))


class WebPushClient:
    """Browser push client signing requests with the VAPID key pair."""

    def __init__(
        self,
        private_key: Optional[str] = None,
        subject: Optional[str] = None,
        ttl: int = 86400,
    ) -> None:
        self._private_key = private_key
        self._subject = subject
        self.ttl = ttl

    @property
    def private_key(self) -> str:
        return self._private_key if self._private_key is not None else settings.vapid_private_key

    @property
    def subject(self) -> str:
        return self._subject if self._subject is not None else settings.vapid_subject

    @property
    def is_configured(self) -> bool:
        return bool(self.private_key)

    def send(self, subscription: Dict[str, Any], payload: Dict[str, Any]) -> None:
        """Deliver ``payload`` to one subscription.

        ``subscription`` has the browser shape
        ``{"endpoint": ..., "keys": {"p256dh": ..., "auth": ...}}``.
        """
        if not self.is_configured:
            raise DeliveryError("webpush", "VAPID keys are not configured")
        try:
            webpush(
                subscription_info=subscription,
                data=json.dumps(payload),
                vapid_private_key=self.private_key,
                vapid_claims={"sub": self.subject},
                ttl=self.ttl,
            )
        except WebPushException as exc:
            status_code = exc.response.status_code if exc.response is not None else None
            raise DeliveryError(
                "webpush",
                str(exc),
                status_code=status_code,
                gone=status_code in (404, 410),
            ) from exc
