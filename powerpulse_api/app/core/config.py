"""
Simple configuration management.

The ``Settings`` dataclass reads configuration directly from environment
variables.  Defaults are provided for all fields so the service starts
without any provider credentials; channels whose credentials are missing
simply report failed deliveries.  In a production deployment override
these via environment variables or a ``.env`` loader of your choice.
"""

import os
from dataclasses import dataclass, field
from typing import List


def _bool_env(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


def _int_list_env(name: str, default: str) -> List[int]:
    raw = os.getenv(name, default)
    return [int(part) for part in raw.split(",") if part.strip()]


@dataclass
class Settings:
    """Application settings loaded from environment variables."""

    project_name: str = os.getenv("PROJECT_NAME", "PowerPulse Delivery API")
    api_version: str = os.getenv("API_VERSION", "1.0.0")
    debug: bool = _bool_env("DEBUG", "false")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_file: str = os.getenv("LOG_FILE", "")
    secret_key: str = os.getenv("SECRET_KEY", "change_me")
    access_token_expire_minutes: int = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24)))

    # Path to the SQLite database file.  Relative paths are resolved
    # against the package directory by ``core.db``.
    database_url: str = os.getenv("DATABASE_URL", "powerpulse.db")

    # Public URL of the web app, used to build links in messages.
    app_url: str = os.getenv("APP_URL", "http://localhost:3000")

    # Bearer secret expected on /cron endpoints.  Empty disables the check.
    cron_secret: str = os.getenv("CRON_SECRET", "")
    scheduler_enabled: bool = _bool_env("SCHEDULER_ENABLED", "true")

    # Delivery tuning
    default_timezone: str = os.getenv("DEFAULT_TIMEZONE", "America/New_York")
    default_delivery_time: str = os.getenv("DEFAULT_DELIVERY_TIME", "08:00")
    delivery_window_minutes: int = int(os.getenv("DELIVERY_WINDOW_MINUTES", "5"))
    queue_batch_size: int = int(os.getenv("QUEUE_BATCH_SIZE", "10"))
    max_delivery_attempts: int = int(os.getenv("MAX_DELIVERY_ATTEMPTS", "3"))
    retry_backoff_minutes: List[int] = field(
        default_factory=lambda: _int_list_env("RETRY_BACKOFF_MINUTES", "5,15,45")
    )
    stale_processing_minutes: int = int(os.getenv("STALE_PROCESSING_MINUTES", "15"))
    log_retention_days: int = int(os.getenv("LOG_RETENTION_DAYS", "90"))

    # Email (Resend)
    resend_api_key: str = os.getenv("RESEND_API_KEY", "")
    email_from: str = os.getenv("EMAIL_FROM", "PowerPulse <hello@powerpulse.ai>")

    # Twilio (SMS and WhatsApp)
    twilio_account_sid: str = os.getenv("TWILIO_ACCOUNT_SID", "")
    twilio_auth_token: str = os.getenv("TWILIO_AUTH_TOKEN", "")
    twilio_sms_number: str = os.getenv("TWILIO_SMS_NUMBER", "")
    twilio_whatsapp_number: str = os.getenv("TWILIO_WHATSAPP_NUMBER", "")

    # Telegram Bot API
    telegram_bot_token: str = os.getenv("TELEGRAM_BOT_TOKEN", "")

    # Web push (VAPID)
    vapid_public_key: str = os.getenv("VAPID_PUBLIC_KEY", "")
    vapid_private_key: str = os.getenv("VAPID_PRIVATE_KEY", "")
    vapid_subject: str = os.getenv("VAPID_SUBJECT", "mailto:hello@powerpulse.ai")


# Instantiate settings once so other modules can import it without
# repeatedly reading environment variables.  Environment variables must
# be set before this module is imported; tests override attributes on
# the instance directly.
settings = Settings()
