import tempfile
from pathlib import Path
from typing import Optional

from powerpulse_api.app.core.config import settings
from powerpulse_api.app.core.db import get_connection, init_db
from powerpulse_api.app.schemas.content import AudioSessionCreate
from powerpulse_api.app.schemas.user import UserCreate
from powerpulse_api.app.services.content_service import ContentService
from powerpulse_api.app.services.user_service import UserService


_OVERRIDES = {
    "scheduler_enabled": False,
    "cron_secret": "",
    "resend_api_key": "",
    "twilio_account_sid": "",
    "twilio_auth_token": "",
    "telegram_bot_token": "",
    "vapid_private_key": "",
    "vapid_public_key": "",
}


def use_temp_database(testcase) -> None:
    """Point the app at a fresh SQLite file for the duration of ``testcase``.

    Provider credentials are cleared so nothing can reach a real API;
    tests patch the provider clients they need.
    """
    tmpdir = tempfile.TemporaryDirectory()
    saved = {name: getattr(settings, name) for name in _OVERRIDES}
    saved["database_url"] = settings.database_url
    for name, value in _OVERRIDES.items():
        setattr(settings, name, value)
    settings.database_url = str(Path(tmpdir.name) / "test.db")
    init_db()

    def restore():
        for name, value in saved.items():
            setattr(settings, name, value)
        tmpdir.cleanup()

    testcase.addCleanup(restore)


async def create_user(
    email: str = "user@example.com",
    *,
    timezone: Optional[str] = "UTC",
    delivery_time: Optional[str] = "08:00",
    phone_number: Optional[str] = None,
    name: Optional[str] = "Alex",
):
    return await UserService.create_user(
        UserCreate(
            email=email,
            password="secret123",
            name=name,
            phone_number=phone_number,
            timezone=timezone,
            preferred_delivery_time=delivery_time,
        )
    )


async def create_session(title: str = "Morning Focus", **fields):
    fields.setdefault("audio_url", "https://cdn.example.com/audio/1.mp3")
    fields.setdefault("duration_seconds", 300)
    return await ContentService.create_session(AudioSessionCreate(title=title, **fields))


def execute(sql: str, params: tuple = ()) -> None:
    conn = get_connection()
    try:
        conn.execute(sql, params)
        conn.commit()
    finally:
        conn.close()


def drop_queue(type: Optional[str] = None) -> None:
    """Remove queue items (all, or of one type) created as a side effect of setup."""
    if type is None:
        execute("DELETE FROM delivery_queue")
    else:
        execute("DELETE FROM delivery_queue WHERE type = ?", (type,))
