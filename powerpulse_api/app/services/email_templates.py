"""
HTML email templates.

The markup lives in ``templates/*.html`` and is rendered with Jinja2.
Every template extends ``layout.html``; autoescaping is on, so callers
pass raw user data.
"""

from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape


TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"

_env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(enabled_extensions=("html",), default_for_string=True, default=True),
    trim_blocks=True,
    lstrip_blocks=True,
)


def render(template: str, **context) -> str:
    return _env.get_template(template).render(**context).strip()


def _format_duration(seconds: int) -> str:
    minutes, secs = divmod(max(seconds, 0), 60)
    return f"{minutes}:{secs:02d}"


def daily_audio(
    user_name: str,
    audio_title: str,
    duration_seconds: int,
    audio_url: str,
    streak_count: int,
    app_url: str,
    category: Optional[str] = None,
    preview_text: Optional[str] = None,
) -> str:
    return render(
        "daily_audio.html",
        user_name=user_name,
        audio_title=audio_title,
        duration=_format_duration(duration_seconds),
        audio_url=audio_url,
        streak_count=streak_count,
        app_url=app_url,
        category=category,
        preview_text=preview_text,
    )


def welcome(user_name: str, app_url: str) -> str:
    return render("welcome.html", user_name=user_name, app_url=app_url)


def streak_milestone(
    user_name: str,
    milestone: int,
    next_milestone: int,
    badge_url: str,
    app_url: str,
) -> str:
    return render(
        "streak_milestone.html",
        user_name=user_name,
        milestone=milestone,
        next_milestone=next_milestone,
        badge_url=badge_url,
        app_url=app_url,
    )


def comeback(user_name: str, days_away: int, message: str, app_url: str) -> str:
    return render(
        "comeback.html",
        user_name=user_name,
        days_away=days_away,
        message=message,
        app_url=app_url,
    )


def test_message(user_name: str, app_url: str) -> str:
    return render("test_message.html", user_name=user_name, app_url=app_url)
