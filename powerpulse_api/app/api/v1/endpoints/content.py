"""
Content endpoints: audio sessions and listening streaks.

Sessions are registered by the content pipeline with an admin token.
Users browse their library, open a session and report listens, which
drive the streak counter.
"""

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status

from powerpulse_api.app.core.db import utcnow
from powerpulse_api.app.core.security import ADMIN_ROLE, get_current_user, require_roles
from powerpulse_api.app.schemas.content import AudioSessionCreate, AudioSessionRead, StreakRead
from powerpulse_api.app.services.content_service import ContentService
from powerpulse_api.app.services.preference_service import PreferenceService
from powerpulse_api.app.services.schedule_math import local_now
from powerpulse_api.app.services.streak_service import StreakService


router = APIRouter()


@router.post(
    "/",
    response_model=AudioSessionRead,
    status_code=status.HTTP_201_CREATED,
    summary="Register an audio session",
)
async def create_session(
    data: AudioSessionCreate,
    current_user: dict = Depends(require_roles(ADMIN_ROLE)),
) -> AudioSessionRead:
    """Register generated content.

    Leave ``user_id`` empty for shared library content.  A session
    without ``audio_url`` is stored but never delivered.
    """
    try:
        return await ContentService.create_session(data)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


@router.get("/library", response_model=List[AudioSessionRead])
async def list_library(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: dict = Depends(get_current_user),
) -> List[AudioSessionRead]:
    return await ContentService.list_library(current_user["user_id"], limit=limit, offset=offset)


@router.get("/streak", response_model=StreakRead)
async def read_streak(current_user: dict = Depends(get_current_user)) -> StreakRead:
    return await StreakService.get_streak(current_user["user_id"])


@router.get("/{session_id}", response_model=AudioSessionRead)
async def read_session(
    session_id: int,
    current_user: dict = Depends(get_current_user),
) -> AudioSessionRead:
    try:
        session = await ContentService.get_session(session_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if session.user_id is not None and session.user_id != current_user["user_id"] and current_user["role_id"] != ADMIN_ROLE:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your session")
    return session


@router.post("/{session_id}/listen", response_model=StreakRead)
async def record_listen(
    session_id: int,
    current_user: dict = Depends(get_current_user),
) -> StreakRead:
    """Record that the caller listened to a session today (in their timezone)."""
    user_id = current_user["user_id"]
    try:
        session = await ContentService.get_session(session_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if session.user_id is not None and session.user_id != user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your session")
    tz_name = await PreferenceService.user_timezone(user_id)
    return await StreakService.record_listen(user_id, local_now(tz_name, utcnow()).date())
