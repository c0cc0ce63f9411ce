"""
Delivery endpoints: preferences, schedule, pause/resume, delivery
history and test messages for the authenticated user.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from powerpulse_api.app.core.security import get_current_user
from powerpulse_api.app.schemas.delivery import (
    ActionResult,
    DeliveryPreferencesResponse,
    DeliveryStatusResponse,
    MESSAGING_CHANNELS,
    PreferencesUpdate,
    QueueItemRead,
    TestNotificationRequest,
)
from powerpulse_api.app.schemas.notification import Notification
from powerpulse_api.app.services.delivery_log_service import DeliveryLogService
from powerpulse_api.app.services.email_service import EmailService
from powerpulse_api.app.services.messaging_service import MessagingService
from powerpulse_api.app.services.notification_service import NotificationService
from powerpulse_api.app.services.preference_service import PreferenceService
from powerpulse_api.app.services.queue_service import QueueService


router = APIRouter()

TEST_TITLE = "🧪 PowerPulse test"
TEST_BODY = "This is a test message. If you can read it, this channel is set up correctly."


@router.get("/preferences", response_model=DeliveryPreferencesResponse)
async def read_preferences(current_user: dict = Depends(get_current_user)) -> DeliveryPreferencesResponse:
    user_id = current_user["user_id"]
    return DeliveryPreferencesResponse(
        preferences=await PreferenceService.get_preferences(user_id),
        schedule=await PreferenceService.get_schedule(user_id),
    )


@router.put("/preferences", response_model=DeliveryPreferencesResponse)
async def update_preferences(
    update: PreferencesUpdate,
    current_user: dict = Depends(get_current_user),
) -> DeliveryPreferencesResponse:
    """Update channel switches, notification types, quiet hours or the schedule.

    Only the fields present in the body are changed.
    """
    try:
        return await PreferenceService.update_preferences(current_user["user_id"], update)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))


@router.post("/pause", response_model=ActionResult)
async def pause_deliveries(current_user: dict = Depends(get_current_user)) -> ActionResult:
    await PreferenceService.pause(current_user["user_id"])
    return ActionResult(success=True, message="Deliveries paused")


@router.post("/resume", response_model=ActionResult)
async def resume_deliveries(current_user: dict = Depends(get_current_user)) -> ActionResult:
    schedule = await PreferenceService.resume(current_user["user_id"])
    return ActionResult(
        success=True,
        message=f"Deliveries resumed at {schedule.scheduled_time} ({schedule.timezone})",
    )


@router.get("/status", response_model=DeliveryStatusResponse)
async def delivery_status(
    channel: str = Query("all"),
    start: Optional[datetime] = Query(None, description="Inclusive lower bound (ISO 8601)"),
    end: Optional[datetime] = Query(None, description="Exclusive upper bound (ISO 8601)"),
    limit: int = Query(50, ge=1, le=500),
    current_user: dict = Depends(get_current_user),
) -> DeliveryStatusResponse:
    user_id = current_user["user_id"]
    logs = await DeliveryLogService.list_logs(user_id, channel=channel, start=start, end=end, limit=limit)
    return DeliveryStatusResponse(
        logs=logs,
        schedule=await PreferenceService.get_schedule(user_id),
        stats=DeliveryLogService.stats(logs),
    )


@router.get("/queue", response_model=List[QueueItemRead])
async def list_queue(
    limit: int = Query(50, ge=1, le=200),
    current_user: dict = Depends(get_current_user),
) -> List[QueueItemRead]:
    return await QueueService.list_for_user(current_user["user_id"], limit=limit)


@router.post("/test", response_model=ActionResult)
async def send_test(
    request: TestNotificationRequest,
    current_user: dict = Depends(get_current_user),
) -> ActionResult:
    """Send a test message over one channel and report whether it went out."""
    user_id = current_user["user_id"]
    channel = request.channel
    if channel == "email":
        success = await EmailService.send_test_email(user_id)
    elif channel in MESSAGING_CHANNELS:
        success = await MessagingService.send_text(user_id, channel, TEST_TITLE, TEST_BODY, log_type="test")
    else:
        notification = Notification(type="system", title=TEST_TITLE, body=TEST_BODY, tag="test")
        results = await NotificationService.send_notification(
            user_id, notification, [channel], log_type="test"
        )
        success = results.get(channel, False)
    return ActionResult(success=success, message=None if success else f"Test {channel} message failed")
