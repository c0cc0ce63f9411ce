"""
Notification endpoints: the in-app inbox and web push subscriptions.
"""

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status

from powerpulse_api.app.core.config import settings
from powerpulse_api.app.core.security import get_current_user
from powerpulse_api.app.schemas.delivery import ActionResult
from powerpulse_api.app.schemas.notification import (
    InAppNotificationRead,
    PushSubscriptionIn,
    PushSubscriptionStatus,
    PushUnsubscribe,
    UnreadCount,
)
from powerpulse_api.app.services.notification_service import NotificationService


router = APIRouter()


@router.get("/", response_model=List[InAppNotificationRead])
async def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: dict = Depends(get_current_user),
) -> List[InAppNotificationRead]:
    return await NotificationService.list_in_app(
        current_user["user_id"], unread_only=unread_only, limit=limit, offset=offset
    )


@router.get("/unread-count", response_model=UnreadCount)
async def unread_count(current_user: dict = Depends(get_current_user)) -> UnreadCount:
    return UnreadCount(unread=await NotificationService.unread_count(current_user["user_id"]))


@router.post("/read-all", response_model=ActionResult)
async def mark_all_read(current_user: dict = Depends(get_current_user)) -> ActionResult:
    updated = await NotificationService.mark_all_read(current_user["user_id"])
    return ActionResult(success=True, message=f"{updated} notification(s) marked as read")


@router.post("/{notification_id}/read", response_model=ActionResult)
async def mark_read(
    notification_id: int,
    current_user: dict = Depends(get_current_user),
) -> ActionResult:
    try:
        await NotificationService.mark_read(current_user["user_id"], notification_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return ActionResult(success=True)


@router.get("/push/status", response_model=PushSubscriptionStatus)
async def push_status(current_user: dict = Depends(get_current_user)) -> PushSubscriptionStatus:
    return await NotificationService.subscription_status(current_user["user_id"])


@router.get("/push/vapid-key")
async def vapid_public_key() -> dict:
    """Public VAPID key the browser needs to create a subscription."""
    if not settings.vapid_public_key:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Push is not configured")
    return {"public_key": settings.vapid_public_key}


@router.post("/push/subscribe", response_model=ActionResult, status_code=status.HTTP_201_CREATED)
async def subscribe(
    subscription: PushSubscriptionIn,
    current_user: dict = Depends(get_current_user),
) -> ActionResult:
    await NotificationService.save_subscription(current_user["user_id"], subscription)
    return ActionResult(success=True, message="Subscribed to push notifications")


@router.delete("/push/subscribe", response_model=ActionResult)
async def unsubscribe(
    payload: PushUnsubscribe,
    current_user: dict = Depends(get_current_user),
) -> ActionResult:
    removed = await NotificationService.remove_subscription(current_user["user_id"], payload.endpoint)
    if not removed:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found")
    return ActionResult(success=True, message="Unsubscribed from push notifications")
