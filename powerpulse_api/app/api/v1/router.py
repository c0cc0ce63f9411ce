"""
Top-level router for version 1 of the API.

This router aggregates the domain routers under a unified prefix.  When
a new domain is introduced, include its router here.
"""

from fastapi import APIRouter

from .endpoints import content, cron, delivery, notifications, users, webhooks

router = APIRouter()

router.include_router(users.router, prefix="/users", tags=["users"])
router.include_router(content.router, prefix="/content", tags=["content"])
router.include_router(delivery.router, prefix="/delivery", tags=["delivery"])
router.include_router(notifications.router, prefix="/notifications", tags=["notifications"])
router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
router.include_router(cron.router, prefix="/cron", tags=["cron"])
