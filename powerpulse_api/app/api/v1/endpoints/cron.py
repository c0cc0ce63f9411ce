"""
Cron endpoints.

These routes run the scheduler's jobs on demand.  They are meant for an
external cron (or an operator) and are protected by the
``CRON_SECRET`` bearer token rather than a user login.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status

from powerpulse_api.app.core.db import to_db_time, utcnow
from powerpulse_api.app.core.security import verify_cron_request
from powerpulse_api.app.services.scheduler import delivery_scheduler


router = APIRouter(dependencies=[Depends(verify_cron_request)])


@router.post("/run")
async def run_delivery_pass() -> dict:
    """Queue due daily deliveries and process one batch of the queue."""
    now = utcnow()
    result = await delivery_scheduler.run_main(now)
    return {**result, "timestamp": to_db_time(now)}


@router.post("/cleanup")
async def run_cleanup() -> dict:
    now = utcnow()
    result = await delivery_scheduler.cleanup_old_logs(now)
    return {**result, "timestamp": to_db_time(now)}


@router.post("/re-engagement")
async def run_re_engagement() -> dict:
    now = utcnow()
    queued = await delivery_scheduler.check_for_inactive_users(now)
    processed = await delivery_scheduler.process_delivery_queue(now)
    return {"queued": queued, "processed": processed, "timestamp": to_db_time(now)}


@router.post("/trigger/daily/{user_id}")
async def trigger_daily(user_id: int) -> dict:
    """Send today's audio to one user now, even if it was already sent."""
    now = utcnow()
    try:
        result = await delivery_scheduler.trigger_daily_delivery(user_id, now)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return {**result, "timestamp": to_db_time(now)}


@router.post("/trigger/re-engagement/{user_id}")
async def trigger_re_engagement(user_id: int, days: int = Query(7, ge=1)) -> dict:
    now = utcnow()
    try:
        result = await delivery_scheduler.trigger_re_engagement(user_id, days, now)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return {**result, "timestamp": to_db_time(now)}


@router.get("/jobs")
async def list_jobs() -> dict:
    return {"running": delivery_scheduler.running, "jobs": delivery_scheduler.jobs()}
