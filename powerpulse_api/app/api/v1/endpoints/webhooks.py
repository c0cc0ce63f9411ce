"""
Inbound messenger webhooks.

Telegram posts Bot API updates as JSON; Twilio posts inbound SMS and
WhatsApp messages as form data and expects a TwiML document back.
Both are used for opt-out (``STOP`` / ``/stop``) and opt-in, and
Telegram additionally for linking a chat to an account.
"""

from typing import Any, Dict
from xml.sax.saxutils import escape

from fastapi import APIRouter, Body, Request, Response

from powerpulse_api.app.services.messaging_service import MessagingService


router = APIRouter()


@router.post("/telegram")
async def telegram_webhook(update: Dict[str, Any] = Body(...)) -> dict:
    action = await MessagingService.handle_telegram_update(update)
    return {"ok": True, "action": action}


@router.post("/twilio")
async def twilio_webhook(request: Request) -> Response:
    form = await request.form()
    reply = await MessagingService.handle_twilio_inbound(dict(form))
    if reply:
        twiml = f"<Response><Message>{escape(reply)}</Message></Response>"
    else:
        twiml = "<Response/>"
    return Response(
        content=f'<?xml version="1.0" encoding="UTF-8"?>{twiml}',
        media_type="application/xml",
    )
