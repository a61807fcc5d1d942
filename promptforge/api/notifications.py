"""
Notifications API.

- POST /api/notifications/send: validate and dispatch an operational notification
- GET  /api/notifications/send: dispatcher statistics
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request

from promptforge.core.config import Settings, get_settings
from promptforge.core.errors import UpstreamError, ValidationError
from promptforge.core.supabase import SupabaseRest, get_backend
from promptforge.features.notifications.dispatcher import ChannelConfig, NotificationDispatcher
from promptforge.features.notifications.models import build_envelope

logger = logging.getLogger("promptforge")

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


def get_dispatcher(
    backend: Optional[SupabaseRest] = Depends(get_backend),
    cfg: Settings = Depends(get_settings),
) -> NotificationDispatcher:
    return NotificationDispatcher(ChannelConfig.from_settings(cfg), backend)


@router.post("/send")
async def send_notification(request: Request, dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Request body must be valid JSON", code="invalid_json")

    envelope = build_envelope(body)

    try:
        dispatcher.send(envelope)
    except UpstreamError as e:
        logger.error(
            "notification.dispatch_failed",
            extra={"error_code": e.code, "event_type": "notification.dispatch_failed"},
        )
        raise UpstreamError(
            "Failed to send notification",
            code="notification_dispatch_failed",
            extra={"details": e.message},
        ) from e

    return {
        "success": True,
        "message": "Notification sent successfully",
        "notificationId": envelope.id,
        "timestamp": envelope.timestamp.isoformat(),
    }


@router.get("/send")
def notification_stats(dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    return {"success": True, "stats": dispatcher.stats()}
