"""Back-office notification history API."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from app.services.auth import require_admin
from app.services.notification import (
    NotificationChannel,
    NotificationEvent,
    notification_service,
)

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("/history")
async def notification_history(
    event: Optional[str] = None,
    channel: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    _admin: dict = Depends(require_admin),
):
    try:
        event_filter = NotificationEvent(event) if event else None
        channel_filter = NotificationChannel(channel) if channel else None
    except ValueError as e:
        raise HTTPException(400, str(e))
    items = notification_service.get_history(event_filter, channel_filter, limit)
    return [n.to_dict() for n in reversed(items)]


@router.get("/stats")
async def notification_stats(_admin: dict = Depends(require_admin)):
    return notification_service.stats()
