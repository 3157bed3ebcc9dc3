"""
Notification endpoints.

Background renewals and fleet pushes report here, since nobody is
watching a WebSocket when they run.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from core.notification import get_notification_store
from models.notification import NotificationListResponse, NotificationType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.get(
    "/",
    response_model=NotificationListResponse,
    summary="List Notifications",
    description="""
Retrieve notifications, newest first.

**Titles you will see:**
- `Renew Certificate Success` / `Renew Certificate Error` from the auto-renewal sweep
- `Sync Certificate Success` / `Sync Certificate Error`, one per node and push

`content` is a message template whose `%{placeholders}` are filled from
`details`.
""",
)
async def list_notifications(
    type: Optional[NotificationType] = Query(None, description="Filter by notification type"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=200, description="Notifications per page"),
) -> NotificationListResponse:
    return await get_notification_store().list_notifications(type=type, page=page, page_size=page_size)


@router.delete(
    "/{notification_id}",
    summary="Dismiss Notification",
    responses={404: {"description": "Notification not found"}},
)
async def delete_notification(notification_id: int) -> dict:
    if not await get_notification_store().delete(notification_id):
        raise HTTPException(
            status_code=404,
            detail={
                "error": "notification_not_found",
                "message": f"Notification {notification_id} not found",
                "suggestion": "Use GET /notifications/ to list notifications",
            },
        )
    return {"success": True, "message": f"Notification {notification_id} dismissed"}
