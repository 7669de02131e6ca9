"""
Notification routes.

Endpoints:
- POST /api/notifications - Create a notification
- GET /api/notifications/{notification_id} - Get one notification
- POST /api/notifications/{notification_id}/read - Mark as read
- GET /api/users/{user_id}/notifications - List a user's notifications

Validation, not-found and infrastructure errors are turned into responses by
the exception handlers registered in main.py.
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query

from core.enums import NotificationStatus
from core.notifications.errors import InvalidTransitionError
from core.notifications.models import NotificationCreate
from core.notifications.orchestrator import NotificationPipeline
from web_api.pipeline import get_pipeline

router = APIRouter(prefix="/api", tags=["notifications"])


@router.post("/notifications", status_code=202)
async def create_notification(
    request: NotificationCreate,
    pipeline: NotificationPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """
    Accept a notification for processing.

    Returns the id and the status it was routed to (processing, scheduled,
    queued, failed or cancelled for a duplicate).
    """
    notification = await pipeline.ingest(request)
    return {
        "id": notification.id,
        "status": notification.status.value,
        "failure_reason": notification.failure_reason,
    }


@router.get("/notifications/{notification_id}")
async def get_notification(
    notification_id: str,
    pipeline: NotificationPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    notification = await pipeline.get_notification(notification_id)
    return notification.to_dict()


@router.post("/notifications/{notification_id}/read")
async def mark_notification_read(
    notification_id: str,
    pipeline: NotificationPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """Mark a sent or delivered notification as read (409 otherwise)."""
    try:
        notification = await pipeline.mark_read(notification_id)
    except InvalidTransitionError as e:
        raise HTTPException(409, str(e))
    return {"id": notification.id, "status": notification.status.value}


@router.get("/users/{user_id}/notifications")
async def list_user_notifications(
    user_id: str,
    status: NotificationStatus | None = None,
    limit: int = Query(50, ge=1, le=500),
    skip: int = Query(0, ge=0),
    pipeline: NotificationPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    notifications = await pipeline.list_for_user(user_id, status=status, limit=limit, skip=skip)
    return {"notifications": [n.to_dict() for n in notifications]}
