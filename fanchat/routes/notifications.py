"""
Notification routes for the bell/badge UI.
"""
from fastapi import APIRouter, Depends
from typing import List

from ..dependencies import get_notifications, get_recipient
from ..schemas.notification import NotificationResponse
from ..services.notifications import NotificationService, Recipient

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.get("", response_model=List[NotificationResponse])
def get_notifications_for_viewer(
    unread_only: bool = False,
    notifications: NotificationService = Depends(get_notifications),
    recipient: Recipient = Depends(get_recipient),
):
    """Newest notifications addressed to the current viewer."""
    return notifications.list_for(recipient, unread_only=unread_only)


@router.get("/unread/count")
def get_unread_count(
    notifications: NotificationService = Depends(get_notifications),
    recipient: Recipient = Depends(get_recipient),
):
    """Get count of unread notifications for the current viewer."""
    return {"count": notifications.unread_count(recipient)}


@router.patch("/{notification_id}/read", response_model=NotificationResponse)
def mark_as_read(
    notification_id: int,
    notifications: NotificationService = Depends(get_notifications),
    recipient: Recipient = Depends(get_recipient),
):
    return notifications.mark_read(notification_id, recipient)
