"""
Durable notifications for parties who are not watching a thread live.

The creator reads the admin inbox (``for_admin``); fans read the rows
addressed to their email.
"""
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.orm import Session

from ..config import get_settings
from ..errors import NotFound
from ..models.notification import Notification

DM_NOTIFICATION = "dm"
SESSION_SCHEDULED_NOTIFICATION = "chat_session_scheduled"
SESSION_LIVE_NOTIFICATION = "chat_session_live"


@dataclass(frozen=True)
class Recipient:
    is_admin: bool = False
    email: Optional[str] = None

    @classmethod
    def admin(cls) -> "Recipient":
        return cls(is_admin=True)

    @classmethod
    def member(cls, email: Optional[str]) -> "Recipient":
        return cls(email=normalize_email(email))


def normalize_email(email: Optional[str]) -> Optional[str]:
    if email is None:
        return None
    email = email.strip().lower()
    return email or None


def clip(text: str, limit: int) -> str:
    text = (text or "").strip()
    return text[:limit] + ("…" if len(text) > limit else "")


class NotificationService:
    """Writes and reads notification rows. Writes are added to the caller's
    transaction; the caller commits."""

    def __init__(self, db: Session):
        self.db = db
        self.settings = get_settings()

    def _add(self, recipient: Recipient, type: str, title: str, body: str, link: Optional[str]) -> Optional[Notification]:
        if not recipient.is_admin and not recipient.email:
            return None
        notification = Notification(
            for_admin=recipient.is_admin,
            for_member_email=None if recipient.is_admin else recipient.email,
            type=type,
            title=title,
            body=body,
            link=link,
            read=False,
        )
        self.db.add(notification)
        return notification

    def notify_admin(self, type: str, title: str, body: str, link: Optional[str] = None):
        return self._add(Recipient.admin(), type, title, body, link)

    def notify_member(self, email: Optional[str], type: str, title: str, body: str, link: Optional[str] = None):
        return self._add(Recipient.member(email), type, title, body, link)

    def notify_new_message(self, conversation, message, sender_is_creator: bool):
        """Address a 'New message' notification to whoever did not send it."""
        text = message.body or "(attachment)"
        if sender_is_creator:
            return self.notify_member(
                conversation.fan_email,
                DM_NOTIFICATION,
                "New message",
                clip(text, self.settings.notification_preview_chars),
                "/dms",
            )
        sender_name = conversation.fan_display_name or conversation.fan_email or "A member"
        return self.notify_admin(
            DM_NOTIFICATION,
            "New message",
            f"{sender_name}: {clip(text, self.settings.notification_preview_chars)}",
            "/admin/dms",
        )

    # ------------------------------------------------------------------
    # Reads (notification-display collaborator)
    # ------------------------------------------------------------------

    def _query(self, recipient: Recipient):
        query = self.db.query(Notification)
        if recipient.is_admin:
            return query.filter(Notification.for_admin.is_(True))
        return query.filter(
            Notification.for_admin.is_(False),
            Notification.for_member_email == recipient.email,
        )

    def list_for(self, recipient: Recipient, unread_only: bool = False, limit: int = 50) -> List[Notification]:
        query = self._query(recipient)
        if unread_only:
            query = query.filter(Notification.read.is_(False))
        return query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()

    def unread_count(self, recipient: Recipient) -> int:
        return self._query(recipient).filter(Notification.read.is_(False)).count()

    def mark_read(self, notification_id: int, recipient: Recipient) -> Notification:
        notification = self._query(recipient).filter(Notification.id == notification_id).first()
        if not notification:
            raise NotFound("Notification not found")
        notification.read = True
        self.db.commit()
        self.db.refresh(notification)
        return notification
