"""
Conversation Store
==================
Append-only message log per conversation with an always-fresh summary
(last message time and preview) on the parent conversation.

A conversation's id is the fan's user id. Only the fan and the creator may
write to it.
"""
import threading
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from pydantic import TypeAdapter, ValidationError
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from ..auth import CreatorAuthority, get_creator_authority
from ..config import get_settings
from ..database import SessionLocal
from ..errors import Forbidden, InvalidMessage, InvalidState, NotFound, wrap_store_errors
from ..logging_config import store_logger as logger, timed
from ..models.conversation import Conversation, Message
from ..models.types import utcnow
from ..schemas.message import LockedAttachment, PlainAttachment
from .fanout import MESSAGE_CREATED, MESSAGE_UPDATED, EventHub, LiveStream, emit_message_event, event_hub, message_topic
from .notifications import NotificationService, clip, normalize_email

DM_STORAGE_PREFIX = "dm-attachments"

_plain_adapter = TypeAdapter(PlainAttachment)
_locked_adapter = TypeAdapter(LockedAttachment)


# ============================================================
# STORE CLOCK
# ============================================================

class StoreClock:
    """Hands out strictly increasing timestamps so message order is total."""

    def __init__(self, source: Callable[[], datetime] = utcnow):
        self.source = source
        self._last: Optional[datetime] = None
        self._lock = threading.Lock()

    def next(self) -> datetime:
        with self._lock:
            now = self.source()
            if self._last is not None and now <= self._last:
                now = self._last + timedelta(microseconds=1)
            self._last = now
            return now


store_clock = StoreClock()


def new_message_id() -> str:
    return uuid.uuid4().hex


def upload_prefix(conversation_id: str, message_id: str) -> str:
    """Storage path prefix the media-upload collaborator writes under."""
    return f"{DM_STORAGE_PREFIX}/{conversation_id}/{message_id}/"


def message_preview(body: Optional[str], limit: int) -> str:
    return clip(body or "", limit) or "(attachment)"


# ============================================================
# STORE
# ============================================================

class ConversationStore:
    def __init__(
        self,
        db: Session,
        authority: Optional[CreatorAuthority] = None,
        hub: Optional[EventHub] = None,
        clock: Optional[StoreClock] = None,
    ):
        self.db = db
        self.authority = authority or get_creator_authority()
        self.hub = hub or event_hub
        self.clock = clock or store_clock
        self.settings = get_settings()
        self.notifications = NotificationService(db)

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    @wrap_store_errors
    def ensure_conversation(self, fan_id: str, email: Optional[str], display_name: Optional[str]) -> str:
        """Create the fan's conversation if absent; only fill in missing fields otherwise."""
        if not fan_id:
            raise InvalidMessage("Fan id is required")
        if self.authority.is_creator(fan_id):
            raise Forbidden("The creator cannot own a conversation")

        email = normalize_email(email)
        display_name = display_name.strip() if display_name and display_name.strip() else None

        conversation = self.db.get(Conversation, fan_id)
        if conversation is None:
            now = self.clock.next()
            conversation = Conversation(
                id=fan_id,
                fan_email=email,
                fan_display_name=display_name,
                created_at=now,
                updated_at=now,
            )
            self.db.add(conversation)
            try:
                self.db.commit()
            except IntegrityError:
                # Lost a creation race; the other writer's record stands
                self.db.rollback()
                return self.ensure_conversation(fan_id, email, display_name)
            logger.info("Conversation created", conversation_id=fan_id)
            return fan_id
        if conversation.fan_email is None and email:
            conversation.fan_email = email
        if conversation.fan_display_name is None and display_name:
            conversation.fan_display_name = display_name
        self.db.commit()
        return fan_id

    def get_conversation(self, conversation_id: str) -> Conversation:
        conversation = self.db.get(Conversation, conversation_id)
        if conversation is None:
            raise NotFound(f"Conversation '{conversation_id}' not found")
        return conversation

    def find_by_email(self, email: Optional[str]) -> Optional[Conversation]:
        email = normalize_email(email)
        if not email:
            return None
        return self.db.query(Conversation).filter(Conversation.fan_email == email).first()

    def list_conversations(self, limit: Optional[int] = None, requests_only: bool = False) -> List[Conversation]:
        """Creator inbox, most recently active first."""
        query = self.db.query(Conversation)
        if requests_only:
            query = query.filter(Conversation.first_message_from_member.is_(True))
        return (
            query.order_by(Conversation.last_message_at.desc().nulls_last(), Conversation.created_at.desc())
            .limit(limit or self.settings.conversation_list_limit)
            .all()
        )

    def can_write(self, conversation: Conversation, sender_id: str, sender_email: Optional[str] = None) -> bool:
        return sender_id == conversation.id or self.authority.is_creator(sender_id, sender_email)

    def can_read(self, conversation_id: str, viewer_uid: str, viewer_email: Optional[str] = None) -> bool:
        return viewer_uid == conversation_id or self.authority.is_creator(viewer_uid, viewer_email)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def allocate_message_id(self) -> str:
        """Pre-allocate a message id so media can be uploaded under it first."""
        return new_message_id()

    def _build_attachments(self, plain_media: Sequence, locked_media: Optional[Sequence]) -> list:
        attachments = []
        try:
            for item in plain_media or ():
                attachments.append(_plain_adapter.validate_python(item).model_dump())
            seen_unlock_ids = set()
            for item in locked_media or ():
                locked = _locked_adapter.validate_python(item)
                if not (self.settings.min_unlock_price_cents <= locked.price_cents <= self.settings.max_unlock_price_cents):
                    raise InvalidMessage(
                        "Locked media price out of range",
                        {
                            "price_cents": locked.price_cents,
                            "min": self.settings.min_unlock_price_cents,
                            "max": self.settings.max_unlock_price_cents,
                        },
                    )
                unlock_id = locked.unlock_id or uuid.uuid4().hex[:12]
                if unlock_id in seen_unlock_ids:
                    raise InvalidMessage("Duplicate unlock id in message", {"unlock_id": unlock_id})
                seen_unlock_ids.add(unlock_id)
                attachments.append(locked.model_copy(update={"unlock_id": unlock_id}).model_dump())
        except ValidationError as e:
            raise InvalidMessage("Invalid attachment", {"errors": e.errors(include_url=False)}) from e

        for attachment in attachments:
            if not attachment["url"] or not attachment["url"].strip():
                raise InvalidMessage("Attachment URL is required")
        return attachments

    @timed(logger)
    @wrap_store_errors
    def append_message(
        self,
        conversation_id: str,
        sender_id: str,
        sender_email: Optional[str],
        body: Optional[str],
        plain_media: Sequence = (),
        locked_media: Optional[Sequence] = None,
        explicit_message_id: Optional[str] = None,
    ) -> Message:
        """Write a message and refresh the conversation summary in one transaction.

        With ``explicit_message_id`` the write is an upsert by id: a message
        already stored under that id keeps its original creation time. Only
        its original sender may resend it, and a message carrying locked
        media cannot be rewritten.
        """
        body = (body or "").strip() or None
        attachments = self._build_attachments(plain_media, locked_media)
        if body is None and not attachments:
            raise InvalidMessage("A message needs text or at least one attachment")

        conversation = self.get_conversation(conversation_id)
        if not self.can_write(conversation, sender_id, sender_email):
            raise Forbidden("Sender is not a participant in this conversation")

        now = self.clock.next()
        message = None
        if explicit_message_id:
            message = self.db.get(Message, explicit_message_id)
            if message is not None:
                if message.conversation_id != conversation_id:
                    raise InvalidState("Message id belongs to another conversation")
                if message.sender_id != sender_id:
                    raise Forbidden("Only the original sender can resend a message")
                if message.locked_items:
                    raise InvalidState("Messages with locked media cannot be changed", {"message_id": message.id})

        created = message is None
        if created:
            message = Message(
                id=explicit_message_id or new_message_id(),
                conversation_id=conversation_id,
                created_at=now,
            )
            self.db.add(message)
        message.sender_id = sender_id
        message.sender_email = normalize_email(sender_email)
        message.body = body
        message.attachments = attachments

        conversation.updated_at = now
        conversation.last_message_at = now
        conversation.last_message_preview = message_preview(body, self.settings.preview_chars)

        # First message ever: set the write-once flag only while it is still null
        if conversation.first_message_from_member is None:
            self.db.execute(
                update(Conversation)
                .where(
                    Conversation.id == conversation_id,
                    Conversation.first_message_from_member.is_(None),
                )
                .values(first_message_from_member=(sender_id == conversation_id))
                .execution_options(synchronize_session=False)
            )

        if created:
            sender_is_creator = sender_id != conversation_id
            self.notifications.notify_new_message(conversation, message, sender_is_creator)

        self.db.commit()
        self.db.refresh(message)
        self.db.refresh(conversation)

        emit_message_event(message, MESSAGE_CREATED if created else MESSAGE_UPDATED, self.hub)
        logger.info(
            "Message appended",
            conversation_id=conversation_id,
            message_id=message.id,
            sender_id=sender_id,
            attachments=len(attachments),
            upsert=not created,
        )
        return message

    def list_messages(self, conversation_id: str, limit: Optional[int] = None) -> List[Message]:
        """Most recent ``limit`` messages, oldest first, ordered by store time."""
        return load_message_window(self.db, conversation_id, limit or self.settings.message_window)


# ============================================================
# LIVE SUBSCRIPTION
# ============================================================

def load_message_window(db: Session, conversation_id: str, limit: int) -> List[Message]:
    newest = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(limit)
        .all()
    )
    newest.reverse()
    return newest


def _load_snapshot(session_factory, conversation_id: str, limit: int) -> List[Message]:
    with session_factory() as db:
        messages = load_message_window(db, conversation_id, limit)
        db.expunge_all()
        return messages


def subscribe_messages(
    conversation_id: str,
    session_factory=None,
    hub: Optional[EventHub] = None,
    limit: Optional[int] = None,
    keepalive: Optional[float] = None,
) -> LiveStream:
    """Live, ascending-by-store-time window of a conversation's messages.

    Yields the current window first, then a fresh window after every append.
    With ``keepalive`` set, yields None whenever that many seconds pass
    without a change. Must be called from a running event loop.
    """
    session_factory = session_factory or SessionLocal
    hub = hub or event_hub
    limit = limit or get_settings().message_window
    # Subscribed before the first read so no append can slip between them
    subscription = hub.subscribe(message_topic(conversation_id))
    return LiveStream(subscription, _message_snapshots(subscription, session_factory, conversation_id, limit, keepalive))


async def _message_snapshots(subscription, session_factory, conversation_id, limit, keepalive):
    try:
        yield await run_in_threadpool(_load_snapshot, session_factory, conversation_id, limit)
        while True:
            event = await subscription.get(timeout=keepalive)
            if event is None:
                yield None
                continue
            subscription.drain()
            yield await run_in_threadpool(_load_snapshot, session_factory, conversation_id, limit)
    finally:
        subscription.close()
