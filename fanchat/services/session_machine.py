"""
Chat Session State Machine
==========================
Lifecycle of a scheduled live-chat window layered over a conversation:

    scheduled --start_session--> active --end/expiry--> ended

Sessions never open on their own at ``scheduled_start``; the creator starts
them explicitly. Expiry is lazy: any reader that sees the window has passed
converges the stored status to ``ended``.
"""
import re
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..auth import CreatorAuthority, get_creator_authority
from ..config import get_settings
from ..errors import DuplicateIgnored, Forbidden, InvalidState, NotFound, wrap_store_errors
from ..logging_config import session_logger as logger
from ..models.chat_session import ChatSession
from ..models.conversation import Conversation, Message
from ..models.types import utcnow
from .conversation_store import ConversationStore
from .fanout import EventHub, emit_session_updated, event_hub
from .notifications import (
    NotificationService,
    SESSION_LIVE_NOTIFICATION,
    SESSION_SCHEDULED_NOTIFICATION,
    normalize_email,
)

SCHEDULED = ChatSession.STATUS_SCHEDULED
ACTIVE = ChatSession.STATUS_ACTIVE
ENDED = ChatSession.STATUS_ENDED

CHAT_SESSION_TREAT_PREFIX = "chat-session"


# ============================================================
# PURE DERIVATIONS
# ============================================================

def duration_from_treat_id(treat_id: Optional[str], default: int = 15, maximum: int = 120) -> int:
    """Parse the session length from a treat id such as ``chat-session-30``."""
    if not treat_id:
        return default
    match = re.match(rf"^{CHAT_SESSION_TREAT_PREFIX}-?(\d+)", treat_id.strip(), re.IGNORECASE)
    if not match:
        return default
    minutes = int(match.group(1))
    return min(maximum, minutes) if minutes > 0 else default


def is_chat_session_treat(treat_id: Optional[str]) -> bool:
    return bool(treat_id) and treat_id.strip().lower().startswith(CHAT_SESSION_TREAT_PREFIX)


def session_end(chat_session: ChatSession) -> datetime:
    return chat_session.scheduled_start + timedelta(minutes=chat_session.duration_minutes)


def join_opens_at(chat_session: ChatSession, early_join: timedelta) -> datetime:
    return chat_session.scheduled_start - early_join


def is_expired(chat_session: ChatSession, now: datetime) -> bool:
    return now >= session_end(chat_session)


def is_presentable(chat_session: ChatSession, now: datetime, early_join: timedelta) -> bool:
    """Whether the fan should see this session's chat screen right now."""
    return (
        chat_session.status != ENDED
        and now >= join_opens_at(chat_session, early_join)
        and now < session_end(chat_session)
    )


def is_messaging_allowed(chat_session: ChatSession, now: datetime, early_join: timedelta) -> bool:
    """Presentable and explicitly started by the creator."""
    return is_presentable(chat_session, now, early_join) and chat_session.started_at is not None


# ============================================================
# STATE MACHINE
# ============================================================

class SessionStateMachine:
    def __init__(
        self,
        db: Session,
        store: Optional[ConversationStore] = None,
        authority: Optional[CreatorAuthority] = None,
        hub: Optional[EventHub] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.authority = authority or get_creator_authority()
        self.hub = hub or event_hub
        self.store = store or ConversationStore(db, authority=self.authority, hub=self.hub)
        self.clock = clock
        self.settings = get_settings()
        self.early_join = timedelta(minutes=self.settings.early_join_margin_minutes)
        self.notifications = NotificationService(db)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def presentable(self, chat_session: ChatSession, now: Optional[datetime] = None) -> bool:
        return is_presentable(chat_session, now or self.clock(), self.early_join)

    def messaging_allowed(self, chat_session: ChatSession, now: Optional[datetime] = None) -> bool:
        return is_messaging_allowed(chat_session, now or self.clock(), self.early_join)

    def describe(self, chat_session: ChatSession) -> dict:
        """Session fields plus the viewer-facing derivations at the current time."""
        now = self.clock()
        return {
            "id": chat_session.id,
            "purchase_id": chat_session.purchase_id,
            "conversation_id": chat_session.conversation_id,
            "fan_email": chat_session.fan_email,
            "fan_name": chat_session.fan_name,
            "scheduled_start": chat_session.scheduled_start,
            "started_at": chat_session.started_at,
            "duration_minutes": chat_session.duration_minutes,
            "status": chat_session.status,
            "presentable": is_presentable(chat_session, now, self.early_join),
            "messaging_allowed": is_messaging_allowed(chat_session, now, self.early_join),
        }

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    @wrap_store_errors
    def schedule_session(
        self,
        purchase_id: str,
        fan_email: Optional[str],
        fan_name: Optional[str],
        scheduled_start: datetime,
        duration_minutes: Optional[int] = None,
        conversation_id: Optional[str] = None,
    ) -> ChatSession:
        """Create the session for a scheduled purchase.

        Scheduling the same purchase twice returns the existing session.
        """
        try:
            return self._create_session(
                purchase_id, fan_email, fan_name, scheduled_start, duration_minutes, conversation_id
            )
        except DuplicateIgnored as dup:
            logger.info("Duplicate schedule ignored", purchase_id=purchase_id, session_id=dup.existing.id)
            return dup.existing

    def _create_session(self, purchase_id, fan_email, fan_name, scheduled_start, duration_minutes, conversation_id):
        existing = self.db.query(ChatSession).filter(ChatSession.purchase_id == purchase_id).first()
        if existing:
            raise DuplicateIgnored("Session already scheduled for purchase", existing=existing)

        if scheduled_start.tzinfo is None:
            scheduled_start = scheduled_start.replace(tzinfo=timezone.utc)

        fan_email = normalize_email(fan_email)
        if conversation_id:
            if self.authority.is_creator(conversation_id):
                raise Forbidden("A session cannot be bound to the creator")
            if self.db.get(Conversation, conversation_id) is None:
                raise NotFound(f"Conversation '{conversation_id}' not found")
        else:
            match = self.store.find_by_email(fan_email)
            conversation_id = match.id if match else None

        duration = min(
            duration_minutes or self.settings.default_session_minutes,
            self.settings.max_session_minutes,
        )
        chat_session = ChatSession(
            purchase_id=purchase_id,
            conversation_id=conversation_id,
            fan_email=fan_email,
            fan_name=fan_name.strip() if fan_name else None,
            scheduled_start=scheduled_start,
            duration_minutes=duration,
            status=SCHEDULED,
        )
        self.db.add(chat_session)

        when = scheduled_start.strftime("%b %d at %H:%M UTC")
        self.notifications.notify_member(
            fan_email,
            SESSION_SCHEDULED_NOTIFICATION,
            "Live chat scheduled",
            f"Your live chat is scheduled for {when}. When it's time, open the app and go to Chat session to join.",
            "/chat-session",
        )
        self.notifications.notify_admin(
            SESSION_SCHEDULED_NOTIFICATION,
            "Chat session scheduled",
            f"{duration}-minute chat for {fan_email or 'unknown fan'}: {when}.",
            "/admin/schedule",
        )

        try:
            self.db.commit()
        except IntegrityError:
            # Concurrent retry of the same purchase won the insert
            self.db.rollback()
            existing = self.db.query(ChatSession).filter(ChatSession.purchase_id == purchase_id).one()
            raise DuplicateIgnored("Session already scheduled for purchase", existing=existing)

        self.db.refresh(chat_session)
        logger.info(
            "Session scheduled",
            session_id=chat_session.id,
            purchase_id=purchase_id,
            conversation_id=conversation_id,
            bound=conversation_id is not None,
        )
        return chat_session

    # ------------------------------------------------------------------
    # Reads with lazy expiry
    # ------------------------------------------------------------------

    def _load(self, session_id: int) -> ChatSession:
        chat_session = self.db.get(ChatSession, session_id)
        if chat_session is None:
            raise NotFound(f"Chat session '{session_id}' not found")
        return chat_session

    @wrap_store_errors
    def refresh(self, chat_session: ChatSession) -> ChatSession:
        """Converge the stored status to ``ended`` once the window has passed."""
        if chat_session.status != ENDED and is_expired(chat_session, self.clock()):
            self._mark_ended(chat_session, reason="expired")
        return chat_session

    def get_session(self, session_id: int) -> ChatSession:
        return self.refresh(self._load(session_id))

    def _mark_ended(self, chat_session: ChatSession, reason: str) -> bool:
        result = self.db.execute(
            update(ChatSession)
            .where(ChatSession.id == chat_session.id, ChatSession.status != ENDED)
            .values(status=ENDED, updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(chat_session)
        if result.rowcount:
            logger.info("Session ended", session_id=chat_session.id, reason=reason)
            emit_session_updated(chat_session, self.hub)
        return bool(result.rowcount)

    def sessions_for_fan(self, fan_id: str) -> List[ChatSession]:
        """The fan's sessions, soonest first, with expiry applied."""
        sessions = (
            self.db.query(ChatSession)
            .filter(ChatSession.conversation_id == fan_id)
            .order_by(ChatSession.scheduled_start.asc())
            .all()
        )
        return [self.refresh(s) for s in sessions]

    def current_session(self, fan_id: str) -> Optional[ChatSession]:
        """The session the fan's chat screen should show now, if any."""
        now = self.clock()
        for chat_session in self.sessions_for_fan(fan_id):
            if is_presentable(chat_session, now, self.early_join):
                return chat_session
        return None

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    @wrap_store_errors
    def start_session(self, session_id: int) -> ChatSession:
        """Creator opens the session. Starting an active session is a no-op."""
        chat_session = self._load(session_id)
        now = self.clock()

        if chat_session.status == ACTIVE and not is_expired(chat_session, now):
            return chat_session
        if chat_session.status == ENDED:
            raise InvalidState("Session has ended")
        if is_expired(chat_session, now):
            self._mark_ended(chat_session, reason="expired")
            raise InvalidState("Session window has already passed")
        if now < join_opens_at(chat_session, self.early_join):
            raise InvalidState(
                "Session cannot be started yet",
                {"opens_at": join_opens_at(chat_session, self.early_join).isoformat()},
            )
        if not chat_session.is_bound:
            raise InvalidState("Session is not linked to a fan conversation yet")

        for other in (
            self.db.query(ChatSession)
            .filter(
                ChatSession.conversation_id == chat_session.conversation_id,
                ChatSession.id != chat_session.id,
                ChatSession.status == ACTIVE,
            )
            .all()
        ):
            if self.refresh(other).status != ENDED:
                raise InvalidState("Another session is already active for this conversation")

        result = self.db.execute(
            update(ChatSession)
            .where(ChatSession.id == session_id, ChatSession.status == SCHEDULED)
            .values(status=ACTIVE, started_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            self.notifications.notify_member(
                chat_session.fan_email,
                SESSION_LIVE_NOTIFICATION,
                "Your chat is live",
                "Join now to chat!",
                "/chat-session",
            )
        self.db.commit()
        self.db.refresh(chat_session)

        if not result.rowcount:
            # Another caller started (or ended) it first
            if chat_session.status == ACTIVE:
                return chat_session
            raise InvalidState("Session has ended")

        logger.info("Session started", session_id=session_id, conversation_id=chat_session.conversation_id)
        emit_session_updated(chat_session, self.hub)
        return chat_session

    @wrap_store_errors
    def end_session(self, session_id: int) -> ChatSession:
        """Explicit termination. Ending an ended session is a no-op."""
        chat_session = self._load(session_id)
        if chat_session.status != ENDED:
            self._mark_ended(chat_session, reason="ended_by_creator")
        return chat_session

    @wrap_store_errors
    def bind_session(self, session_id: int, conversation_id: str) -> ChatSession:
        """Point an unbound session at the fan's real conversation.

        A single conditional field update; a session already bound to a
        different conversation is never re-pointed.
        """
        chat_session = self._load(session_id)
        if chat_session.conversation_id == conversation_id:
            return chat_session
        if chat_session.status == ENDED:
            raise InvalidState("Session has ended")
        if self.authority.is_creator(conversation_id):
            raise Forbidden("A session cannot be bound to the creator")
        if self.db.get(Conversation, conversation_id) is None:
            raise NotFound(f"Conversation '{conversation_id}' not found")

        result = self.db.execute(
            update(ChatSession)
            .where(ChatSession.id == session_id, ChatSession.conversation_id.is_(None))
            .values(conversation_id=conversation_id, updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(chat_session)
        if not result.rowcount and chat_session.conversation_id != conversation_id:
            raise InvalidState("Session is already linked to another conversation")

        logger.info("Session bound", session_id=session_id, conversation_id=conversation_id)
        emit_session_updated(chat_session, self.hub)
        return chat_session

    def claim_sessions(self, fan_id: str, fan_email: Optional[str]) -> List[ChatSession]:
        """Bind every unbound session bought under the fan's email to their conversation."""
        fan_email = normalize_email(fan_email)
        if not fan_email or self.db.get(Conversation, fan_id) is None:
            return []
        claimed = []
        for chat_session in (
            self.db.query(ChatSession)
            .filter(ChatSession.conversation_id.is_(None), ChatSession.fan_email == fan_email)
            .all()
        ):
            if chat_session.status == ENDED:
                continue
            claimed.append(self.bind_session(chat_session.id, fan_id))
        return claimed

    # ------------------------------------------------------------------
    # Gated messaging
    # ------------------------------------------------------------------

    def send_session_message(
        self,
        session_id: int,
        sender_id: str,
        sender_email: Optional[str],
        body: Optional[str],
        plain_media: Sequence = (),
        locked_media: Optional[Sequence] = None,
        explicit_message_id: Optional[str] = None,
    ) -> Message:
        """Append to the session's conversation if the session currently allows it."""
        chat_session = self.get_session(session_id)
        if chat_session.status == ENDED:
            raise InvalidState("Session has ended")
        if not chat_session.is_bound:
            raise InvalidState("Session is not linked to a fan conversation yet")

        now = self.clock()
        if self.authority.is_creator(sender_id, sender_email):
            if not is_presentable(chat_session, now, self.early_join):
                raise InvalidState("Session is not open")
        elif sender_id == chat_session.conversation_id:
            if not is_messaging_allowed(chat_session, now, self.early_join):
                raise InvalidState("Waiting for the creator to start the session")
        else:
            raise Forbidden("Sender is not a participant in this session")

        return self.store.append_message(
            chat_session.conversation_id,
            sender_id,
            sender_email,
            body,
            plain_media,
            locked_media,
            explicit_message_id,
        )

    def list_all(self, include_ended: bool = False) -> List[ChatSession]:
        """Creator schedule view."""
        query = self.db.query(ChatSession)
        if not include_ended:
            query = query.filter(ChatSession.status != ENDED)
        sessions = [self.refresh(s) for s in query.order_by(ChatSession.scheduled_start.asc()).all()]
        if include_ended:
            return sessions
        return [s for s in sessions if s.status != ENDED]
