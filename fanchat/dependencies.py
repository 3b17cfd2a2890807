"""
FastAPI dependencies that build the services for a request.
"""
from datetime import datetime
from typing import Callable

from fastapi import Depends
from sqlalchemy.orm import Session

from .auth import CreatorAuthority, Viewer, get_creator_authority, get_required_viewer
from .database import get_db
from .models.types import utcnow
from .services.conversation_store import ConversationStore
from .services.notifications import NotificationService, Recipient
from .services.session_machine import SessionStateMachine
from .services.unlock_ledger import UnlockLedger


def get_clock() -> Callable[[], datetime]:
    """Wall clock used for session-window decisions (overridden in tests)."""
    return utcnow


def get_store(
    db: Session = Depends(get_db),
    authority: CreatorAuthority = Depends(get_creator_authority),
) -> ConversationStore:
    return ConversationStore(db, authority=authority)


def get_session_machine(
    db: Session = Depends(get_db),
    store: ConversationStore = Depends(get_store),
    authority: CreatorAuthority = Depends(get_creator_authority),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> SessionStateMachine:
    return SessionStateMachine(db, store=store, authority=authority, clock=clock)


def get_ledger(
    db: Session = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> UnlockLedger:
    return UnlockLedger(db, clock=clock)


def get_notifications(db: Session = Depends(get_db)) -> NotificationService:
    return NotificationService(db)


def get_recipient(
    viewer: Viewer = Depends(get_required_viewer),
    authority: CreatorAuthority = Depends(get_creator_authority),
) -> Recipient:
    """Which notification inbox the viewer reads."""
    if authority.is_creator(viewer.uid, viewer.email):
        return Recipient.admin()
    return Recipient.member(viewer.email)
