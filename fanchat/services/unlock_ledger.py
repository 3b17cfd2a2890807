"""
Unlock Ledger
=============
Records which viewer has paid to reveal which locked media item.

Payment events are delivered at least once, so every record's identity is a
digest of (conversation, message, unlock id, viewer): a redelivered event
finds the existing row instead of writing a second one.
"""
import hashlib
from typing import Callable, List, Optional, Set

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from ..database import SessionLocal
from ..errors import DuplicateIgnored, wrap_store_errors
from ..logging_config import ledger_logger as logger
from ..models.conversation import Conversation, Message
from ..models.media_unlock import MediaUnlock
from ..models.types import utcnow
from .fanout import UNLOCK_RECORDED, EventHub, LiveStream, emit_unlock_recorded, event_hub, unlock_topic
from .notifications import normalize_email


def unlock_key(conversation_id: str, message_id: str, unlock_id: str, viewer_uid: str) -> str:
    """Deterministic record id for one (item, viewer) pair."""
    raw = "\x1f".join([conversation_id, message_id, unlock_id, viewer_uid])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class UnlockLedger:
    def __init__(self, db: Session, hub: Optional[EventHub] = None, clock: Callable = utcnow):
        self.db = db
        self.hub = hub or event_hub
        self.clock = clock

    @wrap_store_errors
    def record_unlock(
        self,
        conversation_id: str,
        message_id: str,
        unlock_id: str,
        viewer_uid: str,
        amount_cents: int,
        payer_email: Optional[str],
    ) -> Optional[MediaUnlock]:
        """Record a captured payment for a locked item.

        Only the payment-confirmation path calls this. Returns the record
        (new or pre-existing), or None when the referenced item does not
        exist; a stray event is logged and dropped, never raised.
        """
        try:
            return self._insert(conversation_id, message_id, unlock_id, viewer_uid, amount_cents, payer_email)
        except DuplicateIgnored as dup:
            logger.info(
                "Duplicate unlock ignored",
                conversation_id=conversation_id,
                message_id=message_id,
                unlock_id=unlock_id,
                viewer_uid=viewer_uid,
            )
            return dup.existing

    def _insert(self, conversation_id, message_id, unlock_id, viewer_uid, amount_cents, payer_email):
        record_id = unlock_key(conversation_id, message_id, unlock_id, viewer_uid)
        existing = self.db.get(MediaUnlock, record_id)
        if existing is not None:
            raise DuplicateIgnored("Unlock already recorded", existing=existing)

        context = dict(
            conversation_id=conversation_id,
            message_id=message_id,
            unlock_id=unlock_id,
            viewer_uid=viewer_uid,
            amount_cents=amount_cents,
        )
        if self.db.get(Conversation, conversation_id) is None:
            logger.warning("Unlock for unknown conversation dropped", **context)
            return None
        message = self.db.get(Message, message_id)
        if message is None or message.conversation_id != conversation_id:
            logger.warning("Unlock for unknown message dropped", **context)
            return None
        if message.find_locked_item(unlock_id) is None:
            logger.warning("Unlock for unknown locked item dropped", **context)
            return None

        unlock = MediaUnlock(
            id=record_id,
            conversation_id=conversation_id,
            message_id=message_id,
            unlock_id=unlock_id,
            viewer_uid=viewer_uid,
            amount_cents=amount_cents,
            payer_email=normalize_email(payer_email),
            created_at=self.clock(),
        )
        self.db.add(unlock)
        try:
            self.db.commit()
        except IntegrityError:
            # A concurrent redelivery landed first
            self.db.rollback()
            raise DuplicateIgnored("Unlock already recorded", existing=self.db.get(MediaUnlock, record_id))

        self.db.refresh(unlock)
        logger.info("Unlock recorded", **context)
        emit_unlock_recorded(unlock, self.hub)
        return unlock

    def unlock_keys(self, conversation_id: str, viewer_uid: str) -> Set[str]:
        """``message_id:unlock_id`` keys the viewer has paid for in a conversation."""
        return load_unlock_keys(self.db, conversation_id, viewer_uid)

    def unlocks_for_viewer(self, viewer_uid: str) -> List[MediaUnlock]:
        """Purchase history across all conversations, newest first."""
        return (
            self.db.query(MediaUnlock)
            .filter(MediaUnlock.viewer_uid == viewer_uid)
            .order_by(MediaUnlock.created_at.desc())
            .all()
        )


# ============================================================
# LIVE SUBSCRIPTIONS
# ============================================================

def load_unlock_keys(db: Session, conversation_id: str, viewer_uid: str) -> Set[str]:
    rows = (
        db.query(MediaUnlock.message_id, MediaUnlock.unlock_id)
        .filter(MediaUnlock.conversation_id == conversation_id, MediaUnlock.viewer_uid == viewer_uid)
        .all()
    )
    return {f"{message_id}:{unlock_id}" for message_id, unlock_id in rows}


def _load_keys(session_factory, conversation_id: str, viewer_uid: str) -> Set[str]:
    with session_factory() as db:
        return load_unlock_keys(db, conversation_id, viewer_uid)


def subscribe_unlocks(
    conversation_id: str,
    viewer_uid: str,
    session_factory=None,
    hub: Optional[EventHub] = None,
    keepalive: Optional[float] = None,
) -> LiveStream:
    """Live set of the viewer's unlocked ``message_id:unlock_id`` keys.

    Yields the current set, then a new set whenever one of the viewer's
    unlocks lands. With ``keepalive`` set, yields None on idle timeouts.
    """
    session_factory = session_factory or SessionLocal
    subscription = (hub or event_hub).subscribe(unlock_topic(conversation_id))
    return LiveStream(
        subscription,
        _unlock_key_sets(subscription, session_factory, conversation_id, viewer_uid, keepalive),
    )


async def _unlock_key_sets(subscription, session_factory, conversation_id, viewer_uid, keepalive):
    try:
        keys = await run_in_threadpool(_load_keys, session_factory, conversation_id, viewer_uid)
        yield set(keys)
        while True:
            event = await subscription.get(timeout=keepalive)
            if event is None:
                yield None
                continue
            changed = False
            for e in [event] + subscription.drain():
                if e.type != UNLOCK_RECORDED or e.data["viewer_uid"] != viewer_uid:
                    continue
                key = f"{e.data['message_id']}:{e.data['unlock_id']}"
                if key not in keys:
                    keys.add(key)
                    changed = True
            if changed:
                yield set(keys)
    finally:
        subscription.close()


def subscribe_new_unlocks(
    conversation_id: str,
    hub: Optional[EventHub] = None,
    keepalive: Optional[float] = None,
) -> LiveStream:
    """Stream of ``(amount_cents, payer_email)`` for unlocks recorded after
    this call. Earlier payments are never replayed."""
    subscription = (hub or event_hub).subscribe(unlock_topic(conversation_id))
    return LiveStream(subscription, _new_unlocks(subscription, keepalive))


async def _new_unlocks(subscription, keepalive):
    try:
        while True:
            event = await subscription.get(timeout=keepalive)
            if event is None:
                yield None
            elif event.type == UNLOCK_RECORDED:
                yield (event.data["amount_cents"], event.data["payer_email"])
    finally:
        subscription.close()
