"""
Fanchat Real-time Fanout
In-process pub/sub that pushes new messages, unlocks and session changes
to every open subscription.
"""
import asyncio
import json
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Set

from ..logging_config import fanout_logger as logger


# ============================================================
# EVENT TYPES
# ============================================================

MESSAGE_CREATED = "message_created"
MESSAGE_UPDATED = "message_updated"
UNLOCK_RECORDED = "unlock_recorded"
SESSION_UPDATED = "session_updated"


def message_topic(conversation_id: str) -> str:
    return f"conversation:{conversation_id}:messages"


def unlock_topic(conversation_id: str) -> str:
    return f"conversation:{conversation_id}:unlocks"


def session_topic(session_id) -> str:
    return f"session:{session_id}"


@dataclass
class Event:
    """Server-sent event structure"""
    type: str
    data: Dict
    id: str = ""
    timestamp: str = ""

    def __post_init__(self):
        if not self.id:
            self.id = f"evt_{uuid.uuid4().hex[:8]}"
        if not self.timestamp:
            self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_sse(self) -> str:
        """Format as SSE message"""
        payload = {
            "type": self.type,
            "data": self.data,
            "timestamp": self.timestamp,
        }
        return f"id: {self.id}\nevent: {self.type}\ndata: {json.dumps(payload, default=str)}\n\n"


# ============================================================
# EVENT HUB (Pub/Sub)
# ============================================================

@dataclass(eq=False)
class Subscription:
    """One live subscriber: a queue owned by the subscriber's event loop."""
    hub: "EventHub"
    topic: str
    loop: asyncio.AbstractEventLoop
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)

    async def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Wait for the next event; None when ``timeout`` elapses first."""
        if timeout is None:
            return await self.queue.get()
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def drain(self) -> list:
        """Pop every event already queued without waiting."""
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events

    def close(self):
        self.hub.unsubscribe(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class EventHub:
    """Routes events to subscribers by topic.

    ``publish`` is synchronous and may be called from any thread (sync route
    handlers run in the threadpool); delivery is handed to each subscriber's
    own loop with ``call_soon_threadsafe``.
    """

    def __init__(self):
        self._topics: Dict[str, Set[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, topic: str) -> Subscription:
        """Register a subscriber. Must be called from a running event loop."""
        subscription = Subscription(hub=self, topic=topic, loop=asyncio.get_running_loop())
        with self._lock:
            self._topics.setdefault(topic, set()).add(subscription)
        logger.debug("Subscribed", topic=topic)
        return subscription

    def unsubscribe(self, subscription: Subscription):
        with self._lock:
            subscribers = self._topics.get(subscription.topic)
            if subscribers is None:
                return
            subscribers.discard(subscription)
            if not subscribers:
                del self._topics[subscription.topic]

    def publish(self, topic: str, event: Event) -> int:
        """Send event to all subscribers of topic. Returns the number reached."""
        with self._lock:
            subscribers = list(self._topics.get(topic, ()))

        delivered = 0
        for subscription in subscribers:
            try:
                subscription.loop.call_soon_threadsafe(subscription.queue.put_nowait, event)
                delivered += 1
            except RuntimeError:
                # Subscriber's loop has shut down
                self.unsubscribe(subscription)
        logger.debug("Published", topic=topic, event_type=event.type, delivered=delivered)
        return delivered

    def subscriber_count(self, topic: Optional[str] = None) -> int:
        with self._lock:
            if topic is not None:
                return len(self._topics.get(topic, ()))
            return sum(len(s) for s in self._topics.values())

    @property
    def topics(self) -> list:
        with self._lock:
            return list(self._topics.keys())


# Global event hub
event_hub = EventHub()


# ============================================================
# HELPER FUNCTIONS (used by the services after commit)
# ============================================================

def emit_message_event(message, event_type: str = MESSAGE_CREATED, hub: Optional[EventHub] = None):
    (hub or event_hub).publish(
        message_topic(message.conversation_id),
        Event(
            type=event_type,
            data={
                "conversation_id": message.conversation_id,
                "message_id": message.id,
                "sender_id": message.sender_id,
                "created_at": message.created_at.isoformat(),
            },
        ),
    )


def emit_unlock_recorded(unlock, hub: Optional[EventHub] = None):
    (hub or event_hub).publish(
        unlock_topic(unlock.conversation_id),
        Event(
            type=UNLOCK_RECORDED,
            data={
                "conversation_id": unlock.conversation_id,
                "message_id": unlock.message_id,
                "unlock_id": unlock.unlock_id,
                "viewer_uid": unlock.viewer_uid,
                "amount_cents": unlock.amount_cents,
                "payer_email": unlock.payer_email,
            },
        ),
    )


def emit_session_updated(chat_session, hub: Optional[EventHub] = None):
    (hub or event_hub).publish(
        session_topic(chat_session.id),
        Event(
            type=SESSION_UPDATED,
            data={
                "session_id": chat_session.id,
                "conversation_id": chat_session.conversation_id,
                "status": chat_session.status,
                "started_at": chat_session.started_at.isoformat() if chat_session.started_at else None,
            },
        ),
    )


# ============================================================
# LIVE STREAMS
# ============================================================

class LiveStream:
    """Async iterator bound to a subscription that is already registered.

    Subscribing happens when the stream is created, not on first iteration,
    so nothing published in between is missed. ``aclose()`` (or ``async
    with``) releases the subscription.
    """

    def __init__(self, subscription: Subscription, agen):
        self.subscription = subscription
        self._agen = agen

    def __aiter__(self):
        return self

    async def __anext__(self):
        return await self._agen.__anext__()

    async def aclose(self):
        self.subscription.close()
        await self._agen.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()


def subscribe_topic(topic: str, hub: Optional[EventHub] = None, keepalive: Optional[float] = None) -> LiveStream:
    """Raw event stream for one topic (None on idle keepalive timeouts)."""
    subscription = (hub or event_hub).subscribe(topic)
    return LiveStream(subscription, _raw_events(subscription, keepalive))


async def _raw_events(subscription: Subscription, keepalive: Optional[float]):
    try:
        while True:
            yield await subscription.get(timeout=keepalive)
    finally:
        subscription.close()
