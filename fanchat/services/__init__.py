from .conversation_store import ConversationStore, StoreClock, subscribe_messages
from .session_machine import SessionStateMachine, is_messaging_allowed, is_presentable
from .unlock_ledger import UnlockLedger, subscribe_new_unlocks, subscribe_unlocks, unlock_key
from .notifications import NotificationService, Recipient
from .fanout import EventHub, event_hub

__all__ = [
    "ConversationStore",
    "StoreClock",
    "subscribe_messages",
    "SessionStateMachine",
    "is_messaging_allowed",
    "is_presentable",
    "UnlockLedger",
    "subscribe_new_unlocks",
    "subscribe_unlocks",
    "unlock_key",
    "NotificationService",
    "Recipient",
    "EventHub",
    "event_hub",
]
