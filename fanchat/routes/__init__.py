from .conversations import router as conversations_router
from .chat_sessions import router as chat_sessions_router
from .unlocks import router as unlocks_router
from .payments import router as payments_router
from .notifications import router as notifications_router

__all__ = [
    "conversations_router",
    "chat_sessions_router",
    "unlocks_router",
    "payments_router",
    "notifications_router",
]
