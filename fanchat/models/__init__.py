from .conversation import Conversation, Message
from .chat_session import ChatSession
from .media_unlock import MediaUnlock
from .notification import Notification

__all__ = [
    "Conversation",
    "Message",
    "ChatSession",
    "MediaUnlock",
    "Notification",
]
