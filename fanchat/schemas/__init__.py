from .conversation import ConversationEnsure, ConversationResponse
from .message import MessageCreate, MessageResponse, MessageIdResponse, LockedAttachment
from .chat_session import ChatSessionCreate, ChatSessionBind, ChatSessionResponse
from .unlock import UnlockKeysResponse, UnlockResponse
from .notification import NotificationResponse
from .payment import PaymentEvent, UnlockCaptured, PurchaseScheduled

__all__ = [
    "ConversationEnsure", "ConversationResponse",
    "MessageCreate", "MessageResponse", "MessageIdResponse", "LockedAttachment",
    "ChatSessionCreate", "ChatSessionBind", "ChatSessionResponse",
    "UnlockKeysResponse", "UnlockResponse",
    "NotificationResponse",
    "PaymentEvent", "UnlockCaptured", "PurchaseScheduled",
]
