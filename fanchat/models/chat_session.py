"""
ChatSession model: a scheduled live-chat window layered over a conversation.
"""
from sqlalchemy import Column, Integer, String
from ..database import Base
from .types import UTCDateTime, utcnow


class ChatSession(Base):
    __tablename__ = "chat_sessions"

    STATUS_SCHEDULED = "scheduled"
    STATUS_ACTIVE = "active"
    STATUS_ENDED = "ended"

    id = Column(Integer, primary_key=True, index=True)
    purchase_id = Column(String(128), unique=True, nullable=False)
    # Null until the purchase is matched to a signed-in fan
    conversation_id = Column(String(128), nullable=True, index=True)
    fan_email = Column(String(255), nullable=True, index=True)
    fan_name = Column(String(100), nullable=True)
    scheduled_start = Column(UTCDateTime, nullable=False)
    started_at = Column(UTCDateTime, nullable=True)
    duration_minutes = Column(Integer, nullable=False, default=15)
    status = Column(String(20), nullable=False, default=STATUS_SCHEDULED)  # scheduled, active, ended
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_bound(self) -> bool:
        return bool(self.conversation_id)
