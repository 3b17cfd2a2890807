"""
MediaUnlock model: one viewer's payment for one locked media item.

The primary key is a digest of (conversation, message, unlock id, viewer), so a
redelivered payment event can never create a second row.
"""
from sqlalchemy import Column, Integer, String
from ..database import Base
from .types import UTCDateTime, utcnow


class MediaUnlock(Base):
    __tablename__ = "media_unlocks"

    id = Column(String(64), primary_key=True)
    conversation_id = Column(String(128), nullable=False, index=True)
    message_id = Column(String(64), nullable=False)
    unlock_id = Column(String(64), nullable=False)
    viewer_uid = Column(String(128), nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False)
    payer_email = Column(String(255), nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)

    @property
    def key(self) -> str:
        return f"{self.message_id}:{self.unlock_id}"
