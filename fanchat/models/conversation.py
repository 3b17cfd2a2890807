"""
Conversation and Message models for creator/fan direct messages.

A conversation's id is the fan's user id, so each fan has exactly one thread.
"""
from sqlalchemy import Column, String, Text, Boolean, ForeignKey, JSON, Index
from sqlalchemy.orm import relationship
from ..database import Base
from .types import UTCDateTime, utcnow


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(String(128), primary_key=True)  # == fan user id
    fan_email = Column(String(255), nullable=True, index=True)
    fan_display_name = Column(String(100), nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow)
    last_message_at = Column(UTCDateTime, nullable=True, index=True)
    last_message_preview = Column(String(120), nullable=True)
    # Write-once: null until the first message lands
    first_message_from_member = Column(Boolean, nullable=True)

    # Relationships
    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def fan_id(self) -> str:
        return self.id


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
    )

    id = Column(String(64), primary_key=True)
    conversation_id = Column(
        String(128), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    sender_id = Column(String(128), nullable=False)
    sender_email = Column(String(255), nullable=True)
    body = Column(Text, nullable=True)
    # Ordered list of {"kind": "image"|"video"|"audio"|"locked", ...}
    attachments = Column(JSON, nullable=False, default=list)
    created_at = Column(UTCDateTime, nullable=False)

    # Relationships
    conversation = relationship("Conversation", back_populates="messages")

    @property
    def locked_items(self) -> list:
        return [a for a in (self.attachments or []) if a.get("kind") == "locked"]

    def find_locked_item(self, unlock_id: str):
        for item in self.locked_items:
            if item.get("unlock_id") == unlock_id:
                return item
        return None
