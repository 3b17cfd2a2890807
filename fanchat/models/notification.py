"""
Notification model for parties who are not currently viewing a thread.
"""
from sqlalchemy import Column, Integer, String, Text, Boolean
from ..database import Base
from .types import UTCDateTime, utcnow


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    for_admin = Column(Boolean, default=False, index=True)
    for_member_email = Column(String(255), nullable=True, index=True)
    type = Column(String(50), nullable=False)  # dm, chat_session_scheduled, chat_session_live
    title = Column(String(200), nullable=False)
    body = Column(Text, nullable=False, default="")
    link = Column(String(255), nullable=True)
    read = Column(Boolean, default=False)
    created_at = Column(UTCDateTime, default=utcnow, index=True)
