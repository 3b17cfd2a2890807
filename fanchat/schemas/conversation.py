from pydantic import BaseModel
from datetime import datetime
from typing import Optional


class ConversationEnsure(BaseModel):
    display_name: Optional[str] = None


class ConversationResponse(BaseModel):
    id: str
    fan_email: Optional[str] = None
    fan_display_name: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    last_message_preview: Optional[str] = None
    first_message_from_member: Optional[bool] = None

    class Config:
        from_attributes = True
