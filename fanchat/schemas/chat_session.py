from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional


class ChatSessionCreate(BaseModel):
    purchase_id: str
    fan_email: Optional[str] = None
    fan_name: Optional[str] = None
    scheduled_start: datetime
    duration_minutes: Optional[int] = Field(default=None, gt=0)
    treat_id: Optional[str] = None
    conversation_id: Optional[str] = None


class ChatSessionBind(BaseModel):
    conversation_id: str


class ChatSessionResponse(BaseModel):
    id: int
    purchase_id: str
    conversation_id: Optional[str] = None
    fan_email: Optional[str] = None
    fan_name: Optional[str] = None
    scheduled_start: datetime
    started_at: Optional[datetime] = None
    duration_minutes: int
    status: str
    presentable: bool = False
    messaging_allowed: bool = False

    class Config:
        from_attributes = True
