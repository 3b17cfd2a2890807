from pydantic import BaseModel
from datetime import datetime
from typing import Optional


class NotificationResponse(BaseModel):
    id: int
    type: str
    title: str
    body: str
    link: Optional[str] = None
    read: bool
    created_at: datetime

    class Config:
        from_attributes = True
