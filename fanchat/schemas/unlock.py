from pydantic import BaseModel
from datetime import datetime
from typing import List, Optional


class UnlockKeysResponse(BaseModel):
    conversation_id: str
    keys: List[str]


class UnlockResponse(BaseModel):
    conversation_id: str
    message_id: str
    unlock_id: str
    viewer_uid: str
    amount_cents: int
    payer_email: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
