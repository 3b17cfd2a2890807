from pydantic import BaseModel
from datetime import datetime
from typing import Optional


class UnlockCaptured(BaseModel):
    """Payment collaborator: funds captured for one locked media item."""
    conversation_id: str
    message_id: str
    unlock_id: str
    viewer_uid: str
    amount_cents: int
    payer_email: Optional[str] = None


class PurchaseScheduled(BaseModel):
    """Payment collaborator: a chat-session purchase was given a date/time."""
    purchase_id: str
    fan_email: Optional[str] = None
    fan_name: Optional[str] = None
    fan_uid: Optional[str] = None
    treat_id: Optional[str] = None
    scheduled_start: datetime
    duration_minutes: Optional[int] = None


class PaymentEvent(BaseModel):
    type: str  # unlock.captured, purchase.scheduled
    data: dict
