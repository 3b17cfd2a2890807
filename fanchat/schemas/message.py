from pydantic import BaseModel, Field
from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union


class ImageAttachment(BaseModel):
    kind: Literal["image"] = "image"
    url: str


class VideoAttachment(BaseModel):
    kind: Literal["video"] = "video"
    url: str


class AudioAttachment(BaseModel):
    kind: Literal["audio"] = "audio"
    url: str


class LockedAttachment(BaseModel):
    """A blurred image/video revealed per viewer once paid for."""
    kind: Literal["locked"] = "locked"
    url: str
    price_cents: int
    media_type: Literal["image", "video"] = "image"
    unlock_id: Optional[str] = None


PlainAttachment = Annotated[
    Union[ImageAttachment, VideoAttachment, AudioAttachment],
    Field(discriminator="kind"),
]

Attachment = Annotated[
    Union[ImageAttachment, VideoAttachment, AudioAttachment, LockedAttachment],
    Field(discriminator="kind"),
]


class MessageCreate(BaseModel):
    body: Optional[str] = None
    media: List[PlainAttachment] = []
    locked_media: List[LockedAttachment] = []
    message_id: Optional[str] = None


class MessageResponse(BaseModel):
    id: str
    conversation_id: str
    sender_id: str
    sender_email: Optional[str] = None
    body: Optional[str] = None
    attachments: List[Attachment] = []
    created_at: datetime

    class Config:
        from_attributes = True


class MessageIdResponse(BaseModel):
    message_id: str
    upload_prefix: str
