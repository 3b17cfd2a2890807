"""
Conversation routes: the fan's thread with the creator and its messages.
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from typing import List, Optional

from ..auth import Viewer, get_creator, get_required_viewer
from ..config import get_settings
from ..dependencies import get_store
from ..errors import Forbidden
from ..limiter import limiter
from ..responses import SSE_HEADERS, sse_stream
from ..schemas.conversation import ConversationEnsure, ConversationResponse
from ..schemas.message import MessageCreate, MessageIdResponse, MessageResponse
from ..services.conversation_store import ConversationStore, subscribe_messages, upload_prefix

settings = get_settings()

router = APIRouter(prefix="/api/conversations", tags=["conversations"])


def message_to_dict(message) -> dict:
    return MessageResponse.model_validate(message).model_dump(mode="json")


def require_reader(store: ConversationStore, conversation_id: str, viewer: Viewer):
    if not store.can_read(conversation_id, viewer.uid, viewer.email):
        raise Forbidden("You are not a participant in this conversation")


def conversation_reader(
    conversation_id: str,
    store: ConversationStore = Depends(get_store),
    viewer: Viewer = Depends(get_required_viewer),
) -> Viewer:
    """Participant check for the stream route. Sync, so it runs in the threadpool."""
    require_reader(store, conversation_id, viewer)
    store.get_conversation(conversation_id)
    return viewer


@router.post("", response_model=ConversationResponse)
def ensure_my_conversation(
    payload: Optional[ConversationEnsure] = None,
    store: ConversationStore = Depends(get_store),
    viewer: Viewer = Depends(get_required_viewer),
):
    """Create the caller's conversation with the creator if it does not exist yet."""
    display_name = (payload.display_name if payload else None) or viewer.display_name
    conversation_id = store.ensure_conversation(viewer.uid, viewer.email, display_name)
    return store.get_conversation(conversation_id)


@router.get("", response_model=List[ConversationResponse])
def list_conversations(
    requests_only: bool = False,
    limit: Optional[int] = None,
    store: ConversationStore = Depends(get_store),
    creator: Viewer = Depends(get_creator),
):
    """Creator inbox, most recently active first. ``requests_only`` keeps
    threads the fan started."""
    return store.list_conversations(limit=limit, requests_only=requests_only)


@router.get("/{conversation_id}", response_model=ConversationResponse)
def get_conversation(
    conversation_id: str,
    store: ConversationStore = Depends(get_store),
    viewer: Viewer = Depends(get_required_viewer),
):
    require_reader(store, conversation_id, viewer)
    return store.get_conversation(conversation_id)


@router.post("/{conversation_id}/message-ids", response_model=MessageIdResponse)
def allocate_message_id(
    conversation_id: str,
    store: ConversationStore = Depends(get_store),
    viewer: Viewer = Depends(get_required_viewer),
):
    """Reserve a message id so attachments can be uploaded under it first."""
    conversation = store.get_conversation(conversation_id)
    if not store.can_write(conversation, viewer.uid, viewer.email):
        raise Forbidden("You are not a participant in this conversation")
    message_id = store.allocate_message_id()
    return MessageIdResponse(message_id=message_id, upload_prefix=upload_prefix(conversation_id, message_id))


@router.get("/{conversation_id}/messages", response_model=List[MessageResponse])
def get_messages(
    conversation_id: str,
    limit: Optional[int] = None,
    store: ConversationStore = Depends(get_store),
    viewer: Viewer = Depends(get_required_viewer),
):
    """Most recent messages, oldest first."""
    require_reader(store, conversation_id, viewer)
    store.get_conversation(conversation_id)
    return store.list_messages(conversation_id, limit=limit)


@router.post("/{conversation_id}/messages", response_model=MessageResponse)
@limiter.limit(settings.message_rate_limit)
def send_message(
    request: Request,
    conversation_id: str,
    payload: MessageCreate,
    store: ConversationStore = Depends(get_store),
    viewer: Viewer = Depends(get_required_viewer),
):
    """Send a message as the current viewer."""
    return store.append_message(
        conversation_id,
        viewer.uid,
        viewer.email,
        payload.body,
        [m.model_dump() for m in payload.media],
        [m.model_dump() for m in payload.locked_media],
        payload.message_id,
    )


@router.get("/{conversation_id}/messages/stream")
async def stream_messages(
    request: Request,
    conversation_id: str,
    viewer: Viewer = Depends(conversation_reader),
):
    """
    SSE feed of the conversation's message window.

    Every frame carries the full ascending window, so a client can replace
    its list instead of merging.
    """
    stream = subscribe_messages(conversation_id, keepalive=30.0)
    return StreamingResponse(
        sse_stream(request, stream, "messages", lambda window: [message_to_dict(m) for m in window]),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
