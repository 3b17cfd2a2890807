"""
Chat session routes: scheduling, starting and chatting inside a live window.
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from typing import List, Optional

from ..auth import Viewer, get_creator, get_required_viewer
from ..config import get_settings
from ..dependencies import get_session_machine
from ..errors import Forbidden
from ..limiter import limiter
from ..responses import SSE_HEADERS, sse_stream
from ..schemas.chat_session import ChatSessionBind, ChatSessionCreate, ChatSessionResponse
from ..schemas.message import MessageCreate, MessageResponse
from ..services.fanout import session_topic, subscribe_topic
from ..services.session_machine import SessionStateMachine, duration_from_treat_id

settings = get_settings()

router = APIRouter(prefix="/api/chat-sessions", tags=["chat-sessions"])


def require_session_viewer(machine: SessionStateMachine, chat_session, viewer: Viewer):
    if machine.authority.is_creator(viewer.uid, viewer.email):
        return
    if not chat_session.conversation_id or chat_session.conversation_id != viewer.uid:
        raise Forbidden("This session belongs to another fan")


def session_viewer(
    session_id: int,
    machine: SessionStateMachine = Depends(get_session_machine),
    viewer: Viewer = Depends(get_required_viewer),
) -> Viewer:
    """Viewer check for the stream route. Sync, so it runs in the threadpool."""
    require_session_viewer(machine, machine.get_session(session_id), viewer)
    return viewer


@router.post("", response_model=ChatSessionResponse)
def schedule_session(
    payload: ChatSessionCreate,
    machine: SessionStateMachine = Depends(get_session_machine),
    creator: Viewer = Depends(get_creator),
):
    """Schedule a purchased chat session. Re-submitting the same purchase
    returns the existing session."""
    duration = payload.duration_minutes or duration_from_treat_id(
        payload.treat_id,
        default=settings.default_session_minutes,
        maximum=settings.max_session_minutes,
    )
    chat_session = machine.schedule_session(
        payload.purchase_id,
        payload.fan_email,
        payload.fan_name,
        payload.scheduled_start,
        duration_minutes=duration,
        conversation_id=payload.conversation_id,
    )
    return machine.describe(chat_session)


@router.get("", response_model=List[ChatSessionResponse])
def list_sessions(
    include_ended: bool = False,
    machine: SessionStateMachine = Depends(get_session_machine),
    creator: Viewer = Depends(get_creator),
):
    """Creator schedule, soonest first."""
    return [machine.describe(s) for s in machine.list_all(include_ended=include_ended)]


@router.get("/mine", response_model=List[ChatSessionResponse])
def my_sessions(
    machine: SessionStateMachine = Depends(get_session_machine),
    viewer: Viewer = Depends(get_required_viewer),
):
    """The caller's sessions. Sessions bought under the caller's email that
    were never linked to a conversation are linked to theirs first."""
    machine.claim_sessions(viewer.uid, viewer.email)
    return [machine.describe(s) for s in machine.sessions_for_fan(viewer.uid)]


@router.get("/current", response_model=Optional[ChatSessionResponse])
def my_current_session(
    machine: SessionStateMachine = Depends(get_session_machine),
    viewer: Viewer = Depends(get_required_viewer),
):
    """The session the caller's chat screen should show right now, or null."""
    chat_session = machine.current_session(viewer.uid)
    return machine.describe(chat_session) if chat_session else None


@router.get("/{session_id}", response_model=ChatSessionResponse)
def get_session(
    session_id: int,
    machine: SessionStateMachine = Depends(get_session_machine),
    viewer: Viewer = Depends(get_required_viewer),
):
    chat_session = machine.get_session(session_id)
    require_session_viewer(machine, chat_session, viewer)
    return machine.describe(chat_session)


@router.post("/{session_id}/start", response_model=ChatSessionResponse)
def start_session(
    session_id: int,
    machine: SessionStateMachine = Depends(get_session_machine),
    creator: Viewer = Depends(get_creator),
):
    """Open the session for messaging. Idempotent while active."""
    return machine.describe(machine.start_session(session_id))


@router.post("/{session_id}/end", response_model=ChatSessionResponse)
def end_session(
    session_id: int,
    machine: SessionStateMachine = Depends(get_session_machine),
    creator: Viewer = Depends(get_creator),
):
    return machine.describe(machine.end_session(session_id))


@router.post("/{session_id}/bind", response_model=ChatSessionResponse)
def bind_session(
    session_id: int,
    payload: ChatSessionBind,
    machine: SessionStateMachine = Depends(get_session_machine),
    creator: Viewer = Depends(get_creator),
):
    """Link a session that could not be matched to a fan at scheduling time."""
    return machine.describe(machine.bind_session(session_id, payload.conversation_id))


@router.post("/{session_id}/messages", response_model=MessageResponse)
@limiter.limit(settings.message_rate_limit)
def send_session_message(
    request: Request,
    session_id: int,
    payload: MessageCreate,
    machine: SessionStateMachine = Depends(get_session_machine),
    viewer: Viewer = Depends(get_required_viewer),
):
    """Send a message into the session's conversation while the window allows it."""
    return machine.send_session_message(
        session_id,
        viewer.uid,
        viewer.email,
        payload.body,
        [m.model_dump() for m in payload.media],
        [m.model_dump() for m in payload.locked_media],
        payload.message_id,
    )


@router.get("/{session_id}/stream")
async def stream_session(
    request: Request,
    session_id: int,
    viewer: Viewer = Depends(session_viewer),
):
    """SSE feed of status changes (started, ended) for one session."""
    stream = subscribe_topic(session_topic(session_id), keepalive=30.0)
    return StreamingResponse(
        sse_stream(request, stream, "session", lambda event: event.data),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
