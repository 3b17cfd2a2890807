"""
Unlock routes: which locked items the viewer has paid for, live.
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from typing import List

from ..auth import Viewer, get_creator, get_required_viewer
from ..dependencies import get_ledger, get_store
from ..errors import Forbidden
from ..responses import SSE_HEADERS, sse_stream
from ..schemas.unlock import UnlockKeysResponse, UnlockResponse
from ..services.conversation_store import ConversationStore
from ..services.unlock_ledger import UnlockLedger, subscribe_new_unlocks, subscribe_unlocks

router = APIRouter(prefix="/api/unlocks", tags=["unlocks"])


def require_reader(store: ConversationStore, conversation_id: str, viewer: Viewer):
    if not store.can_read(conversation_id, viewer.uid, viewer.email):
        raise Forbidden("You are not a participant in this conversation")


def unlock_reader(
    conversation_id: str,
    store: ConversationStore = Depends(get_store),
    viewer: Viewer = Depends(get_required_viewer),
) -> Viewer:
    """Participant check for the stream route. Sync, so it runs in the threadpool."""
    require_reader(store, conversation_id, viewer)
    return viewer


@router.get("/conversations/{conversation_id}", response_model=UnlockKeysResponse)
def get_unlock_keys(
    conversation_id: str,
    ledger: UnlockLedger = Depends(get_ledger),
    store: ConversationStore = Depends(get_store),
    viewer: Viewer = Depends(get_required_viewer),
):
    """``message_id:unlock_id`` keys the caller has paid for in this conversation."""
    require_reader(store, conversation_id, viewer)
    keys = ledger.unlock_keys(conversation_id, viewer.uid)
    return UnlockKeysResponse(conversation_id=conversation_id, keys=sorted(keys))


@router.get("/conversations/{conversation_id}/stream")
async def stream_unlock_keys(
    request: Request,
    conversation_id: str,
    viewer: Viewer = Depends(unlock_reader),
):
    """SSE feed of the caller's unlocked keys; a new frame whenever one lands."""
    stream = subscribe_unlocks(conversation_id, viewer.uid, keepalive=30.0)
    return StreamingResponse(
        sse_stream(request, stream, "unlocks", lambda keys: sorted(keys)),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.get("/conversations/{conversation_id}/new/stream")
async def stream_new_unlocks(
    request: Request,
    conversation_id: str,
    creator: Viewer = Depends(get_creator),
):
    """SSE 'fan just paid' feed for the creator console. Only payments made
    after connecting are announced."""
    stream = subscribe_new_unlocks(conversation_id, keepalive=30.0)
    return StreamingResponse(
        sse_stream(
            request,
            stream,
            "unlock",
            lambda item: {"amount_cents": item[0], "payer_email": item[1]},
        ),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.get("/history", response_model=List[UnlockResponse])
def unlock_history(
    ledger: UnlockLedger = Depends(get_ledger),
    viewer: Viewer = Depends(get_required_viewer),
):
    """The caller's unlock purchases across all conversations, newest first."""
    return ledger.unlocks_for_viewer(viewer.uid)
