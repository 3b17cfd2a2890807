"""
Fanchat API Response Utilities
Standardized response format and error handling
"""
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from typing import Any, AsyncIterator, Dict, Optional
from datetime import datetime, timezone
import json

from .errors import ChatCoreError
from .logging_config import api_logger


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ============================================================
# SERVER-SENT EVENTS
# ============================================================

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


def sse_message(event_type: str, data: Any, event_id: Optional[str] = None) -> str:
    """Format one SSE frame"""
    payload = json.dumps({"type": event_type, "data": data, "timestamp": now_iso()}, default=str)
    head = f"id: {event_id}\n" if event_id else ""
    return f"{head}event: {event_type}\ndata: {payload}\n\n"


async def sse_stream(request: Request, stream, event_type: str, render) -> AsyncIterator[str]:
    """Relay a live stream as SSE frames until the client disconnects.

    ``stream`` yields None on keepalive timeouts; ``render`` turns every other
    item into JSON-serializable data.
    """
    try:
        async for item in stream:
            if await request.is_disconnected():
                break
            if item is None:
                yield ": keepalive\n\n"
                continue
            yield sse_message(event_type, render(item))
    finally:
        await stream.aclose()


# ============================================================
# EXCEPTION HANDLER
# ============================================================

def error_body(message: str, error_code: str, details: Optional[Dict] = None) -> Dict:
    body = {
        "ok": False,
        "error": message,
        "detail": message,
        "error_code": error_code,
        "timestamp": now_iso(),
    }
    if details:
        body["details"] = details
    return body


async def api_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for API errors"""

    if isinstance(exc, ChatCoreError):
        api_logger.warning(
            f"API Error: {exc.message}",
            status_code=exc.status_code,
            error_code=exc.error_code,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.message, exc.error_code, exc.details),
        )

    if isinstance(exc, HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(str(exc.detail), f"HTTP_{exc.status_code}"),
            headers=getattr(exc, "headers", None),
        )

    api_logger.error(
        f"Unexpected error: {exc}",
        error=exc,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=500,
        content=error_body("An unexpected error occurred", "INTERNAL_ERROR"),
    )
