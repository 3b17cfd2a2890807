"""
Domain errors raised by the messaging core.

Routes never translate these by hand; the exception handler in
``responses.py`` maps each class to its HTTP status and error code.
"""
import time
from functools import wraps
from typing import Callable, Optional, TypeVar

from sqlalchemy.exc import OperationalError

from .logging_config import get_logger

logger = get_logger("errors")

T = TypeVar("T")


class ChatCoreError(Exception):
    """Base class for all messaging-core errors."""

    status_code = 400
    error_code = "CHAT_ERROR"

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details
        super().__init__(message)


class NotFound(ChatCoreError):
    status_code = 404
    error_code = "NOT_FOUND"


class Forbidden(ChatCoreError):
    status_code = 403
    error_code = "FORBIDDEN"


class InvalidState(ChatCoreError):
    status_code = 409
    error_code = "INVALID_STATE"


class InvalidMessage(ChatCoreError):
    status_code = 422
    error_code = "VALIDATION_ERROR"


class DuplicateIgnored(ChatCoreError):
    """Idempotent no-op. Callers swallow this and report success."""

    status_code = 200
    error_code = "DUPLICATE_IGNORED"

    def __init__(self, message: str, existing=None):
        self.existing = existing
        super().__init__(message)


class TransientStoreError(ChatCoreError):
    status_code = 503
    error_code = "STORE_UNAVAILABLE"


def wrap_store_errors(func):
    """Re-raise low-level database connectivity errors as TransientStoreError.

    Meant for service methods; the service's ``db`` session is rolled back so
    the caller can retry the whole operation on a clean session.
    """
    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except OperationalError as e:
            self.db.rollback()
            raise TransientStoreError("Message store unavailable", {"cause": str(e.orig)}) from e

    return wrapper


def retry_transient(fn: Callable[[], T], attempts: int = 3, backoff: float = 0.2) -> T:
    """Call ``fn`` and retry it on TransientStoreError with exponential backoff."""
    attempt = 0
    while True:
        try:
            return fn()
        except TransientStoreError as e:
            attempt += 1
            if attempt >= attempts:
                raise
            logger.warning(
                "Transient store error, retrying",
                attempt=attempt,
                attempts=attempts,
                error_message=e.message,
            )
            time.sleep(backoff * (2 ** (attempt - 1)))
