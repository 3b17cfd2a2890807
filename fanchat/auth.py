"""
Authentication utilities: JWT verification and the creator capability check.

Tokens are issued by the identity provider; this service only verifies them
and reads the viewer's id, email and display name from the claims.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Iterable, Optional
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from .config import get_settings
from .errors import Forbidden

settings = get_settings()

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/token", auto_error=False)


@dataclass(frozen=True)
class Viewer:
    """The authenticated caller as described by the identity provider."""
    uid: str
    email: Optional[str] = None
    display_name: Optional[str] = None


class CreatorAuthority:
    """Decides whether an identity may act as the creator.

    Injected into the services instead of consulting a hardcoded allowlist.
    """

    def __init__(self, creator_uid: Optional[str], creator_emails: Iterable[str] = ()):
        self.creator_uid = creator_uid
        self.creator_emails = {e.strip().lower() for e in creator_emails if e and e.strip()}

    def is_creator(self, uid: Optional[str], email: Optional[str] = None) -> bool:
        if uid and self.creator_uid and uid == self.creator_uid:
            return True
        if email and email.strip().lower() in self.creator_emails:
            return True
        return False

    def require_creator(self, viewer: Viewer):
        if not self.is_creator(viewer.uid, viewer.email):
            raise Forbidden("Creator access required")


@lru_cache()
def get_creator_authority() -> CreatorAuthority:
    """Creator capability built from settings."""
    return CreatorAuthority(settings.creator_uid, settings.creator_emails)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token (identity-provider side; used by tests and tooling)."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=1))
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def verify_token(token: str) -> Optional[dict]:
    """Verify a JWT access token and return its payload."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None
    if payload.get("type", "access") != "access":
        return None
    return payload


def get_current_viewer(token: Optional[str] = Depends(oauth2_scheme)) -> Optional[Viewer]:
    """Get the viewer from the bearer token (optional auth)."""
    if not token:
        return None

    payload = verify_token(token)
    if not payload:
        return None

    uid = payload.get("sub")
    if not uid:
        return None

    email = payload.get("email")
    return Viewer(
        uid=str(uid),
        email=email.strip().lower() if isinstance(email, str) and email.strip() else None,
        display_name=payload.get("name"),
    )


def get_required_viewer(current_viewer: Optional[Viewer] = Depends(get_current_viewer)) -> Viewer:
    """Get the current viewer, raising 401 if not authenticated."""
    if not current_viewer:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return current_viewer


def get_creator(
    viewer: Viewer = Depends(get_required_viewer),
    authority: CreatorAuthority = Depends(get_creator_authority),
) -> Viewer:
    """Require the current viewer to be the creator."""
    authority.require_creator(viewer)
    return viewer
