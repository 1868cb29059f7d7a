"""Session and streaming token helpers for backend-authenticated user scope."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "vsp_session"
STREAM_TOKEN_TYPE = "vsp_stream"


def _encode(claims: Dict[str, Any]) -> str:
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    role: str = "viewer",
    organization: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Create a signed session token payload for API authentication."""
    now = datetime.now(timezone.utc)
    ttl_hours = int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24)
    expires_at = now + timedelta(hours=max(ttl_hours, 1))
    claims: Dict[str, Any] = {
        "sub": user_id,
        "type": SESSION_TOKEN_TYPE,
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if email:
        claims["email"] = email
    if organization:
        claims["org"] = organization

    return {
        "token": _encode(claims),
        "expires_at": int(expires_at.timestamp()),
    }


def create_stream_token(
    user_id: str,
    record_id: str,
    role: str = "viewer",
    organization: Optional[str] = None,
    expires_seconds: Optional[int] = None,
) -> Dict[str, Any]:
    """Create a short-lived token that only unlocks streaming of one record.

    Media elements cannot attach an Authorization header, so this token travels
    in the query string and should be treated as semi-public.
    """
    now = datetime.now(timezone.utc)
    ttl_seconds = int(expires_seconds or settings.STREAM_TOKEN_TTL_SECONDS or 300)
    expires_at = now + timedelta(seconds=max(ttl_seconds, 1))
    claims: Dict[str, Any] = {
        "sub": user_id,
        "type": STREAM_TOKEN_TYPE,
        "rid": record_id,
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if organization:
        claims["org"] = organization

    return {
        "token": _encode(claims),
        "expires_at": int(expires_at.timestamp()),
    }


def _decode(token: str) -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    subject = str(payload.get("sub", "")).strip()
    if not subject:
        raise ValueError("Session token missing subject.")
    return payload


def decode_session_token(token: str) -> Dict[str, Any]:
    """Decode and validate a signed session token."""
    payload = _decode(token)
    token_type = str(payload.get("type", "")).strip()
    if token_type != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")
    return payload


def decode_stream_credential(token: str, record_id: str) -> Dict[str, Any]:
    """Decode a credential presented to the streaming endpoint for ``record_id``."""
    payload = _decode(token)
    token_type = str(payload.get("type", "")).strip()
    if token_type == STREAM_TOKEN_TYPE:
        if str(payload.get("rid", "")) != record_id:
            raise ValueError("Stream token was issued for a different video.")
        return payload
    if token_type == SESSION_TOKEN_TYPE and settings.STREAM_ACCEPTS_SESSION_TOKEN:
        return payload
    raise ValueError("Invalid stream token type.")
