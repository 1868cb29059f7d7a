"""Authentication dependencies for API user scoping."""

from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.access import AuthContext
from services.errors import AuthError, AuthorizationError
from services.session_token import decode_session_token, decode_stream_credential


auth_scheme = HTTPBearer(auto_error=False)


def context_from_session_token(token: Optional[str]) -> AuthContext:
    """Resolve a raw session token (REST header or WebSocket handshake)."""
    if not token:
        raise AuthError("Missing Bearer session token.")
    try:
        payload = decode_session_token(token)
    except ValueError as exc:
        raise AuthError(str(exc)) from exc
    return AuthContext.from_claims(payload)


def context_from_stream_token(token: Optional[str], record_id: str) -> AuthContext:
    """Resolve the query-string credential accepted by the streaming endpoint."""
    if not token:
        raise AuthError("Authentication token required")
    try:
        payload = decode_stream_credential(token, record_id)
    except ValueError as exc:
        raise AuthError(str(exc)) from exc
    return AuthContext.from_claims(payload)


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated user from Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise AuthError("Missing Bearer session token.")
    return context_from_session_token(credentials.credentials)


async def require_elevated(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
    """Allow only moderators and admins."""
    if not auth.has_elevated_privilege():
        raise AuthorizationError("Moderator or admin privilege required.")
    return auth
