"""Caller identity, roles and the streaming access gate."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from models.video import ProcessingState, Verdict, VideoRecord
from services.errors import AuthorizationError, NotReadyError, RecordNotFoundError

logger = logging.getLogger(__name__)


class Role(str, enum.Enum):
    VIEWER = "viewer"
    EDITOR = "editor"
    MODERATOR = "moderator"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: Any) -> "Role":
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.VIEWER

    def has_elevated_privilege(self) -> bool:
        return self in (Role.MODERATOR, Role.ADMIN)


@dataclass
class AuthContext:
    user_id: str
    role: Role = Role.VIEWER
    organization: Optional[str] = None
    email: Optional[str] = None

    def has_elevated_privilege(self) -> bool:
        return self.role.has_elevated_privilege()

    @classmethod
    def from_claims(cls, payload: Dict[str, Any]) -> "AuthContext":
        return cls(
            user_id=str(payload.get("sub", "")),
            role=Role.parse(payload.get("role")),
            organization=str(payload.get("org", "") or "").strip() or None,
            email=str(payload.get("email", "") or "") or None,
        )


def can_view(caller: AuthContext, record: VideoRecord) -> bool:
    """Ownership/visibility rule; elevated callers see everything."""
    if caller.has_elevated_privilege():
        return True
    if record.owner_id == caller.user_id:
        return True
    return bool(
        record.is_public
        and caller.organization
        and record.organization == caller.organization
    )


def authorize_stream(caller: AuthContext, record: Optional[VideoRecord]) -> VideoRecord:
    """Apply the streaming gate in order, raising on the first failed check."""
    if record is None or record.is_deleted:
        raise RecordNotFoundError("Video not found")

    if not can_view(caller, record):
        logger.warning("Unauthorized stream attempt on %s by user %s", record.id, caller.user_id)
        raise AuthorizationError("You do not have permission to access this video")

    if record.state != ProcessingState.COMPLETED.value:
        logger.info("Video %s not ready for streaming: %s", record.id, record.state)
        raise NotReadyError()

    # Owners are gated too; only the caller's privilege matters here.
    if record.verdict == Verdict.FLAGGED.value and not caller.has_elevated_privilege():
        logger.warning("Flagged content %s denied to non-elevated user %s", record.id, caller.user_id)
        raise AuthorizationError("Content flagged as sensitive. Moderator access required.")

    return record
