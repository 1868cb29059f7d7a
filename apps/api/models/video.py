"""Uploaded video record model."""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Integer, String, Text

from database import Base


class ProcessingState(str, enum.Enum):
    UPLOADING = "uploading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Verdict(str, enum.Enum):
    PENDING = "pending"
    SAFE = "safe"
    FLAGGED = "flagged"


TERMINAL_STATES = (ProcessingState.COMPLETED.value, ProcessingState.FAILED.value)
IN_PROGRESS_STATES = (ProcessingState.UPLOADING.value, ProcessingState.PROCESSING.value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VideoRecord(Base):
    """One uploaded video: content metadata, derived metadata and pipeline state.

    Pipeline fields (state, progress, derived metadata) are written only by the
    processing orchestrator for that record, guarded by ``version``.
    """

    __tablename__ = "videos"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String, nullable=False, index=True)
    organization = Column(String, nullable=True, index=True)

    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False, default="")
    tags = Column(JSON, nullable=False, default=list)
    original_filename = Column(String, nullable=False)
    blob_handle = Column(String, nullable=False, unique=True)
    size_bytes = Column(Integer, nullable=False)
    mime_type = Column(String, nullable=False)

    duration_seconds = Column(Float, nullable=True)
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    codec = Column(String, nullable=True)
    bitrate = Column(Integer, nullable=True)
    has_audio = Column(Boolean, nullable=True)
    thumbnail_handle = Column(String, nullable=True)

    state = Column(String, nullable=False, default=ProcessingState.UPLOADING.value, index=True)
    progress = Column(Integer, nullable=False, default=0)
    error_message = Column(String, nullable=True)
    verdict = Column(String, nullable=False, default=Verdict.PENDING.value, index=True)
    verdict_source = Column(String, nullable=True)  # pipeline, moderator

    is_public = Column(Boolean, nullable=False, default=False)
    is_deleted = Column(Boolean, nullable=False, default=False, index=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
    processing_started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def resolution(self):
        if self.width is None or self.height is None:
            return None
        return f"{self.width}x{self.height}"
