"""Upload acceptance: validate, store the bytes, create the record, schedule processing."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import BinaryIO, Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from models.video import ProcessingState, Verdict, VideoRecord
from services.access import AuthContext
from services.blob_store import VIDEO_NAMESPACE, BlobStore
from services.errors import QueueUnavailableError, UploadValidationError
from services.processing_queue import VideoJobQueue

logger = logging.getLogger(__name__)

VIDEO_MIME_BY_EXT = {
    ".mp4": "video/mp4",
    ".mpeg": "video/mpeg",
    ".mov": "video/quicktime",
    ".avi": "video/x-msvideo",
    ".webm": "video/webm",
    ".mkv": "video/x-matroska",
}
GENERIC_CONTENT_TYPES = {"", "application/octet-stream", "binary/octet-stream"}
MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 2000


def sanitize_filename(filename: Optional[str]) -> str:
    base = os.path.basename(filename or "upload.mp4")
    safe = "".join(ch if ch.isalnum() or ch in ("-", "_", ".") else "_" for ch in base)
    return safe or "upload.mp4"


def parse_tags(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    seen: List[str] = []
    for tag in raw.split(","):
        cleaned = tag.strip().lower()
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return seen


def resolve_mime_type(content_type: Optional[str], filename: str, allowed: Iterable[str]) -> str:
    """Return the accepted MIME type or raise UploadValidationError."""
    allowed_types = {value.lower() for value in allowed}
    declared = (content_type or "").split(";", 1)[0].strip().lower()
    if declared in allowed_types:
        return declared
    if declared in GENERIC_CONTENT_TYPES:
        guessed = VIDEO_MIME_BY_EXT.get(Path(filename).suffix.lower())
        if guessed and guessed in allowed_types:
            return guessed
    raise UploadValidationError(
        "Unsupported file type. Upload a video file (mp4, mpeg, mov, avi, webm, mkv)."
    )


def validate_metadata(title: Optional[str], description: Optional[str]) -> tuple:
    cleaned_title = (title or "").strip()
    if not cleaned_title:
        raise UploadValidationError("Video title is required.")
    if len(cleaned_title) > MAX_TITLE_LENGTH:
        raise UploadValidationError(f"Title cannot exceed {MAX_TITLE_LENGTH} characters.")
    cleaned_description = (description or "").strip()
    if len(cleaned_description) > MAX_DESCRIPTION_LENGTH:
        raise UploadValidationError(f"Description cannot exceed {MAX_DESCRIPTION_LENGTH} characters.")
    return cleaned_title, cleaned_description


async def accept_upload(
    db: AsyncSession,
    *,
    owner: AuthContext,
    stream: BinaryIO,
    filename: Optional[str],
    content_type: Optional[str],
    title: Optional[str],
    description: Optional[str],
    tags: Optional[str],
    is_public: bool,
    blob_store: BlobStore,
    job_queue: VideoJobQueue,
    allowed_mime_types: Iterable[str],
    max_bytes: int,
) -> VideoRecord:
    """Persist an upload and schedule its processing without waiting for it."""
    cleaned_title, cleaned_description = validate_metadata(title, description)
    original_filename = sanitize_filename(filename)
    mime_type = resolve_mime_type(content_type, original_filename, allowed_mime_types)

    blob_handle: Optional[str] = None
    record: Optional[VideoRecord] = None
    save_task: Optional[asyncio.Future] = None
    try:
        save_task = asyncio.ensure_future(
            asyncio.to_thread(
                blob_store.save,
                stream,
                VIDEO_NAMESPACE,
                Path(original_filename).suffix,
                max_bytes,
            )
        )
        # Shielded: a cancelled upload still needs the handle to delete.
        blob_handle = await asyncio.shield(save_task)
        size_bytes = await asyncio.to_thread(blob_store.size, blob_handle)

        record = VideoRecord(
            owner_id=owner.user_id,
            organization=owner.organization,
            title=cleaned_title,
            description=cleaned_description,
            tags=parse_tags(tags),
            original_filename=original_filename,
            blob_handle=blob_handle,
            size_bytes=size_bytes,
            mime_type=mime_type,
            state=ProcessingState.UPLOADING.value,
            progress=0,
            verdict=Verdict.PENDING.value,
            is_public=bool(is_public),
        )
        db.add(record)
        await db.commit()
        await db.refresh(record)
    except BaseException:
        # Covers validation failures, storage errors and client aborts (cancellation).
        if record is not None and record.id is not None:
            await _discard_record(db, record)
        if blob_handle is None and save_task is not None:
            blob_handle = await _settle_save(save_task)
        if blob_handle is not None:
            blob_store.delete(blob_handle)
        raise

    logger.info("Video uploaded: %s (%s) by user %s", record.id, original_filename, owner.user_id)

    try:
        await job_queue.enqueue(record.id)
    except QueueUnavailableError as exc:
        logger.error("Could not schedule processing for %s: %s", record.id, exc)
        record.state = ProcessingState.FAILED.value
        record.error_message = "queue unavailable"
        await db.commit()
        raise
    return record


async def _discard_record(db: AsyncSession, record: VideoRecord) -> None:
    try:
        await db.rollback()
        persisted = await db.get(VideoRecord, record.id)
        if persisted is not None:
            await db.delete(persisted)
            await db.commit()
    except Exception:
        logger.exception("Could not discard partially created video %s", record.id)


async def _settle_save(save_task: asyncio.Future) -> Optional[str]:
    """Wait out an interrupted save and return the handle it produced, if any."""
    try:
        return await save_task
    except Exception:
        # Failed saves remove their own partial file.
        return None
