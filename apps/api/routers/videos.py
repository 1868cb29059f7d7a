"""Video upload, status, moderation and streaming router."""

import asyncio
import logging
from typing import Dict, Literal, Optional

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.video import VideoRecord
from routers.auth_scope import context_from_stream_token, get_auth_context, require_elevated
from routers.rate_limit import rate_limit
from services.access import AuthContext, authorize_stream
from services.blob_store import BlobNotFoundError
from services.errors import RecordNotFoundError, StreamingIOError
from services.ingestion import accept_upload
from services.runtime import PipelineRuntime, get_runtime
from services.session_token import create_stream_token
from services.streaming import iter_blob, parse_range

router = APIRouter()
logger = logging.getLogger(__name__)


class UploadAcceptedResponse(BaseModel):
    record_id: str
    state: str


class VideoStatusResponse(BaseModel):
    record_id: str
    title: str
    state: str
    progress: int
    verdict: str
    error_message: Optional[str] = None
    duration_seconds: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None
    resolution: Optional[str] = None
    codec: Optional[str] = None
    bitrate: Optional[int] = None
    has_audio: Optional[bool] = None
    thumbnail_handle: Optional[str] = None
    size_bytes: int
    mime_type: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class StreamTokenResponse(BaseModel):
    token: str
    expires_at: int
    stream_url: str


class StateSummary(BaseModel):
    count: int
    total_size_bytes: int


class VideoStatsResponse(BaseModel):
    total_videos: int
    total_size_bytes: int
    by_state: Dict[str, StateSummary]


class SensitivityOverrideRequest(BaseModel):
    status: Literal["safe", "flagged"]


class SensitivityOverrideResponse(BaseModel):
    record_id: str
    verdict: str
    previous_verdict: str


def _serialize_status(record: VideoRecord) -> VideoStatusResponse:
    return VideoStatusResponse(
        record_id=record.id,
        title=record.title,
        state=record.state,
        progress=int(record.progress or 0),
        verdict=record.verdict,
        error_message=record.error_message,
        duration_seconds=record.duration_seconds,
        width=record.width,
        height=record.height,
        resolution=record.resolution,
        codec=record.codec,
        bitrate=record.bitrate,
        has_audio=record.has_audio,
        thumbnail_handle=record.thumbnail_handle,
        size_bytes=int(record.size_bytes or 0),
        mime_type=record.mime_type,
        created_at=record.created_at.isoformat() if record.created_at else None,
        updated_at=record.updated_at.isoformat() if record.updated_at else None,
    )


async def _get_live_record(db: AsyncSession, record_id: str) -> Optional[VideoRecord]:
    record = await db.get(VideoRecord, record_id)
    if record is None or record.is_deleted:
        return None
    return record


@router.post("", status_code=202, response_model=UploadAcceptedResponse)
async def upload_video(
    file: UploadFile = File(...),
    title: str = Form(""),
    description: Optional[str] = Form(None),
    tags: Optional[str] = Form(None),
    is_public: bool = Form(False),
    _rate_limit: None = Depends(rate_limit("video_upload", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    runtime: PipelineRuntime = Depends(get_runtime),
):
    """Accept an upload and schedule processing; does not wait for it."""
    try:
        record = await accept_upload(
            db,
            owner=auth,
            stream=file.file,
            filename=file.filename,
            content_type=file.content_type,
            title=title,
            description=description,
            tags=tags,
            is_public=is_public,
            blob_store=runtime.blob_store,
            job_queue=runtime.job_queue,
            allowed_mime_types=runtime.settings.ALLOWED_VIDEO_MIME_TYPES,
            max_bytes=runtime.settings.MAX_UPLOAD_BYTES,
        )
    finally:
        await file.close()

    return UploadAcceptedResponse(record_id=record.id, state=record.state)


@router.get("/stream/{record_id}")
async def stream_video(
    record_id: str,
    request: Request,
    token: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    runtime: PipelineRuntime = Depends(get_runtime),
):
    """Stream a completed video with HTTP Range support.

    The credential comes from the query string because media elements cannot
    send an Authorization header.
    """
    caller = context_from_stream_token(token, record_id)
    record = authorize_stream(caller, await db.get(VideoRecord, record_id))

    try:
        opened = await asyncio.to_thread(runtime.blob_store.open, record.blob_handle)
    except BlobNotFoundError as exc:
        raise StreamingIOError(f"Video file missing for {record.id}: {exc}") from exc

    try:
        byte_range = parse_range(request.headers.get("range"), opened.length)
    except Exception:
        opened.close()
        raise

    headers = {"Accept-Ranges": "bytes"}
    if byte_range is None:
        start, end, status_code = 0, opened.length - 1, 200
        logger.debug("Sending full file for %s: %d bytes", record.id, opened.length)
    else:
        start, end = byte_range
        status_code = 206
        headers["Content-Range"] = f"bytes {start}-{end}/{opened.length}"
        logger.debug("Sending chunk for %s: %d-%d/%d", record.id, start, end, opened.length)
    headers["Content-Length"] = str(max(end - start + 1, 0))

    return StreamingResponse(
        iter_blob(opened, start, end),
        status_code=status_code,
        headers=headers,
        media_type=record.mime_type,
    )


@router.post("/{record_id}/stream-token", response_model=StreamTokenResponse)
async def issue_stream_token(
    record_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Mint a short-lived credential scoped to streaming this one video."""
    record = authorize_stream(auth, await db.get(VideoRecord, record_id))
    minted = create_stream_token(
        auth.user_id,
        record.id,
        role=auth.role.value,
        organization=auth.organization,
    )
    return StreamTokenResponse(
        token=minted["token"],
        expires_at=minted["expires_at"],
        stream_url=f"/videos/stream/{record.id}?token={minted['token']}",
    )


@router.get("/stats", response_model=VideoStatsResponse)
async def get_video_stats(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Counts and stored bytes of the caller's live videos, grouped by processing state."""
    result = await db.execute(
        select(
            VideoRecord.state,
            func.count(VideoRecord.id),
            func.coalesce(func.sum(VideoRecord.size_bytes), 0),
        )
        .where(VideoRecord.owner_id == auth.user_id, VideoRecord.is_deleted.is_(False))
        .group_by(VideoRecord.state)
    )
    by_state = {
        state: StateSummary(count=int(count), total_size_bytes=int(size))
        for state, count, size in result.all()
    }
    return VideoStatsResponse(
        total_videos=sum(summary.count for summary in by_state.values()),
        total_size_bytes=sum(summary.total_size_bytes for summary in by_state.values()),
        by_state=by_state,
    )


@router.get("/{record_id}/status", response_model=VideoStatusResponse)
async def get_video_status(
    record_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Current processing state, for clients (re)connecting to the status channel."""
    record = await _get_live_record(db, record_id)
    if record is None or not (record.owner_id == auth.user_id or auth.has_elevated_privilege()):
        raise RecordNotFoundError("Video not found")
    return _serialize_status(record)


@router.patch("/admin/{record_id}/sensitivity", response_model=SensitivityOverrideResponse)
async def override_sensitivity(
    record_id: str,
    request: SensitivityOverrideRequest,
    moderator: AuthContext = Depends(require_elevated),
    db: AsyncSession = Depends(get_db),
):
    """Moderator override of the sensitivity verdict."""
    record = await _get_live_record(db, record_id)
    if record is None:
        raise RecordNotFoundError("Video not found")

    previous = record.verdict
    # No version bump: overrides never conflict with orchestrator writes.
    await db.execute(
        update(VideoRecord)
        .where(VideoRecord.id == record_id)
        .values(verdict=request.status, verdict_source="moderator")
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.info(
        "Moderator %s changed sensitivity of %s: %s -> %s",
        moderator.user_id,
        record_id,
        previous,
        request.status,
    )
    return SensitivityOverrideResponse(record_id=record_id, verdict=request.status, previous_verdict=previous)
