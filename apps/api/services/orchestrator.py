"""Background state machine turning an uploaded video into a streamable asset."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from media.prober import MediaProber, ProbeResult
from media.sensitivity import SensitivityClassifier
from models.video import TERMINAL_STATES, ProcessingState, Verdict, VideoRecord
from services.errors import ConcurrentUpdateError, ProbeError, ThumbnailError
from services.status_channel import StatusChannel, StatusEvent

logger = logging.getLogger(__name__)

PROGRESS_STARTED = 10
PROGRESS_PROBING = 30
PROGRESS_THUMBNAIL = 80
PROGRESS_DONE = 100


@dataclass
class _RecordCursor:
    """The orchestrator's view of the record it exclusively writes."""

    record_id: str
    owner_id: str
    blob_handle: str
    title: str
    description: str
    state: str
    progress: int
    version: int


class ProcessingOrchestrator:
    """Drives one record from ``uploading`` to ``completed`` or ``failed``.

    Exactly one orchestrator run writes a record's pipeline fields at a time.
    Every write carries the version it last saw, so a second writer fails fast
    with ConcurrentUpdateError instead of silently interleaving.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker,
        prober: MediaProber,
        classifier: SensitivityClassifier,
        status_channel: StatusChannel,
        thumbnail_size: Tuple[int, int] = (320, 240),
        fallback_seek_seconds: float = 1.0,
        classify_attempts: int = 3,
        classify_retry_delay_seconds: float = 0.5,
    ):
        self.session_maker = session_maker
        self.prober = prober
        self.classifier = classifier
        self.status_channel = status_channel
        self.thumbnail_size = thumbnail_size
        self.fallback_seek_seconds = fallback_seek_seconds
        self.classify_attempts = max(int(classify_attempts), 1)
        self.classify_retry_delay_seconds = classify_retry_delay_seconds

    async def run(self, record_id: str) -> None:
        """Process a record to a terminal state. Never raises."""
        try:
            await self._run_steps(record_id)
        except ConcurrentUpdateError as exc:
            # Another writer owns this record now and will drive it to a terminal state.
            logger.warning("Abandoning processing of %s: %s", record_id, exc)
        except Exception as exc:
            logger.exception("Video processing failed for %s: %s", record_id, exc)
            await self._fail(record_id, str(exc) or exc.__class__.__name__)

    async def _load(self, record_id: str) -> Optional[_RecordCursor]:
        async with self.session_maker() as db:
            result = await db.execute(select(VideoRecord).where(VideoRecord.id == record_id))
            record = result.scalar_one_or_none()
            if record is None:
                logger.warning("Video %s not found for processing", record_id)
                return None
            if record.is_deleted:
                logger.info("Video %s was deleted; skipping processing", record_id)
                return None
            if record.is_terminal:
                logger.info("Video %s already %s; skipping processing", record_id, record.state)
                return None
            return _RecordCursor(
                record_id=record.id,
                owner_id=record.owner_id,
                blob_handle=record.blob_handle,
                title=record.title or "",
                description=record.description or "",
                state=record.state,
                progress=int(record.progress or 0),
                version=int(record.version or 0),
            )

    async def _update_record(self, cursor: _RecordCursor, **fields: Any) -> None:
        """Per-field update guarded by the expected version and a non-terminal state."""
        if "progress" in fields:
            fields["progress"] = max(0, min(int(fields["progress"]), 100))
        async with self.session_maker() as db:
            result = await db.execute(
                update(VideoRecord)
                .where(
                    VideoRecord.id == cursor.record_id,
                    VideoRecord.version == cursor.version,
                    VideoRecord.state.notin_(TERMINAL_STATES),
                )
                .values(**fields, version=cursor.version + 1)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        if result.rowcount != 1:
            raise ConcurrentUpdateError(
                f"Video {cursor.record_id} changed underneath the orchestrator (expected version {cursor.version})"
            )
        cursor.version += 1
        if "state" in fields:
            cursor.state = fields["state"]
        if "progress" in fields:
            cursor.progress = fields["progress"]

    async def _advance(self, cursor: _RecordCursor, progress: int, message: str, **fields: Any) -> None:
        # Progress never moves backwards while processing, including after a restart.
        await self._update_record(cursor, progress=max(cursor.progress, progress), **fields)
        await self._publish(
            cursor.owner_id,
            StatusEvent(
                record_id=cursor.record_id,
                state=cursor.state,
                progress=cursor.progress,
                message=message,
            ),
        )

    async def _publish(self, owner_id: str, event: StatusEvent) -> None:
        try:
            await self.status_channel.publish(owner_id, event)
        except Exception as exc:
            logger.warning("Could not publish status for %s: %s", event.record_id, exc)

    async def _classify(self, cursor: _RecordCursor) -> Verdict:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.classify_attempts + 1):
            try:
                return self.classifier.classify(cursor.title, cursor.description)
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "Sensitivity classification attempt %d/%d for %s failed: %s",
                    attempt,
                    self.classify_attempts,
                    cursor.record_id,
                    exc,
                )
                if attempt < self.classify_attempts:
                    await asyncio.sleep(self.classify_retry_delay_seconds * attempt)
        raise RuntimeError(f"Sensitivity classification unavailable: {last_error}")

    async def _store_verdict(self, cursor: _RecordCursor, verdict: Verdict) -> str:
        """Write the pipeline verdict once; a moderator override always wins."""
        async with self.session_maker() as db:
            result = await db.execute(
                update(VideoRecord)
                .where(
                    VideoRecord.id == cursor.record_id,
                    VideoRecord.verdict == Verdict.PENDING.value,
                )
                .values(verdict=verdict.value, verdict_source="pipeline")
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if result.rowcount == 1:
                return verdict.value
            current = await db.execute(select(VideoRecord.verdict).where(VideoRecord.id == cursor.record_id))
            existing = current.scalar_one_or_none() or verdict.value
        logger.info("Verdict for %s already set to %s; keeping it", cursor.record_id, existing)
        return existing

    async def _run_steps(self, record_id: str) -> None:
        cursor = await self._load(record_id)
        if cursor is None:
            return

        logger.info("Starting background processing for video %s", record_id)
        await self._advance(
            cursor,
            PROGRESS_STARTED,
            "Processing started",
            state=ProcessingState.PROCESSING.value,
            processing_started_at=datetime.now(timezone.utc),
        )

        prober_available = self.prober.is_available()

        verdict = await self._store_verdict(cursor, await self._classify(cursor))
        logger.info("Sensitivity analysis result for %s: %s", record_id, verdict)

        if not prober_available:
            logger.warning("FFmpeg not available; completing %s without media processing", record_id)
            await self._finish(cursor, None, None, verdict, "Video uploaded (media tools unavailable)")
            return

        await self._advance(cursor, PROGRESS_PROBING, "Extracting metadata...")
        try:
            probe = await self.prober.probe(cursor.blob_handle)
        except ProbeError as exc:
            logger.error("Probe failed for %s: %s", record_id, exc)
            await self._fail(record_id, f"Video processing failed: {exc}")
            return

        await self._advance(cursor, PROGRESS_THUMBNAIL, "Generating thumbnail...")
        seek = probe.duration_seconds / 2 if probe.duration_seconds else self.fallback_seek_seconds
        thumbnail_handle: Optional[str] = None
        try:
            thumbnail_handle = await self.prober.thumbnail(cursor.blob_handle, seek, self.thumbnail_size)
        except ThumbnailError as exc:
            logger.warning("Thumbnail generation failed for %s: %s", record_id, exc)

        await self._finish(cursor, probe, thumbnail_handle, verdict, "Processing complete")

    async def _finish(
        self,
        cursor: _RecordCursor,
        probe: Optional[ProbeResult],
        thumbnail_handle: Optional[str],
        verdict: str,
        message: str,
    ) -> None:
        derived = {}
        if probe is not None:
            derived = {
                "duration_seconds": probe.duration_seconds,
                "width": probe.width,
                "height": probe.height,
                "codec": probe.codec,
                "bitrate": probe.bitrate,
                "has_audio": probe.has_audio,
            }
        await self._update_record(
            cursor,
            state=ProcessingState.COMPLETED.value,
            progress=PROGRESS_DONE,
            thumbnail_handle=thumbnail_handle,
            error_message=None,
            completed_at=datetime.now(timezone.utc),
            **derived,
        )
        logger.info("Video processing completed: %s", cursor.record_id)
        await self._publish(
            cursor.owner_id,
            StatusEvent(
                record_id=cursor.record_id,
                state=ProcessingState.COMPLETED.value,
                progress=PROGRESS_DONE,
                thumbnail_handle=thumbnail_handle,
                duration_seconds=probe.duration_seconds if probe is not None else None,
                verdict=verdict,
                message=message,
            ),
        )

    async def _fail(self, record_id: str, error_message: str) -> None:
        """Move a non-terminal record to ``failed`` and tell its owner."""
        try:
            async with self.session_maker() as db:
                result = await db.execute(
                    update(VideoRecord)
                    .where(
                        VideoRecord.id == record_id,
                        VideoRecord.state.notin_(TERMINAL_STATES),
                    )
                    .values(
                        state=ProcessingState.FAILED.value,
                        progress=0,
                        error_message=error_message[:1000],
                        completed_at=datetime.now(timezone.utc),
                        version=VideoRecord.version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                if result.rowcount != 1:
                    return
                owner = await db.execute(select(VideoRecord.owner_id).where(VideoRecord.id == record_id))
                owner_id = owner.scalar_one_or_none()
        except Exception:
            logger.exception("Could not mark video %s as failed", record_id)
            return

        if owner_id:
            await self._publish(
                owner_id,
                StatusEvent(
                    record_id=record_id,
                    state=ProcessingState.FAILED.value,
                    progress=0,
                    error_message=error_message,
                    message=f"Processing failed: {error_message}",
                ),
            )


def process_video_job(record_id: str) -> None:
    """RQ worker entrypoint for video processing jobs."""
    from database import engine
    from services.runtime import build_worker_runtime

    async def _run() -> None:
        runtime = build_worker_runtime()
        try:
            await runtime.orchestrator.run(record_id)
        finally:
            await runtime.status_channel.stop()
            # Pooled connections are bound to this job's event loop.
            await engine.dispose()

    asyncio.run(_run())
