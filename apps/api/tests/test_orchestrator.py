import subprocess
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import update

from media.prober import MediaProber
from models.video import VideoRecord
from services.errors import ProbeError, ThumbnailError
from services.processing_queue import VideoJobQueue, recover_stalled_videos


async def _reload(session_maker, record_id: str) -> VideoRecord:
    async with session_maker() as db:
        return await db.get(VideoRecord, record_id)


@pytest.mark.asyncio
async def test_orchestrator_drives_record_to_completed(runtime, session_maker, seed_video, captured_events, fake_prober):
    record = await seed_video(state="uploading")
    events = captured_events("owner-1")

    await runtime.orchestrator.run(record.id)

    assert [event.progress for event in events] == [10, 30, 80, 100]
    assert [event.state for event in events] == ["processing", "processing", "processing", "completed"]
    final = events[-1]
    assert final.record_id == record.id
    assert final.verdict == "safe"
    assert final.duration_seconds == 12.0
    assert final.thumbnail_handle and final.thumbnail_handle.startswith("thumbnails/")

    stored = await _reload(session_maker, record.id)
    assert stored.state == "completed"
    assert stored.progress == 100
    assert stored.verdict == "safe"
    assert stored.verdict_source == "pipeline"
    assert stored.duration_seconds == 12.0
    assert stored.resolution == "1280x720"
    assert stored.codec == "h264"
    assert stored.has_audio is True
    assert stored.thumbnail_handle == final.thumbnail_handle
    assert stored.completed_at is not None
    assert stored.version == 4

    # Thumbnail is taken from the middle of the clip.
    assert fake_prober.thumbnail_calls == [(record.blob_handle, 6.0, (320, 240))]


@pytest.mark.asyncio
async def test_orchestrator_uses_fallback_seek_when_duration_unknown(runtime, seed_video, fake_prober):
    fake_prober.probe_result.duration_seconds = None
    record = await seed_video(state="uploading")

    await runtime.orchestrator.run(record.id)

    assert fake_prober.thumbnail_calls[0][1] == 1.0


@pytest.mark.asyncio
async def test_orchestrator_completes_without_media_tools(runtime, session_maker, seed_video, captured_events, fake_prober):
    fake_prober.available = False
    record = await seed_video(state="uploading")
    events = captured_events("owner-1")

    await runtime.orchestrator.run(record.id)

    assert [event.progress for event in events] == [10, 100]
    assert events[-1].state == "completed"
    assert events[-1].thumbnail_handle is None
    assert fake_prober.probe_calls == []

    stored = await _reload(session_maker, record.id)
    assert stored.state == "completed"
    assert stored.duration_seconds is None
    assert stored.thumbnail_handle is None
    assert stored.verdict == "safe"


@pytest.mark.asyncio
async def test_probe_failure_marks_record_failed(runtime, session_maker, seed_video, captured_events, fake_prober):
    fake_prober.probe_error = ProbeError("moov atom not found")
    record = await seed_video(state="uploading")
    events = captured_events("owner-1")

    await runtime.orchestrator.run(record.id)

    stored = await _reload(session_maker, record.id)
    assert stored.state == "failed"
    assert stored.progress == 0
    assert stored.error_message.startswith("Video processing failed")
    assert "moov atom" in stored.error_message
    assert fake_prober.thumbnail_calls == []

    assert events[-1].state == "failed"
    assert events[-1].progress == 0
    assert "moov atom" in events[-1].error_message


@pytest.mark.asyncio
async def test_probe_timeout_marks_record_failed(runtime, session_maker, seed_video, blob_store, monkeypatch):
    prober = MediaProber(blob_store, probe_timeout_seconds=0.1)
    monkeypatch.setattr(prober, "is_available", lambda: True)
    monkeypatch.setattr(runtime.orchestrator, "prober", prober)
    record = await seed_video(state="uploading")

    with patch("media.prober.ffmpeg.probe", side_effect=subprocess.TimeoutExpired("ffprobe", 0.1)):
        await runtime.orchestrator.run(record.id)

    stored = await _reload(session_maker, record.id)
    assert stored.state == "failed"
    assert "timed out" in stored.error_message
    assert stored.thumbnail_handle is None


@pytest.mark.asyncio
async def test_thumbnail_failure_is_not_fatal(runtime, session_maker, seed_video, captured_events, fake_prober):
    fake_prober.thumbnail_error = ThumbnailError("could not seek")
    record = await seed_video(state="uploading")
    events = captured_events("owner-1")

    await runtime.orchestrator.run(record.id)

    stored = await _reload(session_maker, record.id)
    assert stored.state == "completed"
    assert stored.thumbnail_handle is None
    assert stored.duration_seconds == 12.0
    assert events[-1].state == "completed"
    assert events[-1].thumbnail_handle is None


@pytest.mark.asyncio
async def test_deny_listed_metadata_is_flagged(runtime, session_maker, seed_video, captured_events):
    record = await seed_video(state="uploading", title="Explicit street fight")
    events = captured_events("owner-1")

    await runtime.orchestrator.run(record.id)

    stored = await _reload(session_maker, record.id)
    assert stored.state == "completed"
    assert stored.verdict == "flagged"
    assert events[-1].verdict == "flagged"


@pytest.mark.asyncio
async def test_moderator_verdict_is_not_overwritten(runtime, session_maker, seed_video):
    record = await seed_video(state="uploading", verdict="flagged")
    async with session_maker() as db:
        await db.execute(
            update(VideoRecord).where(VideoRecord.id == record.id).values(verdict_source="moderator")
        )
        await db.commit()

    await runtime.orchestrator.run(record.id)

    stored = await _reload(session_maker, record.id)
    assert stored.state == "completed"
    assert stored.verdict == "flagged"
    assert stored.verdict_source == "moderator"


@pytest.mark.asyncio
async def test_terminal_records_are_left_alone(runtime, session_maker, seed_video, captured_events, fake_prober):
    record = await seed_video(state="uploading")
    await runtime.orchestrator.run(record.id)
    completed = await _reload(session_maker, record.id)

    events = captured_events("owner-1")
    await runtime.orchestrator.run(record.id)

    again = await _reload(session_maker, record.id)
    assert events == []
    assert again.version == completed.version
    assert again.updated_at == completed.updated_at
    assert len(fake_prober.probe_calls) == 1


@pytest.mark.asyncio
async def test_failed_record_is_not_revived(runtime, session_maker, seed_video, captured_events):
    record = await seed_video(state="failed", progress=0)
    events = captured_events("owner-1")

    await runtime.orchestrator.run(record.id)

    stored = await _reload(session_maker, record.id)
    assert stored.state == "failed"
    assert events == []


@pytest.mark.asyncio
async def test_concurrent_writer_makes_orchestrator_back_off(runtime, session_maker, seed_video, fake_prober):
    record = await seed_video(state="uploading")

    async def _competing_write(handle):
        async with session_maker() as db:
            await db.execute(
                update(VideoRecord)
                .where(VideoRecord.id == record.id)
                .values(version=VideoRecord.version + 5, progress=55)
            )
            await db.commit()

    fake_prober.on_probe = _competing_write

    await runtime.orchestrator.run(record.id)

    stored = await _reload(session_maker, record.id)
    # The run abandons instead of failing or overwriting the other writer's state.
    assert stored.state == "processing"
    assert stored.progress == 55
    assert stored.error_message is None
    assert fake_prober.thumbnail_calls == []


@pytest.mark.asyncio
async def test_progress_never_moves_backwards_on_rerun(runtime, session_maker, seed_video, captured_events, fake_prober):
    record = await seed_video(state="processing", progress=30)
    fake_prober.available = False
    events = captured_events("owner-1")

    await runtime.orchestrator.run(record.id)

    assert [event.progress for event in events] == [30, 100]


@pytest.mark.asyncio
async def test_classifier_outage_fails_record(runtime, session_maker, seed_video, monkeypatch):
    calls = []

    def _broken_classify(title, description=None):
        calls.append(title)
        raise ConnectionError("moderation service down")

    monkeypatch.setattr(runtime.orchestrator.classifier, "classify", _broken_classify)
    record = await seed_video(state="uploading")

    await runtime.orchestrator.run(record.id)

    stored = await _reload(session_maker, record.id)
    assert len(calls) == runtime.orchestrator.classify_attempts
    assert stored.state == "failed"
    assert "Sensitivity classification unavailable" in stored.error_message


@pytest.mark.asyncio
async def test_missing_record_is_ignored(runtime, captured_events):
    events = captured_events("owner-1")
    await runtime.orchestrator.run("does-not-exist")
    assert events == []


class _RecordingQueue(VideoJobQueue):
    def __init__(self):
        self.enqueued = []

    async def enqueue(self, record_id: str) -> str:
        self.enqueued.append(record_id)
        return f"video:{record_id}"


@pytest.mark.asyncio
async def test_recover_stalled_videos_requeues_only_stale_in_progress_records(session_maker, seed_video):
    now = datetime.now(timezone.utc)
    stale = now - timedelta(hours=2)
    stale_uploading = await seed_video(state="uploading", updated_at=stale)
    stale_processing = await seed_video(state="processing", progress=30, updated_at=stale)
    await seed_video(state="processing", progress=30, updated_at=now)
    await seed_video(state="completed", updated_at=stale)
    await seed_video(state="uploading", updated_at=stale, is_deleted=True)

    queue = _RecordingQueue()
    recovered = await recover_stalled_videos(session_maker, queue, max_age_minutes=30, now=now)

    assert recovered == 2
    assert sorted(queue.enqueued) == sorted([stale_uploading.id, stale_processing.id])
