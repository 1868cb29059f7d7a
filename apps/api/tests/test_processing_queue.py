import asyncio
from unittest.mock import MagicMock, patch

import pytest

from services.errors import QueueUnavailableError
from services.processing_queue import VIDEO_QUEUE_NAME, InMemoryVideoJobQueue, RQVideoJobQueue


@pytest.mark.asyncio
async def test_in_memory_queue_runs_each_record_once():
    processed = []
    gate = asyncio.Event()

    async def _runner(record_id: str):
        await gate.wait()
        processed.append(record_id)

    queue = InMemoryVideoJobQueue(_runner, workers=2)
    await queue.start()
    try:
        first = await queue.enqueue("rec-1")
        duplicate = await queue.enqueue("rec-1")
        await queue.enqueue("rec-2")
        gate.set()
        await queue.join()
    finally:
        await queue.stop()

    assert first == duplicate == "video:rec-1"
    assert sorted(processed) == ["rec-1", "rec-2"]


@pytest.mark.asyncio
async def test_in_memory_queue_survives_runner_crash():
    processed = []

    async def _runner(record_id: str):
        if record_id == "bad":
            raise RuntimeError("boom")
        processed.append(record_id)

    queue = InMemoryVideoJobQueue(_runner, workers=1)
    await queue.start()
    try:
        await queue.enqueue("bad")
        await queue.enqueue("good")
        await queue.join()
        # A finished record can be scheduled again.
        await queue.enqueue("good")
        await queue.join()
    finally:
        await queue.stop()

    assert processed == ["good", "good"]


@pytest.mark.asyncio
async def test_rq_queue_enqueues_orchestrator_job():
    fake_queue = MagicMock()
    fake_queue.enqueue.return_value = MagicMock(id="video:rec-1")

    with patch("services.processing_queue.get_video_queue", return_value=fake_queue) as get_queue:
        job_id = await RQVideoJobQueue("redis://example:6379").enqueue("rec-1")

    assert job_id == "video:rec-1"
    get_queue.assert_called_once_with("redis://example:6379")
    args, kwargs = fake_queue.enqueue.call_args
    assert args == ("services.orchestrator.process_video_job", "rec-1")
    assert kwargs["job_id"] == "video:rec-1"
    assert kwargs["retry"].max == 3


@pytest.mark.asyncio
async def test_rq_queue_failure_is_queue_unavailable():
    with patch("services.processing_queue.get_video_queue", side_effect=ConnectionError("refused")):
        with pytest.raises(QueueUnavailableError):
            await RQVideoJobQueue("redis://example:6379").enqueue("rec-1")


def test_video_queue_name():
    assert VIDEO_QUEUE_NAME == "video_jobs"
