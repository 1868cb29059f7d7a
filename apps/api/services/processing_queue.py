"""Video processing job queues (in-process asyncio or durable Redis/RQ) and startup recovery."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional, Set

from redis import Redis
from rq import Queue, Retry
from sqlalchemy import func
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.future import select

from models.video import IN_PROGRESS_STATES, VideoRecord
from services.errors import QueueUnavailableError

logger = logging.getLogger(__name__)

VIDEO_QUEUE_NAME = "video_jobs"
VIDEO_JOB_TIMEOUT_SECONDS = 1800

Runner = Callable[[str], Awaitable[None]]


def get_redis_connection(redis_url: str) -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(redis_url)


def get_video_queue(redis_url: str) -> Queue:
    """Return the configured video processing queue."""
    return Queue(
        name=VIDEO_QUEUE_NAME,
        connection=get_redis_connection(redis_url),
        default_timeout=VIDEO_JOB_TIMEOUT_SECONDS,
    )


class VideoJobQueue(ABC):
    """Schedules orchestrator runs; callers never wait for processing."""

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    @abstractmethod
    async def enqueue(self, record_id: str) -> str:
        """Schedule processing of ``record_id`` and return the queue job id."""


class InMemoryVideoJobQueue(VideoJobQueue):
    """Single-process queue drained by a fixed pool of asyncio worker tasks.

    A record that is already queued or running is not scheduled a second
    time, so at most one worker ever processes a given record.
    """

    def __init__(self, runner: Runner, workers: int = 2):
        self.runner = runner
        self.worker_count = max(int(workers), 1)
        self._queue: asyncio.Queue = asyncio.Queue()
        self._scheduled: Set[str] = set()
        self._workers: List[asyncio.Task] = []

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._work(index), name=f"video-worker-{index}")
            for index in range(self.worker_count)
        ]

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        for task in self._workers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers = []

    async def enqueue(self, record_id: str) -> str:
        job_id = f"video:{record_id}"
        if record_id in self._scheduled:
            logger.info("Video %s already scheduled; skipping duplicate enqueue", record_id)
            return job_id
        self._scheduled.add(record_id)
        self._queue.put_nowait(record_id)
        return job_id

    async def join(self) -> None:
        """Wait until every scheduled record has been processed."""
        await self._queue.join()

    async def _work(self, index: int) -> None:
        while True:
            record_id = await self._queue.get()
            try:
                await self.runner(record_id)
            except Exception:
                logger.exception("Video worker %d crashed while processing %s", index, record_id)
            finally:
                self._scheduled.discard(record_id)
                self._queue.task_done()


class RQVideoJobQueue(VideoJobQueue):
    """Durable queue; jobs survive API restarts and run in ``worker.py``."""

    def __init__(self, redis_url: str):
        self.redis_url = redis_url

    def _enqueue_sync(self, record_id: str) -> str:
        queue = get_video_queue(self.redis_url)
        job = queue.enqueue(
            "services.orchestrator.process_video_job",
            record_id,
            job_id=f"video:{record_id}",
            retry=Retry(max=3, interval=[15, 60, 180]),
            job_timeout=VIDEO_JOB_TIMEOUT_SECONDS,
            result_ttl=86400,
            failure_ttl=86400,
        )
        return job.id

    async def enqueue(self, record_id: str) -> str:
        try:
            return await asyncio.to_thread(self._enqueue_sync, record_id)
        except Exception as exc:
            raise QueueUnavailableError(f"Could not enqueue video {record_id}: {exc}") from exc


async def recover_stalled_videos(
    session_maker: async_sessionmaker,
    queue: VideoJobQueue,
    max_age_minutes: int = 30,
    now: Optional[datetime] = None,
) -> int:
    """Re-queue records stranded in uploading/processing after restarts or worker loss."""
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(minutes=max(max_age_minutes, 0))
    async with session_maker() as db:
        result = await db.execute(
            select(VideoRecord.id).where(
                VideoRecord.state.in_(IN_PROGRESS_STATES),
                VideoRecord.is_deleted.is_(False),
                func.coalesce(VideoRecord.updated_at, VideoRecord.created_at) < cutoff,
            )
        )
        stalled_ids = list(result.scalars().all())

    recovered = 0
    for record_id in stalled_ids:
        try:
            await queue.enqueue(record_id)
            recovered += 1
        except QueueUnavailableError as exc:
            logger.warning("Could not re-queue stalled video %s: %s", record_id, exc)
    return recovered
