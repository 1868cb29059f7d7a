"""Wiring of the pipeline collaborators, built once per process and injected."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Settings, parse_thumbnail_size, settings as default_settings
from media.prober import MediaProber
from media.sensitivity import SensitivityClassifier
from services.blob_store import BlobStore, LocalBlobStore
from services.orchestrator import ProcessingOrchestrator
from services.processing_queue import InMemoryVideoJobQueue, RQVideoJobQueue, VideoJobQueue
from services.status_channel import (
    InMemoryStatusTransport,
    RedisStatusTransport,
    StatusChannel,
    StatusTransport,
)

logger = logging.getLogger(__name__)


@dataclass
class PipelineRuntime:
    settings: Settings
    session_maker: async_sessionmaker
    blob_store: BlobStore
    prober: MediaProber
    classifier: SensitivityClassifier
    status_channel: StatusChannel
    orchestrator: ProcessingOrchestrator
    job_queue: VideoJobQueue

    async def start(self) -> None:
        await self.status_channel.start()
        await self.job_queue.start()

    async def stop(self) -> None:
        await self.job_queue.stop()
        await self.status_channel.stop()


def _build_transport(config: Settings) -> StatusTransport:
    if config.STATUS_CHANNEL_BACKEND == "redis":
        return RedisStatusTransport(config.REDIS_URL)
    return InMemoryStatusTransport()


def build_runtime(
    config: Optional[Settings] = None,
    session_maker: Optional[async_sessionmaker] = None,
    *,
    blob_store: Optional[BlobStore] = None,
    prober: Optional[MediaProber] = None,
    classifier: Optional[SensitivityClassifier] = None,
    transport: Optional[StatusTransport] = None,
    queue_backend: Optional[str] = None,
) -> PipelineRuntime:
    """Assemble a runtime from settings; any collaborator can be swapped in."""
    config = config or default_settings
    if session_maker is None:
        from database import async_session_maker

        session_maker = async_session_maker

    blob_store = blob_store or LocalBlobStore(config.MEDIA_ROOT)
    prober = prober or MediaProber(
        blob_store,
        ffmpeg_binary=config.FFMPEG_BINARY,
        ffprobe_binary=config.FFPROBE_BINARY,
        probe_timeout_seconds=config.PROBE_TIMEOUT_SECONDS,
        thumbnail_timeout_seconds=config.THUMBNAIL_TIMEOUT_SECONDS,
        availability_ttl_seconds=config.PROBER_AVAILABILITY_TTL_SECONDS,
    )
    classifier = classifier or SensitivityClassifier(
        deny_list=config.SENSITIVITY_DENY_LIST,
        random_flag_rate=config.SENSITIVITY_RANDOM_FLAG_RATE,
        rng=random.Random(config.SENSITIVITY_RANDOM_SEED),
    )
    status_channel = StatusChannel(transport or _build_transport(config))
    orchestrator = ProcessingOrchestrator(
        session_maker,
        prober,
        classifier,
        status_channel,
        thumbnail_size=parse_thumbnail_size(config.THUMBNAIL_SIZE),
        fallback_seek_seconds=config.THUMBNAIL_FALLBACK_SEEK_SECONDS,
        classify_attempts=config.SENSITIVITY_CLASSIFY_ATTEMPTS,
    )

    backend = queue_backend or config.PROCESSING_QUEUE_BACKEND
    if backend == "rq":
        job_queue: VideoJobQueue = RQVideoJobQueue(config.REDIS_URL)
    else:
        job_queue = InMemoryVideoJobQueue(orchestrator.run, workers=config.PROCESSING_WORKERS)

    return PipelineRuntime(
        settings=config,
        session_maker=session_maker,
        blob_store=blob_store,
        prober=prober,
        classifier=classifier,
        status_channel=status_channel,
        orchestrator=orchestrator,
        job_queue=job_queue,
    )


def build_worker_runtime(config: Optional[Settings] = None) -> PipelineRuntime:
    """Runtime for an RQ worker process: it only publishes, never subscribes."""
    config = config or default_settings
    return build_runtime(config, transport=RedisStatusTransport(config.REDIS_URL), queue_backend="memory")


def get_runtime(request: Request) -> PipelineRuntime:
    """FastAPI dependency returning the app's runtime."""
    return request.app.state.runtime
