import io
from datetime import datetime, timezone
from typing import Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base, get_db
from main import app
from media.prober import ProbeResult
from media.sensitivity import SensitivityClassifier
from models.video import VideoRecord
from routers import rate_limit
from services.blob_store import THUMBNAIL_NAMESPACE, VIDEO_NAMESPACE, LocalBlobStore
from services.runtime import build_runtime
from services.status_channel import InMemoryStatusTransport


VIDEO_BYTES = bytes(range(256)) * 40


class FakeProber:
    """Stands in for ffmpeg; thumbnails are written to the real blob store."""

    def __init__(self, blob_store, available: bool = True):
        self.blob_store = blob_store
        self.available = available
        self.probe_result = ProbeResult(
            duration_seconds=12.0,
            width=1280,
            height=720,
            codec="h264",
            bitrate=2_000_000,
            has_audio=True,
        )
        self.probe_error: Optional[Exception] = None
        self.thumbnail_error: Optional[Exception] = None
        self.probe_calls = []
        self.thumbnail_calls = []
        self.on_probe = None

    def is_available(self) -> bool:
        return self.available

    async def probe(self, handle: str) -> ProbeResult:
        self.probe_calls.append(handle)
        if self.on_probe is not None:
            await self.on_probe(handle)
        if self.probe_error is not None:
            raise self.probe_error
        return self.probe_result

    async def thumbnail(self, handle: str, seek_seconds: float, target_size) -> str:
        self.thumbnail_calls.append((handle, seek_seconds, target_size))
        if self.thumbnail_error is not None:
            raise self.thumbnail_error
        return self.blob_store.save(io.BytesIO(b"\x89PNG fake"), THUMBNAIL_NAMESPACE, ".png")


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "videos.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(tmp_path / "media")


@pytest.fixture
def fake_prober(blob_store):
    return FakeProber(blob_store)


@pytest.fixture
def transport():
    return InMemoryStatusTransport()


@pytest_asyncio.fixture
async def runtime(session_maker, blob_store, fake_prober, transport):
    pipeline = build_runtime(
        settings,
        session_maker,
        blob_store=blob_store,
        prober=fake_prober,
        classifier=SensitivityClassifier(random_flag_rate=0.0),
        transport=transport,
        queue_backend="memory",
    )
    pipeline.orchestrator.classify_retry_delay_seconds = 0
    await pipeline.start()
    yield pipeline
    await pipeline.stop()


@pytest_asyncio.fixture
async def api_client(runtime, session_maker):
    previous_runtime = app.state.runtime
    app.state.runtime = runtime

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)
    app.state.runtime = previous_runtime


@pytest.fixture
def seed_video(session_maker, blob_store):
    """Insert a record whose blob exists on disk."""

    async def _seed(
        owner_id: str = "owner-1",
        *,
        state: str = "completed",
        verdict: str = "safe",
        content: bytes = VIDEO_BYTES,
        title: str = "Weekend hike",
        description: str = "",
        is_public: bool = False,
        organization: Optional[str] = None,
        progress: Optional[int] = None,
        updated_at: Optional[datetime] = None,
        is_deleted: bool = False,
    ) -> VideoRecord:
        handle = blob_store.save(io.BytesIO(content), VIDEO_NAMESPACE, ".mp4")
        now = datetime.now(timezone.utc)
        record = VideoRecord(
            owner_id=owner_id,
            organization=organization,
            title=title,
            description=description,
            tags=[],
            original_filename="clip.mp4",
            blob_handle=handle,
            size_bytes=len(content),
            mime_type="video/mp4",
            state=state,
            progress=progress if progress is not None else (100 if state == "completed" else 0),
            verdict=verdict,
            is_public=is_public,
            is_deleted=is_deleted,
            created_at=updated_at or now,
            updated_at=updated_at or now,
        )
        async with session_maker() as db:
            db.add(record)
            await db.commit()
            await db.refresh(record)
        return record

    return _seed


@pytest.fixture
def captured_events(runtime):
    """Subscribe to an owner's status events and collect them in order."""
    subscriptions = []

    def _capture(owner_id: str = "owner-1"):
        events = []
        subscriptions.append(runtime.status_channel.subscribe(owner_id, events.append))
        return events

    yield _capture
    for unsubscribe in subscriptions:
        unsubscribe()
