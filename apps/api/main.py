"""
Video Stream Pipeline - FastAPI Backend
Main application entry point: uploads, processing status, moderation and streaming.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import health, status_ws, videos
from services.errors import VideoPipelineError
from services.processing_queue import recover_stalled_videos
from services.runtime import build_runtime

logging.basicConfig(
    level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Video Stream Pipeline API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")

    runtime = app.state.runtime
    await runtime.start()
    if not runtime.prober.is_available():
        print("⚠️ ffmpeg/ffprobe not found; videos will complete without derived metadata.")

    # The in-process queue loses everything on restart, so any in-progress record is orphaned.
    stale_minutes = settings.STALE_PROCESSING_MINUTES if settings.PROCESSING_QUEUE_BACKEND == "rq" else 0
    try:
        recovered = await recover_stalled_videos(
            runtime.session_maker,
            runtime.job_queue,
            max_age_minutes=stale_minutes,
        )
        if recovered:
            print(f"♻️ Re-queued {recovered} stalled videos after startup.")
    except Exception as exc:
        print(f"⚠️ Stalled video recovery skipped: {exc}")
    yield
    # Shutdown
    await runtime.stop()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Video Stream Pipeline API",
    description="Upload videos, follow their processing live and stream them back",
    version="0.1.0",
    lifespan=lifespan,
)
app.state.runtime = build_runtime(settings)


@app.exception_handler(VideoPipelineError)
async def video_pipeline_error_handler(request: Request, exc: VideoPipelineError):
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.code, request.url.path, exc.message, exc_info=exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.client_message(), "code": exc.code},
        headers=exc.headers,
    )


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Range", "Accept-Ranges", "Content-Length"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(videos.router, prefix="/videos", tags=["Videos"])
app.include_router(status_ws.router, tags=["Status"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Video Stream Pipeline API",
        "version": "0.1.0",
        "status": "running"
    }
