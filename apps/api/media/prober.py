"""ffmpeg/ffprobe adapter: media metadata extraction and thumbnail rendering."""

from __future__ import annotations

import asyncio
import logging
import shutil
import subprocess
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

import ffmpeg

from services.blob_store import THUMBNAIL_NAMESPACE, BlobNotFoundError, BlobStore
from services.errors import ProbeError, ThumbnailError

logger = logging.getLogger(__name__)


@dataclass
class ProbeResult:
    duration_seconds: Optional[float]
    width: Optional[int]
    height: Optional[int]
    codec: Optional[str]
    bitrate: Optional[int]
    has_audio: bool


def _to_int(value) -> Optional[int]:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _to_float(value) -> Optional[float]:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def parse_probe_output(probe: dict) -> ProbeResult:
    """Reduce raw ffprobe JSON to the fields the pipeline stores."""
    streams = probe.get("streams", []) or []
    fmt = probe.get("format", {}) or {}
    video_stream = next((s for s in streams if s.get("codec_type") == "video"), None)
    audio_stream = next((s for s in streams if s.get("codec_type") == "audio"), None)
    if video_stream is None:
        raise ProbeError("No video stream found in media file")

    duration = _to_float(fmt.get("duration")) or _to_float(video_stream.get("duration"))
    bitrate = _to_int(fmt.get("bit_rate")) or _to_int(video_stream.get("bit_rate"))
    return ProbeResult(
        duration_seconds=duration,
        width=_to_int(video_stream.get("width")),
        height=_to_int(video_stream.get("height")),
        codec=video_stream.get("codec_name"),
        bitrate=bitrate,
        has_audio=audio_stream is not None,
    )


class MediaProber:
    """Thin wrapper around the ffmpeg binaries, addressed by blob handle."""

    def __init__(
        self,
        blob_store: BlobStore,
        ffmpeg_binary: str = "ffmpeg",
        ffprobe_binary: str = "ffprobe",
        probe_timeout_seconds: float = 60.0,
        thumbnail_timeout_seconds: float = 60.0,
        availability_ttl_seconds: float = 300.0,
    ):
        self.blob_store = blob_store
        self.ffmpeg_binary = ffmpeg_binary
        self.ffprobe_binary = ffprobe_binary
        self.probe_timeout_seconds = probe_timeout_seconds
        self.thumbnail_timeout_seconds = thumbnail_timeout_seconds
        self.availability_ttl_seconds = availability_ttl_seconds
        self._available: Optional[bool] = None
        self._checked_at = 0.0

    def is_available(self) -> bool:
        """Whether both binaries resolve on PATH; cached for ``availability_ttl_seconds``."""
        now = time.monotonic()
        if self._available is not None and now - self._checked_at < self.availability_ttl_seconds:
            return self._available

        available = bool(shutil.which(self.ffmpeg_binary)) and bool(shutil.which(self.ffprobe_binary))
        if not available:
            logger.warning("FFmpeg not available (%s / %s)", self.ffmpeg_binary, self.ffprobe_binary)
        self._available = available
        self._checked_at = now
        return available

    def _source_path(self, handle: str, error_cls) -> Path:
        try:
            return self.blob_store.local_path(handle)
        except BlobNotFoundError as exc:
            raise error_cls(str(exc)) from exc

    async def probe(self, handle: str) -> ProbeResult:
        source = self._source_path(handle, ProbeError)
        try:
            # ffprobe's own timeout ends the worker thread with it.
            raw = await asyncio.to_thread(
                ffmpeg.probe,
                str(source),
                cmd=self.ffprobe_binary,
                timeout=self.probe_timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            raise ProbeError(f"ffprobe timed out after {self.probe_timeout_seconds:g}s") from exc
        except ffmpeg.Error as exc:
            stderr = exc.stderr.decode(errors="replace").strip() if exc.stderr else str(exc)
            raise ProbeError(f"Failed to read video metadata: {stderr[-500:]}") from exc
        except OSError as exc:
            raise ProbeError(f"ffprobe could not run: {exc}") from exc

        result = parse_probe_output(raw)
        logger.info(
            "Probed %s: duration=%ss %sx%s codec=%s",
            handle,
            result.duration_seconds,
            result.width,
            result.height,
            result.codec,
        )
        return result

    async def thumbnail(self, handle: str, seek_seconds: float, target_size: Tuple[int, int]) -> str:
        source = self._source_path(handle, ThumbnailError)
        width, height = target_size
        workdir = Path(tempfile.mkdtemp(prefix="vsp_thumb_"))
        output = workdir / "thumb.png"
        try:
            process = (
                ffmpeg
                .input(str(source), ss=max(float(seek_seconds), 0.0))
                .filter("scale", width, height)
                .output(str(output), vframes=1)
                .overwrite_output()
                .run_async(cmd=self.ffmpeg_binary, pipe_stdout=True, pipe_stderr=True)
            )
        except OSError as exc:
            shutil.rmtree(workdir, ignore_errors=True)
            raise ThumbnailError(f"ffmpeg could not run: {exc}") from exc

        try:
            try:
                _, stderr = await asyncio.to_thread(process.communicate, timeout=self.thumbnail_timeout_seconds)
            except subprocess.TimeoutExpired as exc:
                process.kill()
                await asyncio.to_thread(process.communicate)
                raise ThumbnailError(f"ffmpeg timed out after {self.thumbnail_timeout_seconds:g}s") from exc

            if process.returncode != 0 or not output.exists() or output.stat().st_size == 0:
                detail = (stderr or b"").decode(errors="replace").strip()[-500:]
                raise ThumbnailError(f"Failed to generate thumbnail: {detail or 'no output'}")

            with output.open("rb") as fh:
                thumb_handle = await asyncio.to_thread(self.blob_store.save, fh, THUMBNAIL_NAMESPACE, ".png")
            logger.info("Thumbnail generated for %s: %s", handle, thumb_handle)
            return thumb_handle
        finally:
            shutil.rmtree(workdir, ignore_errors=True)
