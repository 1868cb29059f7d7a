"""Blob storage for raw uploads and derived thumbnails."""

from __future__ import annotations

import logging
import os
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional

from services.errors import UploadTooLargeError

logger = logging.getLogger(__name__)

VIDEO_NAMESPACE = "videos"
THUMBNAIL_NAMESPACE = "thumbnails"
NAMESPACES = (VIDEO_NAMESPACE, THUMBNAIL_NAMESPACE)
COPY_CHUNK_BYTES = 1024 * 1024


class BlobNotFoundError(Exception):
    pass


@dataclass
class OpenedBlob:
    """Readable blob with its total length. Closes the stream on exit."""

    stream: BinaryIO
    length: int

    def close(self) -> None:
        self.stream.close()

    def __enter__(self) -> "OpenedBlob":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class BlobStore(ABC):
    """Pluggable byte store addressed by opaque handles like ``videos/<hex>.mp4``."""

    @abstractmethod
    def save(
        self,
        stream: BinaryIO,
        namespace: str,
        suffix: str = "",
        max_bytes: Optional[int] = None,
    ) -> str:
        ...

    @abstractmethod
    def open(self, handle: str) -> OpenedBlob:
        ...

    @abstractmethod
    def size(self, handle: str) -> int:
        ...

    @abstractmethod
    def delete(self, handle: str) -> None:
        ...

    @abstractmethod
    def local_path(self, handle: str) -> Path:
        """Filesystem path for tools that need one (ffmpeg)."""


def _clean_suffix(suffix: str) -> str:
    suffix = (suffix or "").lower()
    if not suffix:
        return ""
    if not suffix.startswith("."):
        suffix = f".{suffix}"
    cleaned = "".join(ch for ch in suffix[1:] if ch.isalnum())[:10]
    return f".{cleaned}" if cleaned else ""


class LocalBlobStore(BlobStore):
    """Blob store backed by a local directory tree."""

    def __init__(self, root: str | os.PathLike):
        self.root = Path(root)

    def _resolve(self, handle: str) -> Path:
        namespace, _, name = str(handle or "").partition("/")
        if namespace not in NAMESPACES or not name or "/" in name or "\\" in name or name.startswith("."):
            raise BlobNotFoundError(f"Invalid blob handle: {handle!r}")
        return self.root / namespace / name

    def save(
        self,
        stream: BinaryIO,
        namespace: str,
        suffix: str = "",
        max_bytes: Optional[int] = None,
    ) -> str:
        if namespace not in NAMESPACES:
            raise ValueError(f"Unknown blob namespace: {namespace}")
        handle = f"{namespace}/{uuid.uuid4().hex}{_clean_suffix(suffix)}"
        destination = self._resolve(handle)
        destination.parent.mkdir(parents=True, exist_ok=True)

        total_size = 0
        try:
            with destination.open("wb") as out:
                while True:
                    chunk = stream.read(COPY_CHUNK_BYTES)
                    if not chunk:
                        break
                    total_size += len(chunk)
                    if max_bytes is not None and total_size > max_bytes:
                        raise UploadTooLargeError(
                            f"File too large. Max upload size is {max_bytes // (1024 * 1024)}MB."
                        )
                    out.write(chunk)
        except BaseException:
            destination.unlink(missing_ok=True)
            raise
        logger.debug("Stored blob %s (%d bytes)", handle, total_size)
        return handle

    def open(self, handle: str) -> OpenedBlob:
        path = self._resolve(handle)
        try:
            stream = path.open("rb")
        except FileNotFoundError as exc:
            raise BlobNotFoundError(f"Blob {handle} is missing at {path}") from exc
        return OpenedBlob(stream=stream, length=os.fstat(stream.fileno()).st_size)

    def size(self, handle: str) -> int:
        path = self._resolve(handle)
        try:
            return path.stat().st_size
        except FileNotFoundError as exc:
            raise BlobNotFoundError(f"Blob {handle} is missing at {path}") from exc

    def delete(self, handle: str) -> None:
        try:
            self._resolve(handle).unlink(missing_ok=True)
        except BlobNotFoundError:
            logger.warning("Refusing to delete invalid blob handle %r", handle)

    def local_path(self, handle: str) -> Path:
        path = self._resolve(handle)
        if not path.exists():
            raise BlobNotFoundError(f"Blob {handle} is missing at {path}")
        return path
