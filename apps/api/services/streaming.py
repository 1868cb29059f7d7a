"""HTTP byte-range handling for media playback."""

from __future__ import annotations

import logging
import re
from typing import Iterator, Optional, Tuple

from services.blob_store import OpenedBlob
from services.errors import RangeNotSatisfiableError

logger = logging.getLogger(__name__)

STREAM_CHUNK_BYTES = 1024 * 1024
_DIGITS = re.compile(r"\d+", re.ASCII)


def parse_range(header: Optional[str], total_size: int) -> Optional[Tuple[int, int]]:
    """Resolve a ``Range`` header to an inclusive ``(start, end)`` pair.

    Returns None (serve the whole file) for absent, malformed or multi-range
    headers. A well-formed range starting past the end of the media raises
    RangeNotSatisfiableError.
    """
    if not header or total_size <= 0:
        return None
    unit, sep, range_set = header.strip().partition("=")
    if not sep or unit.strip().lower() != "bytes":
        return None
    range_set = range_set.strip()
    if "," in range_set or "-" not in range_set:
        return None

    start_s, _, end_s = range_set.partition("-")
    start_s, end_s = start_s.strip(), end_s.strip()
    if (start_s and not _DIGITS.fullmatch(start_s)) or (end_s and not _DIGITS.fullmatch(end_s)):
        return None

    if not start_s:
        # Suffix form: the last N bytes.
        if not end_s or int(end_s) == 0:
            return None
        length = min(int(end_s), total_size)
        return total_size - length, total_size - 1

    start = int(start_s)
    if start >= total_size:
        raise RangeNotSatisfiableError(total_size)
    end = int(end_s) if end_s else total_size - 1
    if end < start:
        return None
    return start, min(end, total_size - 1)


def iter_blob(opened: OpenedBlob, start: int, end: int, chunk_size: int = STREAM_CHUNK_BYTES) -> Iterator[bytes]:
    """Yield bytes ``start..end`` (inclusive) and close the blob afterwards."""
    try:
        opened.stream.seek(start)
        remaining = end - start + 1
        while remaining > 0:
            data = opened.stream.read(min(chunk_size, remaining))
            if not data:
                logger.error("Blob ended %d bytes early while streaming", remaining)
                break
            remaining -= len(data)
            yield data
    finally:
        opened.close()
