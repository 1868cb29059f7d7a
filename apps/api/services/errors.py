"""Domain errors for the ingestion pipeline and streaming gate."""

from typing import Dict, Optional


class VideoPipelineError(Exception):
    """Base error carrying the HTTP status and a stable machine-readable code."""

    status_code = 500
    code = "internal_error"
    public_message: Optional[str] = None

    def __init__(self, message: str = "", *, headers: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.message = message or self.__class__.__name__
        self.headers = headers

    def client_message(self) -> str:
        return self.public_message or self.message


class UploadValidationError(VideoPipelineError):
    status_code = 400
    code = "validation_error"


class UploadTooLargeError(UploadValidationError):
    status_code = 413
    code = "upload_too_large"


class AuthError(VideoPipelineError):
    status_code = 401
    code = "unauthenticated"


class AuthorizationError(VideoPipelineError):
    status_code = 403
    code = "forbidden"


class RecordNotFoundError(VideoPipelineError):
    status_code = 404
    code = "not_found"


class NotReadyError(VideoPipelineError):
    status_code = 400
    code = "not_ready"

    def __init__(self, message: str = "Video is still being processed", retry_after_seconds: int = 5):
        super().__init__(message, headers={"Retry-After": str(retry_after_seconds)})


class RangeNotSatisfiableError(VideoPipelineError):
    status_code = 416
    code = "range_not_satisfiable"

    def __init__(self, total_size: int):
        super().__init__(
            "Requested range is outside the media",
            headers={"Content-Range": f"bytes */{total_size}"},
        )


class StreamingIOError(VideoPipelineError):
    status_code = 500
    code = "streaming_error"
    public_message = "Streaming error"


class QueueUnavailableError(VideoPipelineError):
    status_code = 503
    code = "queue_unavailable"
    public_message = "Processing queue unavailable. Retry the upload later."


class ProbeError(VideoPipelineError):
    """The media file could not be inspected; fatal to the record."""

    code = "probe_failed"


class ThumbnailError(VideoPipelineError):
    """Thumbnail rendering failed; the pipeline continues without one."""

    code = "thumbnail_failed"


class ConcurrentUpdateError(VideoPipelineError):
    """A pipeline write lost its optimistic version check."""

    status_code = 409
    code = "concurrent_update"
