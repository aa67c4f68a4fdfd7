"""
Error taxonomy for the upload pipeline.

Every failure the pipeline can surface is one of these. Each carries a
short `kind` tag (stable, for logs and API payloads) and a `retryable`
flag so callers can decide between re-signing and retrying, restarting
the whole pipeline, or giving up.

The pipeline itself never retries. That decision belongs to the caller.
"""

from typing import Optional


class UploadPipelineError(Exception):
    """Base class for all pipeline failures."""

    kind: str = "upload_pipeline_error"
    retryable: bool = False

    def __init__(self, message: str, retryable: Optional[bool] = None) -> None:
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class ValidationError(UploadPipelineError):
    """The asset violates a configured constraint."""
    kind = "validation_error"


class DurationExceeded(ValidationError):
    kind = "duration_exceeded"

    def __init__(self, actual: float, maximum: float) -> None:
        self.actual = actual
        self.maximum = maximum
        super().__init__(
            f"Video is {actual:g}s long; the maximum is {maximum:g}s"
        )


class SizeTooLarge(ValidationError):
    kind = "size_too_large"

    def __init__(self, actual: int, maximum: int) -> None:
        self.actual = actual
        self.maximum = maximum
        super().__init__(
            f"Video is {actual} bytes; the maximum is {maximum} bytes"
        )


# ---------------------------------------------------------------------------
# Compression
# ---------------------------------------------------------------------------

class CompressionError(UploadPipelineError):
    kind = "compression_error"


class CompressionFailed(CompressionError):
    kind = "compression_failed"

    def __init__(self, cause: str) -> None:
        self.cause = cause
        super().__init__(f"Failed to compress video: {cause}")


class CompressionCancelled(CompressionError):
    kind = "compression_cancelled"

    def __init__(self) -> None:
        super().__init__("Video compression was cancelled")


# ---------------------------------------------------------------------------
# Signing
# ---------------------------------------------------------------------------

class SigningError(UploadPipelineError):
    kind = "signing_error"


class MissingCredentials(SigningError):
    kind = "missing_credentials"

    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(f"Missing signing credentials: {', '.join(missing)}")


# ---------------------------------------------------------------------------
# Presigned URL backend
# ---------------------------------------------------------------------------

class BackendError(UploadPipelineError):
    """The presigned-URL backend could not give us a usable URL."""
    kind = "backend_error"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message, retryable=retryable)
        self.status_code = status_code


class BackendUnavailable(BackendError):
    kind = "backend_unavailable"
    retryable = True


class InvalidResponse(BackendError):
    kind = "invalid_response"


class Unauthorized(BackendError):
    kind = "unauthorized"


class ServerError(BackendError):
    kind = "server_error"
    retryable = True


class InvalidArgument(BackendError):
    kind = "invalid_argument"


# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------

class UploadError(UploadPipelineError):
    kind = "upload_error"


class UploadRejected(UploadError):
    """The object store answered with a non-2xx status."""
    kind = "upload_rejected"

    def __init__(
        self,
        status_code: int,
        server_message: Optional[str] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        self.status_code = status_code
        self.server_message = server_message
        if retryable is None:
            retryable = status_code >= 500 or status_code in (408, 429)
        detail = f": {server_message}" if server_message else ""
        super().__init__(
            f"Upload rejected with HTTP {status_code}{detail}",
            retryable=retryable,
        )


class TransportError(UploadError):
    """The connection failed before a complete response came back."""
    kind = "transport_error"

    def __init__(self, cause: str, retryable: bool = True) -> None:
        self.cause = cause
        super().__init__(f"Upload transport failed: {cause}", retryable=retryable)


class PresignedURLExpired(UploadError):
    """A presigned URL was about to be used after its expiry."""
    kind = "presigned_url_expired"
    retryable = True

    def __init__(self) -> None:
        super().__init__("Presigned URL has expired; request a fresh one")


# ---------------------------------------------------------------------------
# Pipeline usage
# ---------------------------------------------------------------------------

class PipelineError(UploadPipelineError):
    kind = "pipeline_error"


class PipelineBusy(PipelineError):
    kind = "pipeline_busy"

    def __init__(self, content_id: str) -> None:
        self.content_id = content_id
        super().__init__(f"An upload for '{content_id}' is already in flight")


class NothingToRetry(PipelineError):
    kind = "nothing_to_retry"

    def __init__(self) -> None:
        super().__init__("No compressed asset is available to retry")
