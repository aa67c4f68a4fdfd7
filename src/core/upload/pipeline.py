"""
Upload orchestration.

One `UploadOrchestrator` drives one content id through:

    IDLE -> VALIDATING -> COMPRESSING -> HASHING
         -> SIGNING | REQUESTING_PRESIGNED_URL
         -> UPLOADING -> COMPLETED | FAILED | CANCELLED

The self-signed and presigned paths share every step except how the
upload target is obtained, so they can't drift apart.

Collaborators (compressor, executor, presigned URL provider, signer)
are injected. Core doesn't know whether compression is FFmpeg or a
mock, or whether the PUT goes over httpx.

The orchestrator never retries on its own. When a network step fails
with a retryable error the compressed asset is kept, and the caller may
call `retry_upload()`, which re-enters at SIGNING /
REQUESTING_PRESIGNED_URL with a fresh timestamp or URL. Compression is
never repeated for a retry.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Protocol

from .errors import (
    NothingToRetry,
    PipelineBusy,
    PresignedURLExpired,
    UploadPipelineError,
)
from .hashing import hash_file
from .models import (
    CompressionPreset,
    ContentDigest,
    MediaAsset,
    PipelineState,
    PresignedUpload,
    SelfSignedTarget,
    SigningCredentials,
    UploadMode,
    UploadResult,
    UploadTarget,
)
from .signing import SigV4Signer
from .validation import validate_asset, validate_compressed_size

logger = logging.getLogger(__name__)


ProgressCallback = Callable[[float], None]
StateCallback = Callable[[PipelineState], None]

PHASE_WEIGHTS: dict[str, float] = {
    "validate": 0.10,
    "compress": 0.30,
    "prepare": 0.10,  # hashing + signing / presigned URL request
    "upload": 0.50,
}

_ALLOWED_TRANSITIONS: dict[PipelineState, set[PipelineState]] = {
    PipelineState.IDLE: {PipelineState.VALIDATING},
    PipelineState.VALIDATING: {PipelineState.COMPRESSING},
    PipelineState.COMPRESSING: {PipelineState.HASHING},
    PipelineState.HASHING: {
        PipelineState.SIGNING,
        PipelineState.REQUESTING_PRESIGNED_URL,
    },
    PipelineState.SIGNING: {PipelineState.UPLOADING},
    PipelineState.REQUESTING_PRESIGNED_URL: {PipelineState.UPLOADING},
    PipelineState.UPLOADING: {PipelineState.COMPLETED},
    PipelineState.COMPLETED: {PipelineState.VALIDATING},
    PipelineState.FAILED: {
        PipelineState.VALIDATING,
        PipelineState.SIGNING,
        PipelineState.REQUESTING_PRESIGNED_URL,
    },
    PipelineState.CANCELLED: {PipelineState.VALIDATING},
}


# ---------------------------------------------------------------------------
# Protocols (interfaces)
# ---------------------------------------------------------------------------

class Compressor(Protocol):
    """Re-encodes an asset for network delivery into a new temp file."""

    async def compress(
        self,
        asset: MediaAsset,
        preset: CompressionPreset,
        on_progress: Optional[ProgressCallback] = None,
    ) -> MediaAsset:
        ...


class PresignedURLProvider(Protocol):
    """Asks a backend for a time-limited upload URL."""

    async def request_upload_url(
        self,
        content_id: str,
        bearer_token: Optional[str] = None,
    ) -> PresignedUpload:
        ...


class UploadExecutor(Protocol):
    """Performs the PUT and classifies the outcome."""

    async def upload(
        self,
        payload_path: Path,
        target: UploadTarget,
        public_url: str,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> UploadResult:
        ...


# ---------------------------------------------------------------------------
# Configuration and progress
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PipelineConfig:
    """
    Everything the orchestrator needs to know about the destination.

    `max_source_size_bytes` guards the raw capture before compression;
    `max_size_bytes` is the limit for what actually gets uploaded.
    """
    mode: UploadMode
    bucket: str
    endpoint: str
    host: str
    public_base_url: str
    max_duration_seconds: float
    max_size_bytes: int
    max_source_size_bytes: int
    credentials: Optional[SigningCredentials] = None
    preset: CompressionPreset = CompressionPreset.MEDIUM

    def object_key(self, content_id: str) -> str:
        return f"{content_id}.mp4"

    def public_url(self, content_id: str) -> str:
        return f"{self.public_base_url.rstrip('/')}/{self.object_key(content_id)}"


class ProgressTracker:
    """
    Folds per-phase progress into one overall fraction.

    Reported values never go down and stay within [0, 1]; the callback
    only fires when the value actually increases.
    """

    def __init__(
        self,
        callback: Optional[ProgressCallback] = None,
        weights: Optional[dict[str, float]] = None,
        start_phase: Optional[str] = None,
    ) -> None:
        self._weights = dict(weights or PHASE_WEIGHTS)
        if abs(sum(self._weights.values()) - 1.0) > 1e-9:
            raise ValueError("Phase weights must sum to 1")
        self._callback = callback
        self._value = self._offset(start_phase) if start_phase else 0.0

    @property
    def value(self) -> float:
        return self._value

    def _offset(self, phase: str) -> float:
        offset = 0.0
        for name, weight in self._weights.items():
            if name == phase:
                return offset
            offset += weight
        raise KeyError(f"Unknown phase: {phase}")

    def report(self, phase: str, fraction: float) -> None:
        fraction = min(max(fraction, 0.0), 1.0)
        self._advance(self._offset(phase) + self._weights[phase] * fraction)

    def complete(self) -> None:
        self._advance(1.0)

    def _advance(self, value: float) -> None:
        value = min(max(value, 0.0), 1.0)
        if value <= self._value:
            return
        self._value = value
        if self._callback is not None:
            self._callback(value)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class UploadOrchestrator:
    """
    Sequences validation, compression, hashing, target preparation and
    the PUT for one content id at a time.

    Not meant to be shared by concurrent uploads of the same content id:
    two PUTs to the same key are last-writer-wins at the storage layer.
    A second `run` while one is in flight raises PipelineBusy.

    Use as an async context manager (or call `release()`) so a
    compressed asset kept for retry is cleaned up.
    """

    def __init__(
        self,
        config: PipelineConfig,
        compressor: Compressor,
        executor: UploadExecutor,
        signer: Optional[SigV4Signer] = None,
        presign_client: Optional[PresignedURLProvider] = None,
        on_state_change: Optional[StateCallback] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if config.mode is UploadMode.PRESIGNED and presign_client is None:
            raise ValueError("presign_client is required for presigned uploads")

        self._config = config
        self._compressor = compressor
        self._executor = executor
        self._signer = signer or SigV4Signer()
        self._presign_client = presign_client
        self._on_state_change = on_state_change
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._state = PipelineState.IDLE
        self._tracker = ProgressTracker()
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._source: Optional[MediaAsset] = None
        self._compressed: Optional[MediaAsset] = None
        self._digest: Optional[ContentDigest] = None
        self._content_id: Optional[str] = None
        self.last_error: Optional[BaseException] = None

    async def __aenter__(self) -> "UploadOrchestrator":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.release()

    # -- introspection -----------------------------------------------------

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def progress(self) -> float:
        return self._tracker.value

    @property
    def compressed_asset(self) -> Optional[MediaAsset]:
        return self._compressed

    @property
    def can_retry(self) -> bool:
        return (
            not self._running
            and self._state is PipelineState.FAILED
            and self._compressed is not None
            and self._digest is not None
        )

    # -- public operations -------------------------------------------------

    async def run(
        self,
        asset: MediaAsset,
        content_id: str,
        on_progress: Optional[ProgressCallback] = None,
        bearer_token: Optional[str] = None,
    ) -> UploadResult:
        """
        Run the whole pipeline for `asset` and return the upload result.

        Raises the typed pipeline error of whichever phase failed, or
        asyncio.CancelledError if the task was cancelled.
        """
        if not content_id:
            raise ValueError("content_id is required")
        if self._running:
            raise PipelineBusy(content_id)

        self.release()
        self._content_id = content_id
        self._source = asset
        self._tracker = ProgressTracker(on_progress)

        return await self._guarded(
            lambda: self._full_run(asset, bearer_token), content_id
        )

    async def retry_upload(
        self,
        on_progress: Optional[ProgressCallback] = None,
        bearer_token: Optional[str] = None,
    ) -> UploadResult:
        """
        Retry after a retryable failure without recompressing.

        Re-enters at SIGNING (fresh timestamp) or
        REQUESTING_PRESIGNED_URL (fresh URL).
        """
        content_id = self._content_id or ""
        if self._running:
            raise PipelineBusy(content_id)
        if not self.can_retry:
            raise NothingToRetry()

        self._tracker = ProgressTracker(on_progress, start_phase="prepare")
        logger.info(
            "Retrying upload",
            extra={"content_id": content_id, "mode": self._config.mode.value},
        )
        return await self._guarded(
            lambda: self._deliver(bearer_token), content_id
        )

    def start(
        self,
        asset: MediaAsset,
        content_id: str,
        on_progress: Optional[ProgressCallback] = None,
        bearer_token: Optional[str] = None,
    ) -> "UploadHandle":
        """Run the pipeline as a background task and return a handle to it."""
        if self._running or (self._task is not None and not self._task.done()):
            raise PipelineBusy(content_id)
        task = asyncio.create_task(
            self.run(asset, content_id, on_progress, bearer_token),
            name=f"upload-{content_id}",
        )
        self._task = task
        task.add_done_callback(self._task_finished)
        return UploadHandle(self, task)

    def _task_finished(self, task: asyncio.Task) -> None:
        # a task cancelled before its first step never reaches _guarded
        if task.cancelled() and not self._state.is_terminal:
            self._transition(PipelineState.CANCELLED)
        if self._task is task:
            self._task = None

    def cancel(self) -> bool:
        """
        Cancel whatever the pipeline is doing.

        The cancellation is delivered into the awaited call, so the
        encoder subprocess gets killed and the socket gets closed rather
        than left running in the background.
        """
        if self._task is not None and not self._task.done():
            return self._task.cancel()
        if not self._state.is_terminal:
            self._transition(PipelineState.CANCELLED)
            self.release()
            return True
        return False

    def release(self) -> None:
        """Delete the compressed temp file, if one is being held."""
        compressed, self._compressed = self._compressed, None
        self._digest = None
        if compressed is None:
            return
        if self._source is not None and compressed.path == self._source.path:
            return
        try:
            compressed.path.unlink(missing_ok=True)
            logger.debug(
                "Removed compressed asset",
                extra={"path": str(compressed.path)},
            )
        except OSError as e:
            logger.warning(
                "Failed to remove compressed asset",
                extra={"path": str(compressed.path), "error": str(e)},
            )

    # -- internals ---------------------------------------------------------

    async def _guarded(
        self,
        body: Callable[[], Awaitable[UploadResult]],
        content_id: str,
    ) -> UploadResult:
        """Run a pipeline body with state, cleanup and error bookkeeping."""
        self._running = True
        self._task = asyncio.current_task()
        keep_compressed = False
        try:
            result = await body()
        except asyncio.CancelledError:
            logger.info("Upload cancelled", extra={"content_id": content_id})
            if not self._state.is_terminal:
                self._transition(PipelineState.CANCELLED)
            raise
        except UploadPipelineError as e:
            keep_compressed = e.retryable and self._digest is not None
            self._fail(e, content_id)
            raise
        except Exception as e:
            self._fail(e, content_id)
            raise
        finally:
            self._running = False
            if self._task is asyncio.current_task():
                self._task = None
            if not keep_compressed:
                self.release()

        logger.info(
            "Upload completed",
            extra={
                "content_id": content_id,
                "public_url": result.public_url,
                "bytes_sent": result.bytes_sent,
                "elapsed_seconds": round(result.elapsed_seconds, 3),
            }
        )
        return result

    async def _full_run(
        self,
        asset: MediaAsset,
        bearer_token: Optional[str],
    ) -> UploadResult:
        config = self._config

        self._transition(PipelineState.VALIDATING)
        validate_asset(asset, config.max_duration_seconds, config.max_source_size_bytes)
        self._tracker.report("validate", 1.0)

        self._transition(PipelineState.COMPRESSING)
        self._compressed = await self._compressor.compress(
            asset,
            config.preset,
            on_progress=lambda fraction: self._tracker.report("compress", fraction),
        )
        validate_compressed_size(self._compressed, config.max_size_bytes)
        self._tracker.report("compress", 1.0)

        logger.info(
            "Video compressed",
            extra={
                "content_id": self._content_id,
                "source_mb": round(asset.size_mb, 2),
                "compressed_mb": round(self._compressed.size_mb, 2),
            }
        )

        self._transition(PipelineState.HASHING)
        # large files: keep the event loop free while reading
        self._digest = await asyncio.to_thread(hash_file, self._compressed.path)
        self._tracker.report("prepare", 0.5)

        return await self._deliver(bearer_token)

    async def _deliver(self, bearer_token: Optional[str]) -> UploadResult:
        compressed = self._compressed
        digest = self._digest
        content_id = self._content_id
        if compressed is None or digest is None or not content_id:
            raise NothingToRetry()

        if self._config.mode is UploadMode.SELF_SIGNED:
            self._transition(PipelineState.SIGNING)
            target: UploadTarget = self._sign_target(content_id, digest)
            public_url = self._config.public_url(content_id)
        else:
            self._transition(PipelineState.REQUESTING_PRESIGNED_URL)
            presigned = await self._presign_client.request_upload_url(
                content_id, bearer_token
            )
            target = presigned.to_target()
            public_url = presigned.public_url or self._config.public_url(content_id)
            if target.is_expired(self._clock()):
                raise PresignedURLExpired()
        self._tracker.report("prepare", 1.0)

        self._transition(PipelineState.UPLOADING)
        result = await self._executor.upload(
            compressed.path,
            target,
            public_url=public_url,
            on_progress=self._report_upload,
        )

        self._tracker.complete()
        self._transition(PipelineState.COMPLETED)
        return result

    def _sign_target(self, content_id: str, digest: ContentDigest) -> SelfSignedTarget:
        """Sign for right now; targets are never reused across attempts."""
        config = self._config
        credentials = config.credentials or SigningCredentials("", "")
        context = self._signer.new_context(credentials, self._clock())
        key = config.object_key(content_id)
        headers = self._signer.sign_with_context(
            context, config.host, config.bucket, key, payload_hash=digest.hex
        )
        return SelfSignedTarget(
            endpoint=config.endpoint,
            host=config.host,
            bucket=config.bucket,
            key=key,
            context=context,
            headers=headers,
        )

    def _report_upload(self, bytes_sent: int, total_bytes: int) -> None:
        fraction = bytes_sent / total_bytes if total_bytes else 1.0
        self._tracker.report("upload", fraction)

    def _transition(self, new_state: PipelineState) -> None:
        old_state = self._state
        if new_state is not old_state:
            terminal_exit = new_state in (PipelineState.FAILED, PipelineState.CANCELLED)
            allowed = _ALLOWED_TRANSITIONS.get(old_state, set())
            if not (new_state in allowed or (terminal_exit and not old_state.is_terminal)):
                raise RuntimeError(
                    f"Illegal pipeline transition {old_state.value} -> {new_state.value}"
                )
        self._state = new_state
        logger.debug(
            "Pipeline state changed",
            extra={
                "content_id": self._content_id,
                "from_state": old_state.value,
                "to_state": new_state.value,
            }
        )
        if self._on_state_change is not None:
            self._on_state_change(new_state)

    def _fail(self, error: BaseException, content_id: str) -> None:
        self.last_error = error
        logger.error(
            "Upload failed",
            extra={
                "content_id": content_id,
                "state": self._state.value,
                "kind": getattr(error, "kind", type(error).__name__),
                "retryable": getattr(error, "retryable", False),
                "error": str(error),
            }
        )
        if not self._state.is_terminal:
            self._transition(PipelineState.FAILED)


class UploadHandle:
    """
    A running pipeline.

    Await it for the result, or cancel it. Cancelling the task lands in
    the orchestrator, which moves to CANCELLED and removes temp files.
    """

    def __init__(self, orchestrator: UploadOrchestrator, task: asyncio.Task) -> None:
        self._orchestrator = orchestrator
        self._task = task

    @property
    def state(self) -> PipelineState:
        return self._orchestrator.state

    @property
    def progress(self) -> float:
        return self._orchestrator.progress

    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> bool:
        if self._task.done():
            return False
        return self._task.cancel()

    def __await__(self):
        return self._task.__await__()
