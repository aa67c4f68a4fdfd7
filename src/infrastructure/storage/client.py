"""
Object storage upload client for workout videos.

Performs the single whole-object PUT to Cloudflare R2 (S3-compatible)
and turns whatever comes back into an UploadResult or a typed error.

Two ways a PUT gets authorized, never both on one request:
- SelfSignedTarget: the three SigV4 headers computed by the signer are
  attached verbatim
- PresignedTarget: the signature already lives in the URL query string,
  so no auth headers are added

We speak HTTP directly with httpx instead of going through boto3 because
the signing has to be ours: the same bytes must be producible on a
device that only holds a presigned URL, and the pipeline needs per-chunk
progress and cancellation that reaches the socket.

Mock mode stores objects in memory, enabling pipeline testing without
provisioning actual object storage.
"""

import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncIterator, Callable, Optional

import httpx

from ...core.upload.errors import (
    PresignedURLExpired,
    TransportError,
    UploadPipelineError,
    UploadRejected,
)
from ...core.upload.models import (
    VIDEO_CONTENT_TYPE,
    PresignedTarget,
    SelfSignedTarget,
    UploadResult,
    UploadTarget,
)
from ...core.upload.signing import canonical_uri

logger = logging.getLogger(__name__)


ByteProgressCallback = Callable[[int, int], None]

# R2 and S3 reject signatures older than 15 minutes
SIGNATURE_MAX_AGE = timedelta(minutes=15)

_XML_CODE = re.compile(r"<Code>(.*?)</Code>", re.DOTALL)
_XML_MESSAGE = re.compile(r"<Message>(.*?)</Message>", re.DOTALL)


@dataclass
class UploadClientConfig:
    """
    Transport settings for the PUT.

    The read timeout is generous because the server only answers after
    the last byte; the connect timeout is short so a dead network fails
    fast and the caller can decide to retry.
    """
    timeout_seconds: float = 300.0
    connect_timeout_seconds: float = 10.0
    chunk_size: int = 256 * 1024

    def __post_init__(self) -> None:
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        if self.timeout_seconds <= 0 or self.connect_timeout_seconds <= 0:
            raise ValueError("timeouts must be positive")


def parse_server_message(body: str) -> Optional[str]:
    """
    Pull "Code: Message" out of an S3-style XML error body.

    Falls back to the raw (trimmed) body for non-XML responses.
    """
    if not body or not body.strip():
        return None
    code = _XML_CODE.search(body)
    message = _XML_MESSAGE.search(body)
    if code and message:
        return f"{code.group(1).strip()}: {message.group(1).strip()}"
    if code:
        return code.group(1).strip()
    return body.strip()[:500]


def is_presign_expiry(status_code: int, server_message: Optional[str]) -> bool:
    """True when a 403 on a presigned URL means "expired", not "forbidden"."""
    if status_code != 403 or not server_message:
        return False
    return "expired" in server_message.lower()


class HTTPUploadExecutor:
    """
    Streams a file to the object store with one PUT.

    Not resumable: any failure means the whole payload is resent on retry.
    The executor owns an httpx client per upload unless one is injected,
    so cancelling the upload closes its connection.
    """

    def __init__(
        self,
        config: Optional[UploadClientConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._config = config or UploadClientConfig()
        self._client = client
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def build_request_parts(
        self,
        target: UploadTarget,
        size_bytes: int,
    ) -> tuple[str, dict[str, str]]:
        """
        Work out URL and headers for the PUT.

        Raises:
            PresignedURLExpired: presigned target past its expiry
            ValueError: self-signed target without signature headers
        """
        headers = {
            "Content-Type": VIDEO_CONTENT_TYPE,
            "Content-Length": str(size_bytes),
        }

        if isinstance(target, SelfSignedTarget):
            if not target.is_signed:
                raise ValueError("Self-signed target has not been signed")
            url = f"{target.endpoint.rstrip('/')}{canonical_uri(target.bucket, target.key)}"
            url_host = httpx.URL(url).netloc.decode("ascii")
            if url_host != target.host:
                raise ValueError(
                    f"Signed host '{target.host}' does not match URL host '{url_host}'"
                )
            age = self._clock() - target.context.signed_at
            if age > SIGNATURE_MAX_AGE:
                logger.warning(
                    "Signature is older than the server skew window",
                    extra={"age_seconds": int(age.total_seconds())},
                )
            headers.update(target.headers)
            return url, headers

        if isinstance(target, PresignedTarget):
            if target.is_expired(self._clock()):
                raise PresignedURLExpired()
            return target.url, headers

        raise TypeError(f"Unsupported upload target: {type(target).__name__}")

    async def upload(
        self,
        payload_path: Path,
        target: UploadTarget,
        public_url: str,
        on_progress: Optional[ByteProgressCallback] = None,
    ) -> UploadResult:
        """
        PUT the file at `payload_path` to `target`.

        Returns:
            UploadResult with the public URL, bytes sent and elapsed time

        Raises:
            UploadRejected: non-2xx response (retryable for 5xx, 408, 429
                and expired presigned URLs)
            TransportError: connection-level failure or partial transfer
            PresignedURLExpired: presigned target used after expiry
        """
        payload_path = Path(payload_path)
        size_bytes = payload_path.stat().st_size
        url, headers = self.build_request_parts(target, size_bytes)
        counter = {"sent": 0}

        logger.info(
            "Uploading video",
            extra={
                "signing": "self_signed" if isinstance(target, SelfSignedTarget) else "presigned",
                "size_bytes": size_bytes,
                "public_url": public_url,
            }
        )

        started = time.monotonic()
        try:
            if self._client is not None:
                response = await self._put(
                    self._client, url, headers, payload_path, size_bytes, counter, on_progress
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout()) as client:
                    response = await self._put(
                        client, url, headers, payload_path, size_bytes, counter, on_progress
                    )
        except UploadPipelineError:
            raise
        except httpx.TimeoutException as e:
            logger.warning(
                "Upload timed out",
                extra={"bytes_sent": counter["sent"], "error": str(e)},
            )
            raise TransportError(f"timeout: {e}", retryable=True) from e
        except httpx.TransportError as e:
            logger.warning(
                "Upload connection failed",
                extra={"bytes_sent": counter["sent"], "error": str(e)},
            )
            raise TransportError(f"{type(e).__name__}: {e}", retryable=True) from e
        except httpx.HTTPError as e:
            logger.error("Upload request failed", extra={"error": str(e)})
            raise TransportError(str(e), retryable=False) from e

        elapsed = time.monotonic() - started

        if not response.is_success:
            server_message = parse_server_message(response.text)
            presign_expired = (
                isinstance(target, PresignedTarget)
                and is_presign_expiry(response.status_code, server_message)
            )
            logger.error(
                "Object store rejected upload",
                extra={
                    "status": response.status_code,
                    "server_message": server_message,
                    "presign_expired": presign_expired,
                }
            )
            raise UploadRejected(
                response.status_code,
                server_message,
                retryable=True if presign_expired else None,
            )

        if counter["sent"] != size_bytes:
            raise TransportError(
                f"partial transfer: sent {counter['sent']} of {size_bytes} bytes",
                retryable=True,
            )

        return UploadResult(
            public_url=public_url,
            bytes_sent=counter["sent"],
            elapsed_seconds=elapsed,
            status_code=response.status_code,
        )

    async def _put(
        self,
        client: httpx.AsyncClient,
        url: str,
        headers: dict[str, str],
        payload_path: Path,
        size_bytes: int,
        counter: dict[str, int],
        on_progress: Optional[ByteProgressCallback],
    ) -> httpx.Response:
        return await client.put(
            url,
            headers=headers,
            content=self._stream_file(payload_path, size_bytes, counter, on_progress),
            timeout=self._timeout(),
        )

    async def _stream_file(
        self,
        payload_path: Path,
        size_bytes: int,
        counter: dict[str, int],
        on_progress: Optional[ByteProgressCallback],
    ) -> AsyncIterator[bytes]:
        """Yield the file in chunks, reporting bytes handed to the socket."""
        with open(payload_path, "rb") as f:
            while True:
                chunk = f.read(self._config.chunk_size)
                if not chunk:
                    break
                yield chunk
                counter["sent"] += len(chunk)
                if on_progress is not None:
                    on_progress(counter["sent"], size_bytes)

    def _timeout(self) -> httpx.Timeout:
        return httpx.Timeout(
            self._config.timeout_seconds,
            connect=self._config.connect_timeout_seconds,
        )


# ---------------------------------------------------------------------------
# Mock Executor for Local Development
# ---------------------------------------------------------------------------

class MockUploadExecutor:
    """
    In-memory object store for local development.

    Objects are stored by their full key within the bucket, so
    uploading the same content id twice overwrites instead of duplicating.
    `failures` is a queue of errors to raise on the next PUTs, which lets
    tests and demos script a flaky network.

    Not suitable for production, but perfect for development and testing.
    """

    def __init__(
        self,
        failures: Optional[list[Exception]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.objects: dict[str, bytes] = {}
        self.requests: list[dict] = []
        self._failures = list(failures or [])
        self._url_builder = HTTPUploadExecutor(clock=clock)
        logger.info("Initialized mock upload executor (in-memory)")

    @property
    def put_calls(self) -> int:
        return len(self.requests)

    async def upload(
        self,
        payload_path: Path,
        target: UploadTarget,
        public_url: str,
        on_progress: Optional[ByteProgressCallback] = None,
    ) -> UploadResult:
        """Store the payload in memory."""
        started = time.monotonic()
        data = Path(payload_path).read_bytes()
        url, headers = self._url_builder.build_request_parts(target, len(data))
        self.requests.append({"url": url, "headers": headers})

        if self._failures:
            raise self._failures.pop(0)

        key = self._object_key(target, url)
        self.objects[key] = data
        if on_progress is not None:
            on_progress(len(data), len(data))

        logger.debug(
            "Stored video in mock storage",
            extra={"key": key, "size_bytes": len(data)},
        )

        return UploadResult(
            public_url=public_url,
            bytes_sent=len(data),
            elapsed_seconds=time.monotonic() - started,
        )

    @staticmethod
    def _object_key(target: UploadTarget, url: str) -> str:
        if isinstance(target, SelfSignedTarget):
            return target.key
        # path-style presigned URL: /<bucket>/<key>
        path = httpx.URL(url).path.lstrip("/")
        bucket, _, key = path.partition("/")
        return key or bucket


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

def create_upload_executor(
    config: Optional[UploadClientConfig] = None,
    mock_mode: bool = False,
):
    """
    Create upload executor based on configuration.

    Args:
        config: Transport settings (defaults if omitted)
        mock_mode: If True, return in-memory executor for testing

    Returns:
        UploadExecutor implementation (HTTP or Mock)
    """
    if mock_mode:
        return MockUploadExecutor()

    return HTTPUploadExecutor(config=config)
