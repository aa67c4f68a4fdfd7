"""
Domain models for the video upload pipeline.

These models describe what moves through the pipeline: the local asset,
its digest, the signing material and the two ways an upload can be
authorized. Like the rest of core, nothing here knows about HTTP clients,
FFmpeg or configuration files.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, Union


AMZ_DATE_FORMAT = "%Y%m%dT%H%M%SZ"
DEFAULT_REGION = "auto"  # R2 ignores regions but SigV4 still needs one
DEFAULT_SERVICE = "s3"
VIDEO_CONTENT_TYPE = "video/mp4"


class PipelineState(Enum):
    """Where an upload pipeline currently is."""
    IDLE = "idle"
    VALIDATING = "validating"
    COMPRESSING = "compressing"
    HASHING = "hashing"
    SIGNING = "signing"
    REQUESTING_PRESIGNED_URL = "requesting_presigned_url"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            PipelineState.COMPLETED,
            PipelineState.FAILED,
            PipelineState.CANCELLED,
        )


class UploadMode(Enum):
    """How the PUT request gets authorized."""
    SELF_SIGNED = "self_signed"
    PRESIGNED = "presigned"


class CompressionPreset(Enum):
    """
    Quality presets for network delivery.

    MEDIUM matches what phones export for sharing: small enough for
    cellular upload, good enough to judge a lift on.
    """
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class MediaAsset:
    """
    A video file on local disk plus what we know about it.

    Duration comes from the capture collaborator (or ffprobe); size is the
    byte size on disk at the time the asset was created.
    """
    path: Path
    duration_seconds: float
    size_bytes: int
    mime_type: str = VIDEO_CONTENT_TYPE

    def __post_init__(self) -> None:
        if self.duration_seconds < 0:
            raise ValueError("Duration cannot be negative")
        if self.size_bytes < 0:
            raise ValueError("Size cannot be negative")

    @classmethod
    def from_path(
        cls,
        path: Union[str, Path],
        duration_seconds: float,
        mime_type: str = VIDEO_CONTENT_TYPE,
    ) -> "MediaAsset":
        """Build an asset from a file, reading its size from disk."""
        file_path = Path(path)
        return cls(
            path=file_path,
            duration_seconds=duration_seconds,
            size_bytes=file_path.stat().st_size,
            mime_type=mime_type,
        )

    @property
    def size_mb(self) -> float:
        return self.size_bytes / (1024 * 1024)


@dataclass(frozen=True)
class ContentDigest:
    """SHA-256 of a payload as 64 lowercase hex characters."""
    hex: str

    def __post_init__(self) -> None:
        if len(self.hex) != 64 or not set(self.hex) <= set("0123456789abcdef"):
            raise ValueError("Digest must be 64 lowercase hex characters")

    def __str__(self) -> str:
        return self.hex


@dataclass(frozen=True)
class SigningCredentials:
    """
    Access key pair for the object store.

    The secret is excluded from repr so it can't leak through logging
    or tracebacks.
    """
    access_key_id: str
    secret_access_key: str = field(repr=False)

    @property
    def is_complete(self) -> bool:
        return bool(self.access_key_id) and bool(self.secret_access_key)


@dataclass(frozen=True)
class SigningContext:
    """Credentials plus the instant a request is signed for."""
    credentials: SigningCredentials
    timestamp: str
    region: str = DEFAULT_REGION
    service: str = DEFAULT_SERVICE

    @classmethod
    def at(
        cls,
        credentials: SigningCredentials,
        when: datetime,
        region: str = DEFAULT_REGION,
        service: str = DEFAULT_SERVICE,
    ) -> "SigningContext":
        """Create a context for a given instant (naive datetimes are UTC)."""
        if when.tzinfo is not None:
            when = when.astimezone(timezone.utc)
        return cls(
            credentials=credentials,
            timestamp=when.strftime(AMZ_DATE_FORMAT),
            region=region,
            service=service,
        )

    @property
    def date_stamp(self) -> str:
        return self.timestamp[:8]

    @property
    def signed_at(self) -> datetime:
        return datetime.strptime(self.timestamp, AMZ_DATE_FORMAT).replace(
            tzinfo=timezone.utc
        )

    @property
    def credential_scope(self) -> str:
        return f"{self.date_stamp}/{self.region}/{self.service}/aws4_request"


@dataclass(frozen=True)
class CanonicalRequest:
    """
    The fixed-format request description that SigV4 hashes.

    `headers` must already be the canonical header block (sorted,
    lowercase, each line terminated by a newline).
    """
    method: str
    uri: str
    headers: str
    signed_headers: str
    payload_hash: str
    query: str = ""

    def render(self) -> str:
        return "\n".join([
            self.method,
            self.uri,
            self.query,
            self.headers,
            self.signed_headers,
            self.payload_hash,
        ])


@dataclass(frozen=True)
class SelfSignedTarget:
    """
    Upload target signed locally with SigV4 headers.

    `headers` holds x-amz-date, x-amz-content-sha256 and Authorization
    once the signer has run; they are attached to the PUT verbatim.
    """
    endpoint: str
    host: str
    bucket: str
    key: str
    context: SigningContext
    headers: dict[str, str] = field(default_factory=dict, compare=False)

    @property
    def is_signed(self) -> bool:
        return "Authorization" in self.headers


@dataclass(frozen=True)
class PresignedTarget:
    """Upload target whose signature lives in the URL query string."""
    url: str
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at


UploadTarget = Union[SelfSignedTarget, PresignedTarget]


@dataclass(frozen=True)
class PresignedUpload:
    """What the backend hands back when asked for an upload URL."""
    upload_url: str
    public_url: str
    expires_in_seconds: int
    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def expires_at(self) -> datetime:
        return self.issued_at + timedelta(seconds=self.expires_in_seconds)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at

    def to_target(self) -> PresignedTarget:
        return PresignedTarget(url=self.upload_url, expires_at=self.expires_at)


@dataclass(frozen=True)
class UploadResult:
    """Outcome of a successful upload."""
    public_url: str
    bytes_sent: int
    elapsed_seconds: float
    status_code: int = 200
