"""
Video upload pipeline.

Validation, hashing, SigV4 signing and the orchestrator that ties them
together with a compressor, a presigned URL provider and an upload
executor supplied from the infrastructure layer.
"""

from .errors import (
    BackendError,
    BackendUnavailable,
    CompressionCancelled,
    CompressionError,
    CompressionFailed,
    DurationExceeded,
    InvalidArgument,
    InvalidResponse,
    MissingCredentials,
    NothingToRetry,
    PipelineBusy,
    PresignedURLExpired,
    ServerError,
    SigningError,
    SizeTooLarge,
    TransportError,
    Unauthorized,
    UploadError,
    UploadPipelineError,
    UploadRejected,
    ValidationError,
)
from .hashing import hash_bytes, hash_file, sha256_hex
from .models import (
    CompressionPreset,
    ContentDigest,
    MediaAsset,
    PipelineState,
    PresignedTarget,
    PresignedUpload,
    SelfSignedTarget,
    SigningContext,
    SigningCredentials,
    UploadMode,
    UploadResult,
    UploadTarget,
)
from .pipeline import (
    PHASE_WEIGHTS,
    Compressor,
    PipelineConfig,
    PresignedURLProvider,
    ProgressTracker,
    UploadExecutor,
    UploadHandle,
    UploadOrchestrator,
)
from .signing import SigV4Signer
from .validation import validate_asset, validate_compressed_size

__all__ = [
    "BackendError",
    "BackendUnavailable",
    "CompressionCancelled",
    "CompressionError",
    "CompressionFailed",
    "DurationExceeded",
    "InvalidArgument",
    "InvalidResponse",
    "MissingCredentials",
    "NothingToRetry",
    "PipelineBusy",
    "PresignedURLExpired",
    "ServerError",
    "SigningError",
    "SizeTooLarge",
    "TransportError",
    "Unauthorized",
    "UploadError",
    "UploadPipelineError",
    "UploadRejected",
    "ValidationError",
    "hash_bytes",
    "hash_file",
    "sha256_hex",
    "CompressionPreset",
    "ContentDigest",
    "MediaAsset",
    "PipelineState",
    "PresignedTarget",
    "PresignedUpload",
    "SelfSignedTarget",
    "SigningContext",
    "SigningCredentials",
    "UploadMode",
    "UploadResult",
    "UploadTarget",
    "PHASE_WEIGHTS",
    "Compressor",
    "PipelineConfig",
    "PresignedURLProvider",
    "ProgressTracker",
    "UploadExecutor",
    "UploadHandle",
    "UploadOrchestrator",
    "SigV4Signer",
    "validate_asset",
    "validate_compressed_size",
]
