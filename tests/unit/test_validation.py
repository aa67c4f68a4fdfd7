"""
Unit tests for asset validation, hashing and the upload domain models.

These tests verify the pure logic of the pipeline without touching
external services.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from src.core.upload.errors import (
    DurationExceeded,
    SizeTooLarge,
    TransportError,
    UploadRejected,
)
from src.core.upload.hashing import EMPTY_PAYLOAD_SHA256, hash_bytes, hash_file
from src.core.upload.models import (
    ContentDigest,
    MediaAsset,
    PipelineState,
    PresignedUpload,
    SigningContext,
)
from src.core.upload.validation import validate_asset, validate_compressed_size

from .conftest import FIXED_NOW


def make_asset(duration: float = 10.0, size: int = 1000) -> MediaAsset:
    return MediaAsset(path=Path("clip.mp4"), duration_seconds=duration, size_bytes=size)


# ---------------------------------------------------------------------------
# Validation Tests
# ---------------------------------------------------------------------------

class TestValidateAsset:
    """Tests for duration and size limits."""

    def test_within_limits_passes(self):
        """A short, small clip is accepted."""
        validate_asset(make_asset(10.0, 1000), max_duration_seconds=30, max_size_bytes=2000)

    def test_duration_equal_to_limit_passes(self):
        """Exactly the maximum duration is allowed."""
        validate_asset(make_asset(30.0), max_duration_seconds=30, max_size_bytes=2000)

    def test_duration_just_over_limit_fails(self):
        """Anything longer than the maximum is rejected with both values."""
        with pytest.raises(DurationExceeded) as exc_info:
            validate_asset(make_asset(30.01), max_duration_seconds=30, max_size_bytes=2000)

        assert exc_info.value.actual == 30.01
        assert exc_info.value.maximum == 30
        assert exc_info.value.retryable is False

    def test_size_over_limit_fails(self):
        """Oversized files are rejected."""
        with pytest.raises(SizeTooLarge) as exc_info:
            validate_asset(make_asset(10.0, 2001), max_duration_seconds=30, max_size_bytes=2000)

        assert exc_info.value.actual == 2001
        assert exc_info.value.maximum == 2000

    def test_size_equal_to_limit_passes(self):
        """Exactly the maximum size is allowed."""
        validate_asset(make_asset(10.0, 2000), max_duration_seconds=30, max_size_bytes=2000)

    def test_duration_checked_before_size(self):
        """A clip breaking both limits reports the duration."""
        with pytest.raises(DurationExceeded):
            validate_asset(make_asset(45.0, 9999), max_duration_seconds=30, max_size_bytes=2000)

    def test_compressed_size_rule(self):
        """The compressed derivative has its own size check."""
        validate_compressed_size(make_asset(size=2000), max_size_bytes=2000)
        with pytest.raises(SizeTooLarge):
            validate_compressed_size(make_asset(size=2001), max_size_bytes=2000)


class TestMediaAsset:
    """Tests for the MediaAsset value object."""

    def test_rejects_negative_duration(self):
        """Negative durations don't make sense for video."""
        with pytest.raises(ValueError, match="Duration cannot be negative"):
            make_asset(duration=-1)

    def test_rejects_negative_size(self):
        with pytest.raises(ValueError, match="Size cannot be negative"):
            make_asset(size=-1)

    def test_from_path_reads_size(self, tmp_path):
        """Size comes from disk."""
        path = tmp_path / "clip.mp4"
        path.write_bytes(b"x" * 1234)

        asset = MediaAsset.from_path(path, duration_seconds=5)

        assert asset.size_bytes == 1234
        assert asset.mime_type == "video/mp4"

    def test_size_mb_uses_the_same_unit_as_the_limit(self):
        """An asset exactly at a 50 MB limit reports 50.0 MB."""
        asset = make_asset(size=50 * 1024 * 1024)

        assert asset.size_mb == 50.0
        validate_asset(asset, max_duration_seconds=30, max_size_bytes=50 * 1024 * 1024)


# ---------------------------------------------------------------------------
# Hashing Tests
# ---------------------------------------------------------------------------

class TestHashing:
    """Tests for content hashing."""

    def test_known_digest(self):
        """SHA-256 of the test payload matches the pinned value."""
        digest = hash_bytes(b"fake video bytes")
        assert digest.hex == "cd8d366ba8edfcbae3ee7a7b2e911cc13d21e5ccd1319c12629b779829feb140"

    def test_empty_payload(self):
        assert hash_bytes(b"").hex == EMPTY_PAYLOAD_SHA256

    def test_file_hash_matches_bytes_hash(self, tmp_path):
        """Streaming a file in small chunks gives the in-memory digest."""
        data = bytes(range(256)) * 100
        path = tmp_path / "payload.bin"
        path.write_bytes(data)

        assert hash_file(path, chunk_size=7) == hash_bytes(data)

    def test_digest_rejects_uppercase(self):
        """Digests are lowercase hex only."""
        with pytest.raises(ValueError):
            ContentDigest(EMPTY_PAYLOAD_SHA256.upper())

    def test_digest_rejects_wrong_length(self):
        with pytest.raises(ValueError):
            ContentDigest("abc")


# ---------------------------------------------------------------------------
# Model Tests
# ---------------------------------------------------------------------------

class TestSigningContext:
    """Tests for the signing context."""

    def test_scope_for_r2(self, credentials):
        context = SigningContext.at(credentials, FIXED_NOW)

        assert context.timestamp == "20250101T000000Z"
        assert context.date_stamp == "20250101"
        assert context.credential_scope == "20250101/auto/s3/aws4_request"
        assert context.signed_at == FIXED_NOW

    def test_converts_to_utc(self, credentials):
        """Local times are converted, so date and scope agree in UTC."""
        eastern = timezone(timedelta(hours=-5))
        context = SigningContext.at(credentials, datetime(2024, 12, 31, 21, 0, tzinfo=eastern))

        assert context.timestamp == "20250101T020000Z"
        assert context.date_stamp == "20250101"


class TestPresignedUpload:
    """Tests for presigned URL expiry."""

    def test_expiry_from_issue_time(self):
        upload = PresignedUpload(
            upload_url="https://example.com/put",
            public_url="https://pub.example.com/a.mp4",
            expires_in_seconds=900,
            issued_at=FIXED_NOW,
        )

        assert upload.expires_at == FIXED_NOW + timedelta(seconds=900)
        assert not upload.is_expired(FIXED_NOW + timedelta(seconds=899))
        assert upload.is_expired(FIXED_NOW + timedelta(seconds=900))

    def test_target_carries_expiry(self):
        upload = PresignedUpload("https://u", "https://p", 60, issued_at=FIXED_NOW)
        target = upload.to_target()

        assert target.url == "https://u"
        assert target.is_expired(FIXED_NOW + timedelta(seconds=61))


class TestPipelineState:
    def test_terminal_states(self):
        terminal = {s for s in PipelineState if s.is_terminal}
        assert terminal == {
            PipelineState.COMPLETED,
            PipelineState.FAILED,
            PipelineState.CANCELLED,
        }


class TestErrorClassification:
    """Tests for the retryable flag on upload errors."""

    @pytest.mark.parametrize("status_code,retryable", [
        (500, True),
        (503, True),
        (429, True),
        (408, True),
        (403, False),
        (400, False),
        (404, False),
    ])
    def test_rejected_status(self, status_code, retryable):
        """Server and throttling errors are retryable; client errors are not."""
        assert UploadRejected(status_code).retryable is retryable

    def test_rejected_override(self):
        """Callers can mark an otherwise permanent status as retryable."""
        assert UploadRejected(403, "Request has expired", retryable=True).retryable

    def test_transport_default_retryable(self):
        assert TransportError("connection reset").retryable
        assert TransportError("connection reset").kind == "transport_error"
