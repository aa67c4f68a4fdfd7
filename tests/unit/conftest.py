"""
Shared fixtures for the upload pipeline unit tests.

Everything here is local: files live in tmp_path, FFmpeg and storage are
mocked, and the clock is pinned so signatures are reproducible.
"""

from datetime import datetime, timezone

import httpx
import pytest

from src.core.upload.models import (
    CompressionPreset,
    MediaAsset,
    SigningCredentials,
    UploadMode,
)
from src.core.upload.pipeline import PipelineConfig


FIXED_NOW = datetime(2025, 1, 1, 0, 0, 0, tzinfo=timezone.utc)
TEST_HOST = "testaccount.r2.cloudflarestorage.com"
TEST_ENDPOINT = f"https://{TEST_HOST}"
TEST_PUBLIC_URL = "https://pub-test.r2.dev"


class SteppingClock:
    """Clock that returns a fixed instant, advanced by hand."""

    def __init__(self, start: datetime = FIXED_NOW):
        self.now = start

    def __call__(self) -> datetime:
        return self.now


class DroppingTransport(httpx.AsyncBaseTransport):
    """
    Transport that reads part of the request body and then stops.

    With `respond_with` unset the connection drops (WriteError); otherwise
    the server answers with that status without reading the rest.
    """

    def __init__(self, chunks_read: int, respond_with: int = None):
        self.chunks_read = chunks_read
        self.respond_with = respond_with
        self.received = b""

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        body = request.stream.__aiter__()
        for _ in range(self.chunks_read):
            self.received += await body.__anext__()
        if self.respond_with is None:
            raise httpx.WriteError("connection reset by peer", request=request)
        return httpx.Response(self.respond_with, request=request)


@pytest.fixture
def credentials() -> SigningCredentials:
    return SigningCredentials(access_key_id="testkey", secret_access_key="testsecret")


@pytest.fixture
def clock() -> SteppingClock:
    return SteppingClock()


@pytest.fixture
def video_file(tmp_path):
    """A small stand-in for a captured clip."""
    path = tmp_path / "capture.mov"
    path.write_bytes(b"fake video bytes" * 64)
    return path


@pytest.fixture
def asset(video_file) -> MediaAsset:
    return MediaAsset.from_path(video_file, duration_seconds=12.0)


def make_config(
    mode: UploadMode = UploadMode.SELF_SIGNED,
    credentials: SigningCredentials = None,
    max_duration_seconds: float = 30,
    max_size_bytes: int = 50 * 1024 * 1024,
    max_source_size_bytes: int = 500 * 1024 * 1024,
) -> PipelineConfig:
    return PipelineConfig(
        mode=mode,
        bucket="videos",
        endpoint=TEST_ENDPOINT,
        host=TEST_HOST,
        public_base_url=TEST_PUBLIC_URL,
        max_duration_seconds=max_duration_seconds,
        max_size_bytes=max_size_bytes,
        max_source_size_bytes=max_source_size_bytes,
        credentials=credentials,
        preset=CompressionPreset.MEDIUM,
    )
