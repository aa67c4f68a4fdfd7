"""
Unit tests for the HTTP upload executor.

HTTP is faked with httpx.MockTransport, so we can see exactly what would
go over the wire and script how the object store answers.
"""

from datetime import timedelta

import httpx
import pytest

from src.core.upload.errors import PresignedURLExpired, TransportError, UploadRejected
from src.core.upload.models import PresignedTarget, SelfSignedTarget, SigningContext
from src.core.upload.signing import SigV4Signer
from src.infrastructure.storage.client import (
    HTTPUploadExecutor,
    MockUploadExecutor,
    UploadClientConfig,
    is_presign_expiry,
    parse_server_message,
)

from .conftest import FIXED_NOW, TEST_ENDPOINT, TEST_HOST, DroppingTransport


PAYLOAD = b"fake video bytes"


def signed_target(credentials, key="wk123.mp4") -> SelfSignedTarget:
    signer = SigV4Signer()
    context = signer.new_context(credentials, FIXED_NOW)
    headers = signer.sign_with_context(context, TEST_HOST, "videos", key, payload=PAYLOAD)
    return SelfSignedTarget(
        endpoint=TEST_ENDPOINT,
        host=TEST_HOST,
        bucket="videos",
        key=key,
        context=context,
        headers=headers,
    )


def make_executor(handler, clock, chunk_size=4) -> HTTPUploadExecutor:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HTTPUploadExecutor(
        config=UploadClientConfig(chunk_size=chunk_size),
        client=client,
        clock=clock,
    )


@pytest.fixture
def payload_file(tmp_path):
    path = tmp_path / "compressed.mp4"
    path.write_bytes(PAYLOAD)
    return path


class TestSelfSignedPut:
    """Tests for PUTs authorized with SigV4 headers."""

    @pytest.mark.asyncio
    async def test_sends_signed_headers_and_body(self, payload_file, credentials, clock):
        """The request carries the signature headers verbatim and the full body."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = request.content
            return httpx.Response(200)

        target = signed_target(credentials)
        executor = make_executor(handler, clock)

        result = await executor.upload(payload_file, target, "https://pub/wk123.mp4")

        assert seen["method"] == "PUT"
        assert seen["url"] == f"{TEST_ENDPOINT}/videos/wk123.mp4"
        assert seen["body"] == PAYLOAD
        assert seen["headers"]["host"] == TEST_HOST
        assert seen["headers"]["content-type"] == "video/mp4"
        assert seen["headers"]["content-length"] == str(len(PAYLOAD))
        assert seen["headers"]["authorization"] == target.headers["Authorization"]
        assert seen["headers"]["x-amz-date"] == "20250101T000000Z"
        assert seen["headers"]["x-amz-content-sha256"] == target.headers["x-amz-content-sha256"]
        assert result.public_url == "https://pub/wk123.mp4"
        assert result.bytes_sent == len(PAYLOAD)
        assert result.status_code == 200

    @pytest.mark.asyncio
    async def test_encoded_key_path_is_sent_as_signed(self, payload_file, credentials, clock):
        """The wire path equals the canonical URI the signature covers."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.raw_path
            return httpx.Response(200)

        executor = make_executor(handler, clock)
        await executor.upload(payload_file, signed_target(credentials, "my clip+1.mp4"), "u")

        assert seen["path"] == b"/videos/my%20clip%2B1.mp4"

    @pytest.mark.asyncio
    async def test_reports_byte_progress(self, payload_file, credentials, clock):
        """Progress is reported per chunk up to the full size."""
        progress = []
        executor = make_executor(lambda request: httpx.Response(200), clock, chunk_size=5)

        await executor.upload(
            payload_file, signed_target(credentials), "u",
            on_progress=lambda sent, total: progress.append((sent, total)),
        )

        assert progress == [(5, 16), (10, 16), (15, 16), (16, 16)]

    @pytest.mark.asyncio
    async def test_unsigned_target_rejected(self, payload_file, credentials, clock):
        """A target without signature headers is a programming error."""
        target = SelfSignedTarget(
            endpoint=TEST_ENDPOINT,
            host=TEST_HOST,
            bucket="videos",
            key="wk123.mp4",
            context=SigningContext.at(credentials, FIXED_NOW),
        )
        executor = make_executor(lambda request: httpx.Response(200), clock)

        with pytest.raises(ValueError, match="not been signed"):
            await executor.upload(payload_file, target, "u")

    @pytest.mark.asyncio
    async def test_host_mismatch_rejected(self, payload_file, credentials, clock):
        """Sending to a host other than the signed one can only fail."""
        target = signed_target(credentials)
        target = SelfSignedTarget(
            endpoint="https://other.example.com",
            host=target.host,
            bucket=target.bucket,
            key=target.key,
            context=target.context,
            headers=target.headers,
        )
        executor = make_executor(lambda request: httpx.Response(200), clock)

        with pytest.raises(ValueError, match="does not match"):
            await executor.upload(payload_file, target, "u")


class TestPresignedPut:
    """Tests for PUTs to presigned URLs."""

    @pytest.mark.asyncio
    async def test_no_auth_headers(self, payload_file, clock):
        """Presigned PUTs carry no Authorization or x-amz headers."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["headers"] = request.headers
            seen["url"] = str(request.url)
            return httpx.Response(200)

        url = f"{TEST_ENDPOINT}/videos/wk123.mp4?X-Amz-Signature=abc"
        target = PresignedTarget(url=url, expires_at=FIXED_NOW + timedelta(minutes=15))
        executor = make_executor(handler, clock)

        await executor.upload(payload_file, target, "u")

        assert seen["url"] == url
        assert "authorization" not in seen["headers"]
        assert "x-amz-date" not in seen["headers"]
        assert seen["headers"]["content-type"] == "video/mp4"

    @pytest.mark.asyncio
    async def test_expired_url_not_sent(self, payload_file, clock):
        """An expired presigned URL fails before any request."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200)

        target = PresignedTarget(url=f"{TEST_ENDPOINT}/x", expires_at=FIXED_NOW)
        executor = make_executor(handler, clock)

        with pytest.raises(PresignedURLExpired):
            await executor.upload(payload_file, target, "u")
        assert calls == []

    @pytest.mark.asyncio
    async def test_server_expiry_is_retryable(self, payload_file, clock):
        """A 403 saying the URL expired means 'get a new URL', not 'forbidden'."""
        body = "<Error><Code>AccessDenied</Code><Message>Request has expired</Message></Error>"
        executor = make_executor(lambda request: httpx.Response(403, text=body), clock)
        target = PresignedTarget(url=f"{TEST_ENDPOINT}/x", expires_at=FIXED_NOW + timedelta(minutes=1))

        with pytest.raises(UploadRejected) as exc_info:
            await executor.upload(payload_file, target, "u")

        assert exc_info.value.status_code == 403
        assert exc_info.value.retryable


class TestOutcomeClassification:
    """Tests for turning responses and transport failures into errors."""

    @pytest.mark.asyncio
    async def test_server_error_retryable(self, payload_file, credentials, clock):
        body = "<Error><Code>InternalError</Code><Message>We encountered an internal error</Message></Error>"
        executor = make_executor(lambda request: httpx.Response(500, text=body), clock)

        with pytest.raises(UploadRejected) as exc_info:
            await executor.upload(payload_file, signed_target(credentials), "u")

        assert exc_info.value.status_code == 500
        assert exc_info.value.retryable
        assert exc_info.value.server_message == "InternalError: We encountered an internal error"

    @pytest.mark.asyncio
    async def test_signature_mismatch_not_retryable(self, payload_file, credentials, clock):
        body = "<Error><Code>SignatureDoesNotMatch</Code><Message>The request signature we calculated does not match</Message></Error>"
        executor = make_executor(lambda request: httpx.Response(403, text=body), clock)

        with pytest.raises(UploadRejected) as exc_info:
            await executor.upload(payload_file, signed_target(credentials), "u")

        assert not exc_info.value.retryable
        assert "SignatureDoesNotMatch" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_connection_error_is_transport_error(self, payload_file, credentials, clock):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        executor = make_executor(handler, clock)

        with pytest.raises(TransportError) as exc_info:
            await executor.upload(payload_file, signed_target(credentials), "u")

        assert exc_info.value.retryable
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)

    @pytest.mark.asyncio
    async def test_timeout_is_transport_error(self, payload_file, credentials, clock):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        executor = make_executor(handler, clock)

        with pytest.raises(TransportError, match="timeout"):
            await executor.upload(payload_file, signed_target(credentials), "u")

    @pytest.mark.asyncio
    async def test_connection_dropped_mid_body(self, payload_file, credentials, clock):
        """A connection lost after some bytes went out is a retryable failure."""
        transport = DroppingTransport(chunks_read=2)
        executor = HTTPUploadExecutor(
            config=UploadClientConfig(chunk_size=4),
            client=httpx.AsyncClient(transport=transport),
            clock=clock,
        )
        progress = []

        with pytest.raises(TransportError) as exc_info:
            await executor.upload(
                payload_file, signed_target(credentials), "u",
                on_progress=lambda sent, total: progress.append((sent, total)),
            )

        assert exc_info.value.retryable
        assert isinstance(exc_info.value.__cause__, httpx.WriteError)
        assert transport.received == PAYLOAD[:8]
        assert progress == [(4, 16)]

    @pytest.mark.asyncio
    async def test_success_status_after_short_body(self, payload_file, credentials, clock):
        """A 2xx that arrives before the whole body was sent is still a failure."""
        executor = HTTPUploadExecutor(
            config=UploadClientConfig(chunk_size=4),
            client=httpx.AsyncClient(transport=DroppingTransport(chunks_read=2, respond_with=200)),
            clock=clock,
        )

        with pytest.raises(TransportError, match="partial transfer: sent 4 of 16 bytes") as exc_info:
            await executor.upload(payload_file, signed_target(credentials), "u")

        assert exc_info.value.retryable


class TestServerMessages:
    """Tests for parsing error bodies."""

    def test_xml_code_and_message(self):
        body = "<?xml version='1.0'?><Error><Code>NoSuchBucket</Code><Message>The bucket does not exist</Message></Error>"
        assert parse_server_message(body) == "NoSuchBucket: The bucket does not exist"

    def test_plain_text(self):
        assert parse_server_message("  bad gateway  ") == "bad gateway"

    def test_empty(self):
        assert parse_server_message("") is None

    def test_expiry_detection(self):
        assert is_presign_expiry(403, "AccessDenied: Request has expired")
        assert not is_presign_expiry(403, "SignatureDoesNotMatch: nope")
        assert not is_presign_expiry(500, "expired")


class TestConfig:
    def test_rejects_bad_chunk_size(self):
        with pytest.raises(ValueError):
            UploadClientConfig(chunk_size=0)


class TestMockUploadExecutor:
    """Tests for the in-memory executor."""

    @pytest.mark.asyncio
    async def test_keys_keep_their_prefix(self, payload_file, credentials, clock):
        """Objects with the same file name under different prefixes don't collide."""
        executor = MockUploadExecutor(clock=clock)

        await executor.upload(payload_file, signed_target(credentials, key="a/x.mp4"), "u")
        await executor.upload(payload_file, signed_target(credentials, key="b/x.mp4"), "u")

        assert sorted(executor.objects) == ["a/x.mp4", "b/x.mp4"]

    @pytest.mark.asyncio
    async def test_presigned_key_is_path_after_bucket(self, payload_file, clock):
        url = f"{TEST_ENDPOINT}/videos/clips/wk123.mp4?X-Amz-Signature=abc"
        target = PresignedTarget(url=url, expires_at=FIXED_NOW + timedelta(minutes=15))
        executor = MockUploadExecutor(clock=clock)

        await executor.upload(payload_file, target, "u")

        assert executor.objects == {"clips/wk123.mp4": PAYLOAD}
