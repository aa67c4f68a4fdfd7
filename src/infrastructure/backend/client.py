"""
Client for the backend that issues presigned upload URLs.

In presigned mode the device never holds object-store credentials. It
POSTs the content id to our backend, which signs a short-lived PUT URL
and sends it back:

    POST {endpoint}  {"contentId": "..."}
    200 {"uploadUrl": "...", "publicUrl": "...", "expiresIn": 900}

Failures are classified so the caller can tell "try again later" from
"your token is bad" from "the backend is broken".

Mock mode signs URLs locally with the same SigV4 code the real backend
uses, so the whole presigned path can run without a server.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import httpx

from ...core.upload.errors import (
    BackendError,
    BackendUnavailable,
    InvalidArgument,
    InvalidResponse,
    ServerError,
    Unauthorized,
)
from ...core.upload.models import PresignedUpload, SigningCredentials
from ...core.upload.signing import SigV4Signer

logger = logging.getLogger(__name__)


DEFAULT_TIMEOUT_SECONDS = 15.0


def _error_message(response: httpx.Response) -> Optional[str]:
    """Best-effort extraction of {"error": "..."} from a failure body."""
    try:
        body = response.json()
    except ValueError:
        return response.text.strip() or None
    if isinstance(body, dict):
        return body.get("error") or body.get("detail")
    return None


def parse_presign_response(
    body: Any,
    issued_at: datetime,
) -> PresignedUpload:
    """
    Turn a decoded JSON body into a PresignedUpload.

    Raises:
        InvalidResponse: body is not an object, or uploadUrl/expiresIn is
            missing or malformed
    """
    if not isinstance(body, dict):
        raise InvalidResponse("Presign response is not a JSON object")

    upload_url = body.get("uploadUrl")
    if not isinstance(upload_url, str) or not upload_url:
        raise InvalidResponse("Presign response has no uploadUrl")

    expires_in = body.get("expiresIn")
    # bool is an int subclass; true/false is not a lifetime
    if isinstance(expires_in, bool) or not isinstance(expires_in, int) or expires_in <= 0:
        raise InvalidResponse("Presign response has no valid expiresIn")

    public_url = body.get("publicUrl") or ""
    if not isinstance(public_url, str):
        raise InvalidResponse("Presign response publicUrl is not a string")

    return PresignedUpload(
        upload_url=upload_url,
        public_url=public_url,
        expires_in_seconds=expires_in,
        issued_at=issued_at,
    )


class HTTPPresignedURLClient:
    """
    Requests presigned URLs from the backend over HTTPS.

    The expiry clock starts when the request is sent, not when the
    response arrives, so network latency eats into the lifetime rather
    than extending it.
    """

    def __init__(
        self,
        endpoint_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not endpoint_url:
            raise ValueError("endpoint_url is required")
        self._endpoint_url = endpoint_url
        self._client = client
        self._timeout = timeout_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def request_upload_url(
        self,
        content_id: str,
        bearer_token: Optional[str] = None,
    ) -> PresignedUpload:
        """
        Ask the backend for an upload URL for `content_id`.

        Raises:
            InvalidArgument: empty content id (no request is made) or HTTP 400
            Unauthorized: HTTP 401/403
            ServerError: HTTP 5xx
            BackendUnavailable: connection failure or timeout
            InvalidResponse: anything else we can't use
        """
        if not content_id or not content_id.strip():
            raise InvalidArgument("contentId is required")

        headers = {"Content-Type": "application/json"}
        if bearer_token:
            headers["Authorization"] = f"Bearer {bearer_token}"

        issued_at = self._clock()
        try:
            if self._client is not None:
                response = await self._post(self._client, content_id, headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await self._post(client, content_id, headers)
        except httpx.TimeoutException as e:
            logger.warning("Presign request timed out", extra={"error": str(e)})
            raise BackendUnavailable(f"Presign request timed out: {e}") from e
        except httpx.TransportError as e:
            logger.warning("Presign backend unreachable", extra={"error": str(e)})
            raise BackendUnavailable(f"Presign backend unreachable: {e}") from e
        except httpx.HTTPError as e:
            logger.error("Presign response could not be read", extra={"error": str(e)})
            raise InvalidResponse(f"Presign response could not be read: {e}") from e

        self._raise_for_status(response)

        try:
            body = response.json()
        except ValueError as e:
            logger.error(
                "Presign response is not JSON",
                extra={"status": response.status_code},
            )
            raise InvalidResponse("Presign response is not valid JSON") from e

        presigned = parse_presign_response(body, issued_at)
        logger.info(
            "Received presigned upload URL",
            extra={
                "content_id": content_id,
                "expires_in": presigned.expires_in_seconds,
            }
        )
        return presigned

    async def _post(
        self,
        client: httpx.AsyncClient,
        content_id: str,
        headers: dict[str, str],
    ) -> httpx.Response:
        return await client.post(
            self._endpoint_url,
            json={"contentId": content_id},
            headers=headers,
            timeout=self._timeout,
        )

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return

        message = _error_message(response) or f"HTTP {status}"
        logger.error(
            "Presign request failed",
            extra={"status": status, "error": message},
        )

        if status == 400:
            raise InvalidArgument(message, status_code=status)
        if status in (401, 403):
            raise Unauthorized(message, status_code=status)
        if status >= 500:
            raise ServerError(message, status_code=status)
        raise InvalidResponse(
            f"Unexpected presign status {status}: {message}", status_code=status
        )


# ---------------------------------------------------------------------------
# Mock Client for Local Development
# ---------------------------------------------------------------------------

class MockPresignedURLClient:
    """
    Signs presigned URLs in-process instead of calling a backend.

    `failures` is a queue of errors to raise on the next requests, and
    `accepted_tokens` (when set) makes it reject unknown bearer tokens
    the way the real backend does.
    """

    def __init__(
        self,
        credentials: SigningCredentials,
        endpoint: str,
        host: str,
        bucket: str,
        public_base_url: str,
        expires_in: int = 900,
        signer: Optional[SigV4Signer] = None,
        accepted_tokens: Optional[list[str]] = None,
        failures: Optional[list[BackendError]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._credentials = credentials
        self._endpoint = endpoint
        self._host = host
        self._bucket = bucket
        self._public_base_url = public_base_url.rstrip("/")
        self._expires_in = expires_in
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._signer = signer or SigV4Signer(clock=self._clock)
        self._accepted_tokens = accepted_tokens
        self._failures = list(failures or [])
        self.requests: list[str] = []
        logger.info("Initialized mock presign client (local signing)")

    async def request_upload_url(
        self,
        content_id: str,
        bearer_token: Optional[str] = None,
    ) -> PresignedUpload:
        if not content_id or not content_id.strip():
            raise InvalidArgument("contentId is required")
        self.requests.append(content_id)

        if self._failures:
            raise self._failures.pop(0)
        if self._accepted_tokens is not None and bearer_token not in self._accepted_tokens:
            raise Unauthorized("Invalid bearer token", status_code=401)

        issued_at = self._clock()
        key = f"{content_id}.mp4"
        upload_url = self._signer.presign_url(
            self._endpoint,
            self._host,
            self._bucket,
            key,
            self._credentials,
            expires_in=self._expires_in,
            when=issued_at,
        )
        return PresignedUpload(
            upload_url=upload_url,
            public_url=f"{self._public_base_url}/{key}",
            expires_in_seconds=self._expires_in,
            issued_at=issued_at,
        )


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

def create_presign_client(
    endpoint_url: str = "",
    mock_mode: bool = False,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    **mock_kwargs: Any,
):
    """
    Create presign client based on configuration.

    Args:
        endpoint_url: Backend presign URL (real client)
        mock_mode: If True, sign locally instead of calling the backend
        timeout_seconds: Request timeout for the real client
        **mock_kwargs: Passed to MockPresignedURLClient

    Returns:
        PresignedURLProvider implementation (HTTP or Mock)
    """
    if mock_mode:
        return MockPresignedURLClient(**mock_kwargs)

    return HTTPPresignedURLClient(endpoint_url, timeout_seconds=timeout_seconds)
