"""
AWS Signature Version 4 for S3-compatible object stores.

This is the one place in the pipeline with byte-exact requirements: if
the canonical request differs from what the receiving server rebuilds
by a single character, every upload fails with SignatureDoesNotMatch.

Flow for a header-signed request:

    canonical request  ->  sha256  ->  string to sign
    "AWS4"+secret -> kDate -> kRegion -> kService -> kSigning
    signature = HMAC(kSigning, string to sign)

The signer holds no mutable state, so one instance can be shared by
concurrent uploads. The same key chain also backs `presign_url`, which
puts the signature into the query string instead of headers.

Reference: https://docs.aws.amazon.com/IAM/latest/UserGuide/reference_sigv-create-signed-request.html
"""

import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Callable, Mapping, Optional
from urllib.parse import quote

from .errors import MissingCredentials
from .hashing import sha256_hex
from .models import (
    DEFAULT_REGION,
    DEFAULT_SERVICE,
    CanonicalRequest,
    SigningContext,
    SigningCredentials,
)

logger = logging.getLogger(__name__)


SIGNING_ALGORITHM = "AWS4-HMAC-SHA256"
UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"
SIGNED_HEADER_NAMES = ("host", "x-amz-content-sha256", "x-amz-date")

# S3 refuses presigned URLs valid for longer than seven days
MAX_PRESIGN_EXPIRY_SECONDS = 7 * 24 * 3600


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Canonicalization helpers
# ---------------------------------------------------------------------------

def uri_encode(value: str) -> str:
    """
    Percent-encode one URI component the way SigV4 expects.

    Only RFC 3986 unreserved characters (A-Z a-z 0-9 - . _ ~) pass
    through; everything else, including '/', becomes %XX of its UTF-8
    bytes with uppercase hex.
    """
    return quote(value, safe="-_.~")


def canonical_uri(bucket: str, key: str) -> str:
    """
    Build the path-style canonical URI "/bucket/key".

    Each segment is encoded on its own so the '/' separators in nested
    keys survive while any '/' inside a segment cannot exist by
    construction.
    """
    segments = f"{bucket}/{key}".split("/")
    return "/" + "/".join(uri_encode(segment) for segment in segments)


def canonical_query_string(params: Mapping[str, str]) -> str:
    """Encode and sort query parameters by encoded name, then value."""
    encoded = sorted(
        (uri_encode(name), uri_encode(value))
        for name, value in params.items()
    )
    return "&".join(f"{name}={value}" for name, value in encoded)


def canonical_headers(headers: Mapping[str, str]) -> tuple[str, str]:
    """
    Build the canonical header block and the signed-header list.

    Names are lowercased and values trimmed with inner whitespace runs
    collapsed, then sorted by name. Input order doesn't matter: the same
    logical header set always yields the same strings.

    Returns:
        (canonical header block ending in "\\n", "name1;name2;...")
    """
    normalized: dict[str, str] = {}
    for name, value in headers.items():
        lowered = name.strip().lower()
        if lowered in normalized:
            raise ValueError(f"Duplicate header: {lowered}")
        normalized[lowered] = " ".join(str(value).split())

    names = sorted(normalized)
    block = "".join(f"{name}:{normalized[name]}\n" for name in names)
    return block, ";".join(names)


def _hmac(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def derive_signing_key(
    secret_access_key: str,
    date_stamp: str,
    region: str = DEFAULT_REGION,
    service: str = DEFAULT_SERVICE,
) -> bytes:
    """Run the four-step HMAC chain down to kSigning."""
    k_date = _hmac(f"AWS4{secret_access_key}".encode("utf-8"), date_stamp)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, service)
    return _hmac(k_service, "aws4_request")


def _require_credentials(credentials: SigningCredentials) -> None:
    missing = []
    if not credentials.access_key_id:
        missing.append("access_key_id")
    if not credentials.secret_access_key:
        missing.append("secret_access_key")
    if missing:
        raise MissingCredentials(missing)


# ---------------------------------------------------------------------------
# Signer
# ---------------------------------------------------------------------------

class SigV4Signer:
    """
    Produces SigV4 headers (or presigned URLs) for single-object PUTs.

    Region and service default to R2's "auto"/"s3". The clock is
    injectable so tests can pin the timestamp; production code should
    sign immediately before sending because servers reject signatures
    outside their skew window as expired.
    """

    def __init__(
        self,
        region: str = DEFAULT_REGION,
        service: str = DEFAULT_SERVICE,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._region = region
        self._service = service
        self._clock = clock or _utcnow

    def new_context(
        self,
        credentials: SigningCredentials,
        when: Optional[datetime] = None,
    ) -> SigningContext:
        """Fresh signing context stamped with `when` (default: now)."""
        _require_credentials(credentials)
        return SigningContext.at(
            credentials,
            when or self._clock(),
            region=self._region,
            service=self._service,
        )

    def build_canonical_request(
        self,
        method: str,
        host: str,
        bucket: str,
        key: str,
        payload_hash: str,
        timestamp: str,
    ) -> CanonicalRequest:
        headers, signed_headers = canonical_headers({
            "host": host,
            "x-amz-content-sha256": payload_hash,
            "x-amz-date": timestamp,
        })
        return CanonicalRequest(
            method=method.upper(),
            uri=canonical_uri(bucket, key),
            headers=headers,
            signed_headers=signed_headers,
            payload_hash=payload_hash,
        )

    @staticmethod
    def string_to_sign(context: SigningContext, canonical_request: CanonicalRequest) -> str:
        return "\n".join([
            SIGNING_ALGORITHM,
            context.timestamp,
            context.credential_scope,
            sha256_hex(canonical_request.render()),
        ])

    @staticmethod
    def signature(context: SigningContext, string_to_sign: str) -> str:
        signing_key = derive_signing_key(
            context.credentials.secret_access_key,
            context.date_stamp,
            context.region,
            context.service,
        )
        return hmac.new(
            signing_key, string_to_sign.encode("utf-8"), hashlib.sha256
        ).hexdigest()

    def sign(
        self,
        host: str,
        bucket: str,
        key: str,
        credentials: SigningCredentials,
        payload: Optional[bytes] = None,
        payload_hash: Optional[str] = None,
        when: Optional[datetime] = None,
        method: str = "PUT",
    ) -> dict[str, str]:
        """
        Sign a request and return the headers to attach verbatim.

        Pass either the payload bytes or an already computed lowercase
        hex SHA-256 (the pipeline hashes large files in a thread and
        hands the digest over).

        Returns:
            {"x-amz-date": ..., "x-amz-content-sha256": ..., "Authorization": ...}

        Raises:
            MissingCredentials: access key id or secret is empty
        """
        context = self.new_context(credentials, when)
        return self.sign_with_context(
            context, host, bucket, key,
            payload=payload, payload_hash=payload_hash, method=method,
        )

    def sign_with_context(
        self,
        context: SigningContext,
        host: str,
        bucket: str,
        key: str,
        payload: Optional[bytes] = None,
        payload_hash: Optional[str] = None,
        method: str = "PUT",
    ) -> dict[str, str]:
        """Same as `sign` but for a context the caller already built."""
        _require_credentials(context.credentials)
        if payload_hash is None:
            if payload is None:
                raise ValueError("Either payload or payload_hash is required")
            payload_hash = sha256_hex(payload)

        canonical_request = self.build_canonical_request(
            method, host, bucket, key, payload_hash, context.timestamp
        )
        signature = self.signature(
            context, self.string_to_sign(context, canonical_request)
        )
        authorization = (
            f"{SIGNING_ALGORITHM} "
            f"Credential={context.credentials.access_key_id}/{context.credential_scope}, "
            f"SignedHeaders={canonical_request.signed_headers}, "
            f"Signature={signature}"
        )

        logger.debug(
            "Signed request",
            extra={
                "method": canonical_request.method,
                "uri": canonical_request.uri,
                "amz_date": context.timestamp,
                "payload_hash": payload_hash,
            }
        )

        return {
            "x-amz-date": context.timestamp,
            "x-amz-content-sha256": payload_hash,
            "Authorization": authorization,
        }

    def presign_url(
        self,
        endpoint: str,
        host: str,
        bucket: str,
        key: str,
        credentials: SigningCredentials,
        expires_in: int = 900,
        when: Optional[datetime] = None,
        method: str = "PUT",
    ) -> str:
        """
        Build a URL whose query string carries the signature.

        Only `host` is signed and the payload is UNSIGNED-PAYLOAD, so the
        holder can PUT any body with any Content-Type until it expires.
        Requests made with this URL must not also carry an Authorization
        header.
        """
        if not 1 <= expires_in <= MAX_PRESIGN_EXPIRY_SECONDS:
            raise ValueError(
                f"expires_in must be between 1 and {MAX_PRESIGN_EXPIRY_SECONDS} seconds"
            )
        context = self.new_context(credentials, when)

        query = {
            "X-Amz-Algorithm": SIGNING_ALGORITHM,
            "X-Amz-Credential": f"{credentials.access_key_id}/{context.credential_scope}",
            "X-Amz-Date": context.timestamp,
            "X-Amz-Expires": str(expires_in),
            "X-Amz-SignedHeaders": "host",
        }
        headers, signed_headers = canonical_headers({"host": host})
        canonical_request = CanonicalRequest(
            method=method.upper(),
            uri=canonical_uri(bucket, key),
            query=canonical_query_string(query),
            headers=headers,
            signed_headers=signed_headers,
            payload_hash=UNSIGNED_PAYLOAD,
        )
        signature = self.signature(
            context, self.string_to_sign(context, canonical_request)
        )

        return (
            f"{endpoint.rstrip('/')}{canonical_request.uri}"
            f"?{canonical_request.query}&X-Amz-Signature={signature}"
        )
