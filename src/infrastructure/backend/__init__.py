"""
Presigned URL backend integration.

The real client talks to the presign endpoint over HTTPS; the mock signs
locally so the presigned path works without a server.
"""

from .client import (
    HTTPPresignedURLClient,
    MockPresignedURLClient,
    create_presign_client,
    parse_presign_response,
)

__all__ = [
    "HTTPPresignedURLClient",
    "MockPresignedURLClient",
    "create_presign_client",
    "parse_presign_response",
]
