"""
Object storage upload for workout videos.

Talks to R2 (Cloudflare) through its S3-compatible API with one PUT per
video. Includes mock mode for local development without credentials.
"""

from .client import (
    HTTPUploadExecutor,
    MockUploadExecutor,
    UploadClientConfig,
    create_upload_executor,
    parse_server_message,
)

__all__ = [
    "HTTPUploadExecutor",
    "MockUploadExecutor",
    "UploadClientConfig",
    "create_upload_executor",
    "parse_server_message",
]
