"""Content hashing for signing and receiver-side integrity checks."""

import hashlib
from pathlib import Path
from typing import Union

from .models import ContentDigest

# 1 MiB keeps memory flat for large captures without too many reads
HASH_CHUNK_SIZE = 1024 * 1024

EMPTY_PAYLOAD_SHA256 = (
    "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
)


def sha256_hex(data: Union[bytes, str]) -> str:
    """Lowercase hex SHA-256 of bytes (strings are UTF-8 encoded)."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def hash_bytes(data: bytes) -> ContentDigest:
    return ContentDigest(sha256_hex(data))


def hash_file(path: Union[str, Path], chunk_size: int = HASH_CHUNK_SIZE) -> ContentDigest:
    """
    Digest a file without loading it into memory.

    Produces the same value as hash_bytes(path.read_bytes()).
    """
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            digest.update(chunk)
    return ContentDigest(digest.hexdigest())
