"""
Asset validation.

Pure checks against the configured limits. Nothing here touches disk;
the asset already carries its duration and size.
"""

from .errors import DurationExceeded, SizeTooLarge
from .models import MediaAsset


def validate_asset(
    asset: MediaAsset,
    max_duration_seconds: float,
    max_size_bytes: int,
) -> None:
    """
    Reject assets that are too long or too big.

    A duration exactly equal to the maximum passes; anything longer fails.
    Duration is checked before size.

    Raises:
        DurationExceeded: duration > max_duration_seconds
        SizeTooLarge: size > max_size_bytes
    """
    if asset.duration_seconds > max_duration_seconds:
        raise DurationExceeded(asset.duration_seconds, max_duration_seconds)
    if asset.size_bytes > max_size_bytes:
        raise SizeTooLarge(asset.size_bytes, max_size_bytes)


def validate_compressed_size(asset: MediaAsset, max_size_bytes: int) -> None:
    """Size rule for the compressed derivative."""
    if asset.size_bytes > max_size_bytes:
        raise SizeTooLarge(asset.size_bytes, max_size_bytes)
