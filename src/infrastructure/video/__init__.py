"""
Video processing infrastructure.

Handles local video work using FFmpeg:
- Video metadata extraction
- Compression for network delivery (the pipeline's Compressor)
- Thumbnail extraction
"""

from .processor import (
    PRESET_SETTINGS,
    FFmpegVideoProcessor,
    MockVideoProcessor,
    VideoInfo,
    VideoProcessor,
    create_video_processor,
)

__all__ = [
    "PRESET_SETTINGS",
    "FFmpegVideoProcessor",
    "MockVideoProcessor",
    "VideoInfo",
    "VideoProcessor",
    "create_video_processor",
]
