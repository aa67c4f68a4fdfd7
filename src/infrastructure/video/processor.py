"""
Video processing service using FFmpeg.

This module handles the local video work of the upload pipeline:
1. Extract video metadata (duration, fps, resolution) with ffprobe
2. Compress a capture for network delivery (H.264/AAC MP4, moov atom
   moved to the front so playback can start before the download ends)
3. Grab a thumbnail frame for feed previews

Why FFmpeg:
- Industry standard, battle-tested
- Handles whatever container the camera or picker hands us
- `-movflags +faststart` gives the same result as a platform exporter's
  "optimize for network use"
- Available everywhere (including Docker)

Every FFmpeg run is an asyncio subprocess. Cancelling the awaiting task
kills the encoder; it never keeps running in the background.
"""

import asyncio
import json
import logging
import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol, Union

from ...core.upload.errors import CompressionCancelled, CompressionFailed
from ...core.upload.models import CompressionPreset, MediaAsset

logger = logging.getLogger(__name__)


@dataclass
class VideoInfo:
    """Video metadata extracted via FFprobe."""
    duration_seconds: float
    width: int
    height: int
    fps: float
    codec: str
    file_size_bytes: int


@dataclass(frozen=True)
class EncodingSettings:
    """x264/AAC parameters behind a compression preset."""
    crf: int
    max_height: int
    x264_preset: str
    audio_bitrate: str


PRESET_SETTINGS: dict[CompressionPreset, EncodingSettings] = {
    CompressionPreset.LOW: EncodingSettings(
        crf=30, max_height=480, x264_preset="veryfast", audio_bitrate="64k"
    ),
    CompressionPreset.MEDIUM: EncodingSettings(
        crf=26, max_height=720, x264_preset="veryfast", audio_bitrate="96k"
    ),
    CompressionPreset.HIGH: EncodingSettings(
        crf=22, max_height=1080, x264_preset="medium", audio_bitrate="128k"
    ),
}

# keep the last bit of ffmpeg's stderr for error messages
STDERR_TAIL_CHARS = 800


class VideoProcessor(Protocol):
    """Protocol for video processing operations."""

    async def get_video_info(self, video_path: Union[str, Path]) -> VideoInfo:
        """Extract metadata from video."""
        ...

    async def compress(
        self,
        asset: MediaAsset,
        preset: CompressionPreset,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> MediaAsset:
        """Re-encode for network delivery into a new temp file."""
        ...

    async def generate_thumbnail(
        self,
        video_path: Union[str, Path],
        at_seconds: float = 0.0,
        max_size: int = 400,
    ) -> bytes:
        """Return a JPEG of the frame at `at_seconds`."""
        ...


def parse_frame_rate(value: str) -> float:
    """Parse ffprobe's r_frame_rate, which can be a fraction like "30000/1001"."""
    if "/" in value:
        num, denom = value.split("/", 1)
        return float(num) / float(denom) if float(denom) else 0.0
    return float(value)


def parse_progress_line(line: str, duration_seconds: float) -> Optional[float]:
    """
    Turn one `-progress` line into a 0..1 fraction.

    FFmpeg reports out_time_us (and, despite the name, out_time_ms) in
    microseconds. Lines we don't care about return None.
    """
    key, _, value = line.strip().partition("=")
    if key == "progress" and value == "end":
        return 1.0
    if key not in ("out_time_us", "out_time_ms") or duration_seconds <= 0:
        return None
    try:
        microseconds = int(value)
    except ValueError:
        return None  # "N/A" before the first frame
    return min(max(microseconds / 1_000_000 / duration_seconds, 0.0), 1.0)


def _new_temp_path(temp_dir: Optional[str], prefix: str, suffix: str) -> Path:
    fd, path = tempfile.mkstemp(prefix=prefix, suffix=suffix, dir=temp_dir)
    os.close(fd)
    return Path(path)


class FFmpegVideoProcessor:
    """
    Video processor using FFmpeg/FFprobe.

    Inputs are file paths: the capture is already on disk and FFmpeg works
    best with paths. Outputs of `compress` are fresh temp files owned by
    the caller, who must delete them.
    """

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        temp_dir: Optional[str] = None,
    ):
        """
        Initialize processor with FFmpeg paths.

        Args:
            ffmpeg_path: Path to ffmpeg binary (default assumes it's in PATH)
            ffprobe_path: Path to ffprobe binary
            temp_dir: Where compressed files go (default: system temp dir)
        """
        self._ffmpeg = ffmpeg_path
        self._ffprobe = ffprobe_path
        self._temp_dir = temp_dir

        # verify ffmpeg is available
        try:
            result = subprocess.run(
                [self._ffmpeg, "-version"],
                capture_output=True,
                text=True,
                timeout=5
            )
            if result.returncode != 0:
                raise RuntimeError("FFmpeg not working properly")
            logger.info("FFmpeg video processor initialized")
        except FileNotFoundError:
            raise RuntimeError(
                "FFmpeg not found. Install with: apt-get install ffmpeg"
            )

    async def get_video_info(self, video_path: Union[str, Path]) -> VideoInfo:
        """
        Extract video metadata using FFprobe.

        FFprobe outputs JSON with stream info - we parse that to get
        duration, resolution, fps, codec.
        """
        cmd = [
            self._ffprobe,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(video_path),
        ]
        returncode, stdout, stderr = await self._run(cmd, timeout=30)

        if returncode != 0:
            raise RuntimeError(f"FFprobe failed: {stderr.decode(errors='replace')}")

        info = json.loads(stdout)

        video_stream = next(
            (s for s in info.get("streams", []) if s.get("codec_type") == "video"),
            None,
        )
        if not video_stream:
            raise RuntimeError("No video stream found")

        # get duration from format or stream
        duration = float(info.get("format", {}).get("duration", 0))
        if duration == 0:
            duration = float(video_stream.get("duration", 0))

        return VideoInfo(
            duration_seconds=duration,
            width=int(video_stream.get("width", 0)),
            height=int(video_stream.get("height", 0)),
            fps=parse_frame_rate(video_stream.get("r_frame_rate", "30/1")),
            codec=video_stream.get("codec_name", "unknown"),
            file_size_bytes=os.path.getsize(video_path),
        )

    def build_compress_command(
        self,
        source: Path,
        output: Path,
        preset: CompressionPreset,
    ) -> list[str]:
        """
        FFmpeg arguments for a network-optimized MP4.

        - libx264 + yuv420p so every phone and browser can play it
        - scale down to the preset's height, never up
        - `+faststart` relocates the moov atom to the head of the file
        - `-progress pipe:1` feeds the progress callback
        """
        settings = PRESET_SETTINGS[preset]
        return [
            self._ffmpeg,
            "-hide_banner",
            "-nostdin",
            "-y",
            "-i", str(source),
            "-vf", f"scale=-2:'min({settings.max_height},ih)'",
            "-c:v", "libx264",
            "-preset", settings.x264_preset,
            "-crf", str(settings.crf),
            "-pix_fmt", "yuv420p",
            "-c:a", "aac",
            "-b:a", settings.audio_bitrate,
            "-movflags", "+faststart",
            "-progress", "pipe:1",
            "-nostats",
            str(output),
        ]

    async def compress(
        self,
        asset: MediaAsset,
        preset: CompressionPreset = CompressionPreset.MEDIUM,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> MediaAsset:
        """
        Re-encode `asset` into a new temporary MP4.

        Raises:
            CompressionFailed: ffmpeg missing or exited non-zero
            CompressionCancelled: the encoder was killed from outside
            asyncio.CancelledError: the awaiting task was cancelled
                (the encoder is killed and the partial file removed)
        """
        output = _new_temp_path(self._temp_dir, prefix="compressed-", suffix=".mp4")
        cmd = self.build_compress_command(asset.path, output, preset)

        logger.info(
            "Compressing video",
            extra={
                "source": str(asset.path),
                "preset": preset.value,
                "source_size_bytes": asset.size_bytes,
            }
        )

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            output.unlink(missing_ok=True)
            raise CompressionFailed("FFmpeg not found")

        stderr_task = asyncio.create_task(process.stderr.read())
        try:
            async for raw_line in process.stdout:
                fraction = parse_progress_line(
                    raw_line.decode(errors="replace"), asset.duration_seconds
                )
                if fraction is not None and on_progress is not None:
                    on_progress(fraction)
            returncode = await process.wait()
            stderr = await stderr_task
        except asyncio.CancelledError:
            await self._kill(process)
            stderr_task.cancel()
            output.unlink(missing_ok=True)
            logger.info("Compression cancelled", extra={"source": str(asset.path)})
            raise
        except Exception:
            await self._kill(process)
            stderr_task.cancel()
            output.unlink(missing_ok=True)
            raise

        if returncode != 0:
            output.unlink(missing_ok=True)
            if returncode < 0:
                raise CompressionCancelled()
            tail = stderr.decode(errors="replace")[-STDERR_TAIL_CHARS:].strip()
            logger.error(
                "FFmpeg compression failed",
                extra={"returncode": returncode, "stderr": tail},
            )
            raise CompressionFailed(f"ffmpeg exited with {returncode}: {tail}")

        compressed = MediaAsset(
            path=output,
            duration_seconds=asset.duration_seconds,
            size_bytes=output.stat().st_size,
            mime_type="video/mp4",
        )
        logger.info(
            "Compressed video",
            extra={
                "output": str(output),
                "size_bytes": compressed.size_bytes,
                "ratio": round(compressed.size_bytes / asset.size_bytes, 3)
                if asset.size_bytes else None,
            }
        )
        return compressed

    async def generate_thumbnail(
        self,
        video_path: Union[str, Path],
        at_seconds: float = 0.0,
        max_size: int = 400,
    ) -> bytes:
        """
        Extract one JPEG frame, bounded to `max_size` on its longest side.

        -ss before -i for fast seeking, -q:v 2 for good jpeg quality.
        """
        cmd = [
            self._ffmpeg,
            "-hide_banner",
            "-nostdin",
            "-ss", str(at_seconds),
            "-i", str(video_path),
            "-frames:v", "1",
            "-vf", f"scale={max_size}:{max_size}:force_original_aspect_ratio=decrease",
            "-q:v", "2",
            "-f", "image2",
            "-c:v", "mjpeg",
            "pipe:1",
        ]
        returncode, stdout, stderr = await self._run(cmd, timeout=15)

        if returncode != 0 or not stdout:
            logger.warning(
                "Failed to generate thumbnail",
                extra={
                    "video_path": str(video_path),
                    "at_seconds": at_seconds,
                    "stderr": stderr.decode(errors="replace")[-STDERR_TAIL_CHARS:],
                }
            )
            raise RuntimeError(f"Thumbnail extraction failed at {at_seconds}s")

        return stdout

    async def _run(self, cmd: list[str], timeout: float) -> tuple[int, bytes, bytes]:
        """Run a short FFmpeg/FFprobe command, killing it on timeout or cancel."""
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            await self._kill(process)
            raise
        return process.returncode, stdout, stderr

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            process.kill()
            await process.wait()


class MockVideoProcessor:
    """
    Mock video processor for local development without FFmpeg.

    "Compression" copies the file to a new temp path so the pipeline's
    ownership and cleanup rules still apply. Counts calls so tests can
    assert which phases ran.
    """

    # a valid minimal 1x1 JPEG
    MINIMAL_JPEG = bytes([
        0xFF, 0xD8, 0xFF, 0xE0, 0x00, 0x10, 0x4A, 0x46,
        0x49, 0x46, 0x00, 0x01, 0x01, 0x00, 0x00, 0x01,
        0x00, 0x01, 0x00, 0x00, 0xFF, 0xDB, 0x00, 0x43,
        0x00, 0x08, 0x06, 0x06, 0x07, 0x06, 0x05, 0x08,
        0x07, 0x07, 0x07, 0x09, 0x09, 0x08, 0x0A, 0x0C,
        0x14, 0x0D, 0x0C, 0x0B, 0x0B, 0x0C, 0x19, 0x12,
        0x13, 0x0F, 0x14, 0x1D, 0x1A, 0x1F, 0x1E, 0x1D,
        0x1A, 0x1C, 0x1C, 0x20, 0x24, 0x2E, 0x27, 0x20,
        0x22, 0x2C, 0x23, 0x1C, 0x1C, 0x28, 0x37, 0x29,
        0x2C, 0x30, 0x31, 0x34, 0x34, 0x34, 0x1F, 0x27,
        0x39, 0x3D, 0x38, 0x32, 0x3C, 0x2E, 0x33, 0x34,
        0x32, 0xFF, 0xC0, 0x00, 0x0B, 0x08, 0x00, 0x01,
        0x00, 0x01, 0x01, 0x01, 0x11, 0x00, 0xFF, 0xC4,
        0x00, 0x1F, 0x00, 0x00, 0x01, 0x05, 0x01, 0x01,
        0x01, 0x01, 0x01, 0x01, 0x00, 0x00, 0x00, 0x00,
        0x00, 0x00, 0x00, 0x00, 0x01, 0x02, 0x03, 0x04,
        0x05, 0x06, 0x07, 0x08, 0x09, 0x0A, 0x0B, 0xFF,
        0xC4, 0x00, 0xB5, 0x10, 0x00, 0x02, 0x01, 0x03,
        0x03, 0x02, 0x04, 0x03, 0x05, 0x05, 0x04, 0x04,
        0x00, 0x00, 0x01, 0x7D, 0x01, 0x02, 0x03, 0x00,
        0x04, 0x11, 0x05, 0x12, 0x21, 0x31, 0x41, 0x06,
        0x13, 0x51, 0x61, 0x07, 0x22, 0x71, 0x14, 0x32,
        0x81, 0x91, 0xA1, 0x08, 0x23, 0x42, 0xB1, 0xC1,
        0x15, 0x52, 0xD1, 0xF0, 0x24, 0x33, 0x62, 0x72,
        0x82, 0x09, 0x0A, 0x16, 0x17, 0x18, 0x19, 0x1A,
        0x25, 0x26, 0x27, 0x28, 0x29, 0x2A, 0x34, 0x35,
        0x36, 0x37, 0x38, 0x39, 0x3A, 0x43, 0x44, 0x45,
        0x46, 0x47, 0x48, 0x49, 0x4A, 0x53, 0x54, 0x55,
        0x56, 0x57, 0x58, 0x59, 0x5A, 0x63, 0x64, 0x65,
        0x66, 0x67, 0x68, 0x69, 0x6A, 0x73, 0x74, 0x75,
        0x76, 0x77, 0x78, 0x79, 0x7A, 0x83, 0x84, 0x85,
        0x86, 0x87, 0x88, 0x89, 0x8A, 0x92, 0x93, 0x94,
        0x95, 0x96, 0x97, 0x98, 0x99, 0x9A, 0xA2, 0xA3,
        0xA4, 0xA5, 0xA6, 0xA7, 0xA8, 0xA9, 0xAA, 0xB2,
        0xB3, 0xB4, 0xB5, 0xB6, 0xB7, 0xB8, 0xB9, 0xBA,
        0xC2, 0xC3, 0xC4, 0xC5, 0xC6, 0xC7, 0xC8, 0xC9,
        0xCA, 0xD2, 0xD3, 0xD4, 0xD5, 0xD6, 0xD7, 0xD8,
        0xD9, 0xDA, 0xE1, 0xE2, 0xE3, 0xE4, 0xE5, 0xE6,
        0xE7, 0xE8, 0xE9, 0xEA, 0xF1, 0xF2, 0xF3, 0xF4,
        0xF5, 0xF6, 0xF7, 0xF8, 0xF9, 0xFA, 0xFF, 0xDA,
        0x00, 0x08, 0x01, 0x01, 0x00, 0x00, 0x3F, 0x00,
        0xFB, 0xD3, 0x28, 0xA0, 0x02, 0x8A, 0x28, 0x03,
        0xFF, 0xD9
    ])

    def __init__(
        self,
        duration_seconds: float = 30.0,
        temp_dir: Optional[str] = None,
    ):
        self._duration = duration_seconds
        self._temp_dir = temp_dir
        self.compress_calls = 0
        logger.info("Initialized mock video processor")

    async def get_video_info(self, video_path: Union[str, Path]) -> VideoInfo:
        """Return dummy video info with the real file size."""
        return VideoInfo(
            duration_seconds=self._duration,
            width=1280,
            height=720,
            fps=30.0,
            codec="h264",
            file_size_bytes=os.path.getsize(video_path),
        )

    async def compress(
        self,
        asset: MediaAsset,
        preset: CompressionPreset = CompressionPreset.MEDIUM,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> MediaAsset:
        """Copy the asset to a new temp file."""
        self.compress_calls += 1
        output = _new_temp_path(self._temp_dir, prefix="compressed-", suffix=".mp4")
        try:
            await asyncio.to_thread(shutil.copyfile, asset.path, output)
        except asyncio.CancelledError:
            output.unlink(missing_ok=True)
            raise
        except OSError as e:
            output.unlink(missing_ok=True)
            raise CompressionFailed(str(e))

        if on_progress is not None:
            on_progress(1.0)

        return MediaAsset(
            path=output,
            duration_seconds=asset.duration_seconds,
            size_bytes=output.stat().st_size,
        )

    async def generate_thumbnail(
        self,
        video_path: Union[str, Path],
        at_seconds: float = 0.0,
        max_size: int = 400,
    ) -> bytes:
        """Return a placeholder JPEG."""
        return self.MINIMAL_JPEG


def create_video_processor(
    mock_mode: bool = False,
    ffmpeg_path: str = "ffmpeg",
    ffprobe_path: str = "ffprobe",
    temp_dir: Optional[str] = None,
) -> VideoProcessor:
    """
    Create video processor based on configuration.

    Args:
        mock_mode: If True, return mock processor (no FFmpeg needed)
        ffmpeg_path: Path to ffmpeg binary
        ffprobe_path: Path to ffprobe binary
        temp_dir: Directory for compressed temp files

    Returns:
        VideoProcessor implementation
    """
    if mock_mode:
        return MockVideoProcessor(temp_dir=temp_dir)

    return FFmpegVideoProcessor(
        ffmpeg_path=ffmpeg_path,
        ffprobe_path=ffprobe_path,
        temp_dir=temp_dir,
    )
