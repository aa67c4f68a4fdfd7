#!/usr/bin/env python3
"""
Upload a workout video through the full pipeline.

Validates, compresses, hashes and uploads a local clip to R2, either by
signing the PUT here (self_signed) or with a URL from the presign
backend (presigned). Progress is printed as the pipeline runs.

Usage:
    python scripts/upload_video.py clip.mov --content-id wk123
    python scripts/upload_video.py clip.mov --content-id wk123 --mode presigned --bearer-token $TOKEN
    python scripts/upload_video.py clip.mov --content-id wk123 --mock

Requires:
    - .env file with R2 settings (see src/config/settings.py)
    - ffmpeg/ffprobe on PATH unless --mock is used
"""

import asyncio
import logging
import os
import sys
from pathlib import Path

# Add src to path so we can import our modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from src.config.settings import Settings
from src.core.upload import (
    MediaAsset,
    PipelineState,
    UploadMode,
    UploadPipelineError,
)
from src.infrastructure.pipeline import create_upload_orchestrator
from src.infrastructure.video.processor import create_video_processor


def print_progress(value: float) -> None:
    bar = "#" * int(value * 30)
    print(f"\r[{bar:<30}] {value * 100:5.1f}%", end="", flush=True)


def print_state(state: PipelineState) -> None:
    print(f"\n-> {state.value}", end="", flush=True)


async def measure_duration(settings: Settings, path: Path) -> float:
    """Read the clip's duration with ffprobe (or the mock processor)."""
    processor = create_video_processor(
        mock_mode=settings.video_mock_mode,
        ffmpeg_path=settings.ffmpeg_path,
        ffprobe_path=settings.ffprobe_path,
    )
    info = await processor.get_video_info(path)
    return info.duration_seconds


async def upload(args, settings: Settings) -> int:
    path = Path(args.file)
    duration = args.duration
    if duration is None:
        duration = await measure_duration(settings, path)
    asset = MediaAsset.from_path(path, duration_seconds=duration)

    print(f"Uploading {path} ({asset.size_mb:.1f} MB, {duration:.1f}s) as {args.content_id}")

    orchestrator = create_upload_orchestrator(settings, on_state_change=print_state)

    async with orchestrator:
        try:
            result = await orchestrator.run(
                asset,
                args.content_id,
                on_progress=print_progress,
                bearer_token=args.bearer_token,
            )
        except UploadPipelineError as first_error:
            result = None
            error = first_error
            for attempt in range(1, args.retries + 1):
                if not orchestrator.can_retry:
                    break
                delay = args.retry_delay * (2 ** (attempt - 1))
                print(f"\n[RETRY] {error.kind}: {error}. Attempt {attempt} in {delay:.1f}s")
                await asyncio.sleep(delay)
                try:
                    result = await orchestrator.retry_upload(
                        on_progress=print_progress,
                        bearer_token=args.bearer_token,
                    )
                    break
                except UploadPipelineError as retry_error:
                    error = retry_error

            if result is None:
                print(f"\nERROR ({error.kind}): {error}")
                return 1

    print(f"\n\n=== Upload Complete ===")
    print(f"Public URL: {result.public_url}")
    print(f"Bytes sent: {result.bytes_sent}")
    print(f"Elapsed: {result.elapsed_seconds:.2f}s")

    if args.thumbnail:
        processor = create_video_processor(
            mock_mode=settings.video_mock_mode,
            ffmpeg_path=settings.ffmpeg_path,
            ffprobe_path=settings.ffprobe_path,
        )
        jpeg = await processor.generate_thumbnail(path)
        Path(args.thumbnail).write_bytes(jpeg)
        print(f"Thumbnail: {args.thumbnail}")

    return 0


def main():
    import argparse

    parser = argparse.ArgumentParser(description='Upload a workout video to R2')
    parser.add_argument('file', help='Video file to upload')
    parser.add_argument('--content-id', required=True, help='Workout id; the object key is <id>.mp4')
    parser.add_argument('--mode', choices=[m.value for m in UploadMode], help='Override UPLOAD_MODE')
    parser.add_argument('--bearer-token', default=os.getenv('PRESIGN_BEARER_TOKEN'), help='Token for the presign backend')
    parser.add_argument('--duration', type=float, help='Clip duration in seconds (skips ffprobe)')
    parser.add_argument('--retries', type=int, default=2, help='Caller-side retries after retryable failures')
    parser.add_argument('--retry-delay', type=float, default=1.0, help='First retry delay in seconds, doubled each attempt')
    parser.add_argument('--thumbnail', help='Also write a JPEG thumbnail to this path')
    parser.add_argument('--mock', action='store_true', help='Mock FFmpeg and storage (no external services)')
    args = parser.parse_args()

    if not os.path.exists(args.file):
        print(f"ERROR: Cannot find {args.file}")
        sys.exit(1)

    settings = Settings()
    if args.mock:
        settings = settings.model_copy(update={"r2_mock_mode": True, "video_mock_mode": True})

    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=settings.log_level.upper(),
    )

    if args.mode:
        settings = settings.model_copy(update={"upload_mode": UploadMode(args.mode)})
    missing = settings.validate_required_fields()
    if missing:
        print(f"ERROR: Missing configuration: {', '.join(missing)}")
        sys.exit(1)

    try:
        exit_code = asyncio.run(upload(args, settings))
    except KeyboardInterrupt:
        print("\nCancelled")
        exit_code = 130

    sys.exit(exit_code)


if __name__ == '__main__':
    main()
