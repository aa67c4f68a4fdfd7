"""
Wiring of the upload pipeline from application settings.

Core takes collaborators through its constructor; this module picks the
real or mock implementation of each one based on Settings, the same way
the API and the CLI would otherwise both have to.
"""

import logging
from typing import Optional

from ..config.settings import Settings
from ..core.upload.models import SigningCredentials, UploadMode
from ..core.upload.pipeline import (
    PipelineConfig,
    StateCallback,
    UploadOrchestrator,
)
from ..core.upload.signing import SigV4Signer
from .backend.client import create_presign_client
from .storage.client import UploadClientConfig, create_upload_executor
from .video.processor import create_video_processor

logger = logging.getLogger(__name__)


def credentials_from_settings(settings: Settings) -> SigningCredentials:
    """Read the key pair from settings; values are never defaulted."""
    return SigningCredentials(
        access_key_id=settings.r2_access_key_id,
        secret_access_key=settings.r2_secret_access_key,
    )


def pipeline_config_from_settings(
    settings: Settings,
    mode: Optional[UploadMode] = None,
) -> PipelineConfig:
    mode = mode or settings.upload_mode
    return PipelineConfig(
        mode=mode,
        bucket=settings.r2_bucket_name,
        endpoint=settings.r2_endpoint,
        host=settings.r2_host,
        public_base_url=settings.r2_public_url,
        max_duration_seconds=settings.max_video_duration_seconds,
        max_size_bytes=settings.max_file_size_bytes,
        max_source_size_bytes=settings.max_source_size_bytes,
        credentials=(
            credentials_from_settings(settings)
            if mode is UploadMode.SELF_SIGNED
            else None
        ),
        preset=settings.compression_preset,
    )


def create_upload_orchestrator(
    settings: Settings,
    mode: Optional[UploadMode] = None,
    on_state_change: Optional[StateCallback] = None,
    temp_dir: Optional[str] = None,
) -> UploadOrchestrator:
    """
    Build an orchestrator with collaborators chosen from settings.

    Args:
        settings: Application settings
        mode: Override settings.upload_mode
        on_state_change: Called with every pipeline state
        temp_dir: Where compressed files are written

    Returns:
        UploadOrchestrator ready to run
    """
    config = pipeline_config_from_settings(settings, mode)
    signer = SigV4Signer()

    compressor = create_video_processor(
        mock_mode=settings.video_mock_mode,
        ffmpeg_path=settings.ffmpeg_path,
        ffprobe_path=settings.ffprobe_path,
        temp_dir=temp_dir,
    )
    executor = create_upload_executor(
        UploadClientConfig(
            timeout_seconds=settings.upload_timeout_seconds,
            chunk_size=settings.upload_chunk_size,
        ),
        mock_mode=settings.r2_mock_mode,
    )

    presign_client = None
    if config.mode is UploadMode.PRESIGNED:
        if settings.r2_mock_mode:
            presign_client = create_presign_client(
                mock_mode=True,
                credentials=credentials_from_settings(settings),
                endpoint=config.endpoint,
                host=config.host,
                bucket=config.bucket,
                public_base_url=config.public_base_url,
                expires_in=settings.presign_expiry_seconds,
                signer=signer,
            )
        else:
            presign_client = create_presign_client(settings.presign_endpoint_url)

    logger.info(
        "Upload pipeline configured",
        extra={
            "mode": config.mode.value,
            "bucket": config.bucket,
            "preset": config.preset.value,
            "r2_mock_mode": settings.r2_mock_mode,
            "video_mock_mode": settings.video_mock_mode,
        }
    )

    return UploadOrchestrator(
        config,
        compressor=compressor,
        executor=executor,
        signer=signer,
        presign_client=presign_client,
        on_state_change=on_state_change,
    )
