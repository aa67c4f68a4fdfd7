"""
Application configuration using Pydantic settings.

Configuration is loaded from environment variables and the `.env` secret
file (KEY=value lines, # comments). Using Pydantic's BaseSettings means we get:
- Type validation at startup (fail fast if config is wrong)
- Documentation of what's required vs optional
- Easy testing with different configurations

Object store credentials only ever come from here. There are no fallback
values in code: a missing secret stays empty and signing fails with
MissingCredentials instead of quietly using someone else's key.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..core.upload.models import CompressionPreset, UploadMode


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    For lists (like api_keys), use comma-separated values in env.
    """

    # API Configuration
    api_title: str = "FitRank Upload API"
    api_version: str = "v1"
    api_keys: str = Field(
        default="",
        description="Comma-separated bearer tokens accepted by the presign endpoint. A list enables key rotation."
    )
    require_auth: bool = Field(
        default=True,
        description="Require a bearer token on the presign endpoint."
    )

    # R2 Storage Configuration
    r2_account_id: str = Field(
        default="",
        description="Cloudflare account ID for R2"
    )
    r2_access_key_id: str = Field(
        default="",
        description="R2 access key ID"
    )
    r2_secret_access_key: str = Field(
        default="",
        description="R2 secret access key"
    )
    r2_bucket_name: str = Field(
        default="videos",
        description="R2 bucket that receives workout videos"
    )
    r2_public_url: str = Field(
        default="",
        description="Public base URL objects are served from, e.g. https://pub-xxxx.r2.dev"
    )
    r2_storage_host: str = Field(
        default="r2.cloudflarestorage.com",
        description="Storage domain appended to the account ID to form the endpoint host"
    )
    r2_endpoint_url: Optional[str] = Field(
        default=None,
        description="R2 endpoint URL. Auto-constructed from account_id if not provided."
    )
    r2_mock_mode: bool = Field(
        default=False,
        description="Use in-memory mock instead of real R2. Enables local dev without object storage."
    )

    # Upload Pipeline
    upload_mode: UploadMode = Field(
        default=UploadMode.PRESIGNED,
        description="self_signed signs on this host; presigned asks the backend for a URL."
    )
    presign_endpoint_url: str = Field(
        default="",
        description="Backend URL that issues presigned upload URLs (presigned mode)"
    )
    presign_expiry_seconds: int = Field(
        default=900,
        ge=1,
        le=7 * 24 * 3600,
        description="Lifetime of presigned URLs issued by the API."
    )
    max_video_duration_seconds: float = Field(
        default=30,
        gt=0,
        description="Longest clip accepted, in seconds."
    )
    max_file_size_mb: int = Field(
        default=50,
        gt=0,
        description="Largest compressed file accepted for upload, in MB."
    )
    max_source_size_mb: int = Field(
        default=500,
        gt=0,
        description="Largest capture accepted before compression, in MB."
    )
    compression_preset: CompressionPreset = Field(
        default=CompressionPreset.MEDIUM,
        description="Quality preset used when compressing for upload."
    )
    upload_timeout_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Read/write timeout for the PUT. The server replies only after the last byte."
    )
    upload_chunk_size: int = Field(
        default=256 * 1024,
        gt=0,
        description="Bytes per chunk when streaming the upload body."
    )

    # Video Processing
    ffmpeg_path: str = Field(
        default="ffmpeg",
        description="FFmpeg binary used for compression"
    )
    ffprobe_path: str = Field(
        default="ffprobe",
        description="ffprobe binary used to read duration and resolution"
    )
    video_mock_mode: bool = Field(
        default=False,
        description="Skip FFmpeg and copy files instead. Enables local dev without FFmpeg installed."
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    # CORS
    cors_origins: str = Field(
        default="http://localhost:3000",
        description="Comma-separated list of allowed CORS origins. Use * for development only."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("upload_mode", "compression_preset", mode="before")
    @classmethod
    def _lowercase_enum(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @property
    def api_keys_list(self) -> list[str]:
        """Parse comma-separated API keys into a list."""
        return [key.strip() for key in self.api_keys.split(",") if key.strip()]

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list."""
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def r2_endpoint(self) -> str:
        """
        Construct R2 endpoint URL from account ID.

        R2 endpoints follow the pattern: https://{account_id}.r2.cloudflarestorage.com
        This is S3-compatible but uses Cloudflare's network.
        """
        if self.r2_endpoint_url:
            return self.r2_endpoint_url.rstrip("/")
        return f"https://{self.r2_host}"

    @property
    def r2_host(self) -> str:
        """Host header value the signature is computed over."""
        if self.r2_endpoint_url:
            return self.r2_endpoint_url.split("://", 1)[-1].split("/", 1)[0]
        return f"{self.r2_account_id}.{self.r2_storage_host}"

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024

    @property
    def max_source_size_bytes(self) -> int:
        return self.max_source_size_mb * 1024 * 1024

    def validate_required_fields(self) -> list[str]:
        """
        Validate that required fields are set based on mode settings.

        Returns list of missing required fields.
        This is separate from Pydantic validation because requirements
        depend on upload mode and mock mode.
        """
        missing = []

        # mock mode signs presigned URLs locally too, so it needs the keys
        signs_locally = (
            self.upload_mode is UploadMode.SELF_SIGNED or self.r2_mock_mode
        )
        if signs_locally:
            missing.extend(self.validate_signing_fields())
        elif not self.presign_endpoint_url:
            missing.append("PRESIGN_ENDPOINT_URL")

        if not self.r2_public_url:
            missing.append("R2_PUBLIC_URL")

        return missing

    def validate_signing_fields(self) -> list[str]:
        """
        Fields the presign API needs to sign URLs itself.

        The API always signs locally, whatever upload_mode the clients use.
        """
        missing = []
        if not self.r2_account_id and not self.r2_endpoint_url:
            missing.append("R2_ACCOUNT_ID")
        if not self.r2_access_key_id:
            missing.append("R2_ACCESS_KEY_ID")
        if not self.r2_secret_access_key:
            missing.append("R2_SECRET_ACCESS_KEY")
        return missing


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Using lru_cache means we only load settings once per process.
    This is safe because settings don't change during runtime.
    For tests, you can call get_settings.cache_clear() to reset.
    """
    return Settings()
