"""
Unit tests for configuration loading and pipeline wiring.

Settings are built with `_env_file=None` unless a test writes its own
.env, so a developer's local secrets never leak into the results.
"""

import pytest

from src.config.settings import Settings
from src.core.upload.models import CompressionPreset, UploadMode
from src.infrastructure.backend.client import HTTPPresignedURLClient, MockPresignedURLClient
from src.infrastructure.pipeline import (
    create_upload_orchestrator,
    pipeline_config_from_settings,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Ignore whatever the shell running the tests has exported."""
    for name in Settings.model_fields:
        monkeypatch.delenv(name.upper(), raising=False)


SECRETS = {
    "r2_account_id": "acct123",
    "r2_access_key_id": "AKIDEXAMPLE",
    "r2_secret_access_key": "secret",
    "r2_public_url": "https://pub-acct.r2.dev",
}


class TestSettings:
    """Tests for Settings defaults and derived values."""

    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.r2_bucket_name == "videos"
        assert settings.max_video_duration_seconds == 30
        assert settings.max_file_size_mb == 50
        assert settings.presign_expiry_seconds == 900
        assert settings.compression_preset is CompressionPreset.MEDIUM

    def test_no_credential_fallbacks(self):
        """Unset secrets stay empty; nothing is filled in from code."""
        settings = Settings(_env_file=None)

        assert settings.r2_access_key_id == ""
        assert settings.r2_secret_access_key == ""
        assert settings.r2_account_id == ""

    def test_endpoint_from_account_id(self):
        settings = Settings(_env_file=None, r2_account_id="acct123")

        assert settings.r2_host == "acct123.r2.cloudflarestorage.com"
        assert settings.r2_endpoint == "https://acct123.r2.cloudflarestorage.com"

    def test_endpoint_override(self):
        settings = Settings(_env_file=None, r2_endpoint_url="http://localhost:9000/")

        assert settings.r2_endpoint == "http://localhost:9000"
        assert settings.r2_host == "localhost:9000"

    def test_size_in_bytes(self):
        assert Settings(_env_file=None, max_file_size_mb=2).max_file_size_bytes == 2 * 1024 * 1024

    def test_reads_env_file(self, tmp_path):
        """KEY=value lines are read and # comments ignored."""
        env_file = tmp_path / ".env"
        env_file.write_text(
            "# R2 credentials\n"
            "R2_ACCOUNT_ID=acct999\n"
            "R2_BUCKET_NAME=clips\n"
            "UPLOAD_MODE=SELF_SIGNED\n"
        )

        settings = Settings(_env_file=str(env_file))

        assert settings.r2_account_id == "acct999"
        assert settings.r2_bucket_name == "clips"
        assert settings.upload_mode is UploadMode.SELF_SIGNED

    def test_env_vars(self, monkeypatch):
        monkeypatch.setenv("COMPRESSION_PRESET", "high")
        monkeypatch.setenv("API_KEYS", "a, b,,c")

        settings = Settings(_env_file=None)

        assert settings.compression_preset is CompressionPreset.HIGH
        assert settings.api_keys_list == ["a", "b", "c"]

    def test_rejects_bad_expiry(self):
        with pytest.raises(ValueError):
            Settings(_env_file=None, presign_expiry_seconds=0)

    def test_cors_wildcard(self):
        assert Settings(_env_file=None, cors_origins="*").cors_origins_list == ["*"]


class TestRequiredFields:
    """Tests for mode-dependent configuration checks."""

    def test_self_signed_needs_secrets(self):
        settings = Settings(_env_file=None, upload_mode="self_signed", r2_public_url="https://p")

        assert settings.validate_required_fields() == [
            "R2_ACCOUNT_ID",
            "R2_ACCESS_KEY_ID",
            "R2_SECRET_ACCESS_KEY",
        ]

    def test_presigned_needs_backend_only(self):
        settings = Settings(
            _env_file=None,
            upload_mode="presigned",
            presign_endpoint_url="https://api.example.com/presign",
            r2_public_url="https://p",
        )
        assert settings.validate_required_fields() == []

    def test_presigned_without_backend(self):
        settings = Settings(_env_file=None, upload_mode="presigned", r2_public_url="https://p")
        assert settings.validate_required_fields() == ["PRESIGN_ENDPOINT_URL"]

    def test_mock_mode_signs_locally(self):
        """Mock presigning still needs real keys from the secret store."""
        settings = Settings(
            _env_file=None, upload_mode="presigned", r2_mock_mode=True, r2_public_url="https://p"
        )
        assert "R2_SECRET_ACCESS_KEY" in settings.validate_required_fields()

    def test_complete(self):
        settings = Settings(_env_file=None, upload_mode="self_signed", **SECRETS)
        assert settings.validate_required_fields() == []


class TestPipelineWiring:
    """Tests for building the orchestrator from settings."""

    def test_config_mapping(self):
        settings = Settings(_env_file=None, upload_mode="self_signed", max_file_size_mb=10, **SECRETS)

        config = pipeline_config_from_settings(settings)

        assert config.mode is UploadMode.SELF_SIGNED
        assert config.bucket == "videos"
        assert config.host == "acct123.r2.cloudflarestorage.com"
        assert config.endpoint == "https://acct123.r2.cloudflarestorage.com"
        assert config.max_size_bytes == 10 * 1024 * 1024
        assert config.max_duration_seconds == 30
        assert config.credentials.access_key_id == "AKIDEXAMPLE"
        assert config.public_url("wk123") == "https://pub-acct.r2.dev/wk123.mp4"

    def test_presigned_config_holds_no_credentials(self):
        settings = Settings(_env_file=None, upload_mode="presigned", **SECRETS)
        assert pipeline_config_from_settings(settings).credentials is None

    def test_mock_orchestrator(self, tmp_path):
        settings = Settings(
            _env_file=None,
            upload_mode="presigned",
            r2_mock_mode=True,
            video_mock_mode=True,
            **SECRETS,
        )

        orchestrator = create_upload_orchestrator(settings, temp_dir=str(tmp_path))

        assert isinstance(orchestrator._presign_client, MockPresignedURLClient)

    def test_real_presign_client(self, tmp_path):
        settings = Settings(
            _env_file=None,
            upload_mode="presigned",
            presign_endpoint_url="https://api.example.com/presign",
            video_mock_mode=True,
            **SECRETS,
        )

        orchestrator = create_upload_orchestrator(settings, temp_dir=str(tmp_path))

        assert isinstance(orchestrator._presign_client, HTTPPresignedURLClient)
