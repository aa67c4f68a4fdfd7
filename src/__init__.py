"""
FitRank Upload - secure video ingestion for workout clips.

This package contains the complete application:
- core: Framework-agnostic upload pipeline (validation, signing, orchestration)
- infrastructure: FFmpeg compression, object-store PUT, presigned URL backend client
- api: FastAPI presign endpoint and health checks
- config: Application configuration
"""

__version__ = "0.1.0"
