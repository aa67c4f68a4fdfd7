"""
Infrastructure layer - external service integrations.

Each subdirectory wraps an external dependency:
- video: FFmpeg compression and metadata
- storage: Object storage PUT (R2, S3-compatible)
- backend: Presigned URL backend

These wrappers translate between external formats and our domain models.
`pipeline` wires them into an orchestrator from settings.
"""
