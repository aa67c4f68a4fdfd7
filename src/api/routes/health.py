"""
Health check endpoints.

We provide two endpoints:
- /health: Basic liveness check (is the process running?)
- /health/ready: Readiness check (can we sign upload URLs?)

The distinction matters in orchestration systems where liveness and
readiness have different behaviors.
"""

import logging
from typing import Any

from fastapi import APIRouter, Response, status
from pydantic import BaseModel

from ... import __version__
from ..dependencies import SettingsDep

logger = logging.getLogger(__name__)

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    details: dict[str, Any] = {}


class ReadinessCheck(BaseModel):
    """Individual readiness check result."""
    name: str
    status: str  # "ok" or "error"
    error: str | None = None


class ReadinessResponse(BaseModel):
    """Readiness check response with details."""
    status: str  # "ready" or "not_ready"
    version: str
    checks: list[ReadinessCheck]


@router.get(
    "",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Basic health check",
    description="Returns 200 if the service is running. Does not check configuration.",
)
async def health_check(settings: SettingsDep) -> HealthResponse:
    """
    Liveness check - is the process alive?

    Fast and free of side effects; never looks at secrets.
    """
    return HealthResponse(
        status="ok",
        version=__version__,
        details={
            "mock_mode": {
                "r2": settings.r2_mock_mode,
                "video": settings.video_mock_mode,
            },
            "upload_mode": settings.upload_mode.value,
        }
    )


@router.get(
    "/ready",
    response_model=ReadinessResponse,
    status_code=status.HTTP_200_OK,
    summary="Readiness check",
    description="Returns 200 if the service can sign upload URLs, 503 otherwise.",
    responses={
        503: {
            "description": "Service not ready",
            "model": ReadinessResponse,
        }
    },
)
async def readiness_check(
    settings: SettingsDep,
    response: Response,
) -> ReadinessResponse:
    """
    Readiness check - can we serve presign requests?

    Checks that signing credentials and the public URL are configured
    and that authentication has keys to check against. Reports which
    settings are missing by name, never their values.
    """
    checks: list[ReadinessCheck] = []

    missing_fields = settings.validate_signing_fields()
    if missing_fields:
        checks.append(ReadinessCheck(
            name="signing_credentials",
            status="error",
            error=f"Missing required fields: {', '.join(missing_fields)}"
        ))
    else:
        checks.append(ReadinessCheck(name="signing_credentials", status="ok"))

    if not settings.r2_public_url:
        checks.append(ReadinessCheck(
            name="public_url",
            status="error",
            error="Missing required fields: R2_PUBLIC_URL"
        ))
    else:
        checks.append(ReadinessCheck(name="public_url", status="ok"))

    if settings.require_auth and not settings.api_keys_list:
        checks.append(ReadinessCheck(
            name="authentication",
            status="error",
            error="require_auth is on but no API_KEYS are configured"
        ))
    else:
        checks.append(ReadinessCheck(name="authentication", status="ok"))

    all_ok = all(check.status == "ok" for check in checks)
    if not all_ok:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        logger.warning(
            "Readiness check failed",
            extra={
                "checks": [
                    {"name": c.name, "status": c.status, "error": c.error}
                    for c in checks
                ]
            }
        )

    return ReadinessResponse(
        status="ready" if all_ok else "not_ready",
        version=__version__,
        checks=checks,
    )
