"""
Presigned upload URL endpoint.

Devices in presigned mode never hold object-store credentials. They ask
this endpoint for a short-lived URL that authorizes exactly one PUT of
`{contentId}.mp4`, then upload straight to R2 with it.

    POST /api/v1/uploads/presign  {"contentId": "wk123"}
    200 {"uploadUrl": "...", "publicUrl": "...", "expiresIn": 900}

Error bodies use {"error": "..."} because that is what the device
clients parse.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from ...core.upload.errors import SigningError
from ..dependencies import BearerToken, CredentialsDep, SettingsDep, SignerDep

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Request/Response Models
# ---------------------------------------------------------------------------

class PresignRequest(BaseModel):
    """Body of a presign request."""
    contentId: Optional[str] = Field(
        default=None,
        description="Identifier of the workout the video belongs to"
    )


class PresignResponse(BaseModel):
    """A presigned PUT URL and where the object will be readable."""
    uploadUrl: str = Field(description="URL to PUT the video to, valid for expiresIn seconds")
    publicUrl: str = Field(description="Public URL of the object once uploaded")
    expiresIn: int = Field(description="Lifetime of uploadUrl in seconds")


class ErrorResponse(BaseModel):
    error: str


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


async def _read_content_id(request: Request) -> Optional[str]:
    """Content id from the JSON body, or None if absent or unusable."""
    try:
        payload: Any = await request.json()
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    try:
        body = PresignRequest.model_validate(payload)
    except ValidationError:
        return None
    if body.contentId is None or not body.contentId.strip():
        return None
    return body.contentId.strip()


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "/presign",
    response_model=PresignResponse,
    status_code=status.HTTP_200_OK,
    summary="Issue a presigned upload URL",
    openapi_extra={
        "requestBody": {
            "required": True,
            "content": {
                "application/json": {
                    "schema": PresignRequest.model_json_schema(),
                }
            },
        }
    },
    responses={
        400: {"model": ErrorResponse, "description": "contentId missing"},
        401: {"description": "Missing or invalid bearer token"},
        500: {"model": ErrorResponse, "description": "Signing failed"},
    },
)
async def create_presigned_upload(
    request: Request,
    settings: SettingsDep,
    signer: SignerDep,
    credentials: CredentialsDep,
    token: BearerToken,
):
    """
    Sign a PUT URL for `{contentId}.mp4` in the configured bucket.

    The URL signs only the host header with an unsigned payload, so the
    device may send any body, but only to that key and only until it
    expires.
    """
    content_id = await _read_content_id(request)
    if content_id is None:
        return _error(status.HTTP_400_BAD_REQUEST, "contentId is required")

    key = f"{content_id}.mp4"
    try:
        upload_url = signer.presign_url(
            settings.r2_endpoint,
            settings.r2_host,
            settings.r2_bucket_name,
            key,
            credentials,
            expires_in=settings.presign_expiry_seconds,
        )
    except (SigningError, ValueError) as e:
        logger.error(
            "Error generating presigned URL",
            extra={
                "content_id": content_id,
                "kind": getattr(e, "kind", type(e).__name__),
                "error": str(e),
            }
        )
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to generate upload URL")

    public_url = f"{settings.r2_public_url.rstrip('/')}/{key}"

    logger.info(
        "Issued presigned upload URL",
        extra={
            "content_id": content_id,
            "expires_in": settings.presign_expiry_seconds,
        }
    )

    return PresignResponse(
        uploadUrl=upload_url,
        publicUrl=public_url,
        expiresIn=settings.presign_expiry_seconds,
    )
