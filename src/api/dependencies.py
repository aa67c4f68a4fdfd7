"""
FastAPI dependency injection.

Dependencies provide the signer, credentials and configuration to route
handlers. Using dependency injection means:
- Routes don't instantiate their own dependencies (easier to test)
- Dependencies can be overridden in tests via app.dependency_overrides
- Configuration is centralized

Each dependency is a function that FastAPI calls when needed.
"""

import logging
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..config.settings import Settings, get_settings
from ..core.upload.models import SigningCredentials
from ..core.upload.signing import SigV4Signer
from ..infrastructure.pipeline import credentials_from_settings

logger = logging.getLogger(__name__)

# Bearer token security scheme; we raise our own 401 instead of FastAPI's 403
bearer_scheme = HTTPBearer(auto_error=False)

_signer = SigV4Signer()


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

async def verify_bearer_token(
    settings: Annotated[Settings, Depends(get_settings)],
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
) -> Optional[str]:
    """
    Validate the bearer token of a presign request.

    Tokens are compared against the configured api_keys list. When
    require_auth is off (local development) any or no token passes.

    Raises 401 if the token is missing or unknown.
    """
    token = credentials.credentials if credentials else None

    if not settings.require_auth:
        return token

    if not token:
        logger.warning("Presign request missing bearer token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Bearer token required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if token not in settings.api_keys_list:
        logger.warning(
            "Invalid bearer token attempt",
            extra={"token_prefix": token[:4]}
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return token


# ---------------------------------------------------------------------------
# Service Dependencies
# ---------------------------------------------------------------------------

def get_signer() -> SigV4Signer:
    """
    Provide the SigV4 signer.

    The signer holds no per-request state, so one instance is shared.
    """
    return _signer


def get_signing_credentials(
    settings: Annotated[Settings, Depends(get_settings)],
) -> SigningCredentials:
    """Object-store key pair, read from settings only."""
    return credentials_from_settings(settings)


# ---------------------------------------------------------------------------
# Convenience Type Aliases
# ---------------------------------------------------------------------------

# These type aliases make route signatures cleaner
BearerToken = Annotated[Optional[str], Depends(verify_bearer_token)]
SettingsDep = Annotated[Settings, Depends(get_settings)]
SignerDep = Annotated[SigV4Signer, Depends(get_signer)]
CredentialsDep = Annotated[SigningCredentials, Depends(get_signing_credentials)]
