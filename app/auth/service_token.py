"""
Service-to-service authentication.

The provisioning endpoint is called by trusted backends only. They present
the shared SSO_SERVICE_TOKEN in the X-Service-Token header; when no token is
configured the endpoint is disabled.
"""

import hmac
import logging
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader

from src.config import get_settings

logger = logging.getLogger(__name__)

SERVICE_TOKEN_HEADER = APIKeyHeader(name="X-Service-Token", auto_error=False)


async def verify_service_token(
    token: Optional[str] = Depends(SERVICE_TOKEN_HEADER),
) -> None:
    """
    Reject requests without the configured service token.

    Raises:
        HTTPException: 401 if the token is missing or wrong, 503 if the
            endpoint has no token configured
    """
    expected = get_settings().sso.sso_service_token
    if expected is None:
        logger.warning("Provisioning endpoint called but SSO_SERVICE_TOKEN is not set")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Provisioning endpoint is not enabled",
        )

    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing service token"
        )

    if not hmac.compare_digest(token.encode(), expected.get_secret_value().encode()):
        logger.warning("Rejected provisioning request with invalid service token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid service token"
        )
