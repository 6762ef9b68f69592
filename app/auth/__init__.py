"""Authentication components for the SSO gateway."""

from .service_token import SERVICE_TOKEN_HEADER, verify_service_token

__all__ = [
    "SERVICE_TOKEN_HEADER",
    "verify_service_token",
]
