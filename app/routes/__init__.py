"""API routes for the SSO gateway."""

from .health import router as health_router
from .provision import router as provision_router
from .saml_validate import router as saml_validate_router
from .sso import router as sso_router

__all__ = [
    "health_router",
    "provision_router",
    "saml_validate_router",
    "sso_router",
]
