"""
Health check and root endpoints.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

import sentry_sdk
from fastapi import APIRouter, Depends

from app.dependencies import SSOComponents, get_components

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


def get_sentry_status() -> Dict[str, Any]:
    client = sentry_sdk.get_client()
    return {"status": "up" if client.is_active() else "unconfigured"}


@router.get("/")
async def root() -> Dict[str, Any]:
    return {"service": "sso-gateway", "status": "ok"}


@router.get(
    "/health",
    summary="System health check",
    description="""
Health check endpoint for monitoring and load balancers.

Reports the ephemeral store (Redis or in-memory), the identity store
(Supabase or in-memory) and Sentry.

**Authentication**: Not required.
    """,
)
async def health_check(
    components: SSOComponents = Depends(get_components),
) -> Dict[str, Any]:
    ephemeral = await components.ephemeral_store.health_check()
    identity = await components.identity_store.health_check()

    # Login state is required for every sign-in; the identity store only for new users
    is_healthy = ephemeral.get("status") == "healthy" and identity.get("status") == "healthy"

    return {
        "status": "healthy" if is_healthy else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": components.settings.security.environment,
        "services": {
            "redis": ephemeral,
            "identity_store": identity,
            "sentry": get_sentry_status(),
        },
        "providers": [p.provider_id for p in components.certificates.list_providers()],
    }
