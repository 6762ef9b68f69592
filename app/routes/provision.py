"""
Service-to-service user provisioning.

Creates a user ahead of (or outside) a SAML login and returns a one-time
sign-in link for it. Authenticated with the X-Service-Token header.
"""

import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from app.auth import verify_service_token
from app.dependencies import SSOComponents, get_components
from app.middleware.logging import get_client_ip
from src.auth.sso.errors import ProvisioningConflict, SessionError, SSOError
from src.types.sso import AuditAction, AuditEvent, ProvisionUserRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sso", tags=["sso"])


@router.post(
    "/provision",
    status_code=status.HTTP_201_CREATED,
    summary="Provision SSO User",
    dependencies=[Depends(verify_service_token)],
)
async def provision_user(
    request: Request,
    components: SSOComponents = Depends(get_components),
) -> JSONResponse:
    try:
        payload = ProvisionUserRequest.model_validate(await request.json())
    except ValueError as e:
        # pydantic's ValidationError is a ValueError
        if isinstance(e, ValidationError) and any(
            err.get("loc") == ("role",) and err.get("type") != "missing"
            for err in e.errors()
        ):
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"error": "Invalid role"},
            )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Missing required fields"},
        )

    try:
        profile = await components.provisioning.create_user(payload)
    except ProvisioningConflict as e:
        content = {"error": "User already exists"}
        if e.details.get("user_id"):
            content["user_id"] = e.details["user_id"]
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=content)
    except SSOError as e:
        logger.error(f"Provisioning failed: {e.message}", extra={"details": e.details})
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Failed to create user profile", "error_code": e.error_code.value},
        )

    session_url = None
    try:
        session = await components.sessions.issue(profile)
        session_url = session.session_url
    except SessionError as e:
        logger.warning(f"User provisioned without a sign-in link: {e.message}")

    await components.audit.record(
        AuditEvent(
            user_id=profile.user_id,
            action=AuditAction.SSO_PROVISION,
            sso_provider=payload.sso_provider,
            ip_address=get_client_ip(request),
            user_agent=request.headers.get("User-Agent"),
            changes={"email": profile.email, "role": profile.role.value},
        )
    )

    return JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content={
            "user": {
                "id": profile.user_id,
                "email": profile.email,
                "role": profile.role.value,
            },
            "session_url": session_url,
        },
    )
