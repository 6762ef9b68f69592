"""
Stateless SAML validation service.

Trusted backends post a SAMLResponse together with the trust material to
check it against and receive the validated assertion. No login state is
read or written.
"""

import asyncio
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from app.dependencies import SSOComponents, get_components
from src.auth.sso.certificates import load_certificate, normalize_certificate_pem
from src.auth.sso.errors import SSOError, TrustError
from src.types.sso import IdentityProviderConfig, ValidateSAMLRequest
from src.utils.logging import Timer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sso/saml", tags=["sso"])


def _bad_request(error: str, details: Any = None) -> JSONResponse:
    content: Dict[str, Any] = {"error": error}
    if details is not None:
        content["details"] = details
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=content)


@router.post(
    "/validate",
    summary="Validate SAML Response",
    description="Validate a SAMLResponse against the supplied IdP trust material.",
)
async def validate_saml_response(
    request: Request,
    components: SSOComponents = Depends(get_components),
) -> JSONResponse:
    try:
        body = await request.json()
        payload = ValidateSAMLRequest.model_validate(body)
    except (ValueError, ValidationError):
        return _bad_request("Missing required fields")

    sso = components.settings.sso
    try:
        certificate_pem = normalize_certificate_pem(payload.idp_certificate)
        load_certificate(certificate_pem)
        config = IdentityProviderConfig(
            provider_id="validation-request",
            idp_entity_id=payload.idp_entity_id,
            idp_certificate_pem=certificate_pem,
            sp_entity_id=payload.sp_entity_id,
            acs_url=payload.acs_url or sso.sso_acs_url,
        )
    except SSOError as e:
        return _bad_request("SAML validation failed", e.message)
    except ValidationError:
        return _bad_request("SAML validation failed", "Invalid IdP configuration")

    try:
        with Timer("saml_validation", logger):
            assertion = await asyncio.wait_for(
                asyncio.to_thread(
                    components.validator.validate,
                    payload.saml_response,
                    None,
                    None,
                    config,
                ),
                timeout=sso.sso_validation_timeout_seconds,
            )
    except asyncio.TimeoutError:
        logger.error("SAML validation timed out")
        return JSONResponse(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            content={"error": "SAML validation timed out"},
        )
    except SSOError as e:
        log = logger.error if isinstance(e, TrustError) else logger.warning
        log(
            f"SAML validation error: {e.message}",
            extra={"reason": e.details.get("reason"), "idp_entity_id": payload.idp_entity_id},
        )
        return _bad_request("SAML validation failed", e.message)

    return JSONResponse(status_code=status.HTTP_200_OK, content=assertion.to_public_dict())
