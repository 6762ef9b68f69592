"""
SSO (Single Sign-On) browser endpoints.

- SAML 2.0: SP-initiated login, Assertion Consumer Service, SP metadata
- One-time session redemption and local session management
- Provider status

The ACS never shows failure details to the browser: it redirects to the
login page with either ``sso_not_configured`` or ``authentication_failed``
and logs the precise reason.
"""

import logging
import secrets
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import RedirectResponse

from app.dependencies import SSOComponents, get_components, new_login_flow
from app.error_handlers import report_to_sentry
from app.middleware.logging import get_client_ip
from src.auth.sso.errors import ConfigurationError, SSOError, TrustError
from src.auth.sso.metadata import generate_sp_metadata, get_sp_metadata_info
from src.types.sso import ClientContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sso", tags=["sso"])

AUTH_SESSION_COOKIE = "sso_auth_session"
SESSION_COOKIE = "sso_session"

SSO_NOT_CONFIGURED = "sso_not_configured"
AUTHENTICATION_FAILED = "authentication_failed"


# =============================================================================
# Helper Functions
# =============================================================================


def _login_error_redirect(components: SSOComponents, code: str) -> RedirectResponse:
    login_url = components.settings.sso.sso_login_url
    separator = "&" if "?" in login_url else "?"
    response = RedirectResponse(
        url=f"{login_url}{separator}{urlencode({'sso_error': code})}",
        status_code=status.HTTP_302_FOUND,
    )
    response.delete_cookie(AUTH_SESSION_COOKIE)
    return response


async def _read_callback_params(request: Request) -> Dict[str, Optional[str]]:
    """SAMLResponse and RelayState from the form body, else the query string."""
    params: Dict[str, Optional[str]] = {
        "SAMLResponse": request.query_params.get("SAMLResponse"),
        "RelayState": request.query_params.get("RelayState"),
    }
    if request.method == "POST":
        form = await request.form()
        for key in params:
            value = form.get(key)
            if isinstance(value, str) and value:
                params[key] = value
    return params


# =============================================================================
# SAML Endpoints
# =============================================================================


@router.get(
    "/saml/login/{provider_id}",
    summary="Initiate SAML Login",
    description="Start the SAML authentication flow by redirecting to the IdP.",
)
async def saml_login(
    provider_id: str,
    components: SSOComponents = Depends(get_components),
) -> RedirectResponse:
    """
    Redirect the browser to the identity provider.

    A fresh auth session cookie binds the pending login to this browser.
    """
    auth_session_id = secrets.token_urlsafe(16)
    flow = new_login_flow(components)
    redirect_url = await flow.start(provider_id, auth_session_id)

    settings = components.settings
    secure = settings.security.secure_cookies
    response = RedirectResponse(url=redirect_url, status_code=status.HTTP_302_FOUND)
    # The IdP posts back cross-site; only SameSite=None survives that, and
    # browsers accept it only on Secure cookies
    response.set_cookie(
        key=AUTH_SESSION_COOKIE,
        value=auth_session_id,
        httponly=True,
        secure=secure,
        samesite="none" if secure else "lax",
        max_age=settings.sso.sso_relay_state_ttl_seconds,
    )
    logger.info("SAML login initiated", extra={"provider_id": provider_id})
    return response


@router.api_route(
    "/saml/acs",
    methods=["GET", "POST"],
    summary="SAML Assertion Consumer Service",
    description="Handle the SAML Response posted by the Identity Provider.",
)
async def saml_acs(
    request: Request,
    components: SSOComponents = Depends(get_components),
) -> RedirectResponse:
    params = await _read_callback_params(request)
    saml_response = params["SAMLResponse"]
    if not saml_response:
        logger.warning("SAML callback without SAMLResponse")
        return _login_error_redirect(components, AUTHENTICATION_FAILED)

    flow = new_login_flow(components)
    client = ClientContext(
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )

    try:
        result = await flow.complete(
            auth_session_id=request.cookies.get(AUTH_SESSION_COOKIE),
            saml_response=saml_response,
            relay_state=params["RelayState"],
            client=client,
        )
    except ConfigurationError:
        return _login_error_redirect(components, SSO_NOT_CONFIGURED)
    except SSOError as e:
        if isinstance(e, TrustError) or e.status_code >= 500:
            report_to_sentry(e, request)
        return _login_error_redirect(components, AUTHENTICATION_FAILED)

    response = RedirectResponse(
        url=result.session.session_url, status_code=status.HTTP_302_FOUND
    )
    response.delete_cookie(AUTH_SESSION_COOKIE)
    return response


@router.get(
    "/saml/metadata/{provider_id}",
    response_class=Response,
    summary="Get SAML SP Metadata",
    description="Service Provider metadata XML to register with the IdP.",
)
async def get_saml_metadata(
    provider_id: str,
    components: SSOComponents = Depends(get_components),
) -> Response:
    config = components.certificates.require(provider_id)
    return Response(
        content=generate_sp_metadata(config),
        media_type="application/xml",
        headers={
            "Content-Disposition": f'attachment; filename="sp-metadata-{provider_id}.xml"'
        },
    )


# =============================================================================
# Session Endpoints
# =============================================================================


@router.get(
    "/session/redeem",
    summary="Redeem Sign-in Link",
    description="Exchange a one-time sign-in token for an application session.",
)
async def redeem_session(
    token: str = Query(..., min_length=1),
    components: SSOComponents = Depends(get_components),
) -> RedirectResponse:
    sessions = components.sessions
    try:
        claims = await sessions.redeem(token)
    except SSOError as e:
        logger.warning(f"Sign-in token rejected: {e.message}")
        return _login_error_redirect(components, AUTHENTICATION_FAILED)

    session_token, _ = sessions.create_app_session(claims)
    settings = components.settings
    response = RedirectResponse(
        url=settings.sso.sso_post_login_redirect, status_code=status.HTTP_302_FOUND
    )
    response.set_cookie(
        key=SESSION_COOKIE,
        value=session_token,
        httponly=True,
        secure=settings.security.secure_cookies,
        samesite="lax",
        max_age=sessions.app_session_ttl,
    )
    return response


@router.get(
    "/session",
    summary="Get Current SSO Session",
)
async def get_sso_session(
    request: Request,
    components: SSOComponents = Depends(get_components),
) -> Dict[str, Any]:
    claims = components.sessions.read_app_session(request.cookies.get(SESSION_COOKIE))
    if not claims:
        return {"authenticated": False}

    return {
        "authenticated": True,
        "user": {
            "id": claims["sub"],
            "email": claims.get("email"),
            "role": claims.get("role"),
        },
        "expires_at": claims["exp"],
    }


@router.post(
    "/logout",
    summary="SSO Logout",
    description="Clear the local SSO session.",
)
async def sso_logout(request: Request, response: Response) -> Dict[str, Any]:
    had_session = SESSION_COOKIE in request.cookies
    response.delete_cookie(SESSION_COOKIE)
    response.delete_cookie(AUTH_SESSION_COOKIE)
    return {
        "success": True,
        "message": "Logged out" if had_session else "No active session",
    }


# =============================================================================
# Status
# =============================================================================


@router.get(
    "/status/{provider_id}",
    summary="Get SSO Status",
)
async def get_sso_status(
    provider_id: str,
    components: SSOComponents = Depends(get_components),
) -> Dict[str, Any]:
    config = components.certificates.get(provider_id)
    if config is None:
        return {"provider_id": provider_id, "configured": False}

    certificate = components.certificates.certificate_info(provider_id)
    return {
        "provider_id": provider_id,
        "configured": True,
        "provider": config.provider,
        "display_name": config.display_name,
        "idp_entity_id": config.idp_entity_id,
        "sp_initiated_login": bool(config.idp_sso_url),
        "service_provider": get_sp_metadata_info(config),
        "certificate": {
            "not_valid_after": certificate.get("not_valid_after"),
            "is_expired": certificate.get("is_expired"),
            "days_until_expiry": certificate.get("days_until_expiry"),
            "fingerprint_sha256": certificate.get("fingerprint_sha256"),
        },
    }
