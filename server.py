"""
SSO gateway server.

SAML 2.0 service-provider login, just-in-time provisioning and one-time
session hand-off for the application.

Run with ``python server.py`` or ``uvicorn server:app``.
"""

from contextlib import asynccontextmanager

import sentry_sdk
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from src.config import Settings, get_settings
from src.utils.logging import REDACTED, redact_sensitive_data, setup_logging

settings: Settings = get_settings()

# Logging must be configured before the app package creates its loggers
logger = setup_logging(
    level=settings.logging.log_level,
    json_output=settings.logging.log_format_json or settings.is_production,
)
logger.info("Configuration loaded", extra={"config": settings.get_config_summary()})

from app.dependencies import close_components, get_components
from app.error_handlers import register_exception_handlers
from app.middleware import RequestLoggingMiddleware
from app.routes import health_router, provision_router, saml_validate_router, sso_router

SENSITIVE_HEADERS = frozenset({"authorization", "cookie", "set-cookie", "x-service-token"})


def scrub_breadcrumb(crumb, hint):
    """Keep SAML messages, sign-in tokens and credentials out of Sentry."""
    data = crumb.get("data")
    if isinstance(data, dict):
        headers = data.get("headers")
        if isinstance(headers, dict):
            for name in headers:
                if name.lower() in SENSITIVE_HEADERS:
                    headers[name] = REDACTED
        if isinstance(data.get("url"), str):
            data["url"] = redact_sensitive_data(data["url"])

    if isinstance(crumb.get("message"), str):
        crumb["message"] = redact_sensitive_data(crumb["message"])
    return crumb


def init_sentry(settings: Settings) -> None:
    if not settings.is_sentry_configured:
        logger.info("Sentry DSN not configured, error tracking disabled")
        return

    sentry = settings.sentry
    sentry_sdk.init(
        dsn=sentry.sentry_dsn,
        environment=sentry.sentry_environment,
        release=sentry.sentry_release,
        server_name=sentry.server_name,
        traces_sample_rate=sentry.sentry_traces_sample_rate,
        integrations=[
            StarletteIntegration(transaction_style="endpoint"),
            FastApiIntegration(transaction_style="endpoint"),
        ],
        before_breadcrumb=scrub_breadcrumb,
        send_default_pii=False,
        attach_stacktrace=True,
    )
    logger.info(f"Sentry initialized for environment: {sentry.sentry_environment}")


init_sentry(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load IdP configuration at startup so a broken certificate fails fast."""
    components = get_components()
    logger.info(
        f"SSO gateway ready with {len(components.certificates.list_providers())} provider(s)"
    )
    yield
    try:
        await close_components()
    except Exception as e:
        logger.warning("Failed to close Redis client: %s", e)


app = FastAPI(
    title="SSO Gateway",
    description="SAML 2.0 single sign-on with just-in-time user provisioning.",
    version="1.0.0",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "health", "description": "Health checks and system status"},
        {"name": "sso", "description": "SAML single sign-on and provisioning"},
    ],
)

register_exception_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.security.origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-Service-Token", "X-Request-ID", "X-Correlation-ID"],
    expose_headers=["X-Request-ID", "X-Response-Time"],
)

if settings.logging.request_logging_enabled:
    app.add_middleware(
        RequestLoggingMiddleware,
        trust_request_id=settings.security.security_trust_request_id,
    )

for router in (health_router, sso_router, saml_validate_router, provision_router):
    app.include_router(router)


if __name__ == "__main__":
    uvicorn.run("server:app", host="0.0.0.0", port=8000, reload=not settings.is_production)
