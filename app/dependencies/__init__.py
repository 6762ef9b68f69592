"""
FastAPI dependencies for the SSO gateway.

The pipeline components are built once from settings and shared by all
requests; every login attempt gets its own SAMLLoginFlow.

Usage:
    from app.dependencies import get_components, new_login_flow

    @router.post("/acs")
    async def acs(components: SSOComponents = Depends(get_components)):
        flow = new_login_flow(components)
"""

import logging
from dataclasses import dataclass
from typing import Optional

from src.auth.sso.attribute_mapper import AttributeMapper
from src.auth.sso.audit import AuditLogger
from src.auth.sso.certificates import CertificateStore
from src.auth.sso.flow import SAMLLoginFlow
from src.auth.sso.provisioning import ProvisioningService
from src.auth.sso.request_builder import RequestBuilder
from src.auth.sso.response_validator import ResponseValidator
from src.auth.sso.sessions import SessionIssuer
from src.config import Settings, get_settings
from src.storage.ephemeral_store import (
    BaseEphemeralStore,
    InMemoryEphemeralStore,
    RedisEphemeralStore,
)
from src.storage.identity_store import BaseIdentityStore, create_identity_store
from src.storage.redis_client import RedisClient

logger = logging.getLogger(__name__)


@dataclass
class SSOComponents:
    settings: Settings
    certificates: CertificateStore
    ephemeral_store: BaseEphemeralStore
    identity_store: BaseIdentityStore
    request_builder: RequestBuilder
    validator: ResponseValidator
    mapper: AttributeMapper
    provisioning: ProvisioningService
    sessions: SessionIssuer
    audit: AuditLogger
    redis_client: Optional[RedisClient] = None


_components: Optional[SSOComponents] = None


def build_components(
    settings: Settings,
    certificates: Optional[CertificateStore] = None,
    ephemeral_store: Optional[BaseEphemeralStore] = None,
    identity_store: Optional[BaseIdentityStore] = None,
) -> SSOComponents:
    """Wire the pipeline from settings; explicit arguments override backends."""
    sso = settings.sso
    redis_client = None

    if certificates is None:
        certificates = CertificateStore.from_settings(settings)

    if ephemeral_store is None:
        if settings.is_redis_configured:
            redis_client = RedisClient(settings.redis.redis_url)
            ephemeral_store = RedisEphemeralStore(redis_client)
        else:
            if settings.is_production:
                logger.warning(
                    "REDIS_URL is not configured in production; login state is "
                    "kept in process memory and not shared between instances"
                )
            ephemeral_store = InMemoryEphemeralStore()

    if identity_store is None:
        identity_store = create_identity_store(settings)

    return SSOComponents(
        settings=settings,
        certificates=certificates,
        ephemeral_store=ephemeral_store,
        identity_store=identity_store,
        request_builder=RequestBuilder(
            ephemeral_store, relay_state_ttl=sso.sso_relay_state_ttl_seconds
        ),
        validator=ResponseValidator(clock_skew_seconds=sso.sso_clock_skew_seconds),
        mapper=AttributeMapper(),
        provisioning=ProvisioningService(
            identity_store,
            store_timeout=sso.sso_store_timeout_seconds,
            reconcile_attempts=sso.sso_reconcile_attempts,
            reconcile_delay=sso.sso_reconcile_delay_seconds,
        ),
        sessions=SessionIssuer(
            ephemeral_store,
            secret=sso.sso_session_secret.get_secret_value(),
            redeem_url=sso.sso_redeem_url,
            token_ttl=sso.sso_session_token_ttl_seconds,
            app_session_ttl=sso.sso_app_session_ttl_seconds,
        ),
        audit=AuditLogger(identity_store, timeout=sso.sso_store_timeout_seconds),
        redis_client=redis_client,
    )


def get_components() -> SSOComponents:
    """Shared pipeline components (built on first use)."""
    global _components
    if _components is None:
        _components = build_components(get_settings())
    return _components


def set_components(components: Optional[SSOComponents]) -> None:
    """Install (or with None, reset) the shared components."""
    global _components
    _components = components


async def close_components() -> None:
    if _components is not None and _components.redis_client is not None:
        await _components.redis_client.close()


def new_login_flow(components: SSOComponents) -> SAMLLoginFlow:
    return SAMLLoginFlow(
        certificates=components.certificates,
        store=components.ephemeral_store,
        request_builder=components.request_builder,
        validator=components.validator,
        mapper=components.mapper,
        provisioning=components.provisioning,
        sessions=components.sessions,
        audit=components.audit,
        validation_timeout=components.settings.sso.sso_validation_timeout_seconds,
        replay_ttl=components.settings.sso.sso_relay_state_ttl_seconds,
    )


__all__ = [
    "SSOComponents",
    "build_components",
    "get_components",
    "set_components",
    "close_components",
    "new_login_flow",
]
