"""
SAML login orchestration.

One SAMLLoginFlow drives a single login attempt through its protocol
states:

    IDLE -> REQUEST_ISSUED -> RESPONSE_RECEIVED -> VALIDATED -> MAPPED
         -> PROVISIONED -> SESSION_ISSUED

Any failure moves the flow to ERROR and re-raises the SSOError. The
callback can also complete a flow that never issued a request itself
(IdP-initiated login, or a callback handled by another worker), which is
why ``complete`` accepts IDLE as its starting state.
"""

import asyncio
import hashlib
import logging
from datetime import timedelta
from typing import Awaitable, Callable, Optional, TypeVar

from src.storage.ephemeral_store import BaseEphemeralStore
from src.types.sso import (
    AuditAction,
    AuditEvent,
    ClientContext,
    IdentityProviderConfig,
    LoginResult,
    LoginState,
    PendingLogin,
    SAMLAssertion,
    utc_now,
)
from src.utils.logging import Timer, bind_log_context, mask_email

from .attribute_mapper import AttributeMapper
from .audit import AuditLogger
from .certificates import CertificateStore
from .errors import (
    ConfigurationError,
    CSRFError,
    FlowTimeoutError,
    MappingError,
    ProtocolError,
    SSOError,
    TimingError,
    TrustError,
)
from .provisioning import ProvisioningService
from .request_builder import RequestBuilder, pending_login_key
from .response_validator import ResponseValidator
from .sessions import SessionIssuer

logger = logging.getLogger(__name__)

T = TypeVar("T")

REPLAY_KEY_PREFIX = "assertion:"


class SAMLLoginFlow:
    """Drives one SSO login attempt."""

    def __init__(
        self,
        certificates: CertificateStore,
        store: BaseEphemeralStore,
        request_builder: RequestBuilder,
        validator: ResponseValidator,
        mapper: AttributeMapper,
        provisioning: ProvisioningService,
        sessions: SessionIssuer,
        audit: AuditLogger,
        validation_timeout: float = 10.0,
        replay_ttl: int = 600,
    ) -> None:
        self.certificates = certificates
        self.store = store
        self.request_builder = request_builder
        self.validator = validator
        self.mapper = mapper
        self.provisioning = provisioning
        self.sessions = sessions
        self.audit = audit
        self.validation_timeout = validation_timeout
        self.replay_ttl = replay_ttl
        self.state = LoginState.IDLE
        self.error: Optional[SSOError] = None

    def _expect(self, *states: LoginState) -> None:
        if self.state not in states:
            raise RuntimeError(
                f"Login flow is in state {self.state.value}, "
                f"expected one of {[s.value for s in states]}"
            )

    async def start(self, provider_id: Optional[str], auth_session_id: str) -> str:
        """
        Issue an AuthnRequest and return the IdP redirect URL.

        Raises:
            ConfigurationError: If the provider is unknown or disabled
            StoreError: If the pending login cannot be stored
        """
        self._expect(LoginState.IDLE)
        config = self.certificates.get(provider_id) if provider_id else self.certificates.default()
        try:
            url = await self.request_builder.initiate(config, auth_session_id)
        except SSOError as e:
            self._fail(e, provider_id)
            raise
        self.state = LoginState.REQUEST_ISSUED
        return url

    async def complete(
        self,
        auth_session_id: Optional[str],
        saml_response: str,
        relay_state: Optional[str],
        client: Optional[ClientContext] = None,
    ) -> LoginResult:
        """
        Validate the IdP response and sign the user in.

        Raises:
            SSOError: The first failure of any step; the flow ends in ERROR
        """
        self._expect(LoginState.IDLE, LoginState.REQUEST_ISSUED)
        client = client or ClientContext()
        provider_id: Optional[str] = None

        try:
            self.state = LoginState.RESPONSE_RECEIVED
            pending = await self._take_pending(auth_session_id)
            # A RelayState is only ever issued alongside a pending login
            if relay_state and pending is None:
                raise CSRFError("RelayState has no pending login")
            config = self._resolve_config(pending)
            provider_id = config.provider_id
            bind_log_context(provider_id=provider_id)

            assertion = await self._validate(saml_response, relay_state, pending, config)
            await self._check_replay(assertion, saml_response)
            self.state = LoginState.VALIDATED

            identity = self.mapper.map(assertion, config)
            self.state = LoginState.MAPPED

            provisioned = await self._retry_once(
                "provisioning",
                lambda: self.provisioning.provision_or_sign_in(identity, config.provider),
            )
            self.state = LoginState.PROVISIONED

            session = await self._retry_once(
                "session issuance",
                lambda: self.sessions.issue(provisioned.profile),
            )
            self.state = LoginState.SESSION_ISSUED
        except SSOError as e:
            self._fail(e, provider_id)
            raise

        action = AuditAction.SSO_PROVISION if provisioned.created else AuditAction.SSO_SIGNIN
        changes = {"email": provisioned.profile.email}
        if provisioned.created:
            changes["role"] = provisioned.profile.role.value
        await self.audit.record(
            AuditEvent(
                user_id=provisioned.profile.user_id,
                action=action,
                sso_provider=config.provider,
                ip_address=client.ip_address,
                user_agent=client.user_agent,
                changes=changes,
            )
        )

        logger.info(
            "SSO login completed",
            extra={
                "provider_id": provider_id,
                "email": mask_email(provisioned.profile.email),
                "created": provisioned.created,
            },
        )
        return LoginResult(
            identity=identity,
            profile=provisioned.profile,
            session=session,
            created=provisioned.created,
        )

    async def _take_pending(self, auth_session_id: Optional[str]) -> Optional[PendingLogin]:
        if not auth_session_id:
            return None
        entry = await self.store.take_once(pending_login_key(auth_session_id))
        return PendingLogin.model_validate(entry) if entry else None

    def _resolve_config(self, pending: Optional[PendingLogin]) -> IdentityProviderConfig:
        config = self.certificates.get(pending.provider_id) if pending else self.certificates.default()
        if config is None:
            raise ConfigurationError(
                details={"provider_id": pending.provider_id if pending else None}
            )
        return config

    async def _validate(
        self,
        saml_response: str,
        relay_state: Optional[str],
        pending: Optional[PendingLogin],
        config: IdentityProviderConfig,
    ) -> SAMLAssertion:
        try:
            with Timer("saml_validation", logger):
                return await asyncio.wait_for(
                    asyncio.to_thread(
                        self.validator.validate,
                        saml_response,
                        relay_state,
                        pending.relay_state if pending else None,
                        config,
                        pending.request_id if pending else None,
                    ),
                    timeout=self.validation_timeout,
                )
        except asyncio.TimeoutError as e:
            raise FlowTimeoutError(
                "SAML validation timed out",
                details={"timeout_seconds": self.validation_timeout},
            ) from e

    async def _check_replay(self, assertion: SAMLAssertion, saml_response: str) -> None:
        """Reject an assertion that has already been consumed."""
        if assertion.assertion_id:
            key = f"{REPLAY_KEY_PREFIX}{assertion.issuer}:{assertion.assertion_id}"
        else:
            digest = hashlib.sha256(saml_response.encode()).hexdigest()
            key = f"{REPLAY_KEY_PREFIX}sha256:{digest}"

        now = utc_now()
        skew = self.validator.clock_skew
        window = timedelta(seconds=self.replay_ttl)
        expiries = [
            instant
            for instant in (assertion.not_on_or_after, assertion.confirmation_not_on_or_after)
            if instant is not None
        ]
        if expiries:
            expires_at = max(expiries)
        else:
            # Without an expiry the assertion is accepted only while its replay entry lives
            issued = assertion.issue_instant
            if issued is None or now - skew > issued + window:
                raise TimingError("SAML assertion has no expiry and is too old to accept")
            expires_at = issued + window

        remaining = expires_at + skew - now
        ttl = max(self.replay_ttl, int(remaining / timedelta(seconds=1)) + 1)

        first_use = await self.store.put_if_absent(
            key, {"issuer": assertion.issuer}, ttl
        )
        if not first_use:
            raise ProtocolError(
                ProtocolError.ASSERTION_REPLAYED,
                "SAML assertion has already been used",
            )

    async def _retry_once(self, step: str, operation: Callable[[], Awaitable[T]]) -> T:
        try:
            return await operation()
        except SSOError as e:
            if not e.retryable:
                raise
            logger.warning(f"SSO {step} failed, retrying once: {e.message}")
            return await operation()

    def _fail(self, error: SSOError, provider_id: Optional[str]) -> None:
        self.state = LoginState.ERROR
        self.error = error
        extra = {
            "provider_id": provider_id,
            "error_code": error.error_code.value,
            "reason": error.details.get("reason"),
        }
        if isinstance(error, CSRFError):
            logger.warning("Possible CSRF attack on SSO callback", extra=extra)
        elif isinstance(error, (TrustError, MappingError)):
            logger.error(f"SSO login failed: {error.message}", extra=extra)
        else:
            logger.warning(f"SSO login failed: {error.message}", extra=extra)
