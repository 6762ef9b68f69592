"""
SAML AuthnRequest construction (SP-initiated login).

``initiate`` creates a fresh request ID and RelayState, records them as the
pending login for the browser's auth session and returns the IdP redirect
URL for the HTTP-Redirect binding.
"""

import base64
import logging
import secrets
import zlib
from datetime import datetime
from typing import Callable, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from lxml import etree

from src.storage.ephemeral_store import BaseEphemeralStore
from src.types.sso import AuthnRequest, IdentityProviderConfig, PendingLogin, utc_now

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

SAMLP_NS = "urn:oasis:names:tc:SAML:2.0:protocol"
SAML_NS = "urn:oasis:names:tc:SAML:2.0:assertion"
HTTP_POST_BINDING = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-POST"
PASSWORD_PROTECTED_TRANSPORT = (
    "urn:oasis:names:tc:SAML:2.0:ac:classes:PasswordProtectedTransport"
)

PENDING_LOGIN_PREFIX = "pending:"


def generate_request_id() -> str:
    """Unique AuthnRequest ID: underscore plus 160 random bits as hex."""
    return f"_{secrets.token_hex(20)}"


def generate_relay_state() -> str:
    """Opaque RelayState token with 128 bits of entropy."""
    return secrets.token_hex(16)


def format_instant(instant: datetime) -> str:
    return instant.strftime("%Y-%m-%dT%H:%M:%SZ")


def deflate_and_encode(xml: bytes) -> str:
    """Raw DEFLATE then base64, as the HTTP-Redirect binding requires."""
    compressor = zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION, zlib.DEFLATED, -15)
    deflated = compressor.compress(xml) + compressor.flush()
    return base64.b64encode(deflated).decode("ascii")


def decode_and_inflate(encoded: str) -> bytes:
    return zlib.decompress(base64.b64decode(encoded), -15)


def build_redirect_url(idp_sso_url: str, saml_request: str, relay_state: str) -> str:
    """Append SAMLRequest and RelayState, keeping any existing query parameters."""
    parts = urlsplit(idp_sso_url)
    query = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if key not in ("SAMLRequest", "RelayState")
    ]
    query.append(("SAMLRequest", saml_request))
    query.append(("RelayState", relay_state))
    return urlunsplit(parts._replace(query=urlencode(query)))


def pending_login_key(auth_session_id: str) -> str:
    return f"{PENDING_LOGIN_PREFIX}{auth_session_id}"


class RequestBuilder:
    """Builds AuthnRequests and records the matching pending login."""

    def __init__(
        self,
        store: BaseEphemeralStore,
        relay_state_ttl: int = 600,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.relay_state_ttl = relay_state_ttl
        self._clock = clock

    def build_authn_request(
        self, config: IdentityProviderConfig
    ) -> Tuple[AuthnRequest, bytes]:
        """Return the request model and its serialized XML."""
        request = AuthnRequest(
            id=generate_request_id(),
            issuer=config.sp_entity_id,
            destination=config.idp_sso_url,
            issue_instant=self._clock(),
            acs_url=config.acs_url,
            name_id_format=config.name_id_format,
        )

        root = etree.Element(
            f"{{{SAMLP_NS}}}AuthnRequest",
            nsmap={"samlp": SAMLP_NS, "saml": SAML_NS},
            ID=request.id,
            Version="2.0",
            IssueInstant=format_instant(request.issue_instant),
            Destination=request.destination,
            AssertionConsumerServiceURL=request.acs_url,
            ProtocolBinding=HTTP_POST_BINDING,
        )
        etree.SubElement(root, f"{{{SAML_NS}}}Issuer").text = request.issuer
        etree.SubElement(
            root,
            f"{{{SAMLP_NS}}}NameIDPolicy",
            Format=request.name_id_format.urn,
            AllowCreate="true",
        )
        context = etree.SubElement(
            root, f"{{{SAMLP_NS}}}RequestedAuthnContext", Comparison="exact"
        )
        etree.SubElement(
            context, f"{{{SAML_NS}}}AuthnContextClassRef"
        ).text = PASSWORD_PROTECTED_TRANSPORT

        xml = etree.tostring(root, xml_declaration=True, encoding="UTF-8")
        return request, xml

    async def initiate(
        self,
        config: Optional[IdentityProviderConfig],
        auth_session_id: str,
    ) -> str:
        """
        Start an SP-initiated login.

        Args:
            config: IdP configuration; None means SSO is not configured
            auth_session_id: Opaque id of the browser's auth session

        Returns:
            Redirect URL for the IdP

        Raises:
            ConfigurationError: If the provider is missing or has no SSO URL
            StoreError: If the pending login cannot be recorded
        """
        if config is None:
            raise ConfigurationError()
        if not config.idp_sso_url:
            raise ConfigurationError(
                "SSO provider has no sign-in URL",
                details={"provider_id": config.provider_id},
            )

        request, xml = self.build_authn_request(config)
        relay_state = generate_relay_state()

        pending = PendingLogin(
            provider_id=config.provider_id,
            relay_state=relay_state,
            request_id=request.id,
            issued_at=request.issue_instant,
        )
        await self.store.put(
            pending_login_key(auth_session_id),
            pending.model_dump(mode="json"),
            self.relay_state_ttl,
        )

        logger.info(
            "SAML AuthnRequest issued",
            extra={"provider_id": config.provider_id, "saml_request_id": request.id},
        )
        return build_redirect_url(config.idp_sso_url, deflate_and_encode(xml), relay_state)
