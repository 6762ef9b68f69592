"""
Pytest configuration and shared fixtures for SSO gateway tests.

This module provides common fixtures used across all test files:
- IdP signing material (RSA key + self-signed certificate)
- A builder for signed SAML responses
- In-memory pipeline components and a test client wired to them
"""

import base64
import os
import sys
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple, Union

import pytest

# Environment setup before any imports
os.environ["ENVIRONMENT"] = "development"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["SSO_SESSION_SECRET"] = "test-session-secret-not-for-production"
os.environ["SSO_SERVICE_TOKEN"] = "test-service-token"
os.environ["SSO_LOGIN_URL"] = "https://app.example.com/login"
os.environ["SSO_POST_LOGIN_REDIRECT"] = "https://app.example.com/dashboard"
os.environ["SSO_REDEEM_URL"] = "https://sp.example.com/sso/session/redeem"
for _name in ("SUPABASE_URL", "SUPABASE_SERVICE_KEY", "REDIS_URL", "SENTRY_DSN"):
    os.environ.pop(_name, None)

# Ensure project root is in path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from lxml import etree
from signxml import XMLSigner, methods

IDP_ENTITY_ID = "https://idp.example.com"
IDP_SSO_URL = "https://idp.example.com/sso"
SP_ENTITY_ID = "https://sp.example.com/sso/saml/metadata"
ACS_URL = "https://sp.example.com/sso/saml/acs"

SAMLP_NS = "urn:oasis:names:tc:SAML:2.0:protocol"
SAML_NS = "urn:oasis:names:tc:SAML:2.0:assertion"
STATUS_SUCCESS = "urn:oasis:names:tc:SAML:2.0:status:Success"
STATUS_RESPONDER = "urn:oasis:names:tc:SAML:2.0:status:Responder"
EMAIL_FORMAT = "urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress"
EXCLUSIVE_C14N = "http://www.w3.org/2001/10/xml-exc-c14n#"

AttributeInput = Dict[str, Union[str, List[str]]]


def generate_signing_material(common_name: str = "Test IdP") -> Tuple[str, str]:
    """Return (certificate PEM, private key PEM) for a throwaway IdP."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=365))
        .sign(private_key=key, algorithm=hashes.SHA256())
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode("utf-8")
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    return cert_pem, key_pem


def _instant(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def encode_response(xml: bytes) -> str:
    return base64.b64encode(xml).decode("ascii")


def decode_response(encoded: str) -> bytes:
    return base64.b64decode(encoded)


class SAMLResponseBuilder:
    """Builds IdP responses, signed over the Assertion or the whole Response."""

    def __init__(self, cert_pem: str, key_pem: str) -> None:
        self.cert_pem = cert_pem
        self.key_pem = key_pem

    def _sign(self, element: etree._Element) -> etree._Element:
        signer = XMLSigner(
            method=methods.enveloped,
            signature_algorithm="rsa-sha256",
            digest_algorithm="sha256",
            c14n_algorithm=EXCLUSIVE_C14N,
        )
        return signer.sign(element, key=self.key_pem, cert=self.cert_pem)

    def assertion(
        self,
        *,
        assertion_id: Optional[str] = None,
        issuer: Optional[str] = IDP_ENTITY_ID,
        name_id: Optional[str] = "user@example.com",
        name_id_format: str = EMAIL_FORMAT,
        conditions: bool = True,
        not_before: Optional[datetime] = None,
        not_on_or_after: Optional[datetime] = None,
        audience: Optional[str] = SP_ENTITY_ID,
        recipient: Optional[str] = ACS_URL,
        subject_not_on_or_after: Optional[datetime] = None,
        in_response_to: Optional[str] = None,
        attributes: Optional[AttributeInput] = None,
    ) -> etree._Element:
        now = datetime.now(timezone.utc)
        assertion_id = assertion_id or f"_{uuid.uuid4().hex}"
        not_before = not_before or now - timedelta(minutes=1)
        not_on_or_after = not_on_or_after or now + timedelta(minutes=5)
        subject_not_on_or_after = subject_not_on_or_after or now + timedelta(minutes=5)
        if attributes is None:
            attributes = {"email": "user@example.com"}

        parts = [
            f'<saml:Assertion xmlns:saml="{SAML_NS}" ID="{assertion_id}" '
            f'Version="2.0" IssueInstant="{_instant(now)}">'
        ]
        if issuer is not None:
            parts.append(f"<saml:Issuer>{issuer}</saml:Issuer>")

        parts.append("<saml:Subject>")
        if name_id is not None:
            parts.append(f'<saml:NameID Format="{name_id_format}">{name_id}</saml:NameID>')
        confirmation_attrs = f'NotOnOrAfter="{_instant(subject_not_on_or_after)}"'
        if recipient:
            confirmation_attrs += f' Recipient="{recipient}"'
        if in_response_to:
            confirmation_attrs += f' InResponseTo="{in_response_to}"'
        parts.append(
            '<saml:SubjectConfirmation Method="urn:oasis:names:tc:SAML:2.0:cm:bearer">'
            f"<saml:SubjectConfirmationData {confirmation_attrs}/>"
            "</saml:SubjectConfirmation>"
        )
        parts.append("</saml:Subject>")

        if conditions:
            parts.append(
                f'<saml:Conditions NotBefore="{_instant(not_before)}" '
                f'NotOnOrAfter="{_instant(not_on_or_after)}">'
            )
            if audience:
                parts.append(
                    "<saml:AudienceRestriction>"
                    f"<saml:Audience>{audience}</saml:Audience>"
                    "</saml:AudienceRestriction>"
                )
            parts.append("</saml:Conditions>")

        parts.append(
            f'<saml:AuthnStatement AuthnInstant="{_instant(now)}" SessionIndex="_session-1"/>'
        )

        if attributes:
            parts.append("<saml:AttributeStatement>")
            for name, value in attributes.items():
                values = value if isinstance(value, list) else [value]
                parts.append(f'<saml:Attribute Name="{name}">')
                parts.extend(
                    f"<saml:AttributeValue>{item}</saml:AttributeValue>" for item in values
                )
                parts.append("</saml:Attribute>")
            parts.append("</saml:AttributeStatement>")

        parts.append("</saml:Assertion>")
        return etree.fromstring("".join(parts).encode("utf-8"))

    def response_xml(
        self,
        *,
        sign: Optional[str] = "assertion",
        status: str = STATUS_SUCCESS,
        status_message: Optional[str] = None,
        include_assertion: bool = True,
        response_issuer: Optional[str] = IDP_ENTITY_ID,
        response_in_response_to: Optional[str] = None,
        **assertion_kwargs,
    ) -> bytes:
        """
        Serialized samlp:Response.

        ``sign`` is "assertion", "response" or None (unsigned).
        """
        now = datetime.now(timezone.utc)
        in_response_to = (
            f' InResponseTo="{response_in_response_to}"' if response_in_response_to else ""
        )
        status_xml = f'<samlp:StatusCode Value="{status}"/>'
        if status_message:
            status_xml += f"<samlp:StatusMessage>{status_message}</samlp:StatusMessage>"

        response = etree.fromstring(
            (
                f'<samlp:Response xmlns:samlp="{SAMLP_NS}" xmlns:saml="{SAML_NS}" '
                f'ID="_{uuid.uuid4().hex}" Version="2.0" IssueInstant="{_instant(now)}" '
                f'Destination="{ACS_URL}"{in_response_to}>'
                + (f"<saml:Issuer>{response_issuer}</saml:Issuer>" if response_issuer else "")
                + f"<samlp:Status>{status_xml}</samlp:Status>"
                + "</samlp:Response>"
            ).encode("utf-8")
        )

        if include_assertion:
            assertion = self.assertion(**assertion_kwargs)
            if sign == "assertion":
                assertion = self._sign(assertion)
            response.append(assertion)

        if sign == "response":
            response = self._sign(response)

        return etree.tostring(response)

    def build(self, **kwargs) -> str:
        """Base64 SAMLResponse form value."""
        return encode_response(self.response_xml(**kwargs))


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(scope="session")
def signing_material() -> Tuple[str, str]:
    return generate_signing_material()


@pytest.fixture(scope="session")
def other_signing_material() -> Tuple[str, str]:
    return generate_signing_material("Untrusted IdP")


@pytest.fixture
def saml_builder(signing_material) -> SAMLResponseBuilder:
    cert_pem, key_pem = signing_material
    return SAMLResponseBuilder(cert_pem, key_pem)


@pytest.fixture
def idp_config(signing_material):
    from src.types.sso import IdentityProviderConfig, UserRole

    cert_pem, _ = signing_material
    return IdentityProviderConfig(
        provider_id="okta-test",
        provider="okta",
        display_name="Okta (test)",
        idp_entity_id=IDP_ENTITY_ID,
        idp_sso_url=IDP_SSO_URL,
        idp_certificate_pem=cert_pem,
        sp_entity_id=SP_ENTITY_ID,
        acs_url=ACS_URL,
        role_mapping={
            "security-admins": UserRole.ADMIN,
            "risk-managers": UserRole.MANAGER,
            "analysts": UserRole.ANALYST,
        },
    )


@pytest.fixture
def components(idp_config):
    """In-memory pipeline components installed as the app's shared components."""
    from app.dependencies import build_components, set_components
    from src.auth.sso.certificates import CertificateStore
    from src.config import get_settings
    from src.storage.ephemeral_store import InMemoryEphemeralStore
    from src.storage.identity_store import InMemoryIdentityStore

    built = build_components(
        get_settings(),
        certificates=CertificateStore([idp_config], default_provider_id=idp_config.provider_id),
        ephemeral_store=InMemoryEphemeralStore(),
        identity_store=InMemoryIdentityStore(),
    )
    set_components(built)
    yield built
    set_components(None)


@pytest.fixture
def client(components):
    """FastAPI test client wired to the in-memory components."""
    from fastapi.testclient import TestClient
    from server import app

    with TestClient(app, follow_redirects=False) as test_client:
        yield test_client


@pytest.fixture
def mock_sentry():
    """Mock Sentry SDK."""
    from unittest.mock import MagicMock, patch

    with patch("sentry_sdk.capture_exception") as capture_mock, \
         patch("sentry_sdk.get_client") as client_mock:
        mock_client = MagicMock()
        mock_client.is_active.return_value = True
        client_mock.return_value = mock_client
        yield {"capture": capture_mock, "client": client_mock}
