"""
Models for the SAML 2.0 service-provider login pipeline.

Covers identity provider configuration, validated assertions, mapped
identities, local user profiles, session credentials and audit events.

Attribute values come from the IdP and stay untrusted until AttributeMapper
has normalised them. Session credentials are single-use and short-lived.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

AttributeValue = Union[str, List[str]]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================


class NameIDFormat(str, Enum):
    """NameID formats an IdP may be asked to issue."""

    EMAIL = "email"
    PERSISTENT = "persistent"
    TRANSIENT = "transient"

    @property
    def urn(self) -> str:
        return NAME_ID_FORMAT_URNS[self]


NAME_ID_FORMAT_URNS: Dict[NameIDFormat, str] = {
    NameIDFormat.EMAIL: "urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress",
    NameIDFormat.PERSISTENT: "urn:oasis:names:tc:SAML:2.0:nameid-format:persistent",
    NameIDFormat.TRANSIENT: "urn:oasis:names:tc:SAML:2.0:nameid-format:transient",
}


class UserRole(str, Enum):
    """Application roles, lowest privilege first."""

    VIEWER = "viewer"
    ANALYST = "analyst"
    MANAGER = "manager"
    ADMIN = "admin"

    @property
    def rank(self) -> int:
        return ROLE_RANKS[self]


ROLE_RANKS: Dict[UserRole, int] = {
    UserRole.VIEWER: 0,
    UserRole.ANALYST: 1,
    UserRole.MANAGER: 2,
    UserRole.ADMIN: 3,
}


class AuditAction(str, Enum):
    SSO_PROVISION = "sso_provision"
    SSO_SIGNIN = "sso_signin"


class LoginState(str, Enum):
    """Protocol state of a single login attempt."""

    IDLE = "idle"
    REQUEST_ISSUED = "request_issued"
    RESPONSE_RECEIVED = "response_received"
    VALIDATED = "validated"
    MAPPED = "mapped"
    PROVISIONED = "provisioned"
    SESSION_ISSUED = "session_issued"
    ERROR = "error"


# =============================================================================
# Identity Provider Configuration
# =============================================================================


class SAMLAttributeMapping(BaseModel):
    """
    Names of the SAML attributes carrying each user field.

    A field left as None falls back to the conventional attribute name.
    An explicitly mapped email attribute is the only email source consulted.
    """

    model_config = ConfigDict(frozen=True)

    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    display_name: Optional[str] = None
    groups: Optional[str] = None
    roles: Optional[str] = None


class IdentityProviderConfig(BaseModel):
    """
    Trust material and endpoints for one SAML identity provider.

    Immutable per environment; loaded by the CertificateStore.
    """

    model_config = ConfigDict(frozen=True)

    provider_id: str = Field(..., min_length=1, max_length=128)
    provider: str = Field(
        default="custom-saml",
        description="Vendor label recorded on provisioned profiles",
    )
    display_name: Optional[str] = None
    idp_entity_id: str = Field(..., min_length=1, max_length=2048)
    idp_sso_url: Optional[str] = Field(default=None, pattern=r"^https?://")
    idp_certificate_pem: str = Field(..., min_length=100)
    sp_entity_id: str = Field(..., min_length=1)
    acs_url: str = Field(..., pattern=r"^https?://")
    name_id_format: NameIDFormat = NameIDFormat.EMAIL
    attribute_mapping: SAMLAttributeMapping = Field(default_factory=SAMLAttributeMapping)
    role_mapping: Dict[str, UserRole] = Field(default_factory=dict)
    enabled: bool = True

    @field_validator("idp_certificate_pem")
    @classmethod
    def require_pem_armour(cls, v: str) -> str:
        pem = v.strip()
        armoured = pem.startswith("-----BEGIN CERTIFICATE-----") and pem.endswith(
            "-----END CERTIFICATE-----"
        )
        if not armoured:
            raise ValueError("idp_certificate_pem must be a PEM encoded certificate")
        return pem


# =============================================================================
# Protocol Models
# =============================================================================


class AuthnRequest(BaseModel):
    """Transient sign-in request; never persisted."""

    id: str
    issuer: str
    destination: str
    issue_instant: datetime
    acs_url: str
    name_id_format: NameIDFormat


class PendingLogin(BaseModel):
    """Server-side record of an in-flight login, keyed by auth session."""

    provider_id: str
    relay_state: str
    request_id: str
    issued_at: datetime = Field(default_factory=utc_now)


class SAMLAssertion(BaseModel):
    """Fully validated assertion content."""

    issuer: str
    name_id: str
    name_id_format: Optional[str] = None
    session_index: Optional[str] = None
    attributes: Dict[str, AttributeValue] = Field(default_factory=dict)
    not_before: Optional[datetime] = None
    not_on_or_after: Optional[datetime] = None
    confirmation_not_on_or_after: Optional[datetime] = None
    issue_instant: Optional[datetime] = None
    audiences: List[str] = Field(default_factory=list)
    recipient: Optional[str] = None
    assertion_id: Optional[str] = None
    in_response_to: Optional[str] = None

    def to_public_dict(self) -> Dict[str, Any]:
        """Shape returned by the validation service."""
        result: Dict[str, Any] = {
            "issuer": self.issuer,
            "nameId": self.name_id,
            "attributes": self.attributes,
        }
        if self.session_index:
            result["sessionIndex"] = self.session_index
        if self.not_before:
            result["notBefore"] = self.not_before.isoformat()
        if self.not_on_or_after:
            result["notOnOrAfter"] = self.not_on_or_after.isoformat()
        return result


# =============================================================================
# Identity, Profile and Session Models
# =============================================================================


class SSOIdentity(BaseModel):
    """Typed identity derived from a validated assertion."""

    name_id: str
    email: str
    display_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    groups: List[str] = Field(default_factory=list)
    roles: List[str] = Field(default_factory=list)
    role: UserRole = UserRole.VIEWER
    unmapped_attributes: Dict[str, AttributeValue] = Field(default_factory=dict)
    raw_attributes: Dict[str, AttributeValue] = Field(default_factory=dict)


class UserProfile(BaseModel):
    """Persistent local profile; email is unique and stored lower-cased."""

    user_id: str
    email: str
    display_name: Optional[str] = None
    role: UserRole = UserRole.VIEWER
    sso_provider: Optional[str] = None
    sso_subject: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    last_sign_in_at: Optional[datetime] = None


class ProvisioningResult(BaseModel):
    profile: UserProfile
    created: bool


class SessionHandle(BaseModel):
    """One-time sign-in credential handed back to the browser."""

    user_id: str
    token: str
    session_url: str
    expires_at: datetime


class SessionClaims(BaseModel):
    user_id: str
    email: str
    role: UserRole
    jti: str
    expires_at: datetime


class ClientContext(BaseModel):
    """Network details of the browser that posted the response."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class AuditEvent(BaseModel):
    user_id: str
    action: AuditAction
    sso_provider: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)
    changes: Dict[str, Any] = Field(default_factory=dict)


class LoginResult(BaseModel):
    identity: SSOIdentity
    profile: UserProfile
    session: SessionHandle
    created: bool


# =============================================================================
# API Request Models
# =============================================================================


class ValidateSAMLRequest(BaseModel):
    """Input of the stateless validation service."""

    saml_response: str = Field(..., min_length=1)
    idp_certificate: str = Field(..., min_length=1)
    idp_entity_id: str = Field(..., min_length=1)
    sp_entity_id: str = Field(..., min_length=1)
    acs_url: Optional[str] = None


class ProvisionUserRequest(BaseModel):
    """Input of the service-to-service provisioning endpoint."""

    email: str = Field(..., min_length=3, max_length=320)
    display_name: Optional[str] = Field(default=None, max_length=200)
    role: UserRole
    sso_provider: str = Field(..., min_length=1)
    sso_subject: str = Field(..., min_length=1)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("Invalid email address")
        return v
