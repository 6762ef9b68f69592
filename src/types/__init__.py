"""
Type definitions for the SSO gateway.
"""

from .sso import (
    AttributeValue,
    AuditAction,
    AuditEvent,
    AuthnRequest,
    ClientContext,
    IdentityProviderConfig,
    LoginResult,
    LoginState,
    NameIDFormat,
    PendingLogin,
    ProvisioningResult,
    ProvisionUserRequest,
    SAMLAssertion,
    SAMLAttributeMapping,
    SessionClaims,
    SessionHandle,
    SSOIdentity,
    UserProfile,
    UserRole,
    ValidateSAMLRequest,
)

__all__ = [
    "AttributeValue",
    "AuditAction",
    "AuditEvent",
    "AuthnRequest",
    "ClientContext",
    "IdentityProviderConfig",
    "LoginResult",
    "LoginState",
    "NameIDFormat",
    "PendingLogin",
    "ProvisioningResult",
    "ProvisionUserRequest",
    "SAMLAssertion",
    "SAMLAttributeMapping",
    "SessionClaims",
    "SessionHandle",
    "SSOIdentity",
    "UserProfile",
    "UserRole",
    "ValidateSAMLRequest",
]
