"""
Error taxonomy for the SAML login pipeline.

Every failure raised by the pipeline is an ``SSOError`` carrying an HTTP
status, a machine-readable code and a retry classification, so the routes
and the exception handlers can render it without inspecting the type.

Exception Hierarchy:
    SSOError (base)
    ├── ConfigurationError (404)
    ├── CSRFError (400)
    ├── ProtocolError (400)
    ├── TrustError (401)
    ├── TimingError (400)
    ├── AudienceError (400)
    ├── RecipientError (400)
    ├── MappingError (422)
    ├── ProvisioningConflict (409)
    ├── StoreError (503)
    │   └── DuplicateKeyError (409)
    ├── SessionError (503)
    └── FlowTimeoutError (504)
"""

from enum import Enum
from typing import Any, Dict, Optional


class SSOErrorCode(str, Enum):
    """Machine-readable error codes returned by the SSO endpoints."""

    SSO_NOT_CONFIGURED = "SSO_NOT_CONFIGURED"
    SSO_CSRF_DETECTED = "SSO_CSRF_DETECTED"
    SAML_PROTOCOL_ERROR = "SAML_PROTOCOL_ERROR"
    SAML_TRUST_ERROR = "SAML_TRUST_ERROR"
    SAML_TIMING_ERROR = "SAML_TIMING_ERROR"
    SAML_AUDIENCE_ERROR = "SAML_AUDIENCE_ERROR"
    SAML_RECIPIENT_ERROR = "SAML_RECIPIENT_ERROR"
    SSO_MAPPING_ERROR = "SSO_MAPPING_ERROR"
    SSO_PROVISIONING_CONFLICT = "SSO_PROVISIONING_CONFLICT"
    SSO_STORE_ERROR = "SSO_STORE_ERROR"
    SSO_DUPLICATE_KEY = "SSO_DUPLICATE_KEY"
    SSO_SESSION_ERROR = "SSO_SESSION_ERROR"
    SSO_TIMEOUT = "SSO_TIMEOUT"


class SSOError(Exception):
    """
    Base exception for all SSO pipeline errors.

    Attributes:
        message: Human-readable error message (safe for API responses).
        error_code: Machine-readable error code.
        status_code: HTTP status code to return.
        details: Additional context (must not contain secrets).
        retryable: Whether the caller may retry the failed step once.
    """

    status_code: int = 500
    default_error_code: SSOErrorCode = SSOErrorCode.SSO_STORE_ERROR
    default_message: str = "SSO request failed"
    retryable: bool = False

    def __init__(
        self,
        message: Optional[str] = None,
        error_code: Optional[SSOErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message or self.default_message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(self.message)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code.value!r}, "
            f"status_code={self.status_code})"
        )


class ConfigurationError(SSOError):
    """No usable IdP configuration for the request."""

    status_code = 404
    default_error_code = SSOErrorCode.SSO_NOT_CONFIGURED
    default_message = "SSO is not configured for this provider"


class CSRFError(SSOError):
    """RelayState presented on callback does not match the stored value."""

    status_code = 400
    default_error_code = SSOErrorCode.SSO_CSRF_DETECTED
    default_message = "Invalid state parameter - possible CSRF attack"


class ProtocolError(SSOError):
    """
    Malformed or unacceptable SAML message.

    ``reason`` is one of the short identifiers below and is what tests and
    callers match on; ``message`` may carry the IdP's own status text.
    """

    status_code = 400
    default_error_code = SSOErrorCode.SAML_PROTOCOL_ERROR
    default_message = "Invalid SAML response"

    MALFORMED_XML = "malformed-xml"
    NOT_A_RESPONSE = "not-a-response"
    IDP_REJECTED = "idp-rejected"
    MISSING_ASSERTION = "missing-assertion"
    MULTIPLE_ASSERTIONS = "multiple-assertions"
    MISSING_NAMEID = "missing-nameid"
    INVALID_TIMESTAMP = "invalid-timestamp"
    ASSERTION_REPLAYED = "assertion-replayed"

    def __init__(
        self,
        reason: str,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.reason = reason
        super().__init__(
            message=message or reason,
            details={"reason": reason, **(details or {})},
        )


class TrustError(SSOError):
    """The response cannot be attributed to the configured IdP."""

    status_code = 401
    default_error_code = SSOErrorCode.SAML_TRUST_ERROR
    default_message = "SAML response is not trusted"

    ISSUER_MISMATCH = "issuer-mismatch"
    SIGNATURE_MISSING = "signature-missing"
    SIGNATURE_INVALID = "signature-invalid"
    SIGNATURE_WRAPPING = "signature-wrapping"

    def __init__(
        self,
        reason: str,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.reason = reason
        super().__init__(
            message=message or reason,
            details={"reason": reason, **(details or {})},
        )


class TimingError(SSOError):
    """Assertion is outside its validity window."""

    status_code = 400
    default_error_code = SSOErrorCode.SAML_TIMING_ERROR
    default_message = "SAML assertion has expired or is not yet valid"


class AudienceError(SSOError):
    """Assertion audience restriction excludes this service provider."""

    status_code = 400
    default_error_code = SSOErrorCode.SAML_AUDIENCE_ERROR
    default_message = "SAML assertion audience does not match this service provider"


class RecipientError(SSOError):
    """Bearer confirmation is bound to another recipient or request."""

    status_code = 400
    default_error_code = SSOErrorCode.SAML_RECIPIENT_ERROR
    default_message = "SAML assertion recipient does not match"


class MappingError(SSOError):
    """Validated attributes cannot be mapped to a local identity."""

    status_code = 422
    default_error_code = SSOErrorCode.SSO_MAPPING_ERROR
    default_message = "Unable to map SSO attributes to a user"

    MISSING_EMAIL = "missing-email"
    INVALID_EMAIL = "invalid-email"

    def __init__(
        self,
        reason: str,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.reason = reason
        super().__init__(
            message=message or reason,
            details={"reason": reason, **(details or {})},
        )


class ProvisioningConflict(SSOError):
    """A profile for the email already exists, or a race could not be reconciled."""

    status_code = 409
    default_error_code = SSOErrorCode.SSO_PROVISIONING_CONFLICT
    default_message = "User already exists"


class StoreError(SSOError):
    """Identity store or ephemeral store failure."""

    status_code = 503
    default_error_code = SSOErrorCode.SSO_STORE_ERROR
    default_message = "Identity store is unavailable"
    retryable = True


class DuplicateKeyError(StoreError):
    """Unique constraint violation reported by a store."""

    status_code = 409
    default_error_code = SSOErrorCode.SSO_DUPLICATE_KEY
    default_message = "Record already exists"
    retryable = False


class SessionError(SSOError):
    """Session credential could not be issued or redeemed."""

    status_code = 503
    default_error_code = SSOErrorCode.SSO_SESSION_ERROR
    default_message = "Unable to establish session"
    retryable = True


class FlowTimeoutError(SSOError):
    """A login step exceeded its wall-clock budget."""

    status_code = 504
    default_error_code = SSOErrorCode.SSO_TIMEOUT
    default_message = "SSO login timed out"
