"""
Mapping of validated SAML attributes to a typed SSOIdentity.

Attribute values come from the IdP and are untrusted: the email is
normalized and checked, roles are only granted through the configured role
mapping, and anything not consumed by the mapping is kept aside in
``unmapped_attributes``.
"""

import logging
import re
from typing import Dict, Iterable, List, Optional

from src.types.sso import (
    AttributeValue,
    IdentityProviderConfig,
    NameIDFormat,
    SAMLAssertion,
    SSOIdentity,
    UserRole,
)

from .errors import MappingError

logger = logging.getLogger(__name__)

DEFAULT_ATTRIBUTE_NAMES: Dict[str, str] = {
    "email": "email",
    "first_name": "firstName",
    "last_name": "lastName",
    "display_name": "displayName",
    "groups": "groups",
    "roles": "roles",
}

# Tried in order when no email attribute is explicitly mapped
EMAIL_CLAIM_FALLBACKS: List[str] = [
    "email",
    "mail",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/emailaddress",
    "urn:oid:0.9.2342.19200300.100.1.3",
]

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def first_value(attributes: Dict[str, AttributeValue], name: Optional[str]) -> Optional[str]:
    if not name:
        return None
    value = attributes.get(name)
    if isinstance(value, list):
        return value[0] if value else None
    return value


def all_values(attributes: Dict[str, AttributeValue], name: Optional[str]) -> List[str]:
    if not name:
        return []
    value = attributes.get(name)
    if value is None:
        return []
    if isinstance(value, list):
        return list(value)
    return [value]


def resolve_role(values: Iterable[str], role_mapping: Dict[str, UserRole]) -> UserRole:
    """Highest-privilege role granted by any mapped group or role value."""
    role = UserRole.VIEWER
    for value in values:
        mapped = role_mapping.get(value)
        if mapped is not None and mapped.rank > role.rank:
            role = mapped
    return role


class AttributeMapper:
    """Converts a validated assertion into an SSOIdentity."""

    def map(self, assertion: SAMLAssertion, config: IdentityProviderConfig) -> SSOIdentity:
        """
        Map attributes according to ``config.attribute_mapping``.

        Raises:
            MappingError: If no valid email can be derived
        """
        attributes = assertion.attributes
        mapping = config.attribute_mapping
        names = {
            field: getattr(mapping, field) or default
            for field, default in DEFAULT_ATTRIBUTE_NAMES.items()
        }

        email, email_source = self._resolve_email(assertion, config)

        first_name = first_value(attributes, names["first_name"])
        last_name = first_value(attributes, names["last_name"])
        display_name = first_value(attributes, names["display_name"])
        if not display_name and (first_name or last_name):
            display_name = " ".join(part for part in (first_name, last_name) if part)

        groups = all_values(attributes, names["groups"])
        roles = all_values(attributes, names["roles"])
        role = resolve_role([*groups, *roles], config.role_mapping)

        consumed = {name for name in names.values()} | {email_source}
        unmapped = {
            name: value for name, value in attributes.items() if name not in consumed
        }

        return SSOIdentity(
            name_id=assertion.name_id,
            email=email,
            display_name=display_name,
            first_name=first_name,
            last_name=last_name,
            groups=groups,
            roles=roles,
            role=role,
            unmapped_attributes=unmapped,
            raw_attributes=dict(attributes),
        )

    @staticmethod
    def _resolve_email(assertion: SAMLAssertion, config: IdentityProviderConfig):
        attributes = assertion.attributes
        explicit = config.attribute_mapping.email

        email = None
        source = None
        if explicit:
            email, source = first_value(attributes, explicit), explicit
        else:
            for claim in EMAIL_CLAIM_FALLBACKS:
                email = first_value(attributes, claim)
                if email:
                    source = claim
                    break
            if not email and config.name_id_format == NameIDFormat.EMAIL:
                email, source = assertion.name_id, "NameID"

        if not email:
            logger.error(
                "SSO assertion has no usable email",
                extra={
                    "provider_id": config.provider_id,
                    "available_attributes": sorted(attributes),
                },
            )
            raise MappingError(
                MappingError.MISSING_EMAIL,
                "Email attribute is required but not present in SAML response",
                details={"available_attributes": sorted(attributes)},
            )

        email = email.strip().lower()
        if not _EMAIL_RE.match(email):
            logger.error(
                "SSO assertion email is not a valid address",
                extra={"provider_id": config.provider_id, "email_source": source},
            )
            raise MappingError(
                MappingError.INVALID_EMAIL,
                "Email attribute is not a valid email address",
            )
        return email, source
