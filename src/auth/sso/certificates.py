"""
Identity provider trust material.

The CertificateStore holds one immutable IdentityProviderConfig per
configured IdP. Configurations are loaded once at startup from a JSON file
or an inline JSON setting; every certificate is parsed with ``cryptography``
so a broken PEM fails at load time instead of during a login.
"""

import json
import logging
import re
import textwrap
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from pydantic import ValidationError

from src.config import Settings
from src.types.sso import IdentityProviderConfig

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

PEM_HEADER = "-----BEGIN CERTIFICATE-----"
PEM_FOOTER = "-----END CERTIFICATE-----"

# Warn operators when an IdP certificate is about to roll over
EXPIRY_WARNING_DAYS = 30


def normalize_certificate_pem(cert: str) -> str:
    """
    Return ``cert`` as a PEM block.

    IdP admin consoles often hand out the bare base64 body; it is wrapped in
    the standard header and footer with 64-character lines.
    """
    cert = (cert or "").strip()
    if cert.startswith(PEM_HEADER):
        return cert
    body = re.sub(r"\s+", "", cert)
    return "\n".join([PEM_HEADER, *textwrap.wrap(body, 64), PEM_FOOTER])


def load_certificate(cert_pem: str) -> x509.Certificate:
    try:
        return x509.load_pem_x509_certificate(cert_pem.encode())
    except ValueError as e:
        raise ConfigurationError(
            "Invalid IdP certificate",
            details={"reason": f"Failed to parse certificate: {e}"},
        ) from e


def extract_certificate_info(cert_pem: str) -> Dict[str, Any]:
    """
    Extract information from an X.509 certificate.

    Args:
        cert_pem: Certificate in PEM format

    Returns:
        Dictionary with certificate information, or ``{"error": ...}``
    """
    try:
        cert = x509.load_pem_x509_certificate(cert_pem.encode())
    except ValueError as e:
        return {"error": f"Failed to parse certificate: {e}"}

    fingerprint_hex = cert.fingerprint(hashes.SHA256()).hex().upper()
    fingerprint_formatted = ":".join(
        fingerprint_hex[i : i + 2] for i in range(0, len(fingerprint_hex), 2)
    )
    now = datetime.now(timezone.utc)

    return {
        "subject": cert.subject.rfc4514_string(),
        "issuer": cert.issuer.rfc4514_string(),
        "serial_number": str(cert.serial_number),
        "not_valid_before": cert.not_valid_before_utc.isoformat(),
        "not_valid_after": cert.not_valid_after_utc.isoformat(),
        "fingerprint_sha256": fingerprint_formatted,
        "is_expired": now > cert.not_valid_after_utc,
        "days_until_expiry": (cert.not_valid_after_utc - now).days,
    }


class CertificateStore:
    """
    Read-only registry of identity provider configurations.
    """

    def __init__(
        self,
        providers: Iterable[IdentityProviderConfig] = (),
        default_provider_id: Optional[str] = None,
    ) -> None:
        self._providers: Dict[str, IdentityProviderConfig] = {}
        for config in providers:
            if config.provider_id in self._providers:
                raise ConfigurationError(
                    f"Duplicate SSO provider id: {config.provider_id}"
                )
            cert = load_certificate(config.idp_certificate_pem)
            self._warn_if_expiring(config.provider_id, cert)
            self._providers[config.provider_id] = config

        if default_provider_id and default_provider_id not in self._providers:
            raise ConfigurationError(
                f"Default SSO provider is not configured: {default_provider_id}"
            )
        self._default_provider_id = default_provider_id

    @staticmethod
    def _warn_if_expiring(provider_id: str, cert: x509.Certificate) -> None:
        remaining = cert.not_valid_after_utc - datetime.now(timezone.utc)
        if remaining.total_seconds() <= 0:
            logger.error(
                "IdP certificate has expired",
                extra={"provider_id": provider_id},
            )
        elif remaining.days < EXPIRY_WARNING_DAYS:
            logger.warning(
                "IdP certificate expires soon",
                extra={"provider_id": provider_id, "days_until_expiry": remaining.days},
            )

    def get(self, provider_id: Optional[str]) -> Optional[IdentityProviderConfig]:
        """Return the enabled configuration for ``provider_id``, if any."""
        if not provider_id:
            return None
        config = self._providers.get(provider_id)
        if config is None or not config.enabled:
            return None
        return config

    def require(self, provider_id: Optional[str]) -> IdentityProviderConfig:
        config = self.get(provider_id)
        if config is None:
            raise ConfigurationError(details={"provider_id": provider_id})
        return config

    def default(self) -> Optional[IdentityProviderConfig]:
        return self.get(self._default_provider_id)

    def list_providers(self) -> List[IdentityProviderConfig]:
        return [config for config in self._providers.values() if config.enabled]

    def certificate_info(self, provider_id: str) -> Dict[str, Any]:
        return extract_certificate_info(self.require(provider_id).idp_certificate_pem)

    @classmethod
    def from_settings(cls, settings: Settings) -> "CertificateStore":
        """
        Build the store from SSO_PROVIDERS_FILE or SSO_PROVIDERS_JSON.

        Entries may omit ``sp_entity_id`` and ``acs_url``; the service-wide
        values from settings are used for them.
        """
        sso = settings.sso
        raw_entries: List[Dict[str, Any]] = []

        try:
            if sso.sso_providers_file:
                raw_entries.extend(json.loads(Path(sso.sso_providers_file).read_text()))
            if sso.sso_providers_json:
                raw_entries.extend(json.loads(sso.sso_providers_json))
        except (OSError, json.JSONDecodeError, TypeError) as e:
            raise ConfigurationError(
                "Unable to load SSO provider configuration",
                details={"reason": str(e)},
            ) from e

        providers = []
        for entry in raw_entries:
            entry = dict(entry)
            entry.setdefault("sp_entity_id", sso.sso_sp_entity_id)
            entry.setdefault("acs_url", sso.sso_acs_url)
            if "idp_certificate_pem" in entry:
                entry["idp_certificate_pem"] = normalize_certificate_pem(
                    entry["idp_certificate_pem"]
                )
            try:
                providers.append(IdentityProviderConfig.model_validate(entry))
            except ValidationError as e:
                raise ConfigurationError(
                    "Invalid SSO provider configuration",
                    details={"provider_id": entry.get("provider_id"), "reason": str(e)},
                ) from e

        logger.info(
            f"Loaded {len(providers)} SSO provider configuration(s)",
            extra={"providers": [p.provider_id for p in providers]},
        )
        return cls(providers, default_provider_id=sso.sso_default_provider)
