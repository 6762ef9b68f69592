"""
Tests for IdP trust material loading and SP metadata.
"""

import json

import pytest
from lxml import etree

from conftest import ACS_URL, SP_ENTITY_ID
from src.auth.sso.certificates import (
    CertificateStore,
    extract_certificate_info,
    load_certificate,
    normalize_certificate_pem,
)
from src.auth.sso.errors import ConfigurationError
from src.auth.sso.metadata import MD_NS, generate_sp_metadata, get_sp_metadata_info
from src.config import Settings, SSOSettings


def _settings(providers, default=None):
    return Settings(
        sso=SSOSettings(
            sso_providers_json=json.dumps(providers),
            sso_default_provider=default,
            sso_sp_entity_id="https://gateway.example.com/metadata",
            sso_acs_url="https://gateway.example.com/acs",
        )
    )


class TestCertificateHelpers:
    def test_normalize_bare_body(self, signing_material):
        cert_pem, _ = signing_material
        body = "".join(line for line in cert_pem.splitlines() if "CERTIFICATE" not in line)

        normalized = normalize_certificate_pem(body)

        assert normalized.startswith("-----BEGIN CERTIFICATE-----\n")
        assert all(len(line) <= 64 for line in normalized.splitlines())
        load_certificate(normalized)

    def test_pem_is_kept(self, signing_material):
        cert_pem, _ = signing_material
        assert normalize_certificate_pem(cert_pem) == cert_pem.strip()

    def test_invalid_certificate(self):
        with pytest.raises(ConfigurationError):
            load_certificate(normalize_certificate_pem("bm90IGEgY2VydA=="))

    def test_certificate_info(self, signing_material):
        info = extract_certificate_info(signing_material[0])

        assert info["subject"] == "CN=Test IdP"
        assert info["is_expired"] is False
        assert 360 <= info["days_until_expiry"] <= 365
        assert len(info["fingerprint_sha256"].split(":")) == 32

    def test_certificate_info_error(self):
        assert "error" in extract_certificate_info("garbage")


class TestCertificateStore:
    def test_lookup(self, idp_config):
        store = CertificateStore([idp_config], default_provider_id="okta-test")

        assert store.get("okta-test") is idp_config
        assert store.default() is idp_config
        assert store.get("missing") is None
        assert store.get(None) is None

    def test_disabled_provider_is_hidden(self, idp_config):
        disabled = idp_config.model_copy(update={"enabled": False})
        store = CertificateStore([disabled])

        assert store.get("okta-test") is None
        assert store.list_providers() == []
        with pytest.raises(ConfigurationError):
            store.require("okta-test")

    def test_duplicate_provider_ids(self, idp_config):
        with pytest.raises(ConfigurationError):
            CertificateStore([idp_config, idp_config])

    def test_unknown_default(self, idp_config):
        with pytest.raises(ConfigurationError):
            CertificateStore([idp_config], default_provider_id="other")

    def test_from_settings_fills_service_defaults(self, signing_material):
        cert_pem, _ = signing_material
        store = CertificateStore.from_settings(
            _settings(
                [
                    {
                        "provider_id": "azure",
                        "provider": "azure-ad",
                        "idp_entity_id": "https://sts.windows.net/tenant/",
                        "idp_sso_url": "https://login.microsoftonline.com/tenant/saml2",
                        "idp_certificate_pem": cert_pem,
                        "role_mapping": {"admins": "admin"},
                    }
                ],
                default="azure",
            )
        )

        config = store.default()
        assert config.provider_id == "azure"
        assert config.sp_entity_id == "https://gateway.example.com/metadata"
        assert config.acs_url == "https://gateway.example.com/acs"
        assert config.role_mapping["admins"].value == "admin"

    def test_from_settings_without_providers(self):
        store = CertificateStore.from_settings(Settings(sso=SSOSettings()))
        assert store.list_providers() == []

    def test_from_settings_rejects_invalid_entry(self):
        with pytest.raises(ConfigurationError) as exc_info:
            CertificateStore.from_settings(_settings([{"provider_id": "broken"}]))
        assert exc_info.value.details["provider_id"] == "broken"

    def test_from_settings_rejects_invalid_json(self):
        settings = Settings(sso=SSOSettings(sso_providers_json="[not json"))
        with pytest.raises(ConfigurationError):
            CertificateStore.from_settings(settings)


class TestMetadata:
    def test_sp_metadata(self, idp_config):
        root = etree.fromstring(generate_sp_metadata(idp_config))

        assert root.get("entityID") == SP_ENTITY_ID
        descriptor = root.find(f"{{{MD_NS}}}SPSSODescriptor")
        assert descriptor.get("WantAssertionsSigned") == "true"
        acs = descriptor.find(f"{{{MD_NS}}}AssertionConsumerService")
        assert acs.get("Location") == ACS_URL
        assert acs.get("isDefault") == "true"

    def test_metadata_info(self, idp_config):
        info = get_sp_metadata_info(idp_config)
        assert info["entity_id"] == SP_ENTITY_ID
        assert info["acs_url"] == ACS_URL
