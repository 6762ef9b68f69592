"""
Service Provider metadata.

IdP administrators import this document to register the gateway: it names
the SP entity ID, the NameID format requested and the HTTP-POST assertion
consumer service.
"""

from typing import Any, Dict

from lxml import etree

from src.types.sso import IdentityProviderConfig

from .request_builder import HTTP_POST_BINDING, SAMLP_NS

MD_NS = "urn:oasis:names:tc:SAML:2.0:metadata"


def generate_sp_metadata(
    config: IdentityProviderConfig, want_assertions_signed: bool = True
) -> bytes:
    """
    Generate Service Provider (SP) metadata XML.

    Returns:
        SP metadata as UTF-8 encoded XML
    """
    root = etree.Element(
        f"{{{MD_NS}}}EntityDescriptor",
        nsmap={"md": MD_NS},
        entityID=config.sp_entity_id,
    )
    descriptor = etree.SubElement(
        root,
        f"{{{MD_NS}}}SPSSODescriptor",
        AuthnRequestsSigned="false",
        WantAssertionsSigned="true" if want_assertions_signed else "false",
        protocolSupportEnumeration=SAMLP_NS,
    )
    etree.SubElement(descriptor, f"{{{MD_NS}}}NameIDFormat").text = (
        config.name_id_format.urn
    )
    etree.SubElement(
        descriptor,
        f"{{{MD_NS}}}AssertionConsumerService",
        Binding=HTTP_POST_BINDING,
        Location=config.acs_url,
        index="0",
        isDefault="true",
    )
    return etree.tostring(root, xml_declaration=True, encoding="UTF-8", pretty_print=True)


def get_sp_metadata_info(config: IdentityProviderConfig) -> Dict[str, Any]:
    """SP registration details for display next to the metadata document."""
    return {
        "entity_id": config.sp_entity_id,
        "acs_url": config.acs_url,
        "name_id_format": config.name_id_format.urn,
        "binding": HTTP_POST_BINDING,
        "want_assertions_signed": True,
    }
