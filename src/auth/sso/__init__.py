"""
SAML 2.0 service-provider login pipeline.

Modules:
- certificates: identity provider registry and trust material
- request_builder: AuthnRequest construction (HTTP-Redirect binding)
- response_validator: ordered validation of posted SAMLResponses
- attribute_mapper: assertion attributes to SSOIdentity
- provisioning: just-in-time user creation with rollback
- sessions: single-use sign-in credentials
- audit: change log of sign-ins and provisioning
- flow: SAMLLoginFlow tying the steps together
- errors: SSOError taxonomy

Import from the submodules directly; the storage layer depends on
``errors`` and this package does not import its submodules eagerly.
"""
