"""
SAML Response validation.

Takes the base64 ``SAMLResponse`` posted by the browser and either returns a
fully validated SAMLAssertion or raises the first error encountered. The
checks run in a fixed order and stop at the first failure:

    1. RelayState matches the stored value (CSRF)
    2. Base64 decode and hardened XML parse; root is samlp:Response
    3. Status is Success; exactly one Assertion is present
    4. Issuer equals the configured IdP entity ID
    5. Conditions NotBefore / NotOnOrAfter window
    6. Audience restriction includes the SP entity ID
    7. Subject NameID is present
    8. Bearer SubjectConfirmationData recipient, expiry and InResponseTo
    9. XML signature over the Response or the Assertion verifies against
       the configured certificate
   10. Attribute extraction

Validation is synchronous and CPU-bound; callers on the event loop run it in
a worker thread.
"""

import base64
import binascii
import hmac
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from defusedxml import DefusedXmlException
from defusedxml import ElementTree as DefusedET
from lxml import etree
from signxml import XMLVerifier
from signxml.exceptions import InvalidInput, InvalidSignature

from src.types.sso import AttributeValue, IdentityProviderConfig, SAMLAssertion, utc_now

from .errors import (
    AudienceError,
    CSRFError,
    ProtocolError,
    RecipientError,
    TimingError,
    TrustError,
)

logger = logging.getLogger(__name__)

SAML_NS = "urn:oasis:names:tc:SAML:2.0:assertion"
SAMLP_NS = "urn:oasis:names:tc:SAML:2.0:protocol"
DS_NS = "http://www.w3.org/2000/09/xmldsig#"

STATUS_SUCCESS = "urn:oasis:names:tc:SAML:2.0:status:Success"
BEARER_METHOD = "urn:oasis:names:tc:SAML:2.0:cm:bearer"

_FRACTION_RE = re.compile(r"\.(\d+)")


def _saml(tag: str) -> str:
    return f"{{{SAML_NS}}}{tag}"


def _samlp(tag: str) -> str:
    return f"{{{SAMLP_NS}}}{tag}"


def _ds(tag: str) -> str:
    return f"{{{DS_NS}}}{tag}"


def _text(element: Optional[etree._Element]) -> Optional[str]:
    if element is None:
        return None
    value = "".join(element.itertext()).strip()
    return value or None


def parse_instant(value: str) -> datetime:
    """
    Parse an xs:dateTime as used by SAML into an aware UTC datetime.

    Fractions beyond microseconds are truncated; a missing offset means UTC.

    Raises:
        ProtocolError: If the value is not a valid timestamp
    """
    raw = value.strip()
    if raw[-1:] in ("Z", "z"):
        raw = raw[:-1] + "+00:00"
    raw = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), raw, count=1)
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as e:
        raise ProtocolError(
            ProtocolError.INVALID_TIMESTAMP,
            f"Invalid SAML timestamp: {value[:64]}",
        ) from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _hardened_parser() -> etree.XMLParser:
    return etree.XMLParser(
        resolve_entities=False,
        no_network=True,
        load_dtd=False,
        huge_tree=False,
        remove_comments=True,
        remove_pis=True,
    )


class ResponseValidator:
    """
    Validates IdP responses against one IdentityProviderConfig.

    Args:
        clock_skew_seconds: Tolerance applied to every time comparison
        clock: Returns the current aware UTC time
    """

    def __init__(
        self,
        clock_skew_seconds: int = 0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.clock_skew = timedelta(seconds=clock_skew_seconds)
        self._clock = clock

    def validate(
        self,
        raw_response: str,
        relay_state: Optional[str],
        stored_relay_state: Optional[str],
        config: IdentityProviderConfig,
        expected_request_id: Optional[str] = None,
    ) -> SAMLAssertion:
        """
        Validate a posted SAMLResponse.

        Args:
            raw_response: Base64-encoded SAMLResponse form value
            relay_state: RelayState returned by the IdP, if any
            stored_relay_state: RelayState issued with the AuthnRequest
            config: Trust material for the expected IdP
            expected_request_id: AuthnRequest ID the response must answer

        Returns:
            The validated assertion

        Raises:
            CSRFError, ProtocolError, TrustError, TimingError,
            AudienceError, RecipientError
        """
        self._check_relay_state(relay_state, stored_relay_state)

        xml_bytes = self._decode(raw_response)
        root = self._parse(xml_bytes)

        self._check_status(root)
        assertion = self._single_assertion(root)

        issuer = self._check_issuer(root, assertion, config)
        now = self._clock()
        not_before, not_on_or_after = self._check_conditions(assertion, now)
        audiences = self._check_audience(assertion, config)
        name_id_element = self._name_id(assertion)
        recipient, in_response_to, confirmation_expiry = self._check_subject_confirmation(
            root, assertion, config, now, expected_request_id
        )

        self._verify_signature(xml_bytes, root, assertion, config)

        authn_statement = assertion.find(_saml("AuthnStatement"))
        session_index = (
            authn_statement.get("SessionIndex") if authn_statement is not None else None
        )
        issued = assertion.get("IssueInstant")

        result = SAMLAssertion(
            issuer=issuer,
            name_id=_text(name_id_element),
            name_id_format=name_id_element.get("Format"),
            session_index=session_index,
            attributes=self._extract_attributes(assertion),
            not_before=not_before,
            not_on_or_after=not_on_or_after,
            confirmation_not_on_or_after=confirmation_expiry,
            issue_instant=parse_instant(issued) if issued else None,
            audiences=audiences,
            recipient=recipient,
            assertion_id=assertion.get("ID"),
            in_response_to=in_response_to,
        )
        logger.debug(
            "SAML response validated",
            extra={"issuer": issuer, "assertion_id": result.assertion_id},
        )
        return result

    # ------------------------------------------------------------------
    # 1. RelayState
    # ------------------------------------------------------------------

    @staticmethod
    def _check_relay_state(
        relay_state: Optional[str], stored_relay_state: Optional[str]
    ) -> None:
        if not relay_state:
            return
        if not stored_relay_state or not hmac.compare_digest(
            relay_state.encode(), stored_relay_state.encode()
        ):
            logger.warning("RelayState mismatch on SAML callback")
            raise CSRFError("RelayState mismatch - possible CSRF attack")

    # ------------------------------------------------------------------
    # 2. Decode and parse
    # ------------------------------------------------------------------

    @staticmethod
    def _decode(raw_response: str) -> bytes:
        if not raw_response:
            raise ProtocolError(ProtocolError.MALFORMED_XML, "Empty SAMLResponse")
        compact = "".join(raw_response.split())
        try:
            return base64.b64decode(compact, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ProtocolError(
                ProtocolError.MALFORMED_XML, "SAMLResponse is not valid base64"
            ) from e

    @staticmethod
    def _parse(xml_bytes: bytes) -> etree._Element:
        # defusedxml rejects DTDs, entity declarations and external references
        try:
            DefusedET.fromstring(xml_bytes, forbid_dtd=True)
        except (DefusedXmlException, DefusedET.ParseError) as e:
            raise ProtocolError(
                ProtocolError.MALFORMED_XML, f"XML parsing error: {type(e).__name__}"
            ) from e

        try:
            root = etree.fromstring(xml_bytes, parser=_hardened_parser())
        except etree.XMLSyntaxError as e:
            raise ProtocolError(ProtocolError.MALFORMED_XML, "XML parsing error") from e

        if root.tag != _samlp("Response"):
            raise ProtocolError(
                ProtocolError.NOT_A_RESPONSE, "SAML Response element not found"
            )
        return root

    # ------------------------------------------------------------------
    # 3. Status and assertion count
    # ------------------------------------------------------------------

    @staticmethod
    def _check_status(root: etree._Element) -> None:
        status_code = root.find(f"{_samlp('Status')}/{_samlp('StatusCode')}")
        if status_code is None:
            raise ProtocolError(
                ProtocolError.NOT_A_RESPONSE, "StatusCode not found in SAML Response"
            )

        value = status_code.get("Value")
        if value == STATUS_SUCCESS:
            return

        message = _text(root.find(f"{_samlp('Status')}/{_samlp('StatusMessage')}"))
        if not message:
            codes = [value or "unknown"]
            codes.extend(
                nested.get("Value", "")
                for nested in status_code.iter(_samlp("StatusCode"))
                if nested is not status_code
            )
            message = " / ".join(code for code in codes if code)
        raise ProtocolError(
            ProtocolError.IDP_REJECTED,
            f"SAML authentication failed: {message}",
            details={"status_code": value},
        )

    @staticmethod
    def _single_assertion(root: etree._Element) -> etree._Element:
        assertions = root.findall(f".//{_saml('Assertion')}")
        if len(assertions) > 1:
            raise ProtocolError(
                ProtocolError.MULTIPLE_ASSERTIONS,
                "SAML Response contains more than one Assertion",
            )
        if not assertions:
            if root.find(f".//{_saml('EncryptedAssertion')}") is not None:
                raise ProtocolError(
                    ProtocolError.MISSING_ASSERTION,
                    "Encrypted assertions are not supported",
                )
            raise ProtocolError(
                ProtocolError.MISSING_ASSERTION, "Assertion not found in SAML Response"
            )

        assertion = assertions[0]
        if assertion.getparent() is not root:
            raise ProtocolError(
                ProtocolError.MISSING_ASSERTION,
                "Assertion must be a direct child of the Response",
            )
        return assertion

    # ------------------------------------------------------------------
    # 4. Issuer
    # ------------------------------------------------------------------

    @staticmethod
    def _check_issuer(
        root: etree._Element,
        assertion: etree._Element,
        config: IdentityProviderConfig,
    ) -> str:
        response_issuer = _text(root.find(_saml("Issuer")))
        assertion_issuer = _text(assertion.find(_saml("Issuer")))
        issuer = response_issuer or assertion_issuer

        if issuer != config.idp_entity_id:
            raise TrustError(
                TrustError.ISSUER_MISMATCH,
                f"Issuer mismatch: expected {config.idp_entity_id}, got {issuer}",
            )
        if assertion_issuer and assertion_issuer != issuer:
            raise TrustError(
                TrustError.ISSUER_MISMATCH,
                "Assertion issuer does not match Response issuer",
            )
        return issuer

    # ------------------------------------------------------------------
    # 5. Conditions
    # ------------------------------------------------------------------

    def _check_conditions(self, assertion: etree._Element, now: datetime):
        conditions = assertion.find(_saml("Conditions"))
        if conditions is None:
            return None, None

        not_before = not_on_or_after = None
        if conditions.get("NotBefore"):
            not_before = parse_instant(conditions.get("NotBefore"))
            if now + self.clock_skew < not_before:
                raise TimingError("SAML Assertion is not yet valid (NotBefore)")
        if conditions.get("NotOnOrAfter"):
            not_on_or_after = parse_instant(conditions.get("NotOnOrAfter"))
            if now - self.clock_skew >= not_on_or_after:
                raise TimingError("SAML Assertion has expired (NotOnOrAfter)")
        return not_before, not_on_or_after

    # ------------------------------------------------------------------
    # 6. Audience
    # ------------------------------------------------------------------

    @staticmethod
    def _check_audience(
        assertion: etree._Element, config: IdentityProviderConfig
    ) -> List[str]:
        audiences = [
            _text(audience)
            for audience in assertion.iterfind(
                f"{_saml('Conditions')}/{_saml('AudienceRestriction')}/{_saml('Audience')}"
            )
        ]
        audiences = [audience for audience in audiences if audience]
        if audiences and config.sp_entity_id not in audiences:
            raise AudienceError(
                f"Audience restriction failed: expected {config.sp_entity_id}"
            )
        return audiences

    # ------------------------------------------------------------------
    # 7. NameID
    # ------------------------------------------------------------------

    @staticmethod
    def _name_id(assertion: etree._Element) -> etree._Element:
        name_id = assertion.find(f"{_saml('Subject')}/{_saml('NameID')}")
        if name_id is None or not _text(name_id):
            raise ProtocolError(ProtocolError.MISSING_NAMEID, "NameID not found in Subject")
        return name_id

    # ------------------------------------------------------------------
    # 8. SubjectConfirmation
    # ------------------------------------------------------------------

    def _check_subject_confirmation(
        self,
        root: etree._Element,
        assertion: etree._Element,
        config: IdentityProviderConfig,
        now: datetime,
        expected_request_id: Optional[str],
    ):
        response_in_response_to = root.get("InResponseTo")
        if (
            expected_request_id
            and response_in_response_to
            and response_in_response_to != expected_request_id
        ):
            raise RecipientError("Response InResponseTo does not match the AuthnRequest")

        recipient = None
        in_response_to = response_in_response_to
        latest_expiry: Optional[datetime] = None
        for confirmation in assertion.iterfind(
            f"{_saml('Subject')}/{_saml('SubjectConfirmation')}"
        ):
            method = confirmation.get("Method")
            if method != BEARER_METHOD:
                logger.warning(
                    "Unexpected SubjectConfirmation method",
                    extra={"method": method},
                )

            data = confirmation.find(_saml("SubjectConfirmationData"))
            if data is None:
                continue

            data_recipient = data.get("Recipient")
            if data_recipient and data_recipient != config.acs_url:
                raise RecipientError(
                    f"Recipient mismatch: expected {config.acs_url}, got {data_recipient}"
                )
            recipient = recipient or data_recipient

            if data.get("NotOnOrAfter"):
                expires = parse_instant(data.get("NotOnOrAfter"))
                if now - self.clock_skew >= expires:
                    raise TimingError("SubjectConfirmation has expired")
                latest_expiry = max(latest_expiry or expires, expires)

            data_in_response_to = data.get("InResponseTo")
            if (
                expected_request_id
                and data_in_response_to
                and data_in_response_to != expected_request_id
            ):
                raise RecipientError(
                    "SubjectConfirmation InResponseTo does not match the AuthnRequest"
                )
            in_response_to = in_response_to or data_in_response_to

        return recipient, in_response_to, latest_expiry

    # ------------------------------------------------------------------
    # 9. Signature
    # ------------------------------------------------------------------

    def _verify_signature(
        self,
        xml_bytes: bytes,
        root: etree._Element,
        assertion: etree._Element,
        config: IdentityProviderConfig,
    ) -> None:
        ids = [element.get("ID") for element in root.iter() if element.get("ID")]
        if len(ids) != len(set(ids)):
            raise TrustError(
                TrustError.SIGNATURE_WRAPPING, "SAML Response contains duplicate IDs"
            )

        if root.find(_ds("Signature")) is not None:
            target, signed_bytes = root, xml_bytes
        elif assertion.find(_ds("Signature")) is not None:
            target = assertion
            signed_bytes = etree.tostring(assertion, with_tail=False)
        else:
            raise TrustError(
                TrustError.SIGNATURE_MISSING, "SAML Response and Assertion are unsigned"
            )

        try:
            result = XMLVerifier().verify(
                signed_bytes, x509_cert=config.idp_certificate_pem
            )
        except (InvalidSignature, InvalidInput, ValueError) as e:
            logger.error(
                "SAML signature verification failed",
                extra={"idp_entity_id": config.idp_entity_id, "error": str(e)},
            )
            raise TrustError(
                TrustError.SIGNATURE_INVALID, "SAML signature verification failed"
            ) from e

        signed = result.signed_xml
        if (
            signed is None
            or signed.tag != target.tag
            or signed.get("ID") != target.get("ID")
        ):
            raise TrustError(
                TrustError.SIGNATURE_WRAPPING,
                "Signature does not cover the consumed element",
            )

    # ------------------------------------------------------------------
    # 10. Attributes
    # ------------------------------------------------------------------

    @staticmethod
    def _extract_attributes(assertion: etree._Element) -> Dict[str, AttributeValue]:
        collected: Dict[str, List[str]] = {}
        for attribute in assertion.iterfind(
            f"{_saml('AttributeStatement')}/{_saml('Attribute')}"
        ):
            name = attribute.get("Name") or attribute.get("FriendlyName")
            if not name:
                continue
            values = [
                text
                for text in (
                    _text(value) for value in attribute.iterfind(_saml("AttributeValue"))
                )
                if text
            ]
            if values:
                collected.setdefault(name, []).extend(values)

        return {
            name: values[0] if len(values) == 1 else values
            for name, values in collected.items()
        }
