"""SAML Response (the IdP's answer to an AuthnRequest).

A Response is only ever received. An EncryptedAssertion is decrypted with
the SP key when the message is loaded; all assertion accessors then read
the decrypted copy, while signature checks on the Response itself still
run against the document exactly as it was received.
"""

from __future__ import annotations

import copy
import logging
from typing import TYPE_CHECKING, Any

from lxml import etree

from samlsp.core.crypto import xmlenc
from samlsp.core.saml.constants import ALLOWED_CLOCK_DRIFT, CM_BEARER, NS_DS, StatusCode
from samlsp.core.saml.errors import (
    SAMLError,
    SAMLErrorKind,
    SAMLValidationError,
    ValidationErrorKind,
)
from samlsp.core.saml.message import NameIdData, SAMLMessage, url_matches
from samlsp.core.saml.signature import verify_signature
from samlsp.core.saml.utils import (
    MessageStatus,
    RequestData,
    get_self_routed_url_no_query,
    get_status,
    now,
    parse_saml_to_time,
    query,
)

if TYPE_CHECKING:
    from samlsp.core.saml.settings import Settings

logger = logging.getLogger(__name__)


class Response(SAMLMessage):
    """A received SAML Response.

    Args:
        settings: Validated toolkit settings.
        response: The base64 ``SAMLResponse`` form value.

    Raises:
        SAMLError: SAML_RESPONSE_NOT_FOUND if the value is empty or cannot be
            parsed, PRIVATE_KEY_NOT_FOUND if the assertion is encrypted and
            the SP has no key.
    """

    message_name = "SAML Response"
    parameter = "SAMLResponse"
    invalid_kind = SAMLErrorKind.SAML_RESPONSE_NOT_FOUND

    def __init__(self, settings: Settings, response: str | bytes) -> None:
        if not response:
            raise SAMLError("SAML Response not found", SAMLErrorKind.SAML_RESPONSE_NOT_FOUND)
        super().__init__(settings, response)

        self.encrypted = bool(self._query("./saml:EncryptedAssertion"))
        self.decrypted_document: etree._Element | None = None
        self._decryption_error: SAMLValidationError | None = None
        self._name_id_data: NameIdData | None = None

        if self.encrypted:
            self._decrypt_assertion()

    def _decrypt_assertion(self) -> None:
        key = self.settings.get_sp_key()
        if not key:
            raise SAMLError(
                "No private key available to decrypt the assertion, check settings",
                SAMLErrorKind.PRIVATE_KEY_NOT_FOUND,
            )
        document = copy.deepcopy(self.document)
        encrypted_assertion = query(document, "./saml:EncryptedAssertion")[0]
        try:
            assertion = xmlenc.decrypt_element(encrypted_assertion, key)
        except SAMLValidationError as e:
            # Reported by is_valid so a bad ciphertext reads like any other rejection
            self._decryption_error = e
            return
        document.replace(encrypted_assertion, assertion)
        self.decrypted_document = document
        logger.debug("Decrypted assertion of Response %s", self.id)

    def get_xml_document(self) -> etree._Element:
        """The Response with its assertion decrypted, when it was encrypted."""
        if self.decrypted_document is not None:
            return self.decrypted_document
        return self.document

    def _query_assertion(self, xpath: str) -> list[Any]:
        return query(self.get_xml_document(), "./saml:Assertion" + xpath)

    # Accessors

    def get_status_data(self) -> MessageStatus:
        return get_status(self.document)

    def get_assertion_id(self) -> str | None:
        nodes = self._query_assertion("")
        return nodes[0].get("ID") if nodes else None

    def get_issuers(self) -> list[str]:
        """Issuers of the Response and of its assertion, without repeats."""
        issuers: list[str] = []
        for node in self._query("./saml:Issuer") + self._query_assertion("/saml:Issuer"):
            value = (node.text or "").strip()
            if value and value not in issuers:
                issuers.append(value)
        return issuers

    def get_audiences(self) -> list[str]:
        nodes = self._query_assertion("/saml:Conditions/saml:AudienceRestriction/saml:Audience")
        return [node.text.strip() for node in nodes if node.text and node.text.strip()]

    def get_authn_contexts(self) -> list[str]:
        nodes = self._query_assertion(
            "/saml:AuthnStatement/saml:AuthnContext/saml:AuthnContextClassRef"
        )
        return [node.text for node in nodes if node.text]

    def get_session_index(self) -> str | None:
        nodes = self._query_assertion("/saml:AuthnStatement[@SessionIndex]")
        return nodes[0].get("SessionIndex") if nodes else None

    def get_session_not_on_or_after(self) -> int | None:
        """SessionNotOnOrAfter of the AuthnStatement as UNIX time."""
        nodes = self._query_assertion("/saml:AuthnStatement[@SessionNotOnOrAfter]")
        if not nodes:
            return None
        return parse_saml_to_time(nodes[0].get("SessionNotOnOrAfter"))

    def get_name_id_data(self) -> NameIdData | None:
        """The subject's NameID, decrypting an EncryptedID if needed.

        Returns:
            The NameID, or None when the assertion carries none.

        Raises:
            SAMLError: PRIVATE_KEY_NOT_FOUND for an EncryptedID without SP key.
            SAMLValidationError: If the EncryptedID cannot be decrypted.
        """
        if self._name_id_data is not None:
            return self._name_id_data

        encrypted = self._query_assertion("/saml:Subject/saml:EncryptedID")
        if encrypted:
            key = self.settings.get_sp_key()
            if not key:
                raise SAMLError(
                    "Private key required to decrypt the EncryptedID",
                    SAMLErrorKind.PRIVATE_KEY_NOT_FOUND,
                )
            name_id = xmlenc.decrypt_element(encrypted[0], key)
        else:
            nodes = self._query_assertion("/saml:Subject/saml:NameID")
            if not nodes:
                return None
            name_id = nodes[0]

        self._name_id_data = NameIdData.from_element(name_id)
        return self._name_id_data

    def get_name_id(self) -> str | None:
        data = self.get_name_id_data()
        return data.value if data else None

    def get_name_id_format(self) -> str | None:
        data = self.get_name_id_data()
        return data.format if data else None

    def _attribute_values(self, attribute: etree._Element) -> list[Any]:
        values: list[Any] = []
        for value in query(attribute, "./saml:AttributeValue", attribute):
            name_ids = query(value, "./saml:NameID", value)
            if name_ids:
                values.append(NameIdData.from_element(name_ids[0]))
            else:
                values.append(value.text)
        return values

    def _collect_attributes(self, key: str) -> dict[str, list[Any]]:
        allow_repeat = self.settings.get_security_data().allow_repeat_attribute_name
        attributes: dict[str, list[Any]] = {}
        for attribute in self._query_assertion("/saml:AttributeStatement/saml:Attribute"):
            name = attribute.get(key)
            if not name:
                continue
            values = self._attribute_values(attribute)
            if name in attributes:
                if not allow_repeat:
                    raise SAMLValidationError(
                        "Found an Attribute element with duplicated %s: %s",
                        ValidationErrorKind.DUPLICATED_ATTRIBUTE_NAME_FOUND,
                        key,
                        name,
                    )
                attributes[name].extend(values)
            else:
                attributes[name] = values
        return attributes

    def get_attributes(self) -> dict[str, list[Any]]:
        """Attributes of the assertion keyed by Name.

        Raises:
            SAMLValidationError: DUPLICATED_ATTRIBUTE_NAME_FOUND when a Name
                repeats and ``allowRepeatAttributeName`` is off.
        """
        return self._collect_attributes("Name")

    def get_friendlyname_attributes(self) -> dict[str, list[Any]]:
        """Attributes keyed by FriendlyName; attributes without one are skipped."""
        return self._collect_attributes("FriendlyName")

    # Validation

    def _validate(
        self,
        request_data: RequestData,
        request_id: str | None,
        retrieve_parameters_from_server: bool,
    ) -> None:
        if self.document.get("Version") != "2.0":
            raise SAMLValidationError(
                "Unsupported SAML version", ValidationErrorKind.UNSUPPORTED_SAML_VERSION
            )
        if not self.id:
            raise SAMLValidationError("Missing ID attribute on SAML Response", ValidationErrorKind.MISSING_ID)
        if self._decryption_error is not None:
            raise self._decryption_error

        status = self.get_status_data()
        if status.code != StatusCode.SUCCESS:
            detail = f"{status.code} -> {status.message}" if status.message else status.code
            raise SAMLValidationError(
                "The status code of the Response was not Success, was %s",
                ValidationErrorKind.STATUS_CODE_IS_NOT_SUCCESS,
                detail,
            )

        self._check_assertion_count()
        response_signed, assertion_signed = self._check_signed_elements()

        if self.settings.is_strict():
            self._validate_strict(request_data, request_id, response_signed, assertion_signed)

        if not response_signed and not assertion_signed:
            raise SAMLValidationError(
                "No Signature found. SAML Response rejected", ValidationErrorKind.NO_SIGNATURE_FOUND
            )
        self._check_signatures(response_signed, assertion_signed)
        self.get_attributes()

    def _check_assertion_count(self) -> None:
        count = len(self._query("./saml:Assertion")) + len(self._query("./saml:EncryptedAssertion"))
        if count != 1 or len(query(self.get_xml_document(), "./saml:Assertion")) != 1:
            raise SAMLValidationError(
                "SAML Response must contain 1 assertion", ValidationErrorKind.WRONG_NUMBER_OF_ASSERTIONS
            )

    def _check_signed_elements(self) -> tuple[bool, bool]:
        """Locate the Response and Assertion signatures; nothing else may be signed."""
        document = self.get_xml_document()
        response_sigs = query(document, "./ds:Signature")
        assertion_sigs = self._query_assertion("/ds:Signature")
        if len(response_sigs) > 1:
            raise SAMLValidationError(
                "Duplicated Signature in the Response",
                ValidationErrorKind.WRONG_NUMBER_OF_SIGNATURES_IN_RESPONSE,
            )
        if len(assertion_sigs) > 1:
            raise SAMLValidationError(
                "Duplicated Signature in the Assertion",
                ValidationErrorKind.WRONG_NUMBER_OF_SIGNATURES_IN_ASSERTION,
            )
        all_sigs = document.iter(f"{{{NS_DS}}}Signature")
        if sum(1 for _ in all_sigs) != len(response_sigs) + len(assertion_sigs):
            raise SAMLValidationError(
                "Found an unexpected Signature Element. SAML Response rejected",
                ValidationErrorKind.UNEXPECTED_SIGNED_ELEMENTS,
            )
        return bool(response_sigs), bool(assertion_sigs)

    def _validate_strict(
        self,
        request_data: RequestData,
        request_id: str | None,
        response_signed: bool,
        assertion_signed: bool,
    ) -> None:
        sp = self.settings.get_sp_data()
        security = self.settings.get_security_data()

        self._check_schema()
        if self.decrypted_document is not None:
            self._check_schema(self.decrypted_document)

        in_response_to = self.get_in_response_to()
        if in_response_to and request_id is None and security.reject_unsolicited_responses_with_in_response_to:
            raise SAMLValidationError(
                "The Response has an InResponseTo attribute: %s while no InResponseTo was expected",
                ValidationErrorKind.WRONG_INRESPONSETO,
                in_response_to,
            )
        self._check_in_response_to(request_id)

        if security.want_assertions_encrypted and not self.encrypted:
            raise SAMLValidationError(
                "The assertion of the Response is not encrypted and the SP requires it",
                ValidationErrorKind.NO_ENCRYPTED_ASSERTION,
            )
        if security.want_name_id_encrypted and not self._query_assertion("/saml:Subject/saml:EncryptedID"):
            raise SAMLValidationError(
                "The NameID of the Response is not encrypted and the SP requires it",
                ValidationErrorKind.NO_ENCRYPTED_NAMEID,
            )

        self._check_conditions()

        if security.want_attribute_statement and not self._query_assertion("/saml:AttributeStatement"):
            raise SAMLValidationError(
                "There is no AttributeStatement on the Response", ValidationErrorKind.NO_ATTRIBUTESTATEMENT
            )
        if self._query_assertion("/saml:AttributeStatement/saml:EncryptedAttribute"):
            raise SAMLValidationError(
                "There is an EncryptedAttribute in the Response and this SP does not support them",
                ValidationErrorKind.ENCRYPTED_ATTRIBUTES,
            )

        self._check_destination(request_data)

        audiences = self.get_audiences()
        if audiences and sp.entity_id not in audiences:
            raise SAMLValidationError(
                "Invalid audience for this Response (expected %s, got %s)",
                ValidationErrorKind.WRONG_AUDIENCE,
                sp.entity_id,
                ", ".join(audiences),
            )

        self._check_issuers()

        session_expiration = self.get_session_not_on_or_after()
        if session_expiration is not None and session_expiration + ALLOWED_CLOCK_DRIFT <= now():
            raise SAMLValidationError(
                "The attributes have expired, based on the SessionNotOnOrAfter of the AttributeStatement of this Response",
                ValidationErrorKind.SESSION_EXPIRED,
            )

        self._check_subject_confirmation(request_data, in_response_to)
        self._check_name_id()

        if security.want_assertions_signed and not assertion_signed:
            raise SAMLValidationError(
                "The Assertion of the Response is not signed and the SP requires it",
                ValidationErrorKind.NO_SIGNED_ASSERTION,
            )
        if security.want_messages_signed and not response_signed:
            raise SAMLValidationError(
                "The Message of the Response is not signed and the SP requires it",
                ValidationErrorKind.NO_SIGNED_MESSAGE,
            )

    def _check_conditions(self) -> None:
        """NotBefore / NotOnOrAfter of the Conditions, allowing for clock drift."""
        current = now()
        for conditions in self._query_assertion("/saml:Conditions"):
            not_before = conditions.get("NotBefore")
            if not_before and parse_saml_to_time(not_before) > current + ALLOWED_CLOCK_DRIFT:
                raise SAMLValidationError(
                    "Could not validate timestamp: not yet valid. Check system clock.",
                    ValidationErrorKind.ASSERTION_TOO_EARLY,
                )
            not_on_or_after = conditions.get("NotOnOrAfter")
            if not_on_or_after and parse_saml_to_time(not_on_or_after) + ALLOWED_CLOCK_DRIFT <= current:
                raise SAMLValidationError(
                    "Could not validate timestamp: expired. Check system clock.",
                    ValidationErrorKind.ASSERTION_EXPIRED,
                )

    def _check_issuers(self) -> None:
        if len(self._query("./saml:Issuer")) > 1:
            raise SAMLValidationError(
                "Issuer of the Response is multiple.", ValidationErrorKind.ISSUER_MULTIPLE_IN_RESPONSE
            )
        if len(self._query_assertion("/saml:Issuer")) != 1:
            raise SAMLValidationError(
                "Issuer of the Assertion not found or multiple.",
                ValidationErrorKind.ISSUER_NOT_FOUND_IN_ASSERTION,
            )
        idp_entity_id = self.settings.get_idp_data().entity_id
        for issuer in self.get_issuers():
            if issuer != idp_entity_id:
                raise SAMLValidationError(
                    "Invalid issuer in the Assertion/Response (expected %s, got %s)",
                    ValidationErrorKind.WRONG_ISSUER,
                    idp_entity_id,
                    issuer,
                )

    def _check_subject_confirmation(self, request_data: RequestData, in_response_to: str | None) -> None:
        """Require one bearer SubjectConfirmation addressed to this endpoint and still valid."""
        current_url = get_self_routed_url_no_query(request_data, self.settings.baseurl)
        strictly = self.settings.get_security_data().destination_strictly_matches
        current = now()

        for confirmation in self._query_assertion("/saml:Subject/saml:SubjectConfirmation"):
            method = confirmation.get("Method")
            if method and method != CM_BEARER:
                continue
            data_nodes = query(confirmation, "./saml:SubjectConfirmationData", confirmation)
            if not data_nodes:
                continue
            data = data_nodes[0]

            data_in_response_to = data.get("InResponseTo")
            if in_response_to and data_in_response_to and data_in_response_to != in_response_to:
                continue
            recipient = data.get("Recipient")
            if recipient and not url_matches(recipient, current_url, strictly):
                continue
            not_on_or_after = data.get("NotOnOrAfter")
            if not not_on_or_after or parse_saml_to_time(not_on_or_after) + ALLOWED_CLOCK_DRIFT <= current:
                continue
            not_before = data.get("NotBefore")
            if not_before and parse_saml_to_time(not_before) > current + ALLOWED_CLOCK_DRIFT:
                continue
            return

        raise SAMLValidationError(
            "A valid SubjectConfirmation was not found on this Response",
            ValidationErrorKind.WRONG_SUBJECTCONFIRMATION,
        )

    def _check_name_id(self) -> None:
        security = self.settings.get_security_data()
        name_id = self.get_name_id_data()
        if name_id is None:
            if security.want_name_id:
                raise SAMLValidationError(
                    "NameID not found in the assertion of the Response", ValidationErrorKind.NO_NAMEID
                )
            return
        if security.want_name_id and not name_id.value:
            raise SAMLValidationError("An empty NameID value found", ValidationErrorKind.EMPTY_NAMEID)

        entity_id = self.settings.get_sp_data().entity_id
        if name_id.sp_name_qualifier and name_id.sp_name_qualifier != entity_id:
            raise SAMLValidationError(
                "The SPNameQualifier value mismatch the SP entityID value.",
                ValidationErrorKind.SP_NAME_QUALIFIER_NAME_MISMATCH,
            )

    def _check_signatures(self, response_signed: bool, assertion_signed: bool) -> None:
        idp = self.settings.get_idp_data()
        security = self.settings.get_security_data()
        checks = []
        if response_signed:
            checks.append((self.document, "./ds:Signature"))
        if assertion_signed:
            checks.append((self.get_xml_document(), "./saml:Assertion/ds:Signature"))

        for document, xpath in checks:
            valid = verify_signature(
                document,
                fingerprint=idp.cert_fingerprint or None,
                fingerprint_algorithm=idp.cert_fingerprint_algorithm,
                xpath=xpath,
                multi_certs=idp.signing_certs,
                reject_deprecated_algorithm=security.reject_deprecated_algorithm,
            )
            if not valid:
                raise SAMLValidationError(
                    "Signature validation failed. SAML Response rejected",
                    ValidationErrorKind.INVALID_SIGNATURE,
                )
