"""SAML Single Logout (SLO) messages.

Handles both SP-initiated and IdP-initiated logout flows:
- LogoutRequest generation (SP-initiated) and validation (IdP-initiated)
- LogoutResponse generation (answering the IdP) and validation
"""

from __future__ import annotations

import logging

from lxml import etree

from samlsp.core.crypto import xmlenc
from samlsp.core.saml.constants import ALLOWED_CLOCK_DRIFT, NS_SAML, NameIDFormat, StatusCode, STATUS_DESCRIPTIONS
from samlsp.core.saml.errors import (
    SAMLError,
    SAMLErrorKind,
    SAMLValidationError,
    ValidationErrorKind,
)
from samlsp.core.saml.message import NameIdData, SAMLMessage, xml_escape
from samlsp.core.saml.utils import (
    MessageStatus,
    RequestData,
    generate_unique_id,
    get_status,
    load_xml,
    now,
    parse_saml_to_time,
    parse_time_to_saml,
    query,
)

logger = logging.getLogger(__name__)


def get_logout_status_description(status_code: str) -> str:
    """Get a human-readable description for a logout status code."""
    for status in StatusCode:
        if status.value == status_code:
            return STATUS_DESCRIPTIONS.get(status, status_code)
    return status_code


class LogoutResponse(SAMLMessage):
    """A SAML LogoutResponse.

    Built by the SP to answer an IdP-initiated LogoutRequest, or received
    from the IdP at the end of an SP-initiated logout.
    """

    message_name = "Logout Response"
    parameter = "SAMLResponse"
    invalid_kind = SAMLErrorKind.SAML_LOGOUTRESPONSE_INVALID

    def build(
        self,
        in_response_to: str,
        status: str = StatusCode.SUCCESS,
        status_message: str | None = None,
    ) -> None:
        """Generate the LogoutResponse XML.

        Args:
            in_response_to: ID of the LogoutRequest being answered.
            status: Top-level status code.
            status_message: Optional StatusMessage.

        Raises:
            SAMLError: INVALID_MESSAGE_STATE on a received response.
        """
        self._require_outbound()
        sp = self.settings.get_sp_data()

        self.id = generate_unique_id()
        issue_instant = parse_time_to_saml(now())
        destination = self.settings.get_idp_slo_response_url() or ""

        status_message_elem = ""
        if status_message:
            status_message_elem = f"\n        <samlp:StatusMessage>{xml_escape(status_message)}</samlp:StatusMessage>"

        self._xml = f"""<samlp:LogoutResponse
    xmlns:samlp="urn:oasis:names:tc:SAML:2.0:protocol"
    xmlns:saml="urn:oasis:names:tc:SAML:2.0:assertion"
    ID="{self.id}"
    Version="2.0"
    IssueInstant="{issue_instant}"
    Destination="{xml_escape(destination)}"
    InResponseTo="{xml_escape(in_response_to)}">
    <saml:Issuer>{xml_escape(sp.entity_id)}</saml:Issuer>
    <samlp:Status>
        <samlp:StatusCode Value="{xml_escape(status)}"/>{status_message_elem}
    </samlp:Status>
</samlp:LogoutResponse>"""
        logger.debug("Built LogoutResponse %s in response to %s", self.id, in_response_to)

    def get_response(self, deflate: bool | None = None) -> str:
        """Encode the built response for the wire.

        Args:
            deflate: Deflate before base64. Defaults to the ``compress.responses`` setting.
        """
        if deflate is None:
            deflate = self.settings.should_compress_responses()
        return self._encode(deflate)

    def get_status(self) -> str | None:
        """Top-level status code, when there is exactly one."""
        nodes = self._query("./samlp:Status/samlp:StatusCode")
        if len(nodes) != 1:
            return None
        return nodes[0].get("Value")

    def get_status_data(self) -> MessageStatus:
        """Status code and message.

        Raises:
            SAMLValidationError: If the Status or its code is missing.
        """
        return get_status(self.document)

    def is_success(self) -> bool:
        return self.get_status() == StatusCode.SUCCESS

    def _validate(
        self,
        request_data: RequestData,
        request_id: str | None,
        retrieve_parameters_from_server: bool,
    ) -> None:
        if self.settings.is_strict():
            security = self.settings.get_security_data()
            self._check_schema()
            self._check_in_response_to(request_id)
            self._check_issuer()
            self._check_destination(request_data)

            if security.want_messages_signed and not self._is_signed(request_data):
                raise SAMLValidationError(
                    "The Message of the Logout Response is not signed and the SP requires it",
                    ValidationErrorKind.NO_SIGNED_MESSAGE,
                )

        self._check_message_signature(request_data, retrieve_parameters_from_server)


# LogoutRequest helpers, usable on any LogoutRequest document


def _as_element(request: str | bytes | etree._Element) -> etree._Element:
    if isinstance(request, etree._Element):
        return request
    return load_xml(request)


def get_request_id(request: str | bytes | etree._Element) -> str | None:
    """ID of a LogoutRequest."""
    return _as_element(request).get("ID")


def get_name_id_data(request: str | bytes | etree._Element, key: str | None = None) -> NameIdData:
    """NameID of a LogoutRequest, decrypting an EncryptedID with ``key``.

    Raises:
        SAMLError: PRIVATE_KEY_NOT_FOUND if the NameID is encrypted and no key is given.
        SAMLValidationError: NO_NAMEID, or a decryption failure.
    """
    dom = _as_element(request)

    encrypted = query(dom, "./saml:EncryptedID")
    if encrypted:
        if not key:
            raise SAMLError(
                "Private Key is required in order to decrypt the NameID, check settings",
                SAMLErrorKind.PRIVATE_KEY_NOT_FOUND,
            )
        name_id = xmlenc.decrypt_element(encrypted[0], key)
    else:
        nodes = query(dom, "./saml:NameID")
        name_id = nodes[0] if nodes else None

    if name_id is None:
        raise SAMLValidationError("NameID not found in the Logout Request", ValidationErrorKind.NO_NAMEID)
    return NameIdData.from_element(name_id)


def get_name_id(request: str | bytes | etree._Element, key: str | None = None) -> str:
    """NameID value of a LogoutRequest."""
    return get_name_id_data(request, key).value


def get_request_issuer(request: str | bytes | etree._Element) -> str | None:
    """Issuer of a LogoutRequest, when there is exactly one."""
    nodes = query(_as_element(request), "./saml:Issuer")
    if len(nodes) == 1:
        return nodes[0].text
    return None


def get_session_indexes(request: str | bytes | etree._Element) -> list[str]:
    """SessionIndex values of a LogoutRequest."""
    return [node.text or "" for node in query(_as_element(request), "./samlp:SessionIndex")]


class LogoutRequest(SAMLMessage):
    """A SAML LogoutRequest.

    Built by the SP to start an SP-initiated logout, or received from the
    IdP for an IdP-initiated one.
    """

    message_name = "Logout Request"
    parameter = "SAMLRequest"
    invalid_kind = SAMLErrorKind.SAML_LOGOUTREQUEST_INVALID

    def build(
        self,
        name_id: str | None = None,
        session_index: str | list[str] | None = None,
        name_id_format: str | None = None,
        name_id_name_qualifier: str | None = None,
        name_id_sp_name_qualifier: str | None = None,
    ) -> None:
        """Generate the LogoutRequest XML.

        Without ``name_id`` the IdP entity id is used, with the ``entity``
        format. The NameID is encrypted for the IdP when
        ``security.nameIdEncrypted`` is set.

        Args:
            name_id: NameID of the user being logged out.
            session_index: SessionIndex value(s) of the session(s) to end.
            name_id_format: NameID Format. Defaults to the SP NameIDFormat.
            name_id_name_qualifier: NameQualifier of the NameID.
            name_id_sp_name_qualifier: SPNameQualifier of the NameID.

        Raises:
            SAMLError: INVALID_MESSAGE_STATE on a received request, or
                CERT_NOT_FOUND when encryption is on without an IdP certificate.
        """
        self._require_outbound()
        sp = self.settings.get_sp_data()
        idp = self.settings.get_idp_data()
        security = self.settings.get_security_data()

        if name_id:
            if not name_id_format and sp.name_id_format != NameIDFormat.UNSPECIFIED:
                name_id_format = sp.name_id_format
        else:
            name_id = idp.entity_id
            name_id_format = NameIDFormat.ENTITY

        # Qualifiers must be omitted with the entity format
        if name_id_format == NameIDFormat.ENTITY:
            name_id_name_qualifier = None
            name_id_sp_name_qualifier = None
        if name_id_format == NameIDFormat.UNSPECIFIED:
            name_id_format = None

        name_id_xml = self._name_id_xml(
            name_id,
            name_id_format,
            name_id_name_qualifier,
            name_id_sp_name_qualifier,
            security.name_id_encrypted,
        )

        if isinstance(session_index, str):
            session_index = [session_index]
        session_index_elems = "".join(
            f"\n    <samlp:SessionIndex>{xml_escape(index)}</samlp:SessionIndex>"
            for index in session_index or []
        )

        self.id = generate_unique_id()
        issue_instant = parse_time_to_saml(now())
        destination = self.settings.get_idp_slo_url() or ""

        self._xml = f"""<samlp:LogoutRequest
    xmlns:samlp="urn:oasis:names:tc:SAML:2.0:protocol"
    xmlns:saml="urn:oasis:names:tc:SAML:2.0:assertion"
    ID="{self.id}"
    Version="2.0"
    IssueInstant="{issue_instant}"
    Destination="{xml_escape(destination)}">
    <saml:Issuer>{xml_escape(sp.entity_id)}</saml:Issuer>
    {name_id_xml}{session_index_elems}
</samlp:LogoutRequest>"""
        logger.debug("Built LogoutRequest %s for %s", self.id, destination)

    def _name_id_xml(
        self,
        value: str,
        name_id_format: str | None,
        name_qualifier: str | None,
        sp_name_qualifier: str | None,
        encrypt: bool,
    ) -> str:
        attrs = ""
        if sp_name_qualifier:
            attrs += f' SPNameQualifier="{xml_escape(sp_name_qualifier)}"'
        if name_qualifier:
            attrs += f' NameQualifier="{xml_escape(name_qualifier)}"'
        if name_id_format:
            attrs += f' Format="{xml_escape(name_id_format)}"'

        if not encrypt:
            return f"<saml:NameID{attrs}>{xml_escape(value)}</saml:NameID>"

        cert = self.settings.get_idp_data().encryption_cert
        if not cert:
            raise SAMLError(
                "In order to encrypt the NameID, the x509cert of the IdP is required",
                SAMLErrorKind.CERT_NOT_FOUND,
            )
        element = load_xml(f'<saml:NameID xmlns:saml="{NS_SAML}"{attrs}>{xml_escape(value)}</saml:NameID>')
        try:
            encrypted = xmlenc.encrypt_element(element, cert)
        except SAMLValidationError as e:
            raise SAMLError("Unable to encrypt the NameID: %s", SAMLErrorKind.CERT_NOT_FOUND, e) from e
        return f"<saml:EncryptedID>{etree.tostring(encrypted, encoding='unicode')}</saml:EncryptedID>"

    def get_request(self, deflate: bool | None = None) -> str:
        """Encode the built request for the wire.

        Args:
            deflate: Deflate before base64. Defaults to the ``compress.requests`` setting.
        """
        if deflate is None:
            deflate = self.settings.should_compress_requests()
        return self._encode(deflate)

    def get_name_id_data(self) -> NameIdData:
        """NameID of the received request, decrypted with the SP key if needed."""
        return get_name_id_data(self.document, self.settings.get_sp_key())

    def get_name_id(self) -> str:
        return self.get_name_id_data().value

    def get_session_indexes(self) -> list[str]:
        return get_session_indexes(self.document)

    def _validate(
        self,
        request_data: RequestData,
        request_id: str | None,
        retrieve_parameters_from_server: bool,
    ) -> None:
        if self.settings.is_strict():
            security = self.settings.get_security_data()
            self._check_schema()

            not_on_or_after = self.document.get("NotOnOrAfter")
            if not_on_or_after and parse_saml_to_time(not_on_or_after) + ALLOWED_CLOCK_DRIFT <= now():
                raise SAMLValidationError(
                    "Could not validate timestamp: expired. Check system clock.",
                    ValidationErrorKind.RESPONSE_EXPIRED,
                )

            self._check_destination(request_data)
            self._check_issuer()

            if security.want_messages_signed and not self._is_signed(request_data):
                raise SAMLValidationError(
                    "The Message of the Logout Request is not signed and the SP requires it",
                    ValidationErrorKind.NO_SIGNED_MESSAGE,
                )

        self._check_message_signature(request_data, retrieve_parameters_from_server)
