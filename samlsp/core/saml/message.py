"""Shared behaviour of SAML protocol messages.

A message is either outbound (built from settings, then encoded for the
wire) or inbound (decoded from the wire, then validated), never both.
Validators raise ``SAMLValidationError``; ``is_valid`` turns the first one
into ``error`` / ``error_kind`` and returns False.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from xml.sax.saxutils import escape

from lxml import etree

from samlsp.core.saml.errors import (
    SAMLError,
    SAMLErrorKind,
    SAMLValidationError,
    ValidationErrorKind,
)
from samlsp.core.saml.signature import add_signature, verify_query_signature, verify_signature
from samlsp.core.saml.utils import (
    RequestData,
    b64encode,
    decode_base64_and_inflate,
    deflate_and_base64_encode,
    get_self_routed_url_no_query,
    get_unrouted_url_no_query,
    load_xml,
    query,
    validate_xml,
)

if TYPE_CHECKING:
    from samlsp.core.saml.settings import Settings

logger = logging.getLogger(__name__)

PROTOCOL_SCHEMA = "saml-schema-protocol-2.0.xsd"


def xml_escape(value: Any) -> str:
    """Escape a value for use in element text or a double-quoted attribute."""
    return escape(str(value), {'"': "&quot;"})


def url_matches(destination: str, current_url: str, strictly: bool) -> bool:
    """Compare a Destination with the URL the message arrived at.

    Compares the first ``len(current_url)`` characters, or the first
    ``len(destination)`` when ``strictly`` is set.
    """
    length = len(destination) if strictly else len(current_url)
    return destination[:length] == current_url[:length]


@dataclass
class NameIdData:
    """A NameID value with its qualifiers."""

    value: str
    format: str | None = None
    name_qualifier: str | None = None
    sp_name_qualifier: str | None = None

    @classmethod
    def from_element(cls, element: etree._Element) -> NameIdData:
        """Create NameIdData from a ``saml:NameID`` element."""
        return cls(
            value=element.text or "",
            format=element.get("Format"),
            name_qualifier=element.get("NameQualifier"),
            sp_name_qualifier=element.get("SPNameQualifier"),
        )


class SAMLMessage:
    """Base class for protocol messages.

    Args:
        settings: Validated toolkit settings.
        message: Wire-encoded message (base64, optionally deflated) when the
            message was received; omitted for messages the SP builds.

    Raises:
        SAMLError: If the received message cannot be decoded or parsed.
    """

    #: Label used in diagnostics
    message_name = "SAML Message"
    #: Query/form parameter carrying the message
    parameter = "SAMLResponse"
    #: Error raised when a received message cannot be parsed
    invalid_kind = SAMLErrorKind.SETTINGS_INVALID

    def __init__(self, settings: Settings, message: str | bytes | None = None) -> None:
        self.settings = settings
        self.id: str | None = None
        self.document: etree._Element | None = None
        self.error: str | None = None
        self.error_kind: ValidationErrorKind | None = None
        self.inbound = message is not None
        self._xml: str | None = None

        if message is not None:
            try:
                raw = decode_base64_and_inflate(message)
                self._xml = raw.decode("utf-8")
                self.document = load_xml(raw)
            except (ValueError, SAMLValidationError) as e:
                raise SAMLError(
                    "%s could not be processed: %s", self.invalid_kind, self.message_name, e
                ) from e
            self.id = self.document.get("ID")

    # State

    def _require_outbound(self) -> None:
        if self.inbound:
            raise SAMLError(
                "A received %s cannot be rebuilt", SAMLErrorKind.INVALID_MESSAGE_STATE, self.message_name
            )

    def _require_inbound(self) -> None:
        if not self.inbound:
            raise SAMLError(
                "Only a received %s can be validated", SAMLErrorKind.INVALID_MESSAGE_STATE, self.message_name
            )

    def _require_built(self) -> str:
        if self._xml is None:
            raise SAMLError(
                "The %s has not been built", SAMLErrorKind.INVALID_MESSAGE_STATE, self.message_name
            )
        return self._xml

    def get_xml(self) -> str | None:
        """The XML that was built, or that was received."""
        return self._xml

    def get_error(self) -> str | None:
        """Cause of the last failed validation."""
        return self.error

    # Outbound

    def _encode(self, deflate: bool) -> str:
        xml = self._require_built()
        return deflate_and_base64_encode(xml) if deflate else b64encode(xml)

    def sign(self) -> None:
        """Embed an enveloped signature made with the SP key (HTTP-POST binding).

        Raises:
            SAMLError: If the message was received, is not built yet, or the
                SP has no key or certificate.
        """
        self._require_outbound()
        xml = self._require_built()
        key, cert = self.settings.get_sp_key(), self.settings.get_sp_cert()
        if not key:
            raise SAMLError("SP private key not found", SAMLErrorKind.PRIVATE_KEY_NOT_FOUND)
        if not cert:
            raise SAMLError("SP certificate not found", SAMLErrorKind.PUBLIC_CERT_FILE_NOT_FOUND)
        security = self.settings.get_security_data()
        self._xml = add_signature(xml, key, cert, security.signature_algorithm, security.digest_algorithm)

    # Inbound

    def _query(self, xpath: str) -> list[Any]:
        return query(self.document, xpath)

    def get_issuer(self) -> str | None:
        """Issuer of the message, when there is exactly one."""
        nodes = self._query("./saml:Issuer")
        if len(nodes) == 1:
            return nodes[0].text
        return None

    def get_in_response_to(self) -> str | None:
        return self.document.get("InResponseTo") if self.document is not None else None

    def is_valid(
        self,
        request_data: RequestData,
        request_id: str | None = None,
        retrieve_parameters_from_server: bool = False,
    ) -> bool:
        """Validate the received message against the settings.

        Args:
            request_data: The HTTP request the message arrived with.
            request_id: ID of the request this message answers, if known.
            retrieve_parameters_from_server: Rebuild Redirect-binding signed
                data from the raw query string instead of the decoded values.

        Returns:
            True if the message is valid. Otherwise False, with ``error`` and
            ``error_kind`` describing the first failed check.

        Raises:
            SAMLError: If the message was built rather than received.
        """
        self._require_inbound()
        self.error = None
        self.error_kind = None
        try:
            self._validate(request_data, request_id, retrieve_parameters_from_server)
        except SAMLValidationError as e:
            self._reject(e.message, e.kind)
            return False
        except SAMLError as e:
            self._reject(e.message, ValidationErrorKind.INVALID_MESSAGE)
            return False
        except Exception as e:
            logger.exception("Unexpected error validating %s %s", self.message_name, self.id)
            self._reject(str(e), ValidationErrorKind.INVALID_MESSAGE)
            return False
        return True

    def _validate(
        self,
        request_data: RequestData,
        request_id: str | None,
        retrieve_parameters_from_server: bool,
    ) -> None:
        raise NotImplementedError

    def _reject(self, message: str, kind: ValidationErrorKind) -> None:
        self.error = message
        self.error_kind = kind
        if self.settings.is_debug_active():
            logger.warning("%s %s rejected: %s\n%s", self.message_name, self.id, message, self._xml)
        else:
            logger.info("%s %s rejected: %s", self.message_name, self.id, message)

    # Checks shared by the validators

    def _check_schema(self, dom: etree._Element | None = None) -> None:
        if not self.settings.get_security_data().want_xml_validation:
            return
        res = validate_xml(
            dom if dom is not None else self.document,
            PROTOCOL_SCHEMA,
            self.settings.get_schemas_path(),
            self.settings.is_debug_active(),
        )
        if isinstance(res, str):
            raise SAMLValidationError(
                "Invalid SAML %s. Not match the %s",
                ValidationErrorKind.SCHEMA_VALIDATION_FAILED,
                self.message_name,
                PROTOCOL_SCHEMA,
            )

    def _check_in_response_to(self, request_id: str | None) -> None:
        in_response_to = self.get_in_response_to()
        if request_id is not None and in_response_to is not None and request_id != in_response_to:
            raise SAMLValidationError(
                "The InResponseTo of the %s: %s, does not match the ID of the request sent by the SP: %s",
                ValidationErrorKind.WRONG_INRESPONSETO,
                self.message_name,
                in_response_to,
                request_id,
            )

    def _check_issuer(self) -> None:
        issuer = self.get_issuer()
        if issuer and issuer != self.settings.get_idp_data().entity_id:
            raise SAMLValidationError(
                "Invalid issuer in the %s", ValidationErrorKind.WRONG_ISSUER, self.message_name
            )

    def _check_destination(self, request_data: RequestData) -> None:
        """Check the Destination attribute against the current endpoint URL."""
        destination = self.document.get("Destination")
        if destination is None:
            return

        security = self.settings.get_security_data()
        if not destination:
            if not security.relax_destination_validation:
                raise SAMLValidationError(
                    "The %s has an empty Destination value",
                    ValidationErrorKind.EMPTY_DESTINATION,
                    self.message_name,
                )
            return

        strictly = security.destination_strictly_matches
        current_url = get_self_routed_url_no_query(request_data, self.settings.baseurl)
        if url_matches(destination, current_url, strictly):
            return
        if security.unrouted_destination_fallback:
            unrouted_url = get_unrouted_url_no_query(request_data)
            if url_matches(destination, unrouted_url, strictly):
                logger.debug("Destination %s matched the unrouted URL %s", destination, unrouted_url)
                return
        raise SAMLValidationError(
            "The %s was received at %s instead of %s",
            ValidationErrorKind.WRONG_DESTINATION,
            self.message_name,
            current_url,
            destination,
        )

    def _has_embedded_signature(self) -> bool:
        return bool(self._query("./ds:Signature"))

    def _is_signed(self, request_data: RequestData) -> bool:
        return "Signature" in request_data.get_data or self._has_embedded_signature()

    def _check_message_signature(
        self,
        request_data: RequestData,
        retrieve_parameters_from_server: bool,
    ) -> None:
        """Verify the Redirect-binding query signature or the embedded one."""
        idp = self.settings.get_idp_data()
        security = self.settings.get_security_data()

        if "Signature" in request_data.get_data:
            valid = verify_query_signature(
                self.parameter,
                request_data.get_data,
                idp,
                request_data.query_string,
                retrieve_parameters_from_server,
                security.lowercase_urlencoding,
                security.reject_deprecated_algorithm,
            )
        elif self._has_embedded_signature():
            valid = verify_signature(
                self.document,
                fingerprint=idp.cert_fingerprint or None,
                fingerprint_algorithm=idp.cert_fingerprint_algorithm,
                xpath="./ds:Signature",
                multi_certs=idp.signing_certs,
                reject_deprecated_algorithm=security.reject_deprecated_algorithm,
            )
        else:
            return

        if not valid:
            raise SAMLValidationError(
                "Signature validation failed. %s rejected",
                ValidationErrorKind.INVALID_SIGNATURE,
                self.message_name,
            )
