"""SAML toolkit settings.

Settings arrive as a mapping that uses the toolkit key names (``entityId``,
``assertionConsumerService``, ``wantAssertionsSigned`` ...). The mapping is
validated first; every problem found is reported as a token in one list.
Only a valid mapping is turned into the typed dataclasses below, with
defaults filled in and certificates normalized once.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from samlsp.core.crypto.certs import (
    CertificateLoadError,
    format_cert,
    format_private_key,
    is_certificate_valid,
    load_pem_certificate,
    read_pem_file,
)
from samlsp.core.saml import metadata as md
from samlsp.core.saml.constants import (
    BINDING_HTTP_POST,
    BINDING_HTTP_REDIRECT,
    CONTACT_TYPES,
    NS_MD,
    DigestAlgorithm,
    NameIDFormat,
    SignatureAlgorithm,
)
from samlsp.core.saml.errors import SAMLError, SAMLErrorKind
from samlsp.core.saml.utils import (
    INVALID_XML,
    get_expire_time,
    is_valid_url,
    now,
    parse_saml_to_time,
    validate_xml,
)

logger = logging.getLogger(__name__)

DEFAULT_CERT_DIR = Path.home() / ".samlsp" / "certs"

SP_KEY_FILE = "sp.key"
SP_CERT_FILE = "sp.crt"
SP_CERT_NEW_FILE = "sp_new.crt"

METADATA_SCHEMA = "saml-schema-metadata-2.0.xsd"

# Top-level settings sections that must be mappings when present
_SECTIONS = ("sp", "idp", "security", "compress", "contactPerson", "organization")


def _is_uri(value: str) -> bool:
    return isinstance(value, str) and bool(urlparse(value).scheme) and not any(c.isspace() for c in value)


@dataclass
class Endpoint:
    """A protocol endpoint: location and binding."""

    url: str = ""
    binding: str = BINDING_HTTP_REDIRECT
    response_url: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], default_binding: str = BINDING_HTTP_REDIRECT) -> Endpoint:
        """Create an Endpoint from a settings section."""
        return cls(
            url=data.get("url", "") or "",
            binding=data.get("binding") or default_binding,
            response_url=data.get("responseUrl") or None,
        )


@dataclass
class RequestedAttribute:
    """An attribute the SP asks for in its metadata."""

    name: str
    is_required: bool = False
    name_format: str | None = None
    friendly_name: str | None = None
    attribute_value: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RequestedAttribute:
        """Create a RequestedAttribute from a settings entry."""
        values = data.get("attributeValue") or []
        return cls(
            name=data["name"],
            is_required=bool(data.get("isRequired", False)),
            name_format=data.get("nameFormat"),
            friendly_name=data.get("friendlyName"),
            attribute_value=[values] if isinstance(values, str) else list(values),
        )


@dataclass
class AttributeConsumingService:
    """AttributeConsumingService published in SP metadata."""

    service_name: str
    service_description: str = ""
    requested_attributes: list[RequestedAttribute] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AttributeConsumingService:
        """Create an AttributeConsumingService from a settings section."""
        return cls(
            service_name=data.get("serviceName", ""),
            service_description=data.get("serviceDescription", ""),
            requested_attributes=[
                RequestedAttribute.from_dict(a) for a in data.get("requestedAttributes", [])
            ],
        )


@dataclass
class ServiceProviderData:
    """Service Provider configuration."""

    entity_id: str
    assertion_consumer_service: Endpoint
    single_logout_service: Endpoint | None = None
    name_id_format: str = NameIDFormat.UNSPECIFIED
    x509cert: str = ""
    x509cert_new: str = ""
    private_key: str = ""
    attribute_consuming_service: AttributeConsumingService | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ServiceProviderData:
        """Create ServiceProviderData from the ``sp`` section."""
        sls = data.get("singleLogoutService")
        acs_service = data.get("attributeConsumingService")
        return cls(
            entity_id=data["entityId"],
            assertion_consumer_service=Endpoint.from_dict(
                data["assertionConsumerService"], BINDING_HTTP_POST
            ),
            single_logout_service=Endpoint.from_dict(sls, BINDING_HTTP_REDIRECT) if sls else None,
            name_id_format=data.get("NameIDFormat") or NameIDFormat.UNSPECIFIED,
            x509cert=format_cert(data.get("x509cert") or ""),
            x509cert_new=format_cert(data.get("x509certNew") or ""),
            private_key=format_private_key(data.get("privateKey") or ""),
            attribute_consuming_service=(
                AttributeConsumingService.from_dict(acs_service) if acs_service else None
            ),
        )


@dataclass
class CertificateSet:
    """Multiple IdP certificates, split by use."""

    signing: list[str] = field(default_factory=list)
    encryption: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CertificateSet:
        """Create a CertificateSet from the ``x509certMulti`` section."""
        return cls(
            signing=[format_cert(c) for c in data.get("signing") or []],
            encryption=[format_cert(c) for c in data.get("encryption") or []],
        )


@dataclass
class IdentityProviderData:
    """Identity Provider configuration."""

    entity_id: str
    single_sign_on_service: Endpoint
    single_logout_service: Endpoint | None = None
    x509cert: str = ""
    x509cert_multi: CertificateSet = field(default_factory=CertificateSet)
    cert_fingerprint: str = ""
    cert_fingerprint_algorithm: str = "sha1"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> IdentityProviderData:
        """Create IdentityProviderData from the ``idp`` section."""
        slo = data.get("singleLogoutService")
        multi = data.get("x509certMulti")
        return cls(
            entity_id=data.get("entityId", ""),
            single_sign_on_service=Endpoint.from_dict(data.get("singleSignOnService") or {}),
            single_logout_service=Endpoint.from_dict(slo) if slo else None,
            x509cert=format_cert(data.get("x509cert") or ""),
            x509cert_multi=CertificateSet.from_dict(multi) if multi else CertificateSet(),
            cert_fingerprint=data.get("certFingerprint") or "",
            cert_fingerprint_algorithm=data.get("certFingerprintAlgorithm") or "sha1",
        )

    @property
    def signing_certs(self) -> list[str]:
        """Certificates trusted for signatures, in the order to try them."""
        if self.x509cert_multi.signing:
            return list(self.x509cert_multi.signing)
        return [self.x509cert] if self.x509cert else []

    @property
    def encryption_cert(self) -> str | None:
        """Certificate used to encrypt data for the IdP."""
        if self.x509cert_multi.encryption:
            return self.x509cert_multi.encryption[0]
        return self.x509cert or None


@dataclass
class SecurityData:
    """Security policy: what we sign, what we require, which algorithms."""

    name_id_encrypted: bool = False
    authn_requests_signed: bool = False
    logout_request_signed: bool = False
    logout_response_signed: bool = False
    sign_metadata: bool | dict[str, str] = False
    want_messages_signed: bool = False
    want_assertions_signed: bool = False
    want_assertions_encrypted: bool = False
    want_name_id: bool = True
    want_name_id_encrypted: bool = False
    want_xml_validation: bool = True
    want_attribute_statement: bool = True
    requested_authn_context: bool | list[str] = True
    requested_authn_context_comparison: str = "exact"
    relax_destination_validation: bool = False
    destination_strictly_matches: bool = False
    allow_repeat_attribute_name: bool = False
    reject_unsolicited_responses_with_in_response_to: bool = False
    lowercase_urlencoding: bool = False
    reject_deprecated_algorithm: bool = False
    unrouted_destination_fallback: bool = False
    signature_algorithm: str = SignatureAlgorithm.RSA_SHA256
    digest_algorithm: str = DigestAlgorithm.SHA256

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SecurityData:
        """Create SecurityData from the ``security`` section."""
        sign_metadata = data.get("signMetadata", False)
        return cls(
            name_id_encrypted=bool(data.get("nameIdEncrypted", False)),
            authn_requests_signed=bool(data.get("authnRequestsSigned", False)),
            logout_request_signed=bool(data.get("logoutRequestSigned", False)),
            logout_response_signed=bool(data.get("logoutResponseSigned", False)),
            sign_metadata=dict(sign_metadata) if isinstance(sign_metadata, Mapping) else bool(sign_metadata),
            want_messages_signed=bool(data.get("wantMessagesSigned", False)),
            want_assertions_signed=bool(data.get("wantAssertionsSigned", False)),
            want_assertions_encrypted=bool(data.get("wantAssertionsEncrypted", False)),
            want_name_id=bool(data.get("wantNameId", True)),
            want_name_id_encrypted=bool(data.get("wantNameIdEncrypted", False)),
            want_xml_validation=bool(data.get("wantXMLValidation", True)),
            want_attribute_statement=bool(data.get("wantAttributeStatement", True)),
            requested_authn_context=data.get("requestedAuthnContext", True),
            requested_authn_context_comparison=data.get("requestedAuthnContextComparison", "exact"),
            relax_destination_validation=bool(data.get("relaxDestinationValidation", False)),
            destination_strictly_matches=bool(data.get("destinationStrictlyMatches", False)),
            allow_repeat_attribute_name=bool(data.get("allowRepeatAttributeName", False)),
            reject_unsolicited_responses_with_in_response_to=bool(
                data.get("rejectUnsolicitedResponsesWithInResponseTo", False)
            ),
            lowercase_urlencoding=bool(data.get("lowercaseUrlencoding", False)),
            reject_deprecated_algorithm=bool(data.get("rejectDeprecatedAlgorithm", False)),
            unrouted_destination_fallback=bool(data.get("unroutedDestinationFallback", False)),
            signature_algorithm=data.get("signatureAlgorithm") or SignatureAlgorithm.RSA_SHA256,
            digest_algorithm=data.get("digestAlgorithm") or DigestAlgorithm.SHA256,
        )


@dataclass
class CompressionData:
    """Whether outbound messages are deflated on the Redirect binding."""

    requests: bool = True
    responses: bool = True

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CompressionData:
        """Create CompressionData from the ``compress`` section."""
        return cls(requests=data.get("requests", True), responses=data.get("responses", True))


@dataclass
class ContactPerson:
    """A metadata contact."""

    contact_type: str
    given_name: str
    email_address: str


@dataclass
class OrganizationInfo:
    """Organization details for one language."""

    lang: str
    name: str
    display_name: str
    url: str


# Validation


def _check_compression(data: Mapping[str, Any]) -> list[str]:
    errors: list[str] = []
    compress = data.get("compress")
    if compress is None:
        return errors
    if "requests" in compress and not isinstance(compress["requests"], bool):
        errors.append("compress_requests_invalid")
    if "responses" in compress and not isinstance(compress["responses"], bool):
        errors.append("compress_responses_invalid")
    return errors


def _check_idp(data: Mapping[str, Any]) -> list[str]:
    idp = data.get("idp")
    if not idp:
        return ["idp_not_found"]

    errors: list[str] = []
    if not idp.get("entityId"):
        errors.append("idp_entityId_not_found")

    sso = idp.get("singleSignOnService") or {}
    if not isinstance(sso, Mapping):
        errors.append("idp_sso_url_invalid")
    elif not sso.get("url"):
        errors.append("idp_sso_not_found")
    elif not is_valid_url(sso["url"]):
        errors.append("idp_sso_url_invalid")

    slo = idp.get("singleLogoutService") or {}
    if not isinstance(slo, Mapping):
        errors.append("idp_slo_url_invalid")
        slo = {}
    if slo.get("url") and not is_valid_url(slo["url"]):
        errors.append("idp_slo_url_invalid")
    if slo.get("responseUrl") and not is_valid_url(slo["responseUrl"]):
        errors.append("idp_slo_response_url_invalid")

    multi = idp.get("x509certMulti") or {}
    if not isinstance(multi, Mapping) or not all(
        isinstance(multi.get(use) or [], list) for use in ("signing", "encryption")
    ):
        errors.append("idp_x509certMulti_invalid")
        multi = {}
    has_cert = bool(idp.get("x509cert"))
    has_multi_signing = bool(multi.get("signing"))
    if not (has_cert or idp.get("certFingerprint") or has_multi_signing):
        errors.append("idp_cert_or_fingerprint_not_found_and_required")

    security = data.get("security") or {}
    if security.get("nameIdEncrypted") and not (has_cert or multi.get("encryption")):
        errors.append("idp_cert_not_found_and_required")
    return errors


def _check_attribute_consuming_service(service: Any) -> list[str]:
    if not service:
        return []
    if not isinstance(service, Mapping):
        return ["sp_attributeConsumingService_invalid"]
    errors: list[str] = []
    if not service.get("serviceName"):
        errors.append("sp_attributeConsumingService_serviceName_not_found")
    requested = service.get("requestedAttributes") or []
    if not isinstance(requested, list) or not all(
        isinstance(a, Mapping) and a.get("name") for a in requested
    ):
        errors.append("sp_attributeConsumingService_requestedAttributes_invalid")
    return errors


def _sp_key_and_cert(sp: Mapping[str, Any], cert_path: Path) -> tuple[str | None, str | None]:
    key = sp.get("privateKey") or read_pem_file(cert_path / SP_KEY_FILE)
    cert = sp.get("x509cert") or read_pem_file(cert_path / SP_CERT_FILE)
    return key, cert


def _check_sp(data: Mapping[str, Any], cert_path: Path) -> list[str]:
    errors: list[str] = []
    sp = data.get("sp")
    if not sp:
        errors.append("sp_not_found")
    else:
        security = data.get("security") or {}

        entity_id = sp.get("entityId")
        if not entity_id:
            errors.append("sp_entityId_not_found")
        elif not _is_uri(entity_id):
            errors.append("sp_entityId_invalid")

        acs = sp.get("assertionConsumerService") or {}
        if not isinstance(acs, Mapping):
            errors.append("sp_acs_url_invalid")
        elif not acs.get("url"):
            errors.append("sp_acs_not_found")
        elif not is_valid_url(acs["url"]):
            errors.append("sp_acs_url_invalid")

        sls = sp.get("singleLogoutService") or {}
        if not isinstance(sls, Mapping) or ("url" in sls and not is_valid_url(sls["url"])):
            errors.append("sp_sls_url_invalid")

        errors.extend(_check_attribute_consuming_service(sp.get("attributeConsumingService")))

        sign_metadata = security.get("signMetadata")
        if isinstance(sign_metadata, Mapping):
            by_file = "keyFileName" in sign_metadata and "certFileName" in sign_metadata
            inline = "privateKey" in sign_metadata and "x509cert" in sign_metadata
            if not (by_file or inline):
                errors.append("sp_signMetadata_invalid")

        needs_certs = any(
            security.get(flag)
            for flag in (
                "authnRequestsSigned",
                "logoutRequestSigned",
                "logoutResponseSigned",
                "wantAssertionsEncrypted",
                "wantNameIdEncrypted",
            )
        )
        if needs_certs and not all(_sp_key_and_cert(sp, cert_path)):
            errors.append("sp_certs_not_found_and_required")

    contacts = data.get("contactPerson")
    if contacts:
        if any(contact_type not in CONTACT_TYPES for contact_type in contacts):
            errors.append("contact_type_invalid")
        if any(
            not isinstance(c, Mapping) or not c.get("givenName") or not c.get("emailAddress")
            for c in contacts.values()
        ):
            errors.append("contact_not_enough_data")

    organization = data.get("organization")
    if organization:
        for info in organization.values():
            if not isinstance(info, Mapping) or not all(info.get(k) for k in ("name", "displayname", "url")):
                errors.append("organization_not_enough_data")
                break
    return errors


class Settings:
    """Validated SAML toolkit settings.

    An instance only exists for a valid configuration: construction raises
    ``SAMLError(SETTINGS_INVALID)`` carrying every error token otherwise.
    """

    def __init__(
        self,
        data: Mapping[str, Any] | None = None,
        cert_path: Path | str | None = None,
        schemas_path: Path | str | None = None,
        sp_validation_only: bool = False,
    ) -> None:
        if data is not None and not isinstance(data, Mapping):
            raise SAMLError(
                "Unsupported settings object: %s",
                SAMLErrorKind.UNSUPPORTED_SETTINGS_OBJECT,
                type(data).__name__,
            )

        self.cert_path = Path(cert_path) if cert_path else DEFAULT_CERT_DIR
        self.schemas_path = Path(schemas_path) if schemas_path else None
        self.sp_validation_only = sp_validation_only

        data = data or {}
        errors = self.check_settings(data, self.cert_path, sp_validation_only)
        if errors:
            raise SAMLError(
                "Invalid dict settings: %s", SAMLErrorKind.SETTINGS_INVALID, ", ".join(errors), errors=errors
            )

        self.strict: bool = bool(data.get("strict", True))
        self.debug: bool = bool(data.get("debug", False))
        self.baseurl: str | None = data.get("baseurl") or None

        self.sp = ServiceProviderData.from_dict(data["sp"])
        idp_data = data.get("idp") or {}
        self.idp = IdentityProviderData.from_dict(idp_data) if idp_data else None
        self.security = SecurityData.from_dict(data.get("security") or {})
        self.compress = CompressionData.from_dict(data.get("compress") or {})
        self.contacts = [
            ContactPerson(contact_type, c["givenName"], c["emailAddress"])
            for contact_type, c in (data.get("contactPerson") or {}).items()
        ]
        self.organization = [
            OrganizationInfo(lang, o["name"], o["displayname"], o["url"])
            for lang, o in (data.get("organization") or {}).items()
        ]

        self._warn_expired_certificates()

    @classmethod
    def check_settings(
        cls,
        data: Any,
        cert_path: Path | None = None,
        sp_validation_only: bool = False,
    ) -> list[str]:
        """Validate raw settings, returning every error token found."""
        if not isinstance(data, Mapping) or not data:
            return ["invalid_syntax"]
        for name in _SECTIONS:
            if data.get(name) is not None and not isinstance(data[name], Mapping):
                return ["invalid_syntax"]

        errors: list[str] = []
        if not sp_validation_only:
            errors.extend(_check_idp(data))
        errors.extend(_check_sp(data, cert_path or DEFAULT_CERT_DIR))
        errors.extend(_check_compression(data))
        return errors

    def _warn_expired_certificates(self) -> None:
        for label, cert in (("SP", self.get_sp_cert()), ("IdP", self.get_idp_cert())):
            if not cert:
                continue
            try:
                if not is_certificate_valid(load_pem_certificate(cert)):
                    logger.warning("The %s certificate is expired or not yet valid", label)
            except CertificateLoadError as e:
                logger.warning("The %s certificate could not be parsed: %s", label, e)

    # Accessors

    def get_sp_data(self) -> ServiceProviderData:
        return self.sp

    def get_idp_data(self) -> IdentityProviderData:
        if self.idp is None:
            raise SAMLError("IdP settings were not loaded", SAMLErrorKind.SETTINGS_INVALID)
        return self.idp

    def get_security_data(self) -> SecurityData:
        return self.security

    def get_contacts(self) -> list[ContactPerson]:
        return self.contacts

    def get_organization(self) -> list[OrganizationInfo]:
        return self.organization

    def get_sp_key(self) -> str | None:
        """SP private key, falling back to ``sp.key`` in the cert directory."""
        if self.sp.private_key:
            return self.sp.private_key
        key = read_pem_file(self.cert_path / SP_KEY_FILE)
        return format_private_key(key) if key else None

    def get_sp_cert(self) -> str | None:
        """SP certificate, falling back to ``sp.crt`` in the cert directory."""
        if self.sp.x509cert:
            return self.sp.x509cert
        cert = read_pem_file(self.cert_path / SP_CERT_FILE)
        return format_cert(cert) if cert else None

    def get_sp_cert_new(self) -> str | None:
        """Rollover SP certificate, falling back to ``sp_new.crt``."""
        if self.sp.x509cert_new:
            return self.sp.x509cert_new
        cert = read_pem_file(self.cert_path / SP_CERT_NEW_FILE)
        return format_cert(cert) if cert else None

    def check_sp_certs(self) -> bool:
        """Whether the SP has both a private key and a certificate."""
        return bool(self.get_sp_key()) and bool(self.get_sp_cert())

    def get_idp_cert(self) -> str | None:
        if self.idp is None:
            return None
        return self.idp.x509cert or None

    def get_idp_sso_url(self) -> str | None:
        if self.idp is None:
            return None
        return self.idp.single_sign_on_service.url or None

    def get_idp_slo_url(self) -> str | None:
        if self.idp is None or self.idp.single_logout_service is None:
            return None
        return self.idp.single_logout_service.url or None

    def get_idp_slo_response_url(self) -> str | None:
        """Where LogoutResponses go; the SLO URL unless a response URL is set."""
        if self.idp is not None and self.idp.single_logout_service is not None:
            if self.idp.single_logout_service.response_url:
                return self.idp.single_logout_service.response_url
        return self.get_idp_slo_url()

    def should_compress_requests(self) -> bool:
        return self.compress.requests

    def should_compress_responses(self) -> bool:
        return self.compress.responses

    def set_strict(self, value: bool) -> None:
        """Toggle strict mode.

        Raises:
            SAMLError: If ``value`` is not a bool.
        """
        if not isinstance(value, bool):
            raise SAMLError("Invalid value passed to set_strict()", SAMLErrorKind.SETTINGS_INVALID)
        self.strict = value

    def is_strict(self) -> bool:
        return self.strict

    def is_debug_active(self) -> bool:
        return self.debug

    def get_schemas_path(self) -> Path | None:
        return self.schemas_path

    # Metadata

    def _metadata_signing_material(self) -> tuple[str, str]:
        sign_metadata = self.security.sign_metadata
        if sign_metadata is True:
            key, cert = self.get_sp_key(), self.get_sp_cert()
            if not key:
                raise SAMLError("SP Private key not found.", SAMLErrorKind.PRIVATE_KEY_FILE_NOT_FOUND)
            if not cert:
                raise SAMLError("SP Public cert not found.", SAMLErrorKind.PUBLIC_CERT_FILE_NOT_FOUND)
            return key, cert

        if isinstance(sign_metadata, dict):
            if "keyFileName" in sign_metadata and "certFileName" in sign_metadata:
                key_file = self.cert_path / sign_metadata["keyFileName"]
                cert_file = self.cert_path / sign_metadata["certFileName"]
                key = read_pem_file(key_file)
                if not key:
                    raise SAMLError(
                        "SP Private key file not found: %s", SAMLErrorKind.PRIVATE_KEY_FILE_NOT_FOUND, key_file
                    )
                cert = read_pem_file(cert_file)
                if not cert:
                    raise SAMLError(
                        "SP Public cert file not found: %s", SAMLErrorKind.PUBLIC_CERT_FILE_NOT_FOUND, cert_file
                    )
                return key, cert
            if "privateKey" in sign_metadata and "x509cert" in sign_metadata:
                key = format_private_key(sign_metadata["privateKey"] or "")
                cert = format_cert(sign_metadata["x509cert"] or "")
                if not key:
                    raise SAMLError("Private key not found.", SAMLErrorKind.PRIVATE_KEY_FILE_NOT_FOUND)
                if not cert:
                    raise SAMLError("Public cert not found.", SAMLErrorKind.PUBLIC_CERT_FILE_NOT_FOUND)
                return key, cert

        raise SAMLError(
            "Invalid Setting: signMetadata value of the sp is not valid",
            SAMLErrorKind.SETTINGS_INVALID_SYNTAX,
        )

    def get_sp_metadata(
        self,
        always_publish_encryption_cert: bool = False,
        valid_until: int | datetime | None = None,
        cache_duration: int | None = None,
    ) -> str:
        """Render (and optionally sign) the SP metadata.

        Args:
            always_publish_encryption_cert: Publish encryption KeyDescriptors even
                when no encrypted content is expected.
            valid_until: Expiry of the metadata. Defaults to two days from now.
            cache_duration: Cache duration in seconds. Defaults to one week.

        Returns:
            The EntityDescriptor XML.

        Raises:
            SAMLError: If ``signMetadata`` is set but its key or certificate is missing.
        """
        metadata = md.build_metadata(
            self.sp,
            self.security.authn_requests_signed,
            self.security.want_assertions_signed,
            valid_until=valid_until,
            cache_duration=cache_duration,
            contacts=self.contacts,
            organization=self.organization,
        )

        add_encryption = (
            always_publish_encryption_cert
            or self.security.want_name_id_encrypted
            or self.security.want_assertions_encrypted
        )
        for cert in (self.get_sp_cert_new(), self.get_sp_cert()):
            if cert:
                metadata = md.add_x509_key_descriptors(metadata, cert, add_encryption)

        if self.security.sign_metadata is not False:
            key, cert = self._metadata_signing_material()
            metadata = md.sign_metadata(
                metadata,
                key,
                cert,
                self.security.signature_algorithm,
                self.security.digest_algorithm,
            )
        return metadata

    def validate_metadata(self, xml: str | bytes) -> list[str]:
        """Validate SP metadata, returning the list of problems found.

        Raises:
            SAMLError: METADATA_SP_INVALID for empty input.
        """
        if not xml:
            raise SAMLError("Empty string supplied as input", SAMLErrorKind.METADATA_SP_INVALID)

        res = validate_xml(xml, METADATA_SCHEMA, self.schemas_path, self.debug)
        if isinstance(res, str):
            return [res]

        errors: list[str] = []
        if res.tag != f"{{{NS_MD}}}EntityDescriptor":
            errors.append("noEntityDescriptor_xml")
        elif len(res.findall(f"{{{NS_MD}}}SPSSODescriptor")) != 1:
            errors.append("onlySPSSODescriptor_allowed_xml")
        else:
            valid_until = res.get("validUntil")
            try:
                expire_time = get_expire_time(
                    res.get("cacheDuration"),
                    parse_saml_to_time(valid_until) if valid_until else None,
                )
            except SAMLError:
                return [INVALID_XML]
            if expire_time is not None and now() > expire_time:
                errors.append("expired_xml")
        return errors
