"""SP metadata generation.

Builds the ``md:EntityDescriptor`` published by the Service Provider, adds
KeyDescriptors for its certificates and signs the result.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import TYPE_CHECKING

from lxml import etree

from samlsp.core.crypto.certs import format_cert
from samlsp.core.saml.constants import (
    METADATA_CACHE_SECONDS,
    METADATA_VALID_SECONDS,
    NS_DS,
    NS_MD,
    NS_SAML,
    NS_SAMLP,
    DigestAlgorithm,
    SignatureAlgorithm,
)
from samlsp.core.saml.errors import SAMLError, SAMLErrorKind
from samlsp.core.saml.signature import add_signature
from samlsp.core.saml.utils import generate_unique_id, load_xml, now, parse_time_to_saml

if TYPE_CHECKING:
    from samlsp.core.saml.settings import ContactPerson, OrganizationInfo, ServiceProviderData

_MD = f"{{{NS_MD}}}"
_DS = f"{{{NS_DS}}}"
_XML_LANG = "{http://www.w3.org/XML/1998/namespace}lang"


def _bool(value: bool) -> str:
    return "true" if value else "false"


def _add_attribute_consuming_service(descriptor: etree._Element, sp: ServiceProviderData) -> None:
    service = sp.attribute_consuming_service
    if service is None:
        return
    acs = etree.SubElement(descriptor, f"{_MD}AttributeConsumingService", index="1")
    etree.SubElement(acs, f"{_MD}ServiceName", {_XML_LANG: "en"}).text = service.service_name
    if service.service_description:
        etree.SubElement(acs, f"{_MD}ServiceDescription", {_XML_LANG: "en"}).text = service.service_description

    for attribute in service.requested_attributes:
        requested = etree.SubElement(acs, f"{_MD}RequestedAttribute", Name=attribute.name)
        if attribute.name_format:
            requested.set("NameFormat", attribute.name_format)
        if attribute.friendly_name:
            requested.set("FriendlyName", attribute.friendly_name)
        requested.set("isRequired", _bool(attribute.is_required))
        for value in attribute.attribute_value:
            node = etree.SubElement(requested, f"{{{NS_SAML}}}AttributeValue", nsmap={"saml": NS_SAML})
            node.text = value


def build_metadata(
    sp: ServiceProviderData,
    authn_requests_signed: bool = False,
    want_assertions_signed: bool = False,
    valid_until: int | datetime | None = None,
    cache_duration: int | None = None,
    contacts: Sequence[ContactPerson] = (),
    organization: Sequence[OrganizationInfo] = (),
) -> str:
    """Build the unsigned SP metadata document.

    Args:
        sp: Service Provider settings.
        authn_requests_signed: Value of ``AuthnRequestsSigned``.
        want_assertions_signed: Value of ``WantAssertionsSigned``.
        valid_until: Expiry as UNIX time or datetime. Defaults to now + 2 days.
        cache_duration: Cache duration in seconds. Defaults to one week.
        contacts: Contact persons to publish.
        organization: Organization details, one entry per language.

    Returns:
        The EntityDescriptor XML.
    """
    if valid_until is None:
        valid_until = now() + METADATA_VALID_SECONDS
    if cache_duration is None:
        cache_duration = METADATA_CACHE_SECONDS

    root = etree.Element(
        f"{_MD}EntityDescriptor",
        {
            "validUntil": parse_time_to_saml(valid_until),
            "cacheDuration": f"PT{cache_duration}S",
            "entityID": sp.entity_id,
            "ID": generate_unique_id(),
        },
        nsmap={"md": NS_MD},
    )

    descriptor = etree.SubElement(
        root,
        f"{_MD}SPSSODescriptor",
        {
            "AuthnRequestsSigned": _bool(authn_requests_signed),
            "WantAssertionsSigned": _bool(want_assertions_signed),
            "protocolSupportEnumeration": NS_SAMLP,
        },
    )

    if sp.single_logout_service is not None and sp.single_logout_service.url:
        etree.SubElement(
            descriptor,
            f"{_MD}SingleLogoutService",
            Binding=sp.single_logout_service.binding,
            Location=sp.single_logout_service.url,
        )

    etree.SubElement(descriptor, f"{_MD}NameIDFormat").text = sp.name_id_format

    etree.SubElement(
        descriptor,
        f"{_MD}AssertionConsumerService",
        Binding=sp.assertion_consumer_service.binding,
        Location=sp.assertion_consumer_service.url,
        index="1",
    )
    _add_attribute_consuming_service(descriptor, sp)

    if organization:
        org = etree.SubElement(root, f"{_MD}Organization")
        # Schema order: all names, then display names, then URLs
        for tag, attr in (
            ("OrganizationName", "name"),
            ("OrganizationDisplayName", "display_name"),
            ("OrganizationURL", "url"),
        ):
            for info in organization:
                etree.SubElement(org, f"{_MD}{tag}", {_XML_LANG: info.lang}).text = getattr(info, attr)

    for contact in contacts:
        person = etree.SubElement(root, f"{_MD}ContactPerson", contactType=contact.contact_type)
        etree.SubElement(person, f"{_MD}GivenName").text = contact.given_name
        etree.SubElement(person, f"{_MD}EmailAddress").text = contact.email_address

    return etree.tostring(root, encoding="unicode")


def add_x509_key_descriptors(metadata: str, cert: str, add_encryption: bool = True) -> str:
    """Publish ``cert`` as signing (and optionally encryption) KeyDescriptors.

    Descriptors are appended after any existing ones, ahead of the
    descriptor's endpoints.
    """
    root = load_xml(metadata)
    descriptor = root.find(f"{_MD}SPSSODescriptor")
    if descriptor is None:
        raise SAMLError("Metadata has no SPSSODescriptor", SAMLErrorKind.METADATA_SP_INVALID)

    position = len(descriptor.findall(f"{_MD}KeyDescriptor"))
    body = format_cert(cert, heads=False)
    for use in ("signing", "encryption") if add_encryption else ("signing",):
        key_descriptor = etree.Element(f"{_MD}KeyDescriptor", use=use)
        key_info = etree.SubElement(key_descriptor, f"{_DS}KeyInfo", nsmap={"ds": NS_DS})
        x509_data = etree.SubElement(key_info, f"{_DS}X509Data")
        etree.SubElement(x509_data, f"{_DS}X509Certificate").text = body
        descriptor.insert(position, key_descriptor)
        position += 1

    return etree.tostring(root, encoding="unicode")


def sign_metadata(
    metadata: str,
    key: str,
    cert: str,
    sign_algorithm: str = SignatureAlgorithm.RSA_SHA256,
    digest_algorithm: str = DigestAlgorithm.SHA256,
) -> str:
    """Sign the metadata document with an enveloped signature."""
    return add_signature(metadata, key, cert, sign_algorithm, digest_algorithm)
