"""SAML signature module.

Enveloped XML-DSig signing and verification of protocol messages and
metadata (via signxml), plus the detached query-string signatures used by
the HTTP-Redirect binding (via cryptography).
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import quote_plus

from cryptography.exceptions import InvalidSignature as CryptoInvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from lxml import etree
from signxml import SignatureConfiguration, XMLSigner, XMLVerifier
from signxml.algorithms import (
    CanonicalizationMethod,
    DigestAlgorithm as SignxmlDigest,
    SignatureConstructionMethod,
    SignatureMethod as SignxmlSignatureMethod,
)
from signxml.exceptions import InvalidInput, InvalidSignature

from samlsp.core.crypto.certs import (
    CertificateLoadError,
    KeyLoadError,
    calculate_x509_fingerprint,
    format_cert,
    format_fingerprint,
    format_private_key,
    load_pem_certificate,
    load_pem_private_key,
)
from samlsp.core.saml.constants import (
    DEPRECATED_ALGORITHMS,
    NS_DS,
    DigestAlgorithm,
    SignatureAlgorithm,
)
from samlsp.core.saml.errors import (
    SAMLError,
    SAMLErrorKind,
    SAMLValidationError,
    ValidationErrorKind,
)
from samlsp.core.saml.utils import load_xml, query

if TYPE_CHECKING:
    from samlsp.core.saml.settings import IdentityProviderData

logger = logging.getLogger(__name__)

# Mapping of signature algorithm URIs to friendly names
SIGNATURE_ALGORITHMS: dict[str, str] = {
    SignatureAlgorithm.RSA_SHA1: "RSA-SHA1",
    SignatureAlgorithm.RSA_SHA256: "RSA-SHA256",
    SignatureAlgorithm.RSA_SHA384: "RSA-SHA384",
    SignatureAlgorithm.RSA_SHA512: "RSA-SHA512",
    SignatureAlgorithm.DSA_SHA1: "DSA-SHA1",
}

# Mapping of digest algorithm URIs to friendly names
DIGEST_ALGORITHMS: dict[str, str] = {
    DigestAlgorithm.SHA1: "SHA-1",
    DigestAlgorithm.SHA256: "SHA-256",
    DigestAlgorithm.SHA384: "SHA-384",
    DigestAlgorithm.SHA512: "SHA-512",
}

# Hashes used to verify Redirect-binding query signatures
_QUERY_SIGNATURE_HASHES: dict[str, type[hashes.HashAlgorithm]] = {
    SignatureAlgorithm.RSA_SHA1: hashes.SHA1,
    SignatureAlgorithm.RSA_SHA256: hashes.SHA256,
    SignatureAlgorithm.RSA_SHA384: hashes.SHA384,
    SignatureAlgorithm.RSA_SHA512: hashes.SHA512,
}

_DS = f"{{{NS_DS}}}"


@dataclass
class SignatureInfo:
    """Algorithms and reference declared by a ds:Signature element."""

    signature_algorithm: str | None = None
    signature_algorithm_name: str | None = None
    digest_algorithm: str | None = None
    digest_algorithm_name: str | None = None
    canonicalization_method: str | None = None
    reference_uri: str | None = None
    embedded_certificate: str | None = None


def _extract_signature_info(sig_elem: etree._Element) -> SignatureInfo:
    """Extract information about a signature element."""
    info = SignatureInfo()

    signed_info = sig_elem.find(f"{_DS}SignedInfo")
    if signed_info is not None:
        sig_method = signed_info.find(f"{_DS}SignatureMethod")
        if sig_method is not None:
            algo = sig_method.get("Algorithm")
            info.signature_algorithm = algo
            info.signature_algorithm_name = SIGNATURE_ALGORITHMS.get(algo or "", algo)

        c14n_method = signed_info.find(f"{_DS}CanonicalizationMethod")
        if c14n_method is not None:
            info.canonicalization_method = c14n_method.get("Algorithm")

        reference = signed_info.find(f"{_DS}Reference")
        if reference is not None:
            info.reference_uri = reference.get("URI")
            digest_method = reference.find(f"{_DS}DigestMethod")
            if digest_method is not None:
                digest = digest_method.get("Algorithm")
                info.digest_algorithm = digest
                info.digest_algorithm_name = DIGEST_ALGORITHMS.get(digest or "", digest)

    x509_cert = sig_elem.find(f"{_DS}KeyInfo/{_DS}X509Data/{_DS}X509Certificate")
    if x509_cert is not None and x509_cert.text:
        info.embedded_certificate = format_cert(x509_cert.text)

    return info


class _Signer(XMLSigner):
    """XMLSigner that also accepts the SHA-1 family when asked to."""

    def check_deprecated_methods(self) -> None:
        # Legacy IdPs still require rsa-sha1; the choice is made in settings
        pass


def add_signature(
    xml: str | bytes | etree._Element,
    key: str,
    cert: str,
    sign_algorithm: str = SignatureAlgorithm.RSA_SHA256,
    digest_algorithm: str = DigestAlgorithm.SHA256,
) -> str:
    """Add an enveloped signature over the root element.

    The signature covers the root through a ``#ID`` reference using exclusive
    canonicalization. It is placed right after ``saml:Issuer`` when the root
    has one, otherwise as the root's first child.

    Args:
        xml: Document to sign. Its root must carry an ``ID`` attribute.
        key: SP private key (PEM).
        cert: SP certificate (PEM) to embed in KeyInfo.
        sign_algorithm: Signature method URI.
        digest_algorithm: Digest method URI.

    Returns:
        The signed document serialized as a string.

    Raises:
        SAMLError: If the document, key or algorithms cannot be used.
    """
    if isinstance(xml, etree._Element):
        root = etree.fromstring(etree.tostring(xml))
    else:
        try:
            root = load_xml(xml)
        except SAMLValidationError as e:
            raise SAMLError("Error parsing the XML to sign: %s", SAMLErrorKind.SETTINGS_INVALID, e) from e

    element_id = root.get("ID")
    if not element_id:
        raise SAMLError("The element to sign has no ID attribute", SAMLErrorKind.SETTINGS_INVALID)

    placeholder = etree.Element(f"{_DS}Signature", {"Id": "placeholder"}, nsmap={"ds": NS_DS})
    issuer = query(root, "./saml:Issuer")
    if issuer:
        issuer[0].addnext(placeholder)
    else:
        root.insert(0, placeholder)

    try:
        legacy = sign_algorithm in DEPRECATED_ALGORITHMS or digest_algorithm in DEPRECATED_ALGORITHMS
        signer = (_Signer if legacy else XMLSigner)(
            method=SignatureConstructionMethod.enveloped,
            signature_algorithm=SignxmlSignatureMethod(sign_algorithm),
            digest_algorithm=SignxmlDigest(digest_algorithm),
            c14n_algorithm=CanonicalizationMethod.EXCLUSIVE_XML_CANONICALIZATION_1_0,
        )
        signed = signer.sign(
            root,
            key=format_private_key(key),
            cert=format_cert(cert),
            reference_uri=f"#{element_id}",
        )
    except (InvalidInput, ValueError) as e:
        raise SAMLError("Unable to sign the XML: %s", SAMLErrorKind.SETTINGS_INVALID, e) from e

    logger.debug("Signed <%s> %s with %s", etree.QName(root).localname, element_id, sign_algorithm)
    return etree.tostring(signed, encoding="unicode")


def _find_signature_nodes(dom: etree._Element, xpath: str | None) -> list[etree._Element]:
    if xpath:
        return query(dom, xpath)
    nodes = query(dom, "./ds:Signature")
    if not nodes:
        nodes = query(dom, "./saml:Assertion/ds:Signature")
    return nodes


def _check_signature_node(
    signature: etree._Element,
    info: SignatureInfo,
    reject_deprecated_algorithm: bool,
) -> None:
    """Reject algorithms and references that must never be verified."""
    if info.signature_algorithm not in SIGNATURE_ALGORITHMS:
        raise SAMLValidationError(
            "Unsupported signature algorithm: %s",
            ValidationErrorKind.UNSUPPORTED_SIGNATURE_ALGORITHM,
            info.signature_algorithm,
        )
    if info.digest_algorithm not in DIGEST_ALGORITHMS:
        raise SAMLValidationError(
            "Unsupported digest algorithm: %s",
            ValidationErrorKind.UNSUPPORTED_SIGNATURE_ALGORITHM,
            info.digest_algorithm,
        )
    if reject_deprecated_algorithm:
        if info.signature_algorithm in DEPRECATED_ALGORITHMS:
            raise SAMLValidationError(
                "Deprecated signature algorithm found: %s",
                ValidationErrorKind.DEPRECATED_SIGNATURE_METHOD,
                info.signature_algorithm,
            )
        if info.digest_algorithm in DEPRECATED_ALGORITHMS:
            raise SAMLValidationError(
                "Deprecated digest algorithm found: %s",
                ValidationErrorKind.DEPRECATED_DIGEST_METHOD,
                info.digest_algorithm,
            )

    parent = signature.getparent()
    parent_id = parent.get("ID") if parent is not None else None
    if not parent_id:
        raise SAMLValidationError(
            "Signed element has no ID attribute", ValidationErrorKind.ID_NOT_FOUND_IN_SIGNED_ELEMENT
        )
    if info.reference_uri and info.reference_uri != f"#{parent_id}":
        raise SAMLValidationError(
            "Found an invalid Signed Element. Reference %s does not point to %s",
            ValidationErrorKind.INVALID_SIGNED_ELEMENT,
            info.reference_uri,
            parent_id,
        )


def _verify_with(standalone: etree._Element, cert: str, config: SignatureConfiguration) -> bool:
    try:
        XMLVerifier().verify(standalone, x509_cert=format_cert(cert), expect_config=config)
    except (InvalidSignature, InvalidInput, ValueError) as e:
        logger.debug("Signature did not verify with candidate certificate: %s", e)
        return False
    return True


def verify_signature(
    xml: str | bytes | etree._Element,
    cert: str | None = None,
    fingerprint: str | None = None,
    fingerprint_algorithm: str = "sha1",
    xpath: str | None = None,
    multi_certs: Iterable[str] | None = None,
    reject_deprecated_algorithm: bool = False,
) -> bool:
    """Verify the enveloped signature of a message or assertion.

    Without ``xpath`` the signature is searched as a direct child of the
    root, then on a direct child Assertion. Candidates are tried in order:
    ``multi_certs`` when given (otherwise ``cert``), then the embedded
    certificate when its fingerprint matches ``fingerprint``.

    Args:
        xml: Signed document.
        cert: Trusted certificate (PEM).
        fingerprint: Trusted certificate fingerprint.
        fingerprint_algorithm: Digest used for the fingerprint.
        xpath: Location of the ds:Signature node to verify.
        multi_certs: Trusted certificates, tried in order.
        reject_deprecated_algorithm: Refuse SHA-1 based algorithms.

    Returns:
        True when some candidate verifies the signature, else False.

    Raises:
        SAMLValidationError: If there is not exactly one signature node, or
            it declares an algorithm or reference that cannot be accepted.
    """
    dom = xml if isinstance(xml, etree._Element) else load_xml(xml)

    nodes = _find_signature_nodes(dom, xpath)
    if not nodes:
        raise SAMLValidationError("Cannot locate Signature Node", ValidationErrorKind.NO_SIGNATURE_FOUND)
    if len(nodes) > 1:
        raise SAMLValidationError(
            "Expected exactly one Signature node, found %s",
            ValidationErrorKind.WRONG_NUMBER_OF_SIGNATURES,
            len(nodes),
        )

    signature = nodes[0]
    info = _extract_signature_info(signature)
    _check_signature_node(signature, info, reject_deprecated_algorithm)

    config = SignatureConfiguration(
        signature_methods=frozenset(SignxmlSignatureMethod),
        digest_algorithms=frozenset(SignxmlDigest),
    )
    if reject_deprecated_algorithm:
        config = SignatureConfiguration()

    # Serialize the signed element alone so ancestors cannot influence references
    standalone = load_xml(etree.tostring(signature.getparent()))

    candidates = list(multi_certs) if multi_certs else ([cert] if cert else [])
    for candidate in candidates:
        if candidate and _verify_with(standalone, candidate, config):
            return True

    if fingerprint and info.embedded_certificate:
        embedded_fingerprint = calculate_x509_fingerprint(info.embedded_certificate, fingerprint_algorithm)
        if embedded_fingerprint == format_fingerprint(fingerprint):
            return _verify_with(standalone, info.embedded_certificate, config)
        logger.debug("Embedded certificate fingerprint does not match the trusted fingerprint")

    return False


# HTTP-Redirect binding query signatures


def _urlencode(value: str, lowercase: bool = False) -> str:
    encoded = quote_plus(value, safe="")
    if lowercase:
        encoded = re.sub(r"%[0-9A-F]{2}", lambda m: m.group(0).lower(), encoded)
    return encoded


def extract_original_query_param(query_string: str, name: str) -> str:
    """Return a query parameter exactly as it appeared on the wire."""
    match = re.search(rf"(?:^|&){re.escape(name)}=([^&]*)", query_string or "")
    return match.group(1) if match else ""


def build_signed_query(
    message_type: str,
    message: str,
    relay_state: str | None = None,
    sig_alg: str = SignatureAlgorithm.RSA_SHA256,
    lowercase_urlencoding: bool = False,
) -> str:
    """Build the octet string covered by a Redirect-binding signature."""
    signed_query = f"{message_type}={_urlencode(message, lowercase_urlencoding)}"
    if relay_state is not None:
        signed_query += f"&RelayState={_urlencode(relay_state, lowercase_urlencoding)}"
    signed_query += f"&SigAlg={_urlencode(sig_alg, lowercase_urlencoding)}"
    return signed_query


def sign_query(
    message_type: str,
    message: str,
    key: str,
    relay_state: str | None = None,
    sig_alg: str = SignatureAlgorithm.RSA_SHA256,
    lowercase_urlencoding: bool = False,
) -> dict[str, str]:
    """Sign a Redirect-binding message.

    Returns:
        The query parameters to send, in wire order, including ``SigAlg``
        and ``Signature``.

    Raises:
        SAMLError: If the key is unusable or the algorithm is unsupported.
    """
    hash_cls = _QUERY_SIGNATURE_HASHES.get(sig_alg)
    if hash_cls is None:
        raise SAMLError("Unsupported signature algorithm: %s", SAMLErrorKind.SETTINGS_INVALID, sig_alg)

    try:
        private_key = load_pem_private_key(key)
    except KeyLoadError as e:
        raise SAMLError("Invalid SP private key: %s", SAMLErrorKind.PRIVATE_KEY_NOT_FOUND, e) from e
    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise SAMLError("Only RSA keys can sign Redirect-binding messages", SAMLErrorKind.SETTINGS_INVALID)

    signed_query = build_signed_query(message_type, message, relay_state, sig_alg, lowercase_urlencoding)
    signature = private_key.sign(signed_query.encode("utf-8"), padding.PKCS1v15(), hash_cls())

    params = {message_type: message}
    if relay_state is not None:
        params["RelayState"] = relay_state
    params["SigAlg"] = sig_alg
    params["Signature"] = base64.b64encode(signature).decode("ascii")
    return params


def verify_query_signature(
    message_type: str,
    get_data: Mapping[str, str],
    idp_data: IdentityProviderData,
    query_string: str = "",
    retrieve_parameters_from_server: bool = False,
    lowercase_urlencoding: bool = False,
    reject_deprecated_algorithm: bool = False,
) -> bool:
    """Verify the detached signature of a Redirect-binding message.

    Args:
        message_type: ``SAMLRequest`` or ``SAMLResponse``.
        get_data: Decoded query parameters.
        idp_data: IdP settings providing the trusted certificate(s).
        query_string: Raw query string, used with ``retrieve_parameters_from_server``.
        retrieve_parameters_from_server: Rebuild the signed string from the raw
            query instead of re-encoding the decoded values.
        lowercase_urlencoding: Re-encode with lowercase escapes (ADFS).
        reject_deprecated_algorithm: Refuse rsa-sha1.

    Returns:
        True when one of the IdP signing certificates verifies the signature.

    Raises:
        SAMLError: CERT_NOT_FOUND if the IdP has no signing certificate.
        SAMLValidationError: If SigAlg is unsupported or deprecated.
    """
    message_label = "Logout Request" if message_type == "SAMLRequest" else "Logout Response"

    certs = list(idp_data.x509cert_multi.signing) if idp_data.x509cert_multi.signing else []
    if not certs:
        if not idp_data.x509cert:
            raise SAMLError(
                "In order to validate the sign on the %s, the x509cert of the IdP is required",
                SAMLErrorKind.CERT_NOT_FOUND,
                message_label,
            )
        certs = [idp_data.x509cert]

    sig_alg = get_data.get("SigAlg") or SignatureAlgorithm.RSA_SHA1
    hash_cls = _QUERY_SIGNATURE_HASHES.get(sig_alg)
    if hash_cls is None:
        raise SAMLValidationError(
            "Invalid signAlg in the received %s", ValidationErrorKind.INVALID_SIGNATURE, message_label
        )
    if reject_deprecated_algorithm and sig_alg in DEPRECATED_ALGORITHMS:
        raise SAMLValidationError(
            "Deprecated signature algorithm found: %s",
            ValidationErrorKind.DEPRECATED_SIGNATURE_METHOD,
            sig_alg,
        )

    if retrieve_parameters_from_server:
        signed_query = f"{message_type}={extract_original_query_param(query_string, message_type)}"
        if "RelayState" in get_data:
            signed_query += f"&RelayState={extract_original_query_param(query_string, 'RelayState')}"
        signed_query += f"&SigAlg={extract_original_query_param(query_string, 'SigAlg')}"
    else:
        signed_query = build_signed_query(
            message_type,
            get_data.get(message_type, ""),
            get_data.get("RelayState"),
            sig_alg,
            lowercase_urlencoding,
        )

    try:
        signature = base64.b64decode(get_data.get("Signature", ""))
    except (binascii.Error, ValueError):
        return False

    for cert in certs:
        try:
            public_key = load_pem_certificate(cert).public_key()
        except CertificateLoadError as e:
            logger.warning("Skipping unreadable IdP signing certificate: %s", e)
            continue
        if not isinstance(public_key, rsa.RSAPublicKey):
            continue
        try:
            public_key.verify(signature, signed_query.encode("utf-8"), padding.PKCS1v15(), hash_cls())
        except CryptoInvalidSignature:
            continue
        return True
    return False
