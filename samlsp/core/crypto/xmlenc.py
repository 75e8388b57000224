"""XML Encryption for SAML identifiers and assertions.

Decrypts ``xenc:EncryptedData`` produced by IdPs (RSA key transport with
AES-CBC, AES-GCM or 3DES content encryption) and encrypts NameIDs for
outbound LogoutRequests. Every decryption failure surfaces as the same
error so responses cannot be used as a padding or key oracle.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.decrepit.ciphers.algorithms import TripleDES
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives import padding as sym_padding
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from lxml import etree

from samlsp.core.crypto.certs import (
    CertificateLoadError,
    KeyLoadError,
    load_pem_certificate,
    load_pem_private_key,
)
from samlsp.core.saml import constants as const
from samlsp.core.saml.errors import SAMLValidationError, ValidationErrorKind
from samlsp.core.saml.utils import load_xml, query

logger = logging.getLogger(__name__)

_XENC = f"{{{const.NS_XENC}}}"
_DS = f"{{{const.NS_DS}}}"

# Content encryption algorithm -> (key size in bytes, mode)
_DATA_CIPHERS: dict[str, tuple[int, str]] = {
    const.AES128_CBC: (16, "cbc"),
    const.AES192_CBC: (24, "cbc"),
    const.AES256_CBC: (32, "cbc"),
    const.AES128_GCM: (16, "gcm"),
    const.AES192_GCM: (24, "gcm"),
    const.AES256_GCM: (32, "gcm"),
    const.TRIPLEDES_CBC: (24, "3des"),
}

_DIGESTS: dict[str, type[hashes.HashAlgorithm]] = {
    const.DigestAlgorithm.SHA1: hashes.SHA1,
    const.DigestAlgorithm.SHA256: hashes.SHA256,
    const.DigestAlgorithm.SHA384: hashes.SHA384,
    const.DigestAlgorithm.SHA512: hashes.SHA512,
}

_MGF_DIGESTS: dict[str, type[hashes.HashAlgorithm]] = {
    "http://www.w3.org/2009/xmlenc11#mgf1sha1": hashes.SHA1,
    "http://www.w3.org/2009/xmlenc11#mgf1sha224": hashes.SHA224,
    "http://www.w3.org/2009/xmlenc11#mgf1sha256": hashes.SHA256,
    "http://www.w3.org/2009/xmlenc11#mgf1sha384": hashes.SHA384,
    "http://www.w3.org/2009/xmlenc11#mgf1sha512": hashes.SHA512,
}

GCM_IV_SIZE = 12
GCM_TAG_SIZE = 16


def _decryption_failed() -> SAMLValidationError:
    return SAMLValidationError("Failed to decrypt the EncryptedData", ValidationErrorKind.DECRYPTION_FAILED)


def _cipher_value(element: etree._Element) -> bytes:
    nodes = query(element, "./xenc:CipherData/xenc:CipherValue")
    if not nodes or not nodes[0].text:
        raise _decryption_failed()
    try:
        return base64.b64decode("".join(nodes[0].text.split()))
    except (binascii.Error, ValueError) as e:
        raise _decryption_failed() from e


def _find_encrypted_key(encrypted_data: etree._Element) -> etree._Element:
    """Locate the EncryptedKey that wraps the content key."""
    nodes = query(encrypted_data, "./ds:KeyInfo/xenc:EncryptedKey")
    if nodes:
        return nodes[0]

    retrieval = query(encrypted_data, "./ds:KeyInfo/ds:RetrievalMethod")
    parent = encrypted_data.getparent()
    if retrieval:
        if retrieval[0].get("Type") != const.XMLENC_ENCRYPTED_KEY:
            raise SAMLValidationError(
                "Unsupported Retrieval Method found", ValidationErrorKind.UNSUPPORTED_RETRIEVAL_METHOD
            )
        key_id = (retrieval[0].get("URI") or "").lstrip("#")
        scope = parent if parent is not None else encrypted_data
        for candidate in query(scope, ".//xenc:EncryptedKey"):
            if candidate.get("Id") == key_id:
                return candidate
    elif parent is not None:
        siblings = query(parent, "./xenc:EncryptedKey")
        if siblings:
            return siblings[0]

    raise SAMLValidationError(
        "Unable to locate key for the EncryptedData",
        ValidationErrorKind.KEYINFO_NOT_FOUND_IN_ENCRYPTED_DATA,
    )


def _key_transport_padding(encrypted_key: etree._Element) -> padding.AsymmetricPadding:
    method = query(encrypted_key, "./xenc:EncryptionMethod")
    algorithm = method[0].get("Algorithm") if method else None

    if algorithm == const.RSA_1_5:
        return padding.PKCS1v15()

    if algorithm in (const.RSA_OAEP_MGF1P, const.RSA_OAEP):
        digest_nodes = query(method[0], "./ds:DigestMethod")
        digest_uri = digest_nodes[0].get("Algorithm") if digest_nodes else const.DigestAlgorithm.SHA1
        digest_cls = _DIGESTS.get(digest_uri)
        if digest_cls is None:
            raise SAMLValidationError(
                "Unsupported OAEP digest %s", ValidationErrorKind.KEY_ALGORITHM_ERROR, digest_uri
            )

        mgf_cls: type[hashes.HashAlgorithm] = hashes.SHA1
        if algorithm == const.RSA_OAEP:
            mgf_nodes = method[0].xpath("./xenc11:MGF", namespaces={"xenc11": const.NS_XENC11})
            if mgf_nodes:
                mgf_uri = mgf_nodes[0].get("Algorithm")
                if mgf_uri not in _MGF_DIGESTS:
                    raise SAMLValidationError(
                        "Unsupported OAEP mask generation function %s",
                        ValidationErrorKind.KEY_ALGORITHM_ERROR,
                        mgf_uri,
                    )
                mgf_cls = _MGF_DIGESTS[mgf_uri]

        label_nodes = query(method[0], "./xenc:OAEPparams")
        label = base64.b64decode(label_nodes[0].text) if label_nodes and label_nodes[0].text else None
        return padding.OAEP(mgf=padding.MGF1(algorithm=mgf_cls()), algorithm=digest_cls(), label=label)

    raise SAMLValidationError(
        "Algorithm mismatch between input key and key in message: %s",
        ValidationErrorKind.KEY_ALGORITHM_ERROR,
        algorithm,
    )


def _substitute_key(encrypted_key_value: bytes, private_key: rsa.RSAPrivateKey, size: int) -> bytes:
    """Deterministic stand-in for a session key that failed to unwrap."""
    spki = private_key.public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    derived = hashlib.sha1(encrypted_key_value + hashlib.sha1(spki).digest()).digest()
    return derived[:size].ljust(size, b"\0")


def _decrypt_content(cipher_value: bytes, session_key: bytes, mode: str) -> bytes:
    if mode == "gcm":
        iv, payload = cipher_value[:GCM_IV_SIZE], cipher_value[GCM_IV_SIZE:]
        if len(payload) < GCM_TAG_SIZE:
            raise _decryption_failed()
        return AESGCM(session_key).decrypt(iv, payload, None)

    algorithm = TripleDES(session_key) if mode == "3des" else algorithms.AES(session_key)
    block_size = algorithm.block_size // 8
    iv, payload = cipher_value[:block_size], cipher_value[block_size:]
    if not payload or len(payload) % block_size:
        raise _decryption_failed()
    decryptor = Cipher(algorithm, modes.CBC(iv)).decryptor()
    plaintext = decryptor.update(payload) + decryptor.finalize()

    # XML-Enc padding: only the final byte (pad length) is significant
    pad_length = plaintext[-1]
    if pad_length < 1 or pad_length > block_size:
        raise _decryption_failed()
    return plaintext[:-pad_length]


def decrypt_element(encrypted_data: etree._Element, key: str) -> etree._Element:
    """Decrypt an EncryptedData element with the SP private key.

    Args:
        encrypted_data: ``xenc:EncryptedData``, or a wrapper such as
            ``saml:EncryptedID`` / ``saml:EncryptedAssertion`` holding one.
        key: SP private key (PEM).

    Returns:
        The decrypted element.

    Raises:
        SAMLValidationError: MISSING_ENCRYPTED_ELEMENT, KEY_ALGORITHM_ERROR,
            KEYINFO_NOT_FOUND_IN_ENCRYPTED_DATA, UNSUPPORTED_RETRIEVAL_METHOD
            or DECRYPTION_FAILED.
    """
    if encrypted_data.tag != f"{_XENC}EncryptedData":
        nodes = query(encrypted_data, "./xenc:EncryptedData")
        if not nodes:
            raise SAMLValidationError(
                "No EncryptedData element found", ValidationErrorKind.MISSING_ENCRYPTED_ELEMENT
            )
        encrypted_data = nodes[0]

    try:
        private_key = load_pem_private_key(key)
    except KeyLoadError as e:
        raise SAMLValidationError(
            "Unable to load the SP private key: %s", ValidationErrorKind.KEY_ALGORITHM_ERROR, e
        ) from e
    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise SAMLValidationError(
            "Only RSA keys can decrypt EncryptedData", ValidationErrorKind.KEY_ALGORITHM_ERROR
        )

    method = query(encrypted_data, "./xenc:EncryptionMethod")
    data_algorithm = method[0].get("Algorithm") if method else None
    if data_algorithm not in _DATA_CIPHERS:
        raise SAMLValidationError(
            "Unsupported data encryption algorithm: %s",
            ValidationErrorKind.KEY_ALGORITHM_ERROR,
            data_algorithm,
        )
    key_size, mode = _DATA_CIPHERS[data_algorithm]

    encrypted_key = _find_encrypted_key(encrypted_data)
    transport_padding = _key_transport_padding(encrypted_key)
    encrypted_key_value = _cipher_value(encrypted_key)

    try:
        session_key = private_key.decrypt(encrypted_key_value, transport_padding)
    except ValueError:
        session_key = b""
    if len(session_key) != key_size:
        logger.debug("Session key did not unwrap to %d bytes, using substitute key", key_size)
        session_key = _substitute_key(encrypted_key_value, private_key, key_size)

    try:
        plaintext = _decrypt_content(_cipher_value(encrypted_data), session_key, mode)
        wrapped = (
            f'<root xmlns:saml="{const.NS_SAML}" xmlns:xsi="{const.NS_XSI}">'
            f"{plaintext.decode('utf-8')}</root>"
        )
        root = load_xml(wrapped)
    except (InvalidTag, ValueError, UnicodeDecodeError, SAMLValidationError) as e:
        raise _decryption_failed() from e

    if len(root) == 0:
        raise _decryption_failed()
    decrypted = root[0]
    root.remove(decrypted)
    return decrypted


def encrypt_element(element: etree._Element, cert: str) -> etree._Element:
    """Encrypt an element for the holder of ``cert``.

    Uses AES-128-CBC for the content and RSA-OAEP-MGF1P for the key.

    Raises:
        SAMLValidationError: KEY_ALGORITHM_ERROR if the certificate is
            unusable or does not carry an RSA key.
    """
    try:
        public_key = load_pem_certificate(cert).public_key()
    except CertificateLoadError as e:
        raise SAMLValidationError(
            "Unable to load the encryption certificate: %s", ValidationErrorKind.KEY_ALGORITHM_ERROR, e
        ) from e
    if not isinstance(public_key, rsa.RSAPublicKey):
        raise SAMLValidationError(
            "Only RSA certificates can be used for encryption", ValidationErrorKind.KEY_ALGORITHM_ERROR
        )

    session_key = os.urandom(16)
    iv = os.urandom(16)
    padder = sym_padding.PKCS7(128).padder()
    padded = padder.update(etree.tostring(element)) + padder.finalize()
    encryptor = Cipher(algorithms.AES(session_key), modes.CBC(iv)).encryptor()
    cipher_text = iv + encryptor.update(padded) + encryptor.finalize()

    wrapped_key = public_key.encrypt(
        session_key,
        padding.OAEP(mgf=padding.MGF1(algorithm=hashes.SHA1()), algorithm=hashes.SHA1(), label=None),
    )

    nsmap = {"xenc": const.NS_XENC, "ds": const.NS_DS}
    encrypted_data = etree.Element(
        f"{_XENC}EncryptedData", {"Type": const.XMLENC_ELEMENT}, nsmap=nsmap
    )
    etree.SubElement(encrypted_data, f"{_XENC}EncryptionMethod", Algorithm=const.AES128_CBC)

    key_info = etree.SubElement(encrypted_data, f"{_DS}KeyInfo")
    encrypted_key = etree.SubElement(key_info, f"{_XENC}EncryptedKey")
    key_method = etree.SubElement(encrypted_key, f"{_XENC}EncryptionMethod", Algorithm=const.RSA_OAEP_MGF1P)
    etree.SubElement(key_method, f"{_DS}DigestMethod", Algorithm=const.DigestAlgorithm.SHA1)
    key_cipher_data = etree.SubElement(encrypted_key, f"{_XENC}CipherData")
    etree.SubElement(key_cipher_data, f"{_XENC}CipherValue").text = base64.b64encode(wrapped_key).decode("ascii")

    cipher_data = etree.SubElement(encrypted_data, f"{_XENC}CipherData")
    etree.SubElement(cipher_data, f"{_XENC}CipherValue").text = base64.b64encode(cipher_text).decode("ascii")
    return encrypted_data
