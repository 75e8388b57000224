"""Tests for XML Encryption of NameIDs and assertions."""

import base64
import os

import pytest
from cryptography.hazmat.decrepit.ciphers.algorithms import TripleDES
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import padding as sym_padding
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from lxml import etree

from samlsp.core.crypto.certs import load_pem_certificate
from samlsp.core.crypto.xmlenc import decrypt_element, encrypt_element
from samlsp.core.saml.constants import (
    AES128_CBC,
    AES128_GCM,
    AES256_CBC,
    AES256_GCM,
    NS_DS,
    NS_SAML,
    NS_XENC,
    RSA_1_5,
    RSA_OAEP_MGF1P,
    TRIPLEDES_CBC,
    XMLENC_ELEMENT,
    XMLENC_ENCRYPTED_KEY,
)
from samlsp.core.saml.errors import SAMLValidationError, ValidationErrorKind
from samlsp.core.saml.utils import load_xml, query

NAME_ID = f'<saml:NameID xmlns:saml="{NS_SAML}" Format="urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress">user@example.com</saml:NameID>'


def encrypted_id(cert):
    """An EncryptedID wrapping a NameID encrypted for ``cert``."""
    wrapper = etree.Element(f"{{{NS_SAML}}}EncryptedID", nsmap={"saml": NS_SAML})
    wrapper.append(encrypt_element(load_xml(NAME_ID), cert))
    return wrapper


def _cbc(algorithm, block_size, plaintext):
    iv = os.urandom(block_size)
    padder = sym_padding.PKCS7(block_size * 8).padder()
    encryptor = Cipher(algorithm, modes.CBC(iv)).encryptor()
    return iv + encryptor.update(padder.update(plaintext) + padder.finalize()) + encryptor.finalize()


def encrypt_content(data_algorithm, plaintext):
    """Session key and CipherValue bytes for ``plaintext``, the way an IdP encrypts."""
    if data_algorithm in (AES128_GCM, AES256_GCM):
        session_key = os.urandom(16 if data_algorithm == AES128_GCM else 32)
        iv = os.urandom(12)
        return session_key, iv + AESGCM(session_key).encrypt(iv, plaintext, None)
    if data_algorithm == TRIPLEDES_CBC:
        session_key = os.urandom(24)
        return session_key, _cbc(TripleDES(session_key), 8, plaintext)
    session_key = os.urandom(16 if data_algorithm == AES128_CBC else 32)
    return session_key, _cbc(algorithms.AES(session_key), 16, plaintext)


def idp_encrypted_id(cert, data_algorithm, key_algorithm=RSA_OAEP_MGF1P, key_reference=None):
    """An EncryptedID built by hand from ``cryptography`` primitives.

    With ``key_reference`` the EncryptedKey sits beside the EncryptedData
    under that Id and KeyInfo points to it through a RetrievalMethod.
    """
    session_key, cipher_value = encrypt_content(data_algorithm, NAME_ID.encode())
    public_key = load_pem_certificate(cert).public_key()
    if key_algorithm == RSA_1_5:
        wrapped = public_key.encrypt(session_key, padding.PKCS1v15())
    else:
        oaep = padding.OAEP(mgf=padding.MGF1(algorithm=hashes.SHA1()), algorithm=hashes.SHA1(), label=None)
        wrapped = public_key.encrypt(session_key, oaep)

    key_id = f' Id="{key_reference}"' if key_reference else ""
    encrypted_key = (
        f"<xenc:EncryptedKey{key_id}>"
        f'<xenc:EncryptionMethod Algorithm="{key_algorithm}"/>'
        f"<xenc:CipherData><xenc:CipherValue>{base64.b64encode(wrapped).decode()}</xenc:CipherValue></xenc:CipherData>"
        "</xenc:EncryptedKey>"
    )
    if key_reference:
        key_info = f'<ds:RetrievalMethod URI="#{key_reference}" Type="{XMLENC_ENCRYPTED_KEY}"/>'
    else:
        key_info = encrypted_key
    return load_xml(
        f'<saml:EncryptedID xmlns:saml="{NS_SAML}" xmlns:xenc="{NS_XENC}" xmlns:ds="{NS_DS}">'
        f'<xenc:EncryptedData Type="{XMLENC_ELEMENT}">'
        f'<xenc:EncryptionMethod Algorithm="{data_algorithm}"/>'
        f"<ds:KeyInfo>{key_info}</ds:KeyInfo>"
        f"<xenc:CipherData><xenc:CipherValue>{base64.b64encode(cipher_value).decode()}</xenc:CipherValue></xenc:CipherData>"
        "</xenc:EncryptedData>"
        f"{encrypted_key if key_reference else ''}"
        "</saml:EncryptedID>"
    )


class TestEncryptElement:
    """Tests for outbound encryption."""

    def test_structure(self, sp_keys):
        """Test the EncryptedData layout."""
        encrypted = encrypt_element(load_xml(NAME_ID), sp_keys.cert)
        assert query(encrypted, "./xenc:EncryptionMethod")[0].get("Algorithm") == AES128_CBC
        assert query(encrypted, "./ds:KeyInfo/xenc:EncryptedKey/xenc:CipherData/xenc:CipherValue")
        assert b"user@example.com" not in etree.tostring(encrypted)

    def test_bad_certificate(self):
        """Test that an unreadable certificate is reported."""
        with pytest.raises(SAMLValidationError) as exc_info:
            encrypt_element(load_xml(NAME_ID), "garbage")
        assert exc_info.value.kind == ValidationErrorKind.KEY_ALGORITHM_ERROR


class TestDecryptElement:
    """Tests for decryption with the SP key."""

    def test_decrypts_wrapper(self, sp_keys):
        """Test decrypting through the EncryptedID wrapper."""
        name_id = decrypt_element(encrypted_id(sp_keys.cert), sp_keys.key)
        assert etree.QName(name_id).localname == "NameID"
        assert name_id.text == "user@example.com"
        assert name_id.getparent() is None

    def test_wrong_key_is_generic_failure(self, sp_keys, rogue_keys):
        """Test that a wrong key yields the same error as corrupt data."""
        with pytest.raises(SAMLValidationError) as exc_info:
            decrypt_element(encrypted_id(sp_keys.cert), rogue_keys.key)
        assert exc_info.value.kind == ValidationErrorKind.DECRYPTION_FAILED

    def test_corrupt_cipher_value(self, sp_keys):
        """Test that a damaged ciphertext fails to decrypt."""
        wrapper = encrypted_id(sp_keys.cert)
        value = query(wrapper, "./xenc:EncryptedData/xenc:CipherData/xenc:CipherValue")[0]
        value.text = "AAAA" + value.text[4:]
        with pytest.raises(SAMLValidationError) as exc_info:
            decrypt_element(wrapper, sp_keys.key)
        assert exc_info.value.kind == ValidationErrorKind.DECRYPTION_FAILED

    def test_missing_encrypted_data(self, sp_keys):
        """Test that a wrapper without EncryptedData is rejected."""
        wrapper = etree.Element(f"{{{NS_SAML}}}EncryptedID")
        with pytest.raises(SAMLValidationError) as exc_info:
            decrypt_element(wrapper, sp_keys.key)
        assert exc_info.value.kind == ValidationErrorKind.MISSING_ENCRYPTED_ELEMENT

    def test_missing_key_info(self, sp_keys):
        """Test that EncryptedData without a reachable key is rejected."""
        wrapper = encrypted_id(sp_keys.cert)
        key_info = query(wrapper, "./xenc:EncryptedData/ds:KeyInfo")[0]
        key_info.getparent().remove(key_info)
        with pytest.raises(SAMLValidationError) as exc_info:
            decrypt_element(wrapper, sp_keys.key)
        assert exc_info.value.kind == ValidationErrorKind.KEYINFO_NOT_FOUND_IN_ENCRYPTED_DATA

    def test_unsupported_data_algorithm(self, sp_keys):
        """Test that an unknown content cipher is refused."""
        wrapper = encrypted_id(sp_keys.cert)
        method = query(wrapper, "./xenc:EncryptedData/xenc:EncryptionMethod")[0]
        method.set("Algorithm", "http://example.com/rot13")
        with pytest.raises(SAMLValidationError) as exc_info:
            decrypt_element(wrapper, sp_keys.key)
        assert exc_info.value.kind == ValidationErrorKind.KEY_ALGORITHM_ERROR


class TestIdPEncryptionAlgorithms:
    """Tests for the key transport and content ciphers IdPs use."""

    @pytest.mark.parametrize(
        "data_algorithm, key_algorithm",
        [
            (AES256_CBC, RSA_1_5),
            (AES128_GCM, RSA_OAEP_MGF1P),
            (AES256_GCM, RSA_1_5),
            (TRIPLEDES_CBC, RSA_OAEP_MGF1P),
        ],
    )
    def test_decrypts(self, sp_keys, data_algorithm, key_algorithm):
        """Test decrypting each supported content cipher and key transport."""
        wrapper = idp_encrypted_id(sp_keys.cert, data_algorithm, key_algorithm)
        name_id = decrypt_element(wrapper, sp_keys.key)
        assert name_id.text == "user@example.com"

    def test_tampered_gcm_tag(self, sp_keys):
        """Test that a modified GCM ciphertext fails authentication."""
        wrapper = idp_encrypted_id(sp_keys.cert, AES128_GCM)
        value = query(wrapper, "./xenc:EncryptedData/xenc:CipherData/xenc:CipherValue")[0]
        raw = bytearray(base64.b64decode(value.text))
        raw[-1] ^= 0x01
        value.text = base64.b64encode(bytes(raw)).decode()
        with pytest.raises(SAMLValidationError) as exc_info:
            decrypt_element(wrapper, sp_keys.key)
        assert exc_info.value.kind == ValidationErrorKind.DECRYPTION_FAILED

    def test_rsa_1_5_wrong_key_is_generic_failure(self, sp_keys, rogue_keys):
        """Test that an RSA-1_5 key that fails to unwrap is not distinguishable."""
        wrapper = idp_encrypted_id(sp_keys.cert, AES256_CBC, RSA_1_5)
        with pytest.raises(SAMLValidationError) as exc_info:
            decrypt_element(wrapper, rogue_keys.key)
        assert exc_info.value.kind == ValidationErrorKind.DECRYPTION_FAILED


class TestEncryptedKeyReference:
    """Tests for an EncryptedKey outside the EncryptedData."""

    def test_retrieval_method(self, sp_keys):
        """Test that a RetrievalMethod finds the EncryptedKey by Id."""
        wrapper = idp_encrypted_id(sp_keys.cert, AES128_CBC, key_reference="_key1")
        assert not query(wrapper, "./xenc:EncryptedData/ds:KeyInfo/xenc:EncryptedKey")
        assert decrypt_element(wrapper, sp_keys.key).text == "user@example.com"

    def test_retrieval_method_unknown_id(self, sp_keys):
        """Test that a RetrievalMethod pointing nowhere is rejected."""
        wrapper = idp_encrypted_id(sp_keys.cert, AES128_CBC, key_reference="_key1")
        query(wrapper, "./xenc:EncryptedData/ds:KeyInfo/ds:RetrievalMethod")[0].set("URI", "#_other")
        with pytest.raises(SAMLValidationError) as exc_info:
            decrypt_element(wrapper, sp_keys.key)
        assert exc_info.value.kind == ValidationErrorKind.KEYINFO_NOT_FOUND_IN_ENCRYPTED_DATA

    def test_unsupported_retrieval_type(self, sp_keys):
        """Test that a RetrievalMethod to anything but an EncryptedKey is refused."""
        wrapper = idp_encrypted_id(sp_keys.cert, AES128_CBC, key_reference="_key1")
        retrieval = query(wrapper, "./xenc:EncryptedData/ds:KeyInfo/ds:RetrievalMethod")[0]
        retrieval.set("Type", "http://www.w3.org/2000/09/xmldsig#X509Data")
        with pytest.raises(SAMLValidationError) as exc_info:
            decrypt_element(wrapper, sp_keys.key)
        assert exc_info.value.kind == ValidationErrorKind.UNSUPPORTED_RETRIEVAL_METHOD

    def test_sibling_key_without_key_info(self, sp_keys):
        """Test that an EncryptedKey beside the EncryptedData is used when KeyInfo is absent."""
        wrapper = idp_encrypted_id(sp_keys.cert, AES128_CBC, key_reference="_key1")
        key_info = query(wrapper, "./xenc:EncryptedData/ds:KeyInfo")[0]
        key_info.getparent().remove(key_info)
        assert decrypt_element(wrapper, sp_keys.key).text == "user@example.com"
