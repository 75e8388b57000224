"""Tests for XML-DSig and Redirect-binding query signatures."""

import pytest

from samlsp.core.crypto.certs import calculate_x509_fingerprint
from samlsp.core.saml.constants import DigestAlgorithm, SignatureAlgorithm
from samlsp.core.saml.errors import SAMLError, SAMLErrorKind, SAMLValidationError, ValidationErrorKind
from samlsp.core.saml.signature import (
    add_signature,
    build_signed_query,
    extract_original_query_param,
    sign_query,
    verify_query_signature,
    verify_signature,
)
from samlsp.core.saml.utils import load_xml, query

from conftest import IDP_ENTITY_ID

LOGOUT_REQUEST = f"""<samlp:LogoutRequest xmlns:samlp="urn:oasis:names:tc:SAML:2.0:protocol"
    xmlns:saml="urn:oasis:names:tc:SAML:2.0:assertion"
    ID="_lr1" Version="2.0" IssueInstant="2024-01-01T00:00:00Z">
    <saml:Issuer>{IDP_ENTITY_ID}</saml:Issuer>
    <saml:NameID>user@example.com</saml:NameID>
</samlp:LogoutRequest>"""


class TestAddSignature:
    """Tests for enveloped signing."""

    def test_signature_follows_issuer(self, idp_keys):
        """Test that ds:Signature is placed right after the Issuer."""
        signed = load_xml(add_signature(LOGOUT_REQUEST, idp_keys.key, idp_keys.cert))
        children = [child.tag.split("}")[1] for child in signed]
        assert children[:2] == ["Issuer", "Signature"]

    def test_reference_and_algorithms(self, idp_keys):
        """Test the reference URI and default SHA-256 algorithms."""
        signed = load_xml(add_signature(LOGOUT_REQUEST, idp_keys.key, idp_keys.cert))
        reference = query(signed, "./ds:Signature/ds:SignedInfo/ds:Reference")[0]
        assert reference.get("URI") == "#_lr1"
        method = query(signed, "./ds:Signature/ds:SignedInfo/ds:SignatureMethod")[0]
        assert method.get("Algorithm") == SignatureAlgorithm.RSA_SHA256

    def test_element_without_id(self, idp_keys):
        """Test that a root without ID cannot be signed."""
        with pytest.raises(SAMLError) as exc_info:
            add_signature("<root/>", idp_keys.key, idp_keys.cert)
        assert exc_info.value.kind == SAMLErrorKind.SETTINGS_INVALID


class TestVerifySignature:
    """Tests for enveloped signature verification."""

    def test_valid_signature(self, idp_keys):
        """Test that a signature verifies with the signing certificate."""
        signed = add_signature(LOGOUT_REQUEST, idp_keys.key, idp_keys.cert)
        assert verify_signature(signed, cert=idp_keys.cert)

    def test_wrong_certificate(self, idp_keys, rogue_keys):
        """Test that another certificate does not verify."""
        signed = add_signature(LOGOUT_REQUEST, idp_keys.key, idp_keys.cert)
        assert not verify_signature(signed, cert=rogue_keys.cert)

    def test_multi_certs_tried_in_order(self, idp_keys, rogue_keys):
        """Test that any trusted certificate can verify."""
        signed = add_signature(LOGOUT_REQUEST, idp_keys.key, idp_keys.cert)
        assert verify_signature(signed, multi_certs=[rogue_keys.cert, idp_keys.cert])

    def test_fingerprint_of_embedded_certificate(self, idp_keys, rogue_keys):
        """Test verification through the embedded certificate's fingerprint."""
        signed = add_signature(LOGOUT_REQUEST, idp_keys.key, idp_keys.cert)
        good = calculate_x509_fingerprint(idp_keys.cert, "sha256")
        bad = calculate_x509_fingerprint(rogue_keys.cert, "sha256")
        assert verify_signature(signed, fingerprint=good, fingerprint_algorithm="sha256")
        assert not verify_signature(signed, fingerprint=bad, fingerprint_algorithm="sha256")

    def test_tampered_content(self, idp_keys):
        """Test that changing signed content breaks the signature."""
        signed = add_signature(LOGOUT_REQUEST, idp_keys.key, idp_keys.cert)
        tampered = signed.replace("user@example.com", "admin@example.com")
        assert not verify_signature(tampered, cert=idp_keys.cert)

    def test_unsigned_document(self, idp_keys):
        """Test that a missing signature is reported."""
        with pytest.raises(SAMLValidationError) as exc_info:
            verify_signature(LOGOUT_REQUEST, cert=idp_keys.cert)
        assert exc_info.value.kind == ValidationErrorKind.NO_SIGNATURE_FOUND

    def test_deprecated_algorithm(self, idp_keys):
        """Test that SHA-1 is accepted unless deprecated algorithms are rejected."""
        signed = add_signature(
            LOGOUT_REQUEST,
            idp_keys.key,
            idp_keys.cert,
            SignatureAlgorithm.RSA_SHA1,
            DigestAlgorithm.SHA1,
        )
        assert verify_signature(signed, cert=idp_keys.cert)
        with pytest.raises(SAMLValidationError) as exc_info:
            verify_signature(signed, cert=idp_keys.cert, reject_deprecated_algorithm=True)
        assert exc_info.value.kind == ValidationErrorKind.DEPRECATED_SIGNATURE_METHOD

    def test_reference_to_another_element(self, idp_keys):
        """Test that a reference not pointing at the parent is rejected."""
        signed = add_signature(LOGOUT_REQUEST, idp_keys.key, idp_keys.cert)
        moved = signed.replace('ID="_lr1"', 'ID="_other"', 1)
        with pytest.raises(SAMLValidationError) as exc_info:
            verify_signature(moved, cert=idp_keys.cert)
        assert exc_info.value.kind == ValidationErrorKind.INVALID_SIGNED_ELEMENT


class TestQuerySignature:
    """Tests for HTTP-Redirect binding signatures."""

    def test_signed_query_octets(self):
        """Test the exact octet string covered by the signature."""
        signed = build_signed_query("SAMLRequest", "a+b/c=", "/home", SignatureAlgorithm.RSA_SHA256)
        assert signed == (
            "SAMLRequest=a%2Bb%2Fc%3D&RelayState=%2Fhome"
            "&SigAlg=http%3A%2F%2Fwww.w3.org%2F2001%2F04%2Fxmldsig-more%23rsa-sha256"
        )
        lower = build_signed_query("SAMLRequest", "a/b", lowercase_urlencoding=True)
        assert lower.startswith("SAMLRequest=a%2fb&SigAlg=http%3a%2f%2f")

    def test_sign_query_parameter_order(self, idp_keys):
        """Test that the parameters come back in wire order."""
        params = sign_query("SAMLResponse", "abc", idp_keys.key, relay_state="/home")
        assert list(params) == ["SAMLResponse", "RelayState", "SigAlg", "Signature"]
        assert params["SigAlg"] == SignatureAlgorithm.RSA_SHA256

    def test_sign_query_unsupported_algorithm(self, idp_keys):
        """Test that DSA cannot be used for query signatures."""
        with pytest.raises(SAMLError):
            sign_query("SAMLRequest", "abc", idp_keys.key, sig_alg=SignatureAlgorithm.DSA_SHA1)

    def test_verify_round_trip(self, idp_keys, settings):
        """Test that a query signed by the IdP verifies against its certificate."""
        params = sign_query("SAMLRequest", "abc", idp_keys.key, relay_state="state")
        assert verify_query_signature("SAMLRequest", params, settings.idp)

        params["RelayState"] = "other"
        assert not verify_query_signature("SAMLRequest", params, settings.idp)

    def test_verify_rejects_foreign_key(self, rogue_keys, settings):
        """Test that a query signed by another key fails."""
        params = sign_query("SAMLRequest", "abc", rogue_keys.key)
        assert not verify_query_signature("SAMLRequest", params, settings.idp)

    def test_verify_deprecated_algorithm(self, idp_keys, settings):
        """Test that rsa-sha1 is refused when deprecated algorithms are rejected."""
        params = sign_query("SAMLRequest", "abc", idp_keys.key, sig_alg=SignatureAlgorithm.RSA_SHA1)
        assert verify_query_signature("SAMLRequest", params, settings.idp)
        with pytest.raises(SAMLValidationError) as exc_info:
            verify_query_signature("SAMLRequest", params, settings.idp, reject_deprecated_algorithm=True)
        assert exc_info.value.kind == ValidationErrorKind.DEPRECATED_SIGNATURE_METHOD

    def test_verify_from_raw_query(self, idp_keys, settings):
        """Test verification against the parameters as they appeared on the wire."""
        params = sign_query("SAMLRequest", "a/b", idp_keys.key, lowercase_urlencoding=True)
        raw = build_signed_query("SAMLRequest", "a/b", lowercase_urlencoding=True)
        raw += "&Signature=" + params["Signature"]

        assert not verify_query_signature("SAMLRequest", params, settings.idp)
        assert verify_query_signature(
            "SAMLRequest",
            params,
            settings.idp,
            query_string=raw,
            retrieve_parameters_from_server=True,
        )

    def test_extract_original_query_param(self):
        """Test reading a parameter without decoding it."""
        assert extract_original_query_param("SAMLRequest=a%2fb&SigAlg=x", "SAMLRequest") == "a%2fb"
        assert extract_original_query_param("SAMLRequest=a", "RelayState") == ""
