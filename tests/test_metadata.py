"""Tests for SP metadata generation and validation."""

import pytest
from lxml import etree

from samlsp.core.saml.constants import NS_MD
from samlsp.core.saml.errors import SAMLError, SAMLErrorKind
from samlsp.core.saml.signature import verify_signature
from samlsp.core.saml.utils import load_xml, now, parse_time_to_saml, query

from conftest import ACS_URL, SLS_URL, SP_ENTITY_ID

MD = f"{{{NS_MD}}}"


def descriptor(metadata):
    return load_xml(metadata).find(f"{MD}SPSSODescriptor")


class TestGetSpMetadata:
    """Tests for the rendered EntityDescriptor."""

    def test_entity_descriptor(self, settings):
        """Test entity ID, endpoints and flags."""
        root = load_xml(settings.get_sp_metadata())
        assert root.get("entityID") == SP_ENTITY_ID
        assert root.get("cacheDuration") == "PT604800S"

        sp = root.find(f"{MD}SPSSODescriptor")
        assert sp.get("AuthnRequestsSigned") == "false"
        assert sp.get("WantAssertionsSigned") == "false"
        assert sp.find(f"{MD}AssertionConsumerService").get("Location") == ACS_URL
        assert sp.find(f"{MD}SingleLogoutService").get("Location") == SLS_URL
        assert sp.find(f"{MD}NameIDFormat").text == "urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress"

    def test_organization_and_contacts(self, settings):
        """Test that organization and contact details are published."""
        root = load_xml(settings.get_sp_metadata())
        assert root.find(f"{MD}Organization/{MD}OrganizationDisplayName").text == "SP Example"
        assert root.find(f"{MD}ContactPerson").get("contactType") == "technical"

    def test_signing_key_descriptor_only(self, settings):
        """Test that only a signing descriptor is published when nothing is encrypted."""
        uses = [kd.get("use") for kd in descriptor(settings.get_sp_metadata()).findall(f"{MD}KeyDescriptor")]
        assert uses == ["signing"]

    def test_encryption_key_descriptor(self, make_settings, settings):
        """Test that expecting encrypted content publishes the encryption key."""
        encrypted = make_settings({"wantAssertionsEncrypted": True})
        uses = [kd.get("use") for kd in descriptor(encrypted.get_sp_metadata()).findall(f"{MD}KeyDescriptor")]
        assert uses == ["signing", "encryption"]

        forced = settings.get_sp_metadata(always_publish_encryption_cert=True)
        assert len(descriptor(forced).findall(f"{MD}KeyDescriptor")) == 2

    def test_rollover_certificate_first(self, make_settings, rogue_keys):
        """Test that the new certificate is published alongside the current one."""
        settings = make_settings(sp={"x509certNew": rogue_keys.cert})
        certs = query(load_xml(settings.get_sp_metadata()), ".//md:KeyDescriptor//ds:X509Certificate")
        assert len(certs) == 2
        assert certs[0].text == "".join(rogue_keys.cert.splitlines()[1:-1])

    def test_valid_until(self, settings):
        """Test explicit validity and cache duration."""
        valid_until = now() + 3600
        root = load_xml(settings.get_sp_metadata(valid_until=valid_until, cache_duration=60))
        assert root.get("validUntil") == parse_time_to_saml(valid_until)
        assert root.get("cacheDuration") == "PT60S"

    def test_attribute_consuming_service(self, make_settings):
        """Test requested attributes in metadata."""
        settings = make_settings(
            sp={
                "attributeConsumingService": {
                    "serviceName": "Portal",
                    "requestedAttributes": [
                        {"name": "mail", "isRequired": True, "friendlyName": "Email"},
                    ],
                }
            }
        )
        sp = descriptor(settings.get_sp_metadata())
        requested = sp.find(f"{MD}AttributeConsumingService/{MD}RequestedAttribute")
        assert requested.get("Name") == "mail"
        assert requested.get("isRequired") == "true"
        assert requested.get("FriendlyName") == "Email"
        assert settings.validate_metadata(settings.get_sp_metadata()) == []

    def test_signed_metadata(self, make_settings, sp_keys):
        """Test that signMetadata produces a verifiable signature."""
        settings = make_settings({"signMetadata": True})
        metadata = settings.get_sp_metadata()
        assert verify_signature(metadata, cert=sp_keys.cert)
        assert settings.validate_metadata(metadata) == []

    def test_sign_metadata_from_files(self, make_settings, sp_keys, tmp_path):
        """Test signing with key and certificate files from the cert directory."""
        (tmp_path / "metadata.key").write_text(sp_keys.key)
        (tmp_path / "metadata.crt").write_text(sp_keys.cert)
        settings = make_settings({"signMetadata": {"keyFileName": "metadata.key", "certFileName": "metadata.crt"}})
        assert verify_signature(settings.get_sp_metadata(), cert=sp_keys.cert)

    def test_sign_metadata_missing_file(self, make_settings):
        """Test that a missing signing key file is reported."""
        settings = make_settings({"signMetadata": {"keyFileName": "none.key", "certFileName": "none.crt"}})
        with pytest.raises(SAMLError) as exc_info:
            settings.get_sp_metadata()
        assert exc_info.value.kind == SAMLErrorKind.PRIVATE_KEY_FILE_NOT_FOUND


class TestValidateMetadata:
    """Tests for metadata validation tokens."""

    def test_generated_metadata_is_valid(self, settings):
        """Test that generated metadata passes validation."""
        assert settings.validate_metadata(settings.get_sp_metadata()) == []

    def test_empty_input(self, settings):
        """Test that empty input raises."""
        with pytest.raises(SAMLError) as exc_info:
            settings.validate_metadata("")
        assert exc_info.value.kind == SAMLErrorKind.METADATA_SP_INVALID

    def test_unloaded_and_invalid_xml(self, settings):
        """Test the schema tokens."""
        assert settings.validate_metadata("<not xml") == ["unloaded_xml"]
        bad = f'<md:EntityDescriptor xmlns:md="{NS_MD}"/>'
        assert settings.validate_metadata(bad) == ["invalid_xml"]

    def test_not_entity_descriptor(self, settings):
        """Test that another root element is refused."""
        xml = (
            f'<md:EntitiesDescriptor xmlns:md="{NS_MD}">'
            f'<md:EntityDescriptor entityID="{SP_ENTITY_ID}">'
            f'<md:SPSSODescriptor protocolSupportEnumeration="urn:oasis:names:tc:SAML:2.0:protocol">'
            f'<md:AssertionConsumerService Binding="urn:x" Location="{ACS_URL}" index="1"/>'
            "</md:SPSSODescriptor></md:EntityDescriptor></md:EntitiesDescriptor>"
        )
        assert settings.validate_metadata(xml) == ["noEntityDescriptor_xml"]

    def test_only_sp_descriptor_allowed(self, settings):
        """Test that metadata with two SP descriptors is refused."""
        metadata = settings.get_sp_metadata()
        root = load_xml(metadata)
        sp = root.find(f"{MD}SPSSODescriptor")
        sp.addnext(load_xml(metadata).find(f"{MD}SPSSODescriptor"))
        assert settings.validate_metadata(etree.tostring(root)) == ["onlySPSSODescriptor_allowed_xml"]

    def test_expired(self, settings):
        """Test that expired metadata is reported."""
        metadata = settings.get_sp_metadata(valid_until=now() - 60)
        assert settings.validate_metadata(metadata) == ["expired_xml"]
