"""Pytest configuration and fixtures.

Keys and certificates are generated once per session. The ``idp`` fixture
plays the Identity Provider: it builds Responses and logout messages the
way an IdP would, signed with the IdP key and encrypted for the SP.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import pytest
from lxml import etree

from samlsp.core.crypto import xmlenc
from samlsp.core.crypto.certs import (
    generate_private_key,
    generate_self_signed_certificate,
    get_certificate_pem,
    get_private_key_pem,
)
from samlsp.core.saml.constants import CM_BEARER, NS_SAML, NameIDFormat, StatusCode
from samlsp.core.saml.settings import Settings
from samlsp.core.saml.signature import add_signature, sign_query
from samlsp.core.saml.utils import (
    RequestData,
    b64encode,
    deflate_and_base64_encode,
    generate_unique_id,
    load_xml,
    now,
    parse_time_to_saml,
)

SP_ENTITY_ID = "https://sp.example.com/saml/metadata"
ACS_URL = "https://sp.example.com/saml/acs"
SLS_URL = "https://sp.example.com/saml/sls"
IDP_ENTITY_ID = "https://idp.example.com/metadata"
IDP_SSO_URL = "https://idp.example.com/sso"
IDP_SLO_URL = "https://idp.example.com/slo"

DEFAULT_ATTRIBUTES = [
    ("urn:oid:0.9.2342.19200300.100.1.3", "mail", ["user@example.com"]),
    ("groups", None, ["staff", "admins"]),
]


@dataclass
class KeyPair:
    """PEM private key and certificate."""

    key: str
    cert: str


def _make_key_pair(common_name: str) -> KeyPair:
    private_key = generate_private_key()
    cert = generate_self_signed_certificate(private_key, common_name=common_name)
    return KeyPair(get_private_key_pem(private_key), get_certificate_pem(cert))


@pytest.fixture(scope="session")
def sp_keys() -> KeyPair:
    return _make_key_pair("sp.example.com")


@pytest.fixture(scope="session")
def idp_keys() -> KeyPair:
    return _make_key_pair("idp.example.com")


@pytest.fixture(scope="session")
def rogue_keys() -> KeyPair:
    """A key pair nobody trusts."""
    return _make_key_pair("attacker.example.com")


@pytest.fixture
def settings_data(sp_keys: KeyPair, idp_keys: KeyPair) -> dict[str, Any]:
    """A complete, valid settings mapping."""
    return {
        "strict": True,
        "debug": False,
        "sp": {
            "entityId": SP_ENTITY_ID,
            "assertionConsumerService": {"url": ACS_URL},
            "singleLogoutService": {"url": SLS_URL},
            "NameIDFormat": NameIDFormat.EMAIL_ADDRESS,
            "x509cert": sp_keys.cert,
            "privateKey": sp_keys.key,
        },
        "idp": {
            "entityId": IDP_ENTITY_ID,
            "singleSignOnService": {"url": IDP_SSO_URL},
            "singleLogoutService": {"url": IDP_SLO_URL},
            "x509cert": idp_keys.cert,
        },
        "security": {},
        "organization": {
            "en-US": {"name": "sp", "displayname": "SP Example", "url": "https://sp.example.com"},
        },
        "contactPerson": {
            "technical": {"givenName": "Tech", "emailAddress": "tech@example.com"},
        },
    }


@pytest.fixture
def make_settings(settings_data: dict[str, Any], tmp_path):
    """Factory for Settings with security flags or sections overridden."""

    def factory(security: dict[str, Any] | None = None, **overrides: Any) -> Settings:
        data = copy.deepcopy(settings_data)
        data["security"].update(security or {})
        for section, value in overrides.items():
            if isinstance(value, dict) and isinstance(data.get(section), dict):
                data[section].update(value)
            else:
                data[section] = value
        return Settings(data, cert_path=tmp_path)

    return factory


@pytest.fixture
def settings(make_settings) -> Settings:
    return make_settings()


def acs_request(response: str | None = None, **post_data: str) -> RequestData:
    """Request posted to the ACS."""
    if response is not None:
        post_data["SAMLResponse"] = response
    return RequestData(
        http_host="sp.example.com",
        https=True,
        script_name="/saml",
        path_info="/acs",
        request_uri="/saml/acs",
        post_data=post_data,
    )


def sls_request(get_data: dict[str, str]) -> RequestData:
    """Redirect-binding request to the SLS."""
    query_string = urlencode(get_data)
    return RequestData(
        http_host="sp.example.com",
        https=True,
        script_name="/saml",
        path_info="/sls",
        request_uri=f"/saml/sls?{query_string}",
        query_string=query_string,
        get_data=dict(get_data),
    )


def saml_time(offset: int) -> str:
    return parse_time_to_saml(now() + offset)


class IdentityProvider:
    """Builds the messages an IdP sends to the SP under test."""

    def __init__(self, keys: KeyPair, sp_keys: KeyPair) -> None:
        self.keys = keys
        self.sp_keys = sp_keys

    def _sign(self, xml: str, keys: KeyPair | None = None) -> str:
        keys = keys or self.keys
        return add_signature(xml, keys.key, keys.cert)

    def _name_id(
        self,
        value: str | None,
        name_id_format: str | None,
        sp_name_qualifier: str | None,
        encrypt: bool,
    ) -> str:
        if value is None:
            return ""
        attrs = f' Format="{name_id_format}"' if name_id_format else ""
        if sp_name_qualifier:
            attrs += f' SPNameQualifier="{sp_name_qualifier}"'
        xml = f'<saml:NameID xmlns:saml="{NS_SAML}"{attrs}>{value}</saml:NameID>'
        if not encrypt:
            return xml
        encrypted = xmlenc.encrypt_element(load_xml(xml), self.sp_keys.cert)
        return f"<saml:EncryptedID>{etree.tostring(encrypted, encoding='unicode')}</saml:EncryptedID>"

    def assertion(
        self,
        *,
        in_response_to: str | None = None,
        issuer: str | None = IDP_ENTITY_ID,
        name_id: str | None = "user@example.com",
        name_id_format: str | None = NameIDFormat.EMAIL_ADDRESS,
        sp_name_qualifier: str | None = None,
        encrypt_name_id: bool = False,
        audience: str | None = SP_ENTITY_ID,
        recipient: str = ACS_URL,
        confirmation_method: str = CM_BEARER,
        confirmation_not_on_or_after: int = 300,
        not_before: int = -60,
        not_on_or_after: int = 300,
        session_not_on_or_after: int | None = 3600,
        attributes: list[tuple[str, str | None, list[str]]] | None = None,
        attribute_statement: bool = True,
        sign: bool = True,
        signing_keys: KeyPair | None = None,
    ) -> str:
        assertion_id = generate_unique_id()
        irt = f' InResponseTo="{in_response_to}"' if in_response_to else ""
        issuer_xml = f"<saml:Issuer>{issuer}</saml:Issuer>" if issuer is not None else ""
        audience_xml = (
            f"<saml:AudienceRestriction><saml:Audience>{audience}</saml:Audience></saml:AudienceRestriction>"
            if audience
            else ""
        )
        session_xml = (
            f' SessionNotOnOrAfter="{saml_time(session_not_on_or_after)}"'
            if session_not_on_or_after is not None
            else ""
        )

        attribute_xml = ""
        if attribute_statement:
            items = ""
            for name, friendly_name, values in attributes if attributes is not None else DEFAULT_ATTRIBUTES:
                friendly = f' FriendlyName="{friendly_name}"' if friendly_name else ""
                items += f'<saml:Attribute Name="{name}"{friendly}>'
                items += "".join(
                    f'<saml:AttributeValue xsi:type="xs:string">{value}</saml:AttributeValue>' for value in values
                )
                items += "</saml:Attribute>"
            attribute_xml = f"<saml:AttributeStatement>{items}</saml:AttributeStatement>"

        xml = f"""<saml:Assertion xmlns:saml="{NS_SAML}"
    xmlns:xs="http://www.w3.org/2001/XMLSchema"
    xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance"
    ID="{assertion_id}" Version="2.0" IssueInstant="{saml_time(0)}">
    {issuer_xml}
    <saml:Subject>
        {self._name_id(name_id, name_id_format, sp_name_qualifier, encrypt_name_id)}
        <saml:SubjectConfirmation Method="{confirmation_method}">
            <saml:SubjectConfirmationData NotOnOrAfter="{saml_time(confirmation_not_on_or_after)}" Recipient="{recipient}"{irt}/>
        </saml:SubjectConfirmation>
    </saml:Subject>
    <saml:Conditions NotBefore="{saml_time(not_before)}" NotOnOrAfter="{saml_time(not_on_or_after)}">
        {audience_xml}
    </saml:Conditions>
    <saml:AuthnStatement AuthnInstant="{saml_time(0)}" SessionIndex="_session_{assertion_id}"{session_xml}>
        <saml:AuthnContext>
            <saml:AuthnContextClassRef>urn:oasis:names:tc:SAML:2.0:ac:classes:PasswordProtectedTransport</saml:AuthnContextClassRef>
        </saml:AuthnContext>
    </saml:AuthnStatement>
    {attribute_xml}
</saml:Assertion>"""
        if sign:
            xml = self._sign(xml, signing_keys)
        return xml

    def response(
        self,
        *,
        in_response_to: str | None = None,
        destination: str | None = ACS_URL,
        issuer: str | None = IDP_ENTITY_ID,
        status: str = StatusCode.SUCCESS,
        status_message: str | None = None,
        version: str = "2.0",
        assertions: int = 1,
        encrypt_assertion: bool = False,
        sign_response: bool = False,
        signing_keys: KeyPair | None = None,
        **assertion_options: Any,
    ) -> str:
        """A Response carrying one signed assertion unless told otherwise."""
        assertion_options.setdefault("in_response_to", in_response_to)
        assertion_xml = ""
        for _ in range(assertions):
            assertion = self.assertion(signing_keys=signing_keys, **assertion_options)
            if encrypt_assertion:
                encrypted = xmlenc.encrypt_element(load_xml(assertion), self.sp_keys.cert)
                assertion = (
                    "<saml:EncryptedAssertion>"
                    f"{etree.tostring(encrypted, encoding='unicode')}"
                    "</saml:EncryptedAssertion>"
                )
            assertion_xml += assertion

        irt = f' InResponseTo="{in_response_to}"' if in_response_to else ""
        dest = f' Destination="{destination}"' if destination is not None else ""
        issuer_xml = f"<saml:Issuer>{issuer}</saml:Issuer>" if issuer is not None else ""
        message = f"<samlp:StatusMessage>{status_message}</samlp:StatusMessage>" if status_message else ""

        xml = f"""<samlp:Response xmlns:samlp="urn:oasis:names:tc:SAML:2.0:protocol"
    xmlns:saml="{NS_SAML}"
    ID="{generate_unique_id()}" Version="{version}" IssueInstant="{saml_time(0)}"{dest}{irt}>
    {issuer_xml}
    <samlp:Status><samlp:StatusCode Value="{status}"/>{message}</samlp:Status>
    {assertion_xml}
</samlp:Response>"""
        if sign_response:
            xml = self._sign(xml, signing_keys)
        return xml

    def logout_response(
        self,
        in_response_to: str | None = None,
        *,
        destination: str | None = SLS_URL,
        issuer: str = IDP_ENTITY_ID,
        status: str = StatusCode.SUCCESS,
        sign: bool = False,
    ) -> str:
        irt = f' InResponseTo="{in_response_to}"' if in_response_to else ""
        dest = f' Destination="{destination}"' if destination is not None else ""
        xml = f"""<samlp:LogoutResponse xmlns:samlp="urn:oasis:names:tc:SAML:2.0:protocol"
    xmlns:saml="{NS_SAML}"
    ID="{generate_unique_id()}" Version="2.0" IssueInstant="{saml_time(0)}"{dest}{irt}>
    <saml:Issuer>{issuer}</saml:Issuer>
    <samlp:Status><samlp:StatusCode Value="{status}"/></samlp:Status>
</samlp:LogoutResponse>"""
        return self._sign(xml) if sign else xml

    def logout_request(
        self,
        name_id: str = "user@example.com",
        *,
        destination: str | None = SLS_URL,
        issuer: str = IDP_ENTITY_ID,
        session_indexes: tuple[str, ...] = ("_session_1",),
        not_on_or_after: int | None = None,
        encrypt_name_id: bool = False,
        sign: bool = False,
    ) -> str:
        dest = f' Destination="{destination}"' if destination is not None else ""
        expiry = f' NotOnOrAfter="{saml_time(not_on_or_after)}"' if not_on_or_after is not None else ""
        indexes = "".join(f"<samlp:SessionIndex>{index}</samlp:SessionIndex>" for index in session_indexes)
        name_id_xml = self._name_id(name_id, NameIDFormat.EMAIL_ADDRESS, None, encrypt_name_id)
        xml = f"""<samlp:LogoutRequest xmlns:samlp="urn:oasis:names:tc:SAML:2.0:protocol"
    xmlns:saml="{NS_SAML}"
    ID="{generate_unique_id()}" Version="2.0" IssueInstant="{saml_time(0)}"{dest}{expiry}>
    <saml:Issuer>{issuer}</saml:Issuer>
    {name_id_xml}{indexes}
</samlp:LogoutRequest>"""
        return self._sign(xml) if sign else xml

    def redirect_query(
        self,
        parameter: str,
        xml: str,
        relay_state: str | None = None,
        sign: bool = True,
        keys: KeyPair | None = None,
    ) -> dict[str, str]:
        """Decoded query parameters of a Redirect-binding message."""
        encoded = deflate_and_base64_encode(xml)
        if sign:
            return sign_query(parameter, encoded, (keys or self.keys).key, relay_state)
        params = {parameter: encoded}
        if relay_state is not None:
            params["RelayState"] = relay_state
        return params


@pytest.fixture
def idp(idp_keys: KeyPair, sp_keys: KeyPair) -> IdentityProvider:
    return IdentityProvider(idp_keys, sp_keys)


def post_encode(xml: str) -> str:
    """HTTP-POST binding encoding."""
    return b64encode(xml)
