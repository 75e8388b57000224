"""SAML AuthnRequest generation for SP-initiated SSO."""

from __future__ import annotations

import logging

from samlsp.core.saml.constants import AC_PASSWORD_PROTECTED, CM_BEARER, NameIDFormat
from samlsp.core.saml.errors import SAMLErrorKind
from samlsp.core.saml.message import SAMLMessage, xml_escape
from samlsp.core.saml.utils import generate_unique_id, now, parse_time_to_saml

logger = logging.getLogger(__name__)


class AuthnRequest(SAMLMessage):
    """An outbound SAML AuthnRequest."""

    message_name = "AuthnRequest"
    parameter = "SAMLRequest"
    invalid_kind = SAMLErrorKind.SETTINGS_INVALID

    def build(
        self,
        force_authn: bool = False,
        is_passive: bool = False,
        set_name_id_policy: bool = True,
        name_id_value_req: str | None = None,
    ) -> None:
        """Generate the AuthnRequest XML.

        Args:
            force_authn: Request fresh authentication even if the user has a session.
            is_passive: Request passive authentication (no user interaction).
            set_name_id_policy: Include a NameIDPolicy element.
            name_id_value_req: Ask the IdP to authenticate this subject.
        """
        self._require_outbound()
        sp = self.settings.get_sp_data()
        security = self.settings.get_security_data()

        self.id = generate_unique_id()
        issue_instant = parse_time_to_saml(now())
        destination = self.settings.get_idp_sso_url() or ""

        attrs = ""
        provider_name = self._provider_name()
        if provider_name:
            attrs += f'\n    ProviderName="{xml_escape(provider_name)}"'
        if force_authn:
            attrs += '\n    ForceAuthn="true"'
        if is_passive:
            attrs += '\n    IsPassive="true"'

        subject = ""
        if name_id_value_req:
            subject = f"""
    <saml:Subject>
        <saml:NameID Format="{xml_escape(sp.name_id_format)}">{xml_escape(name_id_value_req)}</saml:NameID>
        <saml:SubjectConfirmation Method="{CM_BEARER}"/>
    </saml:Subject>"""

        name_id_policy = ""
        if set_name_id_policy:
            name_id_format = sp.name_id_format
            if security.want_name_id_encrypted:
                name_id_format = NameIDFormat.ENCRYPTED
            name_id_policy = (
                f'\n    <samlp:NameIDPolicy Format="{xml_escape(name_id_format)}" AllowCreate="true"/>'
            )

        self._xml = f"""<samlp:AuthnRequest
    xmlns:samlp="urn:oasis:names:tc:SAML:2.0:protocol"
    xmlns:saml="urn:oasis:names:tc:SAML:2.0:assertion"
    ID="{self.id}"
    Version="2.0"{attrs}
    IssueInstant="{issue_instant}"
    Destination="{xml_escape(destination)}"
    ProtocolBinding="{xml_escape(sp.assertion_consumer_service.binding)}"
    AssertionConsumerServiceURL="{xml_escape(sp.assertion_consumer_service.url)}">
    <saml:Issuer>{xml_escape(sp.entity_id)}</saml:Issuer>{subject}{name_id_policy}{self._requested_authn_context()}
</samlp:AuthnRequest>"""
        logger.debug("Built AuthnRequest %s for %s", self.id, destination)

    def _provider_name(self) -> str | None:
        organization = self.settings.get_organization()
        if not organization:
            return None
        for info in organization:
            if info.lang == "en-US":
                return info.display_name
        return organization[0].display_name

    def _requested_authn_context(self) -> str:
        security = self.settings.get_security_data()
        requested = security.requested_authn_context
        if requested is True:
            contexts = [AC_PASSWORD_PROTECTED]
        elif isinstance(requested, list | tuple) and requested:
            contexts = list(requested)
        else:
            return ""

        refs = "".join(
            f"\n        <saml:AuthnContextClassRef>{xml_escape(context)}</saml:AuthnContextClassRef>"
            for context in contexts
        )
        comparison = xml_escape(security.requested_authn_context_comparison)
        return f"""
    <samlp:RequestedAuthnContext Comparison="{comparison}">{refs}
    </samlp:RequestedAuthnContext>"""

    def get_request(self, deflate: bool | None = None) -> str:
        """Encode the built request for the wire.

        Args:
            deflate: Deflate before base64. Defaults to the ``compress.requests``
                setting. The HTTP-POST binding must not deflate.
        """
        if deflate is None:
            deflate = self.settings.should_compress_requests()
        return self._encode(deflate)
