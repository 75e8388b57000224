"""SAML Service Provider facade.

Ties the protocol messages together for an application: SP-initiated SSO
and SLO, processing of Responses and logout messages, and metadata. The
application supplies the current request as :class:`RequestData` and keeps
track of the request IDs it is waiting on.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from samlsp.core.logging import Direction, get_protocol_logger
from samlsp.core.saml.authn_request import AuthnRequest
from samlsp.core.saml.constants import BINDING_HTTP_POST, BINDING_HTTP_REDIRECT
from samlsp.core.saml.errors import SAMLError, SAMLErrorKind, SAMLValidationError, ValidationErrorKind
from samlsp.core.saml.logout import LogoutRequest, LogoutResponse, get_logout_status_description
from samlsp.core.saml.message import NameIdData, SAMLMessage
from samlsp.core.saml.response import Response
from samlsp.core.saml.settings import Settings
from samlsp.core.saml.signature import sign_query
from samlsp.core.saml.utils import RequestData, redirect

logger = logging.getLogger(__name__)

METADATA_CONTENT_TYPE = "text/xml"


class SAMLServiceProvider:
    """SAML Service Provider.

    This class handles:
    - Generating AuthnRequests for SP-Initiated SSO (Redirect or POST)
    - Processing SAML Responses
    - SP- and IdP-initiated Single Logout
    - Publishing SP metadata

    Errors of the last processed message are listed in ``errors`` (short
    tokens such as ``invalid_response``) with the detail in
    ``last_error_reason``.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.errors: list[str] = []
        self.last_error_reason: str | None = None
        self.last_error_kind: ValidationErrorKind | None = None
        self.last_request_id: str | None = None
        self.last_message_id: str | None = None
        self.last_assertion_id: str | None = None
        self.last_request_xml: str | None = None
        self.last_response_xml: str | None = None

        self.authenticated = False
        self.attributes: dict[str, list[Any]] = {}
        self.friendlyname_attributes: dict[str, list[Any]] = {}
        self.name_id_data: NameIdData | None = None
        self.session_index: str | None = None
        self.session_expiration: int | None = None
        self.authn_contexts: list[str] = []

    # Helpers

    def _reset_errors(self) -> None:
        self.errors = []
        self.last_error_reason = None
        self.last_error_kind = None

    def _fail(self, token: str, message: SAMLMessage) -> None:
        self.errors.append(token)
        self.last_error_reason = message.get_error()
        self.last_error_kind = message.error_kind

    def _record_logout_status(self, response: LogoutResponse) -> None:
        try:
            status = response.get_status_data()
        except SAMLValidationError as e:
            self.last_error_reason = e.message
            self.last_error_kind = e.kind
            return
        self.last_error_reason = status.message or get_logout_status_description(status.code)

    def _build_redirect(
        self,
        url: str,
        parameter: str,
        encoded: str,
        relay_state: str | None,
        sign: bool,
    ) -> str:
        """Build a Redirect-binding URL, signing the query when asked."""
        if sign:
            key = self.settings.get_sp_key()
            if not key:
                raise SAMLError(
                    "Trying to sign the %s but can't load the SP private key",
                    SAMLErrorKind.PRIVATE_KEY_NOT_FOUND,
                    parameter,
                )
            security = self.settings.get_security_data()
            parameters = sign_query(
                parameter,
                encoded,
                key,
                relay_state,
                security.signature_algorithm,
                security.lowercase_urlencoding,
            )
        else:
            parameters = {parameter: encoded}
            if relay_state is not None:
                parameters["RelayState"] = relay_state
        return redirect(url, parameters)

    # SSO

    def _authn_request(
        self,
        force_authn: bool,
        is_passive: bool,
        set_name_id_policy: bool,
        name_id_value_req: str | None,
    ) -> AuthnRequest:
        sso_url = self.settings.get_idp_sso_url()
        if not sso_url:
            raise SAMLError("IdP SSO URL not configured", SAMLErrorKind.SETTINGS_INVALID)
        request = AuthnRequest(self.settings)
        request.build(force_authn, is_passive, set_name_id_policy, name_id_value_req)
        self.last_request_id = request.id
        self.last_request_xml = request.get_xml()
        return request

    def login(
        self,
        return_to: str | None = None,
        force_authn: bool = False,
        is_passive: bool = False,
        set_name_id_policy: bool = True,
        name_id_value_req: str | None = None,
    ) -> str:
        """Start SP-initiated SSO over the HTTP-Redirect binding.

        Args:
            return_to: RelayState to preserve across the SSO flow.
            force_authn: Request fresh authentication even if the user has a session.
            is_passive: Request passive authentication (no user interaction).
            set_name_id_policy: Include a NameIDPolicy in the request.
            name_id_value_req: Subject the IdP should authenticate.

        Returns:
            Complete URL to redirect the user to.
        """
        request = self._authn_request(force_authn, is_passive, set_name_id_policy, name_id_value_req)
        url = self._build_redirect(
            self.settings.get_idp_sso_url(),
            "SAMLRequest",
            request.get_request(),
            return_to,
            self.settings.get_security_data().authn_requests_signed,
        )
        get_protocol_logger().record(
            Direction.OUTBOUND,
            "AuthnRequest",
            binding=BINDING_HTTP_REDIRECT,
            message_id=request.id,
            url=url,
            relay_state=return_to,
            xml=request.get_xml(),
        )
        return url

    def login_post(
        self,
        return_to: str | None = None,
        force_authn: bool = False,
        is_passive: bool = False,
        set_name_id_policy: bool = True,
        name_id_value_req: str | None = None,
    ) -> dict[str, Any]:
        """Start SP-initiated SSO over the HTTP-POST binding.

        The request carries an embedded signature when
        ``authnRequestsSigned`` is set.

        Returns:
            Dictionary with 'action' URL and 'fields' for form inputs.
        """
        request = self._authn_request(force_authn, is_passive, set_name_id_policy, name_id_value_req)
        if self.settings.get_security_data().authn_requests_signed:
            request.sign()
            self.last_request_xml = request.get_xml()

        fields = {"SAMLRequest": request.get_request(deflate=False)}
        if return_to is not None:
            fields["RelayState"] = return_to

        action = self.settings.get_idp_sso_url()
        get_protocol_logger().record(
            Direction.OUTBOUND,
            "AuthnRequest",
            binding=BINDING_HTTP_POST,
            message_id=request.id,
            url=action,
            relay_state=return_to,
            xml=request.get_xml(),
        )
        return {"action": action, "fields": fields}

    def process_response(self, request_data: RequestData, request_id: str | None = None) -> None:
        """Process the SAML Response posted to the ACS.

        On success ``authenticated`` is set and the NameID, attributes and
        session data are available; otherwise ``errors`` explains why.

        Args:
            request_data: The current request, with ``SAMLResponse`` in its POST data.
            request_id: ID of the AuthnRequest this Response should answer.

        Raises:
            SAMLError: SAML_RESPONSE_NOT_FOUND if no SAMLResponse was posted.
        """
        self._reset_errors()
        self.authenticated = False

        encoded = request_data.post_data.get("SAMLResponse")
        if not encoded:
            raise SAMLError(
                "SAML Response not found, Only supported HTTP_POST Binding",
                SAMLErrorKind.SAML_RESPONSE_NOT_FOUND,
            )

        response = Response(self.settings, encoded)
        self.last_response_xml = response.get_xml()
        valid = response.is_valid(request_data, request_id)
        get_protocol_logger().record(
            Direction.INBOUND,
            "Response",
            binding=BINDING_HTTP_POST,
            message_id=response.id,
            relay_state=request_data.post_data.get("RelayState"),
            xml=response.get_xml(),
            valid=valid,
            error=response.get_error(),
        )

        if not valid:
            self._fail("invalid_response", response)
            return

        self.last_message_id = response.id
        self.last_assertion_id = response.get_assertion_id()
        self.name_id_data = response.get_name_id_data()
        self.attributes = response.get_attributes()
        self.friendlyname_attributes = response.get_friendlyname_attributes()
        self.session_index = response.get_session_index()
        self.session_expiration = response.get_session_not_on_or_after()
        self.authn_contexts = response.get_authn_contexts()
        self.authenticated = True
        logger.info("Authenticated %s via Response %s", self.get_name_id(), response.id)

    def is_authenticated(self) -> bool:
        return self.authenticated

    def get_name_id(self) -> str | None:
        return self.name_id_data.value if self.name_id_data else None

    def get_attributes(self) -> dict[str, list[Any]]:
        return self.attributes

    def get_attribute(self, name: str) -> list[Any] | None:
        return self.attributes.get(name)

    # SLO

    def logout(
        self,
        return_to: str | None = None,
        name_id: str | None = None,
        session_index: str | list[str] | None = None,
        name_id_format: str | None = None,
        name_id_name_qualifier: str | None = None,
        name_id_sp_name_qualifier: str | None = None,
    ) -> str:
        """Start SP-initiated Single Logout over the HTTP-Redirect binding.

        Without an explicit ``name_id`` the subject of the last processed
        Response is used.

        Returns:
            Complete URL to redirect the user to.

        Raises:
            SAMLError: SAML_SINGLE_LOGOUT_NOT_SUPPORTED if the IdP has no SLO URL.
        """
        slo_url = self.settings.get_idp_slo_url()
        if not slo_url:
            raise SAMLError(
                "The IdP does not support Single Log Out",
                SAMLErrorKind.SAML_SINGLE_LOGOUT_NOT_SUPPORTED,
            )

        if name_id is None and self.name_id_data is not None:
            name_id = self.name_id_data.value
            name_id_format = name_id_format or self.name_id_data.format
            name_id_name_qualifier = name_id_name_qualifier or self.name_id_data.name_qualifier
            name_id_sp_name_qualifier = name_id_sp_name_qualifier or self.name_id_data.sp_name_qualifier
        if session_index is None:
            session_index = self.session_index

        request = LogoutRequest(self.settings)
        request.build(
            name_id=name_id,
            session_index=session_index,
            name_id_format=name_id_format,
            name_id_name_qualifier=name_id_name_qualifier,
            name_id_sp_name_qualifier=name_id_sp_name_qualifier,
        )
        self.last_request_id = request.id
        self.last_request_xml = request.get_xml()

        url = self._build_redirect(
            slo_url,
            "SAMLRequest",
            request.get_request(),
            return_to,
            self.settings.get_security_data().logout_request_signed,
        )
        get_protocol_logger().record(
            Direction.OUTBOUND,
            "LogoutRequest",
            binding=BINDING_HTTP_REDIRECT,
            message_id=request.id,
            url=url,
            relay_state=return_to,
            xml=request.get_xml(),
        )
        return url

    def process_slo(
        self,
        request_data: RequestData,
        request_id: str | None = None,
        keep_local_session: bool = False,
        delete_session_cb: Callable[[], None] | None = None,
        retrieve_parameters_from_server: bool = False,
    ) -> str | None:
        """Process a LogoutResponse or LogoutRequest received at the SLS.

        Args:
            request_data: The current request, with the message in its query.
            request_id: ID of the LogoutRequest a LogoutResponse should answer.
            keep_local_session: Do not call ``delete_session_cb``.
            delete_session_cb: Called to end the local session.
            retrieve_parameters_from_server: Verify query signatures against
                the raw query string.

        Returns:
            For an IdP-initiated LogoutRequest, the URL that carries our
            LogoutResponse back to the IdP. Otherwise None.

        Raises:
            SAMLError: SAML_LOGOUTMESSAGE_NOT_FOUND if neither message is present.
        """
        self._reset_errors()
        get_data = request_data.get_data

        if "SAMLResponse" in get_data:
            response = LogoutResponse(self.settings, get_data["SAMLResponse"])
            self.last_response_xml = response.get_xml()
            valid = response.is_valid(request_data, request_id, retrieve_parameters_from_server)
            get_protocol_logger().record(
                Direction.INBOUND,
                "LogoutResponse",
                binding=BINDING_HTTP_REDIRECT,
                message_id=response.id,
                relay_state=get_data.get("RelayState"),
                xml=response.get_xml(),
                valid=valid,
                error=response.get_error(),
            )
            if not valid:
                self._fail("invalid_logout_response", response)
            elif not response.is_success():
                self.errors.append("logout_not_success")
                self._record_logout_status(response)
            else:
                self.last_message_id = response.id
                if not keep_local_session and delete_session_cb is not None:
                    delete_session_cb()
            return None

        if "SAMLRequest" in get_data:
            request = LogoutRequest(self.settings, get_data["SAMLRequest"])
            self.last_request_xml = request.get_xml()
            valid = request.is_valid(request_data, retrieve_parameters_from_server=retrieve_parameters_from_server)
            get_protocol_logger().record(
                Direction.INBOUND,
                "LogoutRequest",
                binding=BINDING_HTTP_REDIRECT,
                message_id=request.id,
                relay_state=get_data.get("RelayState"),
                xml=request.get_xml(),
                valid=valid,
                error=request.get_error(),
            )
            if not valid:
                self._fail("invalid_logout_request", request)
                return None

            if not keep_local_session and delete_session_cb is not None:
                delete_session_cb()

            self.last_message_id = request.id
            response = LogoutResponse(self.settings)
            response.build(request.id)
            self.last_response_xml = response.get_xml()

            url = self._build_redirect(
                self.settings.get_idp_slo_response_url(),
                "SAMLResponse",
                response.get_response(),
                get_data.get("RelayState"),
                self.settings.get_security_data().logout_response_signed,
            )
            get_protocol_logger().record(
                Direction.OUTBOUND,
                "LogoutResponse",
                binding=BINDING_HTTP_REDIRECT,
                message_id=response.id,
                url=url,
                relay_state=get_data.get("RelayState"),
                xml=response.get_xml(),
            )
            return url

        raise SAMLError(
            "SAML LogoutRequest/LogoutResponse not found. Only supported HTTP_REDIRECT Binding",
            SAMLErrorKind.SAML_LOGOUTMESSAGE_NOT_FOUND,
        )

    # Metadata

    def get_metadata(self) -> tuple[str, str]:
        """Render the SP metadata and check it before it is published.

        Returns:
            The metadata XML and its content type.

        Raises:
            SAMLError: METADATA_SP_INVALID if the rendered metadata is invalid.
        """
        metadata = self.settings.get_sp_metadata()
        errors = self.settings.validate_metadata(metadata)
        if errors:
            raise SAMLError(
                "Invalid SP metadata: %s", SAMLErrorKind.METADATA_SP_INVALID, ", ".join(errors)
            )
        return metadata, METADATA_CONTENT_TYPE
