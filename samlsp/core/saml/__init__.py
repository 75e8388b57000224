"""SAML 2.0 Service Provider toolkit."""

from samlsp.core.saml.authn_request import AuthnRequest
from samlsp.core.saml.constants import (
    BINDING_HTTP_POST,
    BINDING_HTTP_REDIRECT,
    NameIDFormat,
    StatusCode,
)
from samlsp.core.saml.errors import (
    SAMLError,
    SAMLErrorKind,
    SAMLValidationError,
    ValidationErrorKind,
)
from samlsp.core.saml.logout import (
    LogoutRequest,
    LogoutResponse,
    get_logout_status_description,
)
from samlsp.core.saml.message import NameIdData
from samlsp.core.saml.response import Response
from samlsp.core.saml.settings import Settings
from samlsp.core.saml.signature import (
    add_signature,
    sign_query,
    verify_query_signature,
    verify_signature,
)
from samlsp.core.saml.sp import SAMLServiceProvider
from samlsp.core.saml.utils import RequestData

__all__ = [
    # Constants
    "BINDING_HTTP_POST",
    "BINDING_HTTP_REDIRECT",
    "NameIDFormat",
    "StatusCode",
    # Errors
    "SAMLError",
    "SAMLErrorKind",
    "SAMLValidationError",
    "ValidationErrorKind",
    # Messages
    "AuthnRequest",
    "LogoutRequest",
    "LogoutResponse",
    "NameIdData",
    "Response",
    "get_logout_status_description",
    # Settings and request
    "RequestData",
    "Settings",
    # Signature
    "add_signature",
    "sign_query",
    "verify_query_signature",
    "verify_signature",
    # SP
    "SAMLServiceProvider",
]
