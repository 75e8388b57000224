"""SAML error taxonomy.

Two families:
- SAMLError: configuration or usage problems. Raised and expected to
  propagate to the caller.
- SAMLValidationError: a received message failed a check. Raised inside the
  validators and caught at the ``is_valid`` boundary, where it becomes the
  message's ``error`` / ``error_kind``.
"""

from __future__ import annotations

from enum import StrEnum


class SAMLErrorKind(StrEnum):
    """Kinds of configuration errors."""

    SETTINGS_FILE_NOT_FOUND = "settings_file_not_found"
    SETTINGS_INVALID_SYNTAX = "settings_invalid_syntax"
    SETTINGS_INVALID = "settings_invalid"
    METADATA_SP_INVALID = "metadata_sp_invalid"
    CERT_NOT_FOUND = "cert_not_found"
    REDIRECT_INVALID_URL = "redirect_invalid_url"
    PUBLIC_CERT_FILE_NOT_FOUND = "public_cert_file_not_found"
    PRIVATE_KEY_FILE_NOT_FOUND = "private_key_file_not_found"
    SAML_RESPONSE_NOT_FOUND = "saml_response_not_found"
    SAML_LOGOUTMESSAGE_NOT_FOUND = "saml_logoutmessage_not_found"
    SAML_LOGOUTREQUEST_INVALID = "saml_logoutrequest_invalid"
    SAML_LOGOUTRESPONSE_INVALID = "saml_logoutresponse_invalid"
    SAML_SINGLE_LOGOUT_NOT_SUPPORTED = "saml_single_logout_not_supported"
    PRIVATE_KEY_NOT_FOUND = "private_key_not_found"
    UNSUPPORTED_SETTINGS_OBJECT = "unsupported_settings_object"
    INVALID_TIME_FORMAT = "invalid_time_format"
    INVALID_MESSAGE_STATE = "invalid_message_state"


class ValidationErrorKind(StrEnum):
    """Kinds of validation failures on received messages."""

    UNSUPPORTED_SAML_VERSION = "unsupported_saml_version"
    MISSING_ID = "missing_id"
    WRONG_NUMBER_OF_ASSERTIONS = "wrong_number_of_assertions"
    MISSING_STATUS = "missing_status"
    MISSING_STATUS_CODE = "missing_status_code"
    STATUS_CODE_IS_NOT_SUCCESS = "status_code_is_not_success"
    WRONG_SIGNED_ELEMENT = "wrong_signed_element"
    ID_NOT_FOUND_IN_SIGNED_ELEMENT = "id_not_found_in_signed_element"
    DUPLICATED_ID_IN_SIGNED_ELEMENTS = "duplicated_id_in_signed_elements"
    INVALID_SIGNED_ELEMENT = "invalid_signed_element"
    DUPLICATED_REFERENCE_IN_SIGNED_ELEMENTS = "duplicated_reference_in_signed_elements"
    UNEXPECTED_SIGNED_ELEMENTS = "unexpected_signed_elements"
    WRONG_NUMBER_OF_SIGNATURES = "wrong_number_of_signatures"
    WRONG_NUMBER_OF_SIGNATURES_IN_RESPONSE = "wrong_number_of_signatures_in_response"
    WRONG_NUMBER_OF_SIGNATURES_IN_ASSERTION = "wrong_number_of_signatures_in_assertion"
    INVALID_XML_FORMAT = "invalid_xml_format"
    XXE_DETECTED = "xxe_detected"
    SCHEMA_VALIDATION_FAILED = "schema_validation_failed"
    WRONG_INRESPONSETO = "wrong_inresponseto"
    NO_ENCRYPTED_ASSERTION = "no_encrypted_assertion"
    NO_ENCRYPTED_NAMEID = "no_encrypted_nameid"
    MISSING_CONDITIONS = "missing_conditions"
    ASSERTION_TOO_EARLY = "assertion_too_early"
    ASSERTION_EXPIRED = "assertion_expired"
    WRONG_NUMBER_OF_AUTHSTATEMENTS = "wrong_number_of_authstatements"
    NO_ATTRIBUTESTATEMENT = "no_attributestatement"
    ENCRYPTED_ATTRIBUTES = "encrypted_attributes"
    WRONG_DESTINATION = "wrong_destination"
    EMPTY_DESTINATION = "empty_destination"
    WRONG_AUDIENCE = "wrong_audience"
    ISSUER_MULTIPLE_IN_RESPONSE = "issuer_multiple_in_response"
    ISSUER_NOT_FOUND_IN_ASSERTION = "issuer_not_found_in_assertion"
    WRONG_ISSUER = "wrong_issuer"
    SESSION_EXPIRED = "session_expired"
    WRONG_SUBJECTCONFIRMATION = "wrong_subjectconfirmation"
    NO_SIGNED_MESSAGE = "no_signed_message"
    NO_SIGNED_ASSERTION = "no_signed_assertion"
    NO_SIGNATURE_FOUND = "no_signature_found"
    KEYINFO_NOT_FOUND_IN_ENCRYPTED_DATA = "keyinfo_not_found_in_encrypted_data"
    UNSUPPORTED_RETRIEVAL_METHOD = "unsupported_retrieval_method"
    MISSING_ENCRYPTED_ELEMENT = "missing_encrypted_element"
    KEY_ALGORITHM_ERROR = "key_algorithm_error"
    DECRYPTION_FAILED = "decryption_failed"
    NO_NAMEID = "no_nameid"
    EMPTY_NAMEID = "empty_nameid"
    SP_NAME_QUALIFIER_NAME_MISMATCH = "sp_name_qualifier_name_mismatch"
    DUPLICATED_ATTRIBUTE_NAME_FOUND = "duplicated_attribute_name_found"
    INVALID_SIGNATURE = "invalid_signature"
    UNSUPPORTED_SIGNATURE_ALGORITHM = "unsupported_signature_algorithm"
    DEPRECATED_SIGNATURE_METHOD = "deprecated_signature_method"
    DEPRECATED_DIGEST_METHOD = "deprecated_digest_method"
    RESPONSE_EXPIRED = "response_expired"
    INVALID_MESSAGE = "invalid_message"


class _KindedError(Exception):
    """Exception carrying a kind and a %-style templated message."""

    def __init__(self, message: str, kind: StrEnum, *args: object) -> None:
        if args:
            message = message % args
        super().__init__(message)
        self.message = message
        self.kind = kind

    def __str__(self) -> str:
        return self.message


class SAMLError(_KindedError):
    """Configuration error; raised when work cannot proceed."""

    def __init__(
        self,
        message: str,
        kind: SAMLErrorKind = SAMLErrorKind.SETTINGS_INVALID,
        *args: object,
        errors: list[str] | None = None,
    ) -> None:
        super().__init__(message, kind, *args)
        self.errors = list(errors or [])


class SAMLValidationError(_KindedError):
    """A received message failed validation."""

    def __init__(
        self,
        message: str,
        kind: ValidationErrorKind = ValidationErrorKind.INVALID_MESSAGE,
        *args: object,
    ) -> None:
        super().__init__(message, kind, *args)
