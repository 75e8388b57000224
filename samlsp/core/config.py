"""Settings file management.

Loads toolkit settings from YAML (or JSON) files and environment variables.
Environment variables take precedence over settings file values.
"""

from __future__ import annotations

import enum
import os
from pathlib import Path
from typing import Any

import yaml

from samlsp.core.saml.errors import SAMLError, SAMLErrorKind
from samlsp.core.saml.settings import Settings

# Default settings locations
DEFAULT_CONFIG_DIR = Path.home() / ".samlsp"
DEFAULT_SETTINGS_FILE = DEFAULT_CONFIG_DIR / "settings.yaml"

# Environment variable prefix
ENV_PREFIX = "SAMLSP_"


class _SettingsDumper(yaml.SafeDumper):
    """SafeDumper that writes enum members as their plain values."""


_SettingsDumper.add_multi_representer(enum.Enum, lambda dumper, member: dumper.represent_data(member.value))


def _get_env_bool(key: str, default: bool) -> bool:
    """Get a boolean from environment variable."""
    value = os.environ.get(key)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def load_settings_dict(settings_path: Path | str | None = None) -> dict[str, Any]:
    """Load raw settings from a file, applying environment overrides.

    Settings are resolved in this order (later values override earlier):
    1. The settings file
    2. ``SAMLSP_STRICT``, ``SAMLSP_DEBUG`` and ``SAMLSP_BASEURL``

    Args:
        settings_path: YAML or JSON settings file. Uses the default if not specified.

    Returns:
        The settings mapping, ready for :class:`Settings`.

    Raises:
        SAMLError: SETTINGS_FILE_NOT_FOUND if the file does not exist,
            SETTINGS_INVALID_SYNTAX if it does not parse to a mapping.
    """
    file_path = Path(settings_path) if settings_path else DEFAULT_SETTINGS_FILE
    if not file_path.is_file():
        raise SAMLError(
            "Settings file not found: %s", SAMLErrorKind.SETTINGS_FILE_NOT_FOUND, file_path
        )

    try:
        with open(file_path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise SAMLError(
            "Settings file %s could not be parsed: %s",
            SAMLErrorKind.SETTINGS_INVALID_SYNTAX,
            file_path,
            e,
        ) from e

    if not isinstance(data, dict):
        raise SAMLError(
            "Settings file %s does not contain a mapping",
            SAMLErrorKind.SETTINGS_INVALID_SYNTAX,
            file_path,
        )

    if f"{ENV_PREFIX}STRICT" in os.environ:
        data["strict"] = _get_env_bool(f"{ENV_PREFIX}STRICT", data.get("strict", True))

    if f"{ENV_PREFIX}DEBUG" in os.environ:
        data["debug"] = _get_env_bool(f"{ENV_PREFIX}DEBUG", data.get("debug", False))

    if os.environ.get(f"{ENV_PREFIX}BASEURL"):
        data["baseurl"] = os.environ[f"{ENV_PREFIX}BASEURL"]

    return data


def load_settings(
    settings_path: Path | str | None = None,
    cert_path: Path | str | None = None,
    schemas_path: Path | str | None = None,
    sp_validation_only: bool = False,
) -> Settings:
    """Load and validate settings from a file.

    The certificate directory is taken from ``cert_path``, then
    ``SAMLSP_CERT_DIR``, then the settings default.

    Raises:
        SAMLError: If the file is missing, unreadable, or the settings are invalid.
    """
    data = load_settings_dict(settings_path)
    if cert_path is None and os.environ.get(f"{ENV_PREFIX}CERT_DIR"):
        cert_path = Path(os.environ[f"{ENV_PREFIX}CERT_DIR"])
    return Settings(data, cert_path=cert_path, schemas_path=schemas_path, sp_validation_only=sp_validation_only)


def save_settings(data: dict[str, Any], settings_path: Path | None = None) -> Path:
    """Save raw settings to a YAML file.

    Returns:
        The path written.
    """
    save_path = settings_path or DEFAULT_SETTINGS_FILE
    save_path.parent.mkdir(parents=True, exist_ok=True)

    with open(save_path, "w") as f:
        yaml.dump(data, f, Dumper=_SettingsDumper, default_flow_style=False, sort_keys=False)
    return save_path


def get_default_settings_yaml() -> str:
    """Get a commented settings template as a string.

    Useful for generating example settings files.
    """
    return """\
# samlsp settings file
# Environment variables override some settings (prefix: SAMLSP_):
#   SAMLSP_STRICT, SAMLSP_DEBUG, SAMLSP_BASEURL, SAMLSP_CERT_DIR

# Reject unsigned or unexpected messages (keep enabled in production)
strict: true

# Include message detail in validation errors
debug: false

# Public base URL of the SP, used when behind a reverse proxy
# baseurl: "https://sp.example.com/saml/"

sp:
  entityId: "https://sp.example.com/saml/metadata"
  assertionConsumerService:
    url: "https://sp.example.com/saml/acs"
    binding: "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-POST"
  singleLogoutService:
    url: "https://sp.example.com/saml/sls"
    binding: "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-Redirect"
  NameIDFormat: "urn:oasis:names:tc:SAML:1.1:nameid-format:unspecified"
  # Inline PEM, or leave empty to read sp.crt / sp.key from the cert directory
  x509cert: ""
  privateKey: ""

idp:
  entityId: "https://idp.example.com/metadata"
  singleSignOnService:
    url: "https://idp.example.com/sso"
  singleLogoutService:
    url: "https://idp.example.com/slo"
    # responseUrl: "https://idp.example.com/slo/response"
  # One of x509cert, x509certMulti or certFingerprint is required
  x509cert: ""
  # certFingerprint: ""
  # certFingerprintAlgorithm: "sha1"

security:
  nameIdEncrypted: false
  authnRequestsSigned: false
  logoutRequestSigned: false
  logoutResponseSigned: false
  signMetadata: false
  wantMessagesSigned: false
  wantAssertionsSigned: false
  wantAssertionsEncrypted: false
  wantNameId: true
  wantNameIdEncrypted: false
  wantXMLValidation: true
  relaxDestinationValidation: false
  destinationStrictlyMatches: false
  # Retry Destination checks against the raw Host header and request URI
  unroutedDestinationFallback: false
  rejectDeprecatedAlgorithm: false
  signatureAlgorithm: "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256"
  digestAlgorithm: "http://www.w3.org/2001/04/xmlenc#sha256"

compress:
  requests: true
  responses: true
"""
