"""SAML utility functions.

Stateless helpers shared by the message classes: hardened XML loading,
schema validation, namespace-aware XPath, wire encodings, SAML time values,
and reconstruction of the current endpoint URL from injected request data.
"""

from __future__ import annotations

import base64
import functools
import logging
import re
import secrets
import zlib
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from urllib.parse import quote_plus, urlparse

from lxml import etree

from samlsp.core.saml.constants import NSMAP
from samlsp.core.saml.errors import (
    SAMLError,
    SAMLErrorKind,
    SAMLValidationError,
    ValidationErrorKind,
)

logger = logging.getLogger(__name__)

SCHEMAS_DIR = Path(__file__).parent / "schemas"

SAML_TIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

_SAML_TIME_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(?:\.\d+)?Z$")
_DURATION_RE = re.compile(
    r"^(-?)P(?:(?:(?:(\d+)Y)?(?:(\d+)M)?(?:(\d+)D)?"
    r"(?:T(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)(?:[.,]\d+)?S)?)?)|(?:(\d+)W))$"
)
_HTTP_URL_RE = re.compile(r"^https?://", re.IGNORECASE)

# Tokens returned by validate_xml instead of raising
INVALID_XML = "invalid_xml"
UNLOADED_XML = "unloaded_xml"


def _parser() -> etree.XMLParser:
    return etree.XMLParser(
        resolve_entities=False,
        no_network=True,
        load_dtd=False,
        dtd_validation=False,
        huge_tree=False,
    )


def load_xml(xml: str | bytes) -> etree._Element:
    """Parse XML with entity expansion and network access disabled.

    Raises:
        SAMLValidationError: XXE_DETECTED if the document carries a DOCTYPE,
            INVALID_XML_FORMAT if it is not well-formed.
    """
    if isinstance(xml, str):
        xml = xml.encode("utf-8")
    try:
        root = etree.fromstring(xml, parser=_parser())
    except etree.XMLSyntaxError as e:
        raise SAMLValidationError(
            "Invalid XML: %s", ValidationErrorKind.INVALID_XML_FORMAT, e
        ) from e

    docinfo = root.getroottree().docinfo
    if docinfo.doctype or docinfo.internalDTD is not None:
        raise SAMLValidationError(
            "Detected use of a DOCTYPE declaration: possible XXE or entity expansion attack",
            ValidationErrorKind.XXE_DETECTED,
        )
    return root


@functools.lru_cache(maxsize=16)
def _load_schema(path: str) -> etree.XMLSchema:
    return etree.XMLSchema(etree.parse(path, parser=_parser()))


def validate_xml(
    xml: str | bytes | etree._Element,
    schema_name: str,
    schemas_path: Path | None = None,
    debug: bool = False,
) -> etree._Element | str:
    """Validate a document against one of the bundled XSD schemas.

    Args:
        xml: Document as text or an already parsed element.
        schema_name: Schema file name, e.g. ``saml-schema-protocol-2.0.xsd``.
        schemas_path: Directory holding the schemas. Defaults to the bundled set.
        debug: Log the schema errors.

    Returns:
        The parsed root element, or ``invalid_xml`` / ``unloaded_xml``.
    """
    if isinstance(xml, etree._Element):
        dom = xml
    else:
        try:
            dom = load_xml(xml)
        except SAMLValidationError:
            return UNLOADED_XML

    schema = _load_schema(str((schemas_path or SCHEMAS_DIR) / schema_name))
    if not schema.validate(dom):
        if debug:
            logger.warning(
                "Schema validation against %s failed: %s",
                schema_name,
                "; ".join(str(e) for e in schema.error_log),
            )
        return INVALID_XML
    return dom


def query(
    dom: etree._Element,
    xpath: str,
    context: etree._Element | None = None,
) -> list[Any]:
    """Run an XPath expression with the SAML namespaces registered."""
    node = context if context is not None else dom
    return node.xpath(xpath, namespaces=NSMAP)


@dataclass
class MessageStatus:
    """Status of a StatusResponseType message."""

    code: str
    message: str = ""


def get_status(dom: etree._Element) -> MessageStatus:
    """Extract the status code and message of a response element.

    Raises:
        SAMLValidationError: MISSING_STATUS or MISSING_STATUS_CODE.
    """
    status_entry = query(dom, "./samlp:Status")
    if len(status_entry) != 1:
        raise SAMLValidationError("Missing Status on response", ValidationErrorKind.MISSING_STATUS)

    code_entry = query(dom, "./samlp:StatusCode", status_entry[0])
    if len(code_entry) != 1 or not code_entry[0].get("Value"):
        raise SAMLValidationError(
            "Missing Status Code on response", ValidationErrorKind.MISSING_STATUS_CODE
        )

    status = MessageStatus(code=code_entry[0].get("Value"))
    message_entry = query(dom, "./samlp:StatusMessage", status_entry[0])
    if message_entry:
        status.message = message_entry[0].text or ""
    else:
        sub_code_entry = query(dom, "./samlp:StatusCode/samlp:StatusCode", status_entry[0])
        if len(sub_code_entry) == 1:
            status.message = sub_code_entry[0].get("Value", "")
    return status


# Wire encodings


def b64encode(data: str | bytes) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return base64.b64encode(data).decode("ascii")


def b64decode(data: str | bytes) -> bytes:
    return base64.b64decode(data)


def deflate_and_base64_encode(value: str | bytes) -> str:
    """Raw-deflate then base64-encode, as used by the HTTP-Redirect binding."""
    if isinstance(value, str):
        value = value.encode("utf-8")
    # Raw deflate, no zlib header or checksum
    return b64encode(zlib.compress(value)[2:-4])


def decode_base64_and_inflate(value: str | bytes) -> bytes:
    """Base64-decode, then inflate when the payload is raw-deflated.

    Payloads that do not inflate are returned as decoded, so POST (plain
    base64) and Redirect (deflated) messages share one entry point.
    """
    decoded = b64decode(value)
    try:
        return zlib.decompress(decoded, -15)
    except zlib.error:
        return decoded


# Identifiers and time


def generate_unique_id() -> str:
    """Generate an xs:ID-safe unique identifier for a message."""
    return f"SAMLSP_{secrets.token_hex(20)}"


def now() -> int:
    """Current UNIX time in whole seconds."""
    return int(datetime.now(UTC).timestamp())


def parse_time_to_saml(timestamp: int | float | datetime) -> str:
    """Convert a UNIX timestamp or datetime to ``yyyy-mm-ddThh:mm:ssZ``."""
    if isinstance(timestamp, datetime):
        value = timestamp.astimezone(UTC)
    else:
        value = datetime.fromtimestamp(timestamp, UTC)
    return value.strftime(SAML_TIME_FORMAT)


def parse_saml_to_time(value: str) -> int:
    """Convert a SAML timestamp to UNIX time. Sub-second parts are ignored.

    Raises:
        SAMLError: INVALID_TIME_FORMAT for anything but ``yyyy-mm-ddThh:mm:ss(.s+)?Z``.
    """
    match = _SAML_TIME_RE.match(value or "")
    if match is None:
        raise SAMLError(
            "Invalid SAML2 timestamp passed to parse_saml_to_time: %s",
            SAMLErrorKind.INVALID_TIME_FORMAT,
            value,
        )
    try:
        parsed = datetime(*(int(part) for part in match.groups()), tzinfo=UTC)
    except ValueError as e:
        raise SAMLError(
            "Invalid SAML2 timestamp passed to parse_saml_to_time: %s",
            SAMLErrorKind.INVALID_TIME_FORMAT,
            value,
        ) from e
    return int(parsed.timestamp())


def parse_duration(duration: str, timestamp: int | None = None) -> int:
    """Add an ISO 8601 duration to a timestamp.

    Negative durations (``-P1D``) and week durations (``P2W``) are supported.

    Args:
        duration: ISO 8601 duration.
        timestamp: Base UNIX time. Defaults to now.

    Returns:
        The resulting UNIX time.

    Raises:
        SAMLError: INVALID_TIME_FORMAT if the duration does not parse.
    """
    match = _DURATION_RE.match(duration or "")
    if match is None:
        raise SAMLError(
            "Invalid ISO 8601 duration: %s", SAMLErrorKind.INVALID_TIME_FORMAT, duration
        )

    sign = -1 if match.group(1) == "-" else 1
    years, months, days, hours, minutes, seconds, weeks = (
        int(part) if part else 0 for part in match.groups()[1:]
    )
    days += weeks * 7

    base = datetime.fromtimestamp(now() if timestamp is None else timestamp, UTC)

    # Calendar months first, letting day overflow roll into the next month
    total_months = base.year * 12 + base.month - 1 + sign * (years * 12 + months)
    year, month = divmod(total_months, 12)
    moved = datetime(year, month + 1, 1, base.hour, base.minute, base.second, tzinfo=UTC)
    moved += timedelta(days=base.day - 1)
    moved += sign * timedelta(days=days, hours=hours, minutes=minutes, seconds=seconds)
    return int(moved.timestamp())


def get_expire_time(
    cache_duration: str | None = None,
    valid_until: str | int | None = None,
) -> int | None:
    """Earliest of ``now + cache_duration`` and ``valid_until``, or None."""
    expire_time = None
    if cache_duration:
        expire_time = parse_duration(cache_duration)

    if valid_until:
        valid_until_time = (
            parse_saml_to_time(valid_until) if isinstance(valid_until, str) else int(valid_until)
        )
        if expire_time is None or expire_time > valid_until_time:
            expire_time = valid_until_time
    return expire_time


# Request data and URLs


def _parse_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.lower() in ("on", "true", "1", "yes")
    return bool(value)


@dataclass(frozen=True)
class RequestData:
    """The inbound HTTP request as seen by the hosting application.

    Proxy headers are only consulted when ``trust_proxy_headers`` is set.
    """

    http_host: str
    script_name: str = ""
    path_info: str = ""
    server_port: int | None = None
    https: bool = False
    request_uri: str = ""
    query_string: str = ""
    get_data: Mapping[str, str] = field(default_factory=dict)
    post_data: Mapping[str, str] = field(default_factory=dict)
    trust_proxy_headers: bool = False
    forwarded_host: str | None = None
    forwarded_proto: str | None = None
    forwarded_port: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RequestData:
        """Create RequestData from a WSGI-ish dictionary."""
        port = data.get("server_port")
        forwarded_port = data.get("forwarded_port")
        return cls(
            http_host=data.get("http_host", ""),
            script_name=data.get("script_name", ""),
            path_info=data.get("path_info", ""),
            server_port=int(port) if port else None,
            https=_parse_bool(data.get("https", False)),
            request_uri=data.get("request_uri", ""),
            query_string=data.get("query_string", ""),
            get_data=dict(data.get("get_data", {})),
            post_data=dict(data.get("post_data", {})),
            trust_proxy_headers=_parse_bool(data.get("trust_proxy_headers", False)),
            forwarded_host=data.get("forwarded_host"),
            forwarded_proto=data.get("forwarded_proto"),
            forwarded_port=int(forwarded_port) if forwarded_port else None,
        )


def _split_host_port(host: str) -> tuple[str, int | None]:
    if host.startswith("["):
        # IPv6 literal
        end = host.find("]")
        name, rest = host[: end + 1], host[end + 1 :]
        return name, int(rest[1:]) if rest.startswith(":") and rest[1:].isdigit() else None
    if ":" in host:
        name, _, port = host.rpartition(":")
        return name, int(port) if port.isdigit() else None
    return host, None


def get_self_host(request: RequestData, baseurl: str | None = None) -> str:
    """Host name of the current request, without port."""
    if baseurl:
        parsed = urlparse(baseurl)
        if parsed.hostname:
            return parsed.hostname
    if request.trust_proxy_headers and request.forwarded_host:
        host = request.forwarded_host
    else:
        host = request.http_host
    return _split_host_port(host)[0]


def is_https(request: RequestData, baseurl: str | None = None) -> bool:
    """Whether the current request arrived over HTTPS."""
    if baseurl:
        return urlparse(baseurl).scheme.lower() == "https"
    if request.trust_proxy_headers and request.forwarded_proto:
        return request.forwarded_proto.lower() == "https"
    return request.https or request.server_port == 443


def get_self_port(request: RequestData, baseurl: str | None = None) -> int | None:
    """Port of the current request, if one can be determined."""
    if baseurl:
        parsed = urlparse(baseurl)
        if parsed.port:
            return parsed.port
        if parsed.hostname:
            return None
    if request.trust_proxy_headers and request.forwarded_port:
        return request.forwarded_port
    host_port = _split_host_port(
        request.forwarded_host
        if request.trust_proxy_headers and request.forwarded_host
        else request.http_host
    )[1]
    return host_port or request.server_port


def get_self_url_host(request: RequestData, baseurl: str | None = None) -> str:
    """Protocol, host and (non-default) port of the current request."""
    protocol = "https" if is_https(request, baseurl) else "http"
    port = get_self_port(request, baseurl)
    port_part = f":{port}" if port and port not in (80, 443) else ""
    return f"{protocol}://{get_self_host(request, baseurl)}{port_part}"


def _base_url_path(baseurl: str | None) -> str | None:
    if not baseurl:
        return None
    path = urlparse(baseurl).path
    if not path:
        return None
    if path == "/":
        return "/"
    return "/" + path.strip("/") + "/"


def _with_base_url_path(info: str, baseurl: str | None) -> str:
    base_path = _base_url_path(baseurl)
    if not base_path:
        return info
    last_segment = info.rsplit("/", 1)[-1] if info else ""
    return base_path + last_segment


def get_self_url_no_query(request: RequestData, baseurl: str | None = None) -> str:
    """Current URL built from the script name and path info."""
    info = request.script_name + (request.path_info or "")
    return get_self_url_host(request, baseurl) + _with_base_url_path(info, baseurl)


def get_self_routed_url_no_query(request: RequestData, baseurl: str | None = None) -> str:
    """Current URL built from the request URI, with the query string removed."""
    route = request.request_uri or ""
    if request.query_string:
        route = route.replace(request.query_string, "")
    route = route.split("?", 1)[0]
    return get_self_url_host(request, baseurl) + _with_base_url_path(route, baseurl)


def get_unrouted_url_no_query(request: RequestData) -> str:
    """URL rebuilt from the raw Host header and request URI, ignoring proxies and baseurl."""
    protocol = "https" if request.https else "http"
    return f"{protocol}://{request.http_host}{(request.request_uri or '').split('?', 1)[0]}"


def is_valid_url(url: str | None) -> bool:
    """Whether ``url`` is an absolute URL with a scheme and a host."""
    if not isinstance(url, str) or not url or any(c.isspace() for c in url):
        return False
    parsed = urlparse(url)
    return bool(parsed.scheme) and bool(parsed.netloc)


def redirect(
    url: str,
    parameters: Mapping[str, Any] | None = None,
    request: RequestData | None = None,
    baseurl: str | None = None,
) -> str:
    """Build a redirect URL, appending parameters in the order given.

    Relative URLs are resolved against the current host.

    Raises:
        SAMLError: REDIRECT_INVALID_URL if the target is not http(s).
    """
    if url.startswith("/") and request is not None:
        url = get_self_url_host(request, baseurl) + url

    if not _HTTP_URL_RE.match(url):
        raise SAMLError("Redirect to invalid URL: %s", SAMLErrorKind.REDIRECT_INVALID_URL, url)

    prefix = "&" if "?" in url else "?"
    for name, value in (parameters or {}).items():
        if value is None:
            param = quote_plus(name)
        elif isinstance(value, list | tuple):
            param = "&".join(f"{quote_plus(name)}[]={quote_plus(str(v), safe='')}" for v in value)
        else:
            param = f"{quote_plus(name)}={quote_plus(str(value), safe='')}"
        if param:
            url += prefix + param
            prefix = "&"
    return url
