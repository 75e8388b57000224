"""Protocol logging for SAML message exchanges.

Records every message the SP builds or receives, with configurable log
levels and sensitive data protection.

Log levels:
- ERROR: Only log errors
- INFO: Log flow milestones (requests built, responses validated)
- DEBUG: Log message details (binding, IDs, destination, outcome)
- TRACE: Log the full XML of each message (requires explicit enable)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import IntEnum, StrEnum
from typing import Any

# Custom log level for TRACE (below DEBUG)
TRACE = 5
logging.addLevelName(TRACE, "TRACE")

# Module logger
logger = logging.getLogger("samlsp.protocol")

# Longest XML body written to the log
MAX_LOGGED_XML = 4000


class LogLevel(IntEnum):
    """Protocol logging levels."""

    ERROR = logging.ERROR  # 40
    INFO = logging.INFO  # 20
    DEBUG = logging.DEBUG  # 10
    TRACE = TRACE  # 5


class Direction(StrEnum):
    """Which way a message travelled."""

    OUTBOUND = "outbound"
    INBOUND = "inbound"


# Patterns for sensitive data redaction
SENSITIVE_PATTERNS = [
    # Redirect-binding query parameters
    (re.compile(r"(SAMLRequest=)[^&\s]+"), r"\1[REDACTED]"),
    (re.compile(r"(SAMLResponse=)[^&\s]+"), r"\1[REDACTED]"),
    (re.compile(r"(Signature=)[^&\s]+"), r"\1[REDACTED]"),
    # PEM private keys
    (
        re.compile(
            r"-----BEGIN ((?:RSA |EC |ENCRYPTED )?PRIVATE KEY)-----.*?-----END \1-----",
            re.DOTALL,
        ),
        r"-----BEGIN \1-----[REDACTED]-----END \1-----",
    ),
    # XML-Enc and XML-DSig values
    (
        re.compile(r"(<(?:\w+:)?CipherValue>)[^<]*(</(?:\w+:)?CipherValue>)"),
        r"\1[REDACTED]\2",
    ),
    (
        re.compile(r"(<(?:\w+:)?SignatureValue[^>]*>)[^<]*(</(?:\w+:)?SignatureValue>)"),
        r"\1[REDACTED]\2",
    ),
]


def redact_sensitive(text: str) -> str:
    """Redact sensitive information from text.

    Args:
        text: Text that may contain sensitive data.

    Returns:
        Text with sensitive data redacted.
    """
    result = text
    for pattern, replacement in SENSITIVE_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


@dataclass
class MessageExchange:
    """A single SAML message built or received by the SP."""

    id: str
    timestamp: datetime
    direction: Direction
    message_type: str
    binding: str | None = None
    message_id: str | None = None
    url: str | None = None
    relay_state: str | None = None
    xml: str | None = None
    valid: bool | None = None
    error: str | None = None

    def to_dict(self, include_sensitive: bool = False) -> dict[str, Any]:
        """Convert to dictionary for serialization.

        Args:
            include_sensitive: If True, include raw sensitive data.
                               If False, redact sensitive information.

        Returns:
            Dictionary representation of the exchange.
        """
        def process(value: str | None) -> str | None:
            if value is None:
                return None
            return value if include_sensitive else redact_sensitive(value)

        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "direction": str(self.direction),
            "message_type": self.message_type,
            "binding": self.binding,
            "message_id": self.message_id,
            "url": process(self.url),
            "relay_state": self.relay_state,
            "xml": process(self.xml),
            "valid": self.valid,
            "error": self.error,
        }

    def format_log(self, level: LogLevel, include_sensitive: bool = False) -> str:
        """Format the exchange for logging.

        Args:
            level: Log level determines how much detail to include.
            include_sensitive: If True, include raw sensitive data.

        Returns:
            Formatted log string.
        """
        lines = []
        arrow = "->" if self.direction == Direction.OUTBOUND else "<-"

        outcome = ""
        if self.valid is not None:
            outcome = " valid" if self.valid else " INVALID"
        lines.append(f"SAML {arrow} {self.message_type} {self.message_id or '(no ID)'}{outcome}")
        if self.error:
            lines.append(f"  Error: {self.error}")

        if level <= LogLevel.DEBUG:
            if self.binding:
                lines.append(f"  Binding: {self.binding}")
            if self.url:
                url = self.url if include_sensitive else redact_sensitive(self.url)
                lines.append(f"  URL: {url}")
            if self.relay_state:
                lines.append(f"  RelayState: {self.relay_state}")

        if level <= LogLevel.TRACE and self.xml:
            body = self.xml if include_sensitive else redact_sensitive(self.xml)
            lines.append("  XML:")
            lines.append(f"    {body[:MAX_LOGGED_XML]}{'...' if len(body) > MAX_LOGGED_XML else ''}")

        return "\n".join(lines)


@dataclass
class ProtocolLog:
    """Collects message exchanges for a flow."""

    flow_id: str
    flow_type: str
    exchanges: list[MessageExchange] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    def add_exchange(self, exchange: MessageExchange) -> None:
        """Add a message exchange to the log."""
        self.exchanges.append(exchange)

    def complete(self) -> None:
        """Mark the log as complete."""
        self.completed_at = datetime.now(UTC)

    def to_dict(self, include_sensitive: bool = False) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "flow_id": self.flow_id,
            "flow_type": self.flow_type,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "exchanges": [e.to_dict(include_sensitive) for e in self.exchanges],
            "exchange_count": len(self.exchanges),
        }


class ProtocolLogger:
    """Configurable protocol logger for SAML flows.

    Keeps the exchanges of the current flow and writes each one to the
    ``samlsp.protocol`` logger at the configured level.
    """

    def __init__(
        self,
        level: LogLevel = LogLevel.INFO,
        trace_enabled: bool = False,
    ) -> None:
        """Initialize the protocol logger.

        Args:
            level: Minimum log level.
            trace_enabled: Whether TRACE level is enabled (full XML bodies).
        """
        self._level = level
        self._trace_enabled = trace_enabled
        self._current_log: ProtocolLog | None = None
        self._exchange_counter = 0

    @property
    def level(self) -> LogLevel:
        return self._level

    @level.setter
    def level(self, value: LogLevel) -> None:
        self._level = value

    @property
    def trace_enabled(self) -> bool:
        return self._trace_enabled

    @trace_enabled.setter
    def trace_enabled(self, value: bool) -> None:
        self._trace_enabled = value

    @property
    def effective_level(self) -> LogLevel:
        """Get effective log level (TRACE only if explicitly enabled)."""
        if self._level == LogLevel.TRACE and not self._trace_enabled:
            return LogLevel.DEBUG
        return self._level

    @property
    def current_log(self) -> ProtocolLog | None:
        return self._current_log

    def start_flow(self, flow_id: str, flow_type: str) -> ProtocolLog:
        """Start logging a new flow.

        Args:
            flow_id: Unique identifier for the flow.
            flow_type: Type of flow (e.g., "saml_sso", "saml_slo").

        Returns:
            ProtocolLog for the flow.
        """
        self._current_log = ProtocolLog(flow_id=flow_id, flow_type=flow_type)
        logger.info("Started protocol logging for %s flow: %s", flow_type, flow_id)
        return self._current_log

    def end_flow(self) -> ProtocolLog | None:
        """End the current flow and return the log, or None if no flow was active."""
        if self._current_log:
            self._current_log.complete()
            log = self._current_log
            logger.info(
                "Completed protocol logging for %s flow: %s (%d exchanges)",
                log.flow_type,
                log.flow_id,
                len(log.exchanges),
            )
            self._current_log = None
            return log
        return None

    def record(
        self,
        direction: Direction,
        message_type: str,
        **details: Any,
    ) -> MessageExchange:
        """Create and log an exchange.

        Args:
            direction: Outbound or inbound.
            message_type: SAML message name, e.g. ``LogoutResponse``.
            **details: Remaining MessageExchange fields.

        Returns:
            The logged exchange.
        """
        self._exchange_counter += 1
        exchange = MessageExchange(
            id=f"saml_{self._exchange_counter:04d}",
            timestamp=datetime.now(UTC),
            direction=direction,
            message_type=message_type,
            **details,
        )
        self.log_exchange(exchange)
        return exchange

    def log_exchange(self, exchange: MessageExchange) -> None:
        """Log a message exchange."""
        if self._current_log:
            self._current_log.add_exchange(exchange)

        effective = self.effective_level
        include_sensitive = self._trace_enabled and self._level <= LogLevel.TRACE

        if effective <= LogLevel.TRACE:
            logger.log(TRACE, exchange.format_log(effective, include_sensitive))
        elif effective <= LogLevel.DEBUG:
            logger.debug(exchange.format_log(effective, include_sensitive))
        elif effective <= LogLevel.INFO:
            logger.info(exchange.format_log(effective, include_sensitive))

        if exchange.error:
            logger.error(
                "SAML %s %s rejected: %s",
                exchange.message_type,
                exchange.message_id or "(no ID)",
                exchange.error,
            )


# Global protocol logger instance
_global_logger: ProtocolLogger | None = None


def get_protocol_logger() -> ProtocolLogger:
    """Get the global protocol logger instance."""
    global _global_logger
    if _global_logger is None:
        _global_logger = ProtocolLogger()
    return _global_logger


def set_protocol_logger(logger_instance: ProtocolLogger) -> None:
    """Set the global protocol logger instance."""
    global _global_logger
    _global_logger = logger_instance


def configure_logging(
    level: LogLevel | str = LogLevel.INFO,
    trace_enabled: bool = False,
    log_file: str | None = None,
) -> ProtocolLogger:
    """Configure protocol logging.

    Args:
        level: Log level (ERROR, INFO, DEBUG, TRACE) or string name.
        trace_enabled: Whether to enable TRACE level (includes full XML).
        log_file: Optional file path to write logs to.

    Returns:
        Configured ProtocolLogger.
    """
    if isinstance(level, str):
        level_map = {
            "ERROR": LogLevel.ERROR,
            "INFO": LogLevel.INFO,
            "DEBUG": LogLevel.DEBUG,
            "TRACE": LogLevel.TRACE,
        }
        level = level_map.get(level.upper(), LogLevel.INFO)

    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    protocol_logger = ProtocolLogger(level=level, trace_enabled=trace_enabled)
    set_protocol_logger(protocol_logger)

    if trace_enabled:
        logger.warning("TRACE logging enabled - full SAML messages will be logged!")

    return protocol_logger
