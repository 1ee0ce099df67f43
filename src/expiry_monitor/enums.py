"""
Enumeration types for the expiry monitor.

These enums provide type-safe constants for error codes and log levels
used throughout the system.
"""

from enum import Enum


class LogLevel(Enum):
    """Logging severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class DomainValidationErrorCode(Enum):
    """Error codes for domain validation failures."""

    FORBIDDEN_CHARS = "forbidden_chars"
    INVALID_TLD = "invalid_tld"
    IDNA_ERROR = "idna_error"
    EMPTY_INPUT = "empty_input"
    DUPLICATE = "duplicate"


class ConfigErrorCode(Enum):
    """Error codes for rejected monitoring configuration updates."""

    INTERVAL_TOO_SHORT = "interval_too_short"
    INVALID_THRESHOLD = "invalid_threshold"
    NO_THRESHOLDS = "no_thresholds"
    INSECURE_WEBHOOK = "insecure_webhook"
    RETENTION_TOO_SHORT = "retention_too_short"


class LookupErrorCode(Enum):
    """Error codes for domain-information lookups."""

    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    TLS_ERROR = "tls_error"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    PARSE_ERROR = "parse_error"
    MISSING_EXPIRATION = "missing_expiration"
    RETRIES_EXHAUSTED = "retries_exhausted"


class DeliveryErrorCode(Enum):
    """Error codes for webhook alert delivery."""

    NO_ENDPOINT = "no_endpoint"
    HTTP_STATUS = "http_status"
    TRANSPORT_ERROR = "transport_error"
    RETRIES_EXHAUSTED = "retries_exhausted"
