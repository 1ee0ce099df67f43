"""
Exception classes for the expiry monitor.

All exceptions inherit from ExpiryMonitorError and carry a machine-readable
code, a human-readable message and optional structured details.
"""

from typing import Optional


class ExpiryMonitorError(Exception):
    """Base exception for all expiry monitor errors."""

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[dict] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"

    def to_dict(self) -> dict:
        """Convert exception to dictionary for serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(ExpiryMonitorError):
    """Raised when a domain name is rejected or already registered."""

    pass


class ConfigValidationError(ExpiryMonitorError):
    """Raised when a monitoring configuration update violates a rule."""

    pass


class LookupFailedError(ExpiryMonitorError):
    """Raised when a domain-information lookup fails."""

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[dict] = None,
        attempts: int = 1,
    ) -> None:
        super().__init__(code, message, details)
        self.attempts = attempts


class NotificationError(ExpiryMonitorError):
    """Raised when alert delivery fails."""

    pass


class PersistenceError(ExpiryMonitorError):
    """Raised when persistence operations fail (file I/O, HMAC validation)."""

    pass


class TamperingError(PersistenceError):
    """Raised when HMAC validation fails, indicating data tampering."""

    pass


class NotFoundError(PersistenceError):
    """Raised when a record addressed by id does not exist."""

    pass


class DuplicateAlertError(PersistenceError):
    """Raised when an alert record already exists for a (domain, threshold) pair."""

    pass


class SchedulerError(ExpiryMonitorError):
    """Raised when the scheduler cannot start."""

    pass
