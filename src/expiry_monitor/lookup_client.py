"""
Lookup client for the expiry monitor.

Wraps a single resolver call with a hard per-attempt timeout, bounded
retries with exponential backoff, and validation of the returned record.
"""

import asyncio
from dataclasses import replace
from typing import Optional

from .audit_logger import AuditLogger
from .config import RetryConfig
from .enums import LogLevel, LookupErrorCode
from .exceptions import LookupFailedError
from .models import DomainInfo, as_utc
from .resolvers import DomainResolver
from .retry_manager import RetryManager, SleepFunc

COMPONENT = "LookupClient"


def _discard_outcome(task: "asyncio.Future") -> None:
    # Abandoned attempts may finish later; retrieve their outcome so the
    # event loop does not report it as never retrieved.
    if not task.cancelled():
        task.exception()


class LookupClient:
    """
    Obtains a normalized domain record with bounded latency and retries.

    An attempt that exceeds the timeout is abandoned: its result is ignored
    and cancellation is requested, but the underlying call is not awaited.
    """

    def __init__(
        self,
        resolver: DomainResolver,
        timeout_seconds: float = 30.0,
        retry_config: Optional[RetryConfig] = None,
        logger: Optional[AuditLogger] = None,
        sleep: Optional[SleepFunc] = None,
    ) -> None:
        """
        Initialize the lookup client.

        Args:
            resolver: External resolver performing the raw lookup
            timeout_seconds: Hard limit for one attempt
            retry_config: Attempts and backoff (3 attempts, 1s doubling by default)
            logger: Optional audit logger
            sleep: Optional sleep used between attempts
        """
        self._resolver = resolver
        self._timeout = timeout_seconds
        self._logger = logger
        self._retry = RetryManager(
            retry_config or RetryConfig(),
            sleep=sleep,
        )

    @property
    def resolver(self) -> DomainResolver:
        return self._resolver

    async def refresh(self, domain_name: str) -> DomainInfo:
        """
        Look up a domain, retrying failed attempts.

        Returns:
            A DomainInfo carrying an expiration time

        Raises:
            LookupFailedError: After the last attempt failed; `attempts` holds
                the number of attempts made and the message wraps the final error
        """

        async def attempt() -> DomainInfo:
            return await self._attempt(domain_name)

        result = await self._retry.execute_with_retry(attempt)
        if result.success:
            return result.result

        last_error = result.last_error
        self._log(
            LogLevel.WARN,
            f"Lookup failed for {domain_name} after {result.attempts} attempts",
            {"domain": domain_name, "attempts": result.attempts, "error": str(last_error)},
        )
        raise LookupFailedError(
            code=LookupErrorCode.RETRIES_EXHAUSTED.value,
            message=f"failed after {result.attempts} attempts: {last_error}",
            details={
                "domain": domain_name,
                "last_error_code": getattr(last_error, "code", type(last_error).__name__),
            },
            attempts=result.attempts,
        ) from last_error

    async def _attempt(self, domain_name: str) -> DomainInfo:
        task = asyncio.ensure_future(self._resolver.lookup(domain_name))
        try:
            done, _ = await asyncio.wait({task}, timeout=self._timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if not done:
            task.cancel()
            task.add_done_callback(_discard_outcome)
            self._log(
                LogLevel.DEBUG,
                f"Lookup attempt for {domain_name} timed out",
                {"domain": domain_name, "timeout_seconds": self._timeout},
            )
            raise LookupFailedError(
                code=LookupErrorCode.TIMEOUT.value,
                message=f"lookup timed out after {self._timeout}s",
                details={"domain": domain_name},
            )

        try:
            info = task.result()
        except Exception as e:
            self._log(
                LogLevel.DEBUG,
                f"Lookup attempt for {domain_name} failed",
                {"domain": domain_name, "error": str(e)},
            )
            raise

        if info is None or not info.is_complete():
            raise LookupFailedError(
                code=LookupErrorCode.MISSING_EXPIRATION.value,
                message=f"lookup result for {domain_name} has no expiration time",
                details={"domain": domain_name},
            )
        # Naive times from a resolver are taken as UTC
        return replace(
            info,
            expiration_time=as_utc(info.expiration_time),
            created_time=as_utc(info.created_time),
            updated_time=as_utc(info.updated_time),
        )

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, COMPONENT, message, data)
