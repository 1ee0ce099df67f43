"""
Retry Manager for the expiry monitor.

Runs an async operation up to a fixed number of attempts with exponential
backoff between attempts. Shared by the lookup client and the webhook
notifier so both follow one backoff policy (1s, 2s, 4s, ... capped).
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from .config import RetryConfig

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[None]]


@dataclass
class RetryResult(Generic[T]):
    """Result of a retry operation."""

    success: bool
    result: Optional[T]
    attempts: int
    last_error: Optional[Exception]


class RetryManager:
    """Executes operations with bounded attempts and exponential backoff."""

    def __init__(
        self,
        config: RetryConfig,
        sleep: Optional[SleepFunc] = None,
        on_failure: Optional[Callable[[int, Exception], None]] = None,
    ) -> None:
        """
        Initialize the retry manager.

        Args:
            config: Attempt count and delays
            sleep: Awaitable sleep used between attempts (asyncio.sleep by default)
            on_failure: Called with (attempt number, error) after each failed attempt
        """
        if config.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._config = config
        self._sleep = sleep or asyncio.sleep
        self._on_failure = on_failure

    @property
    def config(self) -> RetryConfig:
        return self._config

    def calculate_delay(self, attempt: int) -> float:
        """
        Delay after the given failed attempt (0-indexed): base * 2^attempt,
        capped at max_delay.
        """
        delay = self._config.base_delay_seconds * (2 ** attempt)
        return min(delay, self._config.max_delay_seconds)

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        is_retryable: Optional[Callable[[Exception], bool]] = None,
    ) -> RetryResult[T]:
        """
        Execute an operation until it succeeds or attempts run out.

        Args:
            operation: The async operation to execute
            is_retryable: Optional predicate; a False answer stops retrying
                immediately. All exceptions are retryable by default.

        Returns:
            RetryResult with the value or the last error
        """
        last_error: Optional[Exception] = None
        attempts = 0
        max_attempts = self._config.max_attempts

        while attempts < max_attempts:
            attempts += 1
            try:
                result = await operation()
                return RetryResult(
                    success=True,
                    result=result,
                    attempts=attempts,
                    last_error=None,
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = e
                if self._on_failure is not None:
                    self._on_failure(attempts, e)

                if is_retryable is not None and not is_retryable(e):
                    break
                if attempts >= max_attempts:
                    break

                await self._sleep(self.calculate_delay(attempts - 1))

        return RetryResult(
            success=False,
            result=None,
            attempts=attempts,
            last_error=last_error,
        )
