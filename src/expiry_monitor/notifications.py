"""
Notifier module for the expiry monitor.

Formats threshold alerts and delivers them to a chat webhook with bounded
retries. The message text is consumed by chat integrations and scrapers,
so its wording and field order must stay stable.
"""

from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

import httpx

from .audit_logger import AuditLogger
from .config import RetryConfig
from .enums import DeliveryErrorCode, LogLevel
from .exceptions import NotificationError
from .models import AlertRecord
from .retry_manager import RetryManager, SleepFunc

NO_ENDPOINT_REASON = "no endpoint configured"

COMPONENT = "Notifier"


@runtime_checkable
class WebhookTransport(Protocol):
    """Posts a JSON body to a webhook endpoint."""

    async def post(self, endpoint: str, body: dict) -> int:
        """
        Send the body.

        Returns:
            The HTTP status code of the response

        Raises:
            Exception: On any transport failure
        """
        ...


class HttpxWebhookTransport:
    """Webhook transport backed by httpx with a fixed request timeout."""

    def __init__(self, timeout_seconds: float = 10.0) -> None:
        self._timeout = timeout_seconds

    async def post(self, endpoint: str, body: dict) -> int:
        async with httpx.AsyncClient(verify=True) as client:
            response = await client.post(
                endpoint,
                json=body,
                headers={"Content-Type": "application/json"},
                timeout=self._timeout,
            )
            return response.status_code


@dataclass
class NotificationResult:
    """Outcome of delivering one alert."""

    delivered: bool
    attempts: int = 0
    error: Optional[NotificationError] = None

    @property
    def failure_reason(self) -> str:
        """Text stored on the alert record; empty when delivered."""
        if self.delivered or self.error is None:
            return ""
        return self.error.message

    @property
    def no_endpoint(self) -> bool:
        return self.error is not None and self.error.code == DeliveryErrorCode.NO_ENDPOINT.value


class Notifier:
    """
    Delivers alert records to the configured webhook.

    A missing endpoint is reported as a distinguishable failure and never
    touches the transport. Transport errors and non-2xx responses are
    retried with exponential backoff (3 attempts, 1s then 2s by default).
    """

    def __init__(
        self,
        transport: Optional[WebhookTransport] = None,
        retry_config: Optional[RetryConfig] = None,
        logger: Optional[AuditLogger] = None,
        sleep: Optional[SleepFunc] = None,
    ) -> None:
        """
        Initialize the notifier.

        Args:
            transport: Webhook transport (httpx with a 10s timeout by default)
            retry_config: Attempts and backoff for delivery
            logger: Optional audit logger for failures
            sleep: Optional sleep used between attempts
        """
        self._transport = transport or HttpxWebhookTransport()
        self._retry = RetryManager(retry_config or RetryConfig(), sleep=sleep)
        self._logger = logger

    @staticmethod
    def format_message(record: AlertRecord) -> str:
        """Human-readable alert text."""
        return (
            "🔔 Domain Expiration Alert\n\n"
            f"Domain: {record.domain_name}\n"
            f"Expiration Date: {record.expiration_time_at_send.strftime('%Y-%m-%d')}\n"
            f"Days Remaining: {record.days_remaining()}\n"
            f"Alert Threshold: {record.threshold_days()} days\n\n"
            "Please renew this domain to avoid service disruption."
        )

    @classmethod
    def build_payload(cls, record: AlertRecord) -> dict:
        return {"text": cls.format_message(record)}

    async def deliver(self, record: AlertRecord, endpoint: str) -> NotificationResult:
        """
        Deliver one alert.

        Args:
            record: The alert to send
            endpoint: Webhook URL; empty means no endpoint is configured

        Returns:
            NotificationResult; failures are reported, never raised
        """
        if not endpoint:
            return NotificationResult(
                delivered=False,
                attempts=0,
                error=NotificationError(
                    code=DeliveryErrorCode.NO_ENDPOINT.value,
                    message=NO_ENDPOINT_REASON,
                    details={"domain": record.domain_name},
                ),
            )

        body = self.build_payload(record)

        async def send() -> int:
            try:
                status = await self._transport.post(endpoint, body)
            except Exception as e:
                raise NotificationError(
                    code=DeliveryErrorCode.TRANSPORT_ERROR.value,
                    message=f"failed to send webhook: {e}",
                    details={"error_type": type(e).__name__},
                ) from e
            if not 200 <= status < 300:
                raise NotificationError(
                    code=DeliveryErrorCode.HTTP_STATUS.value,
                    message=f"webhook returned status {status}",
                    details={"http_status_code": status},
                )
            return status

        result = await self._retry.execute_with_retry(send)
        if result.success:
            self._log(
                LogLevel.INFO,
                f"Alert delivered for {record.domain_name}",
                {
                    "domain": record.domain_name,
                    "threshold_days": record.threshold_days(),
                    "attempts": result.attempts,
                },
            )
            return NotificationResult(delivered=True, attempts=result.attempts)

        last_error = result.last_error
        error = NotificationError(
            code=DeliveryErrorCode.RETRIES_EXHAUSTED.value,
            message=f"failed after {result.attempts} attempts: {last_error}",
            details={
                "domain": record.domain_name,
                "last_error_code": getattr(last_error, "code", None),
            },
        )
        self._log(
            LogLevel.ERROR,
            f"All delivery attempts failed for {record.domain_name}",
            {
                "domain": record.domain_name,
                "threshold_days": record.threshold_days(),
                "total_attempts": result.attempts,
                "error": error.message,
                "webhook_endpoint": endpoint,
            },
        )
        return NotificationResult(delivered=False, attempts=result.attempts, error=error)

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger is not None:
            self._logger.log(level, COMPONENT, message, data)
