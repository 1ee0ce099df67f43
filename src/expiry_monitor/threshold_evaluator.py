"""
Threshold evaluation for the expiry monitor.

Detects newly crossed alert thresholds for a domain and makes sure each
(domain, threshold) pair produces at most one AlertRecord, delivered or not.
"""

import asyncio
from collections import defaultdict
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Optional

from .audit_logger import AuditLogger
from .config import MonitoringConfig
from .enums import LogLevel
from .exceptions import DuplicateAlertError
from .models import AlertRecord, MonitoredDomain, new_id, utc_now, whole_days
from .notifications import Notifier
from .repositories import AlertRepository

COMPONENT = "ThresholdEvaluator"


def crossed_thresholds(
    remaining: timedelta, thresholds: tuple[timedelta, ...]
) -> list[timedelta]:
    """
    Thresholds with 0 < remaining <= threshold.

    An expired domain (remaining <= 0) crosses nothing.
    """
    if remaining <= timedelta(0):
        return []
    return [t for t in thresholds if remaining <= t]


class ThresholdEvaluator:
    """
    Creates one alert per newly crossed threshold.

    Evaluation of the same domain is serialized with a per-domain lock, so
    manual re-evaluation cannot race a scheduled tick. The alert store's
    uniqueness check backs this up: a DuplicateAlertError on create means
    another evaluation already handled the pair.
    """

    def __init__(
        self,
        alert_repository: AlertRepository,
        notifier: Notifier,
        clock: Optional[Callable[[], datetime]] = None,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        self._alerts = alert_repository
        self._notifier = notifier
        self._clock = clock or utc_now
        self._logger = logger
        self._domain_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def evaluate(
        self, domain: MonitoredDomain, config: MonitoringConfig
    ) -> list[AlertRecord]:
        """
        Evaluate one domain against the configured thresholds.

        Returns:
            The alert records created by this call
        """
        async with self._domain_locks[domain.id]:
            return await self._evaluate(domain, config)

    def forget(self, domain_id: str) -> None:
        """Drop the lock of a domain that is no longer monitored."""
        lock = self._domain_locks.get(domain_id)
        if lock is not None and not lock.locked():
            del self._domain_locks[domain_id]

    async def _evaluate(
        self, domain: MonitoredDomain, config: MonitoringConfig
    ) -> list[AlertRecord]:
        now = self._clock()
        remaining = domain.expiration_time - now
        created: list[AlertRecord] = []

        for threshold in crossed_thresholds(remaining, config.alert_thresholds):
            try:
                record = await self._evaluate_threshold(domain, threshold, now, config)
            except Exception as e:
                # The remaining thresholds still get their alert
                if self._logger is not None:
                    self._logger.log_error(
                        COMPONENT,
                        f"Alert for {domain.name} at {whole_days(threshold)} days failed",
                        e,
                        {"domain": domain.name, "threshold_days": whole_days(threshold)},
                    )
                continue
            if record is not None:
                created.append(record)

        return created

    async def _evaluate_threshold(
        self,
        domain: MonitoredDomain,
        threshold: timedelta,
        now: datetime,
        config: MonitoringConfig,
    ) -> Optional[AlertRecord]:
        if self._alerts.has_been_sent(domain.id, threshold):
            return None

        record = await self._send(domain, threshold, now, config.webhook_endpoint)
        try:
            self._alerts.create(record)
        except DuplicateAlertError:
            self._log(
                LogLevel.DEBUG,
                f"Alert for {domain.name} already recorded by another evaluation",
                {"domain": domain.name, "threshold_days": record.threshold_days()},
            )
            return None
        return record

    async def _send(
        self,
        domain: MonitoredDomain,
        threshold: timedelta,
        now: datetime,
        endpoint: str,
    ) -> AlertRecord:
        record = AlertRecord(
            id=new_id(),
            domain_id=domain.id,
            domain_name=domain.name,
            threshold=threshold,
            expiration_time_at_send=domain.expiration_time,
            sent_at=now,
        )

        result = await self._notifier.deliver(record, endpoint)
        if result.no_endpoint:
            self._log(
                LogLevel.WARN,
                f"No webhook endpoint configured, alert for {domain.name} recorded as undelivered",
                {"domain": domain.name, "threshold_days": record.threshold_days()},
            )
        return replace(
            record,
            delivered=result.delivered,
            failure_reason=result.failure_reason,
        )

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger is not None:
            self._logger.log(level, COMPONENT, message, data)
