"""
Domain Monitor service for the expiry monitor.

Application facade that wires the stores, lookup client, threshold
evaluator and scheduler together, and exposes the operations a user
interface needs: adding and removing domains, changing the monitoring
configuration, manual re-evaluation and history queries.
"""

from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from .audit_logger import AuditLogger
from .config import AppSettings, MonitoringConfig, SchedulerSettings
from .domain_validator import DomainValidator
from .enums import DomainValidationErrorCode, LogLevel
from .exceptions import NotFoundError, ValidationError
from .lookup_client import LookupClient
from .models import AlertRecord, MonitoredDomain, new_id, utc_now
from .notifications import HttpxWebhookTransport, Notifier, WebhookTransport
from .repositories import AlertRepository, ConfigRepository, DomainRepository
from .resolvers import DomainResolver, RDAPResolver
from .retention import purge_history
from .scheduler import MonitoringScheduler
from .state_store import StateStore
from .threshold_evaluator import ThresholdEvaluator

COMPONENT = "DomainMonitor"


class DomainMonitor:
    """
    Main entry point for monitoring domain expiration.

    Usage:
        async with DomainMonitor.from_settings(load_settings()) as monitor:
            await monitor.start()
            ...
            await monitor.stop()
    """

    async def __aenter__(self) -> "DomainMonitor":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def __init__(
        self,
        domains: DomainRepository,
        configs: ConfigRepository,
        alerts: AlertRepository,
        lookup: LookupClient,
        notifier: Optional[Notifier] = None,
        scheduler_settings: Optional[SchedulerSettings] = None,
        validator: Optional[DomainValidator] = None,
        clock: Optional[Callable[[], datetime]] = None,
        logger: Optional[AuditLogger] = None,
        state_store: Optional[StateStore] = None,
    ) -> None:
        """
        Initialize the monitor.

        Args:
            domains: Domain store
            configs: Config store
            alerts: Alert store
            lookup: Lookup client used for the initial and periodic refreshes
            notifier: Alert notifier (httpx webhook transport by default)
            scheduler_settings: Worker pool and shutdown settings
            validator: Domain name validator
            clock: Returns the current aware UTC time
            logger: Optional audit logger
            state_store: State file behind the repositories, if shared with
                other processes
        """
        self._domains = domains
        self._configs = configs
        self._alerts = alerts
        self._lookup = lookup
        self._validator = validator or DomainValidator()
        self._clock = clock or utc_now
        self._logger = logger
        self._state_store = state_store

        self._evaluator = ThresholdEvaluator(
            alerts,
            notifier or Notifier(logger=logger),
            clock=self._clock,
            logger=logger,
        )
        self._scheduler = MonitoringScheduler(
            domains,
            configs,
            lookup,
            self._evaluator,
            settings=scheduler_settings,
            alerts=alerts,
            clock=self._clock,
            logger=logger,
        )

    @classmethod
    def from_settings(
        cls,
        settings: AppSettings,
        logger: Optional[AuditLogger] = None,
        resolver: Optional[DomainResolver] = None,
        transport: Optional[WebhookTransport] = None,
    ) -> "DomainMonitor":
        """
        Build a monitor backed by the HMAC-protected state file.

        Raises:
            TamperingError: If the state file fails HMAC validation
            PersistenceError: If the state file cannot be read
        """
        store = StateStore(
            settings.persistence.state_file_path,
            settings.persistence.hmac_secret,
        )
        repos = store.open_repositories()
        lookup = LookupClient(
            resolver or RDAPResolver(
                base_url=settings.lookup.rdap_base_url,
                timeout=settings.lookup.timeout_seconds,
            ),
            timeout_seconds=settings.lookup.timeout_seconds,
            retry_config=settings.lookup.retry,
            logger=logger,
        )
        notifier = Notifier(
            transport or HttpxWebhookTransport(settings.notifier.timeout_seconds),
            retry_config=settings.notifier.retry,
            logger=logger,
        )
        return cls(
            repos.domains,
            repos.config,
            repos.alerts,
            lookup,
            notifier=notifier,
            scheduler_settings=settings.scheduler,
            logger=logger,
            state_store=store,
        )

    @property
    def scheduler(self) -> MonitoringScheduler:
        return self._scheduler

    @property
    def evaluator(self) -> ThresholdEvaluator:
        return self._evaluator

    async def start(self) -> int:
        """Start monitoring every stored domain."""
        return await self._scheduler.start()

    async def stop(self, timeout: Optional[float] = None) -> bool:
        """Stop monitoring; False if running pipelines had to be abandoned."""
        return await self._scheduler.stop(timeout)

    async def close(self) -> None:
        if self._scheduler.is_running():
            await self._scheduler.stop()
        close = getattr(self._lookup.resolver, "close", None)
        if close is not None:
            await close()

    async def add_domain(self, raw_name: str) -> MonitoredDomain:
        """
        Validate, look up and start monitoring a domain.

        The domain is only stored if the initial lookup succeeds.

        Raises:
            ValidationError: If the name is invalid or already monitored
            LookupFailedError: If the initial lookup fails
        """
        result = self._validator.validate(raw_name)
        if not result.valid:
            raise result.error
        name = result.canonical_domain

        if self._domains.get_by_name(name) is not None:
            raise ValidationError(
                code=DomainValidationErrorCode.DUPLICATE.value,
                message=f"Domain already exists: {name}",
                details={"domain": name},
            )

        info = await self._lookup.refresh(name)
        config = self._configs.get()
        now = self._clock()
        domain = MonitoredDomain(
            id=new_id(),
            name=name,
            expiration_time=info.expiration_time,
            nameservers=list(info.nameservers),
            registrant=info.registrant,
            registrar=info.registrar,
            last_checked_at=now,
            next_check_at=now + config.check_interval,
            created_at=now,
            updated_at=now,
        )
        self._domains.create(domain)
        if self._scheduler.is_running():
            self._scheduler.schedule(domain)

        self._log(
            LogLevel.INFO,
            f"Added domain {name}",
            {
                "domain": name,
                "domain_id": domain.id,
                "expiration_time": domain.expiration_time.isoformat(),
            },
        )
        return domain

    async def remove_domain(self, domain_id: str) -> MonitoredDomain:
        """
        Stop monitoring a domain and delete it.

        Its alert records stay behind as history until retention purges them.

        Raises:
            NotFoundError: If the domain does not exist
        """
        domain = self._require(domain_id)
        self._scheduler.unschedule(domain_id)
        self._domains.delete(domain_id)
        self._evaluator.forget(domain_id)
        self._log(
            LogLevel.INFO,
            f"Removed domain {domain.name}",
            {"domain": domain.name, "domain_id": domain_id},
        )
        return domain

    def find_domain(self, name_or_id: str) -> Optional[MonitoredDomain]:
        """Look a domain up by id, then by (normalized) name."""
        domain = self._domains.get(name_or_id)
        if domain is not None:
            return domain
        result = self._validator.validate(name_or_id)
        if not result.valid:
            return None
        return self._domains.get_by_name(result.canonical_domain)

    def get_config(self) -> MonitoringConfig:
        return self._configs.get()

    def update_config(
        self,
        check_interval: Optional[timedelta] = None,
        alert_thresholds: Optional[Iterable[timedelta]] = None,
        webhook_endpoint: Optional[str] = None,
        retention_period: Optional[timedelta] = None,
    ) -> MonitoringConfig:
        """
        Replace the configuration with the given fields changed.

        Takes effect on the next tick of each domain.

        Raises:
            ConfigValidationError: If the result violates a rule; nothing changes
        """
        updated = self._configs.get().with_changes(
            check_interval=check_interval,
            alert_thresholds=alert_thresholds,
            webhook_endpoint=webhook_endpoint,
            retention_period=retention_period,
        )
        stored = self._configs.update(updated)
        self._log(
            LogLevel.INFO,
            "Monitoring configuration updated",
            {
                "check_interval_seconds": stored.check_interval.total_seconds(),
                "alert_threshold_days": [t.days for t in stored.alert_thresholds],
                "webhook_endpoint": stored.webhook_endpoint,
                "retention_days": stored.retention_period.days,
            },
        )
        return stored

    async def evaluate_now(self, domain_id: str) -> list[AlertRecord]:
        """
        Evaluate a domain's thresholds immediately, without a lookup.

        Raises:
            NotFoundError: If the domain does not exist
        """
        domain = self._require(domain_id)
        return await self._evaluator.evaluate(domain, self._configs.get())

    def list_domains(self) -> list[MonitoredDomain]:
        return self._domains.get_all()

    def get_alerts(self, domain_id: str) -> list[AlertRecord]:
        """Alert history of a domain, newest first."""
        return self._alerts.get_by_domain(domain_id)

    def get_failed_alerts(self) -> list[AlertRecord]:
        return self._alerts.get_failed()

    def sync_from_store(self) -> tuple[int, int]:
        """
        Pick up domains added or removed by another process.

        Re-reads the state file, then arms timers for new domains and drops
        the timers of domains that are gone.

        Returns:
            (scheduled, unscheduled) counts

        Raises:
            PersistenceError: If the state file cannot be read
        """
        if self._state_store is not None:
            self._state_store.sync()
        if not self._scheduler.is_running():
            return 0, 0

        current = {d.id: d for d in self._domains.get_all()}
        scheduled_ids = self._scheduler.scheduled_ids()
        added = [d for domain_id, d in current.items() if domain_id not in scheduled_ids]
        removed = scheduled_ids - current.keys()

        for domain in added:
            self._scheduler.schedule(domain)
        for domain_id in removed:
            self._scheduler.unschedule(domain_id)
            self._evaluator.forget(domain_id)

        if added or removed:
            self._log(
                LogLevel.INFO,
                "Picked up domain changes from the state file",
                {
                    "scheduled": [d.name for d in added],
                    "unscheduled": len(removed),
                },
            )
        return len(added), len(removed)

    def purge_history(self) -> int:
        """Delete expired alert history of removed domains now."""
        return purge_history(
            self._domains, self._configs, self._alerts, self._clock(), self._logger
        )

    def _require(self, domain_id: str) -> MonitoredDomain:
        domain = self._domains.get(domain_id)
        if domain is None:
            raise NotFoundError(
                code="not_found",
                message=f"Domain not found: {domain_id}",
                details={"domain_id": domain_id},
            )
        return domain

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger is not None:
            self._logger.log(level, COMPONENT, message, data)
