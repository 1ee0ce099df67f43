"""
Storage collaborators for the expiry monitor.

Defines the domain, config and alert store interfaces the monitoring core
consumes, plus thread-safe in-memory implementations. Reads return copies,
so a tick always works on an independent snapshot. Every mutation calls an
optional `on_change` hook, which the state store uses for write-through.
"""

import copy
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional, Protocol, runtime_checkable

from .config import MonitoringConfig
from .enums import DomainValidationErrorCode
from .exceptions import DuplicateAlertError, NotFoundError, ValidationError
from .models import AlertRecord, MonitoredDomain, utc_now

ChangeHook = Callable[[], None]
Clock = Callable[[], datetime]


@runtime_checkable
class DomainRepository(Protocol):
    """Store of monitored domains."""

    def get(self, domain_id: str) -> Optional[MonitoredDomain]:
        ...

    def get_by_name(self, name: str) -> Optional[MonitoredDomain]:
        ...

    def get_all(self) -> list[MonitoredDomain]:
        ...

    def create(self, domain: MonitoredDomain) -> None:
        ...

    def update(self, domain: MonitoredDomain) -> None:
        ...

    def delete(self, domain_id: str) -> None:
        ...


@runtime_checkable
class ConfigRepository(Protocol):
    """Store of the singleton monitoring configuration."""

    def get(self) -> MonitoringConfig:
        ...

    def update(self, config: MonitoringConfig) -> MonitoringConfig:
        ...


@runtime_checkable
class AlertRepository(Protocol):
    """Store of alert records, keyed uniquely by (domain_id, threshold)."""

    def create(self, record: AlertRecord) -> None:
        ...

    def has_been_sent(self, domain_id: str, threshold: timedelta) -> bool:
        ...

    def get_by_domain(self, domain_id: str) -> list[AlertRecord]:
        ...

    def get_failed(self) -> list[AlertRecord]:
        ...

    def get_recent(self, since: datetime) -> list[AlertRecord]:
        ...

    def delete_older_than(
        self, cutoff: datetime, keep_domain_ids: Iterable[str] = ()
    ) -> int:
        ...


class InMemoryDomainRepository:
    """Domain store held in a dict keyed by id; names are unique."""

    def __init__(
        self,
        domains: Optional[Iterable[MonitoredDomain]] = None,
        on_change: Optional[ChangeHook] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._domains: dict[str, MonitoredDomain] = {}
        for domain in domains or ():
            self._domains[domain.id] = copy.deepcopy(domain)
        self._on_change = on_change

    def get(self, domain_id: str) -> Optional[MonitoredDomain]:
        with self._lock:
            domain = self._domains.get(domain_id)
            return copy.deepcopy(domain) if domain is not None else None

    def get_by_name(self, name: str) -> Optional[MonitoredDomain]:
        with self._lock:
            for domain in self._domains.values():
                if domain.name == name:
                    return copy.deepcopy(domain)
        return None

    def get_all(self) -> list[MonitoredDomain]:
        """All domains, ordered by name."""
        with self._lock:
            domains = [copy.deepcopy(d) for d in self._domains.values()]
        return sorted(domains, key=lambda d: d.name)

    def create(self, domain: MonitoredDomain) -> None:
        """
        Raises:
            ValidationError: If the id or name is already registered
        """
        with self._lock:
            if domain.id in self._domains or self._name_taken(domain.name, None):
                raise ValidationError(
                    code=DomainValidationErrorCode.DUPLICATE.value,
                    message=f"Domain already exists: {domain.name}",
                    details={"domain": domain.name},
                )
            self._domains[domain.id] = copy.deepcopy(domain)
        self._changed()

    def update(self, domain: MonitoredDomain) -> None:
        """
        Replace a stored domain (last write wins).

        Raises:
            NotFoundError: If no domain with this id exists
        """
        with self._lock:
            if domain.id not in self._domains:
                raise NotFoundError(
                    code="not_found",
                    message=f"Domain not found: {domain.id}",
                    details={"domain_id": domain.id},
                )
            if self._name_taken(domain.name, domain.id):
                raise ValidationError(
                    code=DomainValidationErrorCode.DUPLICATE.value,
                    message=f"Domain already exists: {domain.name}",
                    details={"domain": domain.name},
                )
            self._domains[domain.id] = copy.deepcopy(domain)
        self._changed()

    def delete(self, domain_id: str) -> None:
        """
        Raises:
            NotFoundError: If no domain with this id exists
        """
        with self._lock:
            if self._domains.pop(domain_id, None) is None:
                raise NotFoundError(
                    code="not_found",
                    message=f"Domain not found: {domain_id}",
                    details={"domain_id": domain_id},
                )
        self._changed()

    def absorb(self, upserts: Iterable[MonitoredDomain], removed_ids: Iterable[str]) -> None:
        """Apply changes made by another writer without firing `on_change`."""
        with self._lock:
            for domain_id in removed_ids:
                self._domains.pop(domain_id, None)
            for domain in upserts:
                self._domains[domain.id] = copy.deepcopy(domain)

    def ids(self) -> set[str]:
        with self._lock:
            return set(self._domains)

    def _name_taken(self, name: str, except_id: Optional[str]) -> bool:
        return any(
            d.name == name and d.id != except_id for d in self._domains.values()
        )

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()


class InMemoryConfigRepository:
    """Holds the singleton config; updates are validated and replace it whole."""

    def __init__(
        self,
        config: Optional[MonitoringConfig] = None,
        clock: Optional[Clock] = None,
        on_change: Optional[ChangeHook] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._config = config
        self._clock = clock or utc_now
        self._on_change = on_change

    def get(self) -> MonitoringConfig:
        """Current config; the defaults are stored on first access."""
        created = False
        with self._lock:
            if self._config is None:
                self._config = MonitoringConfig.default()
                created = True
            config = self._config
        if created and self._on_change is not None:
            self._on_change()
        return config

    def peek(self) -> Optional[MonitoringConfig]:
        """Stored config without creating defaults."""
        with self._lock:
            return self._config

    def update(self, config: MonitoringConfig) -> MonitoringConfig:
        """
        Validate and store a new config.

        Returns:
            The normalized config as stored

        Raises:
            ConfigValidationError: If any rule is violated; nothing is stored
        """
        validated = replace(config.validate(), updated_at=self._clock())
        with self._lock:
            self._config = validated
        if self._on_change is not None:
            self._on_change()
        return validated

    def absorb(self, config: Optional[MonitoringConfig]) -> None:
        """Take over a config stored by another writer; no `on_change`."""
        with self._lock:
            self._config = config


class InMemoryAlertRepository:
    """
    Alert store enforcing at most one record per (domain_id, threshold).

    A second `create` for the same pair raises DuplicateAlertError; the
    evaluator treats that as "already handled".
    """

    def __init__(
        self,
        records: Optional[Iterable[AlertRecord]] = None,
        on_change: Optional[ChangeHook] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._records: dict[tuple[str, timedelta], AlertRecord] = {}
        for record in records or ():
            self._records[(record.domain_id, record.threshold)] = record
        self._on_change = on_change

    def create(self, record: AlertRecord) -> None:
        key = (record.domain_id, record.threshold)
        with self._lock:
            if key in self._records:
                raise DuplicateAlertError(
                    code="duplicate_alert",
                    message=(
                        f"Alert already recorded for {record.domain_name} "
                        f"at {record.threshold_days()} days"
                    ),
                    details={
                        "domain_id": record.domain_id,
                        "threshold_seconds": int(record.threshold.total_seconds()),
                    },
                )
            self._records[key] = record
        self._changed()

    def has_been_sent(self, domain_id: str, threshold: timedelta) -> bool:
        """True for any recorded attempt, delivered or not."""
        with self._lock:
            return (domain_id, threshold) in self._records

    def get_by_domain(self, domain_id: str) -> list[AlertRecord]:
        return self._select(lambda r: r.domain_id == domain_id)

    def get_failed(self) -> list[AlertRecord]:
        return self._select(lambda r: not r.delivered)

    def get_recent(self, since: datetime) -> list[AlertRecord]:
        return self._select(lambda r: r.sent_at >= since)

    def get_all(self) -> list[AlertRecord]:
        return self._select(lambda r: True)

    def delete_older_than(
        self, cutoff: datetime, keep_domain_ids: Iterable[str] = ()
    ) -> int:
        """
        Delete records sent before the cutoff, except those of kept domains.

        Returns:
            Number of deleted records
        """
        keep = set(keep_domain_ids)
        with self._lock:
            doomed = [
                key
                for key, record in self._records.items()
                if record.sent_at < cutoff and record.domain_id not in keep
            ]
            for key in doomed:
                del self._records[key]
        if doomed:
            self._changed()
        return len(doomed)

    def absorb(self, upserts: Iterable[AlertRecord], removed_ids: Iterable[str]) -> None:
        """Apply records written by another writer without firing `on_change`."""
        removed = set(removed_ids)
        with self._lock:
            for key in [k for k, r in self._records.items() if r.id in removed]:
                del self._records[key]
            for record in upserts:
                self._records[(record.domain_id, record.threshold)] = record

    def _select(self, predicate: Callable[[AlertRecord], bool]) -> list[AlertRecord]:
        # Newest first
        with self._lock:
            selected = [r for r in self._records.values() if predicate(r)]
        return sorted(selected, key=lambda r: r.sent_at, reverse=True)

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()
