"""
State Store module for persistent monitor state.

Keeps monitored domains, the monitoring configuration and alert records in
one HMAC-protected JSON file so that tampering is detected on load. The
in-memory repositories it hands out write every mutation through to disk.

Several processes may share one state file (a running monitor and a CLI
adding a domain). Every write re-reads the file and merges by record id:
this process only overwrites the records it changed since its last sync,
and changes made by others are pulled into its repositories.
"""

import hashlib
import hmac
import json
import os
import threading
from collections.abc import Hashable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, TypeVar

from .config import MonitoringConfig
from .exceptions import PersistenceError, TamperingError
from .models import AlertRecord, MonitoredDomain
from .repositories import (
    Clock,
    InMemoryAlertRepository,
    InMemoryConfigRepository,
    InMemoryDomainRepository,
)


@dataclass
class StoredState:
    """Complete persisted state."""

    version: int
    domains: list[MonitoredDomain] = field(default_factory=list)
    config: Optional[MonitoringConfig] = None
    alerts: list[AlertRecord] = field(default_factory=list)
    last_updated: str = ""
    hmac: str = ""


@dataclass
class StoreRepositories:
    """Repositories backed by one state file."""

    domains: InMemoryDomainRepository
    config: InMemoryConfigRepository
    alerts: InMemoryAlertRepository


R = TypeVar("R", MonitoredDomain, AlertRecord)


@dataclass
class _Snapshot:
    """Records keyed by id, compared in their serialized form."""

    domains: dict[str, MonitoredDomain] = field(default_factory=dict)
    alerts: dict[str, AlertRecord] = field(default_factory=dict)
    config: Optional[MonitoringConfig] = None

    @classmethod
    def of(
        cls,
        domains: list[MonitoredDomain],
        alerts: list[AlertRecord],
        config: Optional[MonitoringConfig],
    ) -> "_Snapshot":
        return cls({d.id: d for d in domains}, {a.id: a for a in alerts}, config)

    def to_state(self, version: int) -> StoredState:
        return StoredState(
            version=version,
            domains=sorted(self.domains.values(), key=lambda d: d.name),
            config=self.config,
            alerts=sorted(self.alerts.values(), key=lambda a: a.sent_at),
        )

    def same_as(self, other: "_Snapshot") -> bool:
        return (
            _serialized(self.domains) == _serialized(other.domains)
            and _serialized(self.alerts) == _serialized(other.alerts)
            and _config_dict(self.config) == _config_dict(other.config)
        )


def _serialized(records: dict) -> dict:
    return {record_id: record.to_dict() for record_id, record in records.items()}


def _config_dict(config: Optional[MonitoringConfig]) -> Optional[dict]:
    return config.to_dict() if config is not None else None


def _changed_ids(baseline: dict[str, R], current: dict[str, R]) -> set[str]:
    return {
        record_id
        for record_id, record in current.items()
        if record_id not in baseline or baseline[record_id].to_dict() != record.to_dict()
    }


def _merge_records(
    baseline: dict[str, R],
    local: dict[str, R],
    disk: dict[str, R],
    unique_key: Callable[[R], Hashable],
    local_wins_conflicts: bool,
) -> dict[str, R]:
    """
    Apply local changes since the baseline on top of the records on disk.

    A record deleted on disk by another process stays deleted even if this
    process updated it. When two records claim the same unique key, the
    local one wins if `local_wins_conflicts`, otherwise the one on disk.
    """
    merged = dict(disk)
    changed = _changed_ids(baseline, local)
    for record_id in changed:
        if record_id in baseline and record_id not in disk:
            continue
        merged[record_id] = local[record_id]
    for record_id in baseline.keys() - local.keys():
        merged.pop(record_id, None)

    winners = changed if local_wins_conflicts else set(disk)
    owners: dict[Hashable, str] = {}
    for record_id, record in merged.items():
        key = unique_key(record)
        if key not in owners or record_id in winners:
            owners[key] = record_id
    keep = set(owners.values())
    return {record_id: record for record_id, record in merged.items() if record_id in keep}


class StateStore:
    """
    Persistent state storage with HMAC protection.

    Stores the monitor state to disk with HMAC validation to detect
    tampering. `open_repositories()` loads the file once and returns
    repositories whose changes are saved immediately.
    """

    VERSION = 1

    def __init__(
        self,
        file_path: Path,
        hmac_secret: str,
    ) -> None:
        """
        Initialize the state store.

        Args:
            file_path: Path to the state file (JSON format)
            hmac_secret: Secret key for HMAC computation
        """
        self._file_path = file_path
        self._hmac_secret = hmac_secret.encode("utf-8")
        self._state: Optional[StoredState] = None
        self._write_lock = threading.RLock()
        self._repositories: Optional[StoreRepositories] = None
        # What this process last read from or wrote to the file
        self._baseline = _Snapshot()

    def load(self) -> Optional[StoredState]:
        """
        Load state from file and validate HMAC.

        Returns:
            StoredState if file exists and is valid, None if file doesn't exist

        Raises:
            TamperingError: If HMAC validation fails
            PersistenceError: If file cannot be read or parsed
        """
        if not self._file_path.exists():
            return None

        try:
            with open(self._file_path, "r", encoding="utf-8") as f:
                raw_data = json.load(f)
        except json.JSONDecodeError as e:
            raise PersistenceError(
                code="parse_error",
                message=f"Failed to parse state file: {e}",
                details={"file_path": str(self._file_path)},
            )
        except OSError as e:
            raise PersistenceError(
                code="io_error",
                message=f"Failed to read state file: {e}",
                details={"file_path": str(self._file_path)},
            )

        if not isinstance(raw_data, dict):
            raise PersistenceError(
                code="parse_error",
                message="State file does not contain a JSON object",
                details={"file_path": str(self._file_path)},
            )

        stored_hmac = raw_data.get("hmac", "")
        computed_hmac = self.compute_hmac(self._hmac_fields(raw_data))
        if not self.validate_hmac(str(stored_hmac), computed_hmac):
            raise TamperingError(
                code="hmac_mismatch",
                message="HMAC validation failed - data may have been tampered with",
                details={"file_path": str(self._file_path)},
            )

        try:
            config_data = raw_data.get("config")
            state = StoredState(
                version=raw_data.get("version", self.VERSION),
                domains=[MonitoredDomain.from_dict(d) for d in raw_data.get("domains", [])],
                config=MonitoringConfig.from_dict(config_data) if config_data else None,
                alerts=[AlertRecord.from_dict(a) for a in raw_data.get("alerts", [])],
                last_updated=raw_data.get("last_updated", ""),
                hmac=stored_hmac,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceError(
                code="parse_error",
                message=f"Malformed record in state file: {e}",
                details={"file_path": str(self._file_path)},
            )

        self._state = state
        return state

    def save(self, state: Optional[StoredState] = None) -> None:
        """
        Save state to file with HMAC protection.

        Args:
            state: State to save. If None, saves the current internal state.

        Raises:
            PersistenceError: If file cannot be written
        """
        with self._write_lock:
            if state is not None:
                self._state = state

            if self._state is None:
                raise PersistenceError(
                    code="no_state",
                    message="No state to save",
                    details={},
                )

            now = datetime.now(timezone.utc).isoformat()
            data = {
                "version": self._state.version,
                "domains": [d.to_dict() for d in self._state.domains],
                "config": self._state.config.to_dict() if self._state.config else None,
                "alerts": [a.to_dict() for a in self._state.alerts],
                "last_updated": now,
            }
            computed_hmac = self.compute_hmac(data)
            output_data = dict(data, hmac=computed_hmac)

            # Per-process sibling file, so a crash never leaves half a state file
            tmp_path = Path(f"{self._file_path}.{os.getpid()}.tmp")
            try:
                self._file_path.parent.mkdir(parents=True, exist_ok=True)
                with open(tmp_path, "w", encoding="utf-8") as f:
                    json.dump(output_data, f, indent=2, sort_keys=True, ensure_ascii=False)
                tmp_path.replace(self._file_path)
            except OSError as e:
                raise PersistenceError(
                    code="io_error",
                    message=f"Failed to write state file: {e}",
                    details={"file_path": str(self._file_path)},
                )

            self._state.last_updated = now
            self._state.hmac = computed_hmac

    def open_repositories(self, clock: Optional[Clock] = None) -> StoreRepositories:
        """
        Load the state file and return write-through repositories.

        Raises:
            TamperingError: If the state file fails HMAC validation
            PersistenceError: If the state file cannot be read
        """
        with self._write_lock:
            state = self.load() or StoredState(version=self.VERSION)
            self._state = state
            self._baseline = _Snapshot.of(state.domains, state.alerts, state.config)
            self._repositories = StoreRepositories(
                domains=InMemoryDomainRepository(state.domains, on_change=self.sync),
                config=InMemoryConfigRepository(
                    state.config, clock=clock, on_change=self.sync
                ),
                alerts=InMemoryAlertRepository(state.alerts, on_change=self.sync),
            )
        return self._repositories

    def sync(self) -> None:
        """
        Merge this process's changes with the file and pull in everyone else's.

        Records changed here since the last sync overwrite their copies on
        disk; everything else on disk is kept and copied into the
        repositories. Domains keep last-write-wins on a name clash, alert
        records keep the one already on disk.

        Raises:
            TamperingError: If the state file fails HMAC validation
            PersistenceError: If the state file cannot be read or written
        """
        repos = self._repositories
        if repos is None:
            return

        with self._write_lock:
            local = _Snapshot.of(
                repos.domains.get_all(), repos.alerts.get_all(), repos.config.peek()
            )
            on_disk = self.load()
            disk = (
                _Snapshot.of(on_disk.domains, on_disk.alerts, on_disk.config)
                if on_disk is not None
                else _Snapshot()
            )

            config = disk.config
            if _config_dict(local.config) != _config_dict(self._baseline.config):
                config = local.config
            merged = _Snapshot(
                domains=_merge_records(
                    self._baseline.domains,
                    local.domains,
                    disk.domains,
                    unique_key=lambda d: d.name,
                    local_wins_conflicts=True,
                ),
                alerts=_merge_records(
                    self._baseline.alerts,
                    local.alerts,
                    disk.alerts,
                    unique_key=lambda a: (a.domain_id, a.threshold),
                    local_wins_conflicts=False,
                ),
                config=config,
            )

            if on_disk is None or not merged.same_as(disk):
                self.save(merged.to_state(self.VERSION))
            self._baseline = merged

            repos.domains.absorb(
                [merged.domains[i] for i in _changed_ids(local.domains, merged.domains)],
                local.domains.keys() - merged.domains.keys(),
            )
            repos.alerts.absorb(
                [merged.alerts[i] for i in _changed_ids(local.alerts, merged.alerts)],
                local.alerts.keys() - merged.alerts.keys(),
            )
            if _config_dict(local.config) != _config_dict(merged.config):
                repos.config.absorb(merged.config)

    @staticmethod
    def _hmac_fields(raw_data: dict) -> dict:
        return {
            "version": raw_data.get("version"),
            "domains": raw_data.get("domains", []),
            "config": raw_data.get("config"),
            "alerts": raw_data.get("alerts", []),
            "last_updated": raw_data.get("last_updated"),
        }

    def compute_hmac(self, data: dict) -> str:
        """
        Compute HMAC-SHA256 over serialized data.

        Returns:
            Hexadecimal HMAC string
        """
        serialized = json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        return hmac.new(
            self._hmac_secret,
            serialized.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def validate_hmac(self, stored_hmac: str, computed_hmac: str) -> bool:
        """Validate HMAC using constant-time comparison."""
        return hmac.compare_digest(stored_hmac, computed_hmac)

    @property
    def state(self) -> Optional[StoredState]:
        return self._state

    @property
    def file_path(self) -> Path:
        return self._file_path
