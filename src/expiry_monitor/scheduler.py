"""
Monitoring scheduler for the expiry monitor.

Keeps one timer per monitored domain and runs the refresh-and-evaluate
pipeline when it fires:

    timer fires -> worker slot -> lookup refresh (or keep stale data)
    -> persist domain -> evaluate thresholds -> reschedule

At most `worker_capacity` pipelines run at once, and at most one pipeline
per domain is ever in flight.
"""

import asyncio
import copy
import threading
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .audit_logger import AuditLogger
from .config import MonitoringConfig, SchedulerSettings
from .enums import LogLevel
from .exceptions import LookupFailedError, NotFoundError, SchedulerError
from .lookup_client import LookupClient
from .models import MonitoredDomain, utc_now
from .repositories import AlertRepository, ConfigRepository, DomainRepository
from .retention import purge_history
from .threshold_evaluator import ThresholdEvaluator

COMPONENT = "Scheduler"


@dataclass
class ScheduledCheck:
    """An armed timer for one domain."""

    domain_id: str
    domain_name: str
    due_at: datetime
    snapshot: MonitoredDomain
    handle: Optional[asyncio.TimerHandle] = None

    def cancel(self) -> None:
        if self.handle is not None:
            self.handle.cancel()


class MonitoringScheduler:
    """
    Owns the per-domain timers and bounds concurrent pipelines.

    The timer map is guarded by a lock held only while the map is mutated,
    never across a pipeline. `schedule`, `unschedule` and `run_now` must be
    called from the event loop thread.
    """

    def __init__(
        self,
        domains: DomainRepository,
        configs: ConfigRepository,
        lookup: LookupClient,
        evaluator: ThresholdEvaluator,
        settings: Optional[SchedulerSettings] = None,
        alerts: Optional[AlertRepository] = None,
        clock: Optional[Callable[[], datetime]] = None,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        """
        Initialize the scheduler.

        Args:
            domains: Domain store
            configs: Config store, read on every tick
            lookup: Lookup client used to refresh domains
            evaluator: Threshold evaluator run after each refresh
            settings: Worker capacity, shutdown timeout and retention sweep interval
            alerts: Alert store; enables the periodic retention sweep
            clock: Returns the current aware UTC time
            logger: Optional audit logger
        """
        self._domains = domains
        self._configs = configs
        self._lookup = lookup
        self._evaluator = evaluator
        self._settings = settings or SchedulerSettings()
        self._alerts = alerts
        self._clock = clock or utc_now
        self._logger = logger

        self._lock = threading.Lock()
        self._timers: dict[str, ScheduledCheck] = {}
        self._slots = asyncio.Semaphore(self._settings.worker_capacity)
        self._stopping = asyncio.Event()
        self._domain_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._inflight: set[asyncio.Task] = set()
        self._retention_task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def settings(self) -> SchedulerSettings:
        return self._settings

    @property
    def in_flight(self) -> int:
        """Number of pipelines currently running or waiting for a slot."""
        return len(self._inflight)

    def is_running(self) -> bool:
        return self._running

    def is_scheduled(self, domain_id: str) -> bool:
        with self._lock:
            return domain_id in self._timers

    def scheduled_ids(self) -> set[str]:
        with self._lock:
            return set(self._timers)

    def get_check(self, domain_id: str) -> Optional[ScheduledCheck]:
        with self._lock:
            return self._timers.get(domain_id)

    async def start(self) -> int:
        """
        Load every domain and arm its timer.

        Returns:
            Number of scheduled domains

        Raises:
            SchedulerError: If already running or the initial load fails
        """
        if self._running:
            raise SchedulerError(
                code="already_running",
                message="Scheduler is already running",
            )

        try:
            domains = self._domains.get_all()
        except Exception as e:
            raise SchedulerError(
                code="initial_load_failed",
                message=f"Failed to load monitored domains: {e}",
            ) from e

        self._stopping.clear()
        self._running = True
        for domain in domains:
            self.schedule(domain)

        if self._alerts is not None and self._settings.retention_sweep_interval_seconds > 0:
            self._retention_task = asyncio.get_running_loop().create_task(
                self._retention_loop()
            )

        self._log(
            LogLevel.INFO,
            f"Scheduler started with {len(domains)} domains",
            {
                "domains": len(domains),
                "worker_capacity": self._settings.worker_capacity,
            },
        )
        return len(domains)

    def schedule(self, domain: MonitoredDomain) -> bool:
        """
        Arm a one-shot timer for the domain's next check.

        Any existing timer for the same id is cancelled first, so calling
        this twice leaves exactly one timer. The delay is
        max(0, next_check_at - now); a domain without next_check_at is due
        immediately.

        Returns:
            False if the scheduler is shutting down and nothing was armed
        """
        if self._stopping.is_set():
            return False

        loop = asyncio.get_running_loop()
        now = self._clock()
        due_at = domain.next_check_at or now
        delay = max(0.0, (due_at - now).total_seconds())

        entry = ScheduledCheck(
            domain_id=domain.id,
            domain_name=domain.name,
            due_at=due_at,
            snapshot=copy.deepcopy(domain),
        )
        with self._lock:
            previous = self._timers.pop(domain.id, None)
            if previous is not None:
                previous.cancel()
            entry.handle = loop.call_later(delay, self._fire, entry)
            self._timers[domain.id] = entry

        self._log(
            LogLevel.DEBUG,
            f"Scheduled {domain.name} in {delay:.0f}s",
            {"domain": domain.name, "delay_seconds": delay},
        )
        return True

    def unschedule(self, domain_id: str) -> bool:
        """
        Cancel and remove a domain's timer. Safe to call for unknown ids.

        Returns:
            True if a timer was removed
        """
        with self._lock:
            entry = self._timers.pop(domain_id, None)
        if entry is None:
            return False

        entry.cancel()
        lock = self._domain_locks.get(domain_id)
        if lock is not None and not lock.locked():
            del self._domain_locks[domain_id]
        self._log(
            LogLevel.DEBUG,
            f"Unscheduled {entry.domain_name}",
            {"domain": entry.domain_name},
        )
        return True

    def run_now(self, domain_id: str) -> bool:
        """
        Re-arm a scheduled domain with zero delay.

        Returns:
            False if the domain has no timer
        """
        entry = self.get_check(domain_id)
        if entry is None:
            return False
        snapshot = copy.deepcopy(entry.snapshot)
        snapshot.next_check_at = None
        return self.schedule(snapshot)

    async def stop(self, timeout: Optional[float] = None) -> bool:
        """
        Stop scheduling and wait for running pipelines.

        Timers are cancelled first so no new pipeline starts. Pipelines
        still running after the timeout are abandoned, not killed.

        Args:
            timeout: Seconds to wait (shutdown_timeout_seconds by default)

        Returns:
            True if every pipeline finished, False if the timeout elapsed
        """
        if timeout is None:
            timeout = self._settings.shutdown_timeout_seconds

        self._stopping.set()
        self._running = False

        with self._lock:
            entries = list(self._timers.values())
            self._timers.clear()
        for entry in entries:
            entry.cancel()

        if self._retention_task is not None:
            sweep, self._retention_task = self._retention_task, None
            sweep.cancel()
            # Waits without re-raising, so cancelling stop() itself still propagates
            await asyncio.wait({sweep})

        pending = set(self._inflight)
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=timeout)
            if still_running:
                self._log(
                    LogLevel.WARN,
                    f"Shutdown timed out with {len(still_running)} pipelines still running",
                    {"abandoned": len(still_running), "timeout_seconds": timeout},
                )
                return False

        self._log(LogLevel.INFO, "Scheduler stopped", {"cancelled_timers": len(entries)})
        return True

    def _fire(self, entry: ScheduledCheck) -> None:
        if self._stopping.is_set():
            return
        with self._lock:
            if self._timers.get(entry.domain_id) is not entry:
                return
        task = asyncio.get_running_loop().create_task(self._run_tick(entry))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _run_tick(self, entry: ScheduledCheck) -> None:
        async with self._domain_locks[entry.domain_id]:
            if not await self._acquire_slot():
                self._log(
                    LogLevel.DEBUG,
                    f"Tick for {entry.domain_name} abandoned during shutdown",
                    {"domain": entry.domain_name},
                )
                return
            try:
                next_domain = await self._pipeline(entry)
            except Exception as e:
                # Keep the domain monitored whatever went wrong
                self._log_error(f"Tick for {entry.domain_name} failed", e, entry.domain_name)
                next_domain = self._advance(
                    copy.deepcopy(entry.snapshot), self._read_config()
                )
            finally:
                self._slots.release()

        if next_domain is None:
            self._drop_timer(entry)
        elif self._owns_timer(entry):
            self.schedule(next_domain)

    async def _acquire_slot(self) -> bool:
        if self._stopping.is_set():
            return False

        acquire = asyncio.ensure_future(self._slots.acquire())
        stopped = asyncio.ensure_future(self._stopping.wait())
        try:
            await asyncio.wait({acquire, stopped}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            if acquire.done() and not acquire.cancelled():
                self._slots.release()
            else:
                acquire.cancel()
            raise
        finally:
            stopped.cancel()

        if not acquire.done():
            acquire.cancel()
            return False
        if self._stopping.is_set():
            self._slots.release()
            return False
        return True

    async def _pipeline(self, entry: ScheduledCheck) -> Optional[MonitoredDomain]:
        """
        Refresh, persist and evaluate one domain.

        Returns:
            The domain to reschedule, or None if it was deleted
        """
        try:
            domain = self._domains.get(entry.domain_id)
        except Exception as e:
            self._log_error(
                f"Failed to read {entry.domain_name}, keeping last known schedule",
                e,
                entry.domain_name,
            )
            return self._advance(copy.deepcopy(entry.snapshot), self._read_config())

        if domain is None:
            self._log(
                LogLevel.DEBUG,
                f"{entry.domain_name} was removed, dropping tick",
                {"domain": entry.domain_name},
            )
            return None

        config = self._read_config()

        try:
            info = await self._lookup.refresh(domain.name)
            domain.apply_info(info)
        except LookupFailedError as e:
            self._log(
                LogLevel.WARN,
                f"Refresh of {domain.name} failed, keeping stale data",
                {"domain": domain.name, "error": e.message, "attempts": e.attempts},
            )

        self._advance(domain, config)
        try:
            self._domains.update(domain)
        except NotFoundError:
            self._log(
                LogLevel.DEBUG,
                f"{domain.name} was removed during refresh, dropping tick",
                {"domain": domain.name},
            )
            return None
        except Exception as e:
            self._log_error(f"Failed to persist {domain.name}", e, domain.name)

        try:
            await self._evaluator.evaluate(domain, config)
        except Exception as e:
            self._log_error(f"Alert evaluation for {domain.name} failed", e, domain.name)

        return domain

    def _advance(self, domain: MonitoredDomain, config: MonitoringConfig) -> MonitoredDomain:
        now = self._clock()
        domain.last_checked_at = now
        domain.next_check_at = now + config.check_interval
        domain.updated_at = now
        return domain

    def _read_config(self) -> MonitoringConfig:
        try:
            return self._configs.get()
        except Exception as e:
            self._log_error("Failed to read config, using defaults", e)
            return MonitoringConfig.default()

    def _owns_timer(self, entry: ScheduledCheck) -> bool:
        if self._stopping.is_set():
            return False
        with self._lock:
            return self._timers.get(entry.domain_id) is entry

    def _drop_timer(self, entry: ScheduledCheck) -> None:
        with self._lock:
            if self._timers.get(entry.domain_id) is entry:
                del self._timers[entry.domain_id]

    async def _retention_loop(self) -> None:
        interval = self._settings.retention_sweep_interval_seconds
        while not self._stopping.is_set():
            try:
                purge_history(
                    self._domains, self._configs, self._alerts, self._clock(), self._logger
                )
            except Exception as e:
                self._log_error("Retention sweep failed", e)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger is not None:
            self._logger.log(level, COMPONENT, message, data)

    def _log_error(
        self, message: str, error: Exception, domain_name: Optional[str] = None
    ) -> None:
        if self._logger is not None:
            data = {"domain": domain_name} if domain_name else None
            self._logger.log_error(COMPONENT, message, error, data)
