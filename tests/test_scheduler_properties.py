"""
Property-based tests for the Monitoring Scheduler.

Runs the scheduler on a real event loop with a fixed clock, so domains due
"now" fire immediately and rescheduled domains stay armed for a day.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from expiry_monitor.config import MonitoringConfig, RetryConfig, SchedulerSettings
from expiry_monitor.exceptions import SchedulerError
from expiry_monitor.lookup_client import LookupClient
from expiry_monitor.models import AlertRecord, DomainInfo, MonitoredDomain
from expiry_monitor.notifications import Notifier
from expiry_monitor.repositories import (
    InMemoryAlertRepository,
    InMemoryConfigRepository,
    InMemoryDomainRepository,
)
from expiry_monitor.scheduler import MonitoringScheduler
from expiry_monitor.threshold_evaluator import ThresholdEvaluator

NOW = datetime(2025, 5, 7, 12, 0, tzinfo=timezone.utc)
ORIGINAL_EXPIRY = NOW + timedelta(days=400)
RENEWED_EXPIRY = NOW + timedelta(days=25)


def fixed_clock() -> datetime:
    return NOW


async def no_sleep(delay: float) -> None:
    return None


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until the predicate holds or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class FakeResolver:
    """
    Resolver with optional gating.

    Tracks how many lookups run at once. A gate makes every lookup wait
    until it is set; `fail` makes every lookup raise.
    """

    def __init__(
        self,
        gate: Optional[asyncio.Event] = None,
        delay: float = 0.0,
        fail: bool = False,
    ) -> None:
        self.gate = gate
        self.delay = delay
        self.fail = fail
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0

    async def lookup(self, domain_name: str) -> DomainInfo:
        self.calls.append(domain_name)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            elif self.delay:
                await asyncio.sleep(self.delay)
            if self.fail:
                raise ConnectionError("registry unreachable")
            return DomainInfo(
                domain_name=domain_name,
                expiration_time=RENEWED_EXPIRY,
                nameservers=["ns1.example.net"],
                registrar="Example Registrar",
            )
        finally:
            self.active -= 1


class FailingUpdateRepository(InMemoryDomainRepository):
    def update(self, domain: MonitoredDomain) -> None:
        raise RuntimeError("disk full")


class FailingLoadRepository(InMemoryDomainRepository):
    def get_all(self) -> list[MonitoredDomain]:
        raise RuntimeError("store offline")


class FailingFirstCreateRepository(InMemoryAlertRepository):
    def __init__(self) -> None:
        super().__init__()
        self.failed = False

    def create(self, record: AlertRecord) -> None:
        if not self.failed:
            self.failed = True
            raise OSError("disk full")
        super().create(record)


class NullTransport:
    async def post(self, endpoint: str, body: dict) -> int:
        return 200


def make_domain(index: int = 0, next_check_at: Optional[datetime] = NOW) -> MonitoredDomain:
    return MonitoredDomain(
        id=f"d{index}",
        name=f"example{index}.com",
        expiration_time=ORIGINAL_EXPIRY,
        next_check_at=next_check_at,
    )


def build(
    resolver: FakeResolver,
    domains: Optional[InMemoryDomainRepository] = None,
    worker_capacity: int = 10,
    alerts: Optional[InMemoryAlertRepository] = None,
    retention_interval: float = 0.0,
    configs: Optional[InMemoryConfigRepository] = None,
):
    domains = domains if domains is not None else InMemoryDomainRepository()
    configs = configs or InMemoryConfigRepository(clock=fixed_clock)
    alert_store = alerts if alerts is not None else InMemoryAlertRepository()
    lookup = LookupClient(
        resolver, timeout_seconds=5.0, retry_config=RetryConfig(max_attempts=1), sleep=no_sleep
    )
    evaluator = ThresholdEvaluator(
        alert_store, Notifier(transport=NullTransport(), sleep=no_sleep), clock=fixed_clock
    )
    scheduler = MonitoringScheduler(
        domains,
        configs,
        lookup,
        evaluator,
        settings=SchedulerSettings(
            worker_capacity=worker_capacity,
            shutdown_timeout_seconds=2.0,
            retention_sweep_interval_seconds=retention_interval,
        ),
        alerts=alerts,
        clock=fixed_clock,
    )
    return scheduler, domains, alert_store


class TestTimerUniquenessProperty:
    """At most one timer exists per domain."""

    @given(times=st.integers(min_value=1, max_value=10))
    @settings(max_examples=20, deadline=None)
    def test_repeated_schedule_keeps_one_timer(self, times: int) -> None:
        """*For any* number of schedule calls, exactly one live timer remains."""

        async def run() -> None:
            scheduler, _, _ = build(FakeResolver())
            handles = []
            for _ in range(times):
                scheduler.schedule(make_domain(next_check_at=NOW + timedelta(hours=1)))
                handles.append(scheduler.get_check("d0").handle)

            assert scheduler.scheduled_ids() == {"d0"}
            assert all(h.cancelled() for h in handles[:-1])
            assert not handles[-1].cancelled()
            await scheduler.stop()

        asyncio.run(run())

    def test_unschedule_prevents_tick(self) -> None:
        resolver = FakeResolver()

        async def run() -> None:
            scheduler, _, _ = build(resolver, InMemoryDomainRepository([make_domain()]))
            scheduler.schedule(make_domain())
            assert scheduler.unschedule("d0")
            assert not scheduler.unschedule("d0")
            await asyncio.sleep(0.05)

        asyncio.run(run())
        assert resolver.calls == []

    def test_delay_is_time_until_next_check(self) -> None:
        async def run() -> None:
            scheduler, _, _ = build(FakeResolver())
            scheduler.schedule(make_domain(next_check_at=NOW + timedelta(hours=6)))
            scheduler.schedule(make_domain(1, next_check_at=NOW - timedelta(hours=6)))
            loop = asyncio.get_running_loop()

            later = scheduler.get_check("d0").handle.when() - loop.time()
            assert 6 * 3600 - 5 < later <= 6 * 3600
            assert scheduler.get_check("d1").handle.when() - loop.time() <= 0.5
            await scheduler.stop()

        asyncio.run(run())


class TestStartupProperty:
    """Every stored domain is armed before start returns."""

    def test_twenty_domains_armed_on_start(self) -> None:
        domains = [make_domain(i, next_check_at=NOW + timedelta(hours=i + 1)) for i in range(20)]

        async def run() -> None:
            scheduler, _, _ = build(FakeResolver(), InMemoryDomainRepository(domains))
            count = await scheduler.start()

            assert count == 20
            assert scheduler.scheduled_ids() == {d.id for d in domains}
            assert scheduler.is_running()
            await scheduler.stop()

        asyncio.run(run())

    def test_second_start_rejected(self) -> None:
        async def run() -> None:
            scheduler, _, _ = build(FakeResolver())
            await scheduler.start()
            with pytest.raises(SchedulerError) as exc_info:
                await scheduler.start()
            assert exc_info.value.code == "already_running"
            await scheduler.stop()

        asyncio.run(run())

    def test_load_failure_raises(self) -> None:
        async def run() -> None:
            scheduler, _, _ = build(FakeResolver(), FailingLoadRepository())
            with pytest.raises(SchedulerError) as exc_info:
                await scheduler.start()
            assert exc_info.value.code == "initial_load_failed"
            assert not scheduler.is_running()

        asyncio.run(run())


class TestTickPipelineProperty:
    """Ticks refresh, persist, evaluate and reschedule."""

    def test_successful_refresh_updates_and_alerts(self) -> None:
        resolver = FakeResolver()

        async def run() -> None:
            scheduler, repo, alerts = build(resolver, InMemoryDomainRepository([make_domain()]))
            await scheduler.start()
            await wait_until(lambda: repo.get("d0").last_checked_at is not None)
            await wait_until(lambda: scheduler.in_flight == 0)

            stored = repo.get("d0")
            assert stored.expiration_time == RENEWED_EXPIRY
            assert stored.registrar == "Example Registrar"
            assert stored.next_check_at == NOW + timedelta(hours=24)
            assert [r.threshold for r in alerts.get_by_domain("d0")] == [timedelta(days=30)]
            assert scheduler.get_check("d0").due_at == NOW + timedelta(hours=24)
            await scheduler.stop()

        asyncio.run(run())

    def test_failed_refresh_keeps_stale_data_and_advances(self) -> None:
        resolver = FakeResolver(fail=True)

        async def run() -> None:
            scheduler, repo, alerts = build(resolver, InMemoryDomainRepository([make_domain()]))
            await scheduler.start()
            await wait_until(lambda: repo.get("d0").last_checked_at is not None)
            await wait_until(lambda: scheduler.in_flight == 0)

            stored = repo.get("d0")
            assert stored.expiration_time == ORIGINAL_EXPIRY
            assert stored.last_checked_at == NOW
            assert stored.next_check_at == NOW + timedelta(hours=24)
            assert alerts.get_all() == []
            assert scheduler.is_scheduled("d0")
            await scheduler.stop()

        asyncio.run(run())

    def test_interval_read_from_current_config(self) -> None:
        configs = InMemoryConfigRepository(clock=fixed_clock)
        configs.update(MonitoringConfig.default().with_changes(check_interval=timedelta(hours=3)))

        async def run() -> None:
            scheduler, repo, _ = build(
                FakeResolver(), InMemoryDomainRepository([make_domain()]), configs=configs
            )
            await scheduler.start()
            await wait_until(lambda: repo.get("d0").last_checked_at is not None)

            assert repo.get("d0").next_check_at == NOW + timedelta(hours=3)
            await scheduler.stop()

        asyncio.run(run())

    def test_deleted_domain_is_not_rescheduled(self) -> None:
        resolver = FakeResolver()

        async def run() -> None:
            repo = InMemoryDomainRepository([make_domain()])
            scheduler, _, _ = build(resolver, repo)
            scheduler.schedule(make_domain())
            repo.delete("d0")
            await wait_until(lambda: not scheduler.is_scheduled("d0"))
            await wait_until(lambda: scheduler.in_flight == 0)
            await scheduler.stop()

        asyncio.run(run())
        assert resolver.calls == []

    def test_persist_failure_still_reschedules(self) -> None:
        resolver = FakeResolver()

        async def run() -> None:
            scheduler, _, _ = build(resolver, FailingUpdateRepository([make_domain()]))
            await scheduler.start()
            await wait_until(
                lambda: scheduler.get_check("d0") is not None
                and scheduler.get_check("d0").due_at == NOW + timedelta(hours=24)
            )
            await scheduler.stop()

        asyncio.run(run())
        assert resolver.calls == ["example0.com"]

    def test_alert_store_failure_keeps_other_thresholds_and_reschedules(self) -> None:
        alerts = FailingFirstCreateRepository()

        async def run() -> None:
            scheduler, repo, _ = build(
                FakeResolver(), InMemoryDomainRepository([make_domain()]), alerts=alerts
            )
            await scheduler.start()
            await wait_until(
                lambda: scheduler.get_check("d0") is not None
                and scheduler.get_check("d0").due_at == NOW + timedelta(hours=24)
            )

            assert repo.get("d0").expiration_time == RENEWED_EXPIRY
            await scheduler.stop()

        asyncio.run(run())
        # 25 days left crosses 90, 60 and 30; the 90-day create failed
        assert sorted(r.threshold.days for r in alerts.get_all()) == [30, 60]

    def test_run_now_rearms_with_zero_delay(self) -> None:
        resolver = FakeResolver()

        async def run() -> None:
            repo = InMemoryDomainRepository(
                [make_domain(next_check_at=NOW + timedelta(hours=5))]
            )
            scheduler, _, _ = build(resolver, repo)
            await scheduler.start()
            assert resolver.calls == []
            assert scheduler.run_now("d0")
            assert not scheduler.run_now("missing")
            await wait_until(lambda: resolver.calls == ["example0.com"])
            await scheduler.stop()

        asyncio.run(run())


class TestConcurrencyProperty:
    """Worker capacity bounds concurrent pipelines."""

    @given(capacity=st.integers(min_value=1, max_value=4))
    @settings(max_examples=5, deadline=None)
    def test_capacity_bounds_concurrent_lookups(self, capacity: int) -> None:
        """*For any* capacity, no more lookups run at once than there are slots."""
        resolver = FakeResolver(delay=0.02)
        domains = [make_domain(i) for i in range(8)]

        async def run() -> None:
            scheduler, _, _ = build(
                resolver, InMemoryDomainRepository(domains), worker_capacity=capacity
            )
            await scheduler.start()
            await wait_until(lambda: len(resolver.calls) == 8 and resolver.active == 0)
            await scheduler.stop()

        asyncio.run(run())
        assert resolver.max_active == capacity


class TestShutdownProperty:
    """Stop cancels timers and drains running pipelines."""

    def test_stop_waits_for_running_pipeline(self) -> None:
        async def run() -> None:
            gate = asyncio.Event()
            resolver = FakeResolver(gate=gate)
            repo = InMemoryDomainRepository(
                [make_domain(0), make_domain(1, next_check_at=NOW + timedelta(hours=1))]
            )
            scheduler, _, _ = build(resolver, repo)
            await scheduler.start()
            await wait_until(lambda: resolver.active == 1)

            stopping = asyncio.ensure_future(scheduler.stop(timeout=2.0))
            await asyncio.sleep(0.02)
            assert not stopping.done()
            gate.set()

            assert await stopping is True
            assert scheduler.scheduled_ids() == set()
            assert repo.get("d0").last_checked_at == NOW
            assert not scheduler.schedule(make_domain(2))

        asyncio.run(run())

    def test_stop_times_out_on_stuck_pipeline(self) -> None:
        async def run() -> None:
            resolver = FakeResolver(gate=asyncio.Event())
            scheduler, _, _ = build(resolver, InMemoryDomainRepository([make_domain()]))
            await scheduler.start()
            await wait_until(lambda: resolver.active == 1)

            assert await scheduler.stop(timeout=0.05) is False

        asyncio.run(run())

    def test_waiting_ticks_abandoned_on_stop(self) -> None:
        async def run() -> None:
            gate = asyncio.Event()
            resolver = FakeResolver(gate=gate)
            domains = [make_domain(i) for i in range(3)]
            scheduler, _, _ = build(
                resolver, InMemoryDomainRepository(domains), worker_capacity=1
            )
            await scheduler.start()
            await wait_until(lambda: resolver.active == 1 and scheduler.in_flight == 3)

            stopping = asyncio.ensure_future(scheduler.stop(timeout=2.0))
            await asyncio.sleep(0.02)
            gate.set()

            assert await stopping is True
            assert len(resolver.calls) == 1

        asyncio.run(run())


class TestRetentionSweepProperty:
    """The periodic sweep removes old records of deleted domains."""

    def test_sweep_runs_on_start(self) -> None:
        old = NOW - timedelta(days=200)
        stale = AlertRecord(
            id="a1",
            domain_id="gone",
            domain_name="gone.com",
            threshold=timedelta(days=30),
            expiration_time_at_send=old + timedelta(days=20),
            sent_at=old,
        )
        kept = AlertRecord(
            id="a2",
            domain_id="d0",
            domain_name="example0.com",
            threshold=timedelta(days=30),
            expiration_time_at_send=old + timedelta(days=20),
            sent_at=old,
        )
        alerts = InMemoryAlertRepository([stale, kept])

        async def run() -> None:
            repo = InMemoryDomainRepository(
                [make_domain(next_check_at=NOW + timedelta(hours=1))]
            )
            scheduler, _, _ = build(
                FakeResolver(), repo, alerts=alerts, retention_interval=3600.0
            )
            await scheduler.start()
            await wait_until(lambda: len(alerts.get_all()) == 1)
            await scheduler.stop()

        asyncio.run(run())
        assert [r.id for r in alerts.get_all()] == ["a2"]

    def test_stop_awaits_sweep_task(self) -> None:
        async def run() -> None:
            scheduler, _, _ = build(
                FakeResolver(),
                InMemoryDomainRepository([make_domain(next_check_at=NOW + timedelta(hours=1))]),
                alerts=InMemoryAlertRepository(),
                retention_interval=3600.0,
            )
            await scheduler.start()
            sweep = scheduler._retention_task
            await asyncio.sleep(0)

            assert await scheduler.stop()
            assert sweep.done()

        asyncio.run(run())
