"""
Property-based tests for the State Store module.

Uses Hypothesis to verify HMAC protection, round trips and write-through
persistence of the repositories.
"""

import json
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from hypothesis import assume, given, settings
from hypothesis import strategies as st

from expiry_monitor.config import MonitoringConfig
from expiry_monitor.exceptions import PersistenceError, TamperingError
from expiry_monitor.models import AlertRecord, MonitoredDomain
from expiry_monitor.state_store import StateStore, StoredState

BASE_TIME = datetime(2025, 1, 1, tzinfo=timezone.utc)


# Strategies for generating valid test data

@st.composite
def moment_strategy(draw) -> datetime:
    """Generate aware UTC datetimes with whole-second precision."""
    return BASE_TIME + timedelta(seconds=draw(st.integers(min_value=0, max_value=10**8)))


@st.composite
def domain_strategy(draw, index: int = 0) -> MonitoredDomain:
    return MonitoredDomain(
        id=f"d{index}",
        name=f"{draw(st.text(alphabet='abcdefghij', min_size=1, max_size=10))}{index}.com",
        expiration_time=draw(moment_strategy()),
        nameservers=draw(st.lists(st.sampled_from(["ns1.a.net", "ns2.b.org"]), max_size=2)),
        registrant=draw(st.sampled_from(["", "Example Org"])),
        registrar=draw(st.sampled_from(["", "Registrar Inc."])),
        last_checked_at=draw(st.none() | moment_strategy()),
        next_check_at=draw(st.none() | moment_strategy()),
    )


@st.composite
def stored_state_strategy(draw) -> StoredState:
    count = draw(st.integers(min_value=0, max_value=4))
    domains = [draw(domain_strategy(index=i)) for i in range(count)]
    alerts = [
        AlertRecord(
            id=f"a{i}",
            domain_id=d.id,
            domain_name=d.name,
            threshold=timedelta(days=draw(st.integers(min_value=1, max_value=120))),
            expiration_time_at_send=d.expiration_time,
            sent_at=draw(moment_strategy()),
            delivered=draw(st.booleans()),
        )
        for i, d in enumerate(domains)
    ]
    config = draw(st.none() | st.just(MonitoringConfig.default()))
    return StoredState(version=StateStore.VERSION, domains=domains, config=config, alerts=alerts)


def hmac_secret_strategy():
    return st.text(min_size=1, max_size=40)


class TestHMACProtectionProperty:
    """Stored state is protected by an HMAC over every data field."""

    @given(state=stored_state_strategy(), secret=hmac_secret_strategy())
    @settings(max_examples=50)
    def test_state_round_trip_preserves_data(self, state: StoredState, secret: str) -> None:
        """*For any* state, save then load returns the same records."""
        with tempfile.TemporaryDirectory() as tmpdir:
            file_path = Path(tmpdir) / "state.json"
            StateStore(file_path, secret).save(state)

            loaded = StateStore(file_path, secret).load()

            assert loaded is not None
            assert loaded.domains == state.domains
            assert loaded.alerts == state.alerts
            assert loaded.config == state.config

    @given(
        state=stored_state_strategy(),
        field_name=st.sampled_from(["version", "domains", "config", "alerts", "last_updated"]),
    )
    @settings(max_examples=50)
    def test_modified_data_fails_hmac_validation(
        self, state: StoredState, field_name: str
    ) -> None:
        """*For any* saved state, changing any data field makes loading fail."""
        with tempfile.TemporaryDirectory() as tmpdir:
            file_path = Path(tmpdir) / "state.json"
            StateStore(file_path, "secret").save(state)

            raw_data = json.loads(file_path.read_text(encoding="utf-8"))
            tampered = {"tampered": True}
            assume(raw_data[field_name] != tampered)
            raw_data[field_name] = tampered
            file_path.write_text(json.dumps(raw_data), encoding="utf-8")

            with pytest.raises(TamperingError) as exc_info:
                StateStore(file_path, "secret").load()
            assert exc_info.value.code == "hmac_mismatch"

    @given(
        state=stored_state_strategy(),
        secret1=hmac_secret_strategy(),
        secret2=hmac_secret_strategy(),
    )
    @settings(max_examples=50)
    def test_wrong_secret_causes_rejection(
        self, state: StoredState, secret1: str, secret2: str
    ) -> None:
        assume(secret1 != secret2)

        with tempfile.TemporaryDirectory() as tmpdir:
            file_path = Path(tmpdir) / "state.json"
            StateStore(file_path, secret1).save(state)

            with pytest.raises(TamperingError):
                StateStore(file_path, secret2).load()


class TestLoadErrorsProperty:
    """Unreadable files are reported as persistence errors."""

    def test_missing_file_loads_nothing(self, tmp_path: Path) -> None:
        assert StateStore(tmp_path / "absent.json", "secret").load() is None

    @pytest.mark.parametrize("content", ["{not json", "[1, 2, 3]"])
    def test_unparseable_file_rejected(self, tmp_path: Path, content: str) -> None:
        file_path = tmp_path / "state.json"
        file_path.write_text(content, encoding="utf-8")

        with pytest.raises(PersistenceError) as exc_info:
            StateStore(file_path, "secret").load()
        assert exc_info.value.code == "parse_error"
        assert not isinstance(exc_info.value, TamperingError)

    def test_save_without_state_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(PersistenceError) as exc_info:
            StateStore(tmp_path / "state.json", "secret").save()
        assert exc_info.value.code == "no_state"


class TestWriteThroughProperty:
    """Repository changes are persisted immediately."""

    def test_changes_survive_reopen(self, tmp_path: Path) -> None:
        file_path = tmp_path / "nested" / "state.json"
        repos = StateStore(file_path, "secret").open_repositories(clock=lambda: BASE_TIME)

        domain = MonitoredDomain(
            id="d1", name="example.com", expiration_time=BASE_TIME + timedelta(days=40)
        )
        repos.domains.create(domain)
        repos.config.update(
            MonitoringConfig.default().with_changes(check_interval=timedelta(hours=6))
        )
        record = AlertRecord(
            id="a1",
            domain_id="d1",
            domain_name="example.com",
            threshold=timedelta(days=60),
            expiration_time_at_send=domain.expiration_time,
            sent_at=BASE_TIME,
        )
        repos.alerts.create(record)

        reopened = StateStore(file_path, "secret").open_repositories()

        assert reopened.domains.get("d1") == domain
        assert reopened.config.get().check_interval == timedelta(hours=6)
        assert reopened.config.get().updated_at == BASE_TIME
        assert reopened.alerts.has_been_sent("d1", timedelta(days=60))
        assert list(tmp_path.glob("*.tmp")) == []

    def test_delete_is_persisted(self, tmp_path: Path) -> None:
        file_path = tmp_path / "state.json"
        repos = StateStore(file_path, "secret").open_repositories()
        repos.domains.create(
            MonitoredDomain(id="d1", name="example.com", expiration_time=BASE_TIME)
        )
        repos.domains.delete("d1")

        reopened = StateStore(file_path, "secret").open_repositories()

        assert reopened.domains.get_all() == []

    def test_tampered_file_refuses_to_open(self, tmp_path: Path) -> None:
        file_path = tmp_path / "state.json"
        repos = StateStore(file_path, "secret").open_repositories()
        repos.config.get()

        raw_data = json.loads(file_path.read_text(encoding="utf-8"))
        raw_data["config"]["webhook_endpoint"] = "https://attacker.example.com/hook"
        file_path.write_text(json.dumps(raw_data), encoding="utf-8")

        with pytest.raises(TamperingError):
            StateStore(file_path, "secret").open_repositories()


class TestSharedStateFileProperty:
    """Two processes writing one state file keep each other's records."""

    @staticmethod
    def make_domain(domain_id: str, name: str) -> MonitoredDomain:
        return MonitoredDomain(
            id=domain_id, name=name, expiration_time=BASE_TIME + timedelta(days=40)
        )

    @staticmethod
    def names_on_disk(file_path: Path) -> list[str]:
        state = StateStore(file_path, "secret").load()
        return sorted(d.name for d in state.domains)

    def test_tick_update_keeps_domain_added_elsewhere(self, tmp_path: Path) -> None:
        file_path = tmp_path / "state.json"
        monitor_repos = StateStore(file_path, "secret").open_repositories()
        cli_repos = StateStore(file_path, "secret").open_repositories()

        monitor_repos.domains.create(self.make_domain("d1", "a.com"))
        cli_repos.domains.create(self.make_domain("d2", "b.com"))

        ticked = monitor_repos.domains.get("d1")
        ticked.last_checked_at = BASE_TIME + timedelta(days=1)
        monitor_repos.domains.update(ticked)

        assert self.names_on_disk(file_path) == ["a.com", "b.com"]
        assert monitor_repos.domains.get("d2") == self.make_domain("d2", "b.com")
        reopened = StateStore(file_path, "secret").open_repositories()
        assert reopened.domains.get("d1").last_checked_at == BASE_TIME + timedelta(days=1)

    @given(
        names=st.lists(
            st.text(alphabet="abcxyz", min_size=1, max_size=6), min_size=1, max_size=6, unique=True
        )
    )
    @settings(max_examples=30)
    def test_interleaved_creates_all_persisted(self, names: list[str]) -> None:
        """*For any* creates alternating between two stores, every domain survives."""
        with tempfile.TemporaryDirectory() as tmp_dir:
            file_path = Path(tmp_dir) / "state.json"
            stores = [
                StateStore(file_path, "secret").open_repositories(),
                StateStore(file_path, "secret").open_repositories(),
            ]
            for i, name in enumerate(names):
                stores[i % 2].domains.create(self.make_domain(f"d{i}", f"{name}.com"))

            assert self.names_on_disk(file_path) == sorted(f"{n}.com" for n in names)

    def test_delete_elsewhere_wins_over_update(self, tmp_path: Path) -> None:
        file_path = tmp_path / "state.json"
        monitor_repos = StateStore(file_path, "secret").open_repositories()
        monitor_repos.domains.create(self.make_domain("d1", "a.com"))
        cli_repos = StateStore(file_path, "secret").open_repositories()

        cli_repos.domains.delete("d1")
        ticked = monitor_repos.domains.get("d1")
        ticked.registrar = "Example Registrar"
        monitor_repos.domains.update(ticked)

        assert self.names_on_disk(file_path) == []
        assert monitor_repos.domains.get("d1") is None

    def test_first_alert_for_a_pair_is_kept(self, tmp_path: Path) -> None:
        file_path = tmp_path / "state.json"
        first = StateStore(file_path, "secret").open_repositories()
        second = StateStore(file_path, "secret").open_repositories()

        def record(record_id: str) -> AlertRecord:
            return AlertRecord(
                id=record_id,
                domain_id="d1",
                domain_name="a.com",
                threshold=timedelta(days=30),
                expiration_time_at_send=BASE_TIME + timedelta(days=25),
                sent_at=BASE_TIME,
            )

        first.alerts.create(record("a1"))
        second.alerts.create(record("a2"))

        state = StateStore(file_path, "secret").load()
        assert [a.id for a in state.alerts] == ["a1"]
        assert [a.id for a in second.alerts.get_by_domain("d1")] == ["a1"]

    def test_config_changed_elsewhere_survives(self, tmp_path: Path) -> None:
        file_path = tmp_path / "state.json"
        monitor_repos = StateStore(file_path, "secret").open_repositories()
        cli_repos = StateStore(file_path, "secret").open_repositories()

        cli_repos.config.update(
            MonitoringConfig.default().with_changes(check_interval=timedelta(hours=6))
        )
        monitor_repos.domains.create(self.make_domain("d1", "a.com"))

        assert StateStore(file_path, "secret").load().config.check_interval == timedelta(hours=6)
        assert monitor_repos.config.get().check_interval == timedelta(hours=6)

    def test_sync_pulls_changes_without_writing(self, tmp_path: Path) -> None:
        file_path = tmp_path / "state.json"
        store = StateStore(file_path, "secret")
        monitor_repos = store.open_repositories()
        cli_repos = StateStore(file_path, "secret").open_repositories()
        cli_repos.domains.create(self.make_domain("d2", "b.com"))
        written = file_path.read_text(encoding="utf-8")

        store.sync()

        assert [d.name for d in monitor_repos.domains.get_all()] == ["b.com"]
        assert file_path.read_text(encoding="utf-8") == written
