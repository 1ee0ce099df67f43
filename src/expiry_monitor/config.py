"""
Configuration for the expiry monitor.

This module defines the runtime monitoring configuration (check interval,
alert thresholds, webhook endpoint, retention) that is read on every tick,
and the static process settings for retries, lookups, notifications,
scheduling, persistence and logging.
"""

import os
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

from .enums import ConfigErrorCode
from .exceptions import ConfigValidationError

MIN_CHECK_INTERVAL = timedelta(hours=1)
MIN_RETENTION_PERIOD = timedelta(days=1)

DEFAULT_CHECK_INTERVAL = timedelta(hours=24)
DEFAULT_ALERT_THRESHOLDS = (
    timedelta(days=90),
    timedelta(days=60),
    timedelta(days=30),
    timedelta(days=7),
)
DEFAULT_RETENTION_PERIOD = timedelta(days=90)


def is_https_url(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme.lower() == "https" and bool(parsed.netloc)


def parse_threshold_days(text: str) -> tuple[timedelta, ...]:
    """
    Parse a comma-separated list of whole days, e.g. "90,60,30,7".

    Raises:
        ConfigValidationError: On a non-positive or non-numeric entry, or an
            empty list
    """
    thresholds = []
    for part in text.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            days = int(part)
        except ValueError:
            days = 0
        if days <= 0:
            raise ConfigValidationError(
                code=ConfigErrorCode.INVALID_THRESHOLD.value,
                message=f"Invalid threshold value: {part}",
                details={"value": part},
            )
        thresholds.append(timedelta(days=days))

    if not thresholds:
        raise ConfigValidationError(
            code=ConfigErrorCode.NO_THRESHOLDS.value,
            message="At least one alert threshold is required",
        )
    return tuple(thresholds)


@dataclass(frozen=True)
class MonitoringConfig:
    """
    Singleton monitoring configuration.

    Instances are immutable; an update always replaces the whole value.
    """

    check_interval: timedelta = DEFAULT_CHECK_INTERVAL
    alert_thresholds: tuple[timedelta, ...] = DEFAULT_ALERT_THRESHOLDS
    webhook_endpoint: str = ""
    retention_period: timedelta = DEFAULT_RETENTION_PERIOD
    updated_at: Optional[datetime] = None

    @classmethod
    def default(cls) -> "MonitoringConfig":
        return cls()

    def validate(self) -> "MonitoringConfig":
        """
        Check every rule and return a normalized copy.

        Thresholds are deduplicated and sorted longest first; order carries
        no meaning.

        Raises:
            ConfigValidationError: On the first violated rule
        """
        if self.check_interval < MIN_CHECK_INTERVAL:
            raise ConfigValidationError(
                code=ConfigErrorCode.INTERVAL_TOO_SHORT.value,
                message="Check interval must be at least 1 hour",
                details={"check_interval_seconds": self.check_interval.total_seconds()},
            )

        if not self.alert_thresholds:
            raise ConfigValidationError(
                code=ConfigErrorCode.NO_THRESHOLDS.value,
                message="At least one alert threshold is required",
            )
        for threshold in self.alert_thresholds:
            if threshold <= timedelta(0):
                raise ConfigValidationError(
                    code=ConfigErrorCode.INVALID_THRESHOLD.value,
                    message=f"Invalid threshold value: {threshold}",
                    details={"threshold_seconds": threshold.total_seconds()},
                )

        if self.webhook_endpoint and not is_https_url(self.webhook_endpoint):
            raise ConfigValidationError(
                code=ConfigErrorCode.INSECURE_WEBHOOK.value,
                message="Webhook URL must use HTTPS",
            )

        if self.retention_period < MIN_RETENTION_PERIOD:
            raise ConfigValidationError(
                code=ConfigErrorCode.RETENTION_TOO_SHORT.value,
                message="Retention period must be at least 1 day",
                details={"retention_seconds": self.retention_period.total_seconds()},
            )

        thresholds = tuple(sorted(set(self.alert_thresholds), reverse=True))
        return replace(self, alert_thresholds=thresholds)

    def with_changes(
        self,
        check_interval: Optional[timedelta] = None,
        alert_thresholds: Optional[Iterable[timedelta]] = None,
        webhook_endpoint: Optional[str] = None,
        retention_period: Optional[timedelta] = None,
    ) -> "MonitoringConfig":
        """Build a new configuration with the given fields replaced."""
        changes: dict = {}
        if check_interval is not None:
            changes["check_interval"] = check_interval
        if alert_thresholds is not None:
            changes["alert_thresholds"] = tuple(alert_thresholds)
        if webhook_endpoint is not None:
            changes["webhook_endpoint"] = webhook_endpoint.strip()
        if retention_period is not None:
            changes["retention_period"] = retention_period
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "check_interval_seconds": int(self.check_interval.total_seconds()),
            "alert_thresholds_seconds": [
                int(t.total_seconds()) for t in self.alert_thresholds
            ],
            "webhook_endpoint": self.webhook_endpoint,
            "retention_period_seconds": int(self.retention_period.total_seconds()),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MonitoringConfig":
        updated_at = data.get("updated_at")
        return cls(
            check_interval=timedelta(seconds=data["check_interval_seconds"]),
            alert_thresholds=tuple(
                timedelta(seconds=s) for s in data["alert_thresholds_seconds"]
            ),
            webhook_endpoint=data.get("webhook_endpoint", ""),
            retention_period=timedelta(seconds=data["retention_period_seconds"]),
            updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
        )


@dataclass
class RetryConfig:
    """Retry behavior configuration."""

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0


@dataclass
class LookupSettings:
    """Lookup client configuration."""

    timeout_seconds: float = 30.0
    rdap_base_url: str = "https://rdap.org"
    retry: RetryConfig = field(default_factory=RetryConfig)


@dataclass
class NotifierSettings:
    """Webhook notifier configuration."""

    timeout_seconds: float = 10.0
    retry: RetryConfig = field(default_factory=RetryConfig)


@dataclass
class SchedulerSettings:
    """Monitoring scheduler configuration."""

    worker_capacity: int = 10
    shutdown_timeout_seconds: float = 30.0
    retention_sweep_interval_seconds: float = 86400.0


@dataclass
class PersistenceConfig:
    """Persistence and state storage configuration."""

    state_file_path: Path
    hmac_secret: str


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "info"
    output_format: str = "text"  # 'json', 'text', 'both'


@dataclass
class AppSettings:
    """Process settings combining all sub-configurations."""

    persistence: PersistenceConfig
    lookup: LookupSettings = field(default_factory=LookupSettings)
    notifier: NotifierSettings = field(default_factory=NotifierSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


DEFAULT_STATE_FILE = Path.home() / ".expiry_monitor" / "state.json"
DEFAULT_HMAC_SECRET = "default-secret-change-me"


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def load_settings(env_file: Optional[Path] = None) -> AppSettings:
    """
    Build process settings from the environment.

    Args:
        env_file: Optional .env file to load before reading variables.
            Variables already present in the environment take precedence.

    Returns:
        AppSettings with defaults for anything unset or malformed
    """
    if env_file is not None:
        load_dotenv(env_file)
    else:
        load_dotenv()

    state_file = os.getenv("EXPIRY_MONITOR_STATE_FILE", "").strip()
    persistence = PersistenceConfig(
        state_file_path=Path(state_file) if state_file else DEFAULT_STATE_FILE,
        hmac_secret=os.getenv("EXPIRY_MONITOR_HMAC_SECRET", DEFAULT_HMAC_SECRET),
    )

    log_format = os.getenv("EXPIRY_MONITOR_LOG_FORMAT", "text").lower()
    if log_format not in ("json", "text", "both"):
        log_format = "text"

    return AppSettings(
        persistence=persistence,
        lookup=LookupSettings(
            timeout_seconds=_float_env("EXPIRY_MONITOR_LOOKUP_TIMEOUT", 30.0),
            rdap_base_url=os.getenv("EXPIRY_MONITOR_RDAP_URL", "https://rdap.org"),
        ),
        notifier=NotifierSettings(
            timeout_seconds=_float_env("EXPIRY_MONITOR_WEBHOOK_TIMEOUT", 10.0),
        ),
        scheduler=SchedulerSettings(
            worker_capacity=max(1, _int_env("EXPIRY_MONITOR_WORKERS", 10)),
            shutdown_timeout_seconds=_float_env("EXPIRY_MONITOR_SHUTDOWN_TIMEOUT", 30.0),
        ),
        logging=LoggingConfig(
            level=os.getenv("EXPIRY_MONITOR_LOG_LEVEL", "info").lower(),
            output_format=log_format,
        ),
    )
