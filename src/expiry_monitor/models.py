"""
Data models for the expiry monitor.

This module defines the monitored domain record, the normalized lookup
record returned by resolvers, and the alert record that doubles as the
deduplication entry for each (domain, threshold) pair.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

SECONDS_PER_DAY = 86400


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate an opaque record id."""
    return str(uuid.uuid4())


def whole_days(delta: timedelta) -> int:
    """Whole days in a duration, truncated toward zero."""
    return int(delta.total_seconds() / SECONDS_PER_DAY)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert to aware UTC; naive values are taken to be UTC already."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class DomainInfo:
    """Normalized domain-information record produced by a resolver."""

    domain_name: str
    expiration_time: Optional[datetime]
    nameservers: list[str] = field(default_factory=list)
    registrant: str = ""
    registrar: str = ""
    created_time: Optional[datetime] = None
    updated_time: Optional[datetime] = None

    def is_complete(self) -> bool:
        """A record is usable only if it carries an expiration time."""
        return self.expiration_time is not None


@dataclass
class MonitoredDomain:
    """A domain under expiration monitoring."""

    id: str
    name: str
    expiration_time: datetime
    nameservers: list[str] = field(default_factory=list)
    registrant: str = ""
    registrar: str = ""
    last_checked_at: Optional[datetime] = None
    next_check_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def days_until_expiration(self, now: datetime) -> int:
        return whole_days(self.expiration_time - now)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expiration_time

    def apply_info(self, info: DomainInfo) -> None:
        """Overwrite the registry-derived fields from a fresh lookup."""
        self.expiration_time = info.expiration_time
        self.nameservers = list(info.nameservers)
        self.registrant = info.registrant
        self.registrar = info.registrar

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "expiration_time": _to_iso(self.expiration_time),
            "nameservers": list(self.nameservers),
            "registrant": self.registrant,
            "registrar": self.registrar,
            "last_checked_at": _to_iso(self.last_checked_at),
            "next_check_at": _to_iso(self.next_check_at),
            "created_at": _to_iso(self.created_at),
            "updated_at": _to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MonitoredDomain":
        return cls(
            id=data["id"],
            name=data["name"],
            expiration_time=_from_iso(data["expiration_time"]),
            nameservers=list(data.get("nameservers") or []),
            registrant=data.get("registrant", ""),
            registrar=data.get("registrar", ""),
            last_checked_at=_from_iso(data.get("last_checked_at")),
            next_check_at=_from_iso(data.get("next_check_at")),
            created_at=_from_iso(data.get("created_at")),
            updated_at=_from_iso(data.get("updated_at")),
        )


@dataclass(frozen=True)
class AlertRecord:
    """
    A single threshold alert.

    Created once per (domain_id, threshold) the first time the threshold is
    crossed and never modified afterwards. Its existence is what prevents the
    same alert from being sent again.
    """

    id: str
    domain_id: str
    domain_name: str
    threshold: timedelta
    expiration_time_at_send: datetime
    sent_at: datetime
    delivered: bool = False
    failure_reason: str = ""

    def days_remaining(self) -> int:
        """Whole days left until expiration at the moment the alert was sent."""
        return whole_days(self.expiration_time_at_send - self.sent_at)

    def threshold_days(self) -> int:
        return whole_days(self.threshold)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "domain_id": self.domain_id,
            "domain_name": self.domain_name,
            "threshold_seconds": int(self.threshold.total_seconds()),
            "expiration_time_at_send": _to_iso(self.expiration_time_at_send),
            "sent_at": _to_iso(self.sent_at),
            "delivered": self.delivered,
            "failure_reason": self.failure_reason,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AlertRecord":
        return cls(
            id=data["id"],
            domain_id=data["domain_id"],
            domain_name=data["domain_name"],
            threshold=timedelta(seconds=data["threshold_seconds"]),
            expiration_time_at_send=_from_iso(data["expiration_time_at_send"]),
            sent_at=_from_iso(data["sent_at"]),
            delivered=bool(data.get("delivered", False)),
            failure_reason=data.get("failure_reason", ""),
        )
