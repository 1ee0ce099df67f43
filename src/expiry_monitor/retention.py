"""
Retention of historical alert records.

A domain is active while it is present in the domain store. Alert records
of active domains are their deduplication records and are kept forever;
records whose domain has been removed are historical and are deleted once
they are older than the configured retention period. Domains themselves
are never deleted here.
"""

from datetime import datetime
from typing import Optional

from .audit_logger import AuditLogger
from .repositories import AlertRepository, ConfigRepository, DomainRepository


def purge_history(
    domains: DomainRepository,
    configs: ConfigRepository,
    alerts: AlertRepository,
    now: datetime,
    logger: Optional[AuditLogger] = None,
) -> int:
    """
    Delete historical alert records older than the retention period.

    Returns:
        Number of deleted records
    """
    config = configs.get()
    cutoff = now - config.retention_period
    active_ids = [d.id for d in domains.get_all()]
    deleted = alerts.delete_older_than(cutoff, keep_domain_ids=active_ids)
    if logger is not None and deleted:
        logger.info(
            "Retention",
            f"Purged {deleted} historical alert records",
            {"deleted": deleted, "cutoff": cutoff.isoformat()},
        )
    return deleted
