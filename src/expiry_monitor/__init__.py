"""
Expiry Monitor - Domain expiration monitoring with threshold alerts.

This package periodically refreshes registration data of monitored domains,
detects when a domain crosses a configured warning threshold before it
expires, and notifies a chat webhook exactly once per domain and threshold.
"""

__version__ = "0.1.0"
__author__ = "Expiry Monitor Team"

from expiry_monitor.exceptions import (
    ExpiryMonitorError,
    ValidationError,
    ConfigValidationError,
    LookupFailedError,
    NotificationError,
    PersistenceError,
    TamperingError,
    NotFoundError,
    DuplicateAlertError,
    SchedulerError,
)
from expiry_monitor.enums import (
    LogLevel,
    DomainValidationErrorCode,
    ConfigErrorCode,
    LookupErrorCode,
    DeliveryErrorCode,
)
from expiry_monitor.models import (
    DomainInfo,
    MonitoredDomain,
    AlertRecord,
    utc_now,
    whole_days,
)
from expiry_monitor.config import (
    MonitoringConfig,
    RetryConfig,
    LookupSettings,
    NotifierSettings,
    SchedulerSettings,
    PersistenceConfig,
    LoggingConfig,
    AppSettings,
    load_settings,
    parse_threshold_days,
)
from expiry_monitor.audit_logger import AuditLogger, LogEntry
from expiry_monitor.retry_manager import RetryManager, RetryResult
from expiry_monitor.domain_validator import DomainValidator, DomainValidationResult
from expiry_monitor.resolvers import DomainResolver, RDAPResolver, parse_rdap_domain
from expiry_monitor.lookup_client import LookupClient
from expiry_monitor.notifications import (
    WebhookTransport,
    HttpxWebhookTransport,
    NotificationResult,
    Notifier,
)
from expiry_monitor.repositories import (
    DomainRepository,
    ConfigRepository,
    AlertRepository,
    InMemoryDomainRepository,
    InMemoryConfigRepository,
    InMemoryAlertRepository,
)
from expiry_monitor.state_store import StateStore, StoredState, StoreRepositories
from expiry_monitor.threshold_evaluator import ThresholdEvaluator, crossed_thresholds
from expiry_monitor.retention import purge_history
from expiry_monitor.scheduler import MonitoringScheduler, ScheduledCheck
from expiry_monitor.service import DomainMonitor
from expiry_monitor.cli import main as cli_main, create_parser

__all__ = [
    "__version__",
    # Exceptions
    "ExpiryMonitorError",
    "ValidationError",
    "ConfigValidationError",
    "LookupFailedError",
    "NotificationError",
    "PersistenceError",
    "TamperingError",
    "NotFoundError",
    "DuplicateAlertError",
    "SchedulerError",
    # Enums
    "LogLevel",
    "DomainValidationErrorCode",
    "ConfigErrorCode",
    "LookupErrorCode",
    "DeliveryErrorCode",
    # Models
    "DomainInfo",
    "MonitoredDomain",
    "AlertRecord",
    "utc_now",
    "whole_days",
    # Config
    "MonitoringConfig",
    "RetryConfig",
    "LookupSettings",
    "NotifierSettings",
    "SchedulerSettings",
    "PersistenceConfig",
    "LoggingConfig",
    "AppSettings",
    "load_settings",
    "parse_threshold_days",
    # Audit Logger
    "AuditLogger",
    "LogEntry",
    # Retry Manager
    "RetryManager",
    "RetryResult",
    # Domain Validator
    "DomainValidator",
    "DomainValidationResult",
    # Resolvers
    "DomainResolver",
    "RDAPResolver",
    "parse_rdap_domain",
    # Lookup Client
    "LookupClient",
    # Notifications
    "WebhookTransport",
    "HttpxWebhookTransport",
    "NotificationResult",
    "Notifier",
    # Repositories
    "DomainRepository",
    "ConfigRepository",
    "AlertRepository",
    "InMemoryDomainRepository",
    "InMemoryConfigRepository",
    "InMemoryAlertRepository",
    # State Store
    "StateStore",
    "StoredState",
    "StoreRepositories",
    # Threshold Evaluator
    "ThresholdEvaluator",
    "crossed_thresholds",
    "purge_history",
    # Scheduler
    "MonitoringScheduler",
    "ScheduledCheck",
    # Service
    "DomainMonitor",
    # CLI
    "cli_main",
    "create_parser",
]
