"""
Command-line interface for the expiry monitor.

Commands:
- run: Monitor all stored domains until interrupted
- add / remove: Manage monitored domains
- list: Show monitored domains and their expiration
- alerts: Show the alert history of a domain
- config: Show or change the monitoring configuration

Process settings come from the environment (see `load_settings`).
"""

import argparse
import asyncio
import signal
import sys
from datetime import timedelta
from pathlib import Path
from typing import Awaitable, Callable, Optional
from urllib.parse import urlparse

from . import __version__
from .audit_logger import AuditLogger
from .config import AppSettings, load_settings, parse_threshold_days
from .exceptions import ExpiryMonitorError
from .models import utc_now
from .service import DomainMonitor

Command = Callable[[DomainMonitor, argparse.Namespace], Awaitable[int]]

STORE_SYNC_SECONDS = 30.0


def build_settings(args: argparse.Namespace) -> AppSettings:
    settings = load_settings(Path(args.env_file) if args.env_file else None)
    if args.state_file:
        settings.persistence.state_file_path = Path(args.state_file)
    if args.verbose:
        settings.logging.level = "debug"
    return settings


def create_logger(settings: AppSettings) -> AuditLogger:
    return AuditLogger.from_config(settings.logging.level, settings.logging.output_format)


def mask_endpoint(endpoint: str) -> str:
    """Show only scheme and host of a webhook URL; the rest carries credentials."""
    if not endpoint:
        return "(not configured)"
    parsed = urlparse(endpoint)
    return f"{parsed.scheme}://{parsed.netloc}/***"


def format_days(delta: timedelta) -> str:
    days = delta.total_seconds() / 86400
    return f"{days:g}d"


async def _run_command(command: Command, args: argparse.Namespace) -> int:
    settings = build_settings(args)
    logger = create_logger(settings)
    try:
        monitor = DomainMonitor.from_settings(settings, logger=logger)
    except ExpiryMonitorError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    async with monitor:
        try:
            return await command(monitor, args)
        except ExpiryMonitorError as e:
            print(f"Error: {e.message}", file=sys.stderr)
            return 1


def _find_or_report(monitor: DomainMonitor, name_or_id: str):
    domain = monitor.find_domain(name_or_id)
    if domain is None:
        print(f"Error: Domain not found: {name_or_id}", file=sys.stderr)
    return domain


async def run_monitor(monitor: DomainMonitor, args: argparse.Namespace) -> int:
    """Run the scheduler until SIGINT or SIGTERM."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform; Ctrl+C still raises KeyboardInterrupt
            pass

    count = await monitor.start()
    print(f"Monitoring {count} domains. Press Ctrl+C to stop.")
    try:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=STORE_SYNC_SECONDS)
            except asyncio.TimeoutError:
                # Domains added or removed by `add` / `remove` in another process
                try:
                    monitor.sync_from_store()
                except ExpiryMonitorError as e:
                    print(f"Warning: {e.message}", file=sys.stderr)
    finally:
        print("Shutting down...")
        drained = await monitor.stop()
        if not drained:
            print("Warning: shutdown timed out; running checks were abandoned", file=sys.stderr)
    return 0


async def add_domain(monitor: DomainMonitor, args: argparse.Namespace) -> int:
    domain = await monitor.add_domain(args.domain)
    days = domain.days_until_expiration(utc_now())
    print(
        f"Added {domain.name} (expires {domain.expiration_time.strftime('%Y-%m-%d')}, "
        f"{days} days remaining)"
    )
    return 0


async def remove_domain(monitor: DomainMonitor, args: argparse.Namespace) -> int:
    domain = _find_or_report(monitor, args.domain)
    if domain is None:
        return 1
    await monitor.remove_domain(domain.id)
    print(f"Removed {domain.name}")
    return 0


async def list_domains(monitor: DomainMonitor, args: argparse.Namespace) -> int:
    domains = monitor.list_domains()
    if not domains:
        print("No domains monitored.")
        return 0

    now = utc_now()
    print(f"{'DOMAIN':<32} {'EXPIRES':<10} {'DAYS':>5}  {'REGISTRAR':<24} NEXT CHECK")
    for domain in domains:
        next_check = (
            domain.next_check_at.strftime("%Y-%m-%d %H:%M") if domain.next_check_at else "-"
        )
        marker = " (expired)" if domain.is_expired(now) else ""
        print(
            f"{domain.name:<32} {domain.expiration_time.strftime('%Y-%m-%d'):<10} "
            f"{domain.days_until_expiration(now):>5}  {domain.registrar[:24]:<24} "
            f"{next_check}{marker}"
        )
    return 0


async def show_alerts(monitor: DomainMonitor, args: argparse.Namespace) -> int:
    domain = _find_or_report(monitor, args.domain)
    if domain is None:
        return 1

    alerts = monitor.get_alerts(domain.id)
    if not alerts:
        print(f"No alerts sent for {domain.name}.")
        return 0

    for alert in alerts:
        status = "delivered" if alert.delivered else f"failed: {alert.failure_reason}"
        print(
            f"{alert.sent_at.strftime('%Y-%m-%d %H:%M')}  "
            f"{alert.threshold_days():>3} days  "
            f"({alert.days_remaining()} remaining)  {status}"
        )
    return 0


async def config_command(monitor: DomainMonitor, args: argparse.Namespace) -> int:
    if args.action == "set":
        thresholds = (
            parse_threshold_days(args.thresholds) if args.thresholds is not None else None
        )
        monitor.update_config(
            check_interval=(
                timedelta(hours=args.interval_hours)
                if args.interval_hours is not None
                else None
            ),
            alert_thresholds=thresholds,
            webhook_endpoint=args.webhook,
            retention_period=(
                timedelta(days=args.retention_days)
                if args.retention_days is not None
                else None
            ),
        )
        print("Configuration updated.")

    config = monitor.get_config()
    print(f"  Check interval: {config.check_interval.total_seconds() / 3600:g}h")
    print(f"  Alert thresholds: {', '.join(format_days(t) for t in config.alert_thresholds)}")
    print(f"  Webhook: {mask_endpoint(config.webhook_endpoint)}")
    print(f"  Retention: {format_days(config.retention_period)}")
    return 0


def _command(handler: Command) -> Callable[[argparse.Namespace], int]:
    def run(args: argparse.Namespace) -> int:
        return asyncio.run(_run_command(handler, args))

    return run


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="expiry-monitor",
        description="Domain expiration monitor with threshold alerts",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--env-file",
        help="Path to a .env file with EXPIRY_MONITOR_* settings",
    )
    parser.add_argument(
        "--state-file",
        help="Path to the state file (overrides EXPIRY_MONITOR_STATE_FILE)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser(
        "run",
        help="Monitor all domains until interrupted",
    )
    run_parser.set_defaults(func=_command(run_monitor))

    add_parser = subparsers.add_parser(
        "add",
        help="Start monitoring a domain",
    )
    add_parser.add_argument(
        "domain",
        help="Domain to monitor (e.g., example.com)",
    )
    add_parser.set_defaults(func=_command(add_domain))

    remove_parser = subparsers.add_parser(
        "remove",
        help="Stop monitoring a domain",
    )
    remove_parser.add_argument(
        "domain",
        help="Domain name or id",
    )
    remove_parser.set_defaults(func=_command(remove_domain))

    list_parser = subparsers.add_parser(
        "list",
        help="List monitored domains",
    )
    list_parser.set_defaults(func=_command(list_domains))

    alerts_parser = subparsers.add_parser(
        "alerts",
        help="Show alert history of a domain",
    )
    alerts_parser.add_argument(
        "domain",
        help="Domain name or id",
    )
    alerts_parser.set_defaults(func=_command(show_alerts))

    config_parser = subparsers.add_parser(
        "config",
        help="Show or change the monitoring configuration",
    )
    config_parser.add_argument(
        "action",
        choices=["show", "set"],
        help="Configuration action",
    )
    config_parser.add_argument(
        "--interval-hours",
        type=int,
        help="Check interval in hours (at least 1)",
    )
    config_parser.add_argument(
        "--thresholds",
        help="Alert thresholds in days, comma-separated (e.g., 90,60,30,7)",
    )
    config_parser.add_argument(
        "--webhook",
        help="HTTPS webhook URL; an empty string disables delivery",
    )
    config_parser.add_argument(
        "--retention-days",
        type=int,
        help="Days to keep alert history of removed domains (at least 1)",
    )
    config_parser.set_defaults(func=_command(config_command))

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """
    Main entry point for the CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    try:
        return args.func(args)
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
