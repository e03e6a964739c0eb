#!/usr/bin/python3
"""
EdgeOne Origin Protection

Restricts inbound TCP ports to Tencent Cloud EdgeOne edge nodes. The published
EdgeOne IP list is fetched, whitelisted in a dedicated iptables chain per port,
and every other source is dropped on that port. A daily trigger re-applies the
list once the configured update interval has passed.
"""

import argparse
import logging
import os
import sys
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional

from edgeone_config import AREA_GLOBAL, AREAS, FAMILIES, FAMILY_BOTH, ProtectionConfig
from edgeone_errors import (
    EdgeOneProtectionError,
    MissingDependencyError,
    PrivilegeError,
)
from edgeone_ips import EdgeOneIPSource, NormalizeResult, load_prefixes
from edgeone_persist import RulePersister
from edgeone_rules import IptablesBackend, ReconcileReport, RuleReconciler
from edgeone_state import SyncStateStore, UpdateScheduler, is_due, next_sync_epoch


def format_timestamp(epoch: int) -> str:
    return datetime.fromtimestamp(epoch).strftime('%Y-%m-%d %H:%M:%S')


class EdgeOneProtector:
    """Runs add/delete/list/resync against the live firewall and the sync state."""

    def __init__(
        self,
        dry_run: bool = False,
        source: Optional[EdgeOneIPSource] = None,
        backends: Optional[Dict[str, IptablesBackend]] = None,
        store: Optional[SyncStateStore] = None,
        scheduler: Optional[UpdateScheduler] = None,
        persister: Optional[RulePersister] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the protector.

        Args:
            dry_run: If True, fetch and normalize only, never touch iptables or state
            source: EdgeOne IP list client
            backends: iptables backend per address family
            store: Sync state store
            scheduler: Daily trigger registration
            persister: Rule persistence adapter
            clock: Returns the current epoch time
        """
        self.dry_run = dry_run
        self.config = ProtectionConfig()
        self.logger = logging.getLogger(__name__)
        self.source = source or EdgeOneIPSource()
        self.backends = backends or {family: IptablesBackend(family) for family in FAMILIES}
        self.reconciler = RuleReconciler(self.backends)
        self.store = store or SyncStateStore()
        self.scheduler = scheduler or UpdateScheduler(self.store.config_dir)
        self.persister = persister or RulePersister(self.backends)
        self.clock = clock

        if self.dry_run:
            self.logger.info("=== DRY RUN MODE - No changes will be made ===")

    def check_requirements(self) -> None:
        """
        Raises:
            PrivilegeError: If not running as root
            MissingDependencyError: If iptables is not installed
        """
        if os.geteuid() != 0:
            raise PrivilegeError("This tool needs root privileges, run it with sudo or as root")

        v4_backend = self.backends.get(FAMILIES[0])
        if v4_backend is None or not v4_backend.available():
            raise MissingDependencyError(
                "Missing required command: iptables "
                "(Debian/Ubuntu: apt-get install iptables, CentOS/RHEL: yum install iptables)"
            )

    def prepare(self) -> None:
        """Create the config directory; the trigger script follows it if it falls back to /tmp."""
        self.scheduler.config_dir = self.store.ensure_dir()

    def _protect(self, port: int, family: Optional[str], area: Optional[str]) -> Optional[ReconcileReport]:
        """Fetch, normalize and reconcile one port. Returns None in dry-run mode."""
        fetch_family = None if family in (None, FAMILY_BOTH) else family
        result = load_prefixes(self.source, fetch_family, area)

        if self.dry_run:
            self._report_dry_run(port, result)
            return None

        report = self.reconciler.apply(port, result.prefixes)
        if report.failed:
            self.logger.warning(f"{report.failed} EdgeOne prefixes could not be whitelisted on port {port}")
        if report.degraded:
            self.logger.warning(f"{report.degraded} EdgeOne prefixes on port {port} use a degraded match")
        self.logger.info(f"EdgeOne whitelist applied to port {port}: {report.applied} rules")
        return report

    def _report_dry_run(self, port: int, result: NormalizeResult) -> None:
        prefixes = result.sorted_prefixes()
        source = "embedded fallback list" if result.from_fallback else "EdgeOne API"
        self.logger.info(
            f"DRY RUN: Got {len(prefixes)} prefixes from {source} "
            f"({result.invalid_count} invalid entries dropped)"
        )
        sample = [str(prefix) for prefix in prefixes[:self.config.DRY_RUN_SAMPLE_SIZE]]
        self.logger.info(f"DRY RUN: First {len(sample)} prefixes: {sample}")
        self.logger.info(f"DRY RUN: Would apply the EdgeOne whitelist to port {port}")

    def add(self, port: int, family: Optional[str] = None, area: str = AREA_GLOBAL) -> Optional[ReconcileReport]:
        """Protect ``port`` and record it for scheduled updates."""
        record = None if self.dry_run else self.store.load()
        report = self._protect(port, family, area)
        if self.dry_run:
            return None

        self.persister.persist()
        record = self.store.add_protected_port(record, port, family, area, now=self.clock())
        self.store.save(record)

        if record.auto_update and not self.scheduler.is_registered():
            self.scheduler.register_recurring()
        return report

    def delete(self, port: int) -> None:
        """Remove the DROP rule for ``port`` and forget the port."""
        if self.dry_run:
            self.logger.info(f"DRY RUN: Would remove EdgeOne protection from port {port}")
            return

        record = self.store.load()
        self.logger.info(f"Removing EdgeOne protection from port {port}")
        self.reconciler.remove(port)
        self.persister.persist()
        self.store.save(self.store.remove_protected_port(record, port))
        self.logger.info(f"EdgeOne protection removed from port {port}")

    def list_protection(self) -> List[str]:
        """Print current rules and configuration; returns the printed lines."""
        if self.dry_run:
            self.logger.info("DRY RUN: Would list the current EdgeOne protection rules")
            return []

        record = self.store.load()
        lines = []
        for title, rules in self.reconciler.describe(record.ports):
            lines.append(f"{title}:")
            lines.append('-' * 40)
            lines.extend(rules or ['(none)'])
            lines.append('-' * 40)

        lines.append("Configuration:")
        if record.protected_ports:
            for entry in record.protected_ports:
                lines.append(f"  port {entry.port}: version {entry.family}, area {entry.area}")
        else:
            lines.append("  protected ports: none")
        lines.append(f"  update interval: {record.update_interval_days} days")
        lines.append(f"  automatic update: {'enabled' if record.auto_update else 'disabled'}")
        if record.last_sync:
            lines.append(f"  last update: {format_timestamp(record.last_sync)}")
            lines.append(f"  next update: {format_timestamp(next_sync_epoch(record))}")

        for line in lines:
            print(line)
        return lines

    def set_update_interval(self, days: int) -> None:
        if self.dry_run:
            self.logger.info(f"DRY RUN: Would schedule updates every {days} days")
            return
        record = self.store.set_update_interval(self.store.load(), days)
        self.store.save(record)
        self.logger.info(f"Scheduling EdgeOne IP list update every {days} days")
        self.scheduler.register_recurring()

    def disable_update(self) -> None:
        if self.dry_run:
            self.logger.info("DRY RUN: Would disable scheduled updates")
            return
        self.scheduler.unregister()
        self.store.save(self.store.set_auto_update(self.store.load(), False))

    def resync(self, force: bool = False) -> bool:
        """
        Re-apply the whitelist to every protected port when an update is due.

        Returns:
            True if nothing was due or every port was resynced
        """
        record = self.store.load()
        now = self.clock()
        if not record.protected_ports:
            self.logger.info("No protected ports, nothing to update")
            return True
        if not force and not is_due(record, now):
            self.logger.info(
                f"EdgeOne IP list does not need updating, next update after "
                f"{format_timestamp(next_sync_epoch(record))}"
            )
            return True

        self.logger.info(f"Updating EdgeOne IP list for ports {record.ports}")
        failed_ports = []
        for entry in record.protected_ports:
            try:
                self._protect(entry.port, entry.family, entry.area)
            except EdgeOneProtectionError as e:
                self.logger.error(f"Update of port {entry.port} failed: {e}")
                failed_ports.append(entry.port)

        if self.dry_run:
            return not failed_ports

        if len(failed_ports) < len(record.protected_ports):
            self.persister.persist()

        if failed_ports:
            self.logger.warning(f"Update failed for ports {failed_ports}, will retry on the next run")
            return False

        self.store.save(self.store.mark_synced(record, now))
        self.logger.info("EdgeOne IP list updated")
        return True

    def close(self) -> None:
        self.source.close()


class _ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that exits with status 1 on usage errors."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def port_number(value: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port: {value!r}")
    if not 1 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"port must be between 1 and 65535: {port}")
    return port


def positive_days(value: str) -> int:
    try:
        days = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number of days: {value!r}")
    if days < 1:
        raise argparse.ArgumentTypeError(f"update interval must be at least 1 day: {days}")
    return days


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog='edgeone-protect',
        description='Allow only Tencent Cloud EdgeOne edge nodes to reach the given ports',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --add 80 --version v4 --area mainland-china
  %(prog)s --delete 80
  %(prog)s --list
  %(prog)s --add 3000 --debug
  %(prog)s --update-interval 7     # Update the EdgeOne IP list every 7 days
        """
    )
    actions = parser.add_mutually_exclusive_group()
    actions.add_argument('--add', type=port_number, metavar='PORT',
                         help='Add EdgeOne whitelist protection to PORT')
    actions.add_argument('--delete', type=port_number, metavar='PORT',
                         help='Remove EdgeOne whitelist protection from PORT')
    actions.add_argument('--list', action='store_true',
                         help='List the current EdgeOne protection rules')
    actions.add_argument('--resync', action='store_true',
                         help='Re-apply the whitelist to all protected ports if an update is due')
    parser.add_argument('--version', choices=FAMILIES,
                        help='IP version to whitelist (default: both)')
    parser.add_argument('--area', choices=AREAS, default=AREA_GLOBAL,
                        help='EdgeOne area (default: global)')
    parser.add_argument('--debug', action='store_true',
                        help='Enable debug logging')
    parser.add_argument('--test', action='store_true',
                        help='Fetch and report the IP list without changing the firewall')
    update = parser.add_mutually_exclusive_group()
    update.add_argument('--update-interval', type=positive_days, metavar='DAYS',
                        help=f'Automatic update interval in days '
                             f'(default: {ProtectionConfig.DEFAULT_UPDATE_INTERVAL_DAYS})')
    update.add_argument('--disable-update', action='store_true',
                        help='Disable automatic updates')
    parser.add_argument('--force', action='store_true',
                        help='With --resync, update even if the interval has not passed')
    return parser


def setup_logging(debug: bool, log_file: Optional[str] = ProtectionConfig.LOG_FILE) -> None:
    """Configure logging with appropriate level and handlers."""
    level = logging.DEBUG if debug else logging.INFO
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    file_error = None
    if log_file:
        try:
            handlers.append(logging.FileHandler(log_file))
        except OSError as e:
            file_error = e

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )
    if file_error:
        logging.getLogger(__name__).warning(f"Could not open log file {log_file}: {file_error}")


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.debug)
    logger = logging.getLogger(__name__)

    has_action = args.add is not None or args.delete is not None or args.list or args.resync
    if not has_action and args.update_interval is None and not args.disable_update:
        parser.print_help()
        return 1

    protector = None
    try:
        protector = EdgeOneProtector(dry_run=args.test)
        if not args.test:
            protector.check_requirements()
            protector.prepare()

        if args.update_interval is not None:
            protector.set_update_interval(args.update_interval)
        if args.disable_update:
            protector.disable_update()

        if args.add is not None:
            protector.add(args.add, args.version, args.area)
        elif args.delete is not None:
            protector.delete(args.delete)
        elif args.list:
            protector.list_protection()
        elif args.resync:
            if not protector.resync(force=args.force):
                return 1
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        return 1
    finally:
        if protector is not None:
            protector.close()


if __name__ == "__main__":
    sys.exit(main())
