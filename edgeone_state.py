"""
Sync state and scheduled resync for EdgeOne origin protection.

The state record lists the protected ports with their address family and
area, the update interval and the time of the last successful sync. It is a
plain value: operations return a new record and the store loads/saves it
explicitly.
"""

import json
import logging
import os
import shlex
import shutil
import sys
import tempfile
import time
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from edgeone_config import AREA_GLOBAL, AREAS, FAMILY_BOTH, FAMILY_FILTERS, ProtectionConfig
from edgeone_errors import StateError
from edgeone_rules import run_cmd

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProtectedPort:
    port: int
    family: str = FAMILY_BOTH
    area: str = AREA_GLOBAL

    def __post_init__(self):
        if not 1 <= self.port <= 65535:
            raise ValueError(f"Port out of range: {self.port}")
        if self.family not in FAMILY_FILTERS:
            raise ValueError(f"Invalid address family: {self.family}")
        if self.area not in AREAS:
            raise ValueError(f"Invalid area: {self.area}")


@dataclass(frozen=True)
class SyncRecord:
    protected_ports: Tuple[ProtectedPort, ...] = ()
    update_interval_days: int = ProtectionConfig.DEFAULT_UPDATE_INTERVAL_DAYS
    last_sync: int = 0
    auto_update: bool = True

    @property
    def ports(self) -> List[int]:
        return [entry.port for entry in self.protected_ports]

    def get(self, port: int) -> Optional[ProtectedPort]:
        for entry in self.protected_ports:
            if entry.port == port:
                return entry
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'update_interval_days': self.update_interval_days,
            'last_sync': self.last_sync,
            'auto_update': self.auto_update,
            'protected_ports': [asdict(entry) for entry in self.protected_ports],
        }


def is_due(record: SyncRecord, now: Optional[float] = None) -> bool:
    """True when at least ``update_interval_days`` have passed since the last sync."""
    now = time.time() if now is None else now
    interval = record.update_interval_days * ProtectionConfig.SECONDS_PER_DAY
    return now - record.last_sync >= interval


def next_sync_epoch(record: SyncRecord) -> int:
    return record.last_sync + record.update_interval_days * ProtectionConfig.SECONDS_PER_DAY


TRUE_STRINGS = ('true', 'yes', 'on', '1')
FALSE_STRINGS = ('false', 'no', 'off', '0')


def _coerce_flag(value: Any, default: bool) -> bool:
    """Boolean from a JSON bool, 0/1 or a yes/no style string."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in TRUE_STRINGS:
            return True
        if lowered in FALSE_STRINGS:
            return False
    logger.warning(f"Invalid auto_update value {value!r}, using {default}")
    return default


class SyncStateStore:
    """Loads and atomically saves the SyncRecord JSON file."""

    def __init__(self, config_dir: Optional[Path] = None):
        self.config = ProtectionConfig()
        self.config_dir = Path(config_dir) if config_dir else self.config.CONFIG_DIR

    @property
    def path(self) -> Path:
        return self.config_dir / self.config.STATE_FILE_NAME

    def ensure_dir(self) -> Path:
        """Create the config directory, falling back to /tmp when /etc is not writable."""
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            fallback = self.config.FALLBACK_CONFIG_DIR
            logger.warning(f"Could not create {self.config_dir} ({e}), using {fallback}")
            fallback.mkdir(parents=True, exist_ok=True)
            self.config_dir = fallback
        return self.config_dir

    def load(self) -> SyncRecord:
        """
        Load the sync record, or a default one if none was saved yet.

        Raises:
            StateError: If the file exists but is not a readable JSON object
        """
        if not self.path.exists():
            logger.debug(f"No state file at {self.path}, starting with defaults")
            return SyncRecord()

        try:
            with open(self.path, 'r') as f:
                raw = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            raise StateError(f"Could not read state file {self.path}: {e}") from e

        if not isinstance(raw, dict):
            raise StateError(f"State file {self.path} does not contain a JSON object")
        return self._validate(raw)

    def _validate(self, raw: Dict[str, Any]) -> SyncRecord:
        default = SyncRecord()

        interval = raw.get('update_interval_days', default.update_interval_days)
        try:
            interval = int(interval)
            if interval < 1:
                raise ValueError(interval)
        except (TypeError, ValueError):
            logger.warning(f"Invalid update interval {interval!r}, using {default.update_interval_days} days")
            interval = default.update_interval_days

        try:
            last_sync = int(raw.get('last_sync', 0))
        except (TypeError, ValueError):
            logger.warning(f"Invalid last_sync value {raw.get('last_sync')!r}, resetting to 0")
            last_sync = 0

        entries = raw.get('protected_ports') or []
        if not isinstance(entries, list):
            raise StateError(f"State file {self.path}: protected_ports must be a list, got {entries!r}")

        ports: Dict[int, ProtectedPort] = {}
        for entry in entries:
            try:
                protected = ProtectedPort(
                    port=int(entry['port']),
                    family=entry.get('family', FAMILY_BOTH),
                    area=entry.get('area', AREA_GLOBAL),
                )
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logger.warning(f"Ignoring invalid protected port entry {entry!r}: {e}")
                continue
            ports[protected.port] = protected

        return SyncRecord(
            protected_ports=tuple(ports.values()),
            update_interval_days=interval,
            last_sync=last_sync,
            auto_update=_coerce_flag(raw.get('auto_update', True), default.auto_update),
        )

    def save(self, record: SyncRecord) -> None:
        """Write the record to a temp file in the same directory and rename it over the original."""
        self.ensure_dir()
        tmp_path = None
        try:
            with tempfile.NamedTemporaryFile(
                mode='w', dir=self.config_dir, prefix='.config-', suffix='.tmp', delete=False
            ) as temp_file:
                tmp_path = temp_file.name
                json.dump(record.to_dict(), temp_file, indent=2)
                temp_file.flush()
                os.fsync(temp_file.fileno())
            os.replace(tmp_path, self.path)
            logger.debug(f"Saved state to {self.path}")
        except OSError as e:
            if tmp_path and os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise StateError(f"Could not save state file {self.path}: {e}") from e

    @staticmethod
    def add_protected_port(record: SyncRecord, port: int, family: Optional[str] = None,
                           area: Optional[str] = None, now: Optional[float] = None) -> SyncRecord:
        """Insert or update ``port`` and refresh the last sync time."""
        entry = ProtectedPort(port, family or FAMILY_BOTH, area or AREA_GLOBAL)
        others = tuple(p for p in record.protected_ports if p.port != port)
        now = time.time() if now is None else now
        return replace(record, protected_ports=others + (entry,), last_sync=int(now))

    @staticmethod
    def remove_protected_port(record: SyncRecord, port: int) -> SyncRecord:
        remaining = tuple(p for p in record.protected_ports if p.port != port)
        return replace(record, protected_ports=remaining)

    @staticmethod
    def set_update_interval(record: SyncRecord, days: int) -> SyncRecord:
        if days < 1:
            raise ValueError(f"Update interval must be at least 1 day, got {days}")
        return replace(record, update_interval_days=days, auto_update=True)

    @staticmethod
    def set_auto_update(record: SyncRecord, enabled: bool) -> SyncRecord:
        return replace(record, auto_update=enabled)

    @staticmethod
    def mark_synced(record: SyncRecord, now: Optional[float] = None) -> SyncRecord:
        now = time.time() if now is None else now
        return replace(record, last_sync=int(now))


@dataclass
class RegistrationResult:
    method: str
    registered: bool
    trigger_script: Path
    details: List[str] = field(default_factory=list)


class UpdateScheduler:
    """
    Registers a daily trigger that runs ``edgeone_protect --resync``.

    The trigger only wakes the tool up once a day; whether a resync is
    actually due is decided by is_due() against the stored interval.
    """

    def __init__(self, config_dir: Path, systemd_dir: Optional[Path] = None, timeout: Optional[int] = None):
        self.config = ProtectionConfig()
        self.config_dir = Path(config_dir)
        self.systemd_dir = Path(systemd_dir) if systemd_dir else self.config.SYSTEMD_DIR
        self.timeout = timeout or self.config.IPTABLES_TIMEOUT

    @property
    def trigger_script(self) -> Path:
        return self.config_dir / self.config.TRIGGER_SCRIPT_NAME

    def _run_cmd(self, cmd: List[str], input_text: Optional[str] = None) -> Tuple[int, str, str]:
        return run_cmd(cmd, self.timeout, input_text)

    @staticmethod
    def resync_command() -> str:
        return f"{sys.executable} -m edgeone_protect --resync"

    def write_trigger_script(self, command: str) -> Path:
        """
        Write the shell script cron/systemd runs.

        The state directory and API URL in use are exported into the script
        environment.
        """
        script = self.trigger_script
        script.parent.mkdir(parents=True, exist_ok=True)
        script.write_text(
            "#!/bin/sh\n"
            "# EdgeOne IP Protection scheduled update\n"
            f"export EDGEONE_PROTECTION_DIR={shlex.quote(str(self.config_dir))}\n"
            f"export EDGEONE_IPS_URL={shlex.quote(self.config.EDGEONE_IPS_URL)}\n"
            f"exec {command}\n"
        )
        script.chmod(0o755)
        return script

    @staticmethod
    def _cron_expression(time_of_day: str) -> str:
        hour, minute = (int(part) for part in time_of_day.split(':'))
        if not (0 <= hour < 24 and 0 <= minute < 60):
            raise ValueError(f"Invalid time of day: {time_of_day}")
        return f"{minute} {hour} * * *"

    def _current_crontab(self) -> List[str]:
        rc, stdout, _ = self._run_cmd(['crontab', '-l'])
        if rc != 0:
            return []
        return [line for line in stdout.splitlines() if str(self.trigger_script) not in line]

    def is_registered(self) -> bool:
        if shutil.which('crontab'):
            rc, stdout, _ = self._run_cmd(['crontab', '-l'])
            return rc == 0 and str(self.trigger_script) in stdout
        return (self.systemd_dir / f"{self.config.SYSTEMD_UNIT}.timer").exists()

    def register_recurring(self, command: Optional[str] = None,
                           time_of_day: str = ProtectionConfig.DEFAULT_TIME_OF_DAY) -> RegistrationResult:
        """
        Install the daily trigger via crontab, falling back to a systemd timer.

        Args:
            command: Command the trigger runs (default: this interpreter with --resync)
            time_of_day: Daily HH:MM at which the trigger fires

        Returns:
            RegistrationResult describing which mechanism was used
        """
        script = self.write_trigger_script(command or self.resync_command())
        cron_expression = self._cron_expression(time_of_day)
        cron_line = f"{cron_expression} {script} > /dev/null 2>&1"

        if shutil.which('crontab'):
            lines = self._current_crontab() + [cron_line]
            rc, _, stderr = self._run_cmd(['crontab', '-'], input_text='\n'.join(lines) + '\n')
            if rc == 0:
                logger.info(f"Scheduled update registered in crontab, checking daily at {time_of_day}")
                return RegistrationResult('crontab', True, script)
            logger.warning(f"Could not update crontab ({stderr.strip()}), add this line manually:")
            logger.warning(cron_line)
            return RegistrationResult('crontab', False, script, [cron_line])

        if shutil.which('systemctl'):
            logger.info("crontab not found, using a systemd timer")
            return self._register_systemd(script, time_of_day)

        logger.warning(f"Neither crontab nor systemd found, schedule {script} manually")
        return RegistrationResult('manual', False, script, [str(script)])

    def _register_systemd(self, script: Path, time_of_day: str) -> RegistrationResult:
        unit = self.config.SYSTEMD_UNIT
        service_file = self.systemd_dir / f"{unit}.service"
        timer_file = self.systemd_dir / f"{unit}.timer"
        try:
            service_file.write_text(
                "[Unit]\n"
                "Description=EdgeOne IP Protection Update Service\n"
                "After=network.target\n"
                "\n"
                "[Service]\n"
                "Type=oneshot\n"
                f"ExecStart={script}\n"
                "\n"
                "[Install]\n"
                "WantedBy=multi-user.target\n"
            )
            timer_file.write_text(
                "[Unit]\n"
                "Description=Run EdgeOne IP Protection Update Service daily\n"
                "\n"
                "[Timer]\n"
                f"OnCalendar=*-*-* {time_of_day}:00\n"
                "Persistent=true\n"
                "\n"
                "[Install]\n"
                "WantedBy=timers.target\n"
            )
        except OSError as e:
            logger.warning(f"Could not write systemd units: {e}")
            return RegistrationResult('systemd', False, script, [str(e)])

        for cmd in (['systemctl', 'daemon-reload'],
                    ['systemctl', 'enable', '--now', f"{unit}.timer"]):
            rc, _, stderr = self._run_cmd(cmd)
            if rc != 0:
                logger.warning(f"{' '.join(cmd)} failed: {stderr.strip()}")
                return RegistrationResult('systemd', False, script, [stderr.strip()])

        logger.info(f"Scheduled update registered as systemd timer {unit}.timer")
        return RegistrationResult('systemd', True, script, [str(service_file), str(timer_file)])

    def unregister(self) -> bool:
        """Remove the crontab line and the systemd timer, whichever exists."""
        removed = True
        if shutil.which('crontab'):
            lines = self._current_crontab()
            rc, _, stderr = self._run_cmd(['crontab', '-'], input_text='\n'.join(lines) + '\n' if lines else '')
            if rc == 0:
                logger.info("Scheduled update removed from crontab")
            else:
                logger.warning(f"Could not update crontab ({stderr.strip()}), edit it manually")
                removed = False

        timer_file = self.systemd_dir / f"{self.config.SYSTEMD_UNIT}.timer"
        if timer_file.exists():
            rc, _, stderr = self._run_cmd(['systemctl', 'disable', '--now', timer_file.name])
            if rc != 0:
                logger.warning(f"Could not disable {timer_file.name}: {stderr.strip()}")
                removed = False
            else:
                logger.info(f"Disabled systemd timer {timer_file.name}")
        return removed
