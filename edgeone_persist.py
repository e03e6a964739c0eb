"""
Saving the live iptables rules so they survive a reboot.

Strategies are tried in order until one succeeds: the netfilter-persistent
helper, the distribution's own rules files, then a generic dump directory
with a restore script the operator can hook into startup.
"""

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from edgeone_config import FAMILIES, FAMILY_V4, FAMILY_V6, ProtectionConfig
from edgeone_errors import BackendError, PersistenceError
from edgeone_rules import IptablesBackend, run_cmd

logger = logging.getLogger(__name__)

DEBIAN_RULES = {FAMILY_V4: 'iptables/rules.v4', FAMILY_V6: 'iptables/rules.v6'}
REDHAT_RULES = {FAMILY_V4: 'sysconfig/iptables', FAMILY_V6: 'sysconfig/ip6tables'}
REDHAT_SERVICES = {FAMILY_V4: 'iptables', FAMILY_V6: 'ip6tables'}
GENERIC_RULES = {FAMILY_V4: 'rules.v4', FAMILY_V6: 'rules.v6'}


@dataclass
class PersistOutcome:
    strategy: str
    succeeded: bool
    detail: str = ''
    paths: List[Path] = field(default_factory=list)


@dataclass
class PersistReport:
    outcomes: List[PersistOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return any(outcome.succeeded for outcome in self.outcomes)

    @property
    def strategy(self) -> Optional[str]:
        for outcome in self.outcomes:
            if outcome.succeeded:
                return outcome.strategy
        return None


class RulePersister:
    """Writes the converged rule set through the first strategy that works."""

    def __init__(self, backends: Dict[str, IptablesBackend], etc_dir: Optional[Path] = None,
                 fallback_dir: Optional[Path] = None, timeout: Optional[int] = None):
        self.config = ProtectionConfig()
        self.backends = backends
        self.etc_dir = Path(etc_dir) if etc_dir else self.config.ETC_DIR
        self.fallback_dir = Path(fallback_dir) if fallback_dir else self.config.FALLBACK_SAVE_DIR
        self.timeout = timeout or self.config.IPTABLES_TIMEOUT

    @property
    def strategies(self) -> List[Tuple[str, Callable[[], PersistOutcome]]]:
        return [
            ('netfilter-persistent', self._save_netfilter_persistent),
            ('distribution', self._save_distribution_files),
            ('generic', self._save_generic),
        ]

    def _run_cmd(self, cmd: List[str]) -> Tuple[int, str, str]:
        return run_cmd(cmd, self.timeout)

    def persist(self) -> PersistReport:
        """
        Try each strategy in order, recording every outcome.

        A total failure is logged but never raised: the live rules are already
        in place whatever happens here.
        """
        logger.info("Saving iptables rules")
        report = PersistReport()
        for name, strategy in self.strategies:
            try:
                outcome = strategy()
            except (PersistenceError, BackendError, OSError) as e:
                outcome = PersistOutcome(name, False, str(e))
            report.outcomes.append(outcome)
            if outcome.succeeded:
                logger.info(f"iptables rules saved using {name}")
                return report
            logger.debug(f"Persistence strategy {name} not used: {outcome.detail}")

        logger.error("Could not save iptables rules; they will be lost on reboot")
        return report

    def _dumps(self) -> Dict[str, str]:
        """iptables-save output per family whose save binary is installed."""
        dumps = {}
        for family in FAMILIES:
            backend = self.backends.get(family)
            if backend is None or not shutil.which(backend.save_binary):
                continue
            dumps[family] = backend.dump_all()
        if FAMILY_V4 not in dumps:
            raise PersistenceError("iptables-save command not found")
        return dumps

    def _save_netfilter_persistent(self) -> PersistOutcome:
        name = 'netfilter-persistent'
        if not shutil.which(name):
            return PersistOutcome(name, False, 'netfilter-persistent not installed')
        rc, _, stderr = self._run_cmd([name, 'save'])
        if rc != 0:
            return PersistOutcome(name, False, f"netfilter-persistent save failed: {stderr.strip()}")
        return PersistOutcome(name, True)

    def _save_distribution_files(self) -> PersistOutcome:
        name = 'distribution'
        if (self.etc_dir / 'debian_version').exists():
            layout, services = DEBIAN_RULES, {}
            logger.info(f"Detected Debian/Ubuntu, saving rules to {self.etc_dir / 'iptables'}")
        elif (self.etc_dir / 'redhat-release').exists():
            layout, services = REDHAT_RULES, REDHAT_SERVICES
            logger.info(f"Detected CentOS/RHEL, saving rules to {self.etc_dir / 'sysconfig'}")
        else:
            return PersistOutcome(name, False, 'no known distribution layout')

        paths = []
        for family, dump in self._dumps().items():
            path = self.etc_dir / layout[family]
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(dump)
            paths.append(path)
            if family in services:
                self._restart_service(services[family])
        return PersistOutcome(name, True, paths=paths)

    def _restart_service(self, service: str) -> None:
        for cmd in (['systemctl', 'restart', service], ['service', service, 'restart']):
            rc, _, _ = self._run_cmd(cmd)
            if rc == 0:
                return
        logger.warning(f"Could not restart {service} service")

    def _save_generic(self) -> PersistOutcome:
        name = 'generic'
        dumps = self._dumps()
        save_dir = self.etc_dir / 'iptables'
        try:
            save_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            save_dir = self.fallback_dir
            save_dir.mkdir(parents=True, exist_ok=True)

        paths = []
        script_lines = ['#!/bin/sh', '# EdgeOne IP Protection - restore firewall rules']
        for family, dump in dumps.items():
            path = save_dir / GENERIC_RULES[family]
            path.write_text(dump)
            paths.append(path)
            logger.info(f"{family} rules saved to {path}")
            script_lines.append(f"{self.config.RESTORE_BINARIES[family]} < {path}")

        script = save_dir / self.config.RESTORE_SCRIPT_NAME
        script.write_text('\n'.join(script_lines) + '\n')
        script.chmod(0o755)
        paths.append(script)
        logger.info(f"Created restore script: {script}")
        logger.info(f"Add it to system startup to keep the rules after reboot, e.g. '@reboot {script}' in crontab")
        return PersistOutcome(name, True, f"restore script {script}", paths)
