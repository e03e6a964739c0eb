"""
iptables rule translation and reconciliation for EdgeOne origin protection.

Each protected port gets a dedicated chain (EDGEONE-<port>) holding one ACCEPT
rule per EdgeOne prefix. The chain is referenced once from INPUT, and a DROP
sentinel for the port is kept after that reference so whitelisted sources are
matched before the catch-all deny.
"""

import logging
import shutil
import subprocess  # nosec B404 - subprocess usage is intentional and controlled
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from edgeone_config import FAMILIES, FAMILY_V4, ProtectionConfig, chain_name
from edgeone_errors import BackendError, EmptyResultSetError
from edgeone_ips import NetworkPrefix

logger = logging.getLogger(__name__)

ACCEPT = 'ACCEPT'
DROP = 'DROP'


@dataclass(frozen=True)
class RuleSpec:
    """A single tcp/dport rule in iptables argument form."""

    port: int
    verdict: str
    source: Optional[str] = None
    protocol: str = ProtectionConfig.PROTOCOL

    def to_iptables_args(self) -> List[str]:
        """Convert rule to iptables command arguments."""
        args = ['-p', self.protocol]
        if self.source:
            args.extend(['-s', self.source])
        args.extend(['--dport', str(self.port), '-j', self.verdict])
        return args


@dataclass(frozen=True)
class MatchAttempt:
    name: str
    rule: RuleSpec


def cidr_to_netmask(prefix_length: int) -> str:
    """
    Convert an IPv4 prefix length to a dotted-decimal netmask.

    Full octets are 255, the boundary octet is 256 - 2^(8 - length % 8) and the
    remaining octets are 0, e.g. 20 -> 255.255.240.0.
    """
    if not 0 <= prefix_length <= 32:
        raise ValueError(f"IPv4 prefix length out of range: {prefix_length}")

    full_octets, partial_bits = divmod(prefix_length, 8)
    octets = []
    for index in range(4):
        if index < full_octets:
            octets.append(255)
        elif index == full_octets:
            octets.append(256 - 2 ** (8 - partial_bits))
        else:
            octets.append(0)
    return '.'.join(str(octet) for octet in octets)


def build_match_attempts(prefix: NetworkPrefix, port: int, verdict: str = ACCEPT) -> List[MatchAttempt]:
    """
    Rule forms to try for one prefix, most preferred first.

    IPv4: dotted netmask, native CIDR, then the bare base address (single host).
    IPv6: native CIDR, then the bare base address.
    """
    if prefix.family == FAMILY_V4:
        sources = [
            ('netmask', f"{prefix.address}/{cidr_to_netmask(prefix.prefix_length)}"),
            ('cidr', prefix.cidr),
            ('host', prefix.address),
        ]
    else:
        sources = [
            ('cidr', prefix.cidr),
            ('host', prefix.address),
        ]
    return [MatchAttempt(name, RuleSpec(port=port, verdict=verdict, source=source))
            for name, source in sources]


def _option(tokens: List[str], flag: str) -> Optional[str]:
    """Value following ``flag`` in an ``iptables -S`` line."""
    try:
        return tokens[tokens.index(flag) + 1]
    except (ValueError, IndexError):
        return None


def run_cmd(cmd: List[str], timeout: int, input_text: Optional[str] = None) -> Tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr)."""
    logger.debug(f"Running command: {' '.join(cmd)}")
    try:
        result = subprocess.run(  # nosec B603 - controlled input, no shell
            cmd,
            input=input_text,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        return (result.returncode, result.stdout, result.stderr)
    except subprocess.TimeoutExpired:
        return (-1, "", "timeout")
    except FileNotFoundError:
        return (-1, "", "not found")


class IptablesBackend:
    """Rule-table operations for one address family through iptables/ip6tables."""

    def __init__(self, family: str, timeout: Optional[int] = None):
        self.family = family
        self.config = ProtectionConfig()
        self.binary = self.config.BINARIES[family]
        self.save_binary = self.config.SAVE_BINARIES[family]
        self.restore_binary = self.config.RESTORE_BINARIES[family]
        self.timeout = timeout or self.config.IPTABLES_TIMEOUT

    def available(self) -> bool:
        return shutil.which(self.binary) is not None

    def _run_cmd(self, cmd: List[str], input_text: Optional[str] = None) -> Tuple[int, str, str]:
        return run_cmd(cmd, self.timeout, input_text)

    def _iptables(self, *args: str) -> Tuple[int, str, str]:
        return self._run_cmd([self.binary, *args])

    def _check(self, action: str, *args: str) -> str:
        rc, stdout, stderr = self._iptables(*args)
        if rc != 0:
            raise BackendError(f"Error {action} ({self.binary}): {stderr.strip()}")
        return stdout

    def chain_exists(self, name: str) -> bool:
        rc, _, _ = self._iptables('-n', '-L', name)
        return rc == 0

    def create_chain(self, name: str) -> None:
        self._check(f"creating chain {name}", '-N', name)

    def flush_chain(self, name: str) -> None:
        self._check(f"flushing chain {name}", '-F', name)

    def chain_referenced(self, parent: str, name: str) -> bool:
        rc, _, _ = self._iptables('-n', '-C', parent, '-j', name)
        return rc == 0

    def insert_chain_reference(self, parent: str, name: str) -> None:
        self._check(f"adding {name} to {parent}", '-I', parent, '1', '-j', name)

    def append_rule(self, chain: str, rule: RuleSpec) -> bool:
        rc, _, stderr = self._iptables('-A', chain, *rule.to_iptables_args())
        if rc != 0:
            logger.debug(f"{self.binary} rejected rule in {chain}: {stderr.strip()}")
        return rc == 0

    def rule_exists(self, chain: str, rule: RuleSpec) -> bool:
        rc, _, _ = self._iptables('-C', chain, *rule.to_iptables_args())
        return rc == 0

    def delete_rule(self, chain: str, rule: RuleSpec) -> bool:
        rc, _, _ = self._iptables('-D', chain, *rule.to_iptables_args())
        return rc == 0

    def list_rules(self, chain: str) -> List[str]:
        stdout = self._check(f"listing chain {chain}", '-S', chain)
        return [line for line in stdout.splitlines() if line.startswith('-A ')]

    def dump_all(self) -> str:
        rc, stdout, stderr = self._run_cmd([self.save_binary])
        if rc != 0:
            raise BackendError(f"Error running {self.save_binary}: {stderr.strip()}")
        return stdout

    def restore_all(self, dump: str) -> None:
        rc, _, stderr = self._run_cmd([self.restore_binary], input_text=dump)
        if rc != 0:
            raise BackendError(f"Error running {self.restore_binary}: {stderr.strip()}")


class ProtectionState(Enum):
    """Progress of one (port, family) through reconciliation."""
    UNPROTECTED = 'unprotected'
    CHAIN_READY = 'chain-ready'
    RULES_APPLIED = 'rules-applied'
    DROP_INSTALLED = 'drop-installed'


@dataclass
class FamilyReport:
    family: str
    state: ProtectionState = ProtectionState.UNPROTECTED
    applied: int = 0
    degraded: int = 0
    failed: int = 0
    skipped: bool = False


@dataclass
class ReconcileReport:
    """Per-family outcome of protecting one port."""

    port: int
    families: Dict[str, FamilyReport] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        reports = [r for r in self.families.values() if not r.skipped]
        return bool(reports) and all(r.state is ProtectionState.DROP_INSTALLED for r in reports)

    @property
    def applied(self) -> int:
        return sum(r.applied for r in self.families.values())

    @property
    def degraded(self) -> int:
        return sum(r.degraded for r in self.families.values())

    @property
    def failed(self) -> int:
        return sum(r.failed for r in self.families.values())


class RuleReconciler:
    """Converges the live iptables state to the EdgeOne whitelist for a port."""

    def __init__(self, backends: Dict[str, IptablesBackend]):
        self.config = ProtectionConfig()
        self.backends = backends
        self.parent = self.config.PARENT_CHAIN

    def _usable_backends(self) -> List[Tuple[str, Optional[IptablesBackend]]]:
        usable = []
        for family in FAMILIES:
            backend = self.backends.get(family)
            if backend is None or not backend.available():
                binary = self.config.BINARIES[family]
                logger.warning(f"{binary} command not found, skipping {family} rules")
                backend = None
            usable.append((family, backend))
        return usable

    def apply(self, port: int, prefixes: Iterable[NetworkPrefix]) -> ReconcileReport:
        """
        Whitelist ``prefixes`` on ``port`` and drop everything else on it.

        Args:
            port: Protected TCP port
            prefixes: Normalized EdgeOne prefixes (both families)

        Returns:
            ReconcileReport with per-family counts and final state

        Raises:
            EmptyResultSetError: If ``prefixes`` is empty (nothing is touched)
            BackendError: If the dedicated chain or the DROP sentinel cannot be set up
        """
        prefixes = sorted(set(prefixes), key=NetworkPrefix.sort_key)
        if not prefixes:
            raise EmptyResultSetError(f"Refusing to protect port {port} with an empty whitelist")

        report = ReconcileReport(port)
        chain = chain_name(port)

        for family, backend in self._usable_backends():
            family_report = FamilyReport(family)
            report.families[family] = family_report
            if backend is None:
                family_report.skipped = True
                continue

            targets = [prefix for prefix in prefixes if prefix.family == family]
            if not targets:
                logger.warning(
                    f"No {family} EdgeOne prefixes for port {port}, "
                    f"all {family} traffic to the port will be dropped"
                )

            self._prepare_chain(backend, chain)
            family_report.state = ProtectionState.CHAIN_READY

            self._apply_accept_rules(backend, chain, port, targets, family_report)
            family_report.state = ProtectionState.RULES_APPLIED

            self._install_drop(backend, chain, port)
            family_report.state = ProtectionState.DROP_INSTALLED

            logger.info(
                f"Port {port} {family}: {family_report.applied} prefixes whitelisted, "
                f"{family_report.degraded} degraded, {family_report.failed} failed"
            )

        return report

    def _prepare_chain(self, backend: IptablesBackend, chain: str) -> None:
        """Create or flush the dedicated chain and reference it from INPUT once."""
        if backend.chain_exists(chain):
            logger.info(f"{backend.binary} chain {chain} exists, flushing existing rules")
            backend.flush_chain(chain)
        else:
            logger.info(f"Creating {backend.binary} chain {chain}")
            backend.create_chain(chain)

        if not backend.chain_referenced(self.parent, chain):
            logger.info(f"Adding {backend.binary} chain {chain} to {self.parent}")
            backend.insert_chain_reference(self.parent, chain)

    def _apply_accept_rules(self, backend: IptablesBackend, chain: str, port: int,
                            targets: List[NetworkPrefix], family_report: FamilyReport) -> None:
        total = len(targets)
        if total:
            logger.info(f"Adding {total} {family_report.family} EdgeOne prefixes to {chain}")
        progress_step = total // 10 if total > 100 else 10

        for counter, prefix in enumerate(targets, 1):
            attempts = build_match_attempts(prefix, port)
            for index, attempt in enumerate(attempts):
                if backend.append_rule(chain, attempt.rule):
                    family_report.applied += 1
                    if index > 0:
                        family_report.degraded += 1
                    break
                if index + 1 < len(attempts):
                    logger.warning(
                        f"Degraded match for {prefix}: {attempt.name} form rejected, "
                        f"trying {attempts[index + 1].name} ({attempts[index + 1].rule.source})"
                    )
            else:
                family_report.failed += 1
                logger.error(f"Could not whitelist {prefix} on port {port}")

            if counter % progress_step == 0:
                logger.info(f"Progress: {counter}/{total} ({counter * 100 // total}%)")

    def _install_drop(self, backend: IptablesBackend, chain: str, port: int) -> None:
        sentinel = RuleSpec(port=port, verdict=DROP)
        if backend.rule_exists(self.parent, sentinel):
            if not self._sentinel_precedes_reference(backend, chain, port):
                logger.debug(f"DROP rule for port {port} already present in {self.parent}")
                return
            logger.warning(f"DROP rule for port {port} precedes {chain}, moving it after the whitelist")
            backend.delete_rule(self.parent, sentinel)

        logger.info(f"Adding {backend.binary} DROP rule for port {port}")
        if not backend.append_rule(self.parent, sentinel):
            raise BackendError(f"Error adding {backend.binary} DROP rule for port {port}")

    def _sentinel_precedes_reference(self, backend: IptablesBackend, chain: str, port: int) -> bool:
        reference_index = drop_index = None
        for index, line in enumerate(backend.list_rules(self.parent)):
            tokens = line.split()
            if reference_index is None and _option(tokens, '-j') == chain:
                reference_index = index
            elif (drop_index is None and _option(tokens, '-j') == DROP
                  and _option(tokens, '--dport') == str(port) and '-s' not in tokens):
                drop_index = index
        if reference_index is None or drop_index is None:
            return False
        return drop_index < reference_index

    def remove(self, port: int) -> Dict[str, int]:
        """
        Remove the DROP sentinel(s) for ``port`` in every family.

        The dedicated chain and its ACCEPT rules are left in place; without the
        sentinel they no longer restrict anything.

        Returns:
            Number of DROP rules removed per family
        """
        sentinel = RuleSpec(port=port, verdict=DROP)
        removed = {}
        for family, backend in self._usable_backends():
            if backend is None:
                continue
            count = 0
            while backend.delete_rule(self.parent, sentinel):
                count += 1
            removed[family] = count
            if count:
                logger.info(f"Removed {count} {backend.binary} DROP rule(s) for port {port}")
            else:
                logger.warning(f"No {backend.binary} DROP rule found for port {port}")
        return removed

    def describe(self, ports: Iterable[int]) -> List[Tuple[str, List[str]]]:
        """Sections for --list: dedicated chain contents and INPUT DROP rules per family."""
        sections = []
        for family, backend in self._usable_backends():
            if backend is None:
                continue
            for port in ports:
                chain = chain_name(port)
                if backend.chain_exists(chain):
                    sections.append((f"{backend.binary} {chain}", backend.list_rules(chain)))
            drops = [line for line in backend.list_rules(self.parent)
                     if _option(line.split(), '-j') == DROP]
            sections.append((f"{backend.binary} {self.parent} DROP rules", drops))
        return sections
