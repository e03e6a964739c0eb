"""
EdgeOne Origin Protection configuration.

Constants shared by the fetcher, the rule reconciler, the state store and the
persistence adapter. A few paths can be overridden through the environment.
"""

import os
from pathlib import Path

FAMILY_V4 = 'v4'
FAMILY_V6 = 'v6'
FAMILY_BOTH = 'both'
FAMILIES = (FAMILY_V4, FAMILY_V6)
FAMILY_FILTERS = (FAMILY_V4, FAMILY_V6, FAMILY_BOTH)

AREA_GLOBAL = 'global'
AREAS = (AREA_GLOBAL, 'mainland-china', 'overseas')


class ProtectionConfig:
    """Configuration constants for EdgeOne origin protection."""

    # API endpoint
    EDGEONE_IPS_URL = os.getenv('EDGEONE_IPS_URL', 'https://api.edgeone.ai/ips')
    USER_AGENT = 'EdgeOne-Origin-Protection/1.0'

    # Timeouts (connect, read) and limits
    CONNECT_TIMEOUT = 10
    READ_TIMEOUT = 30
    IPTABLES_TIMEOUT = 30

    # iptables layout
    CHAIN_PREFIX = 'EDGEONE'
    PARENT_CHAIN = 'INPUT'
    PROTOCOL = 'tcp'
    BINARIES = {FAMILY_V4: 'iptables', FAMILY_V6: 'ip6tables'}
    SAVE_BINARIES = {FAMILY_V4: 'iptables-save', FAMILY_V6: 'ip6tables-save'}
    RESTORE_BINARIES = {FAMILY_V4: 'iptables-restore', FAMILY_V6: 'ip6tables-restore'}

    # State and scheduling
    CONFIG_DIR = Path(os.getenv('EDGEONE_PROTECTION_DIR', '/etc/edgeone-protection'))
    FALLBACK_CONFIG_DIR = Path('/tmp/edgeone-protection')
    STATE_FILE_NAME = 'config.json'
    TRIGGER_SCRIPT_NAME = 'cron_update'
    DEFAULT_UPDATE_INTERVAL_DAYS = 10
    SECONDS_PER_DAY = 86400
    DEFAULT_TIME_OF_DAY = '04:00'
    SYSTEMD_DIR = Path('/etc/systemd/system')
    SYSTEMD_UNIT = 'edgeone-update'

    # Rule persistence
    ETC_DIR = Path('/etc')
    FALLBACK_SAVE_DIR = Path('/tmp/iptables')
    RESTORE_SCRIPT_NAME = 'restore-iptables.sh'

    # Logging
    LOG_FILE = '/var/log/edgeone-protection.log'
    DRY_RUN_SAMPLE_SIZE = 10


def chain_name(port: int) -> str:
    """Name of the dedicated whitelist chain for ``port``."""
    return f"{ProtectionConfig.CHAIN_PREFIX}-{port}"
