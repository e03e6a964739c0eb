"""Shared fixtures: an in-memory stand-in for iptables/ip6tables."""

import pytest

from edgeone_config import FAMILY_V4, FAMILY_V6, ProtectionConfig


class FakeBackend:
    """Keeps chains as lists of iptables argument lists, like ``iptables -S`` without ``-A CHAIN``."""

    def __init__(self, family, installed=True, reject=None):
        self.family = family
        self.binary = ProtectionConfig.BINARIES[family]
        self.save_binary = ProtectionConfig.SAVE_BINARIES[family]
        self.restore_binary = ProtectionConfig.RESTORE_BINARIES[family]
        self.installed = installed
        self.reject = reject or (lambda rule: False)
        self.chains = {'INPUT': []}
        self.calls = []

    def available(self):
        return self.installed

    def chain_exists(self, name):
        return name in self.chains

    def create_chain(self, name):
        self.calls.append(('create', name))
        self.chains[name] = []

    def flush_chain(self, name):
        self.calls.append(('flush', name))
        self.chains[name] = []

    def chain_referenced(self, parent, name):
        return ['-j', name] in self.chains[parent]

    def insert_chain_reference(self, parent, name):
        self.calls.append(('reference', name))
        self.chains[parent].insert(0, ['-j', name])

    def append_rule(self, chain, rule):
        self.calls.append(('append', chain, rule.source))
        if self.reject(rule):
            return False
        self.chains[chain].append(rule.to_iptables_args())
        return True

    def rule_exists(self, chain, rule):
        return rule.to_iptables_args() in self.chains.get(chain, [])

    def delete_rule(self, chain, rule):
        args = rule.to_iptables_args()
        if args in self.chains.get(chain, []):
            self.chains[chain].remove(args)
            return True
        return False

    def list_rules(self, chain):
        return [' '.join(['-A', chain, *args]) for args in self.chains[chain]]

    def dump_all(self):
        lines = ['*filter']
        for chain in self.chains:
            lines.extend(self.list_rules(chain))
        lines.append('COMMIT')
        return '\n'.join(lines) + '\n'

    def restore_all(self, dump):
        self.calls.append(('restore', dump))

    def index_of(self, chain, args):
        return self.chains[chain].index(args)


def drop_args(port):
    return ['-p', 'tcp', '--dport', str(port), '-j', 'DROP']


def accept_args(source, port):
    return ['-p', 'tcp', '-s', source, '--dport', str(port), '-j', 'ACCEPT']


@pytest.fixture
def backends():
    return {FAMILY_V4: FakeBackend(FAMILY_V4), FAMILY_V6: FakeBackend(FAMILY_V6)}
