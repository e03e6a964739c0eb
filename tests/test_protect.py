"""Tests for the add/delete/list/resync workflow and the command line."""

import logging

import pytest
from unittest.mock import MagicMock, patch

from conftest import accept_args, drop_args
from edgeone_errors import EmptyResultSetError, MissingDependencyError, PrivilegeError, SourceUnavailableError
from edgeone_protect import EdgeOneProtector, build_parser, main
from edgeone_state import SyncRecord, SyncStateStore

NOW = 1_700_000_000
DAY = 86400
PAYLOAD = '["203.0.113.0/24", "2001:db8::/32"]'


class TestEdgeOneProtector:

    @pytest.fixture(autouse=True)
    def setup_protector(self, tmp_path, backends):
        self.backends = backends
        self.source = MagicMock()
        self.source.fetch.return_value = PAYLOAD
        self.store = SyncStateStore(tmp_path / 'conf')
        self.scheduler = MagicMock()
        self.scheduler.is_registered.return_value = False
        self.persister = MagicMock()

    def _protector(self, dry_run=False, now=NOW):
        return EdgeOneProtector(
            dry_run=dry_run,
            source=self.source,
            backends=self.backends,
            store=self.store,
            scheduler=self.scheduler,
            persister=self.persister,
            clock=lambda: now,
        )

    def test_add_protects_port_end_to_end(self):
        report = self._protector().add(80)

        v4, v6 = self.backends['v4'], self.backends['v6']
        assert v4.chains['EDGEONE-80'] == [accept_args('203.0.113.0/255.255.255.0', 80)]
        assert v6.chains['EDGEONE-80'] == [accept_args('2001:db8::/32', 80)]
        for backend in (v4, v6):
            assert backend.chains['INPUT'] == [['-j', 'EDGEONE-80'], drop_args(80)]

        assert report.complete
        self.source.fetch.assert_called_once_with(None, 'global')
        self.persister.persist.assert_called_once_with()

        record = self.store.load()
        assert record.ports == [80]
        assert record.get(80).area == 'global'
        assert record.last_sync == NOW
        self.scheduler.register_recurring.assert_called_once_with()

    def test_add_passes_family_and_area(self):
        self.source.fetch.return_value = '["2001:db8::/32"]'
        self._protector().add(443, 'v6', 'overseas')

        self.source.fetch.assert_called_once_with('v6', 'overseas')
        entry = self.store.load().get(443)
        assert (entry.family, entry.area) == ('v6', 'overseas')

    def test_add_twice_is_idempotent(self):
        protector = self._protector()
        protector.add(80)
        protector.add(80)

        for backend in self.backends.values():
            assert backend.chains['INPUT'] == [['-j', 'EDGEONE-80'], drop_args(80)]
            assert len(backend.chains['EDGEONE-80']) == 1
        assert self.store.load().ports == [80]

    def test_existing_schedule_is_not_registered_again(self):
        self.scheduler.is_registered.return_value = True
        self._protector().add(80)
        self.scheduler.register_recurring.assert_not_called()

    def test_empty_result_changes_nothing(self):
        self.source.fetch.return_value = 'nothing useful here'

        with pytest.raises(EmptyResultSetError):
            self._protector().add(80)

        for backend in self.backends.values():
            assert backend.calls == []
            assert backend.chains == {'INPUT': []}
        self.persister.persist.assert_not_called()
        assert not self.store.path.exists()

    def test_unreachable_source_uses_fallback_list(self):
        self.source.fetch.side_effect = SourceUnavailableError("timeout")

        report = self._protector().add(80)

        assert report.applied == 12
        assert len(self.backends['v4'].chains['EDGEONE-80']) == 6

    def test_delete_removes_drop_and_port(self):
        protector = self._protector()
        protector.add(80)
        protector.add(443)

        protector.delete(80)

        v4 = self.backends['v4']
        assert drop_args(80) not in v4.chains['INPUT']
        assert drop_args(443) in v4.chains['INPUT']
        assert 'EDGEONE-80' in v4.chains
        assert self.store.load().ports == [443]

    def test_list_protection(self, capsys):
        protector = self._protector()
        protector.add(80, 'v4')

        lines = protector.list_protection()

        assert 'iptables EDGEONE-80:' in lines
        assert '  port 80: version v4, area global' in lines
        assert '  update interval: 10 days' in lines
        assert 'iptables INPUT DROP rules:' in capsys.readouterr().out

    def test_set_update_interval_registers_schedule(self):
        self._protector().set_update_interval(7)

        assert self.store.load().update_interval_days == 7
        self.scheduler.register_recurring.assert_called_once_with()

    def test_disable_update(self):
        self._protector().disable_update()

        self.scheduler.unregister.assert_called_once_with()
        assert self.store.load().auto_update is False

    def test_dry_run_touches_nothing(self, caplog):
        caplog.set_level(logging.INFO)

        assert self._protector(dry_run=True).add(80) is None

        for backend in self.backends.values():
            assert backend.calls == []
        self.persister.persist.assert_not_called()
        assert not self.store.path.exists()
        assert 'DRY RUN: Got 2 prefixes from EdgeOne API' in caplog.text

    def test_prepare_points_scheduler_at_store_dir(self):
        self._protector().prepare()
        assert self.scheduler.config_dir == self.store.config_dir
        assert self.store.config_dir.is_dir()

    def test_requirements_need_root(self):
        with patch('edgeone_protect.os.geteuid', return_value=1000):
            with pytest.raises(PrivilegeError):
                self._protector().check_requirements()

    def test_requirements_need_iptables(self):
        self.backends['v4'].installed = False
        with patch('edgeone_protect.os.geteuid', return_value=0):
            with pytest.raises(MissingDependencyError):
                self._protector().check_requirements()


class TestResync:

    @pytest.fixture(autouse=True)
    def setup_protector(self, tmp_path, backends):
        self.backends = backends
        self.source = MagicMock()
        self.source.fetch.return_value = PAYLOAD
        self.store = SyncStateStore(tmp_path / 'conf')
        self.persister = MagicMock()

    def _seed(self, ports, last_sync, interval=10):
        record = SyncRecord(update_interval_days=interval)
        for port in ports:
            record = SyncStateStore.add_protected_port(record, port, now=last_sync)
        self.store.save(record)

    def _resync(self, now, force=False):
        protector = EdgeOneProtector(
            source=self.source, backends=self.backends, store=self.store,
            scheduler=MagicMock(), persister=self.persister, clock=lambda: now,
        )
        return protector.resync(force=force)

    def test_not_due_does_nothing(self):
        self._seed([80], last_sync=NOW)

        assert self._resync(NOW + 10 * DAY - 1) is True

        self.source.fetch.assert_not_called()
        assert self.store.load().last_sync == NOW

    def test_due_reapplies_every_port(self):
        self._seed([80, 443], last_sync=NOW)

        assert self._resync(NOW + 10 * DAY) is True

        for port in (80, 443):
            assert drop_args(port) in self.backends['v4'].chains['INPUT']
        self.persister.persist.assert_called_once_with()
        assert self.store.load().last_sync == NOW + 10 * DAY

    def test_force_ignores_interval(self):
        self._seed([80], last_sync=NOW)
        assert self._resync(NOW + 1, force=True) is True
        assert self.store.load().last_sync == NOW + 1

    def test_partial_failure_keeps_last_sync(self):
        self._seed([80, 443], last_sync=NOW)
        self.source.fetch.side_effect = [PAYLOAD, 'nothing useful here']

        assert self._resync(NOW + 11 * DAY) is False

        assert 'EDGEONE-80' in self.backends['v4'].chains
        assert 'EDGEONE-443' not in self.backends['v4'].chains
        self.persister.persist.assert_called_once_with()
        assert self.store.load().last_sync == NOW

    def test_no_protected_ports(self):
        assert self._resync(NOW) is True
        self.source.fetch.assert_not_called()


class TestCommandLine:

    @pytest.fixture(autouse=True)
    def no_logging_setup(self):
        with patch('edgeone_protect.setup_logging'):
            yield

    def test_no_action_prints_help(self, capsys):
        assert main([]) == 1
        assert 'usage:' in capsys.readouterr().out

    @pytest.mark.parametrize("argv", [
        ['--add'],
        ['--add', '70000'],
        ['--add', 'http'],
        ['--add', '80', '--delete', '80'],
        ['--add', '80', '--version', 'v5'],
        ['--update-interval', '0'],
    ])
    def test_usage_errors_exit_1(self, argv):
        with pytest.raises(SystemExit) as exc:
            main(argv)
        assert exc.value.code == 1

    def test_parser_defaults(self):
        args = build_parser().parse_args(['--add', '80'])
        assert args.add == 80
        assert args.version is None
        assert args.area == 'global'
        assert args.test is False

    def test_non_root_fails(self):
        with patch('edgeone_protect.EdgeOneProtector') as mock_cls:
            mock_cls.return_value.check_requirements.side_effect = PrivilegeError("root required")
            assert main(['--add', '80']) == 1
        mock_cls.return_value.add.assert_not_called()
        mock_cls.return_value.close.assert_called_once_with()

    def test_dry_run_skips_requirements(self):
        with patch('edgeone_protect.EdgeOneProtector') as mock_cls:
            assert main(['--test', '--add', '80']) == 0

        mock_cls.assert_called_once_with(dry_run=True)
        protector = mock_cls.return_value
        protector.check_requirements.assert_not_called()
        protector.prepare.assert_not_called()
        protector.add.assert_called_once_with(80, None, 'global')

    def test_add_with_options(self):
        with patch('edgeone_protect.EdgeOneProtector') as mock_cls:
            assert main(['--add', '443', '--version', 'v6', '--area', 'overseas']) == 0

        protector = mock_cls.return_value
        protector.prepare.assert_called_once_with()
        protector.add.assert_called_once_with(443, 'v6', 'overseas')

    def test_interval_is_applied_before_action(self):
        with patch('edgeone_protect.EdgeOneProtector') as mock_cls:
            assert main(['--update-interval', '7', '--list']) == 0

        protector = mock_cls.return_value
        protector.set_update_interval.assert_called_once_with(7)
        protector.list_protection.assert_called_once_with()

    def test_failed_resync_exits_1(self):
        with patch('edgeone_protect.EdgeOneProtector') as mock_cls:
            mock_cls.return_value.resync.return_value = False
            assert main(['--resync', '--force']) == 1
        mock_cls.return_value.resync.assert_called_once_with(force=True)

    def test_fatal_error_exits_1(self):
        with patch('edgeone_protect.EdgeOneProtector') as mock_cls:
            mock_cls.return_value.add.side_effect = EmptyResultSetError("no prefixes")
            assert main(['--add', '80']) == 1
