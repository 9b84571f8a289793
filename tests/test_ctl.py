import json
import os
import signal

from unittest.mock import Mock, patch

import click
import psutil
import yaml

from click.testing import CliRunner

from pgkeeper.coordination import CoordinationCell
from pgkeeper.ctl import CONFIG_FILE_PATH, ctl, get_registry, KeeperCtlException, load_config, print_output
from pgkeeper.state import KeeperState

from . import BaseTestKeeper


class TestCtl(BaseTestKeeper):

    def setUp(self):
        super(TestCtl, self).setUp()
        self.runner = CliRunner()
        self.config = {
            'connect_timeout': 3,
            'coordination_file': self.cell_path,
            'postgresql': {'conninfo': 'host=localhost dbname=postgres', 'connect_timeout': 3}
        }
        patcher = patch('pgkeeper.ctl.load_config', Mock(side_effect=lambda path: self.config))
        self.mock_load_config = patcher.start()
        self.addCleanup(patcher.stop)

    def invoke(self, *args):
        return self.runner.invoke(ctl, list(args))

    @patch('pgkeeper.ctl.logging.debug')
    def test_load_config(self, mock_logger_debug):
        with self.runner.isolated_filesystem():
            self.assertRaises(KeeperCtlException, load_config, './non-existing-config-file')

        with patch('os.path.exists', Mock(return_value=True)), \
                patch('pgkeeper.config.Config._load_config_path',
                      Mock(return_value={'postgresql': {'conninfo': 'host=n1'}})):
            config = load_config(CONFIG_FILE_PATH)
            self.assertEqual(('Ignoring configuration file "%s". It does not exists or is not readable.',
                              CONFIG_FILE_PATH), mock_logger_debug.call_args[0])
            self.assertEqual(config['postgresql']['conninfo'], 'host=n1')
            mock_logger_debug.reset_mock()

            with patch('os.access', Mock(return_value=True)):
                load_config(CONFIG_FILE_PATH)
                self.assertEqual(('Loading configuration from file %s', CONFIG_FILE_PATH),
                                 mock_logger_debug.call_args[0])

    def test_config_file_is_passed(self):
        result = self.invoke('-c', 'keeper.yaml', 'list')
        self.assertEqual(result.exit_code, 0)
        self.mock_load_config.assert_called_once_with('keeper.yaml')

    def test_add(self):
        result = self.invoke('add', 'n1', 'host=n1')
        self.assertEqual(result.exit_code, 0)
        self.assertIn('Added node "n1" as master with seqno 1', result.output)

        self.db.synchronous_standby_names = 'n2'
        result = self.invoke('add', 'n2', 'host=n2')
        self.assertIn('Added node "n2" as sync standby with seqno 2', result.output)

        result = self.invoke('add', 'n2', 'host=n2')
        self.assertEqual(result.exit_code, 1)
        self.assertIn('Failed to add node "n2"', result.output)

        self.db.unreachable.add('host=n3')
        result = self.invoke('add', 'n3', 'host=n3')
        self.assertEqual(result.exit_code, 1)
        self.assertEqual(len(self.db.rows), 2)

    def test_add_wakes_up_supervisor(self):
        cell = CoordinationCell(self.cell_path)
        self.addCleanup(cell.close)
        cell.register(os.getpid())
        with patch.object(psutil.Process, 'send_signal') as mock_send_signal:
            self.assertEqual(self.invoke('add', 'n1', 'host=n1').exit_code, 0)
        mock_send_signal.assert_called_once_with(signal.SIGUSR1)
        self.assertEqual(cell.generation, 1)

    def test_remove(self):
        self.db.add_row('n1', 'host=n1', True)
        self.db.add_row('n2', 'host=n2')
        result = self.invoke('remove', 'n2')
        self.assertEqual(result.exit_code, 0)
        self.assertIn('Removed node "n2"', result.output)

        result = self.invoke('remove', 'n2')
        self.assertEqual(result.exit_code, 1)
        self.assertIn('Failed to remove node "n2"', result.output)

    def test_remove_seqno(self):
        self.db.add_row('n1', 'host=n1', True)
        self.assertEqual(self.invoke('remove-seqno', 'bogus').exit_code, 2)

        result = self.invoke('remove-seqno', '1')
        self.assertEqual(result.exit_code, 0)
        self.assertIn('Removed node with seqno 1', result.output)
        self.assertEqual(self.db.rows, [])

        result = self.invoke('remove-seqno', '1')
        self.assertEqual(result.exit_code, 1)
        self.assertIn('Failed to remove node with seqno 1', result.output)

    def test_check(self):
        result = self.invoke('check', 'host=n1')
        self.assertEqual(result.exit_code, 0)
        self.assertIn('Node is reachable', result.output)

        self.db.unreachable.add('host=n1')
        result = self.invoke('check', 'host=n1')
        self.assertEqual(result.exit_code, 1)
        self.assertIn('Node is not reachable', result.output)

    @patch.object(psutil.Process, 'send_signal')
    def test_signal(self, mock_send_signal):
        cell = CoordinationCell(self.cell_path)
        self.addCleanup(cell.close)

        result = self.invoke('signal', 'reload')
        self.assertEqual(result.exit_code, 1)
        self.assertIn('Failed to send reload', result.output)

        cell.register(os.getpid())
        self.assertEqual(self.invoke('signal', 'reload').exit_code, 0)
        mock_send_signal.assert_called_once_with(signal.SIGHUP)
        self.assertEqual(self.invoke('signal', 'STOP').exit_code, 0)
        mock_send_signal.assert_called_with(signal.SIGTERM)
        self.assertEqual(self.invoke('signal', 'kill').exit_code, 1)

        del self.config['coordination_file']
        result = self.invoke('signal', 'refresh')
        self.assertEqual(result.exit_code, 1)
        self.assertIn('coordination_file is not configured', result.output)

    def test_list(self):
        self.db.add_row('n1', 'host=n1 password=secret', True)
        self.db.add_row('n2', 'host=n2', is_sync=True)
        self.db.add_row('n3', 'host=n3')

        result = self.invoke('list')
        self.assertEqual(result.exit_code, 0)
        self.assertIn('| 2     | n2   | host=n2 ', result.output)
        self.assertIn(' sync standby ', result.output)
        self.assertNotIn('secret', result.output)

        result = self.invoke('list', '-f', 'json')
        self.assertEqual(json.loads(result.output)[0],
                         {'Seqno': 1, 'Name': 'n1', 'Conninfo': 'host=n1 password=******', 'Role': 'master'})

        result = self.invoke('list', '--format', 'yaml')
        self.assertEqual(yaml.safe_load(result.output)[2]['Role'], 'async standby')

        result = self.invoke('list', '-f', 'tsv')
        self.assertEqual(result.output.splitlines()[0], 'Seqno\tName\tConninfo\tRole')
        self.assertEqual(result.output.splitlines()[3], '3\tn3\thost=n3\tasync standby')

        self.db.fail_sql = 'SELECT seqno'
        result = self.invoke('list')
        self.assertEqual(result.exit_code, 1)
        self.assertIn('failed to read the node registry', result.output)

    def test_status(self):
        result = self.invoke('status')
        self.assertEqual(result.exit_code, 1)
        self.assertIn('Failed to read ' + self.cell_path, result.output)

        cell = CoordinationCell(self.cell_path)
        self.addCleanup(cell.close)
        cell.register(4242)
        cell.invalidate()
        cell.set_status(KeeperState.STANDBY_CONNECTED)

        result = self.invoke('status', '-f', 'json')
        self.assertEqual(result.exit_code, 0)
        self.assertEqual(json.loads(result.output),
                         [{'Pid': 4242, 'Generation': 1, 'State': str(KeeperState.STANDBY_CONNECTED)}])

        with patch.object(CoordinationCell, 'status', None):
            result = self.invoke('status', '-f', 'tsv')
        self.assertEqual(result.output.splitlines()[1], '4242\t1\tunknown')

        del self.config['coordination_file']
        self.assertIn('coordination_file is not configured', self.invoke('status').output)

    def test_reconcile(self):
        self.db.add_row('n1', 'host=n1', True)
        self.db.add_row('n2', 'host=n2')
        self.db.add_row('n3', 'host=n3', is_sync=True)
        self.db.synchronous_standby_names = 'n2'

        result = self.invoke('reconcile', '--dry-run')
        self.assertEqual(result.exit_code, 0)
        self.assertEqual(result.output.splitlines(), ['Would mark node "n2" (seqno 2) as sync',
                                                      'Would mark node "n3" (seqno 3) as async'])
        self.assertFalse(self.db.row('n2')[4])

        result = self.invoke('reconcile')
        self.assertEqual(result.output.splitlines(), ['Marked node "n2" (seqno 2) as sync',
                                                      'Marked node "n3" (seqno 3) as async'])
        self.assertTrue(self.db.row('n2')[4])

        self.assertEqual(self.invoke('reconcile').output, 'No changes\n')

        self.db.fail_sql = 'SHOW'
        result = self.invoke('reconcile')
        self.assertEqual(result.exit_code, 1)
        self.assertIn('failed to reconcile the node registry', result.output)

    def test_get_registry_is_cached(self):
        with click.Context(click.Command('list')) as ctx:
            ctx.obj = {'__config': self.config}
            registry = get_registry()
            self.assertIs(get_registry(), registry)
            self.assertEqual(registry.cell.path, self.cell_path)
            self.assertEqual(registry.heartbeat.connect_timeout, 3)

    def test_print_output(self):
        with patch('click.echo') as mock_echo:
            print_output(['a', 'b'], [[1, 2]], 'tsv', ',')
        self.assertEqual([c[0][0] for c in mock_echo.call_args_list], ['a,b', '1,2'])
