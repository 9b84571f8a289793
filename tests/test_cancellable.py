import unittest

from unittest.mock import Mock, patch

import psutil

from pgkeeper.exceptions import PostgresException
from pgkeeper.postgresql.cancellable import CancellableSubprocess


class TestCancellableSubprocess(unittest.TestCase):

    def setUp(self):
        self.c = CancellableSubprocess()

    def test_call(self):
        self.c.cancel()
        self.assertRaises(PostgresException, self.c.call, ['pg_ctl'])
        self.assertTrue(self.c.is_cancelled)

    @patch('psutil.Popen')
    def test_call_waits(self, mock_popen):
        mock_popen.return_value.wait.return_value = 0
        self.assertEqual(self.c.call(['pg_ctl', 'promote'], stdout=None, env={}), 0)
        mock_popen.assert_called_once_with(['pg_ctl', 'promote'], env={})
        self.assertIsNone(self.c._process)

    @patch('psutil.Popen', Mock(side_effect=OSError))
    def test_call_not_started(self):
        self.assertIsNone(self.c.call(['missing']))

    def test__kill_children(self):
        self.c._process_children = [Mock()]
        self.c._kill_children()
        self.c._process_children[0].kill.side_effect = psutil.AccessDenied()
        self.c._kill_children()
        self.c._process_children[0].kill.side_effect = psutil.NoSuchProcess(123)
        self.c._kill_children()

    @patch('pgkeeper.postgresql.cancellable.polling_loop', Mock(return_value=[0, 0]))
    def test_cancel(self):
        self.c._process = Mock()
        self.c._process.is_running.return_value = True
        self.c._process.children.side_effect = psutil.NoSuchProcess(123)
        self.c._process.suspend.side_effect = psutil.AccessDenied()
        self.c.cancel()
        self.c._process.is_running.side_effect = [True, False]
        self.c.cancel()

    @patch('pgkeeper.postgresql.cancellable.polling_loop', Mock(return_value=[0]))
    def test_cancel_kill(self):
        self.c._process = Mock()
        self.c._process.is_running.return_value = True
        self.c._process.kill.side_effect = psutil.AccessDenied()
        self.c.cancel(kill=True)
        self.c._process.terminate.assert_called_once()
        self.c._process.kill.assert_called_once()
