from unittest.mock import Mock, patch

from pgkeeper.heartbeat import Heartbeat, HeartbeatResult

from . import BaseTestKeeper, MockConnect


class TestHeartbeat(BaseTestKeeper):

    def test_verify(self):
        result = self.heartbeat.verify('host=n1')
        self.assertEqual(result, HeartbeatResult(True, None))
        self.assertTrue(result)
        self.assertEqual(self.heartbeat.verify('host=n1', fetch=True).value, 1)

        conn = self.db.connections[-1]
        self.assertEqual(conn.closed, 1)
        self.assertEqual(conn.kwargs['connect_timeout'], 3)
        self.assertEqual(conn.kwargs['application_name'], 'pg_keeper heartbeat')
        self.assertIn('search_path=pg_catalog', conn.kwargs['options'])

    def test_unreachable(self):
        self.db.unreachable.add('host=n1 password=secret')
        result = self.heartbeat.verify('host=n1 password=secret')
        self.assertFalse(result)
        self.assertIsNone(result.value)

    def test_query_failure_closes_connection(self):
        heartbeat = Heartbeat(query='SELECT broken')
        self.db.fail_sql = 'SELECT broken'
        self.assertFalse(heartbeat.verify('host=n1'))
        self.assertEqual(self.db.connections[-1].closed, 1)

    def test_close_failure(self):
        with patch.object(MockConnect, 'close', Mock(side_effect=Exception)):
            self.assertTrue(self.heartbeat.verify('host=n1'))

    def test_reload_config(self):
        self.heartbeat.reload_config(0)
        self.heartbeat.verify('host=n1')
        self.assertNotIn('connect_timeout', self.db.connections[-1].kwargs)
