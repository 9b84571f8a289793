import os
import shutil
import tempfile
import unittest

from copy import deepcopy
from unittest.mock import patch

import pgkeeper.psycopg as psycopg

from pgkeeper.heartbeat import Heartbeat
from pgkeeper.postgresql import Postgresql
from pgkeeper.registry import NodeRegistry

NODE_SELECT = 'SELECT seqno, name, conninfo, is_master, is_sync FROM pgkeeper.node_info'


class SleepException(Exception):
    pass


class MockDatabase(object):
    """In-memory stand-in for the primary holding ``pgkeeper.node_info``.

    Every connection shares the same rows, so the registry, the reconciler and the supervisor see each other's
    changes once they are committed.
    """

    def __init__(self):
        self.rows = []
        self.next_seqno = 1
        self.synchronous_standby_names = ''
        self.in_recovery = False
        self.unreachable = set()
        self.fail_sql = None
        self.connections = []

    def connect(self, dsn='', **kwargs):
        if dsn in self.unreachable:
            raise psycopg.OperationalError('could not connect to server')
        conn = MockConnect(self, dsn, kwargs)
        self.connections.append(conn)
        return conn

    def add_row(self, name, conninfo, is_master=False, is_sync=False):
        self.rows.append([self.next_seqno, name, conninfo, is_master, is_sync])
        self.next_seqno += 1

    def row(self, name):
        return next((tuple(r) for r in self.rows if r[1] == name), None)


class MockCursor(object):

    def __init__(self, connection):
        self.connection = connection
        self.db = connection.db
        self.closed = False
        self.rowcount = -1
        self.results = []

    def execute(self, sql, params=None):
        if isinstance(sql, bytes):
            sql = sql.decode('utf-8')
        db = self.db
        if db.fail_sql and sql.startswith(db.fail_sql):
            raise psycopg.OperationalError('server closed the connection unexpectedly')

        self.results = []
        rowcount = 0
        if sql.startswith(('CREATE ', 'LOCK TABLE')):
            rowcount = -1
        elif sql == 'SELECT 1':
            self.results = [(1,)]
        elif sql == 'SHOW synchronous_standby_names':
            self.results = [(db.synchronous_standby_names,)]
        elif sql == 'SELECT pg_catalog.pg_is_in_recovery()':
            self.results = [(db.in_recovery,)]
        elif sql.startswith('SELECT pg_catalog.count(*) FROM pgkeeper.node_info WHERE name = %s'):
            self.results = [(len([r for r in db.rows if r[1] == params[0]]),)]
        elif sql.startswith('SELECT pg_catalog.count(*) FROM pgkeeper.node_info'):
            self.results = [(len(db.rows),)]
        elif sql.startswith(NODE_SELECT):
            rows = sorted(db.rows, key=lambda r: r[0])
            if 'WHERE NOT is_master' in sql:
                rows = [r for r in rows if not r[3]]
            self.results = [tuple(r) for r in rows]
        elif sql.startswith('INSERT INTO pgkeeper.node_info'):
            name, conninfo, is_master, is_sync = params
            if any(r[1] == name for r in db.rows):
                raise psycopg.IntegrityError('duplicate key value violates unique constraint "node_info_name_key"')
            db.add_row(name, conninfo, is_master, is_sync)
            self.results = [tuple(db.rows[-1])]
        elif sql.startswith('DELETE FROM pgkeeper.node_info WHERE '):
            column = 1 if 'WHERE name' in sql else 0
            before = len(db.rows)
            db.rows = [r for r in db.rows if r[column] != params[0]]
            rowcount = before - len(db.rows)
        elif sql.startswith('UPDATE pgkeeper.node_info SET is_sync = %s WHERE seqno = %s'):
            for r in db.rows:
                if r[0] == params[1]:
                    r[4] = params[0]
                    rowcount += 1
        elif sql.startswith('UPDATE pgkeeper.node_info SET is_master = (name = %s)'):
            for r in db.rows:
                if r[3] or r[1] == params[1]:
                    r[3] = r[1] == params[0]
                    r[4] = False
                    rowcount += 1
        else:
            self.results = [(None,)]
        self.rowcount = len(self.results) if self.results else rowcount

    def fetchone(self):
        return self.results[0] if self.results else None

    def fetchall(self):
        return self.results

    def __iter__(self):
        for i in self.results:
            yield i

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.closed = True


class MockConnect(object):

    def __init__(self, db, dsn='', kwargs=None):
        self.db = db
        self.dsn = dsn
        self.kwargs = kwargs or {}
        self.closed = 0
        self.committed = False
        self.rolled_back = False
        self._autocommit = True
        self._snapshot = None

    @property
    def autocommit(self):
        return self._autocommit

    @autocommit.setter
    def autocommit(self, value):
        self._autocommit = value
        if not value:
            self._snapshot = (deepcopy(self.db.rows), self.db.next_seqno)

    def cursor(self):
        return MockCursor(self)

    def commit(self):
        self.committed = True
        self._snapshot = None

    def rollback(self):
        self.rolled_back = True
        if self._snapshot is not None:
            self.db.rows, self.db.next_seqno = self._snapshot
            self._snapshot = None

    def close(self):
        self.closed = 1

    def __enter__(self):
        return self

    def __exit__(self, *args):
        pass


class BaseTestKeeper(unittest.TestCase):
    """Wire :class:`MockDatabase` in place of the PostgreSQL driver and provide a scratch directory."""

    def setUp(self):
        self.db = MockDatabase()
        patcher = patch('pgkeeper.psycopg._connect', self.db.connect)
        patcher.start()
        self.addCleanup(patcher.stop)

        self.tmp_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.tmp_dir, True)
        self.data_dir = os.path.join(self.tmp_dir, 'data')
        os.makedirs(self.data_dir)
        self.cell_path = os.path.join(self.tmp_dir, 'pg_keeper.cell')

        self.p = Postgresql({'data_dir': self.data_dir, 'conninfo': 'host=localhost dbname=postgres',
                             'bin_dir': '/usr/lib/postgresql/16/bin', 'connect_timeout': 3, 'pg_ctl_timeout': 10})
        self.heartbeat = Heartbeat(3)


class BaseTestRegistry(BaseTestKeeper):

    def setUp(self):
        super(BaseTestRegistry, self).setUp()
        self.registry = NodeRegistry(self.p, self.heartbeat)
