"""Cluster membership registry kept in the ``pgkeeper.node_info`` table of the primary.

Every public method of :class:`NodeRegistry` runs in its own short transaction. Mutations reconcile the
``is_sync`` flags inside the same transaction and, once committed, invalidate the coordination cell so that the
running supervisor drops its cached view.
"""
import logging

from typing import Any, Dict, List, NamedTuple, Optional, TYPE_CHECKING

from . import psycopg
from .exceptions import PostgresConnectionException, RegistryError
from .postgresql.sync import SyncChange, SyncReconciler
from .utils import mask_conninfo

if TYPE_CHECKING:  # pragma: no cover
    from .coordination import CoordinationCell
    from .heartbeat import Heartbeat
    from .postgresql import Postgresql

logger = logging.getLogger(__name__)

NODE_COLUMNS = 'seqno, name, conninfo, is_master, is_sync'


class Node(NamedTuple):
    """Single row of the registry.

    :ivar seqno: immutable identifier assigned from a sequence, never reused.
    :ivar name: unique node name.
    :ivar conninfo: libpq connection string of the node.
    :ivar is_master: whether the node is the primary.
    :ivar is_sync: whether the node is named in ``synchronous_standby_names``.
    """
    seqno: int
    name: str
    conninfo: str
    is_master: bool
    is_sync: bool

    @property
    def role(self) -> str:
        return 'master' if self.is_master else 'sync standby' if self.is_sync else 'async standby'

    def to_dict(self, mask: bool = True) -> Dict[str, Any]:
        ret = self._asdict()
        if mask:
            ret['conninfo'] = mask_conninfo(self.conninfo)
        return ret


class NodeRegistry(object):

    SCHEMA_SQL = ('CREATE SCHEMA IF NOT EXISTS pgkeeper',
                  'CREATE TABLE IF NOT EXISTS pgkeeper.node_info (seqno bigserial PRIMARY KEY, '
                  'name text NOT NULL UNIQUE, conninfo text NOT NULL, is_master boolean NOT NULL DEFAULT false, '
                  'is_sync boolean NOT NULL DEFAULT false)')

    def __init__(self, postgresql: 'Postgresql', heartbeat: 'Heartbeat',
                 cell: Optional['CoordinationCell'] = None) -> None:
        """
        :param postgresql: local node, every transaction runs against it.
        :param heartbeat: liveness probe used to vet new nodes.
        :param cell: coordination cell to invalidate after a mutation, if any.
        """
        self.postgresql = postgresql
        self.heartbeat = heartbeat
        self.cell = cell
        self.reconciler = SyncReconciler()

    def _notify(self) -> None:
        if self.cell is not None:
            self.cell.invalidate()
            self.cell.notify()

    def ensure_schema(self) -> bool:
        """Create the registry table if it doesn't exist yet.

        :returns: ``True`` on success.
        """
        try:
            with self.postgresql.transaction() as cur:
                for sql in self.SCHEMA_SQL:
                    cur.execute(sql)
            return True
        except (psycopg.Error, PostgresConnectionException) as e:
            logger.error('Failed to create the node registry: %r', e)
            return False

    def list_nodes(self, include_master: bool = True) -> List[Node]:
        """Read the registry ordered by ``seqno``.

        :param include_master: ``False`` filters out master rows.

        :raises:
            :exc:`~pgkeeper.exceptions.RegistryError`: if the registry can't be read.
        """
        sql = 'SELECT {0} FROM pgkeeper.node_info{1} ORDER BY seqno'.format(
            NODE_COLUMNS, '' if include_master else ' WHERE NOT is_master')
        try:
            with self.postgresql.transaction() as cur:
                cur.execute(sql)
                return [Node(*row) for row in cur.fetchall()]
        except (psycopg.Error, PostgresConnectionException) as e:
            raise RegistryError('failed to read the node registry: {0}'.format(e)) from e

    def get_master(self) -> Optional[Node]:
        return next((node for node in self.list_nodes() if node.is_master), None)

    def verify_reachable(self, conninfo: str) -> bool:
        return bool(self.heartbeat.verify(conninfo))

    def add_node(self, name: str, conninfo: str) -> Optional[Node]:
        """Register a new node.

        The first node added to an empty registry becomes the master. Any other node is a standby which is marked
        synchronous when its name is part of ``synchronous_standby_names``. The table lock makes concurrent calls
        against an empty registry elect exactly one master.

        :param name: unique node name.
        :param conninfo: libpq connection string, must be reachable.

        :returns: the new :class:`Node` or ``None`` if the node is unreachable, the name is taken or the registry
            could not be changed.
        """
        if not self.verify_reachable(conninfo):
            logger.warning('Refusing to add node "%s": "%s" is not reachable', name, mask_conninfo(conninfo))
            return None

        try:
            with self.postgresql.transaction() as cur:
                for sql in self.SCHEMA_SQL:
                    cur.execute(sql)
                cur.execute('LOCK TABLE pgkeeper.node_info IN SHARE ROW EXCLUSIVE MODE')
                cur.execute('SELECT pg_catalog.count(*) FROM pgkeeper.node_info')
                is_master = cur.fetchone()[0] == 0
                is_sync = not is_master and name in self.reconciler.membership(cur)
                cur.execute('INSERT INTO pgkeeper.node_info (name, conninfo, is_master, is_sync)'
                            ' VALUES (%s, %s, %s, %s) RETURNING ' + NODE_COLUMNS, (name, conninfo, is_master, is_sync))
                node = Node(*cur.fetchone())
                self.reconciler.reconcile(cur)
        except psycopg.IntegrityError:
            logger.error('Node "%s" is already registered', name)
            return None
        except (psycopg.Error, PostgresConnectionException) as e:
            logger.error('Failed to add node "%s": %r', name, e)
            return None

        logger.info('Added node "%s" as %s with seqno %s', node.name, node.role, node.seqno)
        self._notify()
        return node

    def _delete(self, where: str, value: Any) -> bool:
        try:
            with self.postgresql.transaction() as cur:
                cur.execute('DELETE FROM pgkeeper.node_info WHERE {0} = %s'.format(where), (value,))
                deleted = cur.rowcount > 0
                if deleted:
                    self.reconciler.reconcile(cur)
        except (psycopg.Error, PostgresConnectionException) as e:
            logger.error('Failed to delete node with %s %s: %r', where, value, e)
            return False

        if not deleted:
            logger.warning('No node with %s %s', where, value)
            return False
        logger.info('Deleted node with %s %s', where, value)
        self._notify()
        return True

    def delete_node(self, name: str) -> bool:
        return self._delete('name', name)

    def delete_node_by_seqno(self, seqno: int) -> bool:
        return self._delete('seqno', seqno)

    def set_master(self, name: str) -> bool:
        """Make *name* the only master row of the registry.

        :returns: ``True`` if a row named *name* exists and now is the master.
        """
        try:
            with self.postgresql.transaction() as cur:
                cur.execute('LOCK TABLE pgkeeper.node_info IN SHARE ROW EXCLUSIVE MODE')
                cur.execute('SELECT pg_catalog.count(*) FROM pgkeeper.node_info WHERE name = %s', (name,))
                registered = cur.fetchone()[0] > 0
                if registered:
                    cur.execute('UPDATE pgkeeper.node_info SET is_master = (name = %s), is_sync = false'
                                ' WHERE is_master OR name = %s', (name, name))
                    self.reconciler.reconcile(cur)
        except (psycopg.Error, PostgresConnectionException) as e:
            logger.error('Failed to mark node "%s" as master: %r', name, e)
            return False

        if not registered:
            logger.warning('Node "%s" is not registered, the registry was left unchanged', name)
            return False
        logger.info('Marked node "%s" as master', name)
        self._notify()
        return True

    def reconcile(self, dry_run: bool = False) -> List[SyncChange]:
        """Run the synchronous membership reconciliation in its own transaction.

        :raises:
            :exc:`~pgkeeper.exceptions.RegistryError`: if the registry can't be read or changed.
        """
        try:
            with self.postgresql.transaction() as cur:
                changes = self.reconciler.reconcile(cur, dry_run)
        except (psycopg.Error, PostgresConnectionException) as e:
            raise RegistryError('failed to reconcile the node registry: {0}'.format(e)) from e
        if changes and not dry_run:
            self._notify()
        return changes
