import logging
import os
import shlex

from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple, TYPE_CHECKING, Union

from .. import psycopg
from ..exceptions import PostgresConnectionException, PostgresException
from ..utils import polling_loop
from .cancellable import CancellableSubprocess
from .connection import ConnectionPool, transaction

if TYPE_CHECKING:  # pragma: no cover
    from psycopg import Cursor
    from psycopg2 import cursor

logger = logging.getLogger(__name__)


class Postgresql(object):
    """The local PostgreSQL node as seen by the supervisor.

    pg_keeper never starts or stops PostgreSQL, it only asks about the recovery status, reads settings, runs
    short transactions against the node registry and promotes the node with ``pg_ctl``.
    """

    def __init__(self, config: Dict[str, Any]) -> None:
        self.config = config
        self._data_dir: str = config.get('data_dir') or ''
        self._bin_dir: str = config.get('bin_dir') or ''
        self.connection_string: str = config.get('conninfo') or ''
        self.connection_pool = ConnectionPool(self.connection_string, self._conn_kwargs(config))
        self._connection = self.connection_pool.get('keeper')
        self.cancellable = CancellableSubprocess()

    @staticmethod
    def _conn_kwargs(config: Dict[str, Any]) -> Dict[str, Any]:
        return {'connect_timeout': config['connect_timeout']} if config.get('connect_timeout') else {}

    @property
    def pg_ctl_timeout(self) -> int:
        return self.config.get('pg_ctl_timeout') or 60

    def reload_config(self, config: Dict[str, Any]) -> None:
        """Apply the reloadable part of the ``postgresql`` section.

        Only ``pg_ctl_timeout`` and ``connect_timeout`` take effect without a restart.
        """
        self.config = {**self.config, 'pg_ctl_timeout': config.get('pg_ctl_timeout'),
                       'connect_timeout': config.get('connect_timeout')}
        self.connection_pool.conn_kwargs = self._conn_kwargs(self.config)

    def pgcommand(self, cmd: str) -> str:
        """Return path to the specified PostgreSQL command.

        :param cmd: the Postgres binary name to get path to.

        :returns: path to Postgres binary named *cmd*.
        """
        return os.path.join(self._bin_dir, cmd)

    def pg_ctl(self, cmd: str, *args: str, **kwargs: Any) -> bool:
        """Builds and executes pg_ctl command

        :returns: `!True` when return_code == 0, otherwise `!False`"""

        pg_ctl = [self.pgcommand('pg_ctl'), cmd]
        return self.cancellable.call(pg_ctl + ['-D', self._data_dir] + list(args), **kwargs) == 0

    def query(self, sql: str, *params: Any) -> List[Tuple[Any, ...]]:
        """Execute *sql* query with *params* on the long-lived connection and optionally return results.

        :raises:
            :exc:`~psycopg.Error` if had issues while executing *sql*.

            :exc:`~pgkeeper.exceptions.PostgresConnectionException`: if had issues while connecting to the database.
        """
        return self._connection.query(sql, *params)

    def is_in_recovery(self) -> bool:
        """Ask the local node whether it is a standby.

        :raises:
            :exc:`~pgkeeper.exceptions.PostgresConnectionException`: if the node can't be queried.
        """
        try:
            return bool(self.query('SELECT pg_catalog.pg_is_in_recovery()')[0][0])
        except psycopg.Error as e:
            raise PostgresConnectionException('failed to check recovery status') from e

    @contextmanager
    def transaction(self) -> Iterator[Union['cursor', 'Cursor[Any]']]:
        """Open a separate connection to the local node and yield a cursor of a single transaction."""
        with transaction(self.connection_string, application_name='pg_keeper',
                         **self.connection_pool.conn_kwargs) as cur:
            yield cur

    def _wait_promote(self, wait_seconds: int) -> Optional[bool]:
        for _ in polling_loop(wait_seconds):
            try:
                if not self.is_in_recovery():
                    return True
            except PostgresConnectionException as e:
                logger.debug('waiting for promote: %r', e)

    def promote(self, wait_seconds: int) -> Optional[bool]:
        """Promote the local standby and wait until it leaves recovery.

        :param wait_seconds: how long to wait for recovery to end after ``pg_ctl promote`` succeeded.

        :returns: ``True`` if the node runs as a primary at the end, ``False`` if ``pg_ctl`` failed and ``None`` if
            the node was still in recovery after *wait_seconds*.
        """
        if self.cancellable.is_cancelled:
            logger.info("PostgreSQL promote cancelled.")
            return False

        try:
            ret = self.pg_ctl('promote', '-W')
        except PostgresException as e:
            logger.info('pg_ctl promote was not executed: %s', e)
            return False
        if ret:
            ret = self._wait_promote(wait_seconds)
        return ret

    def run_after_command(self, cmd: str) -> Optional[int]:
        """Run the configured after-promotion command and wait for it.

        :returns: exit code of the command or ``None`` if it could not be executed.
        """
        try:
            ret = self.cancellable.call(shlex.split(cmd))
        except (PostgresException, ValueError) as e:
            logger.error('after_command `%s` was not executed: %s', cmd, e)
            return None
        if ret is not None:
            logger.info('after_command `%s` exited with %s', cmd, ret)
        return ret

    def close_connections(self) -> None:
        self.connection_pool.close()
