"""Liveness probe against a remote PostgreSQL node.

Every probe opens a brand new connection, runs exactly one query and closes the connection again, whatever the
outcome. Probes are cheap and infrequent, so no connection is kept between them.
"""
import logging

from typing import Any, NamedTuple, Optional

from . import psycopg
from .utils import mask_conninfo

logger = logging.getLogger(__name__)


class HeartbeatResult(NamedTuple):
    """Outcome of a single liveness probe.

    :ivar reachable: ``True`` if the connection was established and the query succeeded.
    :ivar value: first column of the first row returned by the query, if it was requested.
    """

    reachable: bool
    value: Any = None

    def __bool__(self) -> bool:
        return self.reachable


class Heartbeat(object):
    """Run the liveness query against a node identified by its connection string.

    :cvar APPLICATION_NAME: ``application_name`` reported by heartbeat connections.
    :cvar DEFAULT_QUERY: query used to check a node when none is given.
    """

    APPLICATION_NAME = 'pg_keeper heartbeat'
    DEFAULT_QUERY = 'SELECT 1'

    def __init__(self, connect_timeout: Optional[int] = None, query: str = DEFAULT_QUERY) -> None:
        """Create a :class:`Heartbeat` instance.

        :param connect_timeout: libpq ``connect_timeout`` for the probe connection, in seconds.
        :param query: liveness query.
        """
        self.connect_timeout = connect_timeout
        self.query = query

    def reload_config(self, connect_timeout: Optional[int]) -> None:
        self.connect_timeout = connect_timeout

    @property
    def _conn_kwargs(self):
        kwargs = {'application_name': self.APPLICATION_NAME}
        if self.connect_timeout:
            kwargs['connect_timeout'] = self.connect_timeout
        return kwargs

    def verify(self, conninfo: str, fetch: bool = False) -> HeartbeatResult:
        """Check whether the node behind *conninfo* accepts connections and answers the liveness query.

        .. note::
            Failures are never raised, they are logged and reported as an unreachable result.

        :param conninfo: libpq connection string of the node.
        :param fetch: whether the first value returned by the query should be part of the result.

        :returns: a :class:`HeartbeatResult`.
        """
        try:
            conn = psycopg.connect(conninfo, **self._conn_kwargs)
        except Exception as e:
            logger.info('could not connect to "%s": %s', mask_conninfo(conninfo), str(e).strip())
            return HeartbeatResult(False)

        try:
            with conn.cursor() as cur:
                cur.execute(self.query)
                row = cur.fetchone() if fetch else None
            return HeartbeatResult(True, row[0] if row else None)
        except Exception as e:
            logger.info('liveness query failed on "%s": %s', mask_conninfo(conninfo), str(e).strip())
            return HeartbeatResult(False)
        finally:
            try:
                conn.close()
            except Exception as e:
                logger.debug('failed to close heartbeat connection: %r', e)
