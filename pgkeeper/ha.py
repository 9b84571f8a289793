import logging
import os

from typing import List, Optional, TYPE_CHECKING

from .exceptions import KeeperFatalException, PostgresConnectionException, RegistryError
from .state import KeeperMode, KeeperState, RunState
from .utils import mask_conninfo

if TYPE_CHECKING:  # pragma: no cover
    from .__main__ import Keeper
    from .registry import Node

logger = logging.getLogger(__name__)


class Ha(object):
    """Failover state machine of a single node.

    One instance is owned by the :class:`~pgkeeper.__main__.Keeper` daemon which calls :meth:`run_cycle` once per
    ``keepalives_time`` and :meth:`refresh` whenever the node registry was changed by somebody else.
    """

    def __init__(self, keeper: 'Keeper') -> None:
        self.keeper = keeper
        self.state_handler = keeper.postgresql
        self.registry = keeper.registry
        self.heartbeat = keeper.heartbeat
        self.cell = keeper.cell
        self.run_state: Optional[RunState] = None
        # startup-only settings, captured by bootstrap() and kept across reloads
        self._name = ''
        self._primary_conninfo: Optional[str] = None

    @property
    def config(self):
        return self.keeper.config

    @property
    def name(self) -> str:
        return self._name

    @property
    def keepalives_count(self) -> int:
        return self.config['keepalives_count']

    def is_master(self) -> bool:
        return self.run_state is not None and self.run_state.mode == KeeperMode.MASTER

    def set_state(self, state: KeeperState) -> None:
        assert self.run_state is not None
        if self.run_state.state != state:
            logger.info('state changed from "%s" to "%s"', self.run_state.state, state)
        self.run_state.state = state

    def bootstrap(self) -> None:
        """Find out the mode of the local node, take over the coordination cell and load the registry.

        :raises:
            :exc:`~pgkeeper.exceptions.KeeperFatalException`: if the local node can't tell whether it is in recovery.
        """
        try:
            in_recovery = self.state_handler.is_in_recovery()
        except PostgresConnectionException as e:
            raise KeeperFatalException('can not determine the recovery status of the local node: {0}'.format(e))

        self._name = self.config['name']
        self._primary_conninfo = self.config.get('primary_conninfo')

        self.run_state = RunState(KeeperMode.STANDBY if in_recovery else KeeperMode.MASTER, os.getpid())
        self.run_state.generation = self.cell.register(self.run_state.own_pid)
        self.cell.set_status(self.run_state.state)
        logger.info('starting as %s, %s', self.run_state.mode, self.run_state.state)

        if self.is_master():
            self.registry.ensure_schema()
        self.load_nodes()
        if self.is_master():
            self.reconcile()

    def load_nodes(self) -> Optional[List['Node']]:
        """Read the registry, on failure the last successfully read list stays in use."""
        assert self.run_state is not None
        try:
            self.run_state.nodes = self.registry.list_nodes()
        except RegistryError as e:
            logger.warning('%s, using the last known list of nodes', e)
        return self.run_state.nodes

    def reconcile(self) -> None:
        try:
            changes = self.registry.reconcile()
        except RegistryError as e:
            logger.warning('%s', e)
        else:
            if changes:
                self.load_nodes()

    def is_invalidated(self) -> bool:
        """Check whether somebody bumped the generation of the coordination cell since the last refresh."""
        assert self.run_state is not None
        return self.cell.generation != self.run_state.generation

    def refresh(self) -> None:
        """Pick up registry changes made by other processes."""
        assert self.run_state is not None
        self.run_state.generation = self.cell.generation
        logger.info('node registry changed, reloading')
        self.load_nodes()
        if self.is_master():
            self.reconcile()

    def get_master(self) -> Optional['Node']:
        assert self.run_state is not None
        return next((node for node in self.run_state.nodes or [] if node.is_master), None)

    def primary_conninfo(self) -> str:
        """Address of the primary a standby has to watch.

        :raises:
            :exc:`~pgkeeper.exceptions.KeeperFatalException`: if neither the registry nor the configuration knows it.
        """
        master = self.get_master()
        if master is not None:
            return master.conninfo
        if not self._primary_conninfo:
            raise KeeperFatalException('the registry has no master and primary_conninfo is not configured')
        return self._primary_conninfo

    def _run_master_cycle(self) -> str:
        assert self.run_state is not None
        standbys = [node for node in self.run_state.nodes or [] if not node.is_master]
        target = next((node for node in standbys if node.is_sync), None)
        if target is None:
            self.set_state(KeeperState.MASTER_ASYNC)
            return 'no action. I am ({0}), the master without synchronous standby'.format(self.name)

        if self.heartbeat.verify(target.conninfo):
            self.set_state(KeeperState.MASTER_CONNECTED)
            return 'no action. I am ({0}), the master with synchronous standby ({1})'.format(self.name, target.name)

        logger.warning('synchronous standby "%s" is not reachable', target.name)
        self.set_state(KeeperState.MASTER_ASYNC)
        return 'I am ({0}), the master, synchronous standby ({1}) is not reachable'.format(self.name, target.name)

    def _finish_promotion(self) -> str:
        assert self.run_state is not None
        if not self.registry.set_master(self.name):
            logger.warning('could not mark "%s" as master in the registry', self.name)

        cmd = self.config.get('after_command')
        if cmd:
            self.state_handler.run_after_command(cmd)

        self.run_state.mode = KeeperMode.MASTER
        self.run_state.retry_count = 0
        self.set_state(KeeperState.MASTER_READY)
        self.load_nodes()
        return 'promoted self to master'

    def promote(self) -> str:
        """Promote the local standby after the primary has been unreachable for too long.

        A failed ``pg_ctl promote`` leaves the node in the ``standby alone`` state, the next cycle tries again.
        """
        self.set_state(KeeperState.STANDBY_ALONE)
        try:
            in_recovery = self.state_handler.is_in_recovery()
        except PostgresConnectionException as e:
            logger.error('%s', e)
            return 'failed to check the local node before promote, will retry'

        if in_recovery:
            logger.warning('promoting self to master')
            if not self.state_handler.promote(self.state_handler.pg_ctl_timeout):
                logger.error('promote of the local node failed')
                return 'promote failed, will retry'
        return self._finish_promotion()

    def _run_standby_cycle(self) -> str:
        assert self.run_state is not None
        conninfo = self.primary_conninfo()

        if self.heartbeat.verify(conninfo):
            if self.run_state.retry_count:
                logger.info('primary "%s" is reachable again', mask_conninfo(conninfo))
            self.run_state.retry_count = 0
            self.set_state(KeeperState.STANDBY_CONNECTED)
            return 'no action. I am ({0}), a standby following the master'.format(self.name)

        self.run_state.retry_count += 1
        logger.warning('primary "%s" is not reachable, failure %s of %s',
                       mask_conninfo(conninfo), self.run_state.retry_count, self.keepalives_count)
        if self.run_state.retry_count < self.keepalives_count:
            self.set_state(KeeperState.STANDBY_CONNECTED)
            return 'I am ({0}), a standby, the master is not reachable ({1}/{2})'.format(
                self.name, self.run_state.retry_count, self.keepalives_count)
        return self.promote()

    def _run_cycle(self) -> str:
        assert self.run_state is not None
        self.load_nodes()
        try:
            if self.run_state.mode == KeeperMode.MASTER:
                return self._run_master_cycle()
            elif self.run_state.mode == KeeperMode.STANDBY:
                return self._run_standby_cycle()
            raise KeeperFatalException('invalid mode {0!r}'.format(self.run_state.mode))
        finally:
            self.cell.set_status(self.run_state.state)

    def run_cycle(self) -> str:
        try:
            return self._run_cycle()
        except KeeperFatalException:
            raise
        except Exception:
            logger.exception('Unexpected exception')
            return 'Unexpected exception raised, please report it as a BUG'

    def shutdown(self) -> None:
        self.state_handler.cancellable.cancel()
        self.state_handler.close_connections()
        self.cell.close()
