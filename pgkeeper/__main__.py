"""pg_keeper main entry point.

Implement ``pg_keeper`` main daemon and expose its entry point.
"""

import logging
import sys
import time

from argparse import Namespace
from typing import List, Optional, TYPE_CHECKING

from pgkeeper import MIN_PSYCOPG2, MIN_PSYCOPG3, parse_version
from pgkeeper.daemon import abstract_main, AbstractKeeperDaemon, get_base_arg_parser

if TYPE_CHECKING:  # pragma: no cover
    from .config import Config

logger = logging.getLogger(__name__)


class Keeper(AbstractKeeperDaemon):
    """Implement ``pg_keeper`` command daemon.

    :ivar postgresql: the local PostgreSQL node.
    :ivar heartbeat: liveness probe for remote nodes.
    :ivar cell: coordination cell shared with registry mutators.
    :ivar registry: node registry.
    :ivar ha: failover state machine.
    :ivar next_run: time when to run the next cycle.
    """

    def __init__(self, config: 'Config') -> None:
        """Set up the collaborators and bootstrap the state machine.

        :raises:
            :exc:`~pgkeeper.exceptions.KeeperFatalException`: if the node name is not configured or the local node
                can't be inspected.
        """
        from pgkeeper.coordination import CoordinationCell
        from pgkeeper.exceptions import KeeperFatalException
        from pgkeeper.ha import Ha
        from pgkeeper.heartbeat import Heartbeat
        from pgkeeper.postgresql import Postgresql
        from pgkeeper.registry import NodeRegistry

        super(Keeper, self).__init__(config)

        if not self.config.get('name'):
            raise KeeperFatalException('name is not configured')

        self.postgresql = Postgresql(self.config['postgresql'])
        self.heartbeat = Heartbeat(self.config['connect_timeout'])
        self.cell = CoordinationCell(self.config['coordination_file'])
        # mutations made by the supervisor itself must not wake it up
        self.registry = NodeRegistry(self.postgresql, self.heartbeat)
        self.ha = Ha(self)
        self.ha.bootstrap()
        self.next_run = time.time()

    def reload_config(self, sighup: bool = False, local: Optional[bool] = False) -> None:
        """Apply new values of ``keepalives_*``, ``after_command``, ``connect_timeout``, ``pg_ctl_timeout`` and ``log``.

        On SIGHUP a master also reconciles the registry, ``synchronous_standby_names`` might have been changed.
        """
        try:
            super(Keeper, self).reload_config(sighup, local)
            if local:
                self.heartbeat.reload_config(self.config['connect_timeout'])
                self.postgresql.reload_config(self.config['postgresql'])
        except Exception:
            logger.exception('Failed to reload config_file=%s', self.config.config_file)
        if sighup and self.ha.is_master():
            self.ha.reconcile()

    def refresh(self) -> None:
        self.ha.refresh()

    def schedule_next_run(self) -> None:
        """Wait until the next cycle is due, handling signals and registry invalidations in the meantime."""
        self.next_run += self.config['keepalives_time']
        if self.next_run <= time.time():
            self.next_run = time.time()
            logger.warning("Loop time exceeded, rescheduling immediately.")
            return

        while not self.received_sigterm:
            nap_time = self.next_run - time.time()
            if nap_time <= 0:
                break
            self.wait(nap_time)
            self.process_signals()
            if self.ha.is_invalidated():
                self.ha.refresh()

    def _run_cycle(self) -> None:
        logger.info(self.ha.run_cycle())
        self.schedule_next_run()

    def _shutdown(self) -> None:
        try:
            self.ha.shutdown()
        except Exception:
            logger.exception('Exception during Ha.shutdown')


def keeper_main(configfile: str) -> None:
    abstract_main(Keeper, configfile)


def process_arguments() -> Namespace:
    """Process command-line arguments.

    With ``--validate-config`` the configuration is validated (and printed with ``--print``) and the process exits.

    :returns: parsed arguments, if not running with ``--validate-config`` flag.
    """
    parser = get_base_arg_parser()
    parser.add_argument('--validate-config', action='store_true', help='Run config validator and exit')
    parser.add_argument('--print', '-p', action='store_true',
                        help='Print out local configuration (incl. environment configuration overrides).\
                              Can only be used with --validate-config')
    args = parser.parse_args()

    if args.validate_config:
        from pgkeeper.config import Config, ConfigParseError
        from pgkeeper.validator import schema

        try:
            config = Config(args.configfile, validator=schema)
        except ConfigParseError as e:
            sys.exit(e.value)

        if args.print:
            import yaml
            yaml.safe_dump(config.local_configuration, sys.stdout, default_flow_style=False, allow_unicode=True)
        sys.exit()

    return args


def check_psycopg() -> None:
    """Ensure at least one among :mod:`psycopg2` or :mod:`psycopg` libraries are available in the environment.

    .. note::
        pg_keeper chooses :mod:`psycopg2` over :mod:`psycopg`, if possible.

        If nothing meeting the requirements is found, then exit with a fatal message.
    """
    min_psycopg2_str = '.'.join(map(str, MIN_PSYCOPG2))
    min_psycopg3_str = '.'.join(map(str, MIN_PSYCOPG3))

    available_versions: List[str] = []

    # try psycopg2
    try:
        from psycopg2 import __version__
        if parse_version(__version__) >= MIN_PSYCOPG2:
            return
        available_versions.append('psycopg2=={0}'.format(__version__.split(' ')[0]))
    except ImportError:
        logger.debug('psycopg2 module is not available')

    # try psycopg3
    try:
        from psycopg import __version__
        if parse_version(__version__) >= MIN_PSYCOPG3:
            return
        available_versions.append('psycopg=={0}'.format(__version__.split(' ')[0]))
    except ImportError:
        logger.debug('psycopg module is not available')

    error = f'FATAL: pg_keeper requires psycopg2>={min_psycopg2_str}, psycopg2-binary, or psycopg>={min_psycopg3_str}'
    if available_versions:
        error += ', but only {0} {1} available'.format(
            ' and '.join(available_versions),
            'is' if len(available_versions) == 1 else 'are')
    sys.exit(error)


def main() -> None:
    """Main entrypoint of :mod:`pgkeeper.__main__`."""
    check_psycopg()

    args = process_arguments()

    keeper_main(args.configfile)


if __name__ == '__main__':
    main()
