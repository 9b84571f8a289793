"""Daemon process abstraction module.

Signal handlers only raise flags. A socket pair registered with :func:`signal.set_wakeup_fd` interrupts the timed
wait of the main loop, which then handles the pending flags outside of signal context.
"""
from __future__ import print_function

import abc
import argparse
import logging
import os
import select
import signal
import socket
import sys

from threading import Lock
from typing import Any, Optional, Type, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from .config import Config

logger = logging.getLogger(__name__)

try:  # pragma: no cover
    from systemd import daemon  # pyright: ignore

    def notify_systemd(msg: str) -> None:
        daemon.notify(msg)  # pyright: ignore

except ImportError:  # pragma: no cover
    logger.info("Systemd integration is not supported")

    def notify_systemd(msg: str) -> None:
        pass


def get_base_arg_parser() -> argparse.ArgumentParser:
    """Create a basic argument parser with the arguments shared by pg_keeper daemons.

    :returns: 'argparse.ArgumentParser' object
    """
    from .config import Config
    from .version import __version__

    parser = argparse.ArgumentParser()
    parser.add_argument('--version', action='version', version='%(prog)s {0}'.format(__version__))
    parser.add_argument('configfile', nargs='?', default='',
                        help='pg_keeper may also read the configuration from the {0} environment variable'
                        .format(Config.KEEPER_CONFIG_VARIABLE))
    return parser


class AbstractKeeperDaemon(abc.ABC):
    """A pg_keeper daemon process.

    Subclasses define :func:`_run_cycle`, :func:`refresh` and :func:`_shutdown`.

    :ivar logger: log handler used by this daemon.
    :ivar config: configuration options for this daemon.
    """

    def __init__(self, config: 'Config') -> None:
        from .log import KeeperLogger

        self.setup_signal_handlers()

        self.logger = KeeperLogger()
        self.config = config
        AbstractKeeperDaemon.reload_config(self, local=True)

    def sighup_handler(self, *_: Any) -> None:
        self._received_sighup = True

    def sigusr1_handler(self, *_: Any) -> None:
        self._received_sigusr1 = True

    def api_sigterm(self) -> bool:
        """Flag the daemon as "SIGTERM received".

        :returns: ``True`` if the flag was not set before.
        """
        ret = False
        with self._sigterm_lock:
            if not self._received_sigterm:
                self._received_sigterm = True
                ret = True
        return ret

    def sigterm_handler(self, *_: Any) -> None:
        self.api_sigterm()

    def setup_signal_handlers(self) -> None:
        """Install SIGHUP, SIGUSR1 and SIGTERM handlers and the wakeup socket pair.

        .. note::

            SIGHUP and SIGUSR1 are only handled in non-Windows environments.
        """
        self._received_sighup = False
        self._received_sigusr1 = False
        self._sigterm_lock = Lock()
        self._received_sigterm = False

        self._wakeup_r, self._wakeup_w = socket.socketpair()
        self._wakeup_r.setblocking(False)
        self._wakeup_w.setblocking(False)
        signal.set_wakeup_fd(self._wakeup_w.fileno())

        if os.name != 'nt':
            signal.signal(signal.SIGHUP, self.sighup_handler)
            signal.signal(signal.SIGUSR1, self.sigusr1_handler)
        signal.signal(signal.SIGTERM, self.sigterm_handler)

    @property
    def received_sigterm(self) -> bool:
        with self._sigterm_lock:
            return self._received_sigterm

    def wait(self, timeout: float) -> bool:
        """Block for up to *timeout* seconds or until a signal arrives.

        :returns: ``True`` if the wait was interrupted by a signal.
        """
        try:
            readable, _, _ = select.select([self._wakeup_r], [], [], max(timeout, 0))
        except InterruptedError:  # pragma: no cover
            return True
        if readable:
            try:
                while self._wakeup_r.recv(1024):
                    pass
            except (BlockingIOError, InterruptedError):
                pass
            return True
        return False

    def reload_config(self, sighup: bool = False, local: Optional[bool] = False) -> None:
        """Reload configuration.

        :param sighup: if it is related to a SIGHUP signal.
        :param local: will be ``True`` if there are changes in the local configuration file.
        """
        if local:
            self.logger.reload_config(self.config.get('log', {}))

    @abc.abstractmethod
    def refresh(self) -> None:
        """Handle SIGUSR1."""

    def process_signals(self) -> None:
        """Handle the signals received since the last call, each of them once."""
        if self._received_sighup:
            self._received_sighup = False
            notify_systemd("RELOADING=1")
            self.reload_config(True, self.config.reload_local_configuration())
            notify_systemd("READY=1")

        if self._received_sigusr1:
            self._received_sigusr1 = False
            self.refresh()

    @abc.abstractmethod
    def _run_cycle(self) -> None:
        """Define what the daemon should do in each execution cycle."""

    def run(self) -> None:
        """Start the logger thread and keep running cycles until SIGTERM."""
        notify_systemd("READY=1")
        self.logger.start()
        while not self.received_sigterm:
            self.process_signals()
            self._run_cycle()

    @abc.abstractmethod
    def _shutdown(self) -> None:
        """Define what the daemon should do when shutting down."""

    def shutdown(self) -> None:
        with self._sigterm_lock:
            self._received_sigterm = True
        notify_systemd("STOPPING=1")
        self._shutdown()
        signal.set_wakeup_fd(-1)
        self._wakeup_r.close()
        self._wakeup_w.close()
        self.logger.shutdown()


def abstract_main(cls: Type[AbstractKeeperDaemon], configfile: str) -> None:
    """Create and run the daemon *cls* with the configuration loaded from *configfile*.

    Exits with status 1 on a configuration error or when the daemon hits a fatal condition.
    """
    from .config import Config, ConfigParseError
    from .exceptions import KeeperFatalException
    from .validator import schema

    try:
        config = Config(configfile, validator=schema)
    except ConfigParseError as e:
        sys.exit(e.value)

    try:
        controller = cls(config)
    except KeeperFatalException as e:
        sys.exit('FATAL: {0}'.format(e))

    exit_code = 0
    try:
        controller.run()
    except KeyboardInterrupt:
        pass
    except KeeperFatalException as e:
        logger.fatal('%s', e)
        exit_code = 1
    finally:
        controller.shutdown()
    if exit_code:
        sys.exit(exit_code)
