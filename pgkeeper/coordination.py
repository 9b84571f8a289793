"""Shared coordination cell between the supervisor and registry mutators.

The cell is a tiny memory-mapped file with four fixed-width slots:

* ``pid`` of the supervisor, written once when it starts;
* ``generation``, bumped by every process that changed the node registry;
* ``status``, index of the current :class:`~pgkeeper.state.KeeperState` of the supervisor;
* ``start_time``, creation time of the supervisor process, written together with the pid.

A mutator first bumps the generation and then sends ``SIGUSR1`` to the recorded pid, unless the process running
under that pid was started at another time than recorded, i.e. the pid was reused after the supervisor exited. The
signal only shortens the wait of the supervisor, which compares the generation with the last value it has seen after
every wait. A lost or undeliverable signal therefore delays the refresh by at most one cycle.

:var LAYOUT: binary layout of the cell.
:var SIGNAL_ALIASES: accepted names of signals that can be sent to the supervisor.
"""
import logging
import mmap
import os
import signal
import struct

from contextlib import contextmanager
from typing import Iterator, Optional, Tuple

import psutil

from .exceptions import KeeperException
from .state import KeeperState

logger = logging.getLogger(__name__)

LAYOUT = struct.Struct('<qQid')
_PID = struct.Struct('<q')
_GENERATION = struct.Struct('<Q')
_STATUS = struct.Struct('<i')
_START_TIME = struct.Struct('<d')
_PID_OFFSET = 0
_GENERATION_OFFSET = _PID.size
_STATUS_OFFSET = _PID.size + _GENERATION.size
_START_TIME_OFFSET = _STATUS_OFFSET + _STATUS.size

SIGNAL_ALIASES = {
    'sighup': 'SIGHUP', 'hup': 'SIGHUP', 'reload': 'SIGHUP',
    'sigusr1': 'SIGUSR1', 'usr1': 'SIGUSR1', 'refresh': 'SIGUSR1',
    'sigterm': 'SIGTERM', 'term': 'SIGTERM', 'stop': 'SIGTERM',
}


class CoordinationCell(object):

    def __init__(self, path: str) -> None:
        """
        :param path: location of the cell file, usually ``pg_keeper.cell`` in the data directory.
        """
        self.path = path
        self._mmap: Optional[mmap.mmap] = None

    def _open(self, create: bool = False) -> mmap.mmap:
        fd = os.open(self.path, os.O_RDWR | (os.O_CREAT if create else 0), 0o600)
        try:
            if os.fstat(fd).st_size < LAYOUT.size:
                os.ftruncate(fd, LAYOUT.size)
            return mmap.mmap(fd, LAYOUT.size)
        finally:
            os.close(fd)

    @contextmanager
    def _cell(self) -> Iterator[mmap.mmap]:
        if self._mmap is not None:
            yield self._mmap
        else:
            cell = self._open()
            try:
                yield cell
            finally:
                cell.close()

    @property
    def registered(self) -> bool:
        return self._mmap is not None

    def register(self, pid: int) -> int:
        """Record *pid* as the supervisor and keep the cell mapped until :meth:`close`.

        The generation counter is preserved across restarts of the supervisor.

        :returns: the current generation.
        :raises:
            :exc:`~pgkeeper.exceptions.KeeperException`: if this cell is already registered.
        """
        if self._mmap is not None:
            raise KeeperException('coordination cell {0} is already registered'.format(self.path))
        try:
            start_time = psutil.Process(pid).create_time()
        except psutil.Error as e:
            logger.warning('Failed to get the start time of pid %s: %r', pid, e)
            start_time = 0.0

        self._mmap = self._open(create=True)
        _PID.pack_into(self._mmap, _PID_OFFSET, pid)
        _START_TIME.pack_into(self._mmap, _START_TIME_OFFSET, start_time)
        self._mmap.flush()
        logger.debug('registered pid %s in %s', pid, self.path)
        return self.generation

    def read(self) -> Tuple[int, int, int, float]:
        """Read all slots at once.

        :returns: ``pid``, ``generation``, ``status`` index and ``start_time``.
        :raises:
            :exc:`OSError`: if the cell doesn't exist.
        """
        with self._cell() as cell:
            return LAYOUT.unpack_from(cell, 0)

    @property
    def pid(self) -> int:
        return self.read()[0]

    @property
    def generation(self) -> int:
        return self.read()[1]

    @property
    def start_time(self) -> float:
        return self.read()[3]

    @property
    def status(self) -> Optional[KeeperState]:
        return KeeperState.from_index(self.read()[2])

    def set_status(self, state: KeeperState) -> None:
        with self._cell() as cell:
            _STATUS.pack_into(cell, _STATUS_OFFSET, getattr(state, 'index'))

    def invalidate(self) -> Optional[int]:
        """Bump the generation counter.

        :returns: the new generation or ``None`` if the cell is not available.
        """
        try:
            with self._cell() as cell:
                generation = (_GENERATION.unpack_from(cell, _GENERATION_OFFSET)[0] + 1) % (1 << 64)
                _GENERATION.pack_into(cell, _GENERATION_OFFSET, generation)
                return generation
        except OSError as e:
            logger.info('Could not invalidate %s: %s', self.path, e)

    def notify(self, signame: str = 'SIGUSR1') -> bool:
        """Deliver *signame* to the registered supervisor.

        :returns: ``True`` if the signal was sent.
        """
        signum = getattr(signal, signame, None)
        if signum is None:
            logger.error('Signal %s is not supported on this platform', signame)
            return False

        try:
            pid, _, _, start_time = self.read()
        except OSError as e:
            logger.info('No supervisor to notify: %s', e)
            return False

        if pid <= 0:
            logger.info('No supervisor registered in %s', self.path)
            return False

        try:
            proc = psutil.Process(pid)
            create_time = proc.create_time()
        except psutil.NoSuchProcess:
            logger.info('Supervisor pid %s from %s is not running', pid, self.path)
            return False
        except psutil.Error as e:
            logger.warning('Failed to inspect pid %s: %r', pid, e)
            return False

        # the pid was reused by another process after the supervisor exited
        if not start_time or abs(create_time - start_time) > 1:
            logger.info('Process %s started at %s, but the supervisor registered in %s started at %s',
                        pid, create_time, self.path, start_time)
            return False

        try:
            proc.send_signal(signum)
        except psutil.Error as e:
            logger.warning('Failed to send %s to pid %s: %r', signame, pid, e)
            return False
        logger.debug('sent %s to pid %s', signame, pid)
        return True

    def send_signal(self, name: str) -> bool:
        """Send a signal given by one of its accepted names to the supervisor.

        :param name: ``SIGHUP`` (``HUP``, ``reload``), ``SIGUSR1`` (``USR1``, ``refresh``) or ``SIGTERM`` (``TERM``,
            ``stop``), case-insensitive.

        :returns: ``True`` if the signal was sent.
        """
        signame = SIGNAL_ALIASES.get(name.strip().lower())
        if signame is None:
            logger.error('Unknown signal "%s"', name)
            return False
        return self.notify(signame)

    def close(self) -> None:
        if self._mmap is not None:
            self._mmap.close()
            self._mmap = None
