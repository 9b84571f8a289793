import logging

from threading import Lock
from typing import Any, List, Optional

import psutil

from ..exceptions import PostgresException
from ..utils import polling_loop

logger = logging.getLogger(__name__)


class CancellableSubprocess(object):

    """
    Runs one external command at a time (``pg_ctl`` or the after-promotion command) so that
    shutdown can terminate it together with all its descendants.
    """

    def __init__(self) -> None:
        self._process: Optional[psutil.Popen] = None
        self._process_cmd: Optional[List[str]] = None
        self._process_children: List[psutil.Process] = []
        self._is_cancelled = False
        self._lock = Lock()

    def _start_process(self, cmd: List[str], *args: Any, **kwargs: Any) -> Optional[bool]:
        """This method must be executed only when the `_lock` is acquired"""

        try:
            self._process_children = []
            self._process_cmd = cmd
            self._process = psutil.Popen(cmd, *args, **kwargs)
        except Exception:
            return logger.exception('Failed to execute %s', cmd)
        return True

    def _kill_process(self) -> None:
        with self._lock:
            if self._process is not None and self._process.is_running() and not self._process_children:
                try:
                    self._process.suspend()  # Suspend the process before getting list of children
                except psutil.Error as e:
                    logger.info('Failed to suspend the process: %s', e.msg)

                try:
                    self._process_children = self._process.children(recursive=True)
                except psutil.Error:
                    pass

                try:
                    self._process.kill()
                    logger.warning('Killed %s because it was still running', self._process_cmd)
                except psutil.NoSuchProcess:
                    pass
                except psutil.AccessDenied as e:
                    logger.warning('Failed to kill the process: %s', e.msg)

    def _kill_children(self) -> None:
        waitlist: List[psutil.Process] = []
        with self._lock:
            for child in self._process_children:
                try:
                    child.kill()
                except psutil.NoSuchProcess:
                    continue
                except psutil.AccessDenied as e:
                    logger.info('Failed to kill child process: %s', e.msg)
                waitlist.append(child)
        psutil.wait_procs(waitlist)

    def call(self, cmd: List[str], **kwargs: Any) -> Optional[int]:
        """Run *cmd* and wait for it.

        :returns: exit code of the command or ``None`` if it could not be started.
        :raises:
            :exc:`~pgkeeper.exceptions.PostgresException`: if :meth:`cancel` was called before.
        """
        for s in ('stdin', 'stdout', 'stderr'):
            kwargs.pop(s, None)

        try:
            with self._lock:
                if self._is_cancelled:
                    raise PostgresException('cancelled')
                started = self._start_process(cmd, **kwargs)

            if started and self._process is not None:
                return self._process.wait()
        finally:
            with self._lock:
                self._process = None
            self._kill_children()

    @property
    def is_cancelled(self) -> bool:
        with self._lock:
            return self._is_cancelled

    def cancel(self, kill: bool = False) -> None:
        with self._lock:
            self._is_cancelled = True
            if self._process is None or not self._process.is_running():
                return

            logger.info('Terminating %s', self._process_cmd)
            self._process.terminate()

        for _ in polling_loop(10):
            with self._lock:
                if self._process is None or not self._process.is_running():
                    return
            if kill:
                break

        self._kill_process()
