"""Logging of the pg_keeper daemon.

Records are put on an in-memory queue by the thread that logs them and written out by a dedicated thread, so that
a slow log destination never delays a heartbeat.
"""
import logging
import os
import sys

from io import TextIOWrapper
from logging.handlers import RotatingFileHandler
from queue import Full, Queue
from threading import Lock, Thread
from typing import Any, cast, Dict, List, Optional, TYPE_CHECKING, Union

from .utils import deep_compare, parse_int

type_logformat = Union[List[Union[str, Dict[str, Any], Any]], str, Any]

_LOGGER = logging.getLogger(__name__)


def _current_umask() -> int:
    umask = os.umask(0o077)
    os.umask(umask)
    return umask


class KeeperFileHandler(RotatingFileHandler):
    """:class:`RotatingFileHandler` that applies the configured permissions to every new log file."""

    def __init__(self, filename: str, mode: Optional[int]) -> None:
        self.set_log_file_mode(mode)
        super(KeeperFileHandler, self).__init__(filename)

    def set_log_file_mode(self, mode: Optional[int]) -> None:
        """Set permissions of log files, derived from the umask when *mode* is not given."""
        self._log_file_mode = 0o666 & ~_current_umask() if mode is None else mode

    def _open(self) -> TextIOWrapper:
        ret = super(KeeperFileHandler, self)._open()
        os.chmod(self.baseFilename, self._log_file_mode)
        return ret


def debug_exception(self: logging.Logger, msg: object, *args: Any, **kwargs: Any) -> None:
    """Replacement of :meth:`logging.Logger.exception` used when ``log.traceback_level`` is ``DEBUG``.

    The traceback is written only if the logger is enabled for ``DEBUG``, otherwise an ``ERROR`` with just the
    exception message is written.
    """
    kwargs.pop("exc_info", False)
    if self.isEnabledFor(logging.DEBUG):
        self.debug(msg, *args, exc_info=True, **kwargs)
    else:
        msg = "{0}, DETAIL: '{1}'".format(msg, sys.exc_info()[1])
        self.error(msg, *args, exc_info=False, **kwargs)


def error_exception(self: logging.Logger, msg: object, *args: Any, **kwargs: Any) -> None:
    """Replacement of :meth:`logging.Logger.exception` that always writes the traceback as an ``ERROR``."""
    exc_info = kwargs.pop("exc_info", True)
    self.error(msg, *args, exc_info=exc_info, **kwargs)


def _type(value: Any) -> str:
    return value.__class__.__name__


class QueueHandler(logging.Handler):
    """Put formatted records on a bounded queue and count the ones that didn't fit."""

    def __init__(self) -> None:
        super().__init__()
        self.queue: Queue[Union[logging.LogRecord, None]] = Queue()
        self._records_lost = 0

    def _put_record(self, record: logging.LogRecord) -> None:
        self.format(record)
        record.msg = record.message
        record.args = None
        record.exc_info = None
        self.queue.put_nowait(record)

    def _try_to_report_lost_records(self) -> None:
        if self._records_lost:
            try:
                record = _LOGGER.makeRecord(_LOGGER.name, logging.WARNING, __file__, 0,
                                            'QueueHandler has lost %s log records',
                                            (self._records_lost,), None, 'emit')
                self._put_record(record)
                self._records_lost = 0
            except Exception:
                pass

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._put_record(record)
            self._try_to_report_lost_records()
        except Exception:
            self._records_lost += 1

    @property
    def records_lost(self) -> int:
        return self._records_lost


class ProxyHandler(logging.Handler):
    """Write records directly to the current destination until the logger thread is started."""

    def __init__(self, keeper_logger: 'KeeperLogger') -> None:
        super().__init__()
        self.keeper_logger = keeper_logger

    def emit(self, record: logging.LogRecord) -> None:
        if self.keeper_logger.log_handler is not None:
            self.keeper_logger.log_handler.handle(record)


class KeeperLogger(Thread):
    """Logging thread of the pg_keeper daemon.

    :cvar DEFAULT_TYPE: default type of log format (``plain``).
    :cvar DEFAULT_LEVEL: default logging level (``INFO``).
    :cvar DEFAULT_TRACEBACK_LEVEL: default traceback logging level (``ERROR``).
    :cvar DEFAULT_FORMAT: default format of log messages.
    :cvar DEFAULT_MAX_QUEUE_SIZE: default maximum number of records waiting to be written.
    :cvar LOGGING_BROKEN_EXIT_CODE: exit code used when the queue is stuck at shutdown.

    :ivar log_handler: handler that writes records to the final destination.
    :ivar log_handler_lock: protects ``log_handler``.
    """

    DEFAULT_TYPE = 'plain'
    DEFAULT_LEVEL = 'INFO'
    DEFAULT_TRACEBACK_LEVEL = 'ERROR'
    DEFAULT_FORMAT = '%(asctime)s %(levelname)s: %(message)s'

    DEFAULT_MAX_QUEUE_SIZE = 1000
    LOGGING_BROKEN_EXIT_CODE = 5

    def __init__(self) -> None:
        """Start with ``DEBUG`` level and a proxy handler.

        The queue handler replaces the proxy only once the thread runs, so a daemon that fails during startup is
        never kept alive by a logger thread nobody stops.
        """
        super(KeeperLogger, self).__init__()
        self._queue_handler = QueueHandler()
        self._root_logger = logging.getLogger()
        self._config: Optional[Dict[str, Any]] = None
        self.log_handler = None
        self.log_handler_lock = Lock()
        self._old_handlers: List[logging.Handler] = []
        self.reload_config({'level': 'DEBUG'})
        self._proxy_handler = ProxyHandler(self)
        self._root_logger.addHandler(self._proxy_handler)

    def update_loggers(self, config: Dict[str, Any]) -> None:
        """Set levels of individual loggers from ``log.loggers``, all others inherit the root level.

        :Example:

            .. code-block:: python

                update_loggers({'pgkeeper.heartbeat': 'WARNING'})
        """
        loggers = dict(config)
        for name, logger in self._root_logger.manager.loggerDict.items():
            if not isinstance(logger, logging.PlaceHolder):
                logger.setLevel(loggers.pop(name, logging.NOTSET))

        for name, level in loggers.items():
            self._root_logger.manager.getLogger(name).setLevel(level)

    @staticmethod
    def _formatter_config(config: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'type': config.get('type', KeeperLogger.DEFAULT_TYPE),
            'format': config.get('format', KeeperLogger.DEFAULT_FORMAT),
            'dateformat': config.get('dateformat') or None,
            'static_fields': config.get('static_fields', {}),
        }

    def _is_config_changed(self, config: Dict[str, Any]) -> bool:
        """Whether the part of ``log`` that affects the formatter differs from the current one."""
        return not deep_compare(self._formatter_config(self._config or {}), self._formatter_config(config))

    def _get_plain_formatter(self, logformat: type_logformat, dateformat: Optional[str]) -> logging.Formatter:
        if not isinstance(logformat, str):
            _LOGGER.warning('Expected log format to be a string when log type is plain, but got "%s"', _type(logformat))
            logformat = KeeperLogger.DEFAULT_FORMAT

        return logging.Formatter(logformat, dateformat)

    def _get_json_formatter(self, logformat: type_logformat, dateformat: Optional[str],
                            static_fields: Dict[str, Any]) -> logging.Formatter:
        """Build a :mod:`pythonjsonlogger` formatter.

        *logformat* is either a format string or a list of field names, where a field may be given as a single-item
        mapping ``{field: new_name}`` to rename it in the output. Without ``python-json-logger`` installed the plain
        formatter is used.
        """
        rename_fields: Dict[str, str] = {}
        if isinstance(logformat, str):
            jsonformat = logformat
        elif isinstance(logformat, list):
            log_fields: List[str] = []
            for field in cast(List[Any], logformat):
                if isinstance(field, str):
                    log_fields.append(field)
                elif isinstance(field, dict):
                    for original_field, renamed_field in cast(Dict[str, Any], field).items():
                        if isinstance(renamed_field, str):
                            log_fields.append(original_field)
                            rename_fields[original_field] = renamed_field
                        else:
                            _LOGGER.warning('Expected renamed log field to be a string, but got "%s"',
                                            _type(renamed_field))
                else:
                    _LOGGER.warning('Expected each item of log format to be a string or dictionary, but got "%s"',
                                    _type(field))
            jsonformat = ' '.join(f'%({field})s' for field in log_fields) or KeeperLogger.DEFAULT_FORMAT
        else:
            jsonformat = KeeperLogger.DEFAULT_FORMAT
            _LOGGER.warning('Expected log format to be a string or a list, but got "%s"', _type(logformat))

        try:
            try:
                from pythonjsonlogger import json as jsonlogger  # pyright: ignore
            except ImportError:  # pragma: no cover
                from pythonjsonlogger import jsonlogger

            return jsonlogger.JsonFormatter(  # pyright: ignore [reportPrivateImportUsage]
                jsonformat,
                dateformat,
                rename_fields=rename_fields,
                static_fields=static_fields
            )
        except ImportError as e:
            _LOGGER.error('Failed to import "python-json-logger" library: %r. Falling back to the plain logger', e)
        except Exception as e:
            _LOGGER.error('Failed to initialize JsonFormatter: %r. Falling back to the plain logger', e)

        return self._get_plain_formatter(jsonformat, dateformat)

    def _get_formatter(self, config: Dict[str, Any]) -> logging.Formatter:
        conf = self._formatter_config(config)
        dateformat = conf['dateformat']
        if dateformat is not None and not isinstance(dateformat, str):
            _LOGGER.warning('Expected log dateformat to be a string, but got "%s"', _type(dateformat))
            dateformat = None

        if conf['type'] == 'json':
            return self._get_json_formatter(conf['format'], dateformat, conf['static_fields'])
        return self._get_plain_formatter(conf['format'], dateformat)

    def reload_config(self, config: Dict[str, Any]) -> None:
        """Apply the ``log`` section, both at startup and after SIGHUP."""
        if self._config is not None and deep_compare(self._config, config):
            return

        with self._queue_handler.queue.mutex:
            self._queue_handler.queue.maxsize = config.get('max_queue_size', self.DEFAULT_MAX_QUEUE_SIZE)

        self._root_logger.setLevel(config.get('level', KeeperLogger.DEFAULT_LEVEL))
        if config.get('traceback_level', KeeperLogger.DEFAULT_TRACEBACK_LEVEL).lower() == 'debug':
            logging.Logger.exception = debug_exception
        else:
            logging.Logger.exception = error_exception

        handler = self.log_handler

        if 'dir' in config:
            mode = parse_int(config.get('mode'))
            if not isinstance(handler, KeeperFileHandler):
                handler = KeeperFileHandler(os.path.join(config['dir'], 'pg_keeper.log'), mode)
            handler.set_log_file_mode(mode)
            handler.maxBytes = int(config.get('file_size', 25000000))  # pyright: ignore [reportAttributeAccessIssue]
            handler.backupCount = int(config.get('file_num', 4))
        # KeeperFileHandler is a StreamHandler too
        elif handler is None or isinstance(handler, KeeperFileHandler):
            handler = logging.StreamHandler()

        is_new_handler = handler != self.log_handler

        if self._is_config_changed(config) or is_new_handler:
            handler.setFormatter(self._get_formatter(config))

        if is_new_handler:
            with self.log_handler_lock:
                if self.log_handler:
                    self._old_handlers.append(self.log_handler)
                self.log_handler = handler

        self._config = config.copy()
        self.update_loggers(config.get('loggers') or {})

    def _close_old_handlers(self) -> None:
        while True:
            with self.log_handler_lock:
                if not self._old_handlers:
                    break
                handler = self._old_handlers.pop()
            try:
                handler.close()
            except Exception:
                _LOGGER.exception('Failed to close the old log handler %s', handler)

    def _skip_record(self, record: logging.LogRecord, prev_hb_msg: Optional[str]) -> bool:
        """Whether *record* repeats the previous heartbeat summary and ``deduplicate_heartbeat_logs`` is on."""
        if self._root_logger.level != logging.INFO or not self._is_heartbeat_msg(record):
            return False
        return bool((self._config or {}).get('deduplicate_heartbeat_logs', False)) and record.msg == prev_hb_msg

    def run(self) -> None:
        """Write queued records until the ``None`` sentinel arrives."""
        with self.log_handler_lock:
            self._root_logger.addHandler(self._queue_handler)
            self._root_logger.removeHandler(self._proxy_handler)

        prev_hb_msg = None

        while True:
            self._close_old_handlers()
            if TYPE_CHECKING:  # pragma: no cover
                assert self.log_handler is not None

            record = self._queue_handler.queue.get(True)
            if record is None:
                break

            if not self._skip_record(record, prev_hb_msg):
                self.log_handler.handle(record)
            prev_hb_msg = record.msg if self._is_heartbeat_msg(record) else None

            self._queue_handler.queue.task_done()

    @staticmethod
    def _is_heartbeat_msg(record: logging.LogRecord) -> bool:
        return isinstance(record.msg, str) and record.msg.startswith('no action. ')

    def shutdown(self) -> None:
        try:
            self._queue_handler.queue.put_nowait(None)
        except Full:
            sys.exit(self.LOGGING_BROKEN_EXIT_CODE)
        self.join()
        logging.shutdown()

    @property
    def queue_size(self) -> int:
        return self._queue_handler.queue.qsize()

    @property
    def records_lost(self) -> int:
        return self._queue_handler.records_lost
