import logging
import os
import unittest

from io import StringIO
from queue import Full, Queue
from unittest.mock import Mock, patch

from pgkeeper.log import KeeperFileHandler, KeeperLogger

try:
    from pythonjsonlogger import json as jsonlogger

    jsonlogger.JsonFormatter(None, None, rename_fields={}, static_fields={})
    json_formatter_is_available = True

    import json  # we need json.loads() function
except Exception:
    json_formatter_is_available = False

_LOG = logging.getLogger(__name__)


def heartbeat_record(msg):
    return logging.LogRecord('pgkeeper.__main__', logging.INFO, __file__, 0, msg, (), None)


class TestKeeperLogger(unittest.TestCase):

    def setUp(self):
        self._handlers = logging.getLogger().handlers[:]

    def tearDown(self):
        logging.getLogger().handlers[:] = self._handlers

    @patch('os.chmod', Mock())
    @patch('logging.FileHandler._open', Mock())
    def test_keeper_logger(self):
        config = {
            'traceback_level': 'DEBUG',
            'max_queue_size': 5,
            'dir': 'foo',
            'mode': 0o600,
            'file_size': 4096,
            'file_num': 5,
            'loggers': {
                'foo.bar': 'INFO'
            }
        }
        logger = KeeperLogger()
        logger.reload_config(config)
        self.assertIsInstance(logger.log_handler, KeeperFileHandler)
        self.assertEqual(logger.log_handler.baseFilename, os.path.abspath(os.path.join('foo', 'pg_keeper.log')))
        _LOG.exception('test')
        logger.start()

        with patch.object(logging.Handler, 'format', Mock(side_effect=Exception)), \
                patch('_pytest.logging.LogCaptureHandler.emit', Mock()):
            logging.error('test')

        self.assertEqual(logger.log_handler.maxBytes, config['file_size'])
        self.assertEqual(logger.log_handler.backupCount, config['file_num'])
        self.assertEqual(logging.getLogger('foo.bar').level, logging.INFO)

        config = dict(config, level='DEBUG')
        config.pop('dir')
        with patch('logging.Handler.close', Mock(side_effect=Exception)):
            logger.reload_config(config)
            with patch.object(logging.Logger, 'makeRecord',
                              Mock(side_effect=[logging.LogRecord('', logging.INFO, '', 0, '', (), None), Exception])):
                logging.exception('test')
            logging.error('test')
            with patch.object(Queue, 'put_nowait', Mock(side_effect=Full)):
                self.assertRaises(SystemExit, logger.shutdown)
            self.assertRaises(Exception, logger.shutdown)
        self.assertLessEqual(logger.queue_size, 2)  # "Failed to close the old log handler" could be still in the queue
        self.assertEqual(logger.records_lost, 0)

    def test_reload_same_config(self):
        logger = KeeperLogger()
        logger.reload_config({'level': 'WARNING'})
        handler = logger.log_handler
        with patch.object(logger, 'update_loggers') as mock_update_loggers:
            logger.reload_config({'level': 'WARNING'})
            mock_update_loggers.assert_not_called()
        self.assertIs(logger.log_handler, handler)

    def test_file_mode(self):
        with patch('pgkeeper.log.os.umask', Mock(return_value=0o022)):
            handler = KeeperFileHandler.__new__(KeeperFileHandler)
            handler.set_log_file_mode(None)
        self.assertEqual(handler._log_file_mode, 0o644)
        handler.set_log_file_mode(0o600)
        self.assertEqual(handler._log_file_mode, 0o600)

    def test_skip_record(self):
        logger = KeeperLogger()
        logger.reload_config({'level': 'INFO', 'deduplicate_heartbeat_logs': True})
        record = heartbeat_record('no action. I am (n1), a standby following the master')
        self.assertTrue(logger._skip_record(record, record.msg))
        self.assertFalse(logger._skip_record(record, 'no action. I am (n1), the master without synchronous standby'))
        self.assertFalse(logger._skip_record(heartbeat_record('promoted self to master'), 'promoted self to master'))

        logger.reload_config({'level': 'DEBUG', 'deduplicate_heartbeat_logs': True})
        self.assertFalse(logger._skip_record(record, record.msg))

        logger.reload_config({'level': 'INFO'})
        self.assertFalse(logger._skip_record(record, record.msg))

    def test_deduplicate_heartbeat_logs(self):
        with patch('sys.stderr', StringIO()) as stderr_output:
            logger = KeeperLogger()
            logger.reload_config({'level': 'INFO', 'format': '%(message)s', 'deduplicate_heartbeat_logs': True})
            for msg in ('no action. I am (n1), a standby following the master',
                        'no action. I am (n1), a standby following the master',
                        'I am (n1), a standby, the master is not reachable (1/3)',
                        'no action. I am (n1), a standby following the master'):
                logger._queue_handler.queue.put(heartbeat_record(msg))
            logger._queue_handler.queue.put(None)
            logger.run()

        self.assertEqual(stderr_output.getvalue().splitlines(),
                         ['no action. I am (n1), a standby following the master',
                          'I am (n1), a standby, the master is not reachable (1/3)',
                          'no action. I am (n1), a standby following the master'])

    def test_interceptor(self):
        logger = KeeperLogger()
        logger.reload_config({'level': 'INFO'})
        logger.start()
        _LOG.info('no action. ')
        _LOG.info('blabla')
        logger.shutdown()
        self.assertEqual(logger.records_lost, 0)

    def test_json_list_format(self):
        config = {
            'type': 'json',
            'format': [
                {'asctime': '@timestamp'},
                {'levelname': 'level'},
                'message'
            ],
            'static_fields': {
                'app': 'pg_keeper'
            }
        }

        test_message = 'test json logging in case of list format'

        with patch('sys.stderr', StringIO()) as stderr_output:
            logger = KeeperLogger()
            logger.reload_config(config)

            _LOG.info(test_message)
            if json_formatter_is_available:
                target_log = json.loads(stderr_output.getvalue().split('\n')[-2])

                self.assertIn('@timestamp', target_log)
                self.assertEqual(target_log['message'], test_message)
                self.assertEqual(target_log['level'], 'INFO')
                self.assertEqual(target_log['app'], 'pg_keeper')
                self.assertEqual(len(target_log), len(config['format']) + len(config['static_fields']))

    def test_plain_format(self):
        config = {
            'type': 'plain',
            'format': '[%(asctime)s] %(levelname)s %(message)s',
            'dateformat': '%Y-%m-%dT%H:%M:%S'
        }

        test_message = 'test plain logging'

        with patch('sys.stderr', StringIO()) as stderr_output:
            logger = KeeperLogger()
            logger.reload_config(config)

            _LOG.info(test_message)
            target_log = stderr_output.getvalue()

        self.assertRegex(target_log, r'^\[\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\] ' + f'INFO {test_message}$')

    def test_invalid_formats(self):
        with self.assertLogs() as captured_log:
            logger = KeeperLogger()
            logger.reload_config({'format': '%(message)s', 'dateformat': 5})
        self.assertRegex(captured_log.records[0].message, r'Expected log dateformat to be a string, but got "int"')

        with self.assertLogs() as captured_log:
            logger.reload_config({'type': 'plain', 'format': ['message']})
        self.assertRegex(captured_log.records[0].message,
                         r'Expected log format to be a string when log type is plain, but got ".*"')

    def test_invalid_json_format(self):
        logger = KeeperLogger()
        for logformat, error in (({'asctime': 'timestamp'}, r'Expected log format to be a string or a list'),
                                 ([['levelname']], r'Expected each item of log format to be a string or dictionary'),
                                 (['message', {'asctime': ['timestamp']}], r'Expected renamed log field to be a string')):
            with self.assertLogs() as captured_log:
                logger.reload_config({'type': 'json', 'format': logformat})
            self.assertEqual(captured_log.records[0].levelname, 'WARNING')
            self.assertRegex(captured_log.records[0].message, error)

    def test_fail_to_use_python_json_logger(self):
        with self.assertLogs() as captured_log:
            logger = KeeperLogger()
            with patch('builtins.__import__', Mock(side_effect=ImportError)):
                logger.reload_config({'type': 'json'})

        self.assertEqual(captured_log.records[0].levelname, 'ERROR')
        self.assertRegex(captured_log.records[0].message,
                         r'Failed to import "python-json-logger" library: .*. Falling back to the plain logger')

        with self.assertLogs() as captured_log:
            logger = KeeperLogger()
            pythonjsonlogger = Mock()
            pythonjsonlogger.json.JsonFormatter = Mock(side_effect=Exception)
            with patch('builtins.__import__', Mock(return_value=pythonjsonlogger)):
                logger.reload_config({'type': 'json'})

        self.assertEqual(captured_log.records[0].levelname, 'ERROR')
        self.assertRegex(captured_log.records[0].message,
                         r'Failed to initialize JsonFormatter: .*. Falling back to the plain logger')
