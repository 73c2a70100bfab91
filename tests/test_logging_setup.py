#!/usr/bin/env python3
"""
Unit tests for logging setup, credential scrubbing and the security audit log.
"""

import os
import sys
import time
import logging
import tempfile
import unittest
import logging.handlers

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.logging_setup import LOG_FILE_NAME, LoggingManager, SecurityAuditLogger, SensitiveDataFilter


def scrub(message):
    record = logging.LogRecord('test', logging.INFO, __file__, 1, message, None, None)
    SensitiveDataFilter().filter(record)
    return record.msg


class TestSensitiveDataFilter(unittest.TestCase):

    def test_assignments(self):
        self.assertEqual(scrub('password=secret123'), 'password=****')
        self.assertEqual(scrub('bind with bind_password=hunter2, retrying'), 'bind with bind_password=****, retrying')
        self.assertEqual(scrub('token=abc123def456'), 'token=****')

    def test_quoted_values(self):
        self.assertEqual(scrub('{"bind_password": "topsecret"}'), '{"bind_password": "****"}')
        self.assertEqual(scrub("{'unicodePwd': 'IgBwAHcAIgA='}"), "{'unicodePwd': '****'}")

    def test_bare_values(self):
        self.assertEqual(scrub('{"secret": 12345}'), '{"secret": ****}')

    def test_normal_message_untouched(self):
        message = 'Found 42 users in OU=Staff,DC=example,DC=com'
        self.assertEqual(scrub(message), message)

    def test_never_drops_records(self):
        record = logging.LogRecord('test', logging.INFO, __file__, 1, 'password=x', None, None)
        self.assertTrue(SensitiveDataFilter().filter(record))


class TestLoggingManager(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.temp_dir.cleanup)
        root_logger = logging.getLogger()
        self.saved_handlers = root_logger.handlers[:]
        self.saved_level = root_logger.level

    def tearDown(self):
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            handler.close()
            root_logger.removeHandler(handler)
        for handler in self.saved_handlers:
            root_logger.addHandler(handler)
        root_logger.setLevel(self.saved_level)

    def test_file_handler_with_daily_rotation(self):
        manager = LoggingManager()
        manager.setup_logging({'log_dir': self.temp_dir.name, 'console_output': False, 'level': 'DEBUG'})

        handlers = logging.getLogger().handlers
        self.assertEqual(len(handlers), 1)
        self.assertIsInstance(handlers[0], logging.handlers.TimedRotatingFileHandler)
        self.assertEqual(logging.getLogger().level, logging.DEBUG)
        self.assertTrue(os.path.exists(os.path.join(self.temp_dir.name, LOG_FILE_NAME)))

    def test_plain_file_and_console(self):
        manager = LoggingManager()
        manager.setup_logging({'log_dir': self.temp_dir.name, 'rotation': 'none'})

        kinds = [type(handler) for handler in logging.getLogger().handlers]
        self.assertEqual(kinds, [logging.FileHandler, logging.StreamHandler])

    def test_configured_once(self):
        manager = LoggingManager()
        manager.setup_logging({'log_dir': self.temp_dir.name, 'console_output': False})
        manager.setup_logging({'log_dir': self.temp_dir.name, 'console_output': True})

        self.assertEqual(len(logging.getLogger().handlers), 1)

    def test_secrets_scrubbed_in_file(self):
        manager = LoggingManager()
        manager.setup_logging({'log_dir': self.temp_dir.name, 'console_output': False})

        logging.getLogger('directory_sync.test').warning('bind failed with password=hunter2')
        for handler in logging.getLogger().handlers:
            handler.flush()

        with open(os.path.join(self.temp_dir.name, LOG_FILE_NAME), encoding='utf-8') as f:
            content = f.read()
        self.assertIn('password=****', content)
        self.assertNotIn('hunter2', content)

    def test_old_rotated_logs_removed(self):
        old_log = os.path.join(self.temp_dir.name, LOG_FILE_NAME + '.2020-01-01')
        recent_log = os.path.join(self.temp_dir.name, LOG_FILE_NAME + '.2099-01-01')
        for path in (old_log, recent_log):
            with open(path, 'w') as f:
                f.write('old entries\n')
        ten_days_ago = time.time() - 10 * 24 * 60 * 60
        os.utime(old_log, (ten_days_ago, ten_days_ago))

        manager = LoggingManager()
        manager.setup_logging({'log_dir': self.temp_dir.name, 'console_output': False, 'retention_days': 7})

        self.assertFalse(os.path.exists(old_log))
        self.assertTrue(os.path.exists(recent_log))


class TestSecurityAuditLogger(unittest.TestCase):

    def test_authentication_attempt(self):
        with self.assertLogs('security', level='INFO') as logs:
            SecurityAuditLogger().log_authentication_attempt('alice', False, -3)

        self.assertIn('Authentication FAILURE: user=alice code=-3', logs.output[0])

    def test_password_change(self):
        with self.assertLogs('security', level='INFO') as logs:
            SecurityAuditLogger().log_password_change('CN=alice,DC=example,DC=com', 'reset', True)

        self.assertIn('Password reset SUCCESS: dn=CN=alice,DC=example,DC=com', logs.output[0])

    def test_failed_write_is_warning(self):
        with self.assertLogs('security', level='INFO') as logs:
            SecurityAuditLogger().log_directory_write('delete', 'CN=bob,DC=example,DC=com', False, 'notAllowedOnNonLeaf')

        self.assertEqual(logs.records[0].levelname, 'WARNING')
        self.assertIn('Directory delete FAILURE: dn=CN=bob,DC=example,DC=com - notAllowedOnNonLeaf', logs.output[0])


if __name__ == '__main__':
    unittest.main()
