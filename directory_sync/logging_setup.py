"""
Logging for Directory Sync.

Everything goes to one log file (rotated at midnight, pruned after the
retention period) and, optionally, to the console for container runs.
Credentials are masked before any handler writes a record. Directory
writes, password operations and authentication outcomes additionally go
to the dedicated ``security`` logger.
"""

import os
import re
import glob
import time
import logging
import logging.handlers
from typing import Dict, Any, List, Pattern, Tuple

LOG_FILE_NAME = 'directory_sync.log'

FILE_FORMAT = '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s'
CONSOLE_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'

MASK = '****'


def _build_masking_rules(keywords: List[str]) -> List[Tuple[Pattern, str]]:
    rules = []
    for keyword in keywords:
        # key=value
        rules.append((re.compile(rf'({keyword}\s*=\s*)[^\s,}}\]]+(\s|,|$)', re.IGNORECASE),
                      rf'\1{MASK}\2'))
        # "key": "value"
        rules.append((re.compile(rf'([\'"]{keyword}[\'"]\s*:\s*[\'"])[^\'"]*([\'"])', re.IGNORECASE),
                      rf'\1{MASK}\2'))
        # "key": value
        rules.append((re.compile(rf'([\'"]{keyword}[\'"]\s*:\s*)([^\'",}}\s]+)(\s*[,}}\]])', re.IGNORECASE),
                      rf'\1{MASK}\3'))
    return rules


class SensitiveDataFilter(logging.Filter):
    """Masks bind passwords, unicodePwd payloads and similar secrets in record messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'old_password', 'new_password', 'unicodepwd',
        'token', 'secret', 'credential', 'pwd', 'authorization', 'api_key',
    ]

    _rules = _build_masking_rules(SENSITIVE_KEYWORDS)

    def filter(self, record):
        if record.msg is None:
            return True

        text = str(record.msg)
        for pattern, replacement in self._rules:
            text = pattern.sub(replacement, text)
        record.msg = text

        # Records are only rewritten, never dropped
        return True


class LoggingManager:
    """
    Owns the root logger configuration for a process.

    Configuration is applied once; later calls are ignored until
    :meth:`reset` is called.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Install the file and console handlers on the root logger.

        Args:
            config: The ``logging`` section of the configuration. Recognised keys
                are level, log_dir, rotation (daily, midnight or none),
                retention_days, console_output and console_level.
        """
        if self.configured:
            return

        settings = config or {}
        level_name = settings.get('level', 'INFO').upper()
        level = getattr(logging, level_name, logging.INFO)
        console_enabled = settings.get('console_output', True)
        self.log_dir = settings.get('log_dir', 'logs')
        self.retention_days = settings.get('retention_days', 7)

        self._prepare_directory()

        scrubber = SensitiveDataFilter()
        handlers = [self._file_handler(settings.get('rotation', 'daily'), level)]
        if console_enabled:
            console_level = settings.get('console_level', 'WARNING').upper()
            handlers.append(self._console_handler(getattr(logging, console_level, logging.WARNING)))

        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        root_logger.handlers.clear()
        for handler in handlers:
            handler.addFilter(scrubber)
            root_logger.addHandler(handler)

        self._prune_rotated_logs()
        self.configured = True

        logging.getLogger(__name__).info(
            f"Logging to {os.path.join(self.log_dir, LOG_FILE_NAME)} at {level_name} "
            f"(keeping {self.retention_days} days, console {'on' if console_enabled else 'off'})"
        )

    def _prepare_directory(self) -> None:
        if not self.log_dir or os.path.isdir(self.log_dir):
            return
        try:
            os.makedirs(self.log_dir, exist_ok=True)
        except OSError as e:
            print(f"Warning: cannot create log directory {self.log_dir} ({e}); logging to the working directory")
            self.log_dir = '.'

    def _file_handler(self, rotation: str, level: int) -> logging.Handler:
        log_file = os.path.join(self.log_dir, LOG_FILE_NAME)

        if rotation.lower() in ('daily', 'midnight'):
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
        else:
            handler = logging.FileHandler(log_file, encoding='utf-8')

        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        return handler

    @staticmethod
    def _console_handler(level: int) -> logging.Handler:
        handler = logging.StreamHandler()
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt='%H:%M:%S'))
        return handler

    def _prune_rotated_logs(self) -> None:
        """Delete rotated files whose modification time is past the retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        oldest_kept = time.time() - self.retention_days * 24 * 60 * 60
        for rotated in glob.glob(os.path.join(self.log_dir, LOG_FILE_NAME + '.*')):
            try:
                if os.path.getmtime(rotated) < oldest_kept:
                    os.remove(rotated)
            except OSError as e:
                print(f"Warning: cannot remove rotated log {rotated}: {e}")

    def reset(self) -> None:
        self.configured = False


_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """Configure process-wide logging from the ``logging`` config section."""
    _logging_manager.setup_logging(config)


class SecurityAuditLogger:
    """Writes one line per authentication attempt, password operation or directory write."""

    def __init__(self):
        self.logger = logging.getLogger('security')

    @staticmethod
    def _outcome(success: bool) -> str:
        return "SUCCESS" if success else "FAILURE"

    def log_authentication_attempt(self, username: str, success: bool, code: int = None):
        self.logger.info(f"Authentication {self._outcome(success)}: user={username} code={code}")

    def log_password_change(self, dn: str, mode: str, success: bool):
        """``mode`` is either change (user knows the old password) or reset."""
        self.logger.info(f"Password {mode} {self._outcome(success)}: dn={dn}")

    def log_directory_write(self, operation: str, dn: str, success: bool, details: str = ""):
        line = f"Directory {operation} {self._outcome(success)}: dn={dn}"
        if details:
            line = f"{line} - {details}"
        self.logger.log(logging.INFO if success else logging.WARNING, line)


security_logger = SecurityAuditLogger()
