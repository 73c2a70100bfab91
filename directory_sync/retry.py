"""
Retry helpers for transient directory failures.

Only connection establishment is retried automatically: opening a socket
and binding are idempotent, directory writes are not.
"""

import time
import logging
from typing import Callable, Any, Tuple, Type, Optional

from ldap3.core.exceptions import (
    LDAPSocketOpenError,
    LDAPSocketReceiveError,
    LDAPSocketSendError,
    LDAPSessionTerminatedByServerError,
)

logger = logging.getLogger(__name__)

TRANSIENT_LDAP_ERRORS = (
    LDAPSocketOpenError,
    LDAPSocketReceiveError,
    LDAPSocketSendError,
    LDAPSessionTerminatedByServerError,
)

# Lower-cased fragments of server and socket messages that usually clear up on their own
TRANSIENT_MESSAGE_FRAGMENTS = (
    'timeout',
    'timed out',
    'connection reset',
    'connection refused',
    'network is unreachable',
    'busy',
    'unavailable',
)

RetryCallback = Callable[[int, Exception], None]


class MaxRetriesExceeded(Exception):
    """Every attempt failed; the final error is kept on ``last_exception``."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Gave up after {attempts} attempt(s): {last_exception}")


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict = None,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[RetryCallback] = None,
    retry_if: Optional[Callable[[Exception], bool]] = None
) -> Any:
    """
    Invoke ``func`` until it succeeds or the attempts run out.

    Errors outside ``exceptions`` propagate immediately. Between attempts the
    wait starts at ``delay`` and is multiplied by ``backoff`` each time; there
    is no wait after the final attempt.

    Args:
        func: Callable to invoke
        args: Positional arguments for ``func``
        kwargs: Keyword arguments for ``func``
        max_attempts: Total attempts, the first call included (at least one is made)
        delay: Seconds to wait before the second attempt
        backoff: Multiplier applied to the wait after every failed attempt
        exceptions: Error types treated as transient
        on_retry: Called with (attempt number, error) before each wait
        retry_if: Further narrows ``exceptions``; an error it rejects propagates at once

    Returns:
        Whatever ``func`` returns

    Raises:
        MaxRetriesExceeded: When the last permitted attempt also failed
    """
    kwargs = kwargs or {}
    attempts = max(1, max_attempts)
    wait = delay
    failure = None

    for attempt in range(1, attempts + 1):
        try:
            outcome = func(*args, **kwargs)
        except exceptions as e:
            if retry_if is not None and not retry_if(e):
                raise
            failure = e
        else:
            if attempt > 1:
                logger.info(f"{getattr(func, '__name__', 'operation')} recovered on attempt {attempt}")
            return outcome

        if attempt == attempts:
            break

        logger.debug(f"Attempt {attempt}/{attempts} raised {type(failure).__name__}: {failure}; "
                     f"waiting {wait:.1f}s")
        if on_retry:
            try:
                on_retry(attempt, failure)
            except Exception as callback_error:
                logger.warning(f"Ignoring error from retry callback: {callback_error}")

        time.sleep(wait)
        wait *= backoff

    raise MaxRetriesExceeded(attempts, failure)


def is_retryable_error(exception: Exception) -> bool:
    """
    Tell whether repeating the failed directory operation could succeed.

    ldap3 socket errors and builtin network errors always qualify; anything
    else qualifies only when its message looks like a timeout or a busy or
    unavailable server.
    """
    if isinstance(exception, TRANSIENT_LDAP_ERRORS + (ConnectionError, TimeoutError)):
        return True

    message = str(exception).lower()
    return any(fragment in message for fragment in TRANSIENT_MESSAGE_FRAGMENTS)


def create_retry_callback(operation_name: str) -> RetryCallback:
    """
    Build an ``on_retry`` callback that logs a warning naming the operation.

    Args:
        operation_name: Human readable label, e.g. "Directory bind"

    Returns:
        Callback suitable for :func:`retry_call`
    """
    def on_retry(attempt: int, exception: Exception):
        logger.warning(f"{operation_name} failed on attempt {attempt} "
                       f"({type(exception).__name__}: {exception}); retrying")

    return on_retry
