"""Bind-based authentication with messages fit for a login form."""

import logging
from typing import Any, Dict

from directory_sync.gateway import DirectoryGateway
from directory_sync.logging_setup import security_logger

logger = logging.getLogger(__name__)

ACCOUNT_LOCKED_OUT = ("Your account has been temporarily locked because of too many failed login attempts. "
                      "Please try again later.")
INVALID_CREDENTIALS = "The provided details don't seem to be correct. Please try again."

LOCKED_OUT_MARKERS = ('NT_STATUS_ACCOUNT_LOCKED_OUT', 'data 775')
INVALID_CREDENTIALS_MARKERS = ('NT_STATUS_LOGON_FAILURE', 'data 52e')


class Authenticator:

    def __init__(self, gateway: DirectoryGateway):
        self.gateway = gateway

    def authenticate(self, username: str, password: str) -> Dict[str, Any]:
        """
        Returns:
            Dictionary with success, identity, message and code. message is safe to show the user.
        """
        result = self.gateway.authenticate(username, password)
        messages = result.messages or ['']

        # Everything past the first message is server diagnostics
        for message in messages[1:]:
            logger.debug(str(message).replace('\n', '\n  '))

        message = messages[0]
        diagnostic = messages[1] if len(messages) > 1 and messages[1] else ''
        if any(marker in diagnostic for marker in LOCKED_OUT_MARKERS):
            message = ACCOUNT_LOCKED_OUT
        if any(marker in diagnostic for marker in INVALID_CREDENTIALS_MARKERS):
            message = INVALID_CREDENTIALS

        security_logger.log_authentication_attempt(username, result.success, int(result.code))
        return {
            'success': result.success,
            'identity': result.identity,
            'message': message,
            'code': int(result.code),
        }
