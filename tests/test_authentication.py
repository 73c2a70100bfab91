#!/usr/bin/env python3
"""
Unit tests for user-facing authentication results.
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.authentication import ACCOUNT_LOCKED_OUT, INVALID_CREDENTIALS, Authenticator
from directory_sync.gateway import AuthenticationResult, AuthResultCode, DirectoryGateway

LOCKED_DIAGNOSTIC = ('80090308: LdapErr: DSID-0C09042A, comment: AcceptSecurityContext error, '
                     'data 775, v3839')
BAD_PASSWORD_DIAGNOSTIC = ('80090308: LdapErr: DSID-0C09042A, comment: AcceptSecurityContext error, '
                           'data 52e, v3839')


class TestAuthenticator(unittest.TestCase):

    def setUp(self):
        self.gateway = Mock(spec=DirectoryGateway)
        patcher = patch('directory_sync.authentication.security_logger')
        self.security_logger = patcher.start()
        self.addCleanup(patcher.stop)

    def authenticate(self, result):
        self.gateway.authenticate.return_value = result
        return Authenticator(self.gateway).authenticate('alice', 'secret')

    def test_success(self):
        outcome = self.authenticate(AuthenticationResult(AuthResultCode.SUCCESS, 'alice', ['Authentication successful']))

        self.assertEqual(outcome, {
            'success': True,
            'identity': 'alice',
            'message': 'Authentication successful',
            'code': 1,
        })
        self.security_logger.log_authentication_attempt.assert_called_once_with('alice', True, 1)

    def test_locked_out(self):
        outcome = self.authenticate(AuthenticationResult(
            AuthResultCode.CREDENTIAL_INVALID, 'alice', ['Invalid credentials', LOCKED_DIAGNOSTIC]))

        self.assertFalse(outcome['success'])
        self.assertEqual(outcome['message'], ACCOUNT_LOCKED_OUT)
        self.assertEqual(outcome['code'], -3)

    def test_samba_status_names(self):
        locked = self.authenticate(AuthenticationResult(
            AuthResultCode.CREDENTIAL_INVALID, 'alice', ['Invalid credentials', 'NT_STATUS_ACCOUNT_LOCKED_OUT']))
        invalid = self.authenticate(AuthenticationResult(
            AuthResultCode.CREDENTIAL_INVALID, 'alice', ['Invalid credentials', 'NT_STATUS_LOGON_FAILURE']))

        self.assertEqual(locked['message'], ACCOUNT_LOCKED_OUT)
        self.assertEqual(invalid['message'], INVALID_CREDENTIALS)

    def test_invalid_credentials(self):
        outcome = self.authenticate(AuthenticationResult(
            AuthResultCode.CREDENTIAL_INVALID, 'alice', ['Invalid credentials', BAD_PASSWORD_DIAGNOSTIC]))

        self.assertEqual(outcome['message'], INVALID_CREDENTIALS)
        self.security_logger.log_authentication_attempt.assert_called_once_with('alice', False, -3)

    def test_unknown_diagnostic_keeps_first_message(self):
        outcome = self.authenticate(AuthenticationResult(
            AuthResultCode.IDENTITY_NOT_FOUND, 'nobody', ['Account not found', 'no such object']))

        self.assertEqual(outcome['message'], 'Account not found')
        self.assertEqual(outcome['code'], -1)

    def test_no_messages(self):
        outcome = self.authenticate(AuthenticationResult(AuthResultCode.FAILURE, 'alice'))
        self.assertEqual(outcome['message'], '')

    def test_diagnostics_logged_at_debug(self):
        with self.assertLogs('directory_sync.authentication', level='DEBUG') as logs:
            self.authenticate(AuthenticationResult(
                AuthResultCode.CREDENTIAL_INVALID, 'alice', ['Invalid credentials', BAD_PASSWORD_DIAGNOSTIC]))

        self.assertEqual(len(logs.records), 1)
        self.assertEqual(logs.records[0].levelname, 'DEBUG')
        self.assertIn('data 52e', logs.output[0])


if __name__ == '__main__':
    unittest.main()
