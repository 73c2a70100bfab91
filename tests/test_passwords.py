#!/usr/bin/env python3
"""
Unit tests for directory password changes and resets.
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.gateway import DirectoryError
from directory_sync.passwords import (
    ACCOUNT_NOT_SET_UP, PasswordHooks, PasswordManager, temporary_password
)
from directory_sync.query import QueryService
from directory_sync.store import LocalIdentity

USER_DN = 'CN=alice,OU=Staff,DC=example,DC=com'


class PasswordTestCase(unittest.TestCase):

    def setUp(self):
        self.query = Mock(spec=QueryService)
        self.query.gateway = Mock()
        self.gateway = self.query.gateway
        self.query.get_user_by_guid.return_value = {'dn': USER_DN, 'distinguishedname': USER_DN}
        self.identity = LocalIdentity(id=1, username='alice', guid='g-alice')

    def manager(self, hooks=None, **config):
        return PasswordManager(self.query, config, hooks)


class TestSetPassword(PasswordTestCase):

    def test_change_with_old_password(self):
        result = self.manager().set_password(self.identity, 'N3w-secret', old_password='0ld-secret')

        self.assertTrue(result.valid)
        self.gateway.change_password.assert_called_once_with(USER_DN, 'N3w-secret', '0ld-secret')
        self.gateway.reset_password.assert_not_called()

    def test_admin_reset(self):
        result = self.manager().set_password(self.identity, 'N3w-secret')

        self.assertTrue(result.valid)
        self.gateway.reset_password.assert_called_once_with(USER_DN, 'N3w-secret')
        self.gateway.change_password.assert_not_called()

    @patch('directory_sync.passwords.temporary_password', return_value='Aa1temporary')
    def test_history_workaround(self, mock_temporary):
        """Test the reset goes through a temporary password so history rules still apply."""
        result = self.manager(password_history_workaround=True).set_password(self.identity, 'N3w-secret')

        self.assertTrue(result.valid)
        self.assertEqual([c[0] for c in self.gateway.mock_calls], ['reset_password', 'change_password'])
        self.gateway.reset_password.assert_called_once_with(USER_DN, 'Aa1temporary')
        self.gateway.change_password.assert_called_once_with(USER_DN, 'N3w-secret', 'Aa1temporary')

    def test_old_password_takes_precedence_over_workaround(self):
        self.manager(password_history_workaround=True).set_password(self.identity, 'new', old_password='old')

        self.gateway.reset_password.assert_not_called()
        self.gateway.change_password.assert_called_once_with(USER_DN, 'new', 'old')

    def test_directory_error_becomes_message(self):
        self.gateway.change_password.side_effect = DirectoryError('The password was already used (in history)!')

        result = self.manager().set_password(self.identity, 'new', old_password='old')

        self.assertFalse(result.valid)
        self.assertEqual(result.messages, ['The password was already used (in history)!'])

    def test_unlinked_identity(self):
        result = self.manager().set_password(LocalIdentity(id=2, username='bob'), 'new')

        self.assertFalse(result.valid)
        self.assertEqual(result.messages, [ACCOUNT_NOT_SET_UP])
        self.gateway.reset_password.assert_not_called()

    def test_account_without_distinguished_name(self):
        self.query.get_user_by_guid.return_value = {'dn': USER_DN}

        result = self.manager().set_password(self.identity, 'new')

        self.assertEqual(result.messages, [ACCOUNT_NOT_SET_UP])

    def test_account_not_found(self):
        self.query.get_user_by_guid.return_value = None

        result = self.manager().set_password(self.identity, 'new')

        self.assertEqual(result.messages, [ACCOUNT_NOT_SET_UP])


class TestPasswordHooks(PasswordTestCase):

    def test_before_hook_vetoes(self):
        class MinimumLength(PasswordHooks):
            def before_set_password(self, identity, password, result):
                if len(password) < 8:
                    result.add_error('Password too short')

        result = self.manager(hooks=MinimumLength()).set_password(self.identity, 'short')

        self.assertFalse(result.valid)
        self.assertEqual(result.messages, ['Password too short'])
        self.query.get_user_by_guid.assert_not_called()
        self.gateway.reset_password.assert_not_called()

    def test_after_hook_runs_on_success_only(self):
        hooks = Mock(spec=PasswordHooks)

        self.manager(hooks=hooks).set_password(self.identity, 'N3w-secret')
        self.gateway.reset_password.side_effect = DirectoryError('Password does not meet complexity')
        self.manager(hooks=hooks).set_password(self.identity, 'N3w-secret')

        self.assertEqual(hooks.before_set_password.call_count, 2)
        self.assertEqual(hooks.after_set_password.call_count, 1)


class TestTemporaryPassword(unittest.TestCase):

    def test_shape(self):
        password = temporary_password()

        self.assertTrue(password.startswith('Aa1'))
        self.assertEqual(len(password), 24)

    def test_random(self):
        self.assertNotEqual(temporary_password(), temporary_password())


if __name__ == '__main__':
    unittest.main()
