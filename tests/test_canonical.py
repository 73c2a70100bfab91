#!/usr/bin/env python3
"""
Unit tests for username canonicalization.
"""

import os
import sys
import unittest

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.canonical import AccountForm, CanonicalizationResolver
from directory_sync.config import ConfigurationError
from directory_sync.errors import DataIntegrityError, ValidationError


def resolver(form=None, **overrides):
    config = {
        'account_canonical_form': form,
        'account_domain_name': 'example.com',
        'account_domain_name_short': 'EXAMPLE',
    }
    config.update(overrides)
    return CanonicalizationResolver(config)


class TestAccountForm(unittest.TestCase):

    def test_unset_means_principal(self):
        self.assertIs(AccountForm.from_config(None), AccountForm.PRINCIPAL)
        self.assertIs(resolver().account_form, AccountForm.PRINCIPAL)

    def test_from_config(self):
        self.assertIs(AccountForm.from_config('username'), AccountForm.USERNAME)
        self.assertIs(AccountForm.from_config('BACKSLASH'), AccountForm.BACKSLASH)

    def test_unknown_form(self):
        with self.assertRaises(ConfigurationError):
            AccountForm.from_config('email')


class TestCanonicalAccountName(unittest.TestCase):

    def test_all_input_shapes_to_principal(self):
        r = resolver('principal')
        for username in ('alice', 'alice@example.com', 'EXAMPLE\\alice', 'example.com\\alice'):
            with self.subTest(username=username):
                self.assertEqual(r.canonical_account_name(username), 'alice@example.com')

    def test_all_input_shapes_to_username(self):
        r = resolver('username')
        for username in ('alice', 'alice@example.com', 'EXAMPLE\\alice'):
            with self.subTest(username=username):
                self.assertEqual(r.canonical_account_name(username), 'alice')

    def test_backslash_form(self):
        self.assertEqual(resolver().canonical_account_name('alice@example.com', AccountForm.BACKSLASH),
                         'EXAMPLE\\alice')

    def test_round_trip_between_forms(self):
        """Test converting through every supported form lands back on the original."""
        r = resolver()
        for form in (AccountForm.USERNAME, AccountForm.PRINCIPAL, AccountForm.BACKSLASH):
            converted = r.canonical_account_name('alice@example.com', form)
            self.assertEqual(r.canonical_account_name(converted, AccountForm.PRINCIPAL), 'alice@example.com')

    def test_foreign_domain_rejected(self):
        with self.assertRaises(ValidationError):
            resolver().canonical_account_name('mallory@evil.example.org')

    def test_empty_username_rejected(self):
        with self.assertRaises(ValidationError):
            resolver().canonical_account_name('')

    def test_principal_without_domain_configured(self):
        r = resolver(account_domain_name=None, account_domain_name_short=None)
        with self.assertRaises(ConfigurationError):
            r.canonical_account_name('alice')

    def test_dn_form_not_canonicalizable(self):
        with self.assertRaises(ConfigurationError):
            resolver().canonical_account_name('alice', AccountForm.DN)


class TestUsernameFilter(unittest.TestCase):

    def test_username_form(self):
        self.assertEqual(resolver('username').username_filter('EXAMPLE\\alice'),
                         '(&(objectClass=user)(samaccountname=alice))')

    def test_principal_form(self):
        self.assertEqual(resolver('principal').username_filter('alice'),
                         '(&(objectClass=user)(userprincipalname=alice@example.com))')

    def test_backslash_and_dn_forms_unsupported(self):
        for form in ('backslash', 'dn'):
            with self.subTest(form=form):
                with self.assertRaises(ConfigurationError) as context:
                    resolver(form).username_filter('alice')
                self.assertIn(form, str(context.exception))


class TestGetCanonicalUsername(unittest.TestCase):

    record = {
        'dn': 'CN=alice,OU=Staff,DC=example,DC=com',
        'samaccountname': 'alice',
        'userprincipalname': 'alice@example.com',
    }

    def test_username_form(self):
        self.assertEqual(resolver('username').get_canonical_username(self.record), 'alice')

    def test_principal_form(self):
        self.assertEqual(resolver().get_canonical_username(self.record), 'alice@example.com')

    def test_missing_field(self):
        with self.assertRaises(DataIntegrityError) as context:
            resolver().get_canonical_username({'dn': 'CN=x'})
        self.assertIn('userprincipalname field missing', str(context.exception))

    def test_unsupported_form(self):
        with self.assertRaises(ConfigurationError):
            resolver('dn').get_canonical_username(self.record)


if __name__ == '__main__':
    unittest.main()
