"""
Username canonicalization.

Users type their names in several shapes ("alice", "alice@example.com",
"EXAMPLE\\alice"); the directory indexes accounts by one of them. The
resolver converts a raw username to the configured canonical form, builds the
lookup filter for it, and extracts the canonical username back out of a
directory record.
"""

import enum
import logging
from typing import Any, Dict, Optional, Tuple

from directory_sync import filters
from directory_sync.config import ConfigurationError
from directory_sync.errors import DataIntegrityError, ValidationError

logger = logging.getLogger(__name__)


class AccountForm(enum.Enum):
    USERNAME = 'username'      # alice
    PRINCIPAL = 'principal'    # alice@example.com
    BACKSLASH = 'backslash'    # EXAMPLE\alice
    DN = 'dn'                  # CN=alice,OU=Users,DC=example,DC=com

    @classmethod
    def from_config(cls, value: Any) -> 'AccountForm':
        """Unset means principal style."""
        if value is None or value == '':
            return cls.PRINCIPAL
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ConfigurationError(f"Unknown account canonical form: {value}")


class CanonicalizationResolver:
    """Maps raw usernames to the directory's canonical account form and back."""

    def __init__(self, config: Dict[str, Any]):
        """
        Args:
            config: The 'directory' configuration section
        """
        self.account_form = AccountForm.from_config(config.get('account_canonical_form'))
        self.domain_name = config.get('account_domain_name')
        self.domain_name_short = config.get('account_domain_name_short')

    def split_account_name(self, username: str) -> Tuple[Optional[str], str]:
        """Split "DOMAIN\\name" or "name@domain" into (domain, name)."""
        if '\\' in username:
            domain, name = username.split('\\', 1)
            return domain, name
        if '@' in username:
            name, domain = username.rsplit('@', 1)
            return domain, name
        return None, username

    def _is_own_domain(self, domain: str) -> bool:
        known = [d.lower() for d in (self.domain_name, self.domain_name_short) if d]
        return not known or domain.lower() in known

    def canonical_account_name(self, username: str, form: Optional[AccountForm] = None) -> str:
        """
        Re-emit username in the given (default: configured) account form.

        Raises:
            ValidationError: the username is empty or names a foreign domain
            ConfigurationError: the form needs a domain name that is not configured
        """
        form = form or self.account_form
        if not username:
            raise ValidationError('Username is empty')

        domain, name = self.split_account_name(username.strip())
        if not name:
            raise ValidationError(f"Invalid account name syntax: {username}")
        if domain and not self._is_own_domain(domain):
            raise ValidationError(f"Binding domain is not an authority for user: {username}")

        if form is AccountForm.USERNAME:
            return name
        if form is AccountForm.PRINCIPAL:
            domain_name = self.domain_name or domain
            if not domain_name:
                raise ConfigurationError('account_domain_name must be configured for principal style usernames')
            return f'{name}@{domain_name}'
        if form is AccountForm.BACKSLASH:
            short_name = self.domain_name_short or domain
            if not short_name:
                raise ConfigurationError('account_domain_name_short must be configured for backslash style usernames')
            return f'{short_name}\\{name}'
        raise ConfigurationError(f"Cannot canonicalize '{username}' to the {form.value} account form")

    def username_filter(self, username: str) -> str:
        """Search filter locating the user account for a raw username."""
        if self.account_form is AccountForm.USERNAME:
            return filters.user_by_samaccountname_filter(self.canonical_account_name(username))
        if self.account_form is AccountForm.PRINCIPAL:
            return filters.user_by_principal_filter(self.canonical_account_name(username))
        raise ConfigurationError(
            f"The {self.account_form.value} account form is not supported for user lookup"
        )

    def get_canonical_username(self, record: Dict[str, Any]) -> str:
        """
        Extract the canonical username from a directory record.

        Raises:
            DataIntegrityError: the attribute holding the username is missing
            ConfigurationError: the configured form cannot be read from a record
        """
        if self.account_form is AccountForm.USERNAME:
            field = 'samaccountname'
        elif self.account_form is AccountForm.PRINCIPAL:
            field = 'userprincipalname'
        else:
            raise ConfigurationError(
                f"The {self.account_form.value} account form is not supported for canonical usernames"
            )

        if not record.get(field):
            raise DataIntegrityError(f"Could not extract canonical username: {field} field missing")
        return record[field]
