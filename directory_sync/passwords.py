"""Setting directory passwords for local identities."""

import logging
import secrets
from dataclasses import dataclass, field
from typing import List, Optional

from directory_sync.gateway import DirectoryError
from directory_sync.query import QueryService
from directory_sync.store import LocalIdentity

logger = logging.getLogger(__name__)

ACCOUNT_NOT_SET_UP = "Your account hasn't been setup properly, please contact an administrator."

# Leading characters satisfy the directory's complexity rules
TEMPORARY_PASSWORD_PREFIX = 'Aa1'
TEMPORARY_PASSWORD_RANDOM_LENGTH = 21


@dataclass
class PasswordResult:
    valid: bool = True
    messages: List[str] = field(default_factory=list)

    def add_error(self, message: str):
        self.valid = False
        self.messages.append(message)


class PasswordHooks:
    """Extension points around set_password. Subclass and override as needed."""

    def before_set_password(self, identity: LocalIdentity, password: str, result: PasswordResult):
        """Add errors to result to veto the change."""
        pass

    def after_set_password(self, identity: LocalIdentity, password: str, result: PasswordResult):
        pass


def temporary_password() -> str:
    return TEMPORARY_PASSWORD_PREFIX + secrets.token_hex(TEMPORARY_PASSWORD_RANDOM_LENGTH)[:TEMPORARY_PASSWORD_RANDOM_LENGTH]


class PasswordManager:
    """
    Changes or resets an identity's directory password.

    Three paths:
      - old password supplied: a user change, subject to password history
      - password_history_workaround enabled: reset to a random temporary
        password, then change from it, so history still applies
      - otherwise: an administrative reset
    """

    def __init__(self, query: QueryService, config: dict, hooks: Optional[PasswordHooks] = None):
        self.query = query
        self.gateway = query.gateway
        self.hooks = hooks or PasswordHooks()
        self.password_history_workaround = config.get('password_history_workaround', False)

    def set_password(self, identity: LocalIdentity, password: str,
                     old_password: Optional[str] = None) -> PasswordResult:
        result = PasswordResult()

        self.hooks.before_set_password(identity, password, result)
        if not result.valid:
            return result

        if not identity.guid:
            logger.debug(f"Cannot set password for identity {identity.id}, GUID not set")
            result.add_error(ACCOUNT_NOT_SET_UP)
            return result

        user = self.query.get_user_by_guid(identity.guid)
        dn = (user or {}).get('distinguishedname')
        if not dn:
            result.add_error(ACCOUNT_NOT_SET_UP)
            return result

        if old_password:
            mode = 'change'
        elif self.password_history_workaround:
            mode = 'workaround'
        else:
            mode = 'reset'

        try:
            if mode == 'change':
                self.gateway.change_password(dn, password, old_password)
            elif mode == 'workaround':
                self._password_history_workaround(dn, password)
            else:
                self.gateway.reset_password(dn, password)
        except DirectoryError as e:
            logger.warning(f"Password {mode} for {dn} failed: {e}")
            result.add_error(str(e))
            return result

        self.hooks.after_set_password(identity, password, result)
        return result

    def _password_history_workaround(self, dn: str, password: str):
        temp_password = temporary_password()
        self.gateway.reset_password(dn, temp_password)
        self.gateway.change_password(dn, password, temp_password)
