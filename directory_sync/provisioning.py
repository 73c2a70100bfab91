"""Creation of directory users and groups for local identities and groups."""

import logging
from typing import Any, Dict

from directory_sync.config import ConfigurationError
from directory_sync.errors import DataIntegrityError, ValidationError
from directory_sync.gateway import DirectoryError
from directory_sync.query import QueryService
from directory_sync.store import GroupMapping, LocalGroup, LocalIdentity, LocalStore

logger = logging.getLogger(__name__)

# "Never expires" in Windows FILETIME
ACCOUNT_NEVER_EXPIRES = '9223372036854775807'
# NORMAL_ACCOUNT | DONT_EXPIRE_PASSWORD
NEW_USER_ACCOUNT_CONTROL = '66048'


def ensure_single_mapping(store: LocalStore, group: LocalGroup, dn: str) -> GroupMapping:
    """Leave exactly one mapping on the group, pointing at dn."""
    kept = None
    for mapping in store.get_mappings_for_group(group.id):
        if kept is None and mapping.dn and mapping.dn.lower() == dn.lower():
            kept = mapping
        else:
            logger.debug(f"Removing stale mapping {mapping.dn} from group {group.code}")
            store.delete_mapping(mapping)

    if kept is None:
        kept = store.add_mapping(GroupMapping(group_id=group.id, dn=dn))
    return kept


class Provisioner:
    """Creates directory objects and links them to their local counterparts."""

    def __init__(self, query: QueryService, store: LocalStore, config: Dict[str, Any]):
        self.query = query
        self.gateway = query.gateway
        self.store = store
        self.new_users_dn = config.get('new_users_dn')
        self.new_groups_dn = config.get('new_groups_dn')
        self.account_domain_name = config.get('account_domain_name')

    def create_directory_user(self, identity: LocalIdentity) -> LocalIdentity:
        """
        Create a directory account for the identity and link it by GUID.

        Raises:
            ValidationError: The identity has no username
            ConfigurationError: new_users_dn is not configured
            DirectoryError: The directory rejected the add
            DataIntegrityError: The new account could not be read back with a GUID
        """
        if not identity.username:
            raise ValidationError("Identity missing username. Cannot create directory user")
        if not self.new_users_dn:
            raise ConfigurationError("new_users_dn must be configured to create directory users")

        # Lower case keeps usernames differing only by case from colliding
        identity.username = identity.username.lower()
        dn = f"CN={identity.username},{self.new_users_dn}"

        try:
            self.gateway.add(dn, {
                'objectclass': 'user',
                'cn': identity.username,
                'accountexpires': ACCOUNT_NEVER_EXPIRES,
                'useraccountcontrol': NEW_USER_ACCOUNT_CONTROL,
                'userprincipalname': f"{identity.username}@{self.account_domain_name}",
            })
        except DirectoryError as e:
            raise DirectoryError(f"Directory synchronisation failure: {e}", e.server_message)

        user = self.query.get_user_by_username(identity.username)
        if not user or not user.get('objectguid'):
            raise DataIntegrityError("Directory synchronisation failure: user missing GUID")

        identity.link_guid(user['objectguid'])
        self.store.save_identity(identity)
        logger.info(f"Created directory user {dn}")
        return identity

    def create_directory_group(self, group: LocalGroup) -> LocalGroup:
        """
        Create a directory group for the local group, then map the group to it.

        The directory has no separate notion of code and title, so both become the title.
        """
        if not group.title:
            raise ValidationError("Group missing title. Cannot create directory group")
        if not self.new_groups_dn:
            raise ConfigurationError("new_groups_dn must be configured to create directory groups")

        group.code = group.title
        dn = f"CN={group.title},{self.new_groups_dn}"

        try:
            self.gateway.add(dn, {
                'objectclass': 'group',
                'cn': group.title,
                'name': group.title,
                'samaccountname': group.title,
                'description': group.description,
                'distinguishedname': dn,
            })
        except DirectoryError as e:
            raise DirectoryError(f"Directory group creation failure: {e}", e.server_message)

        data = self.query.get_group_by_dn(dn)
        if not data or not data.get('objectguid'):
            raise DataIntegrityError(
                "Directory group creation failure: group might have been created in the directory. GUID is missing."
            )

        group.guid = data['objectguid']
        group.dn = data['dn']
        self.store.save_group(group)
        self.ensure_single_mapping(group, group.dn)
        logger.info(f"Created directory group {group.dn}")
        return group

    def ensure_single_mapping(self, group: LocalGroup, dn: str) -> GroupMapping:
        return ensure_single_mapping(self.store, group, dn)
