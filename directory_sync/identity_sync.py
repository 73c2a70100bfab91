"""
Attribute synchronization of individual identities and groups.

Directory -> local: update_identity_from_directory, update_group_from_directory.
Local -> directory: update_directory_from_identity, delete_directory_identity.
"""

import hashlib
import logging
import posixpath
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from directory_sync.config import resolve_field_mappings
from directory_sync.errors import DataIntegrityError, ValidationError
from directory_sync.gateway import DirectoryError
from directory_sync.provisioning import ensure_single_mapping
from directory_sync.reconciler import MembershipReconciler
from directory_sync.store import BlobStore, LocalGroup, LocalIdentity

logger = logging.getLogger(__name__)

_LEADING_RDN = re.compile(r'^CN=(.+?),', re.IGNORECASE)


class IdentitySynchronizer:
    """Moves attribute data between directory records and local identities."""

    def __init__(self, reconciler: MembershipReconciler, config: Dict[str, Any],
                 blob_store: Optional[BlobStore] = None):
        """
        Args:
            reconciler: Membership reconciler (provides the query service and store)
            config: The 'directory' configuration section
            blob_store: Where imported photos are written; photos are skipped without one
        """
        self.reconciler = reconciler
        self.query = reconciler.query
        self.gateway = reconciler.gateway
        self.store = reconciler.store
        self.config = config
        self.blob_store = blob_store

        self.field_mappings = resolve_field_mappings(config.get('field_mappings'))
        self.photo_attributes = {a.lower() for a in config.get('photo_attributes') or []}
        self.thumbnail_path = config.get('thumbnail_path') or 'thumbnails'
        self.reset_missing_attributes = config.get('reset_missing_attributes', False)
        self.expired_flag_attribute = (config.get('expired_flag_attribute') or 'useraccountcontrol').lower()
        self.expired_flag_mask = config.get('expired_flag_mask', 2)
        self.account_domain_name = config.get('account_domain_name')

    def _is_photo(self, mapping) -> bool:
        return mapping.kind == 'photo' or mapping.attribute in self.photo_attributes

    def _is_expired(self, record: Dict[str, Any]) -> bool:
        if not self.expired_flag_mask:
            return False
        try:
            flags = int(record.get(self.expired_flag_attribute) or 0)
        except (TypeError, ValueError):
            logger.debug(f"Non-numeric {self.expired_flag_attribute} on {record.get('dn')}")
            return False
        return flags & self.expired_flag_mask == self.expired_flag_mask

    # Directory -> local

    def update_identity_from_directory(self, identity: LocalIdentity,
                                       record: Optional[Dict[str, Any]] = None,
                                       update_groups: bool = True) -> bool:
        """
        Refresh a linked identity from its directory account.

        Args:
            identity: Identity with a GUID
            record: Pre-fetched directory record; looked up by GUID when omitted
            update_groups: Also reconcile imported group memberships

        Returns:
            False when the identity is not linked or the account was not found
        """
        if not identity.guid:
            logger.debug(f"Cannot update identity {identity.id}, GUID not set")
            return False

        if record is None:
            record = self.query.get_user_by_guid(identity.guid)
            if not record:
                logger.debug(f"Could not retrieve data for user. GUID: {identity.guid}")
                return False

        identity.is_expired = self._is_expired(record)
        identity.last_synced = datetime.now(timezone.utc)

        for mapping in self.field_mappings:
            if mapping.attribute not in record:
                if self.reset_missing_attributes:
                    self._reset_field(identity, mapping)
                else:
                    logger.debug(
                        f"Attribute {mapping.attribute} is mapped but missing from directory data "
                        f"(GUID: {record.get('objectguid')}, identity {identity.id})"
                    )
                continue

            if self._is_photo(mapping):
                self._import_photo(identity, mapping, record)
            else:
                self._set_field(identity, mapping.field, record[mapping.attribute])

        self.store.save_identity(identity)

        if update_groups:
            self.reconciler.sync_identity_groups(record, identity)
        else:
            self.reconciler.ensure_default_group(identity)
        return True

    def _set_field(self, identity: LocalIdentity, name: str, value: Any):
        if name in ('username', 'first_name', 'surname', 'email'):
            setattr(identity, name, value)
        else:
            identity.fields[name] = value

    def _reset_field(self, identity: LocalIdentity, mapping):
        if self._is_photo(mapping):
            path = identity.fields.get(mapping.field)
            if path and self.blob_store is not None:
                self.blob_store.delete(path)
            identity.photo_hash = None
        self._set_field(identity, mapping.field, None)

    def _import_photo(self, identity: LocalIdentity, mapping, record: Dict[str, Any]) -> bool:
        """Store the photo payload unless the stored copy already has the same content."""
        if self.blob_store is None:
            logger.warning(f"Field {mapping.field} is mapped to photo attribute {mapping.attribute} "
                           f"but no blob store is configured")
            return False

        payload = record[mapping.attribute]
        if isinstance(payload, list):
            payload = payload[0] if payload else b''
        if isinstance(payload, str):
            payload = payload.encode('latin-1')

        if identity.photo_hash and identity.photo_hash == hashlib.sha1(payload).hexdigest():
            return True

        path = posixpath.join(self.thumbnail_path, f"{mapping.attribute}-{record.get('objectguid')}.jpg")
        identity.photo_hash = self.blob_store.write(path, payload, conflict='overwrite', visibility='public')
        identity.fields[mapping.field] = path
        logger.debug(f"Stored photo for {record.get('displayname') or identity.name} at {path}")
        return True

    def update_group_from_directory(self, group: LocalGroup, record: Dict[str, Any]) -> LocalGroup:
        """
        Refresh a local group from a directory group record.

        Code and title both come from samaccountname. The group keeps exactly
        one mapping, to its current DN.
        """
        group.code = record['samaccountname']
        group.title = record['samaccountname']
        if record.get('description'):
            group.description = record['description']
        if record.get('objectguid'):
            group.guid = record['objectguid']
        group.dn = record['dn']
        group.last_synced = datetime.now(timezone.utc)
        self.store.save_group(group)

        ensure_single_mapping(self.store, group, record['dn'])
        return group

    # Local -> directory

    def update_directory_from_identity(self, identity: LocalIdentity):
        """
        Write the identity's attributes back to its directory account.

        The account is renamed first when its cn no longer matches the username.
        """
        if not identity.guid:
            raise ValidationError("Identity missing GUID. Cannot update directory user")

        record = self.query.get_user_by_guid(identity.guid)
        if not record or not record.get('objectguid'):
            raise DataIntegrityError("Directory synchronisation failure: user missing GUID")

        if not identity.username:
            raise ValidationError("Identity missing username. Cannot update directory user")

        identity.username = identity.username.lower()
        dn = record.get('distinguishedname') or record['dn']

        if record.get('cn') != identity.username:
            new_dn = f"CN={identity.username},{_LEADING_RDN.sub('', dn, count=1)}"
            self.gateway.move(dn, new_dn)
            dn = new_dn

        full_name = f"{identity.first_name or ''} {identity.surname or ''}"
        attributes = {
            'displayname': full_name,
            'name': full_name,
            'userprincipalname': f"{identity.username}@{self.account_domain_name}",
        }
        for mapping in self.field_mappings:
            if self._is_photo(mapping):
                continue
            if mapping.field in ('username', 'first_name', 'surname', 'email'):
                attributes[mapping.attribute] = getattr(identity, mapping.field)
            else:
                attributes[mapping.attribute] = identity.fields.get(mapping.field)

        self.gateway.update(dn, attributes)
        logger.info(f"Updated directory account {dn} from identity {identity.id}")

    def delete_directory_identity(self, identity: LocalIdentity):
        """Delete the directory account linked to the identity."""
        if not identity.guid:
            raise ValidationError("Identity missing GUID. Cannot delete directory user")

        record = self.query.get_user_by_guid(identity.guid)
        if not record or not record.get('distinguishedname'):
            raise DataIntegrityError("Directory delete failure: could not find distinguishedname attribute")

        try:
            self.gateway.delete(record['distinguishedname'])
        except DirectoryError as e:
            raise DirectoryError(f"Directory delete user failed: {e}", e.server_message)
        logger.info(f"Deleted directory account {record['distinguishedname']}")
