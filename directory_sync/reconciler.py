"""
Group membership reconciliation between the directory and the local store.

Inbound keeps a local identity's imported group memberships in line with the
directory groups it belongs to, according to the configured group mappings.
Manually assigned memberships are never touched. Outbound pushes a local
identity's mapped group memberships back to the directory groups' member
attribute, leaving unmapped directory groups (Domain Users and friends) alone.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from directory_sync.errors import DataIntegrityError, MembershipSyncError, ValidationError
from directory_sync.gateway import DirectoryError
from directory_sync.normalizer import as_list
from directory_sync.query import QueryService
from directory_sync.store import LocalIdentity, LocalStore, MappingScope

logger = logging.getLogger(__name__)


@dataclass
class MembershipDelta:
    added: List[Any] = field(default_factory=list)
    removed: List[Any] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)


class MembershipReconciler:
    """Bidirectional diff-and-apply of group memberships."""

    def __init__(self, query: QueryService, store: LocalStore, config: Dict[str, Any]):
        """
        Args:
            query: Query service (its gateway is used for writes)
            store: Local identity store
            config: The 'directory' configuration section
        """
        self.query = query
        self.gateway = query.gateway
        self.store = store
        self.default_group = config.get('default_group')
        self.write_mode = config.get('membership_write_mode', 'incremental')

    @contextmanager
    def sync_pass(self):
        """
        Scope one synchronization pass.

        Nested group closures are recomputed for every pass and reused within it.
        """
        self.query.nested_cache.reset()
        logger.debug("Starting membership sync pass")
        try:
            yield self
        finally:
            logger.debug(f"Membership sync pass finished, {len(self.query.nested_cache)} closures resolved")

    # Directory -> local

    def ensure_default_group(self, identity: LocalIdentity) -> Optional[int]:
        """Put the identity in the configured default group; returns its id when it exists."""
        if not self.default_group:
            return None

        group = self.store.get_group_by_code(self.default_group)
        if group is None:
            logger.debug(f"default_group misconfiguration: there is no group with code '{self.default_group}'")
            return None

        self._add_imported(identity, group.id)
        return group.id

    def _add_imported(self, identity: LocalIdentity, group_id: int) -> bool:
        # An existing manual membership keeps its provenance
        if group_id in self.store.get_memberships(identity.id):
            return False
        self.store.add_membership(identity.id, group_id, imported=True)
        return True

    def _matches(self, mapping, group_dn: str) -> bool:
        if mapping.dn.lower() == group_dn.lower():
            return True
        if mapping.scope is not MappingScope.SUBTREE:
            return False
        nested = self.query.get_nested_groups(mapping.dn, ['dn'])
        return group_dn.lower() in {dn.lower() for dn in nested}

    def sync_identity_groups(self, record: Dict[str, Any], identity: LocalIdentity,
                             keep_group_ids: Iterable[int] = ()) -> MembershipDelta:
        """
        Bring the identity's imported memberships in line with the directory record.

        Args:
            record: Freshly fetched directory user record
            identity: Saved local identity (must have an id)
            keep_group_ids: Groups already known to be correct for this identity

        Returns:
            Which group ids were added and removed
        """
        if identity.id is None:
            raise ValidationError("Identity must be saved before its groups can be synchronized")

        delta = MembershipDelta()
        retain: Set[int] = set(keep_group_ids)

        default_group_id = self.ensure_default_group(identity)
        if default_group_id is not None:
            retain.add(default_group_id)

        mappings = self.store.get_group_mappings()
        for group_dn in as_list(record.get('memberof')):
            for mapping in mappings:
                if not mapping.dn:
                    logger.debug(f"Group mapping {mapping.id} is missing a DN, skipping")
                    continue
                if not self._matches(mapping, group_dn):
                    continue
                if self.store.get_group(mapping.group_id) is None:
                    logger.debug(f"Group mapping {mapping.id} points at missing group {mapping.group_id}")
                    continue

                retain.add(mapping.group_id)
                if self._add_imported(identity, mapping.group_id):
                    delta.added.append(mapping.group_id)

        for group_id, imported in self.store.get_memberships(identity.id).items():
            if imported and group_id not in retain:
                self.store.remove_membership(identity.id, group_id)
                delta.removed.append(group_id)

        if delta.changed:
            logger.info(f"Identity {identity.id}: added to groups {delta.added}, removed from {delta.removed}")
        return delta

    # Local -> directory

    def sync_directory_groups(self, identity: LocalIdentity) -> MembershipDelta:
        """
        Make the directory group membership of the identity's account match its
        mapped local groups.

        Each group is written independently; failures are collected and raised
        together as MembershipSyncError after every group has been processed.
        """
        if not identity.guid:
            raise ValidationError("Identity missing GUID. Cannot update directory groups")

        user = self.query.get_user_by_guid(identity.guid)
        if not user or not user.get('objectguid'):
            raise DataIntegrityError("Directory update failure: user missing GUID")
        user_dn = user.get('distinguishedname') or user['dn']

        add_dns = [group.dn for group in self.store.get_groups_for_identity(identity.id)
                   if group.guid and group.dn]
        wanted = {dn.lower() for dn in add_dns}

        remove_dns = []
        for group_dn in as_list(user.get('memberof')):
            if group_dn.lower() in wanted:
                continue
            # Only groups we manage locally may lose members
            if self.store.get_group_by_dn(group_dn) is None:
                continue
            remove_dns.append(group_dn)

        delta = MembershipDelta()
        failures: List[Tuple[str, Exception]] = []

        for group_dn in add_dns:
            try:
                if self.add_user_to_group(user_dn, group_dn):
                    delta.added.append(group_dn)
            except (DirectoryError, DataIntegrityError) as e:
                logger.error(f"Failed to add {user_dn} to {group_dn}: {e}")
                failures.append((group_dn, e))

        for group_dn in remove_dns:
            try:
                if self.remove_user_from_group(user_dn, group_dn):
                    delta.removed.append(group_dn)
            except (DirectoryError, DataIntegrityError) as e:
                logger.error(f"Failed to remove {user_dn} from {group_dn}: {e}")
                failures.append((group_dn, e))

        if failures:
            raise MembershipSyncError(failures)
        return delta

    def add_user_to_group(self, user_dn: str, group_dn: str) -> bool:
        """
        Returns False when the user already is a member.

        Raises:
            DataIntegrityError: the group cannot be read (see QueryService.get_group_members)
        """
        members = self._current_members(group_dn)
        if user_dn.lower() in {m.lower() for m in members}:
            return False

        if self.write_mode == 'replace':
            self.gateway.update(group_dn, {'member': members + [user_dn]})
        else:
            self.gateway.add_attribute_values(group_dn, 'member', [user_dn])
        return True

    def remove_user_from_group(self, user_dn: str, group_dn: str) -> bool:
        """Returns False when the user was not a member. Raises like add_user_to_group."""
        members = self._current_members(group_dn)
        remaining = [m for m in members if m.lower() != user_dn.lower()]
        if len(remaining) == len(members):
            return False

        if self.write_mode == 'replace':
            self.gateway.update(group_dn, {'member': remaining})
        else:
            self.gateway.remove_attribute_values(group_dn, 'member', [user_dn])
        return True

    def _current_members(self, group_dn: str) -> List[str]:
        # replace writes need the full member list
        return self.query.get_group_members(group_dn, require_complete=self.write_mode == 'replace')
