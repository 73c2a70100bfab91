"""
Boundary to the local identity store and the blob store.

The sync services only talk to local persistence through LocalStore and
BlobStore. InMemoryStore and FileBlobStore are reference implementations;
applications plug in their own (ORM backed, object storage backed, ...).
"""

import os
import enum
import hashlib
import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class MappingScope(enum.Enum):
    SINGLE = 'Single'
    SUBTREE = 'Subtree'


@dataclass
class LocalIdentity:
    id: Optional[int] = None
    username: Optional[str] = None
    first_name: Optional[str] = None
    surname: Optional[str] = None
    email: Optional[str] = None
    guid: Optional[str] = None
    last_synced: Optional[datetime] = None
    is_expired: bool = False
    fields: Dict[str, Any] = field(default_factory=dict)
    photo_hash: Optional[str] = None

    @property
    def name(self) -> str:
        return ' '.join(part for part in (self.first_name, self.surname) if part)

    def link_guid(self, guid: str):
        """Link to a directory object. A linked identity is never re-pointed."""
        if self.guid and self.guid != guid:
            raise ValueError(f"Identity {self.id} is already linked to {self.guid}")
        self.guid = guid


@dataclass
class LocalGroup:
    id: Optional[int] = None
    code: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    guid: Optional[str] = None
    dn: Optional[str] = None
    last_synced: Optional[datetime] = None


@dataclass
class GroupMapping:
    group_id: Optional[int]
    dn: Optional[str]
    scope: MappingScope = MappingScope.SUBTREE
    id: Optional[int] = None


class LocalStore(ABC):
    """Persistence for identities, groups, mappings and memberships."""

    @abstractmethod
    def get_identity(self, identity_id: int) -> Optional[LocalIdentity]:
        pass

    @abstractmethod
    def get_identity_by_guid(self, guid: str) -> Optional[LocalIdentity]:
        pass

    @abstractmethod
    def save_identity(self, identity: LocalIdentity) -> LocalIdentity:
        """Insert or update; assigns an id to new identities."""
        pass

    @abstractmethod
    def get_group(self, group_id: int) -> Optional[LocalGroup]:
        pass

    @abstractmethod
    def get_group_by_code(self, code: str) -> Optional[LocalGroup]:
        pass

    @abstractmethod
    def get_group_by_dn(self, dn: str) -> Optional[LocalGroup]:
        pass

    @abstractmethod
    def save_group(self, group: LocalGroup) -> LocalGroup:
        pass

    @abstractmethod
    def get_group_mappings(self) -> List[GroupMapping]:
        pass

    @abstractmethod
    def get_mappings_for_group(self, group_id: int) -> List[GroupMapping]:
        pass

    @abstractmethod
    def add_mapping(self, mapping: GroupMapping) -> GroupMapping:
        pass

    @abstractmethod
    def delete_mapping(self, mapping: GroupMapping) -> None:
        pass

    @abstractmethod
    def get_memberships(self, identity_id: int) -> Dict[int, bool]:
        """Group id -> imported flag for every group the identity belongs to."""
        pass

    @abstractmethod
    def add_membership(self, identity_id: int, group_id: int, imported: bool) -> None:
        pass

    @abstractmethod
    def remove_membership(self, identity_id: int, group_id: int) -> None:
        pass

    def get_groups_for_identity(self, identity_id: int) -> List[LocalGroup]:
        groups = (self.get_group(group_id) for group_id in self.get_memberships(identity_id))
        return [group for group in groups if group is not None]


class InMemoryStore(LocalStore):
    """Dictionary backed LocalStore."""

    def __init__(self):
        self.identities: Dict[int, LocalIdentity] = {}
        self.groups: Dict[int, LocalGroup] = {}
        self.mappings: Dict[int, GroupMapping] = {}
        self.memberships: Dict[int, Dict[int, bool]] = {}
        self._ids = itertools.count(1)

    def get_identity(self, identity_id):
        return self.identities.get(identity_id)

    def get_identity_by_guid(self, guid):
        return next((i for i in self.identities.values() if i.guid == guid), None)

    def save_identity(self, identity):
        if identity.id is None:
            identity.id = next(self._ids)
        self.identities[identity.id] = identity
        return identity

    def get_group(self, group_id):
        return self.groups.get(group_id)

    def get_group_by_code(self, code):
        return next((g for g in self.groups.values() if g.code == code), None)

    def get_group_by_dn(self, dn):
        return next((g for g in self.groups.values() if g.dn and g.dn.lower() == dn.lower()), None)

    def save_group(self, group):
        if group.id is None:
            group.id = next(self._ids)
        self.groups[group.id] = group
        return group

    def get_group_mappings(self):
        return list(self.mappings.values())

    def get_mappings_for_group(self, group_id):
        return [m for m in self.mappings.values() if m.group_id == group_id]

    def add_mapping(self, mapping):
        if mapping.id is None:
            mapping.id = next(self._ids)
        self.mappings[mapping.id] = mapping
        return mapping

    def delete_mapping(self, mapping):
        self.mappings.pop(mapping.id, None)

    def get_memberships(self, identity_id):
        return dict(self.memberships.get(identity_id, {}))

    def add_membership(self, identity_id, group_id, imported):
        self.memberships.setdefault(identity_id, {})[group_id] = imported

    def remove_membership(self, identity_id, group_id):
        self.memberships.get(identity_id, {}).pop(group_id, None)


class BlobStore(ABC):
    """Binary payload storage, used for profile photos."""

    @abstractmethod
    def write(self, path: str, payload: bytes, conflict: str = 'overwrite',
              visibility: str = 'public') -> str:
        """Store payload at path and return its sha1 hex digest."""
        pass

    @abstractmethod
    def delete(self, path: str) -> None:
        pass


class FileBlobStore(BlobStore):
    """BlobStore writing plain files below a root directory."""

    def __init__(self, root: str):
        self.root = root

    def _full_path(self, path: str) -> str:
        full_path = os.path.abspath(os.path.join(self.root, path))
        if not full_path.startswith(os.path.abspath(self.root) + os.sep):
            raise ValueError(f"Path escapes blob store root: {path}")
        return full_path

    def write(self, path, payload, conflict='overwrite', visibility='public'):
        full_path = self._full_path(path)
        if os.path.exists(full_path) and conflict != 'overwrite':
            raise FileExistsError(full_path)
        os.makedirs(os.path.dirname(full_path), exist_ok=True)
        with open(full_path, 'wb') as f:
            f.write(payload)
        if visibility == 'public':
            os.chmod(full_path, 0o644)
        else:
            os.chmod(full_path, 0o600)
        logger.debug(f"Wrote {len(payload)} bytes to {full_path}")
        return hashlib.sha1(payload).hexdigest()

    def delete(self, path):
        full_path = self._full_path(path)
        if os.path.exists(full_path):
            os.remove(full_path)
