"""
Query service: directory lookups expressed in terms of users and groups.

Builds on the gateway by adding search-location fan-out, result merging and
indexing, result caching, and nested group resolution.
"""

import logging
from collections import deque
from typing import Any, Callable, Dict, Iterable, List, Optional

from directory_sync import filters
from directory_sync.cache import ResultCache, MemoryResultCache, NestedGroupCache, cache_key
from directory_sync.canonical import CanonicalizationResolver
from directory_sync.errors import DataIntegrityError
from directory_sync.gateway import DirectoryGateway, DirectoryError, SearchScope
from directory_sync.normalizer import as_list

logger = logging.getLogger(__name__)


class QueryService:
    """
    Read access to directory users, groups and containers.

    Search locations come from users_search_locations / groups_search_locations;
    an empty list means the gateway's default base DN.
    """

    def __init__(self, gateway: DirectoryGateway, config: Dict[str, Any],
                 cache: Optional[ResultCache] = None,
                 nested_cache: Optional[NestedGroupCache] = None,
                 hooks: Optional[filters.FilterHooks] = None,
                 resolver: Optional[CanonicalizationResolver] = None,
                 strict: bool = False):
        """
        Args:
            gateway: Connected (or lazily connecting) directory gateway
            config: The 'directory' configuration section
            cache: Result cache; an in-memory cache when omitted
            nested_cache: Pass-scoped memo for nested group lookups
            hooks: Filter customization
            resolver: Username canonicalization; built from config when omitted
            strict: Raise on the first failing search location instead of skipping it
        """
        self.gateway = gateway
        self.config = config
        self.cache = cache if cache is not None else MemoryResultCache()
        self.nested_cache = nested_cache if nested_cache is not None else NestedGroupCache()
        self.hooks = hooks or filters.FilterHooks()
        self.resolver = resolver or CanonicalizationResolver(config)
        self.strict = strict
        self.nested_group_strategy = config.get('nested_group_strategy', 'auto')

    @property
    def users_search_locations(self) -> List[Optional[str]]:
        return list(self.config.get('users_search_locations') or []) or [None]

    @property
    def groups_search_locations(self) -> List[Optional[str]]:
        return list(self.config.get('groups_search_locations') or []) or [None]

    def flush(self):
        """Drop all cached results; the administrative counterpart to TTL expiry."""
        self.cache.clear()
        self.nested_cache.reset()

    def _search_locations(self, locations: List[Optional[str]],
                          search: Callable[[Optional[str]], List[Dict[str, Any]]]):
        """
        Yield (location, records) for each location in order.

        A failing location is logged and skipped unless strict; if every
        location fails, the last error is raised.
        """
        last_error = None
        failures = 0
        for location in locations:
            try:
                records = search(location)
            except DirectoryError as e:
                if self.strict:
                    raise
                failures += 1
                last_error = e
                logger.warning(f"Search in {location or 'default base'} failed: {e}")
                continue
            yield location, records

        if failures and failures == len(locations):
            raise last_error

    def _collect(self, locations: List[Optional[str]],
                 search: Callable[[Optional[str]], List[Dict[str, Any]]],
                 index_by: str = 'dn') -> Dict[str, Dict[str, Any]]:
        results = {}
        for _, records in self._search_locations(locations, search):
            for record in records:
                key = record.get(index_by)
                if key is None:
                    logger.debug(f"Record {record.get('dn')} has no {index_by}, skipping")
                    continue
                results[key] = record
        return results

    def _first(self, locations: List[Optional[str]], search_filter: str,
               attributes: Optional[Iterable[str]]) -> Optional[Dict[str, Any]]:
        def search(location):
            return self.gateway.search(search_filter, location, SearchScope.SUBTREE, attributes)

        for _, records in self._search_locations(locations, search):
            if records:
                return records[0]
        return None

    # Containers and groups

    def get_nodes(self, cached: bool = True, attributes: Optional[List[str]] = None) -> Dict[str, Dict[str, Any]]:
        """All organizational units, containers and domains under the base DN, keyed by DN."""
        attributes = list(attributes or [])
        key = cache_key('nodes', *attributes)
        if cached and self.cache.has(key):
            return self.cache.get(key)

        search_filter = self.hooks.update_nodes_filter(filters.NODES_FILTER)
        results = {
            record['dn']: record
            for record in self.gateway.search(search_filter, None, SearchScope.SUBTREE, attributes)
        }
        self.cache.set(key, results)
        return results

    def get_groups(self, cached: bool = True, attributes: Optional[List[str]] = None,
                   index_by: str = 'dn') -> Dict[str, Dict[str, Any]]:
        """All groups in the configured group search locations."""
        attributes = list(attributes or [])
        locations = self.groups_search_locations
        key = cache_key('groups', *(locations + attributes + [index_by]))
        if cached and self.cache.has(key):
            return self.cache.get(key)

        search_filter = self.hooks.update_groups_filter(filters.GROUPS_FILTER)
        results = self._collect(
            locations,
            lambda location: self.gateway.search(search_filter, location, SearchScope.SUBTREE, attributes),
            index_by,
        )
        self.cache.set(key, results)
        return results

    def get_nested_groups(self, dn: str, attributes: Optional[List[str]] = None) -> Dict[str, Dict[str, Any]]:
        """
        Every group nested, at any depth, under the group dn.

        Memoized per sync pass in the nested group cache.
        """
        closure = self.nested_cache.get(dn)
        if closure is not None:
            return closure

        attributes = list(attributes or [])
        if self._use_in_chain():
            search_filter = self.hooks.update_nested_groups_filter(filters.nested_groups_filter(dn))
            closure = self._collect(
                self.groups_search_locations,
                lambda location: self.gateway.search(search_filter, location, SearchScope.SUBTREE, attributes),
            )
        else:
            closure = self._nested_groups_iterative(dn, attributes)

        self.nested_cache.set(dn, closure)
        return closure

    def _use_in_chain(self) -> bool:
        if self.nested_group_strategy == 'in_chain':
            return True
        if self.nested_group_strategy == 'iterative':
            return False
        return self.gateway.supports_in_chain_matching()

    def _nested_groups_iterative(self, dn: str, attributes: List[str]) -> Dict[str, Dict[str, Any]]:
        """Breadth-first walk over direct group-in-group membership, deduplicated by DN."""
        closure = {}
        seen = {dn.lower()}
        queue = deque([dn])
        while queue:
            parent = queue.popleft()
            search_filter = self.hooks.update_nested_groups_filter(filters.direct_child_groups_filter(parent))
            children = self._collect(
                self.groups_search_locations,
                lambda location: self.gateway.search(search_filter, location, SearchScope.SUBTREE, attributes),
            )
            for child_dn, record in children.items():
                if child_dn.lower() in seen:
                    continue
                seen.add(child_dn.lower())
                closure[child_dn] = record
                queue.append(child_dn)
        return closure

    def get_group_by_guid(self, guid: str, attributes: Optional[List[str]] = None) -> Optional[Dict[str, Any]]:
        return self._first(self.groups_search_locations, filters.group_by_guid_filter(guid), attributes)

    def get_group_by_dn(self, dn: str, attributes: Optional[List[str]] = None) -> Optional[Dict[str, Any]]:
        return self._first(self.groups_search_locations, filters.group_by_dn_filter(dn), attributes)

    def get_group_members(self, dn: str, require_complete: bool = False) -> List[str]:
        """
        DNs in the group's member attribute, always as a list.

        Large groups come back from Active Directory as a ranged
        ``member;range=0-1499`` attribute holding only the first slice.

        Args:
            dn: Group DN
            require_complete: Raise instead of returning a partial member list

        Raises:
            DataIntegrityError: the group is not found in any group search
                location, or the list is partial and require_complete is set
        """
        group = self.get_group_by_dn(dn, ['member'])
        if not group:
            raise DataIntegrityError(f"Group not found in the directory: {dn}")

        members = as_list(group.get('member'))
        ranged = [name for name in group if name.startswith('member;range=')]
        if ranged:
            if require_complete:
                raise DataIntegrityError(f"Only a range of the members of {dn} was returned ({ranged[0]})")
            logger.warning(f"Member list of {dn} is partial ({ranged[0]})")
            for name in ranged:
                members.extend(as_list(group[name]))
        return members

    # Users

    def get_users(self, attributes: Optional[List[str]] = None) -> Dict[str, Dict[str, Any]]:
        """
        All user accounts, excluding computers and built-in accounts, keyed by objectguid.

        Uses paged retrieval; user populations routinely exceed the server's
        single response size limit. Not cached.
        """
        attributes = list(attributes or [])
        if attributes and 'objectguid' not in [a.lower() for a in attributes]:
            attributes.append('objectguid')

        search_filter = self.hooks.update_users_filter(filters.USERS_FILTER)
        return self._collect(
            self.users_search_locations,
            lambda location: self.gateway.search_paged(search_filter, location, attributes),
            'objectguid',
        )

    def get_user_by_guid(self, guid: str, attributes: Optional[List[str]] = None) -> Optional[Dict[str, Any]]:
        return self._first(self.users_search_locations, filters.user_by_guid_filter(guid), attributes)

    def get_user_by_dn(self, dn: str, attributes: Optional[List[str]] = None) -> Optional[Dict[str, Any]]:
        return self._first(self.users_search_locations, filters.user_by_dn_filter(dn), attributes)

    def get_user_by_email(self, email: str, attributes: Optional[List[str]] = None) -> Optional[Dict[str, Any]]:
        return self._first(self.users_search_locations, filters.user_by_email_filter(email), attributes)

    def get_user_by_username(self, username: str, attributes: Optional[List[str]] = None) -> Optional[Dict[str, Any]]:
        return self._first(self.users_search_locations, self.resolver.username_filter(username), attributes)

    def get_username_by_email(self, email: str) -> Optional[str]:
        data = self.get_user_by_email(email)
        if not data:
            return None
        return self.resolver.get_canonical_username(data)
