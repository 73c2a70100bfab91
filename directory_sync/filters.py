"""
Search filter construction.

Filters are plain strings in the RFC 4515 grammar. Caller-supplied values are
always escaped with ldap3's escape_filter_chars before being embedded; GUIDs
go through their escaped byte form instead.

FilterHooks lets a deployment narrow or rewrite the enumeration filters (for
example to exclude disabled accounts) without subclassing the services.
"""

from ldap3.utils.conv import escape_filter_chars

from directory_sync.normalizer import str_to_hex_guid

IN_CHAIN_MATCHING_RULE = '1.2.840.113556.1.4.1941'

NODES_FILTER = '(|(objectClass=organizationalUnit)(objectClass=container)(objectClass=domain))'
GROUPS_FILTER = '(objectClass=group)'
USERS_FILTER = (
    '(&(objectClass=user)(!(objectClass=computer))(!(samaccountname=Guest))'
    '(!(samaccountname=Administrator))(!(samaccountname=krbtgt)))'
)


class FilterHooks:
    """
    Customization points for the enumeration filters.

    Each method receives the default filter and returns the filter to use.
    """

    def update_nodes_filter(self, search_filter: str) -> str:
        return search_filter

    def update_groups_filter(self, search_filter: str) -> str:
        return search_filter

    def update_nested_groups_filter(self, search_filter: str) -> str:
        return search_filter

    def update_users_filter(self, search_filter: str) -> str:
        return search_filter


def escape(value) -> str:
    return escape_filter_chars(str(value))


def nested_groups_filter(dn: str) -> str:
    """Groups transitively nested under dn, resolved server side."""
    return f'(&(objectClass=group)(memberOf:{IN_CHAIN_MATCHING_RULE}:={escape(dn)}))'


def direct_child_groups_filter(dn: str) -> str:
    return f'(&(objectClass=group)(memberOf={escape(dn)}))'


def group_by_guid_filter(guid: str) -> str:
    return f'(&(objectClass=group)(objectGUID={str_to_hex_guid(guid, escape=True)}))'


def group_by_dn_filter(dn: str) -> str:
    return f'(&(objectClass=group)(distinguishedname={escape(dn)}))'


def user_by_guid_filter(guid: str) -> str:
    return f'(&(objectClass=user)(objectGUID={str_to_hex_guid(guid, escape=True)}))'


def user_by_dn_filter(dn: str) -> str:
    return f'(&(objectClass=user)(distinguishedname={escape(dn)}))'


def user_by_email_filter(email: str) -> str:
    return f'(&(objectClass=user)(mail={escape(email)}))'


def user_by_samaccountname_filter(username: str) -> str:
    return f'(&(objectClass=user)(samaccountname={escape(username)}))'


def user_by_principal_filter(principal: str) -> str:
    return f'(&(objectClass=user)(userprincipalname={escape(principal)}))'
