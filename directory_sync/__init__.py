"""
Directory Sync - Synchronize users, groups and group memberships between an
Active Directory style LDAP directory and a local identity store.

This package provides the directory query layer, result caching, membership
reconciliation, provisioning and the directory password protocol.
"""

__version__ = "1.0.0"
__author__ = "Directory Sync Team"
