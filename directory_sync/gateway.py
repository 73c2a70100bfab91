"""
Directory gateway: low-level protocol operations against an Active
Directory style LDAP server.

This module provides connection management and the basic operations (search,
paged search, bind authentication, add, modify, delete, move and the password
protocol) that the query, reconciliation and provisioning services build on.
"""

import enum
import ssl
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional, Iterable, Tuple

from ldap3 import (
    Server,
    Connection,
    Tls,
    ALL,
    ALL_ATTRIBUTES,
    NO_ATTRIBUTES,
    BASE,
    LEVEL,
    SUBTREE,
    MODIFY_ADD,
    MODIFY_DELETE,
    MODIFY_REPLACE,
)
from ldap3.core.exceptions import LDAPException
from ldap3.utils.dn import to_dn as split_dn

from directory_sync.canonical import AccountForm, CanonicalizationResolver
from directory_sync.config import ConfigurationError
from directory_sync.errors import ValidationError
from directory_sync.normalizer import normalize_records, as_list
from directory_sync.retry import (
    retry_call,
    create_retry_callback,
    is_retryable_error,
    MaxRetriesExceeded,
)
from directory_sync.logging_setup import security_logger

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'
ACTIVE_DIRECTORY_CAPABILITY_OID = '1.2.840.113556.1.4.800'

# Must stay below the server's MaxPageSize (1000 on a stock Active Directory)
PAGE_SIZE = 500
DEFAULT_SERVER_PAGE_SIZE = 1000

PASSWORD_ATTRIBUTE = 'unicodePwd'
DEFAULT_PASSWORD_ERROR = "We couldn't change your password, please contact an administrator."

LDAP_INVALID_CREDENTIALS = 49
LDAP_NO_SUCH_OBJECT = 32
LDAP_SIZE_LIMIT_EXCEEDED = 4


class DirectoryError(Exception):
    """Raised when the directory rejects an operation."""

    def __init__(self, message: str, server_message: Optional[str] = None):
        super().__init__(message)
        self.server_message = server_message


ProtocolError = DirectoryError


class DirectoryConnectionError(DirectoryError):
    """Raised when the directory cannot be reached or the service bind fails."""
    pass


class SearchScope(enum.Enum):
    BASE = BASE
    ONE_LEVEL = LEVEL
    SUBTREE = SUBTREE


class AuthResultCode(enum.IntEnum):
    SUCCESS = 1
    FAILURE = 0
    IDENTITY_NOT_FOUND = -1
    IDENTITY_AMBIGUOUS = -2
    CREDENTIAL_INVALID = -3
    UNCATEGORIZED = -4


@dataclass
class AuthenticationResult:
    """Outcome of a bind. messages[0] is safe to show to the user, the rest are diagnostics."""
    code: AuthResultCode
    identity: str
    messages: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.code == AuthResultCode.SUCCESS


class PagedCursor:
    """
    Server-side pagination state for one connection.

    Only one paged search may use the cursor at a time, and it must be reset to
    the server default once the search is over.
    """

    def __init__(self, default_page_size: int = DEFAULT_SERVER_PAGE_SIZE):
        self.default_page_size = default_page_size
        self.page_size = default_page_size
        self.cookie = None
        self.in_flight = False

    def start(self, page_size: int):
        if self.in_flight:
            raise DirectoryError("A paged search is already in progress on this connection")
        self.page_size = page_size
        self.cookie = None
        self.in_flight = True

    def reset(self):
        self.page_size = self.default_page_size
        self.cookie = None
        self.in_flight = False


def requested_attributes(attributes: Optional[Iterable[str]]) -> Any:
    """
    Attribute list for an ldap3 search. Empty means all attributes.

    dn is always part of an entry, so it is not requested; a request for dn
    alone asks for no attributes ('1.1').
    """
    if not attributes:
        return ALL_ATTRIBUTES
    names = [name for name in attributes if name.lower() != 'dn']
    return names or [NO_ATTRIBUTES]


def encode_password(password: str) -> bytes:
    """unicodePwd takes the quote-wrapped password encoded as UTF-16LE."""
    return f'"{password}"'.encode('utf-16-le')


def extract_password_error(error: Optional[str]) -> str:
    """
    Reduce a server diagnostic to the part worth showing a user, e.g.
    "0000052D: Constraint violation - check_password_restrictions: the password
    was already used (in history)!" becomes "The password was already used
    (in history)!".
    """
    if not error:
        return DEFAULT_PASSWORD_ERROR
    message = error.rsplit(':', 1)[-1].strip()
    if not message:
        return DEFAULT_PASSWORD_ERROR
    return message[0].upper() + message[1:]


class DirectoryGateway:
    """
    Protocol-level access to the directory over a single ldap3 connection.

    All methods raise DirectoryError when the server rejects the request,
    except authenticate(), which reports failures through its result.
    """

    def __init__(self, config: Dict[str, Any], error_handling: Optional[Dict[str, Any]] = None):
        """
        Args:
            config: The 'directory' configuration section
            error_handling: The 'error_handling' section (retry settings)
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.base_dn = config.get('base_dn') or ''

        use_ssl = config.get('use_ssl')
        self.use_ssl = self.server_url.lower().startswith('ldaps://') if use_ssl is None else use_ssl
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.supports_batch_modify = config.get('batch_password_change', True)
        self.resolver = CanonicalizationResolver(config)

        error_config = error_handling or {}
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None
        self.cursor = PagedCursor()

    # Connection management

    def connect(self) -> bool:
        """
        Open the connection and bind as the service account, retrying transient failures.

        Raises:
            DirectoryConnectionError: If the connection fails after all retries
        """
        if self.connection is not None:
            return True

        self.server = self._create_server()
        try:
            self.connection = retry_call(
                self._open_and_bind,
                max_attempts=self.max_retries,
                delay=self.retry_wait,
                exceptions=(LDAPException, DirectoryConnectionError),
                on_retry=create_retry_callback(f"Bind to {self.server_url}"),
                retry_if=is_retryable_error,
            )
        except MaxRetriesExceeded as e:
            raise DirectoryConnectionError(
                f"Failed to connect to directory after {e.attempts} attempts: {e.last_exception}"
            )
        except LDAPException as e:
            raise DirectoryConnectionError(f"Failed to connect to directory: {e}", str(e))

        logger.info(f"Connected and bound to directory server {self.server_url}")
        return True

    def _create_server(self) -> Server:
        tls = None
        if self.use_ssl or self.start_tls:
            tls_config = {'validate': ssl.CERT_REQUIRED if self.verify_ssl else ssl.CERT_NONE}
            if self.ca_cert_file:
                tls_config['ca_certs_file'] = self.ca_cert_file
            if not self.verify_ssl:
                logger.warning("SSL certificate verification disabled")
            tls = Tls(**tls_config)

        return Server(
            self.server_url,
            use_ssl=self.use_ssl,
            tls=tls,
            get_info=ALL,
            connect_timeout=self.connection_timeout,
        )

    def _open_and_bind(self) -> Connection:
        connection = Connection(
            self.server,
            user=self.bind_dn,
            password=self.bind_password,
            auto_bind=False,
            receive_timeout=self.receive_timeout,
        )
        connection.open()
        if self.start_tls and not self.use_ssl:
            if not connection.start_tls():
                connection.unbind()
                raise DirectoryConnectionError(f"Failed to start TLS: {connection.result}")
        if not connection.bind():
            result = connection.result or {}
            connection.unbind()
            raise DirectoryConnectionError(
                f"Service bind failed: {result.get('description')}", result.get('message')
            )
        return connection

    def disconnect(self):
        """Close the connection."""
        if self.connection is not None:
            try:
                self.connection.unbind()
                logger.debug("Directory connection closed")
            except LDAPException as e:
                logger.warning(f"Error closing directory connection: {e}")
            finally:
                self.connection = None
                self.cursor.reset()

    def _require_connection(self) -> Connection:
        if self.connection is None:
            self.connect()
        return self.connection

    def _last_error(self) -> Optional[str]:
        if self.connection is None:
            return None
        result = self.connection.result or {}
        return result.get('message') or getattr(self.connection, 'last_error', None) or None

    def _failure(self, operation: str, dn: str = '') -> DirectoryError:
        result = (self.connection.result if self.connection is not None else None) or {}
        server_message = result.get('message') or result.get('description') or ''
        target = f" {dn}" if dn else ''
        return DirectoryError(
            f"{operation}{target} failed: {result.get('description', 'unknown error')} {server_message}".strip(),
            server_message,
        )

    def resolve_base_dn(self, base_dn: Optional[str] = None) -> str:
        """Explicit base, else configured base, else the DC part of the bind DN, else the first naming context."""
        if base_dn:
            return base_dn
        if self.base_dn:
            return self.base_dn

        dc_parts = [part.strip() for part in self.bind_dn.split(',') if part.strip().upper().startswith('DC=')]
        if dc_parts:
            return ','.join(dc_parts)

        if self.server is not None and self.server.info and self.server.info.naming_contexts:
            return self.server.info.naming_contexts[0]

        raise DirectoryError("Cannot determine the directory base DN")

    # Search

    def search(self, search_filter: str, base_dn: Optional[str] = None,
               scope: SearchScope = SearchScope.SUBTREE,
               attributes: Optional[Iterable[str]] = None,
               sort: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Run a single (unpaged) search and return normalized records.

        Args:
            search_filter: Filter string, e.g. (objectClass=user)
            base_dn: Where to search from; defaults to the configured base
            scope: How far below base_dn the search descends
            attributes: Attributes to return; empty means all
            sort: Attribute to sort the records by (client side)
        """
        if self.cursor.in_flight:
            raise DirectoryError("Cannot search while a paged search is in progress on this connection")

        connection = self._require_connection()
        search_base = self.resolve_base_dn(base_dn)
        logger.debug(f"Searching {search_base} with filter {search_filter}")

        try:
            connection.search(
                search_base=search_base,
                search_filter=search_filter,
                search_scope=scope.value,
                attributes=requested_attributes(attributes),
            )
        except LDAPException as e:
            raise DirectoryError(f"Search failed: {e}", str(e))

        # noSuchObject on the base simply means nothing matched there
        result_code = (connection.result or {}).get('result', 0)
        if result_code not in (0, LDAP_NO_SUCH_OBJECT, LDAP_SIZE_LIMIT_EXCEEDED):
            raise self._failure('Search', search_base)

        records = normalize_records(connection.response or [])
        if result_code == LDAP_SIZE_LIMIT_EXCEEDED:
            logger.warning(f"Size limit exceeded searching {search_base} with {search_filter}: "
                           f"only {len(records)} records returned, use a paged search for complete results")
        if sort:
            records.sort(key=lambda record: str(record.get(sort.lower(), '')).lower())
        return records

    def search_paged(self, search_filter: str, base_dn: Optional[str] = None,
                     attributes: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        """
        Retrieve every matching record using the paged-results control.

        The cursor is reset to the server default page size before returning,
        whether the search completed or failed.
        """
        connection = self._require_connection()
        search_base = self.resolve_base_dn(base_dn)
        requested = requested_attributes(attributes)

        self.cursor.start(PAGE_SIZE)
        records = []
        page_count = 0
        try:
            while True:
                try:
                    connection.search(
                        search_base=search_base,
                        search_filter=search_filter,
                        search_scope=SUBTREE,
                        attributes=requested,
                        paged_size=self.cursor.page_size,
                        paged_cookie=self.cursor.cookie,
                    )
                except LDAPException as e:
                    raise DirectoryError(f"Paged search failed: {e}", str(e))

                result = connection.result or {}
                if result.get('result', 0) not in (0, LDAP_NO_SUCH_OBJECT):
                    raise self._failure('Paged search', search_base)

                page_count += 1
                page = normalize_records(connection.response or [])
                records.extend(page)
                logger.debug(f"Page {page_count}: retrieved {len(page)} records")

                self.cursor.cookie = self._paged_cookie(result)
                if not self.cursor.cookie:
                    break

            logger.info(f"Retrieved {len(records)} records across {page_count} pages")
            return records
        finally:
            if self.cursor.cookie:
                self._abandon_paged_search(search_base, search_filter)
            self.cursor.reset()

    @staticmethod
    def _paged_cookie(result: Dict[str, Any]) -> Optional[bytes]:
        controls = result.get('controls') or {}
        control = controls.get(PAGED_RESULTS_OID) or {}
        return (control.get('value') or {}).get('cookie') or None

    def _abandon_paged_search(self, search_base: str, search_filter: str):
        """A page size of 0 with the live cookie tells the server to drop the result set."""
        try:
            self.connection.search(
                search_base=search_base,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=['1.1'],
                paged_size=0,
                paged_cookie=self.cursor.cookie,
            )
        except LDAPException as e:
            logger.warning(f"Could not abandon paged search on {search_base}: {e}")

    # Authentication

    def authenticate(self, username: str, password: str) -> AuthenticationResult:
        """
        Bind with the given credentials on a separate connection.

        The username is first rewritten to the configured account form and
        that form is reported as the result's identity. DN style accounts are
        bound as typed. Never raises; the outcome is encoded in the result code.
        """
        if not username:
            return AuthenticationResult(AuthResultCode.IDENTITY_NOT_FOUND, username,
                                        ['A username is required'])
        if not password:
            # An empty simple bind is an anonymous bind, which would "succeed"
            return AuthenticationResult(AuthResultCode.CREDENTIAL_INVALID, username,
                                        ['A password is required'])

        if self.resolver.account_form is not AccountForm.DN:
            try:
                username = self.resolver.canonical_account_name(username)
            except (ValidationError, ConfigurationError) as e:
                return AuthenticationResult(AuthResultCode.FAILURE, username,
                                            ['Authentication failed', str(e)])

        connection = None
        try:
            if self.server is None:
                self.server = self._create_server()
            connection = Connection(
                self.server,
                user=username,
                password=password,
                auto_bind=False,
                receive_timeout=self.receive_timeout,
            )
            connection.open()
            if self.start_tls and not self.use_ssl:
                connection.start_tls()
            if connection.bind():
                return AuthenticationResult(AuthResultCode.SUCCESS, username,
                                            [f'{username} authentication successful'])

            result = connection.result or {}
            code = result.get('result')
            diagnostic = f"{code} ({result.get('description')}; {result.get('message')}): {username}"
            if code == LDAP_INVALID_CREDENTIALS:
                return AuthenticationResult(AuthResultCode.CREDENTIAL_INVALID, username,
                                            ['Invalid credentials', diagnostic])
            if code == LDAP_NO_SUCH_OBJECT:
                return AuthenticationResult(AuthResultCode.IDENTITY_NOT_FOUND, username,
                                            ['Account not found', diagnostic])
            return AuthenticationResult(AuthResultCode.FAILURE, username,
                                        ['Authentication failed', diagnostic])
        except LDAPException as e:
            logger.warning(f"Authentication for {username} could not reach the directory: {e}")
            return AuthenticationResult(AuthResultCode.UNCATEGORIZED, username,
                                        ['Authentication failed', str(e)])
        finally:
            if connection is not None:
                try:
                    connection.unbind()
                except LDAPException:
                    logger.debug(f"Ignoring unbind failure after authenticating {username}")

    # Writes

    def add(self, dn: str, attributes: Dict[str, Any]):
        """Add an object. Empty attribute values are left out, the directory rejects them."""
        connection = self._require_connection()
        values = {name: value for name, value in attributes.items() if value not in (None, '', [])}
        try:
            succeeded = connection.add(dn, attributes=values)
        except LDAPException as e:
            raise DirectoryError(f"Add {dn} failed: {e}", str(e))
        security_logger.log_directory_write('add', dn, succeeded)
        if not succeeded:
            raise self._failure('Add', dn)

    def update(self, dn: str, attributes: Dict[str, Any]):
        """Replace the given attributes; a None or empty value removes the attribute."""
        changes = {name: [(MODIFY_REPLACE, as_list(value))] for name, value in attributes.items()}
        self._modify(dn, changes, 'update')

    def add_attribute_values(self, dn: str, attribute: str, values: List[Any]):
        self._modify(dn, {attribute: [(MODIFY_ADD, list(values))]}, 'add values')

    def remove_attribute_values(self, dn: str, attribute: str, values: List[Any]):
        self._modify(dn, {attribute: [(MODIFY_DELETE, list(values))]}, 'remove values')

    def modify_batch(self, dn: str, modifications: List[Tuple[str, str, List[Any]]]):
        """
        Apply an ordered list of (attribute, operation, values) in one modify request.

        The server applies the whole request atomically.
        """
        changes = {}
        for attribute, operation, values in modifications:
            changes.setdefault(attribute, []).append((operation, list(values)))
        self._modify(dn, changes, 'batch modify')

    def _modify(self, dn: str, changes: Dict[str, Any], operation: str):
        connection = self._require_connection()
        try:
            succeeded = connection.modify(dn, changes)
        except LDAPException as e:
            raise DirectoryError(f"Modify {dn} failed: {e}", str(e))
        security_logger.log_directory_write(operation, dn, succeeded, ', '.join(changes))
        if not succeeded:
            raise self._failure('Modify', dn)

    def delete(self, dn: str, recursive: bool = False):
        """Delete an object; with recursive=True its children are deleted first."""
        connection = self._require_connection()
        if recursive:
            for child in self.search('(objectClass=*)', dn, SearchScope.ONE_LEVEL, ['1.1']):
                self.delete(child['dn'], recursive=True)
        try:
            succeeded = connection.delete(dn)
        except LDAPException as e:
            raise DirectoryError(f"Delete {dn} failed: {e}", str(e))
        security_logger.log_directory_write('delete', dn, succeeded)
        if not succeeded:
            raise self._failure('Delete', dn)

    def move(self, from_dn: str, to_dn: str, recursive: bool = False):
        """
        Rename and/or relocate an object.

        ModifyDN carries the subtree along, so recursive needs no extra work.
        """
        connection = self._require_connection()
        components = split_dn(to_dn)
        relative_dn = components[0]
        new_superior = ','.join(components[1:]) or None
        current_parent = ','.join(split_dn(from_dn)[1:]) or None

        try:
            if new_superior and (current_parent or '').lower() != new_superior.lower():
                succeeded = connection.modify_dn(from_dn, relative_dn, new_superior=new_superior)
            else:
                succeeded = connection.modify_dn(from_dn, relative_dn)
        except LDAPException as e:
            raise DirectoryError(f"Move {from_dn} failed: {e}", str(e))
        security_logger.log_directory_write('move', from_dn, succeeded, f"to {to_dn}")
        if not succeeded:
            raise self._failure('Move', from_dn)

    # Passwords

    def change_password(self, dn: str, new_password: str, old_password: str):
        """
        Change a password so that the server's password history policy applies.

        This is a remove of the old value followed by an add of the new one in a
        single modify request, unlike an administrative replace.
        """
        if not self.supports_batch_modify:
            logger.debug("Batch modify unavailable, falling back to administrative reset")
            self.reset_password(dn, new_password)
            return

        try:
            self.modify_batch(dn, [
                (PASSWORD_ATTRIBUTE, MODIFY_DELETE, [encode_password(old_password)]),
                (PASSWORD_ATTRIBUTE, MODIFY_ADD, [encode_password(new_password)]),
            ])
        except DirectoryError as e:
            security_logger.log_password_change(dn, 'change', False)
            raise DirectoryError(extract_password_error(e.server_message or self._last_error()), e.server_message)
        security_logger.log_password_change(dn, 'change', True)

    def reset_password(self, dn: str, new_password: str):
        """Administrative password overwrite. Does not honour password history."""
        try:
            self.update(dn, {PASSWORD_ATTRIBUTE: encode_password(new_password)})
        except DirectoryError as e:
            security_logger.log_password_change(dn, 'reset', False)
            raise DirectoryError(extract_password_error(e.server_message or self._last_error()), e.server_message)
        security_logger.log_password_change(dn, 'reset', True)

    # Server information

    def get_server_info(self) -> Dict[str, Any]:
        if not self.server or not self.server.info:
            return {}

        info = self.server.info
        return {
            'naming_contexts': list(getattr(info, 'naming_contexts', None) or []),
            'supported_controls': [control[0] for control in (getattr(info, 'supported_controls', None) or [])],
            'vendor_name': getattr(info, 'vendor_name', None),
            'vendor_version': getattr(info, 'vendor_version', None),
            'capabilities': list((getattr(info, 'other', None) or {}).get('supportedCapabilities', [])),
        }

    def supports_in_chain_matching(self) -> bool:
        """Active Directory (and Samba 4) evaluate the LDAP_MATCHING_RULE_IN_CHAIN extension."""
        return ACTIVE_DIRECTORY_CAPABILITY_OID in self.get_server_info().get('capabilities', [])

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
