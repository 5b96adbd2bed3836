"""
LDAP client for connecting to and reading users from LDAP directories.

This module provides the directory source used by the importer: a paginated
user search and an ambiguous-name-resolution lookup, both producing
DirectoryObject instances.
"""

import logging
import ssl
from typing import Dict, List, Any, Optional, Iterator
from ldap3 import Server, Connection, SUBTREE, ALL, Tls
from ldap3.core.exceptions import LDAPException, LDAPBindError, LDAPStartTLSError
from ldap3.utils.conv import escape_filter_chars

from ldap_import.directory import DirectoryObject
from ldap_import.retry import retry_call, create_retry_callback, MaxRetriesExceeded

logger = logging.getLogger(__name__)

ACTIVE_DIRECTORY = 'active_directory'
GENERIC = 'generic'
AUTO = 'auto'

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'
AD_CAPABILITY_OID = '1.2.840.113556.1.4.800'

ANR_ATTRIBUTES = ['cn', 'sn', 'uid', 'name', 'mail', 'givenName', 'displayName']

GUID_ATTRIBUTES = {
    ACTIVE_DIRECTORY: 'objectGUID',
    GENERIC: 'entryUUID',
}


class LDAPConnectionError(Exception):
    """Raised when LDAP connection fails."""
    pass


class LDAPQueryError(Exception):
    """Raised when LDAP query fails."""
    pass


class LDAPClient:
    """
    LDAP client for connecting to and querying LDAP directories.

    Supports Active Directory (objectGUID, anr, userAccountControl) and generic
    LDAP servers (entryUUID).
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize LDAP client with configuration.

        Args:
            config: LDAP configuration dictionary
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.user_base_dn = config.get('user_base_dn', '')
        self.user_filter = config.get('user_filter', '(objectClass=person)')
        self.attributes = config.get('attributes', ['*'])
        self.directory_type = config.get('directory_type', AUTO)
        self.guid_attribute = config.get('guid_attribute')

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.page_size = config.get('page_size', 1000)

        error_config = config.get('error_handling', {})
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None
        self._connected = False

    def connect(self, max_retries: Optional[int] = None, retry_wait: Optional[int] = None) -> bool:
        """
        Establish connection to LDAP server with retry logic.

        Args:
            max_retries: Maximum number of connection attempts (uses config default if None)
            retry_wait: Seconds to wait between retries (uses config default if None)

        Returns:
            True if connection successful

        Raises:
            LDAPConnectionError: If connection fails after all retries
        """
        max_retries = max_retries if max_retries is not None else self.max_retries
        # At least one attempt is always made
        max_retries = max(max_retries, 1)
        retry_wait = retry_wait if retry_wait is not None else self.retry_wait

        try:
            tls_config = self._create_tls_config()
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=tls_config,
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.server_url} (SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        except LDAPConnectionError:
            raise
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create LDAP server: {e}")

        try:
            retry_call(
                self._open_connection,
                max_attempts=max_retries,
                delay=retry_wait,
                exceptions=(LDAPException,),
                on_retry=create_retry_callback(f"LDAP connection to {self.server_url}")
            )
        except MaxRetriesExceeded as e:
            raise LDAPConnectionError(
                f"Failed to connect to LDAP after {max_retries} attempts: {e.last_exception}"
            )
        except Exception as e:
            logger.error(f"Unexpected error during LDAP connection: {e}")
            raise LDAPConnectionError(f"Failed to connect to LDAP: {e}")

        self._connected = True
        self.directory_type = self._resolve_directory_type()
        if not self.guid_attribute:
            self.guid_attribute = GUID_ATTRIBUTES[self.directory_type]

        logger.info(f"Successfully connected and bound to LDAP server {self.server_url} "
                    f"(directory type: {self.directory_type})")
        return True

    def _open_connection(self):
        self.connection = Connection(
            self.server,
            user=self.bind_dn,
            password=self.bind_password,
            auto_bind=False,
            receive_timeout=self.receive_timeout
        )

        try:
            self.connection.open()

            if self.start_tls and not self.use_ssl:
                if not self.connection.start_tls():
                    raise LDAPStartTLSError(f"Failed to start TLS: {self.connection.result}")
                logger.debug("StartTLS negotiation successful")

            if not self.connection.bind():
                raise LDAPBindError(f"Bind failed: {self.connection.result}")
        except Exception:
            self._discard_connection()
            raise

    def _discard_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring error while discarding connection: {e}")
            self.connection = None

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {}

        if not self.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning("SSL certificate verification disabled")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        # Client certificate for mutual TLS
        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file
            logger.debug("Client certificate configured for mutual TLS")

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}")

    def _resolve_directory_type(self) -> str:
        """Return the configured directory type, detecting Active Directory from the root DSE when 'auto'."""
        if self.directory_type in (ACTIVE_DIRECTORY, GENERIC):
            return self.directory_type

        info = self.server.info if self.server else None
        if info is not None:
            for name, values in (getattr(info, 'other', None) or {}).items():
                if name.lower() == 'supportedcapabilities' and AD_CAPABILITY_OID in (values or []):
                    return ACTIVE_DIRECTORY
        return GENERIC

    @property
    def is_active_directory(self) -> bool:
        return self.directory_type == ACTIVE_DIRECTORY

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except Exception as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def _requested_attributes(self) -> List[str]:
        attributes = list(self.attributes)
        extra = [self.guid_attribute]
        if self.is_active_directory:
            extra.append('userAccountControl')
        for name in extra:
            if name and name.lower() not in [a.lower() for a in attributes]:
                attributes.append(name)
        return attributes

    def search(self, filters: Optional[str] = None) -> Iterator[DirectoryObject]:
        """
        Search for user objects page by page.

        Args:
            filters: Optional LDAP filter AND-ed with the configured user filter

        Yields:
            DirectoryObject for each entry found

        Raises:
            LDAPQueryError: If a page cannot be retrieved
        """
        if not self._connected:
            raise LDAPQueryError("Not connected to LDAP server")

        search_filter = f"(&{self.user_filter}{filters})" if filters else self.user_filter
        search_base = self._get_domain_base()
        attributes = self._requested_attributes()

        logger.debug(f"Searching with filter: {search_filter} in base: {search_base}")

        cookie = None
        page_count = 0
        total = 0

        while True:
            try:
                self.connection.search(
                    search_base=search_base,
                    search_filter=search_filter,
                    search_scope=SUBTREE,
                    attributes=attributes,
                    paged_size=self.page_size,
                    paged_cookie=cookie
                )
            except LDAPException as e:
                raise LDAPQueryError(f"Paginated search failed on page {page_count + 1}: {e}")

            result = self.connection.result or {}
            if result.get('result', 0) != 0:
                raise LDAPQueryError(f"Search failed on page {page_count + 1}: {result.get('description')} {result.get('message', '')}")

            page_count += 1
            page = [self._to_directory_object(entry) for entry in self._response_entries()]
            total += len(page)
            logger.debug(f"Page {page_count}: Retrieved {len(page)} entries")

            yield from page

            cookie = (result.get('controls') or {}).get(PAGED_RESULTS_OID, {}).get('value', {}).get('cookie')
            if not cookie:
                break

        logger.info(f"Retrieved {total} directory objects across {page_count} pages")

    def find_by_anr(self, name: str) -> Optional[DirectoryObject]:
        """
        Find a single user by ambiguous name resolution.

        Active Directory evaluates the anr attribute natively; other directories
        are searched over a fixed set of naming attributes.

        Returns:
            The first matching object, or None
        """
        if not self._connected:
            raise LDAPQueryError("Not connected to LDAP server")

        value = escape_filter_chars(name)
        if self.is_active_directory:
            anr_filter = f"(anr={value})"
        else:
            anr_filter = '(|' + ''.join(f"({attr}={value})" for attr in ANR_ATTRIBUTES) + ')'

        try:
            self.connection.search(
                search_base=self._get_domain_base(),
                search_filter=f"(&{self.user_filter}{anr_filter})",
                search_scope=SUBTREE,
                attributes=self._requested_attributes(),
                size_limit=1
            )
        except LDAPException as e:
            raise LDAPQueryError(f"Lookup of '{name}' failed: {e}")

        result = self.connection.result or {}
        # sizeLimitExceeded still carries the first entry
        if result.get('result', 0) not in (0, 4):
            raise LDAPQueryError(f"Lookup of '{name}' failed: {result.get('description')}")

        entries = self._response_entries()
        if not entries:
            logger.info(f"No directory object found for '{name}'")
            return None
        return self._to_directory_object(entries[0])

    def _response_entries(self) -> List[Dict[str, Any]]:
        return [entry for entry in (self.connection.response or []) if entry.get('type') == 'searchResEntry']

    def _to_directory_object(self, entry: Dict[str, Any]) -> DirectoryObject:
        attributes = {}
        for name, values in (entry.get('attributes') or {}).items():
            if name.lower() == (self.guid_attribute or '').lower():
                continue
            attributes[name] = values

        return DirectoryObject(
            dn=entry.get('dn', ''),
            attributes=attributes,
            raw_guid=self._extract_guid(entry),
            supports_account_control=self.is_active_directory,
        )

    def _extract_guid(self, entry: Dict[str, Any]):
        wanted = (self.guid_attribute or '').lower()
        for name, values in (entry.get('raw_attributes') or {}).items():
            if name.lower() != wanted or not values:
                continue
            raw = values[0]
            # objectGUID is 16 raw bytes; entryUUID is its textual form
            if isinstance(raw, bytes) and len(raw) != 16:
                return raw.decode('ascii', 'replace')
            return raw
        return None

    def _get_domain_base(self) -> str:
        """Extract domain base DN from configuration, bind DN or server info."""
        if self.user_base_dn:
            return self.user_base_dn

        if 'DC=' in self.bind_dn.upper():
            parts = self.bind_dn.split(',')
            dc_parts = [part.strip() for part in parts if part.strip().upper().startswith('DC=')]
            if dc_parts:
                return ','.join(dc_parts)

        if self.server and self.server.info and self.server.info.naming_contexts:
            return self.server.info.naming_contexts[0]

        raise LDAPQueryError("Cannot determine domain base DN")

    def test_connection(self) -> bool:
        """
        Test LDAP connection without throwing exceptions.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            if not self._connected:
                self.connect()

            return self.connection.search(
                search_base='',
                search_filter='(objectClass=*)',
                search_scope='BASE',
                attributes=['namingContexts'],
                size_limit=1
            )
        except Exception as e:
            logger.debug(f"Connection test failed: {e}")
            return False

    def get_server_info(self) -> Dict[str, Any]:
        """
        Get LDAP server information.

        Returns:
            Dictionary with server information
        """
        if not self.server or not self.server.info:
            return {}

        info = self.server.info
        return {
            'server_name': getattr(info, 'server_name', 'Unknown'),
            'naming_contexts': getattr(info, 'naming_contexts', []),
            'vendor_name': getattr(info, 'vendor_name', 'Unknown'),
            'vendor_version': getattr(info, 'vendor_version', 'Unknown'),
            'directory_type': self.directory_type
        }

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
