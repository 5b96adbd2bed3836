"""
Directory object model.

A DirectoryObject is the read-only view of one LDAP entry used by the import
engine. It carries the entry DN, its attributes (case-insensitive names, list
values), the raw GUID value and a flag telling whether the entry comes from a
directory exposing account-control flags (Active Directory).
"""

import uuid
import logging
from typing import Dict, List, Any, Optional, Union
from ldap3.utils.ciDict import CaseInsensitiveDict
from ldap3.utils.dn import parse_dn
from ldap3.core.exceptions import LDAPInvalidDnError

logger = logging.getLogger(__name__)


class AccountControl:
    """Well-known userAccountControl bits."""

    SCRIPT = 1
    ACCOUNTDISABLE = 2
    HOMEDIR_REQUIRED = 8
    LOCKOUT = 16
    PASSWD_NOTREQD = 32
    PASSWD_CANT_CHANGE = 64
    ENCRYPTED_TEXT_PWD_ALLOWED = 128
    TEMP_DUPLICATE_ACCOUNT = 256
    NORMAL_ACCOUNT = 512
    INTERDOMAIN_TRUST_ACCOUNT = 2048
    WORKSTATION_TRUST_ACCOUNT = 4096
    SERVER_TRUST_ACCOUNT = 8192
    DONT_EXPIRE_PASSWORD = 65536
    MNS_LOGON_ACCOUNT = 131072
    SMARTCARD_REQUIRED = 262144
    TRUSTED_FOR_DELEGATION = 524288
    NOT_DELEGATED = 1048576
    USE_DES_KEY_ONLY = 2097152
    DONT_REQ_PREAUTH = 4194304
    PASSWORD_EXPIRED = 8388608
    TRUSTED_TO_AUTH_FOR_DELEGATION = 16777216
    PARTIAL_SECRETS_ACCOUNT = 67108864


def convert_guid(value: Union[bytes, str, None]) -> Optional[str]:
    """
    Convert a directory GUID value to its canonical string form.

    Args:
        value: 16 raw bytes (Active Directory objectGUID, little-endian layout)
            or a textual UUID, optionally wrapped in braces

    Returns:
        Lower-case hyphenated GUID, or None if the value cannot be converted
    """
    if value is None:
        return None

    try:
        if isinstance(value, (bytes, bytearray)):
            if len(value) != 16:
                return None
            return str(uuid.UUID(bytes_le=bytes(value)))

        text = str(value).strip().strip('{}')
        if not text:
            return None
        return str(uuid.UUID(text))
    except (ValueError, TypeError):
        logger.debug(f"Unable to convert GUID value: {value!r}")
        return None


class DirectoryObject:
    """An entry read from the directory, immutable for the duration of an import run."""

    def __init__(self, dn: str, attributes: Optional[Dict[str, Any]] = None,
                 raw_guid: Union[bytes, str, None] = None,
                 supports_account_control: bool = False):
        self.dn = dn or ''
        self._attributes = CaseInsensitiveDict()
        for name, values in (attributes or {}).items():
            self._attributes[name] = self._as_list(values)
        self._raw_guid = raw_guid
        self.supports_account_control = supports_account_control

    @staticmethod
    def _as_list(values) -> List[str]:
        if values is None:
            return []
        if isinstance(values, (list, tuple, set)):
            return [v.decode('utf-8', 'replace') if isinstance(v, bytes) else str(v)
                    for v in values if v is not None]
        if isinstance(values, bytes):
            return [values.decode('utf-8', 'replace')]
        return [str(values)]

    @property
    def attributes(self) -> Dict[str, List[str]]:
        """Copy of the attribute mapping."""
        return {name: list(values) for name, values in self._attributes.items()}

    def has_attribute(self, name: str) -> bool:
        return bool(self._attributes.get(name))

    def get_attribute(self, name: str) -> List[str]:
        """Return every value of an attribute (empty list if absent)."""
        return list(self._attributes.get(name) or [])

    def get_first_attribute(self, name: str) -> Optional[str]:
        """Return the first value of an attribute, or None if absent."""
        values = self._attributes.get(name)
        return values[0] if values else None

    @property
    def rdn(self) -> str:
        """Relative distinguished name, e.g. 'cn=John Doe'."""
        if not self.dn:
            return ''
        try:
            attr, value, _ = parse_dn(self.dn)[0]
            return f"{attr}={value}"
        except (LDAPInvalidDnError, IndexError):
            return self.dn.split(',')[0]

    @property
    def converted_guid(self) -> Optional[str]:
        return convert_guid(self._raw_guid)

    def __repr__(self):
        return f"DirectoryObject(dn={self.dn!r}, guid={self.converted_guid!r})"
