"""
Identity resolution between directory objects and local records.
"""

import logging
from typing import Tuple

from ldap_import.directory import DirectoryObject
from ldap_import.exceptions import MissingIdentifierError
from ldap_import.store import LocalStore, LocalRecord

logger = logging.getLogger(__name__)


class IdentityResolver:
    """Finds the local record for a directory object by its converted GUID."""

    def __init__(self, store: LocalStore):
        self.store = store

    def find_or_create(self, obj: DirectoryObject) -> Tuple[LocalRecord, bool]:
        """
        Find the record matching the object's GUID or create a new unsaved one.

        Trashed records are included in the lookup when the store supports soft
        deletes, so disabled and re-enabled accounts keep a single row.

        Returns:
            Tuple of (record, created)

        Raises:
            MissingIdentifierError: If the object has no resolvable GUID
        """
        guid = obj.converted_guid
        if not guid:
            raise MissingIdentifierError(obj.rdn or obj.dn)

        record = self.store.find_by_guid(guid, with_trashed=self.store.supports_soft_delete)
        if record is not None:
            logger.debug(f"Resolved [{obj.rdn}] to local record {record.primary_key}")
            return record, False

        logger.debug(f"No local record for [{obj.rdn}] ({guid}), creating new instance")
        return self.store.new_record(), True
