"""
Account lifecycle policy driven by Active Directory userAccountControl flags.

Disabled accounts may have their local record soft-deleted and re-enabled
accounts may have it restored. An absent userAccountControl attribute is
inert: it neither trashes nor restores.
"""

import logging
from typing import Optional

from ldap_import.directory import DirectoryObject, AccountControl
from ldap_import.store import LocalStore, LocalRecord

logger = logging.getLogger(__name__)

TRASHED = 'trashed'
RESTORED = 'restored'


def get_user_account_control(obj: DirectoryObject) -> Optional[int]:
    """Return the userAccountControl integer, or None if absent or not numeric."""
    value = obj.get_first_attribute('userAccountControl')
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring non-numeric userAccountControl '{value}' on [{obj.rdn}]")
        return None


def user_is_disabled(obj: DirectoryObject) -> bool:
    uac = get_user_account_control(obj)
    if uac is None:
        return False
    return (uac & AccountControl.ACCOUNTDISABLE) == AccountControl.ACCOUNTDISABLE


def user_is_enabled(obj: DirectoryObject) -> bool:
    # Restoring needs a positive confirmation from the directory.
    if get_user_account_control(obj) is None:
        return False
    return not user_is_disabled(obj)


class LifecyclePolicy:
    """Applies trash-on-disable and restore-on-enable to persisted records."""

    def __init__(self, store: LocalStore, trash_disabled_users: bool = False,
                 restore_enabled_users: bool = False, logging_enabled: bool = False):
        self.store = store
        self.trash_disabled_users = trash_disabled_users
        self.restore_enabled_users = restore_enabled_users
        self.logging_enabled = logging_enabled

    def apply(self, obj: DirectoryObject, record: LocalRecord) -> Optional[str]:
        """
        Evaluate the policy for one object.

        Returns:
            'trashed', 'restored' or None when nothing changed
        """
        if not obj.supports_account_control:
            return None

        if self.trash_disabled_users and self._trash(obj, record):
            return TRASHED

        if self.restore_enabled_users and self._restore(obj, record):
            return RESTORED

        return None

    def _trash(self, obj: DirectoryObject, record: LocalRecord) -> bool:
        if not (self.store.supports_soft_delete and not record.trashed() and user_is_disabled(obj)):
            return False

        self.store.soft_delete(record)

        if self.logging_enabled:
            logger.info(f"Soft-deleted user [{obj.rdn}]. Their user account is disabled.")
        return True

    def _restore(self, obj: DirectoryObject, record: LocalRecord) -> bool:
        if not (self.store.supports_soft_delete and record.trashed() and user_is_enabled(obj)):
            return False

        self.store.restore(record)

        if self.logging_enabled:
            logger.info(f"Restored user [{obj.rdn}]. Their user account has been re-enabled.")
        return True
