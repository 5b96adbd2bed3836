#!/usr/bin/env python3
"""
Unit tests for identity resolution.
"""

import os
import sys
import unittest
from unittest.mock import Mock

from sqlalchemy import MetaData, create_engine

# Add parent directory to path to import ldap_import modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_import.directory import DirectoryObject
from ldap_import.exceptions import MissingIdentifierError
from ldap_import.resolver import IdentityResolver
from ldap_import.store import LocalRecord, SqlAlchemyUserStore, build_users_table


GUID = '7b1d9f52-3c4e-4a8b-9f0e-2d6c5a4b3e21'


def make_store(soft_deletes=True):
    engine = create_engine('sqlite://')
    store = SqlAlchemyUserStore(engine, build_users_table(MetaData(), 'users', {'name': False}, soft_deletes))
    store.create_tables()
    return store


class TestIdentityResolver(unittest.TestCase):
    """Test cases for IdentityResolver."""

    def setUp(self):
        self.store = make_store()
        self.resolver = IdentityResolver(self.store)
        self.obj = DirectoryObject('CN=John Doe,DC=example,DC=com', {'cn': 'John Doe'}, raw_guid=GUID)

    def test_unseen_guid_creates_unsaved_record(self):
        record, created = self.resolver.find_or_create(self.obj)
        self.assertTrue(created)
        self.assertIsNone(record.primary_key)
        self.assertFalse(record.exists)

    def test_existing_guid_returns_record(self):
        existing = LocalRecord(guid=GUID)
        self.store.save(existing)

        record, created = self.resolver.find_or_create(self.obj)
        self.assertFalse(created)
        self.assertEqual(record.primary_key, existing.primary_key)

    def test_trashed_record_is_found(self):
        existing = LocalRecord(guid=GUID)
        self.store.save(existing)
        self.store.soft_delete(existing)

        record, created = self.resolver.find_or_create(self.obj)
        self.assertFalse(created)
        self.assertEqual(record.primary_key, existing.primary_key)
        self.assertTrue(record.trashed())

    def test_lookup_scope_follows_soft_delete_support(self):
        store = Mock(supports_soft_delete=False)
        store.find_by_guid.return_value = None
        IdentityResolver(store).find_or_create(self.obj)
        store.find_by_guid.assert_called_once_with(GUID, with_trashed=False)

        store = Mock(supports_soft_delete=True)
        store.find_by_guid.return_value = None
        IdentityResolver(store).find_or_create(self.obj)
        store.find_by_guid.assert_called_once_with(GUID, with_trashed=True)

    def test_missing_guid_raises(self):
        obj = DirectoryObject('CN=No Guid,DC=example,DC=com', {'cn': 'No Guid'})
        with self.assertRaises(MissingIdentifierError) as ctx:
            self.resolver.find_or_create(obj)
        self.assertEqual(ctx.exception.rdn, 'CN=No Guid')


if __name__ == '__main__':
    unittest.main()
