#!/usr/bin/env python3
"""
Unit tests for the import orchestrator.

Runs the importer against an in-memory SQLite store and a mocked directory
source.
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch

from sqlalchemy import MetaData, create_engine

# Add parent directory to path to import ldap_import modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_import.directory import DirectoryObject
from ldap_import.events import Importing, Synchronizing, Synchronized, Imported, DeletedMissing
from ldap_import.exceptions import (
    DirectorySourceUnavailable,
    HydrationError,
    MissingIdentifierError,
    PersistenceError,
    UniquenessRaceError,
)
from ldap_import.hydrator import AttributeHydrator, build_mappings
from ldap_import.importer import LdapUserImporter, ImportState, SoftDeleteMissingListener
from ldap_import.resolver import IdentityResolver
from ldap_import.store import LocalRecord, SqlAlchemyUserStore, build_users_table


GUID_A = '7b1d9f52-3c4e-4a8b-9f0e-2d6c5a4b3e21'
GUID_B = '0f8e2a14-9b7c-4d61-8e53-a1b2c3d4e5f6'
GUID_C = '5c3a7e90-1d2f-4b6a-8c9d-e0f1a2b3c4d5'
GUID_D = '9a8b7c6d-5e4f-4a3b-8c2d-1e0f9a8b7c6d'


def ad_user(name, guid, uac=None, mail=True, supports_account_control=True):
    attributes = {'cn': name, 'sAMAccountName': name.lower().replace(' ', '.')}
    if mail:
        attributes['mail'] = f"{name.lower().replace(' ', '.')}@example.com"
    if uac is not None:
        attributes['userAccountControl'] = str(uac)
    return DirectoryObject(f"CN={name},OU=Users,DC=example,DC=com", attributes,
                           raw_guid=guid, supports_account_control=supports_account_control)


def make_store(soft_deletes=True):
    engine = create_engine('sqlite://')
    table = build_users_table(MetaData(), 'users', {'name': False, 'email': False, 'username': False},
                              soft_deletes=soft_deletes)
    store = SqlAlchemyUserStore(engine, table)
    store.create_tables()
    return store


def make_source(objects=None, anr_result=None):
    source = Mock()
    source.search.return_value = iter(objects or [])
    source.find_by_anr.return_value = anr_result
    return source


class ImporterTestCase(unittest.TestCase):
    """Shared fixtures."""

    def setUp(self):
        self.store = make_store()
        self.hydrator = AttributeHydrator(build_mappings({
            'name': 'cn',
            'email': {'attribute': 'mail', 'required': True},
            'username': 'sAMAccountName',
        }), domain='default')

    def make_importer(self, objects=None, anr_result=None, **options):
        self.source = make_source(objects, anr_result)
        return LdapUserImporter(self.source, self.store, self.hydrator, **options)

    def record_events(self, importer):
        fired = []
        for event_type in (Importing, Synchronizing, Synchronized, Imported, DeletedMissing):
            importer.listen(event_type, fired.append)
        return fired

    def existing(self, guid, name='Existing'):
        record = LocalRecord(guid=guid, domain='default', attributes={'name': name})
        self.store.save(record)
        return record


class TestLoadBatch(ImporterTestCase):
    """Test cases for loading the batch."""

    def test_full_batch(self):
        objects = [ad_user('John Doe', GUID_A), ad_user('Jane Roe', GUID_B)]
        importer = self.make_importer(objects, import_filter='(department=IT)')

        self.assertEqual(importer.load_batch(), objects)
        self.source.search.assert_called_once_with('(department=IT)')
        self.assertEqual(importer.state, ImportState.LOADING)

    def test_username_lookup(self):
        user = ad_user('John Doe', GUID_A)
        importer = self.make_importer(anr_result=user)

        self.assertEqual(importer.load_batch('jdoe'), [user])
        self.source.find_by_anr.assert_called_once_with('jdoe')
        self.source.search.assert_not_called()

    def test_username_without_match_is_empty(self):
        importer = self.make_importer(anr_result=None)
        self.assertEqual(importer.load_batch('jdoe'), [])

    def test_empty_directory_is_not_an_error(self):
        importer = self.make_importer([])
        report = importer.run()
        self.assertEqual(report.total, 0)
        self.assertTrue(report.succeeded)
        self.assertEqual(importer.state, ImportState.DONE)

    def test_source_failure_is_fatal(self):
        importer = self.make_importer()
        self.source.search.side_effect = ConnectionError("server down")

        with self.assertRaises(DirectorySourceUnavailable):
            importer.run()

    def test_failure_while_paging_is_fatal(self):
        def pages(filters):
            yield ad_user('John Doe', GUID_A)
            raise RuntimeError("page 2 failed")

        importer = self.make_importer()
        self.source.search.side_effect = pages

        with self.assertRaises(DirectorySourceUnavailable):
            importer.run()
        self.assertIsNone(self.store.find_by_guid(GUID_A))


class TestImportObject(ImporterTestCase):
    """Test cases for importing single objects."""

    def test_new_object_is_created(self):
        importer = self.make_importer()
        fired = self.record_events(importer)

        outcome = importer.import_object(ad_user('John Doe', GUID_A))

        self.assertTrue(outcome.created)
        self.assertEqual(outcome.events, ['importing', 'synchronizing', 'synchronized', 'imported'])
        self.assertEqual([type(e) for e in fired], [Importing, Synchronizing, Synchronized, Imported])
        self.assertIsNotNone(outcome.record.primary_key)
        self.assertEqual(outcome.record.attributes['email'], 'john.doe@example.com')
        self.assertEqual(importer.state, ImportState.COMMITTED)

    def test_importing_fires_before_persistence(self):
        importer = self.make_importer()
        seen = []
        importer.listen(Importing, lambda event: seen.append((event.record.primary_key, event.record.exists)))

        importer.import_object(ad_user('John Doe', GUID_A))
        self.assertEqual(seen, [(None, False)])

    def test_existing_object_is_updated(self):
        existing = self.existing(GUID_A, name='Old Name')
        importer = self.make_importer()

        outcome = importer.import_object(ad_user('John Doe', GUID_A))

        self.assertFalse(outcome.created)
        self.assertEqual(outcome.events, ['synchronizing', 'synchronized'])
        self.assertEqual(outcome.record.primary_key, existing.primary_key)
        self.assertEqual(self.store.find_by_guid(GUID_A).attributes['name'], 'John Doe')

    def test_reimport_does_not_duplicate(self):
        importer = self.make_importer()
        first = importer.import_object(ad_user('John Doe', GUID_A))
        second = importer.import_object(ad_user('John Doe', GUID_A))

        self.assertEqual(first.record.primary_key, second.record.primary_key)
        self.assertEqual(self.store.find_missing_ids([]), {first.record.primary_key})

    def test_override_data(self):
        importer = self.make_importer()
        outcome = importer.import_object(ad_user('John Doe', GUID_A), {'email': 'custom@example.com'})
        self.assertEqual(self.store.find(outcome.record.primary_key).attributes['email'], 'custom@example.com')

    def test_uniqueness_race_retries_once_and_updates(self):
        concurrent = self.existing(GUID_A, name='Concurrent')
        resolver = Mock(wraps=IdentityResolver(self.store))
        resolver.find_or_create.side_effect = [
            (self.store.new_record(), True),
            IdentityResolver(self.store).find_or_create(ad_user('John Doe', GUID_A)),
        ]
        importer = self.make_importer(resolver=resolver)
        fired = self.record_events(importer)

        outcome = importer.import_object(ad_user('John Doe', GUID_A))

        self.assertFalse(outcome.created)
        self.assertEqual(outcome.record.primary_key, concurrent.primary_key)
        self.assertEqual(resolver.find_or_create.call_count, 2)
        self.assertNotIn(Imported, [type(e) for e in fired])
        self.assertEqual(self.store.find_by_guid(GUID_A).attributes['name'], 'John Doe')
        self.assertEqual(outcome.events, ['synchronizing', 'synchronized'])

    def test_uniqueness_race_surfaces_after_second_failure(self):
        store = Mock(supports_soft_delete=True)
        store.find_by_guid.return_value = None
        store.new_record.side_effect = LocalRecord
        store.save.side_effect = UniquenessRaceError("duplicate guid")

        importer = LdapUserImporter(make_source(), store, self.hydrator)

        with self.assertRaises(UniquenessRaceError):
            importer.import_object(ad_user('John Doe', GUID_A))
        self.assertEqual(store.save.call_count, 2)


class TestLifecycleDuringImport(ImporterTestCase):
    """Test cases for trash/restore while importing."""

    @patch('ldap_import.lifecycle.logger')
    def test_disabled_user_is_trashed(self, mock_logger):
        self.existing(GUID_A)
        importer = self.make_importer([ad_user('John Doe', GUID_A, uac=514)],
                                      trash_disabled_users=True, logging_enabled=True)

        report = importer.run()

        self.assertEqual(report.trashed, 1)
        self.assertTrue(self.store.find_by_guid(GUID_A, with_trashed=True).trashed())
        mock_logger.info.assert_called_once_with(
            "Soft-deleted user [CN=John Doe]. Their user account is disabled."
        )

    @patch('ldap_import.lifecycle.logger')
    def test_no_log_line_without_logging(self, mock_logger):
        importer = self.make_importer([ad_user('John Doe', GUID_A, uac=514)], trash_disabled_users=True)
        importer.run()

        self.assertTrue(self.store.find_by_guid(GUID_A, with_trashed=True).trashed())
        mock_logger.info.assert_not_called()

    def test_new_disabled_user_is_created_then_trashed(self):
        importer = self.make_importer([ad_user('John Doe', GUID_A, uac=514)], trash_disabled_users=True)
        report = importer.run()

        self.assertEqual(report.created, 1)
        self.assertEqual(report.outcomes[0].transition, 'trashed')

    def test_reenabled_user_is_restored(self):
        importer = self.make_importer([ad_user('John Doe', GUID_A, uac=514)],
                                      trash_disabled_users=True, restore_enabled_users=True)
        importer.run()
        trashed = self.store.find_by_guid(GUID_A, with_trashed=True)
        self.assertTrue(trashed.trashed())

        importer = self.make_importer([ad_user('John Doe', GUID_A, uac=512)],
                                      trash_disabled_users=True, restore_enabled_users=True)
        report = importer.run()

        restored = self.store.find_by_guid(GUID_A)
        self.assertIsNotNone(restored)
        self.assertEqual(restored.primary_key, trashed.primary_key)
        self.assertEqual(report.restored, 1)
        self.assertEqual(report.created, 0)

    def test_absent_account_control_is_inert(self):
        self.existing(GUID_A)
        importer = self.make_importer([ad_user('John Doe', GUID_A)],
                                      trash_disabled_users=True, restore_enabled_users=True)
        report = importer.run()

        self.assertFalse(self.store.find_by_guid(GUID_A).trashed())
        self.assertIsNone(report.outcomes[0].transition)

    def test_generic_directory_is_not_subject_to_policy(self):
        importer = self.make_importer([ad_user('John Doe', GUID_A, uac=514, supports_account_control=False)],
                                      trash_disabled_users=True)
        importer.run()
        self.assertFalse(self.store.find_by_guid(GUID_A).trashed())

    def test_store_without_soft_deletes(self):
        self.store = make_store(soft_deletes=False)
        importer = self.make_importer([ad_user('John Doe', GUID_A, uac=514)], trash_disabled_users=True)
        report = importer.run()

        self.assertTrue(report.succeeded)
        self.assertIsNone(report.outcomes[0].transition)

    def test_policy_failure_keeps_committed_import(self):
        importer = self.make_importer([ad_user('John Doe', GUID_A, uac=514), ad_user('Jane Roe', GUID_B)],
                                      trash_disabled_users=True)
        fired = self.record_events(importer)

        with patch.object(self.store, 'soft_delete', side_effect=PersistenceError("database is locked")):
            report = importer.run()

        self.assertEqual(report.failed, 0)
        self.assertEqual(report.imported, 2)
        self.assertEqual(report.created, 2)
        self.assertEqual([type(e) for e in fired].count(Imported), 2)

        outcome = report.outcomes[0]
        self.assertIsNone(outcome.transition)
        self.assertIsInstance(outcome.policy_error, PersistenceError)
        self.assertEqual(report.policy_errors, [outcome])
        self.assertFalse(report.succeeded)
        self.assertEqual(report.summary()['policy_errors'][0]['error'], 'PersistenceError')

        record = self.store.find_by_guid(GUID_A)
        self.assertEqual(record.primary_key, outcome.record.primary_key)
        self.assertFalse(record.trashed())


class TestReconciliation(ImporterTestCase):
    """Test cases for missing record reconciliation."""

    def test_deleted_missing_carries_unmatched_ids(self):
        self.existing(GUID_A)
        self.existing(GUID_B)
        missing = self.existing(GUID_D)

        batch = [ad_user('John Doe', GUID_A), ad_user('Jane Roe', GUID_B), ad_user('New Person', GUID_C)]
        importer = self.make_importer(batch)
        events = []
        importer.listen(DeletedMissing, events.append)

        report = importer.run()

        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].ids, {missing.primary_key})
        self.assertEqual(events[0].batch, batch)
        self.assertIs(events[0].store, self.store)
        self.assertEqual(report.missing_ids, {missing.primary_key})
        # Reporting is not deleting
        self.assertFalse(self.store.find(missing.primary_key).trashed())

    def test_trashed_records_are_not_missing(self):
        trashed = self.existing(GUID_D)
        self.store.soft_delete(trashed)

        importer = self.make_importer([ad_user('John Doe', GUID_A)])
        report = importer.run()
        self.assertEqual(report.missing_ids, set())

    def test_failed_objects_are_not_missing(self):
        existing = self.existing(GUID_A)
        importer = self.make_importer([ad_user('John Doe', GUID_A, mail=False)])

        report = importer.run()

        self.assertEqual(report.failed, 1)
        self.assertNotIn(existing.primary_key, report.missing_ids)

    def test_username_run_does_not_reconcile(self):
        self.existing(GUID_D)
        importer = self.make_importer(anr_result=ad_user('John Doe', GUID_A))
        events = []
        importer.listen(DeletedMissing, events.append)

        report = importer.run('jdoe')

        self.assertEqual(report.imported, 1)
        self.assertEqual(events, [])

    def test_filtered_run_does_not_reconcile(self):
        outside_filter = self.existing(GUID_D)
        importer = self.make_importer([ad_user('John Doe', GUID_A)], import_filter='(department=IT)')
        events = []
        importer.listen(DeletedMissing, events.append)
        importer.listen(DeletedMissing, SoftDeleteMissingListener())

        report = importer.run()

        self.assertEqual(report.imported, 1)
        self.assertEqual(events, [])
        self.assertEqual(report.missing_ids, set())
        self.assertFalse(self.store.find(outside_filter.primary_key).trashed())

    def test_soft_delete_missing_listener(self):
        missing = self.existing(GUID_D)
        importer = self.make_importer([ad_user('John Doe', GUID_A)])
        importer.listen(DeletedMissing, SoftDeleteMissingListener())

        importer.run()

        self.assertTrue(self.store.find(missing.primary_key).trashed())
        self.assertFalse(self.store.find_by_guid(GUID_A).trashed())

    def test_soft_delete_missing_listener_without_soft_deletes(self):
        store = Mock(supports_soft_delete=False)
        SoftDeleteMissingListener()(DeletedMissing({1, 2}, [], store))
        store.soft_delete_ids.assert_not_called()

    def test_reconciliation_failure_is_reported(self):
        importer = self.make_importer([ad_user('John Doe', GUID_A)])
        with patch.object(self.store, 'find_missing_ids', side_effect=PersistenceError("locked")):
            report = importer.run()

        self.assertEqual(report.imported, 1)
        self.assertIsInstance(report.reconcile_error, PersistenceError)
        self.assertFalse(report.succeeded)


class TestRunIsolation(ImporterTestCase):
    """Test cases for per-object failure isolation."""

    def test_per_object_failures_do_not_abort_the_run(self):
        no_guid = DirectoryObject('CN=Ghost,OU=Users,DC=example,DC=com', {'cn': 'Ghost', 'mail': 'g@example.com'})
        no_mail = ad_user('No Mail', GUID_B, mail=False)
        good = ad_user('John Doe', GUID_A)

        importer = self.make_importer([no_guid, no_mail, good])
        report = importer.run()

        self.assertEqual(report.total, 3)
        self.assertEqual(report.imported, 1)
        self.assertEqual(report.failed, 2)
        self.assertIsInstance(report.failures[0].error, MissingIdentifierError)
        self.assertIsInstance(report.failures[1].error, HydrationError)
        self.assertIsNone(self.store.find_by_guid(GUID_B))
        self.assertIsNotNone(self.store.find_by_guid(GUID_A))
        self.assertFalse(report.succeeded)

    def test_persistence_failure_is_recorded(self):
        importer = self.make_importer([ad_user('John Doe', GUID_A), ad_user('Jane Roe', GUID_B)])
        real_save = self.store.save
        calls = []

        def flaky_save(record):
            calls.append(record.guid)
            if record.guid == GUID_A:
                raise PersistenceError("database is locked")
            return real_save(record)

        with patch.object(self.store, 'save', side_effect=flaky_save):
            report = importer.run()

        self.assertEqual(report.failed, 1)
        self.assertEqual(report.failures[0].error_type, 'PersistenceError')
        self.assertEqual(report.imported, 1)
        self.assertEqual(calls, [GUID_A, GUID_B])

    def test_listener_errors_propagate(self):
        importer = self.make_importer([ad_user('John Doe', GUID_A)])

        def failing_listener(event):
            raise RuntimeError("subscriber failed")

        importer.listen(Imported, failing_listener)

        with self.assertRaises(RuntimeError):
            importer.run()

    def test_cancel_stops_after_current_object(self):
        batch = [ad_user('John Doe', GUID_A), ad_user('Jane Roe', GUID_B), ad_user('New Person', GUID_C)]
        importer = self.make_importer(batch)
        deleted_missing = []
        importer.listen(Synchronized, lambda event: importer.cancel())
        importer.listen(DeletedMissing, deleted_missing.append)

        report = importer.run()

        self.assertTrue(report.cancelled)
        self.assertEqual(report.imported, 1)
        self.assertIsNotNone(self.store.find_by_guid(GUID_A))
        self.assertIsNone(self.store.find_by_guid(GUID_B))
        self.assertEqual(deleted_missing, [])

    def test_summary(self):
        importer = self.make_importer([ad_user('John Doe', GUID_A), ad_user('No Mail', GUID_B, mail=False)])
        summary = importer.run().summary()

        self.assertEqual(summary['total_objects'], 2)
        self.assertEqual(summary['created'], 1)
        self.assertEqual(summary['failed'], 1)
        self.assertEqual(summary['failures'][0]['error'], 'HydrationError')
        self.assertEqual(summary['failures'][0]['dn'], 'CN=No Mail,OU=Users,DC=example,DC=com')


if __name__ == '__main__':
    unittest.main()
