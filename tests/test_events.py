#!/usr/bin/env python3
"""
Unit tests for import events and the event dispatcher.
"""

import os
import sys
import unittest
from unittest.mock import Mock

# Add parent directory to path to import ldap_import modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_import.directory import DirectoryObject
from ldap_import.events import (
    EventDispatcher,
    Importing,
    Synchronizing,
    Synchronized,
    Imported,
    DeletedMissing,
    Rejected,
)
from ldap_import.store import LocalRecord


class TestEvents(unittest.TestCase):
    """Test cases for event payloads."""

    def setUp(self):
        self.obj = DirectoryObject('CN=John Doe,DC=example,DC=com', {'cn': 'John Doe'})
        self.record = LocalRecord()

    def test_object_events_carry_object_and_record(self):
        for event_type, name in [(Importing, 'importing'), (Synchronizing, 'synchronizing'),
                                 (Synchronized, 'synchronized'), (Imported, 'imported')]:
            event = event_type(self.obj, self.record)
            self.assertIs(event.object, self.obj)
            self.assertIs(event.record, self.record)
            self.assertEqual(event.name, name)

    def test_deleted_missing(self):
        store = Mock()
        event = DeletedMissing([3, 1, 3], [self.obj], store)

        self.assertEqual(event.ids, {1, 3})
        self.assertEqual(event.batch, [self.obj])
        self.assertIs(event.store, store)
        self.assertEqual(event.name, 'deleted.missing')

    def test_rejected_without_record(self):
        event = Rejected(self.obj)
        self.assertIs(event.object, self.obj)
        self.assertIsNone(event.record)


class TestEventDispatcher(unittest.TestCase):
    """Test cases for EventDispatcher."""

    def setUp(self):
        self.dispatcher = EventDispatcher()
        self.obj = DirectoryObject('CN=John Doe,DC=example,DC=com')

    def test_listeners_called_in_registration_order(self):
        calls = []
        self.dispatcher.listen(Imported, lambda event: calls.append('first'))
        self.dispatcher.listen(Imported, lambda event: calls.append('second'))

        self.dispatcher.dispatch(Imported(self.obj, LocalRecord()))

        self.assertEqual(calls, ['first', 'second'])

    def test_dispatch_is_keyed_by_event_class(self):
        listener = Mock()
        self.dispatcher.listen(Importing, listener)

        self.dispatcher.dispatch(Imported(self.obj, LocalRecord()))
        listener.assert_not_called()

        event = self.dispatcher.dispatch(Importing(self.obj, LocalRecord()))
        listener.assert_called_once_with(event)

    def test_dispatch_without_listeners(self):
        event = Synchronized(self.obj, LocalRecord())
        self.assertIs(self.dispatcher.dispatch(event), event)

    def test_has_listeners_and_forget(self):
        self.assertFalse(self.dispatcher.has_listeners(Imported))

        self.dispatcher.listen(Imported, Mock())
        self.assertTrue(self.dispatcher.has_listeners(Imported))

        self.dispatcher.forget(Imported)
        self.assertFalse(self.dispatcher.has_listeners(Imported))

    def test_dispatchers_are_independent(self):
        listener = Mock()
        self.dispatcher.listen(Rejected, listener)

        EventDispatcher().dispatch(Rejected(self.obj))
        listener.assert_not_called()

    def test_listener_exception_propagates(self):
        later = Mock()
        self.dispatcher.listen(Synchronizing, Mock(side_effect=RuntimeError("listener failed")))
        self.dispatcher.listen(Synchronizing, later)

        with self.assertRaises(RuntimeError):
            self.dispatcher.dispatch(Synchronizing(self.obj, LocalRecord()))
        later.assert_not_called()


if __name__ == '__main__':
    unittest.main()
