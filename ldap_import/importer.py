"""
Import orchestrator.

Loads a batch of directory objects, resolves and hydrates a local record for
each one, applies lifecycle policy and reports local records that were not
seen in the batch. Objects are processed one at a time so that events are
observed in per-object order.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Any, Optional, Set, Tuple

from ldap_import.directory import DirectoryObject
from ldap_import.events import (
    EventDispatcher,
    Event,
    Importing,
    Synchronizing,
    Synchronized,
    Imported,
    DeletedMissing,
)
from ldap_import.exceptions import (
    DirectorySourceUnavailable,
    HydrationError,
    MissingIdentifierError,
    PersistenceError,
    UniquenessRaceError,
)
from ldap_import.hydrator import AttributeHydrator
from ldap_import.lifecycle import LifecyclePolicy, TRASHED, RESTORED
from ldap_import.resolver import IdentityResolver
from ldap_import.retry import retry_call, create_retry_callback, MaxRetriesExceeded
from ldap_import.store import LocalStore, LocalRecord

logger = logging.getLogger(__name__)


class ImportState(Enum):
    IDLE = 'idle'
    LOADING = 'loading'
    RESOLVING = 'resolving'
    HYDRATING = 'hydrating'
    POLICY = 'policy'
    COMMITTED = 'committed'
    SKIPPED = 'skipped'
    RECONCILING = 'reconciling'
    DONE = 'done'


@dataclass
class SyncOutcome:
    """Result of importing one directory object."""

    object: DirectoryObject
    record: LocalRecord
    created: bool
    events: List[str] = field(default_factory=list)
    transition: Optional[str] = None
    policy_error: Optional[Exception] = None


@dataclass
class ImportFailure:
    object: DirectoryObject
    error: Exception

    @property
    def error_type(self) -> str:
        return type(self.error).__name__


@dataclass
class ImportReport:
    """Summary of one import run."""

    username: Optional[str] = None
    total: int = 0
    outcomes: List[SyncOutcome] = field(default_factory=list)
    failures: List[ImportFailure] = field(default_factory=list)
    missing_ids: Set[int] = field(default_factory=set)
    reconcile_error: Optional[Exception] = None
    cancelled: bool = False
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None

    @property
    def imported(self) -> int:
        return len(self.outcomes)

    @property
    def created(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.created)

    @property
    def updated(self) -> int:
        return self.imported - self.created

    @property
    def trashed(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.transition == TRASHED)

    @property
    def restored(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.transition == RESTORED)

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def runtime_seconds(self) -> float:
        end = self.end_time or datetime.now()
        return (end - self.start_time).total_seconds()

    @property
    def policy_errors(self) -> List[SyncOutcome]:
        """Imported objects whose trash or restore step failed after the save."""
        return [outcome for outcome in self.outcomes if outcome.policy_error is not None]

    @property
    def succeeded(self) -> bool:
        return not self.failures and not self.policy_errors and self.reconcile_error is None

    def summary(self) -> Dict[str, Any]:
        return {
            'username': self.username,
            'total_objects': self.total,
            'imported': self.imported,
            'created': self.created,
            'updated': self.updated,
            'trashed': self.trashed,
            'restored': self.restored,
            'failed': self.failed,
            'missing': len(self.missing_ids),
            'cancelled': self.cancelled,
            'policy_errors': [
                {'dn': outcome.object.dn, 'error': type(outcome.policy_error).__name__,
                 'message': str(outcome.policy_error)}
                for outcome in self.policy_errors
            ],
            'reconcile_error': str(self.reconcile_error) if self.reconcile_error else None,
            'runtime_seconds': self.runtime_seconds,
            'failures': [
                {'dn': failure.object.dn, 'error': failure.error_type, 'message': str(failure.error)}
                for failure in self.failures
            ],
        }


class LdapUserImporter:
    """
    Imports directory users into a local store.

    The directory source must provide ``search(filters)`` returning an iterable
    of DirectoryObject and ``find_by_anr(name)`` returning one object or None.
    """

    def __init__(self, source, store: LocalStore, hydrator: AttributeHydrator,
                 resolver: Optional[IdentityResolver] = None,
                 dispatcher: Optional[EventDispatcher] = None,
                 restore_enabled_users: bool = False,
                 trash_disabled_users: bool = False,
                 logging_enabled: bool = False,
                 import_filter: Optional[str] = None):
        self.source = source
        self.store = store
        self.hydrator = hydrator
        self.resolver = resolver or IdentityResolver(store)
        self.dispatcher = dispatcher or EventDispatcher()
        self.policy = LifecyclePolicy(
            store,
            trash_disabled_users=trash_disabled_users,
            restore_enabled_users=restore_enabled_users,
            logging_enabled=logging_enabled,
        )
        self.logging_enabled = logging_enabled
        self.import_filter = import_filter

        self.state = ImportState.IDLE
        self._cancelled = False

    def listen(self, event_type, listener):
        """Register a listener on this importer's dispatcher."""
        self.dispatcher.listen(event_type, listener)
        return self

    def cancel(self):
        """Stop scheduling further objects; the object in progress finishes."""
        self._cancelled = True

    def load_batch(self, username: Optional[str] = None) -> List[DirectoryObject]:
        """
        Load the objects to import.

        Args:
            username: If given, look up a single user by ambiguous name resolution

        Returns:
            List of directory objects (possibly empty)

        Raises:
            DirectorySourceUnavailable: If the directory cannot be queried
        """
        self.state = ImportState.LOADING

        try:
            if username:
                obj = self.source.find_by_anr(username)
                batch = [obj] if obj is not None else []
            else:
                batch = list(self.source.search(self.import_filter))
        except DirectorySourceUnavailable:
            raise
        except Exception as e:
            raise DirectorySourceUnavailable(f"Failed to load directory objects: {e}") from e

        if username:
            logger.info(f"Found {len(batch)} directory object(s) matching '{username}'")
        else:
            logger.info(f"Loaded {len(batch)} directory object(s)")
        return batch

    def run(self, username: Optional[str] = None, data: Optional[Dict[str, Any]] = None) -> ImportReport:
        """
        Run an import.

        Per-object errors are recorded in the report and do not stop the run.
        Missing-record reconciliation only happens for full runs (no username,
        no import filter) that were not cancelled.

        Raises:
            DirectorySourceUnavailable: If the batch cannot be loaded
        """
        self._cancelled = False
        report = ImportReport(username=username)

        batch = self.load_batch(username)
        report.total = len(batch)

        for obj in batch:
            if self._cancelled:
                logger.warning(f"Import cancelled after {report.imported + report.failed} of {report.total} objects")
                break

            try:
                outcome = self.import_object(obj, data)
            except (MissingIdentifierError, HydrationError, PersistenceError) as e:
                self.state = ImportState.SKIPPED
                logger.error(f"Skipped [{obj.rdn or obj.dn}]: {e}")
                report.failures.append(ImportFailure(obj, e))
                continue

            report.outcomes.append(outcome)

        report.cancelled = self._cancelled

        if username is None and not self.import_filter and not report.cancelled:
            self._reconcile(batch, report)
        elif self.import_filter and username is None:
            logger.info("Skipping missing record reconciliation for filtered import")

        self.state = ImportState.DONE
        report.end_time = datetime.now()
        return report

    def import_object(self, obj: DirectoryObject, data: Optional[Dict[str, Any]] = None) -> SyncOutcome:
        """
        Import or synchronize a single directory object.

        A GUID collision on insert (another process created the row first)
        causes one more resolve/hydrate/save pass, which then updates the row.
        The outcome's events list only the dispatches of the pass that saved.

        A trash or restore failure happens after the row is saved, so it is
        attached to the outcome as ``policy_error`` instead of being raised.

        Raises:
            MissingIdentifierError, HydrationError, PersistenceError
        """
        try:
            record, created, events = retry_call(
                self._synchronize,
                args=(obj, data),
                max_attempts=2,
                delay=0,
                exceptions=(UniquenessRaceError,),
                on_retry=create_retry_callback(f"Import of [{obj.rdn}]"),
            )
        except MaxRetriesExceeded as e:
            raise e.last_exception

        if created:
            self._fire(Imported(obj, record), events)

        self.state = ImportState.POLICY
        transition = None
        policy_error = None
        try:
            transition = self.policy.apply(obj, record)
        except PersistenceError as e:
            logger.error(f"Lifecycle policy failed for [{obj.rdn}] (record {record.primary_key} was saved): {e}")
            policy_error = e

        self.state = ImportState.COMMITTED
        if created:
            logger.debug(f"Imported [{obj.rdn}] as record {record.primary_key}")
        else:
            logger.debug(f"Synchronized [{obj.rdn}] into record {record.primary_key}")

        return SyncOutcome(obj, record, created, events, transition, policy_error)

    def _synchronize(self, obj: DirectoryObject,
                     data: Optional[Dict[str, Any]]) -> Tuple[LocalRecord, bool, List[str]]:
        events = []

        self.state = ImportState.RESOLVING
        record, _ = self.resolver.find_or_create(obj)

        if not record.exists:
            self._fire(Importing(obj, record), events)

        self._fire(Synchronizing(obj, record), events)

        self.state = ImportState.HYDRATING
        self.hydrator.hydrate(obj, record, data or {})

        self._fire(Synchronized(obj, record), events)

        return record, self.store.save(record), events

    def _reconcile(self, batch: List[DirectoryObject], report: ImportReport):
        self.state = ImportState.RECONCILING

        guids = {obj.converted_guid for obj in batch if obj.converted_guid}
        domain = getattr(self.hydrator, 'domain', None)

        try:
            report.missing_ids = self.store.find_missing_ids(guids, domain=domain)
        except PersistenceError as e:
            logger.error(f"Missing record reconciliation failed: {e}")
            report.reconcile_error = e
            return

        if report.missing_ids:
            logger.info(f"{len(report.missing_ids)} local record(s) missing from the directory")

        self._fire(DeletedMissing(report.missing_ids, batch, self.store))

    def _fire(self, event: Event, events: Optional[List[str]] = None):
        self.dispatcher.dispatch(event)
        if events is not None:
            events.append(event.name)


class SoftDeleteMissingListener:
    """Soft-deletes the records reported by a DeletedMissing event."""

    def __init__(self, logging_enabled: bool = True):
        self.logging_enabled = logging_enabled

    def __call__(self, event: DeletedMissing):
        if not event.ids:
            return

        if not event.store.supports_soft_delete:
            logger.warning(f"Not deleting {len(event.ids)} missing user(s): store has no soft deletes")
            return

        count = event.store.soft_delete_ids(event.ids)

        if self.logging_enabled:
            logger.info(f"Soft-deleted {count} user(s) missing from the directory.")
