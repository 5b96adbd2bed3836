"""
Local user store.

LocalStore is the persistence interface the import engine depends on.
SqlAlchemyUserStore implements it on a single SQLAlchemy Core table whose
attribute columns are derived from the field mapping configuration.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Any, Optional, Iterable, Set

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    insert,
    select,
    update,
)
from sqlalchemy import engine as sa_engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ldap_import.exceptions import PersistenceError, UniquenessRaceError

logger = logging.getLogger(__name__)

RESERVED_COLUMNS = ('id', 'guid', 'domain', 'created_at', 'updated_at', 'deleted_at')


class LocalRecord:
    """
    Local counterpart of a directory object.

    ``exists`` is true once the record has been loaded from or written to the
    store; ``was_recently_created`` is true only after the save that inserted it.
    """

    def __init__(self, primary_key: Optional[int] = None, guid: Optional[str] = None,
                 domain: Optional[str] = None, attributes: Optional[Dict[str, Any]] = None,
                 deleted_at: Optional[datetime] = None, exists: bool = False):
        self.primary_key = primary_key
        self.guid = guid
        self.domain = domain
        self.attributes = dict(attributes or {})
        self.deleted_at = deleted_at
        self.exists = exists
        self.was_recently_created = False

    def trashed(self) -> bool:
        return self.deleted_at is not None

    def __repr__(self):
        return (f"LocalRecord(primary_key={self.primary_key!r}, guid={self.guid!r}, "
                f"trashed={self.trashed()})")


class LocalStore(ABC):
    """Persistence operations required by the import engine."""

    def __init__(self, supports_soft_delete: bool = False):
        self.supports_soft_delete = supports_soft_delete

    def new_record(self) -> LocalRecord:
        """Return a new, unsaved record."""
        return LocalRecord()

    @abstractmethod
    def find_by_guid(self, guid: str, with_trashed: bool = False) -> Optional[LocalRecord]:
        """Find the record holding the given GUID."""
        pass

    @abstractmethod
    def save(self, record: LocalRecord) -> bool:
        """
        Insert or update the record.

        Returns:
            True if the record was inserted by this call, False if updated

        Raises:
            UniquenessRaceError: If an insert collides with an existing GUID
            PersistenceError: If the store fails otherwise
        """
        pass

    @abstractmethod
    def soft_delete(self, record: LocalRecord):
        """Mark the record as trashed."""
        pass

    @abstractmethod
    def restore(self, record: LocalRecord):
        """Clear the trashed marker of the record."""
        pass

    @abstractmethod
    def find_missing_ids(self, present_guids: Iterable[str], domain: Optional[str] = None) -> Set[int]:
        """Return ids of imported, non-trashed records whose GUID is not in present_guids."""
        pass

    @abstractmethod
    def soft_delete_ids(self, ids: Iterable[int]) -> int:
        """Trash the records with the given ids and return how many were changed."""
        pass


def build_users_table(metadata: MetaData, table_name: str, attribute_columns: Dict[str, bool],
                      soft_deletes: bool = True) -> Table:
    """
    Build the users table definition.

    Args:
        metadata: Metadata to register the table with
        table_name: Table name
        attribute_columns: Column name -> True if the column stores all values (JSON)
        soft_deletes: Whether to add the deleted_at column
    """
    columns = [
        Column('id', Integer, primary_key=True, autoincrement=True),
        Column('guid', String(64), nullable=False, unique=True),
        Column('domain', String(255), index=True),
    ]

    for name, multi_valued in attribute_columns.items():
        if name in RESERVED_COLUMNS:
            raise ValueError(f"Mapped column name '{name}' is reserved")
        columns.append(Column(name, JSON if multi_valued else String(1024)))

    columns.extend([
        Column('created_at', DateTime(timezone=True)),
        Column('updated_at', DateTime(timezone=True)),
    ])
    if soft_deletes:
        columns.append(Column('deleted_at', DateTime(timezone=True), index=True))

    return Table(table_name, metadata, *columns)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SqlAlchemyUserStore(LocalStore):
    """LocalStore backed by a SQLAlchemy Core table."""

    def __init__(self, engine: sa_engine.Engine, table: Table):
        super().__init__(supports_soft_delete='deleted_at' in table.c)
        self.engine = engine
        self.table = table
        self.attribute_columns = [c.name for c in table.c if c.name not in RESERVED_COLUMNS]

    def create_tables(self):
        self.table.metadata.create_all(self.engine)

    def _to_record(self, row) -> LocalRecord:
        mapping = row._mapping
        return LocalRecord(
            primary_key=mapping['id'],
            guid=mapping['guid'],
            domain=mapping['domain'],
            attributes={name: mapping[name] for name in self.attribute_columns},
            deleted_at=mapping['deleted_at'] if self.supports_soft_delete else None,
            exists=True,
        )

    def find_by_guid(self, guid: str, with_trashed: bool = False) -> Optional[LocalRecord]:
        query = select(self.table).where(self.table.c.guid == guid)
        if self.supports_soft_delete and not with_trashed:
            query = query.where(self.table.c.deleted_at.is_(None))

        try:
            with self.engine.connect() as conn:
                row = conn.execute(query.limit(1)).first()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to look up GUID {guid}: {e}") from e

        return self._to_record(row) if row is not None else None

    def find(self, primary_key: int) -> Optional[LocalRecord]:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(select(self.table).where(self.table.c.id == primary_key)).first()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load record {primary_key}: {e}") from e
        return self._to_record(row) if row is not None else None

    def save(self, record: LocalRecord) -> bool:
        values = {name: record.attributes[name] for name in self.attribute_columns if name in record.attributes}
        values.update({'guid': record.guid, 'domain': record.domain, 'updated_at': _now()})

        try:
            with self.engine.begin() as conn:
                if record.primary_key is None:
                    values['created_at'] = values['updated_at']
                    result = conn.execute(insert(self.table).values(**values))
                    record.primary_key = result.inserted_primary_key[0]
                    created = True
                else:
                    conn.execute(update(self.table).where(self.table.c.id == record.primary_key).values(**values))
                    created = False
        except IntegrityError as e:
            if record.primary_key is None:
                raise UniquenessRaceError(f"GUID {record.guid} already exists in {self.table.name}") from e
            raise PersistenceError(f"Failed to save record {record.primary_key}: {e}") from e
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to save record for GUID {record.guid}: {e}") from e

        record.exists = True
        record.was_recently_created = created
        return created

    def _set_deleted_at(self, record: LocalRecord, value: Optional[datetime]):
        if not self.supports_soft_delete:
            raise PersistenceError(f"Table {self.table.name} does not support soft deletes")
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    update(self.table)
                    .where(self.table.c.id == record.primary_key)
                    .values(deleted_at=value, updated_at=_now())
                )
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to update record {record.primary_key}: {e}") from e
        record.deleted_at = value

    def soft_delete(self, record: LocalRecord):
        self._set_deleted_at(record, _now())

    def restore(self, record: LocalRecord):
        self._set_deleted_at(record, None)

    def find_missing_ids(self, present_guids: Iterable[str], domain: Optional[str] = None) -> Set[int]:
        query = select(self.table.c.id).where(self.table.c.guid.is_not(None))

        present = [guid for guid in set(present_guids) if guid]
        if present:
            query = query.where(self.table.c.guid.not_in(present))
        if domain is not None:
            query = query.where(self.table.c.domain == domain)
        if self.supports_soft_delete:
            query = query.where(self.table.c.deleted_at.is_(None))

        try:
            with self.engine.connect() as conn:
                return set(conn.execute(query).scalars())
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to query missing records: {e}") from e

    def soft_delete_ids(self, ids: Iterable[int]) -> int:
        ids = list(ids)
        if not ids or not self.supports_soft_delete:
            return 0
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    update(self.table)
                    .where(self.table.c.id.in_(ids))
                    .where(self.table.c.deleted_at.is_(None))
                    .values(deleted_at=_now(), updated_at=_now())
                )
                return result.rowcount
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to soft-delete missing records: {e}") from e


def create_store_from_config(database_config: Dict[str, Any], attribute_columns: Dict[str, bool]) -> SqlAlchemyUserStore:
    """
    Create the store described by the database configuration section.

    Args:
        database_config: Database configuration (url, table, soft_deletes)
        attribute_columns: Mapped column name -> True if multi-valued

    Returns:
        Store with its table created if missing
    """
    engine = create_engine(database_config['url'], future=True)
    table = build_users_table(
        MetaData(),
        database_config.get('table', 'users'),
        attribute_columns,
        soft_deletes=database_config.get('soft_deletes', True),
    )
    store = SqlAlchemyUserStore(engine, table)
    store.create_tables()
    logger.info(f"Using table {table.name} at {engine.url.render_as_string(hide_password=True)} "
                f"(soft deletes: {store.supports_soft_delete})")
    return store
