"""
Uniqueness enforcement for destination values.

The Deduplicator turns a candidate value into one not yet used in a
destination store field by appending ``_2``, ``_3``, ... Probing and
claiming a value happen under a per-(store, field) lock, and values handed
out during the lifetime of a Deduplicator stay reserved, so two rows of the
same process never receive the same value.
"""

import threading
from collections import defaultdict
from collections.abc import Callable
from typing import Any

from sqlalchemy import MetaData, Table, select
from sqlalchemy.exc import NoSuchTableError

from migrate_bridge.exceptions import ConfigurationError, StorageError
from migrate_bridge.migration.database import create_database_engine
from migrate_bridge.migration.models import MessageLevel
from migrate_bridge.migration.plugins import UniquenessLookup
from migrate_bridge.utils.logging import get_logger

logger = get_logger(__name__)

MessageCallback = Callable[[str, MessageLevel], None]


class InMemoryUniquenessLookup(UniquenessLookup):
    """Uniqueness lookup over sets of known values, keyed by (store, field)."""

    def __init__(self, values: dict[tuple[str, str], set[Any]] | None = None):
        self.values: dict[tuple[str, str], set[Any]] = defaultdict(set)
        for target, known in (values or {}).items():
            self.values[target].update(known)
        self.current: dict[tuple[str, str, tuple], Any] = {}

    def value_exists(self, store: str, field: str, value: Any) -> bool:
        return value in self.values[(store, field)]

    def current_value(self, store: str, field: str, destination_key: tuple) -> Any:
        return self.current.get((store, field, tuple(destination_key)))

    def add(self, store: str, field: str, value: Any, destination_key: tuple | None = None) -> None:
        self.values[(store, field)].add(value)
        if destination_key is not None:
            self.current[(store, field, tuple(destination_key))] = value


class SqlUniquenessLookup(UniquenessLookup):
    """
    Uniqueness lookup against tables of a SQL destination database.

    ``store`` names a table and ``field`` a column. Tables are reflected on
    first use. ``key_column`` is the primary key column used to read the
    current value of an existing destination record.
    """

    def __init__(self, database_url: str, key_column: str = "id"):
        self.database_url = database_url
        self.key_column = key_column
        self._engine = create_database_engine(database_url)
        self._metadata = MetaData()
        self._tables: dict[str, Table] = {}
        self._lock = threading.Lock()

    def _table(self, store: str) -> Table:
        with self._lock:
            table = self._tables.get(store)
            if table is None:
                try:
                    table = Table(store, self._metadata, autoload_with=self._engine)
                except NoSuchTableError as e:
                    raise ConfigurationError(f"Unknown uniqueness store table '{store}'") from e
                self._tables[store] = table
            return table

    def value_exists(self, store: str, field: str, value: Any) -> bool:
        table = self._table(store)
        try:
            with self._engine.connect() as conn:
                found = conn.execute(
                    select(table.c[field]).where(table.c[field] == value).limit(1)
                ).first()
            return found is not None
        except Exception as e:
            logger.error("uniqueness_probe_failed", store=store, field=field, error=str(e))
            raise StorageError(f"Failed to probe {store}.{field}: {e}") from e

    def current_value(self, store: str, field: str, destination_key: tuple) -> Any:
        if not destination_key:
            return None
        table = self._table(store)
        try:
            with self._engine.connect() as conn:
                return conn.execute(
                    select(table.c[field]).where(table.c[self.key_column] == destination_key[0])
                ).scalar()
        except Exception as e:
            logger.error("uniqueness_probe_failed", store=store, field=field, error=str(e))
            raise StorageError(f"Failed to read {store}.{field}: {e}") from e


class Deduplicator:
    """Picks unique values for dedupe rules."""

    _target_locks: dict[tuple[str, str], threading.Lock] = {}
    _registry_lock = threading.Lock()

    def __init__(self, lookup: UniquenessLookup):
        self.lookup = lookup
        self._reserved: dict[tuple[str, str], set[Any]] = defaultdict(set)

    @classmethod
    def _lock_for(cls, target: tuple[str, str]) -> threading.Lock:
        with cls._registry_lock:
            lock = cls._target_locks.get(target)
            if lock is None:
                lock = cls._target_locks[target] = threading.Lock()
            return lock

    def _taken(self, store: str, field: str, value: Any) -> bool:
        return value in self._reserved[(store, field)] or self.lookup.value_exists(
            store, field, value
        )

    def dedupe(
        self,
        store: str,
        field: str,
        candidate: Any,
        previous_destination_key: tuple = (),
        on_message: MessageCallback | None = None,
    ) -> Any:
        """
        Return a value for ``store.field`` that no other record uses.

        A row already written to the destination keeps its current value.
        Otherwise the candidate is tried as is, then with _2, _3, ...

        Args:
            store: Destination store (e.g. a table)
            field: Field within the store
            candidate: Desired value
            previous_destination_key: Destination key of an earlier import
            on_message: Receives an informational note when the value changes

        Returns:
            The unique value
        """
        if previous_destination_key:
            existing = self.lookup.current_value(store, field, previous_destination_key)
            if existing:
                return existing

        target = (store, field)
        with self._lock_for(target):
            value = candidate
            attempt = 1
            while self._taken(store, field, value):
                attempt += 1
                value = f"{candidate}_{attempt}"
            self._reserved[target].add(value)

        if attempt > 1:
            logger.debug(
                "dedupe_replaced", store=store, field=field, original=candidate, value=value
            )
            if on_message is not None:
                on_message(
                    f"Replacing {field} {candidate} with {value}",
                    MessageLevel.INFORMATIONAL,
                )
        return value
