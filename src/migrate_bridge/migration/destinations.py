"""
Built-in destination connectors.

SqlTableDestination writes destination records as rows of a table in any
SQLAlchemy-supported database.
"""

import json
import threading
from typing import TYPE_CHECKING, Any

from sqlalchemy import MetaData, Table, delete, insert, update
from sqlalchemy.exc import NoSuchTableError

from migrate_bridge.exceptions import (
    ConfigurationError,
    DestinationWriteError,
    StubCreationError,
)
from migrate_bridge.migration.database import create_database_engine
from migrate_bridge.migration.plugins import BulkDeleteDestination, StubDestination
from migrate_bridge.utils.logging import get_logger

if TYPE_CHECKING:
    from migrate_bridge.migration.job import MigrationJob
    from migrate_bridge.migration.row import Row

logger = get_logger(__name__)


def _column_value(value: Any) -> Any:
    """Flatten multi-valued fields into something a column can hold."""
    if isinstance(value, (list, dict)):
        return json.dumps(value, default=str)
    return value


class SqlTableDestination(BulkDeleteDestination, StubDestination):
    """
    Destination writing rows of one database table.

    Records are inserted on first import and updated in place when the row
    already has a destination key. Rollback deletes in bulk. When
    ``stub_values`` is set, forward references create placeholder rows with
    those column values.
    """

    def __init__(
        self,
        database_url: str,
        table: str,
        key_column: str = "id",
        stub_values: dict[str, Any] | None = None,
    ):
        self.database_url = database_url
        self.table_name = table
        self.key_column = key_column
        self.stub_values = stub_values
        self._engine = create_database_engine(database_url)
        self._table: Table | None = None
        self._lock = threading.Lock()

    @property
    def table(self) -> Table:
        with self._lock:
            if self._table is None:
                try:
                    self._table = Table(
                        self.table_name, MetaData(), autoload_with=self._engine
                    )
                except NoSuchTableError as e:
                    raise ConfigurationError(
                        f"Destination table '{self.table_name}' does not exist"
                    ) from e
            return self._table

    def fields(self) -> dict[str, str]:
        return {column.name: str(column.type) for column in self.table.columns}

    def _values(self, record: dict[str, Any]) -> dict[str, Any]:
        columns = self.table.columns
        unknown = set(record) - set(columns.keys())
        if unknown:
            logger.debug(
                "destination_fields_dropped", table=self.table_name, fields=sorted(unknown)
            )
        return {name: _column_value(value) for name, value in record.items() if name in columns}

    def write(self, record: dict[str, Any], row: "Row") -> Any:
        table = self.table
        values = self._values(record)
        key_column = table.c[self.key_column]
        previous = row.previous_destination_key

        try:
            with self._engine.begin() as conn:
                if previous:
                    values.pop(self.key_column, None)
                    if values:
                        conn.execute(update(table).where(key_column == previous[0]).values(values))
                    return previous
                result = conn.execute(insert(table).values(values))
                return tuple(result.inserted_primary_key or ())
        except Exception as e:
            raise DestinationWriteError(f"Failed to write {self.table_name}: {e}") from e

    def bulk_delete(self, destination_keys: list[tuple]) -> None:
        ids = [key[0] for key in destination_keys if key]
        if not ids:
            return
        table = self.table
        with self._engine.begin() as conn:
            conn.execute(delete(table).where(table.c[self.key_column].in_(ids)))
        logger.debug("destination_bulk_deleted", table=self.table_name, count=len(ids))

    def create_stub(self, source_key: tuple, requested_by: "MigrationJob") -> Any:
        if self.stub_values is None:
            return None
        try:
            with self._engine.begin() as conn:
                result = conn.execute(insert(self.table).values(dict(self.stub_values)))
                return tuple(result.inserted_primary_key or ())
        except Exception as e:
            raise StubCreationError(f"Failed to create stub in {self.table_name}: {e}") from e
