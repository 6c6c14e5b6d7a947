"""
Connector contracts for sources, destinations and uniqueness lookups.

Optional capabilities are separate base classes: a destination that can
delete in bulk derives from BulkDeleteDestination, one that can create
placeholder records derives from StubDestination. The run controller checks
capabilities with isinstance.
"""

import json
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Iterator
from pathlib import Path
from typing import TYPE_CHECKING, Any

from migrate_bridge.exceptions import SourceReadError

if TYPE_CHECKING:
    from migrate_bridge.migration.job import MigrationJob
    from migrate_bridge.migration.row import Row


class SourcePlugin(ABC):
    """
    Raw row provider.

    Subclasses implement ``perform_rewind`` (start a fresh pass),
    ``get_next_row`` (return the next raw record or None when exhausted) and
    ``compute_count``. Raise SourceReadError when the backing system fails.
    """

    def fields(self) -> dict[str, str]:
        """Describe the available source fields (name to description)."""
        return {}

    @abstractmethod
    def perform_rewind(self) -> None:
        """Reset to the first row."""

    @abstractmethod
    def get_next_row(self) -> dict[str, Any] | None:
        """Return the next raw row, or None when the source is exhausted."""

    def compute_count(self) -> int | None:
        """
        Count the rows the source would yield.

        Returns:
            Row count, or None if the source is uncountable
        """
        return None


class IterableSource(SourcePlugin):
    """
    Source over an in-memory iterable of dicts.

    ``rows`` may be a list or a zero-argument callable returning a fresh
    iterable for every rewind (useful for generators and lazy queries).
    """

    def __init__(
        self,
        rows: Iterable[dict[str, Any]] | Callable[[], Iterable[dict[str, Any]]],
        fields: dict[str, str] | None = None,
    ):
        self._rows = rows
        self._fields = fields or {}
        self._iterator: Iterator[dict[str, Any]] | None = None

    def fields(self) -> dict[str, str]:
        return dict(self._fields)

    def _fresh_rows(self) -> Iterable[dict[str, Any]]:
        return self._rows() if callable(self._rows) else self._rows

    def perform_rewind(self) -> None:
        self._iterator = iter(self._fresh_rows())

    def get_next_row(self) -> dict[str, Any] | None:
        if self._iterator is None:
            self.perform_rewind()
        return next(self._iterator, None)  # type: ignore[arg-type]

    def compute_count(self) -> int | None:
        rows = self._fresh_rows()
        if isinstance(rows, (list, tuple)):
            return len(rows)
        return sum(1 for _ in rows)


class JsonFileSource(SourcePlugin):
    """
    Source reading a JSON array file or a JSON Lines file.

    Files ending in ``.jsonl`` are read line by line; anything else must
    hold a single JSON array of objects.
    """

    def __init__(self, path: str, fields: dict[str, str] | None = None):
        self.path = Path(path)
        self._fields = fields or {}
        self._iterator: Iterator[dict[str, Any]] | None = None

    def fields(self) -> dict[str, str]:
        return dict(self._fields)

    def _read(self) -> Iterator[dict[str, Any]]:
        try:
            if self.path.suffix == ".jsonl":
                with open(self.path) as f:
                    for line_number, line in enumerate(f, 1):
                        line = line.strip()
                        if not line:
                            continue
                        try:
                            yield json.loads(line)
                        except json.JSONDecodeError as e:
                            raise SourceReadError(
                                f"{self.path}:{line_number}: invalid JSON: {e}"
                            ) from e
            else:
                with open(self.path) as f:
                    data = json.load(f)
                if not isinstance(data, list):
                    raise SourceReadError(f"{self.path}: expected a JSON array of objects")
                yield from data
        except OSError as e:
            raise SourceReadError(f"Cannot read {self.path}: {e}") from e
        except json.JSONDecodeError as e:
            raise SourceReadError(f"{self.path}: invalid JSON: {e}") from e

    def perform_rewind(self) -> None:
        self._iterator = self._read()

    def get_next_row(self) -> dict[str, Any] | None:
        if self._iterator is None:
            self.perform_rewind()
        return next(self._iterator, None)  # type: ignore[arg-type]

    def compute_count(self) -> int | None:
        return sum(1 for _ in self._read())


class DestinationPlugin(ABC):
    """
    Record writer.

    ``write`` returns the destination key of the written record (a tuple,
    list, mapping or scalar) or None/empty when nothing was saved. Raise
    DestinationWriteError to record a specific status and message level.
    """

    def fields(self) -> dict[str, str]:
        """Describe the available destination fields (name to description)."""
        return {}

    @abstractmethod
    def write(self, record: dict[str, Any], row: "Row") -> Any:
        """Create or update one destination record."""

    def delete(self, destination_key: tuple) -> None:
        """Delete one destination record."""
        raise NotImplementedError(f"{type(self).__name__} does not support rollback")

    def pre_import(self) -> None:
        """Called once before an import run."""

    def post_import(self) -> None:
        """Called once after an import run."""

    def pre_rollback(self) -> None:
        """Called once before a rollback run."""

    def post_rollback(self) -> None:
        """Called once after a rollback run."""


class BulkDeleteDestination(DestinationPlugin):
    """Destination able to delete many records in one call."""

    @abstractmethod
    def bulk_delete(self, destination_keys: list[tuple]) -> None:
        """Delete the records of all given destination keys."""

    def delete(self, destination_key: tuple) -> None:
        self.bulk_delete([destination_key])


class StubDestination(DestinationPlugin):
    """Destination able to create placeholder records for forward references."""

    @abstractmethod
    def create_stub(self, source_key: tuple, requested_by: "MigrationJob") -> Any:
        """
        Create a minimal placeholder record for a not-yet-migrated source key.

        Args:
            source_key: Source key values of the referenced row
            requested_by: Job whose row holds the reference

        Returns:
            Destination key of the placeholder, or None if none was created
        """


class UniquenessLookup(ABC):
    """Answers uniqueness questions about values already in a destination store."""

    @abstractmethod
    def value_exists(self, store: str, field: str, value: Any) -> bool:
        """True if ``value`` is already used in ``store.field``."""

    def current_value(self, store: str, field: str, destination_key: tuple) -> Any:
        """Value of ``store.field`` on an existing destination record, if known."""
        return None
