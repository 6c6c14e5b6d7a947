"""
Row admission.

RowCursor wraps a job's source connector and yields only the rows a run
should process, deciding per row from the identity map, the highwater mark,
change tracking and the id list.
"""

from typing import TYPE_CHECKING, Any

from migrate_bridge.exceptions import SourceReadError
from migrate_bridge.migration.highwater import highwater_exceeds, is_empty_mark
from migrate_bridge.migration.models import MapStatus
from migrate_bridge.migration.row import Row
from migrate_bridge.utils.logging import get_logger

if TYPE_CHECKING:
    from migrate_bridge.migration.job import MigrationJob

logger = get_logger(__name__)


class RowCursor:
    """
    Lazy, single-pass sequence of admitted rows.

    Admission, in order:

    1. With an id list, rows whose first key component is not listed are
       skipped; listed rows are always prepared and admitted.
    2. Rows never seen before are admitted.
    3. Rows flagged NEEDS_UPDATE are admitted.
    4. Without a highwater field, seen rows are admitted only when change
       tracking is on and their content hash changed.
    5. With a highwater field, an empty mark admits everything; otherwise
       only rows whose highwater value exceeds the mark are admitted.

    Every admitted candidate goes through the job's ``prepare_row``; a
    rejection records the row as IGNORED.

    Usage:
        cursor = RowCursor(job)
        cursor.rewind()
        while cursor.valid():
            row = cursor.current()
            ...
            cursor.advance()
    """

    def __init__(self, job: "MigrationJob"):
        self.job = job
        self.num_admitted = 0
        self.num_ignored = 0
        self.original_highwater: Any = ""
        self._current: Row | None = None

    def rewind(self) -> None:
        """
        Start a fresh pass and position on the first admitted row.

        Raises:
            SourceReadError: If the source cannot be rewound or read
        """
        self.num_admitted = 0
        self.num_ignored = 0
        self._current = None
        self.original_highwater = self.job.highwater.get() if self.job.highwater_field else ""

        try:
            self.job.source.perform_rewind()
        except SourceReadError:
            raise
        except Exception as e:
            raise SourceReadError(f"Failed to rewind source of '{self.job.id}': {e}") from e

        self.advance()

    def valid(self) -> bool:
        return self._current is not None

    def current(self) -> Row:
        if self._current is None:
            raise IndexError("Cursor is exhausted")
        return self._current

    def advance(self) -> None:
        """
        Move to the next admitted row, or to the end.

        Raises:
            SourceReadError: If the source fails mid-stream
        """
        self._current = None
        self.job.clear_queued_messages()
        while True:
            raw = self._next_raw()
            if raw is None:
                return

            source_key = self.job.prepare_key(raw)
            if any(value is None for value in source_key.values()):
                logger.warning(
                    "row_missing_key",
                    job_id=self.job.id,
                    source_ids=self.job.source_ids,
                )
                continue

            row = Row(source=dict(raw), source_key=source_key)
            if self._admit(row):
                self._current = row
                return

    def _next_raw(self) -> dict[str, Any] | None:
        try:
            return self.job.source.get_next_row()
        except SourceReadError:
            raise
        except Exception as e:
            raise SourceReadError(f"Failed to read source of '{self.job.id}': {e}") from e

    def _admit(self, row: Row) -> bool:
        job = self.job

        if job.id_list:
            if str(row.key_values[0]) not in job.id_list:
                return False
            row.id_map = job.id_map.lookup_by_source(row.source_key)
            return self._prepare(row)

        row.id_map = job.id_map.lookup_by_source(row.source_key)

        if row.id_map is None:
            return self._prepare(row)

        if row.id_map.status is MapStatus.NEEDS_UPDATE:
            return self._prepare(row)

        if not job.highwater_field:
            if not job.track_changes:
                return False
            if not self._prepare(row):
                return False
            if not row.changed():
                self._unadmit()
                return False
            return True

        if is_empty_mark(self.original_highwater):
            return self._prepare(row)

        if not self._prepare(row):
            return False
        if highwater_exceeds(row.get(job.highwater_field), self.original_highwater):
            return True
        self._unadmit()
        return False

    def _unadmit(self) -> None:
        """Take back a row that passed the hook but is unchanged."""
        self.num_admitted -= 1
        self.job.clear_queued_messages()

    def _prepare(self, row: Row) -> bool:
        """Run the job's row hook; record rejected rows as IGNORED."""
        job = self.job

        if not job.run_prepare_row(row):
            job.id_map.delete(row.source_key)
            job.save_queued_messages(row.source_key)
            job.id_map.save(row.source_key, (), MapStatus.IGNORED, row.rollback_action)
            self.num_ignored += 1
            logger.debug("row_ignored", job_id=job.id, source_key=list(row.key_values))
            return False

        if job.track_changes:
            row.original_hash = row.id_map.hash if row.id_map else ""
            row.rehash()
        else:
            row.hash = ""

        self.num_admitted += 1
        return True
