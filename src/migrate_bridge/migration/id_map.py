"""
Identity map persistence.

This module provides the IdMapStore class: the durable per-job record of every
source key seen, its destination key, outcome status, rollback action and
content hash, plus the per-row message log.
"""

import threading
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func

from migrate_bridge.exceptions import DuplicateDestinationError, StorageError
from migrate_bridge.migration.database import get_session, init_database
from migrate_bridge.migration.models import (
    LIVE_STATUSES,
    MapMessage,
    MapRow,
    MapStatus,
    MessageLevel,
    RollbackAction,
)
from migrate_bridge.utils.idempotency import canonical_key, decode_key, is_empty_key, key_values
from migrate_bridge.utils.logging import get_logger
from migrate_bridge.utils.retry import DEFAULT_ATTEMPTS, retry_on_busy_storage

logger = get_logger(__name__)


@dataclass(frozen=True)
class IdMapEntry:
    """Detached snapshot of one identity map row."""

    source_key: tuple
    destination_key: tuple
    status: MapStatus
    rollback_action: RollbackAction
    hash: str
    last_imported: datetime | None = None

    @property
    def needs_update(self) -> bool:
        return self.status is MapStatus.NEEDS_UPDATE

    @property
    def has_destination(self) -> bool:
        return not is_empty_key(self.destination_key)


@dataclass(frozen=True)
class IdMapMessage:
    """Detached snapshot of one stored message."""

    source_key: tuple
    level: MessageLevel
    message: str
    created_at: datetime | None = None


def _to_entry(row: MapRow) -> IdMapEntry:
    return IdMapEntry(
        source_key=decode_key(row.source_key),
        destination_key=decode_key(row.destination_key),
        status=MapStatus(row.status),
        rollback_action=RollbackAction(row.rollback_action),
        hash=row.hash or "",
        last_imported=row.last_imported,
    )


class IdMapStore:
    """
    Persistent identity map of one migration job.

    Thread-safe within a process: every operation runs under a reentrant lock
    and in its own transaction, so a save that fails leaves no partial row.

    Usage:
        id_map = IdMapStore("users", "sqlite:///state.db", ["uid"], ["id"])
        id_map.save({"uid": 7}, (42,), MapStatus.IMPORTED)
        id_map.lookup_destination_id({"uid": 7})  # (42,)
    """

    def __init__(
        self,
        job_id: str,
        database_url: str,
        source_ids: list[str],
        destination_ids: list[str] | None = None,
        track_last_imported: bool = False,
        retry_attempts: int = DEFAULT_ATTEMPTS,
    ):
        """
        Initialize the identity map of a job.

        Args:
            job_id: Owning migration job
            database_url: SQLAlchemy URL of the state store
            source_ids: Source key field names, in key order
            destination_ids: Destination key field names, in key order
            track_last_imported: Record a timestamp on every save
            retry_attempts: Attempts for writes that hit a locked database

        Raises:
            StorageError: If the state store cannot be initialized
        """
        self.job_id = job_id
        self.database_url = database_url
        self.source_ids = list(source_ids)
        self.destination_ids = list(destination_ids or ["id"])
        self.track_last_imported = track_last_imported
        self.retry_attempts = retry_attempts
        self._lock = threading.RLock()

        try:
            init_database(database_url)
        except Exception as e:
            logger.error("id_map_init_failed", job_id=job_id, error=str(e))
            raise StorageError(f"Failed to initialize identity map for '{job_id}': {e}") from e

    def __repr__(self) -> str:
        return f"IdMapStore(job_id={self.job_id!r}, database_url={self.database_url!r})"

    # Lookups

    def lookup_by_source(self, source_key: Any) -> IdMapEntry | None:
        """
        Get the map row of a source key.

        Args:
            source_key: Mapping, sequence or scalar source key

        Returns:
            Snapshot of the row, or None if the key was never seen
        """
        encoded = canonical_key(source_key)
        with self._lock:
            try:
                with get_session(self.database_url) as session:
                    row = (
                        session.query(MapRow)
                        .filter_by(job_id=self.job_id, source_key=encoded)
                        .first()
                    )
                    return _to_entry(row) if row else None

            except Exception as e:
                logger.error(
                    "id_map_lookup_failed", job_id=self.job_id, source_key=encoded, error=str(e)
                )
                raise StorageError(f"Failed to look up source key {encoded}: {e}") from e

    def lookup_by_destination(self, destination_key: Any) -> IdMapEntry | None:
        """
        Get the live map row owning a destination key.

        Args:
            destination_key: Mapping, sequence or scalar destination key

        Returns:
            Snapshot of the IMPORTED or NEEDS_UPDATE row, or None
        """
        encoded = canonical_key(destination_key)
        with self._lock:
            try:
                with get_session(self.database_url) as session:
                    row = (
                        session.query(MapRow)
                        .filter(
                            MapRow.job_id == self.job_id,
                            MapRow.destination_key == encoded,
                            MapRow.status.in_(LIVE_STATUSES),
                        )
                        .first()
                    )
                    return _to_entry(row) if row else None

            except Exception as e:
                logger.error(
                    "id_map_lookup_failed",
                    job_id=self.job_id,
                    destination_key=encoded,
                    error=str(e),
                )
                raise StorageError(f"Failed to look up destination key {encoded}: {e}") from e

    def lookup_destination_id(self, source_key: Any) -> tuple:
        """
        Get the destination key recorded for a source key.

        Returns:
            Destination key tuple, empty when unknown or not yet written
        """
        entry = self.lookup_by_source(source_key)
        return entry.destination_key if entry else ()

    # Writes

    @retry_on_busy_storage
    def save(
        self,
        source_key: Any,
        destination_key: Any,
        status: MapStatus = MapStatus.IMPORTED,
        rollback_action: RollbackAction = RollbackAction.DELETE,
        content_hash: str = "",
    ) -> None:
        """
        Insert or replace the map row of a source key.

        Args:
            source_key: Source key of the row
            destination_key: Destination key, empty for IGNORED/FAILED rows
            status: Outcome status
            rollback_action: What rollback does to the destination record
            content_hash: Content hash of the source row ('' when untracked)

        Raises:
            DuplicateDestinationError: If another live row owns the destination key
            StorageError: If the write fails
        """
        status = MapStatus(status)
        rollback_action = RollbackAction(rollback_action)
        source_values = key_values(source_key)
        encoded_source = canonical_key(source_values)
        encoded_destination = (
            None if is_empty_key(destination_key) else canonical_key(destination_key)
        )

        with self._lock:
            try:
                with get_session(self.database_url) as session:
                    if encoded_destination and status.value in LIVE_STATUSES:
                        owner = (
                            session.query(MapRow.source_key)
                            .filter(
                                MapRow.job_id == self.job_id,
                                MapRow.destination_key == encoded_destination,
                                MapRow.status.in_(LIVE_STATUSES),
                                MapRow.source_key != encoded_source,
                            )
                            .first()
                        )
                        if owner is not None:
                            raise DuplicateDestinationError(
                                f"Destination key {encoded_destination} already belongs to "
                                f"source key {owner.source_key}",
                                destination_key=decode_key(encoded_destination),
                                owner_source_key=decode_key(owner.source_key),
                            )

                    row = (
                        session.query(MapRow)
                        .filter_by(job_id=self.job_id, source_key=encoded_source)
                        .first()
                    )
                    if row is None:
                        row = MapRow(job_id=self.job_id, source_key=encoded_source)
                        session.add(row)

                    row.source_id1 = str(source_values[0]) if source_values else ""
                    row.destination_key = encoded_destination
                    row.status = status.value
                    row.rollback_action = rollback_action.value
                    row.hash = content_hash or ""
                    if self.track_last_imported:
                        row.last_imported = datetime.now(UTC).replace(tzinfo=None)

                logger.debug(
                    "id_map_saved",
                    job_id=self.job_id,
                    source_key=encoded_source,
                    destination_key=encoded_destination,
                    status=status.value,
                )

            except DuplicateDestinationError:
                raise
            except Exception as e:
                logger.error(
                    "id_map_save_failed",
                    job_id=self.job_id,
                    source_key=encoded_source,
                    error=str(e),
                )
                raise StorageError(f"Failed to save map row {encoded_source}: {e}") from e

    def delete(self, source_key: Any, messages_only: bool = False) -> None:
        """
        Delete the map row and the messages of a source key.

        Args:
            source_key: Source key of the row
            messages_only: Keep the map row, delete only its messages
        """
        encoded = canonical_key(source_key)
        with self._lock:
            try:
                with get_session(self.database_url) as session:
                    if not messages_only:
                        session.query(MapRow).filter_by(
                            job_id=self.job_id, source_key=encoded
                        ).delete(synchronize_session=False)
                    session.query(MapMessage).filter_by(
                        job_id=self.job_id, source_key=encoded
                    ).delete(synchronize_session=False)

            except Exception as e:
                logger.error("id_map_delete_failed", job_id=self.job_id, error=str(e))
                raise StorageError(f"Failed to delete map row {encoded}: {e}") from e

    def delete_bulk(self, source_keys: Iterable[Any]) -> int:
        """
        Delete many map rows and their messages in one transaction.

        Returns:
            Number of map rows deleted
        """
        encoded = [canonical_key(key) for key in source_keys]
        if not encoded:
            return 0

        with self._lock:
            try:
                with get_session(self.database_url) as session:
                    deleted = (
                        session.query(MapRow)
                        .filter(MapRow.job_id == self.job_id, MapRow.source_key.in_(encoded))
                        .delete(synchronize_session=False)
                    )
                    session.query(MapMessage).filter(
                        MapMessage.job_id == self.job_id, MapMessage.source_key.in_(encoded)
                    ).delete(synchronize_session=False)

                logger.debug("id_map_bulk_deleted", job_id=self.job_id, count=deleted)
                return deleted

            except Exception as e:
                logger.error("id_map_bulk_delete_failed", job_id=self.job_id, error=str(e))
                raise StorageError(f"Failed to bulk delete map rows: {e}") from e

    def set_update(self, source_key: Any) -> bool:
        """
        Flag one row NEEDS_UPDATE so the next import re-admits it.

        Returns:
            True if the row existed
        """
        encoded = canonical_key(source_key)
        with self._lock:
            try:
                with get_session(self.database_url) as session:
                    updated = (
                        session.query(MapRow)
                        .filter_by(job_id=self.job_id, source_key=encoded)
                        .update(
                            {MapRow.status: MapStatus.NEEDS_UPDATE.value},
                            synchronize_session=False,
                        )
                    )
                    return updated > 0

            except Exception as e:
                logger.error("id_map_set_update_failed", job_id=self.job_id, error=str(e))
                raise StorageError(f"Failed to flag {encoded} for update: {e}") from e

    def prepare_update(self) -> int:
        """
        Flag every row of the job NEEDS_UPDATE.

        Returns:
            Number of rows flagged
        """
        with self._lock:
            try:
                with get_session(self.database_url) as session:
                    updated = (
                        session.query(MapRow)
                        .filter_by(job_id=self.job_id)
                        .update(
                            {MapRow.status: MapStatus.NEEDS_UPDATE.value},
                            synchronize_session=False,
                        )
                    )
                logger.info("id_map_prepared_for_update", job_id=self.job_id, rows=updated)
                return updated

            except Exception as e:
                logger.error("id_map_prepare_update_failed", job_id=self.job_id, error=str(e))
                raise StorageError(f"Failed to flag rows for update: {e}") from e

    def destroy(self) -> int:
        """
        Remove every map row and message of the job.

        Returns:
            Number of map rows removed
        """
        with self._lock:
            try:
                with get_session(self.database_url) as session:
                    deleted = (
                        session.query(MapRow)
                        .filter_by(job_id=self.job_id)
                        .delete(synchronize_session=False)
                    )
                    session.query(MapMessage).filter_by(job_id=self.job_id).delete(
                        synchronize_session=False
                    )
                logger.warning("id_map_destroyed", job_id=self.job_id, rows=deleted)
                return deleted

            except Exception as e:
                logger.error("id_map_destroy_failed", job_id=self.job_id, error=str(e))
                raise StorageError(f"Failed to destroy identity map: {e}") from e

    # Iteration

    def iter_rows(self, batch_size: int = 500) -> Iterator[IdMapEntry]:
        """
        Iterate over the map rows of the job in insertion order.

        Rows are fetched in pages keyed on the row id, so rows may be deleted
        while iterating.
        """
        last_id = 0
        while True:
            with self._lock:
                try:
                    with get_session(self.database_url) as session:
                        page = (
                            session.query(MapRow)
                            .filter(MapRow.job_id == self.job_id, MapRow.id > last_id)
                            .order_by(MapRow.id)
                            .limit(batch_size)
                            .all()
                        )
                        entries = [(row.id, _to_entry(row)) for row in page]

                except Exception as e:
                    logger.error("id_map_iteration_failed", job_id=self.job_id, error=str(e))
                    raise StorageError(f"Failed to read identity map: {e}") from e

            if not entries:
                return
            for row_id, entry in entries:
                last_id = row_id
                yield entry

    # Counts

    def _count(self, *criteria: Any) -> int:
        with self._lock:
            try:
                with get_session(self.database_url) as session:
                    return (
                        session.query(func.count(MapRow.id))
                        .filter(MapRow.job_id == self.job_id, *criteria)
                        .scalar()
                        or 0
                    )

            except Exception as e:
                logger.error("id_map_count_failed", job_id=self.job_id, error=str(e))
                raise StorageError(f"Failed to count map rows: {e}") from e

    def processed_count(self) -> int:
        """Number of source rows with any map row."""
        return self._count()

    def imported_count(self) -> int:
        """Number of rows IMPORTED or NEEDS_UPDATE."""
        return self._count(MapRow.status.in_(LIVE_STATUSES))

    def update_count(self) -> int:
        """Number of rows flagged NEEDS_UPDATE."""
        return self._count(MapRow.status == MapStatus.NEEDS_UPDATE.value)

    def error_count(self) -> int:
        """Number of FAILED rows."""
        return self._count(MapRow.status == MapStatus.FAILED.value)

    def ignored_count(self) -> int:
        """Number of IGNORED rows."""
        return self._count(MapRow.status == MapStatus.IGNORED.value)

    def status_counts(self) -> dict[str, int]:
        """Row counts keyed by status value."""
        with self._lock:
            try:
                with get_session(self.database_url) as session:
                    results = (
                        session.query(MapRow.status, func.count(MapRow.id))
                        .filter(MapRow.job_id == self.job_id)
                        .group_by(MapRow.status)
                        .all()
                    )
                    counts = {status.value: 0 for status in MapStatus}
                    counts.update({status: count for status, count in results})
                    return counts

            except Exception as e:
                logger.error("id_map_count_failed", job_id=self.job_id, error=str(e))
                raise StorageError(f"Failed to count map rows: {e}") from e

    # Messages

    def save_message(
        self,
        source_key: Any,
        message: str,
        level: MessageLevel = MessageLevel.ERROR,
    ) -> None:
        """
        Record a message against a source key.

        Args:
            source_key: Source key the message describes
            message: Message text
            level: Severity
        """
        encoded = canonical_key(source_key)
        level = MessageLevel(level)
        with self._lock:
            try:
                with get_session(self.database_url) as session:
                    session.add(
                        MapMessage(
                            job_id=self.job_id,
                            source_key=encoded,
                            level=level.value,
                            message=message,
                        )
                    )

            except Exception as e:
                logger.error("id_map_message_failed", job_id=self.job_id, error=str(e))
                raise StorageError(f"Failed to save message for {encoded}: {e}") from e

    def messages(
        self,
        source_key: Any = None,
        level: MessageLevel | None = None,
    ) -> list[IdMapMessage]:
        """
        List stored messages, optionally for one source key and/or level.
        """
        with self._lock:
            try:
                with get_session(self.database_url) as session:
                    query = session.query(MapMessage).filter(MapMessage.job_id == self.job_id)
                    if source_key is not None:
                        query = query.filter(MapMessage.source_key == canonical_key(source_key))
                    if level is not None:
                        query = query.filter(MapMessage.level == MessageLevel(level).value)
                    return [
                        IdMapMessage(
                            source_key=decode_key(m.source_key),
                            level=MessageLevel(m.level),
                            message=m.message,
                            created_at=m.created_at,
                        )
                        for m in query.order_by(MapMessage.id).all()
                    ]

            except Exception as e:
                logger.error("id_map_messages_failed", job_id=self.job_id, error=str(e))
                raise StorageError(f"Failed to read messages: {e}") from e

    def message_count(self, source_key: Any = None) -> int:
        """Number of stored messages, optionally for one source key."""
        with self._lock:
            try:
                with get_session(self.database_url) as session:
                    query = session.query(func.count(MapMessage.id)).filter(
                        MapMessage.job_id == self.job_id
                    )
                    if source_key is not None:
                        query = query.filter(MapMessage.source_key == canonical_key(source_key))
                    return query.scalar() or 0

            except Exception as e:
                logger.error("id_map_messages_failed", job_id=self.job_id, error=str(e))
                raise StorageError(f"Failed to count messages: {e}") from e

    def clear_messages(self) -> int:
        """
        Delete every stored message of the job.

        Returns:
            Number of messages deleted
        """
        with self._lock:
            try:
                with get_session(self.database_url) as session:
                    return (
                        session.query(MapMessage)
                        .filter_by(job_id=self.job_id)
                        .delete(synchronize_session=False)
                    )

            except Exception as e:
                logger.error("id_map_clear_messages_failed", job_id=self.job_id, error=str(e))
                raise StorageError(f"Failed to clear messages: {e}") from e
