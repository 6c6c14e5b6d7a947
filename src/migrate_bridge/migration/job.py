"""
Migration jobs and the job registry.

A MigrationJob binds one source connector to one destination connector,
together with its field mappings, identity map, highwater mark and options.
Jobs reference each other by id through a JobRegistry passed explicitly to
the components that need it.
"""

from collections.abc import Callable, Iterable, Iterator
from typing import Any

from migrate_bridge.exceptions import ConfigurationError, RowSkipped, StubCreationError
from migrate_bridge.migration.highwater import HighwaterStore
from migrate_bridge.migration.history import RunHistory
from migrate_bridge.migration.id_map import IdMapStore
from migrate_bridge.migration.mapping import FieldMapping, FieldMappingSet, FieldMappingStore
from migrate_bridge.migration.models import (
    MapStatus,
    MessageLevel,
    RollbackAction,
    SystemOfRecord,
)
from migrate_bridge.migration.plugins import (
    DestinationPlugin,
    SourcePlugin,
    StubDestination,
    UniquenessLookup,
)
from migrate_bridge.migration.row import Row
from migrate_bridge.utils.idempotency import is_empty_key, key_values
from migrate_bridge.utils.logging import get_logger
from migrate_bridge.utils.retry import DEFAULT_ATTEMPTS

logger = get_logger(__name__)

PrepareRowHook = Callable[["MigrationJob", Row], bool | None]


class MigrationJob:
    """
    One source-to-destination migration.

    Subclasses may override ``prepare_key``, ``prepare_row`` and
    ``create_stub``; configuration-driven jobs pass a ``prepare_row_hook``
    instead.
    """

    def __init__(
        self,
        job_id: str,
        source: SourcePlugin,
        destination: DestinationPlugin,
        database_url: str,
        source_ids: list[str],
        destination_ids: list[str] | None = None,
        highwater_field: str | None = None,
        track_changes: bool = False,
        track_last_imported: bool = False,
        id_list: Iterable[Any] = (),
        rollback_batch_size: int = 50,
        default_rollback_action: RollbackAction | str = RollbackAction.DELETE,
        system_of_record: SystemOfRecord | str = SystemOfRecord.SOURCE,
        skip_count: bool = False,
        cache_counts: bool = False,
        uniqueness: UniquenessLookup | None = None,
        dependencies: Iterable[str] = (),
        prepare_row_hook: PrepareRowHook | None = None,
        retry_attempts: int = DEFAULT_ATTEMPTS,
    ):
        if not source_ids:
            raise ConfigurationError(f"Job '{job_id}' needs at least one source key field")
        if rollback_batch_size < 1:
            raise ConfigurationError("rollback_batch_size must be at least 1")

        self.id = job_id
        self.source = source
        self.destination = destination
        self.database_url = database_url
        self.source_ids = list(source_ids)
        self.destination_ids = list(destination_ids or ["id"])
        self.highwater_field = highwater_field
        self.track_changes = track_changes
        self.id_list = [str(value) for value in id_list]
        self.rollback_batch_size = rollback_batch_size
        self.default_rollback_action = RollbackAction(default_rollback_action)
        self.system_of_record = SystemOfRecord(system_of_record)
        self.skip_count = skip_count
        self.cache_counts = cache_counts
        self.uniqueness = uniqueness
        self.dependencies = list(dependencies)
        self.prepare_row_hook = prepare_row_hook

        self.id_map = IdMapStore(
            job_id,
            database_url,
            self.source_ids,
            self.destination_ids,
            track_last_imported=track_last_imported,
            retry_attempts=retry_attempts,
        )
        self.highwater = HighwaterStore(job_id, database_url, retry_attempts=retry_attempts)
        self.field_mappings = FieldMappingSet(job_id)
        self._mapping_store = FieldMappingStore(database_url)
        self._stored_mappings: list[FieldMapping] | None = None
        self._queued_messages: list[tuple[str, MessageLevel]] = []
        self._cached_count: int | None = None

    def __repr__(self) -> str:
        return f"MigrationJob(id={self.id!r})"

    # Field mappings

    def add_field_mapping(
        self,
        destination_field: str | None = None,
        source_field: str | None = None,
        warn_on_override: bool = True,
    ) -> FieldMapping:
        """Add a coded field mapping and return it for fluent configuration."""
        return self.field_mappings.add(destination_field, source_field, warn_on_override)

    def remove_field_mapping(
        self, destination_field: str | None = None, source_field: str | None = None
    ) -> None:
        self.field_mappings.remove(destination_field, source_field)

    def add_simple_mappings(self, fields: Iterable[str]) -> None:
        self.field_mappings.add_simple(fields)

    def add_unmigrated_destinations(self, fields: Iterable[str], issue_group: str = "DNM") -> None:
        self.field_mappings.add_unmigrated_destinations(fields, issue_group)

    def add_unmigrated_sources(self, fields: Iterable[str], issue_group: str = "DNM") -> None:
        self.field_mappings.add_unmigrated_sources(fields, issue_group)

    def load_field_mappings(self) -> list[FieldMapping]:
        if self._stored_mappings is None:
            self._stored_mappings = self._mapping_store.load(self.id)
        return self._stored_mappings

    def save_field_mappings(self, mappings: Iterable[FieldMapping]) -> int:
        """Persist mappings that override the coded ones."""
        mappings = list(mappings)
        count = self._mapping_store.save(self.id, mappings)
        self._stored_mappings = None
        return count

    def get_field_mappings(self) -> list[FieldMapping]:
        """Coded and stored mappings merged into execution order."""
        return self.field_mappings.merged(self.load_field_mappings())

    # Row hooks

    def prepare_key(self, raw: dict[str, Any]) -> dict[str, Any]:
        """Extract the source key of a raw row, in key field order."""
        return {name: raw.get(name) for name in self.source_ids}

    def prepare_row(self, row: Row) -> bool:
        """
        Inspect or adjust a candidate row before it is admitted.

        Return False, or raise RowSkipped, to record the row as IGNORED.
        """
        if self.prepare_row_hook is None:
            return True
        result = self.prepare_row_hook(self, row)
        return result is not False

    def run_prepare_row(self, row: Row) -> bool:
        """Call prepare_row, turning RowSkipped into a queued message."""
        row.rollback_action = self.default_rollback_action
        try:
            return self.prepare_row(row)
        except RowSkipped as skip:
            if skip.message:
                self.queue_message(skip.message, MessageLevel(skip.level))
            return False

    def create_stub(self, source_key: tuple, requested_by: "MigrationJob") -> tuple:
        """
        Create a placeholder destination record for a source key.

        Returns:
            Destination key of the placeholder, or () if stubs are unsupported
        """
        if not isinstance(self.destination, StubDestination):
            return ()
        return key_values(self.destination.create_stub(source_key, requested_by))

    def create_stub_wrapper(self, source_key: tuple, requested_by: "MigrationJob") -> tuple:
        """
        Create a stub and record it in the identity map as NEEDS_UPDATE.

        The real row overwrites the stub when this job imports it.
        """
        try:
            destination_key = self.create_stub(tuple(source_key), requested_by)
        except StubCreationError as e:
            logger.warning(
                "stub_creation_failed",
                job_id=self.id,
                requested_by=requested_by.id,
                source_key=list(source_key),
                error=str(e),
            )
            return ()

        if is_empty_key(destination_key):
            return ()

        self.id_map.save(
            dict(zip(self.source_ids, source_key, strict=False)),
            destination_key,
            MapStatus.NEEDS_UPDATE,
            RollbackAction.DELETE,
        )
        logger.info(
            "stub_created",
            job_id=self.id,
            requested_by=requested_by.id,
            source_key=list(source_key),
            destination_key=list(destination_key),
        )
        return destination_key

    # Messages

    def queue_message(self, message: str, level: MessageLevel = MessageLevel.ERROR) -> None:
        """Hold a message until the current row's key is known to the map."""
        self._queued_messages.append((message, MessageLevel(level)))

    def clear_queued_messages(self) -> None:
        self._queued_messages = []

    def save_queued_messages(self, source_key: Any) -> None:
        queued, self._queued_messages = self._queued_messages, []
        for message, level in queued:
            self.id_map.save_message(source_key, message, level)

    def save_message(
        self, source_key: Any, message: str, level: MessageLevel = MessageLevel.ERROR
    ) -> None:
        self.id_map.save_message(source_key, message, level)

    # Counts and state

    def source_count(self, refresh: bool = False) -> int | None:
        """
        Number of rows the source holds.

        Returns:
            Row count, or None when counting is skipped or unsupported
        """
        if self.skip_count:
            return None
        if self.cache_counts and not refresh and self._cached_count is not None:
            return self._cached_count

        count = self.source.compute_count()
        if self.cache_counts:
            self._cached_count = count
        return count

    def prepare_update(self) -> int:
        """Flag every previously seen row for re-import."""
        return self.id_map.prepare_update()

    def set_update(self, source_key: Any) -> bool:
        """Flag one row for re-import."""
        return self.id_map.set_update(source_key)

    def deregister(self) -> None:
        """Remove every trace of the job from the state store."""
        self.id_map.destroy()
        self.highwater.reset()
        self._mapping_store.delete(self.id)
        RunHistory(self.database_url).delete(self.id)
        self._stored_mappings = None
        logger.warning("job_deregistered", job_id=self.id)


class JobRegistry:
    """
    Jobs addressable by id.

    Passed explicitly to the resolver and the run controller so jobs can
    resolve references through each other's identity maps.
    """

    def __init__(self, jobs: Iterable[MigrationJob] = ()):
        self._jobs: dict[str, MigrationJob] = {}
        for job in jobs:
            self.register(job)

    def register(self, job: MigrationJob) -> MigrationJob:
        if job.id in self._jobs:
            raise ConfigurationError(f"Job '{job.id}' is already registered")
        self._jobs[job.id] = job
        return job

    def get(self, job_id: str) -> MigrationJob:
        try:
            return self._jobs[job_id]
        except KeyError as e:
            raise ConfigurationError(f"Unknown migration job '{job_id}'") from e

    def deregister(self, job_id: str) -> None:
        """Erase a job's state and forget it."""
        job = self.get(job_id)
        job.deregister()
        del self._jobs[job_id]

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def __iter__(self) -> Iterator[MigrationJob]:
        return iter(self._jobs.values())

    def __len__(self) -> int:
        return len(self._jobs)

    def ids(self) -> list[str]:
        return list(self._jobs)

    def dependency_order(self, job_ids: Iterable[str]) -> list[MigrationJob]:
        """
        Order the requested jobs so each follows the requested jobs it depends on.

        Raises:
            ConfigurationError: On unknown jobs or circular dependencies
        """
        ordered: list[MigrationJob] = []
        visiting: set[str] = set()
        done: set[str] = set()

        def visit(job_id: str) -> None:
            if job_id in done:
                return
            if job_id in visiting:
                raise ConfigurationError(f"Circular job dependency involving '{job_id}'")
            visiting.add(job_id)
            job = self.get(job_id)
            for dependency in job.dependencies:
                if dependency in requested:
                    visit(dependency)
            visiting.discard(job_id)
            done.add(job_id)
            ordered.append(job)

        requested = list(job_ids)
        for job_id in requested:
            visit(job_id)
        return ordered
