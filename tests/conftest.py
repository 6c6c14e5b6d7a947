"""Shared fixtures for Migrate Bridge tests."""

from typing import Any

import pytest

from migrate_bridge.exceptions import DestinationWriteError
from migrate_bridge.migration.database import dispose_engines
from migrate_bridge.migration.job import JobRegistry, MigrationJob
from migrate_bridge.migration.models import MessageLevel
from migrate_bridge.migration.plugins import (
    BulkDeleteDestination,
    DestinationPlugin,
    IterableSource,
    StubDestination,
)
from migrate_bridge.reporting.progress import ProgressSummary


class RecordingDestination(DestinationPlugin):
    """In-memory destination that remembers every call."""

    def __init__(self, fail_when=None):
        self.records: dict[int, dict[str, Any]] = {}
        self.writes: list[dict[str, Any]] = []
        self.deleted: list[tuple] = []
        self.hooks: list[str] = []
        self.fail_when = fail_when
        self.on_write = None
        self._next_id = 100

    def write(self, record, row):
        if self.fail_when is not None and self.fail_when(record, row):
            raise DestinationWriteError(f"Rejected row {row.key_values[0]}")
        self.writes.append(dict(record))
        if self.on_write is not None:
            self.on_write(record, row)

        previous = row.previous_destination_key
        if previous:
            self.records[previous[0]] = dict(record)
            return previous
        self._next_id += 1
        self.records[self._next_id] = dict(record)
        return (self._next_id,)

    def delete(self, destination_key):
        self.deleted.append(tuple(destination_key))
        self.records.pop(destination_key[0], None)

    def pre_import(self):
        self.hooks.append("pre_import")

    def post_import(self):
        self.hooks.append("post_import")

    def pre_rollback(self):
        self.hooks.append("pre_rollback")

    def post_rollback(self):
        self.hooks.append("post_rollback")


class BulkRecordingDestination(RecordingDestination, BulkDeleteDestination):
    """Recording destination that deletes in batches."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.batches: list[list[tuple]] = []

    def bulk_delete(self, destination_keys):
        self.batches.append(list(destination_keys))
        for key in destination_keys:
            self.records.pop(key[0], None)

    def delete(self, destination_key):
        self.bulk_delete([destination_key])


class StubRecordingDestination(RecordingDestination, StubDestination):
    """Recording destination that creates placeholder records."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.stubs: list[tuple] = []

    def create_stub(self, source_key, requested_by):
        self.stubs.append(tuple(source_key))
        self._next_id += 1
        self.records[self._next_id] = {"stub": True}
        return self._next_id


class RecordingDiagnostics:
    """Diagnostics sink collecting everything it receives."""

    def __init__(self):
        self.summaries: list[ProgressSummary] = []
        self.messages: list[tuple[str, MessageLevel]] = []
        self.row_messages: list[tuple[str, tuple, str, MessageLevel]] = []

    def progress(self, summary):
        self.summaries.append(summary)

    def message(self, text, level=MessageLevel.INFORMATIONAL):
        self.messages.append((text, level))

    def row_message(self, job_id, source_key, text, level=MessageLevel.ERROR):
        self.row_messages.append((job_id, tuple(source_key), text, level))


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def database_url(tmp_path):
    """SQLite state store in a temporary directory."""
    yield f"sqlite:///{tmp_path / 'state.db'}"
    dispose_engines()


@pytest.fixture
def registry():
    return JobRegistry()


@pytest.fixture
def diagnostics():
    return RecordingDiagnostics()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_job(database_url, registry):
    """Factory building a job over in-memory rows and registering it."""

    def _make(
        job_id: str = "users",
        rows: list[dict[str, Any]] | None = None,
        destination: DestinationPlugin | None = None,
        source_ids: list[str] | None = None,
        simple_fields: list[str] | None = None,
        **options: Any,
    ) -> MigrationJob:
        job = MigrationJob(
            job_id,
            IterableSource(rows if rows is not None else []),
            destination or RecordingDestination(),
            database_url=database_url,
            source_ids=source_ids or ["id"],
            **options,
        )
        if simple_fields:
            job.add_simple_mappings(simple_fields)
        registry.register(job)
        return job

    return _make


@pytest.fixture
def user_rows():
    return [
        {"id": 1, "name": "alice", "changed": 10},
        {"id": 2, "name": "bob", "changed": 20},
        {"id": 3, "name": "carol", "changed": 30},
    ]
