"""Tests for row admission."""

import pytest

from migrate_bridge.exceptions import RowSkipped, SourceReadError
from migrate_bridge.migration.controller import RunController
from migrate_bridge.migration.models import MapStatus, MessageLevel, RollbackAction
from migrate_bridge.migration.plugins import IterableSource
from migrate_bridge.migration.source import RowCursor
from migrate_bridge.utils.idempotency import hash_resource


def _admitted(job):
    cursor = RowCursor(job)
    cursor.rewind()
    keys = []
    while cursor.valid():
        keys.append(cursor.current().key_values[0])
        cursor.advance()
    return keys


def _mark_imported(job, rows, status=MapStatus.IMPORTED, with_hash=False):
    for row in rows:
        job.id_map.save(
            {"id": row["id"]},
            (100 + row["id"],),
            status,
            content_hash=hash_resource(row) if with_hash else "",
        )


class TestAdmission:
    """Tests for RowCursor admission decisions."""

    def test_unseen_rows_are_admitted(self, make_job, user_rows):
        job = make_job(rows=user_rows)

        assert _admitted(job) == [1, 2, 3]

    def test_imported_rows_are_not_admitted_again(self, make_job, user_rows):
        job = make_job(rows=user_rows)
        _mark_imported(job, user_rows[:2])

        assert _admitted(job) == [3]

    def test_needs_update_rows_are_always_admitted(self, make_job, user_rows):
        job = make_job(rows=user_rows, highwater_field="changed")
        _mark_imported(job, user_rows)
        job.highwater.save(100)
        job.set_update({"id": 2})

        assert _admitted(job) == [2]

    def test_changed_rows_admitted_with_change_tracking(self, make_job, user_rows):
        job = make_job(rows=user_rows, track_changes=True)
        _mark_imported(job, user_rows, with_hash=True)
        user_rows[1]["name"] = "robert"

        assert _admitted(job) == [2]

    def test_unchanged_rows_not_admitted_without_change_tracking(self, make_job, user_rows):
        job = make_job(rows=user_rows)
        _mark_imported(job, user_rows)
        user_rows[1]["name"] = "robert"

        assert _admitted(job) == []

    def test_highwater_admits_rows_above_mark(self, make_job, user_rows):
        job = make_job(rows=user_rows, highwater_field="changed")
        _mark_imported(job, user_rows)
        job.highwater.save(20)

        assert _admitted(job) == [3]

    def test_unseen_rows_below_mark_are_admitted(self, make_job, user_rows):
        rows = user_rows + [{"id": 4, "name": "dave", "changed": 5}]
        job = make_job(rows=rows, highwater_field="changed")
        _mark_imported(job, user_rows)
        job.highwater.save(20)

        assert _admitted(job) == [3, 4]

    def test_empty_mark_admits_seen_rows(self, make_job, user_rows):
        job = make_job(rows=user_rows, highwater_field="changed")
        _mark_imported(job, user_rows)

        assert _admitted(job) == [1, 2, 3]

    def test_id_list_restricts_and_forces(self, make_job, user_rows):
        job = make_job(rows=user_rows, id_list=[2, 3])
        _mark_imported(job, user_rows)

        assert _admitted(job) == [2, 3]

    def test_rows_without_a_key_are_skipped(self, make_job):
        job = make_job(rows=[{"id": None, "name": "ghost"}, {"id": 1, "name": "alice"}])

        assert _admitted(job) == [1]


class TestPrepareRow:
    """Tests for the prepare_row hook during admission."""

    def test_rejected_rows_are_recorded_ignored(self, make_job, user_rows):
        job = make_job(rows=user_rows, prepare_row_hook=lambda job, row: row.get("name") != "bob")
        cursor = RowCursor(job)
        cursor.rewind()
        while cursor.valid():
            cursor.advance()

        assert cursor.num_admitted == 2
        assert cursor.num_ignored == 1
        assert job.id_map.lookup_by_source(2).status is MapStatus.IGNORED

    def test_row_skipped_message_is_stored(self, make_job, user_rows):
        def hook(job, row):
            if row.get("id") == 1:
                raise RowSkipped("Blocked account", level="warning")

        job = make_job(rows=user_rows, prepare_row_hook=hook)

        assert _admitted(job) == [2, 3]
        messages = job.id_map.messages({"id": 1})
        assert [(m.message, m.level) for m in messages] == [
            ("Blocked account", MessageLevel.WARNING)
        ]

    def test_default_rollback_action_applied(self, make_job, user_rows):
        job = make_job(rows=user_rows, default_rollback_action="preserve")
        cursor = RowCursor(job)
        cursor.rewind()

        assert cursor.current().rollback_action is RollbackAction.PRESERVE

    def test_hook_can_override_rollback_action(self, make_job, user_rows):
        def hook(job, row):
            row.rollback_action = RollbackAction.PRESERVE

        job = make_job(rows=user_rows, prepare_row_hook=hook)
        cursor = RowCursor(job)
        cursor.rewind()

        assert cursor.current().rollback_action is RollbackAction.PRESERVE

    def test_hash_computed_only_with_change_tracking(self, make_job, user_rows):
        tracked = make_job("tracked", rows=user_rows, track_changes=True)
        untracked = make_job("untracked", rows=user_rows)

        tracked_cursor = RowCursor(tracked)
        tracked_cursor.rewind()
        untracked_cursor = RowCursor(untracked)
        untracked_cursor.rewind()

        assert tracked_cursor.current().hash == hash_resource(user_rows[0])
        assert untracked_cursor.current().hash == ""



class TestQueuedMessages:
    """Messages queued by the hook belong to the row that queued them."""

    @staticmethod
    def _messages(job, key):
        return [m.message for m in job.id_map.messages({"id": key})]

    def test_unchanged_row_drops_its_messages(self, make_job, registry, user_rows):
        def hook(job, row):
            if row.get("id") == 1:
                job.queue_message("note about row 1", MessageLevel.INFORMATIONAL)

        job = make_job(rows=user_rows, track_changes=True, prepare_row_hook=hook)
        RunController(job, registry).import_rows()
        user_rows[1]["name"] = "robert"

        summary = RunController(job, registry).import_rows()

        assert summary.processed == 1
        assert self._messages(job, 1) == ["note about row 1"]
        assert self._messages(job, 2) == []

    def test_row_below_highwater_drops_its_messages(self, make_job, registry, user_rows):
        def hook(job, row):
            job.queue_message(f"note about row {row.get('id')}", MessageLevel.INFORMATIONAL)

        job = make_job(rows=user_rows, highwater_field="changed", prepare_row_hook=hook)
        RunController(job, registry).import_rows()
        job.source = IterableSource(user_rows + [{"id": 4, "name": "dave", "changed": 40}])

        summary = RunController(job, registry).import_rows()

        assert summary.processed == 1
        assert self._messages(job, 4) == ["note about row 4"]
        assert self._messages(job, 3) == ["note about row 3"]

def test_source_failure_is_reported(make_job):
    def broken():
        raise OSError("connection refused")

    job = make_job(rows=[])
    job.source = IterableSource(broken)

    with pytest.raises(SourceReadError):
        RowCursor(job).rewind()
