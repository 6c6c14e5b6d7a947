"""Tests for the field pipeline."""

import pytest

from migrate_bridge.exceptions import ConfigurationError
from migrate_bridge.migration.dedupe import InMemoryUniquenessLookup
from migrate_bridge.migration.mapping import FieldMapping
from migrate_bridge.migration.models import MessageLevel
from migrate_bridge.migration.pipeline import FieldPipeline, assign_field, resolve_arguments
from migrate_bridge.migration.row import FieldValues, Row


def _row(**source):
    return Row(source=source, source_key={"id": source.get("id", 1)})


@pytest.fixture
def pipeline(registry):
    return FieldPipeline(registry)


class TestFieldPipeline:
    """Tests for FieldPipeline.apply."""

    def test_copies_and_defaults(self, make_job, pipeline):
        job = make_job()
        job.add_field_mapping("name", "name")
        job.add_field_mapping("status").default_value("active")
        job.add_field_mapping("nick", "nickname").default_value("none")
        job.add_field_mapping("email", "mail")

        row = _row(id=1, name="alice")
        record = pipeline.apply(job, row)

        assert record == {"name": "alice", "status": "active", "nick": "none"}
        assert row.destination == record

    def test_source_value_wins_over_default(self, make_job, pipeline):
        job = make_job()
        job.add_field_mapping("nick", "nickname").default_value("none")

        assert pipeline.apply(job, _row(id=1, nickname="al")) == {"nick": "al"}

    def test_unmigrated_rules_are_skipped(self, make_job, pipeline):
        job = make_job()
        job.add_unmigrated_sources(["legacy"])
        job.add_unmigrated_destinations(["created"])

        assert pipeline.apply(job, _row(id=1, legacy="x")) == {}

    def test_separator_and_callbacks(self, make_job, pipeline):
        job = make_job()
        job.add_field_mapping("tags", "tags").separator(",")
        job.add_field_mapping("name", "name").callbacks("strip", "upper")

        record = pipeline.apply(job, _row(id=1, tags="a,b,c", name="  bob "))

        assert record == {"tags": ["a", "b", "c"], "name": "BOB"}

    def test_subfields_become_arguments_of_parent(self, make_job, pipeline):
        job = make_job()
        job.add_field_mapping("body:format", "fmt")
        job.add_field_mapping("body", "text")

        record = pipeline.apply(job, _row(id=1, text="hello", fmt="html"))

        assert isinstance(record["body"], FieldValues)
        assert list(record["body"]) == ["hello"]
        assert record["body"].arguments == {"format": "html"}

    def test_arguments(self, make_job, pipeline):
        job = make_job()
        job.add_field_mapping("body", "text").arguments(
            {"format": {"source_field": "fmt"}, "lang": {"default_value": "en"}, "weight": 3}
        )

        record = pipeline.apply(job, _row(id=1, text="hello", fmt="html"))

        assert list(record["body"]) == ["hello"]
        assert record["body"].arguments == {"format": "html", "lang": "en", "weight": 3}

    def test_stored_mappings_apply(self, make_job, pipeline):
        job = make_job()
        job.add_field_mapping("name", "name")
        job.save_field_mappings([FieldMapping("name", "display_name")])

        record = pipeline.apply(job, _row(id=1, name="alice", display_name="Alice A."))

        assert record == {"name": "Alice A."}

    def test_dedupe_uses_job_lookup_and_records_message(self, make_job, pipeline):
        lookup = InMemoryUniquenessLookup({("accounts", "name"): {"alice"}})
        job = make_job(uniqueness=lookup)
        job.add_field_mapping("name", "name").dedupe("accounts", "name")

        record = pipeline.apply(job, _row(id=1, name="alice"))

        assert record == {"name": "alice_2"}
        messages = job.id_map.messages({"id": 1})
        assert [(m.message, m.level) for m in messages] == [
            ("Replacing name alice with alice_2", MessageLevel.INFORMATIONAL)
        ]

    def test_dedupe_without_lookup_keeps_value(self, make_job, pipeline):
        job = make_job()
        job.add_field_mapping("name", "name").dedupe("accounts", "name")

        assert pipeline.apply(job, _row(id=1, name="alice")) == {"name": "alice"}


def test_assign_field_appends_to_existing_value():
    record = {}
    mapping = FieldMapping("tags", "t")

    assign_field(record, mapping, "a")
    assign_field(record, mapping, "b")

    assert record == {"tags": ["a", "b"]}



def test_assign_field_copies_list_from_source():
    source_tags = ["a", "b"]
    record = {}

    assign_field(record, FieldMapping("tags", "tags"), source_tags)
    assign_field(record, FieldMapping("tags", "extra"), "c")

    assert record == {"tags": ["a", "b", "c"]}
    assert source_tags == ["a", "b"]


def test_assign_field_needs_destination():
    with pytest.raises(ConfigurationError, match="legacy_flag"):
        assign_field({}, FieldMapping(None, "legacy_flag"), "x")

def test_resolve_arguments_ignores_missing_source_field():
    row = _row(id=1)

    resolved = resolve_arguments({"format": {"source_field": "fmt"}}, row)

    assert resolved == {"format": {"source_field": "fmt"}}
