"""Tests for field mapping declaration, ordering and storage."""

import pytest

from migrate_bridge.exceptions import ConfigurationError
from migrate_bridge.migration.mapping import (
    DO_NOT_MIGRATE,
    FieldMapping,
    FieldMappingSet,
    FieldMappingStore,
    order_mappings,
    resolve_callable,
    resolve_callback,
)


def _destinations(mappings):
    return [mapping.destination_field for mapping in mappings]


class TestFieldMapping:
    """Tests for FieldMapping."""

    def test_fluent_configuration(self):
        mapping = (
            FieldMapping("name", "username")
            .default_value("anonymous")
            .separator(",")
            .source_migration("users", "legacy_users")
            .callbacks("strip", str.upper)
            .dedupe("accounts", "name")
            .arguments({"format": "plain"})
            .issue_group("core")
            .description("Account name")
        )

        assert mapping.default == "anonymous"
        assert mapping.separator_value == ","
        assert mapping.source_migrations == ["users", "legacy_users"]
        assert [cb("  x ") for cb in mapping.callback_list] == ["x", "  X "]
        assert mapping.dedupe_target == ("accounts", "name")
        assert mapping.argument_map == {"format": "plain"}
        assert mapping.issue_group_value == "core"
        assert mapping.description_value == "Account name"

    def test_subfield_structure(self):
        mapping = FieldMapping("body:format", "fmt")

        assert mapping.parent_field == "body"
        assert mapping.subfield == "format"
        assert FieldMapping("body").subfield is None

    def test_dict_round_trip_keeps_named_callbacks(self):
        mapping = FieldMapping("name", "username").callbacks("strip", "lower").dedupe("t", "c")

        restored = FieldMapping.from_dict(mapping.to_dict())

        assert restored.to_dict() == mapping.to_dict()
        assert restored.callback_list[1]("ABC") == "abc"


class TestCallbacks:
    """Tests for callback resolution."""

    def test_builtin_names(self):
        assert resolve_callback("int")("42") == 42
        assert resolve_callback("title")("hello world") == "Hello World"

    def test_import_path(self):
        assert resolve_callable("os.path:basename")("/tmp/file.txt") == "file.txt"

    def test_unknown_callback(self):
        with pytest.raises(ConfigurationError):
            resolve_callback("no_such_callback")

    def test_bad_import_path(self):
        with pytest.raises(ConfigurationError):
            resolve_callable("no_such_module_xyz:thing")


class TestFieldMappingSet:
    """Tests for FieldMappingSet."""

    def test_readding_destination_replaces_in_place(self):
        mappings = FieldMappingSet("users")
        mappings.add("a", "x")
        mappings.add("b", "y")
        mappings.add("a", "z")

        merged = mappings.merged()

        assert _destinations(merged) == ["a", "b"]
        assert merged[0].source_field == "z"

    def test_remove_by_source(self):
        mappings = FieldMappingSet("users")
        mappings.add("a", "x")
        mappings.add("b", "x")
        mappings.add("c", "y")

        mappings.remove(source_field="x")

        assert _destinations(mappings.merged()) == ["c"]

    def test_unmigrated_fields(self):
        mappings = FieldMappingSet("users")
        mappings.add_unmigrated_destinations(["created"])
        mappings.add_unmigrated_sources(["legacy_flag"])

        merged = mappings.merged()

        assert all(mapping.is_unmigrated for mapping in merged)
        assert merged[0].issue_group_value == DO_NOT_MIGRATE
        assert merged[1].destination_field is None
        assert merged[1].source_field == "legacy_flag"

    def test_stored_mappings_override_coded(self):
        mappings = FieldMappingSet("users")
        mappings.add("a", "x")
        mappings.add("b", "y")
        stored = [FieldMapping("a", "stored_x"), FieldMapping("c", "w")]

        merged = mappings.merged(stored)

        assert _destinations(merged) == ["a", "b", "c"]
        assert merged[0].source_field == "stored_x"


def test_parent_rules_precede_subfield_rules():
    mappings = [
        FieldMapping("body:format", "fmt"),
        FieldMapping("title", "t"),
        FieldMapping("body", "text"),
        FieldMapping("body:summary", "teaser"),
    ]

    ordered = order_mappings(mappings)

    assert _destinations(ordered) == ["body", "body:format", "body:summary", "title"]


class TestFieldMappingStore:
    """Tests for FieldMappingStore."""

    def test_save_and_load(self, database_url):
        store = FieldMappingStore(database_url)
        store.save("users", [FieldMapping("name", "username").callbacks("strip")])

        loaded = store.load("users")

        assert len(loaded) == 1
        assert loaded[0].source_field == "username"
        assert loaded[0].mapping_source == FieldMapping.STORED
        assert store.load("articles") == []

    def test_save_replaces(self, database_url):
        store = FieldMappingStore(database_url)
        store.save("users", [FieldMapping("a", "x"), FieldMapping("b", "y")])

        store.save("users", [FieldMapping("c", "z")])

        assert _destinations(store.load("users")) == ["c"]


def test_job_mapping_management(make_job):
    job = make_job(simple_fields=["name", "mail"])
    job.save_field_mappings([FieldMapping("mail", "email")])

    job.remove_field_mapping("name")

    mappings = job.get_field_mappings()
    assert _destinations(mappings) == ["mail"]
    assert mappings[0].source_field == "email"
