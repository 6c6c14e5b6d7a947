"""Tests for value deduplication."""

import threading

import pytest
from sqlalchemy import Column, Integer, MetaData, String, Table, create_engine, insert

from migrate_bridge.migration.dedupe import (
    Deduplicator,
    InMemoryUniquenessLookup,
    SqlUniquenessLookup,
)
from migrate_bridge.migration.models import MessageLevel


class TestDeduplicator:
    """Tests for Deduplicator."""

    def test_unused_value_is_kept(self):
        deduplicator = Deduplicator(InMemoryUniquenessLookup())
        messages = []

        value = deduplicator.dedupe("users", "name", "a", on_message=lambda *m: messages.append(m))

        assert value == "a"
        assert messages == []

    def test_suffixes_until_unique(self):
        lookup = InMemoryUniquenessLookup({("users", "name"): {"a", "a_2"}})
        deduplicator = Deduplicator(lookup)

        assert deduplicator.dedupe("users", "name", "a") == "a_3"

    def test_values_handed_out_stay_reserved(self):
        lookup = InMemoryUniquenessLookup({("users", "name"): {"a"}})
        deduplicator = Deduplicator(lookup)

        first = deduplicator.dedupe("users", "name", "a")
        second = deduplicator.dedupe("users", "name", "a")

        assert (first, second) == ("a_2", "a_3")

    def test_reports_replacement(self):
        lookup = InMemoryUniquenessLookup({("users", "name"): {"a"}})
        messages = []

        Deduplicator(lookup).dedupe(
            "users", "name", "a", on_message=lambda text, level: messages.append((text, level))
        )

        assert messages == [("Replacing name a with a_2", MessageLevel.INFORMATIONAL)]

    def test_previously_written_record_keeps_its_value(self):
        lookup = InMemoryUniquenessLookup()
        lookup.add("users", "name", "a", destination_key=(7,))

        value = Deduplicator(lookup).dedupe("users", "name", "a", previous_destination_key=(7,))

        assert value == "a"

    def test_targets_are_independent(self):
        lookup = InMemoryUniquenessLookup({("users", "name"): {"a"}})
        deduplicator = Deduplicator(lookup)

        assert deduplicator.dedupe("users", "mail", "a") == "a"

    def test_concurrent_callers_never_collide(self):
        deduplicator = Deduplicator(InMemoryUniquenessLookup())
        results = []
        lock = threading.Lock()

        def worker():
            value = deduplicator.dedupe("users", "name", "x")
            with lock:
                results.append(value)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(set(results)) == 8


class TestSqlUniquenessLookup:
    """Tests for SqlUniquenessLookup against a SQLite destination."""

    @pytest.fixture
    def destination_url(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'destination.db'}"
        engine = create_engine(url)
        metadata = MetaData()
        accounts = Table(
            "accounts",
            metadata,
            Column("id", Integer, primary_key=True),
            Column("name", String(64)),
        )
        metadata.create_all(engine)
        with engine.begin() as conn:
            conn.execute(insert(accounts).values(id=1, name="alice"))
        engine.dispose()
        return url

    def test_value_exists(self, destination_url):
        lookup = SqlUniquenessLookup(destination_url)

        assert lookup.value_exists("accounts", "name", "alice")
        assert not lookup.value_exists("accounts", "name", "bob")

    def test_current_value(self, destination_url):
        lookup = SqlUniquenessLookup(destination_url)

        assert lookup.current_value("accounts", "name", (1,)) == "alice"
        assert lookup.current_value("accounts", "name", (2,)) is None

    def test_dedupe_against_table(self, destination_url):
        deduplicator = Deduplicator(SqlUniquenessLookup(destination_url))

        assert deduplicator.dedupe("accounts", "name", "alice") == "alice_2"
