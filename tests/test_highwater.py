"""Tests for highwater comparison and storage."""

import pytest

from migrate_bridge.migration.highwater import (
    EMPTY_MARK,
    HighwaterStore,
    highwater_exceeds,
    is_empty_mark,
)


@pytest.mark.parametrize(
    ("value", "mark", "expected"),
    [
        (5, EMPTY_MARK, True),
        (5, None, True),
        (11, 10, True),
        (10, 10, False),
        (9, 10, False),
        ("100", "99", True),
        ("2024-02-01T00:00:00", "2024-01-31T23:59:59", True),
        ("2024-01-01", "2024-01-02", False),
        (None, 10, False),
    ],
)
def test_highwater_exceeds(value, mark, expected):
    assert highwater_exceeds(value, mark) is expected


def test_is_empty_mark():
    assert is_empty_mark("")
    assert is_empty_mark(None)
    assert not is_empty_mark(0)


class TestHighwaterStore:
    """Tests for HighwaterStore."""

    def test_starts_empty(self, database_url):
        store = HighwaterStore("users", database_url)

        assert store.get() == EMPTY_MARK

    def test_only_moves_forward(self, database_url):
        store = HighwaterStore("users", database_url)

        assert store.save(20) is True
        assert store.save(10) is False
        assert store.get() == 20
        assert store.save(30) is True
        assert store.get() == 30

    def test_force_moves_backwards(self, database_url):
        store = HighwaterStore("users", database_url)
        store.save(20)

        assert store.save(5, force=True) is True
        assert store.get() == 5

    def test_reset(self, database_url):
        store = HighwaterStore("users", database_url)
        store.save(20)

        store.reset()

        assert is_empty_mark(store.get())

    def test_marks_are_per_job(self, database_url):
        users = HighwaterStore("users", database_url)
        articles = HighwaterStore("articles", database_url)
        users.save(20)

        assert articles.get() == EMPTY_MARK
