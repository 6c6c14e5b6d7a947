"""Tests for the command-line interface."""

import json

import pytest
import yaml
from click.testing import CliRunner
from sqlalchemy import Column, Integer, MetaData, String, Table, create_engine, func, select

from migrate_bridge.cli.commands.migrate import EXIT_INCOMPLETE
from migrate_bridge.cli.main import cli
from migrate_bridge.migration.database import dispose_engines


@pytest.fixture
def destination_url(tmp_path):
    url = f"sqlite:///{tmp_path / 'destination.db'}"
    engine = create_engine(url)
    metadata = MetaData()
    for name in ("users", "articles"):
        Table(
            name,
            metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("title", String(64)),
            Column("uid", Integer),
        )
    metadata.create_all(engine)
    engine.dispose()
    return url


@pytest.fixture
def config_path(tmp_path, destination_url):
    users = tmp_path / "users.json"
    users.write_text(json.dumps([{"id": 1, "name": "alice"}, {"id": 2, "name": "bob"}]))
    articles = tmp_path / "articles.jsonl"
    articles.write_text(
        "\n".join(
            json.dumps(row)
            for row in [
                {"id": 10, "title": "Hello", "author": 1},
                {"id": 11, "title": "Again", "author": 2},
                {"id": 12, "title": "Bye", "author": 1},
            ]
        )
    )

    def destination(table):
        return {
            "plugin": "sql_table",
            "options": {"database_url": destination_url, "table": table},
        }

    config = {
        "state": {"db_path": str(tmp_path / "state.db")},
        "jobs": [
            {
                "id": "articles",
                "source": {"plugin": "json_file", "options": {"path": str(articles)}},
                "destination": destination("articles"),
                "source_ids": ["id"],
                "dependencies": ["users"],
                "field_mappings": [
                    {"destination": "title", "source": "title"},
                    {"destination": "uid", "source": "author", "source_migration": ["users"]},
                ],
            },
            {
                "id": "users",
                "source": {"plugin": "json_file", "options": {"path": str(users)}},
                "destination": destination("users"),
                "source_ids": ["id"],
                "field_mappings": [{"destination": "title", "source": "name"}],
            },
        ],
    }
    path = tmp_path / "migrate.yaml"
    path.write_text(yaml.safe_dump(config))
    yield path
    dispose_engines()


@pytest.fixture
def run(config_path):
    runner = CliRunner()

    def _run(*args, **kwargs):
        return runner.invoke(cli, ["--config", str(config_path), *args], **kwargs)

    return _run


def _count(url, table_name):
    engine = create_engine(url)
    table = Table(table_name, MetaData(), autoload_with=engine)
    with engine.connect() as conn:
        count = conn.execute(select(func.count()).select_from(table)).scalar()
    engine.dispose()
    return count


class TestImportCommand:
    """Tests for the import command."""

    def test_imports_in_dependency_order(self, run, destination_url):
        result = run("import", "articles", "users")

        assert result.exit_code == 0, result.output
        assert _count(destination_url, "users") == 2
        assert _count(destination_url, "articles") == 3
        assert "Imported 2 job(s)" in result.output

    def test_limit_items_exits_incomplete(self, run, destination_url):
        result = run("import", "users", "--limit-items", "1")

        assert result.exit_code == EXIT_INCOMPLETE
        assert _count(destination_url, "users") == 1

        result = run("import", "users")

        assert result.exit_code == 0
        assert _count(destination_url, "users") == 2

    def test_idlist(self, run, destination_url):
        result = run("import", "users", "--idlist", "2")

        assert result.exit_code == 0
        assert _count(destination_url, "users") == 1

    def test_update_flag(self, run, destination_url):
        run("import", "users")

        result = run("import", "users", "--update")

        assert result.exit_code == 0
        assert "Flagged 2 rows" in result.output
        assert _count(destination_url, "users") == 2

    def test_unknown_job(self, run):
        result = run("import", "groups")

        assert result.exit_code == 2
        assert "Unknown migration job 'groups'" in result.output


class TestRollbackCommand:
    """Tests for the rollback command."""

    def test_rollback_reverses_dependency_order(self, run, destination_url):
        run("import", "users", "articles")

        result = run("rollback", "users", "articles")

        assert result.exit_code == 0, result.output
        assert _count(destination_url, "users") == 0
        assert _count(destination_url, "articles") == 0


class TestStateCommands:
    """Tests for status, messages, analyze, reset-highwater and deregister."""

    def test_status(self, run):
        run("import", "users")

        result = run("status", "users")

        assert result.exit_code == 0, result.output
        assert "Migration Status" in result.output
        assert "users" in result.output

    def test_messages_when_empty(self, run):
        run("import", "users")

        result = run("messages", "users")

        assert result.exit_code == 0
        assert "No messages for 'users'" in result.output

    def test_analyze(self, run):
        result = run("analyze", "users")

        assert result.exit_code == 0, result.output
        assert "Source analysis: users" in result.output

    def test_reset_highwater_with_yes(self, run):
        result = run("reset-highwater", "users", "--yes")

        assert result.exit_code == 0
        assert "reset" in result.output

    def test_deregister_asks_for_confirmation(self, run, destination_url):
        run("import", "users")

        result = run("deregister", "users", input="n\n")

        assert result.exit_code == 0
        assert "Operation cancelled." in result.output

        result = run("deregister", "users", "--yes")

        assert result.exit_code == 0
        assert "deregistered" in result.output
        assert _count(destination_url, "users") == 2

        result = run("import", "users")

        assert _count(destination_url, "users") == 4


def test_missing_config_exits_with_configuration_error(monkeypatch):
    monkeypatch.delenv("MIGRATE_BRIDGE_CONFIG", raising=False)

    result = CliRunner().invoke(cli, ["status"])

    assert result.exit_code == 2
