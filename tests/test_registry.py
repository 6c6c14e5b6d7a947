"""Tests for plugin lookup and job construction from configuration."""

import json

import pytest
from sqlalchemy import Column, Integer, MetaData, String, Table, create_engine, select

from migrate_bridge.config import BridgeConfig, PluginConfig
from migrate_bridge.exceptions import ConfigurationError
from migrate_bridge.migration.controller import RunController
from migrate_bridge.migration.dedupe import SqlUniquenessLookup
from migrate_bridge.migration.destinations import SqlTableDestination
from migrate_bridge.migration.models import RunResult
from migrate_bridge.migration.plugins import (
    DestinationPlugin,
    IterableSource,
    JsonFileSource,
    SourcePlugin,
)
from migrate_bridge.registry import (
    DESTINATION_PLUGINS,
    SOURCE_PLUGINS,
    build_job,
    build_registry,
    create_plugin,
    register_destination,
    register_source,
)


@pytest.fixture
def destination_url(tmp_path):
    url = f"sqlite:///{tmp_path / 'destination.db'}"
    engine = create_engine(url)
    metadata = MetaData()
    Table(
        "accounts",
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("name", String(64)),
        Column("mail", String(128)),
    )
    metadata.create_all(engine)
    engine.dispose()
    return url


@pytest.fixture
def source_path(tmp_path):
    path = tmp_path / "accounts.json"
    path.write_text(
        json.dumps(
            [
                {"uid": 1, "username": " alice ", "email": "alice@example.com"},
                {"uid": 2, "username": "alice", "email": "alice2@example.com"},
                {"uid": 3, "username": "bob", "email": "bob@example.com"},
            ]
        )
    )
    return path


@pytest.fixture
def config(tmp_path, destination_url, source_path):
    return BridgeConfig(
        state={"db_path": str(tmp_path / "state.db")},
        jobs=[
            {
                "id": "accounts",
                "source": {"plugin": "json_file", "options": {"path": str(source_path)}},
                "destination": {
                    "plugin": "sql_table",
                    "options": {"database_url": destination_url, "table": "accounts"},
                },
                "uniqueness": {"plugin": "sql", "options": {"database_url": destination_url}},
                "source_ids": ["uid"],
                "field_mappings": [
                    {
                        "destination": "name",
                        "source": "username",
                        "callbacks": ["strip"],
                        "dedupe": {"store": "accounts", "field": "name"},
                    },
                    {"destination": "mail", "source": "email"},
                ],
            }
        ],
    )


def _account_names(url):
    engine = create_engine(url)
    table = Table("accounts", MetaData(), autoload_with=engine)
    with engine.connect() as conn:
        names = [row.name for row in conn.execute(select(table).order_by(table.c.id))]
    engine.dispose()
    return names


class TestCreatePlugin:
    """Tests for create_plugin."""

    def test_registered_name(self, tmp_path):
        plugin = create_plugin(
            PluginConfig(plugin="json_file", options={"path": str(tmp_path / "x.json")}),
            SOURCE_PLUGINS,
            SourcePlugin,
            "source",
        )

        assert isinstance(plugin, JsonFileSource)

    def test_import_path(self):
        plugin = create_plugin(
            PluginConfig(
                plugin="migrate_bridge.migration.plugins:IterableSource",
                options={"rows": [{"id": 1}]},
            ),
            SOURCE_PLUGINS,
            SourcePlugin,
            "source",
        )

        assert isinstance(plugin, IterableSource)

    def test_unknown_name(self):
        with pytest.raises(ConfigurationError, match="Unknown source plugin"):
            create_plugin(PluginConfig(plugin="ldap"), SOURCE_PLUGINS, SourcePlugin, "source")

    def test_wrong_base_class(self):
        with pytest.raises(ConfigurationError, match="is not a SourcePlugin"):
            create_plugin(
                PluginConfig(plugin="collections:OrderedDict"),
                SOURCE_PLUGINS,
                SourcePlugin,
                "source",
            )

    def test_bad_options(self):
        with pytest.raises(ConfigurationError, match="Invalid options"):
            create_plugin(
                PluginConfig(plugin="json_file", options={"filename": "x.json"}),
                SOURCE_PLUGINS,
                SourcePlugin,
                "source",
            )

    def test_register_destination_decorator(self):
        @register_destination("test_sql")
        class CustomTable(SqlTableDestination):
            pass

        try:
            plugin = create_plugin(
                PluginConfig(
                    plugin="test_sql", options={"database_url": "sqlite://", "table": "t"}
                ),
                DESTINATION_PLUGINS,
                DestinationPlugin,
                "destination",
            )
            assert isinstance(plugin, CustomTable)
        finally:
            DESTINATION_PLUGINS.pop("test_sql", None)

    def test_register_source_decorator(self):
        @register_source("test_memory")
        class MemorySource(IterableSource):
            pass

        try:
            plugin = create_plugin(
                PluginConfig(plugin="test_memory", options={"rows": []}),
                SOURCE_PLUGINS,
                SourcePlugin,
                "source",
            )
            assert isinstance(plugin, MemorySource)
        finally:
            SOURCE_PLUGINS.pop("test_memory", None)


class TestBuildJob:
    """Tests for build_job and build_registry."""

    def test_job_options_and_mappings(self, config):
        job = build_job(config.jobs[0], config)

        assert job.id == "accounts"
        assert job.source_ids == ["uid"]
        assert isinstance(job.destination, SqlTableDestination)
        assert isinstance(job.uniqueness, SqlUniquenessLookup)
        name = job.field_mappings.get("name")
        assert name.dedupe_target == ("accounts", "name")
        assert name.callback_list[0](" x ") == "x"
        assert job.database_url == config.state.url

    def test_unresolvable_hook(self, config):
        job_config = config.jobs[0].model_copy(update={"prepare_row": "no_such_module:hook"})

        with pytest.raises(ConfigurationError):
            build_job(job_config, config)

    def test_import_and_rollback_against_sql_table(self, config, destination_url):
        registry = build_registry(config)
        job = registry.get("accounts")

        summary = RunController(job, registry).import_rows()

        assert summary.result is RunResult.COMPLETED
        assert _account_names(destination_url) == ["alice", "alice_2", "bob"]
        assert job.id_map.lookup_destination_id((2,)) == (2,)

        rollback = RunController(job, registry).rollback()

        assert rollback.result is RunResult.COMPLETED
        assert _account_names(destination_url) == []

    def test_update_keeps_deduplicated_value(self, config, destination_url):
        registry = build_registry(config)
        job = registry.get("accounts")
        RunController(job, registry).import_rows()
        job.prepare_update()

        RunController(job, registry).import_rows()

        assert _account_names(destination_url) == ["alice", "alice_2", "bob"]
