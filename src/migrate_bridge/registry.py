"""Plugin registry and job construction from configuration.

This module is the single place that maps plugin names used in configuration
to connector classes, and that turns a BridgeConfig into a JobRegistry of
ready-to-run MigrationJob instances.
"""

import inspect
from typing import Any

from migrate_bridge.config import BridgeConfig, FieldMappingConfig, JobConfig, PluginConfig
from migrate_bridge.exceptions import ConfigurationError
from migrate_bridge.migration.dedupe import SqlUniquenessLookup
from migrate_bridge.migration.destinations import SqlTableDestination
from migrate_bridge.migration.job import JobRegistry, MigrationJob
from migrate_bridge.migration.mapping import FieldMapping, resolve_callable
from migrate_bridge.migration.plugins import (
    DestinationPlugin,
    JsonFileSource,
    SourcePlugin,
    UniquenessLookup,
)
from migrate_bridge.utils.logging import get_logger

logger = get_logger(__name__)

SOURCE_PLUGINS: dict[str, type[SourcePlugin]] = {
    "json_file": JsonFileSource,
}

DESTINATION_PLUGINS: dict[str, type[DestinationPlugin]] = {
    "sql_table": SqlTableDestination,
}

UNIQUENESS_PLUGINS: dict[str, type[UniquenessLookup]] = {
    "sql": SqlUniquenessLookup,
}


def register_source(name: str):
    """Class decorator adding a source connector to the registry."""

    def decorator(cls: type[SourcePlugin]) -> type[SourcePlugin]:
        SOURCE_PLUGINS[name] = cls
        return cls

    return decorator


def register_destination(name: str):
    """Class decorator adding a destination connector to the registry."""

    def decorator(cls: type[DestinationPlugin]) -> type[DestinationPlugin]:
        DESTINATION_PLUGINS[name] = cls
        return cls

    return decorator


def _plugin_class(
    plugin_config: PluginConfig, registry: dict[str, type], base: type, kind: str
) -> type:
    if plugin_config.plugin in registry:
        cls = registry[plugin_config.plugin]
    elif ":" in plugin_config.plugin:
        cls = resolve_callable(plugin_config.plugin)
    else:
        raise ConfigurationError(
            f"Unknown {kind} plugin '{plugin_config.plugin}'. "
            f"Registered: {', '.join(sorted(registry)) or 'none'}; "
            f"or use 'package.module:ClassName'"
        )

    if not inspect.isclass(cls) or not issubclass(cls, base):
        raise ConfigurationError(f"'{plugin_config.plugin}' is not a {base.__name__}")
    return cls


def create_plugin(
    plugin_config: PluginConfig, registry: dict[str, type], base: type, kind: str
) -> Any:
    """
    Instantiate a connector from its configuration.

    Args:
        plugin_config: Plugin name or import path plus constructor options
        registry: Name-to-class mapping for this kind of plugin
        base: Required base class
        kind: "source", "destination" or "uniqueness" (for messages)

    Returns:
        Connector instance

    Raises:
        ConfigurationError: If the plugin is unknown or rejects its options
    """
    cls = _plugin_class(plugin_config, registry, base, kind)
    try:
        return cls(**plugin_config.options)
    except TypeError as e:
        raise ConfigurationError(
            f"Invalid options for {kind} plugin '{plugin_config.plugin}': {e}"
        ) from e


def apply_field_mapping(job: MigrationJob, config: FieldMappingConfig) -> FieldMapping:
    """Declare one configured field mapping on a job."""
    mapping = job.add_field_mapping(config.destination, config.source)
    if config.default is not None:
        mapping.default_value(config.default)
    if config.separator:
        mapping.separator(config.separator)
    if config.source_migration:
        mapping.source_migration(*config.source_migration)
    if config.callbacks:
        mapping.callbacks(*config.callbacks)
    if config.dedupe:
        mapping.dedupe(config.dedupe["store"], config.dedupe["field"])
    if config.arguments:
        mapping.arguments(config.arguments)
    if config.issue_group:
        mapping.issue_group(config.issue_group)
    if config.description:
        mapping.description(config.description)
    return mapping


def build_job(job_config: JobConfig, config: BridgeConfig) -> MigrationJob:
    """
    Build a MigrationJob from its configuration.

    Raises:
        ConfigurationError: If a plugin or hook cannot be resolved
    """
    source = create_plugin(job_config.source, SOURCE_PLUGINS, SourcePlugin, "source")
    destination = create_plugin(
        job_config.destination, DESTINATION_PLUGINS, DestinationPlugin, "destination"
    )
    uniqueness = (
        create_plugin(job_config.uniqueness, UNIQUENESS_PLUGINS, UniquenessLookup, "uniqueness")
        if job_config.uniqueness
        else None
    )
    prepare_row_hook = resolve_callable(job_config.prepare_row) if job_config.prepare_row else None

    job = MigrationJob(
        job_config.id,
        source,
        destination,
        database_url=config.state.url,
        source_ids=job_config.source_ids,
        destination_ids=job_config.destination_ids,
        highwater_field=job_config.highwater_field,
        track_changes=job_config.track_changes,
        track_last_imported=job_config.track_last_imported,
        id_list=job_config.id_list,
        rollback_batch_size=job_config.rollback_batch_size,
        default_rollback_action=job_config.default_rollback_action,
        system_of_record=job_config.system_of_record,
        skip_count=job_config.skip_count,
        cache_counts=job_config.cache_counts,
        uniqueness=uniqueness,
        dependencies=job_config.dependencies,
        prepare_row_hook=prepare_row_hook,
        retry_attempts=config.state.busy_retry_attempts,
    )

    for mapping_config in job_config.field_mappings:
        apply_field_mapping(job, mapping_config)

    logger.debug(
        "job_built",
        job_id=job.id,
        source=job_config.source.plugin,
        destination=job_config.destination.plugin,
        field_mappings=len(job_config.field_mappings),
    )
    return job


def build_registry(config: BridgeConfig) -> JobRegistry:
    """Build every configured job into a JobRegistry."""
    registry = JobRegistry()
    for job_config in config.jobs:
        registry.register(build_job(job_config, config))
    return registry
