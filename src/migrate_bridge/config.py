"""Configuration management for Migrate Bridge using Pydantic.

This module provides type-safe configuration models for the state store,
logging, run budgets and the migration jobs themselves.
"""

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


class StateConfig(BaseModel):
    """State store configuration."""

    db_path: str = Field(default="./migrate_bridge.db", description="Path to SQLite state file")
    database_url: str | None = Field(
        default=None,
        description="Full SQLAlchemy URL; overrides db_path when set",
    )
    db_pool_size: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Number of connections to maintain in the pool (server databases only)",
    )
    db_max_overflow: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Maximum connections beyond pool_size (server databases only)",
    )
    db_pool_timeout: int = Field(
        default=30,
        ge=1,
        le=300,
        description="Timeout in seconds for getting a connection from the pool",
    )
    busy_retry_attempts: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Attempts for state writes that hit a locked database",
    )

    @property
    def url(self) -> str:
        """SQLAlchemy URL of the state store."""
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.db_path}"


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default="WARNING",
        description="Console log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    file_level: str = Field(
        default="DEBUG",
        description="File log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    format: str = Field(default="json", description="Log format (json or console)")
    file: str | None = Field(default=None, description="Log file path")

    @field_validator("level", "file_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(valid_levels)}")
        return v_upper

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format."""
        valid_formats = ["json", "console"]
        v_lower = v.lower()
        if v_lower not in valid_formats:
            raise ValueError(f"Log format must be one of: {', '.join(valid_formats)}")
        return v_lower


class BudgetConfig(BaseModel):
    """Resource budgets and feedback cadence for a run.

    Budgets are checked between rows; a tripped budget ends the run with
    INCOMPLETE so the next run resumes where this one stopped.
    """

    time_limit: float | None = Field(
        default=None, gt=0, description="Seconds a run may take before stopping"
    )
    item_limit: int | None = Field(
        default=None, ge=1, description="Rows a run may process before stopping"
    )
    memory_limit_mb: int | None = Field(
        default=None, ge=1, description="Process memory ceiling in megabytes"
    )
    memory_threshold: float = Field(
        default=0.85,
        gt=0,
        le=1,
        description="Fraction of memory_limit_mb at which the run stops",
    )
    feedback_items: int | None = Field(
        default=None, ge=1, description="Emit a progress summary every N rows"
    )
    feedback_seconds: float | None = Field(
        default=None, gt=0, description="Emit a progress summary every N seconds"
    )


class PluginConfig(BaseModel):
    """Source or destination connector reference.

    ``plugin`` is either a registered plugin name or an import path in
    ``package.module:ClassName`` form. ``options`` are passed to the
    constructor as keyword arguments.
    """

    plugin: str = Field(..., description="Registered plugin name or module:Class path")
    options: dict[str, Any] = Field(default_factory=dict)


class FieldMappingConfig(BaseModel):
    """One field mapping rule declared in configuration."""

    destination: str | None = Field(default=None, description="Destination field (or field:sub)")
    source: str | None = Field(default=None, description="Source field name")
    default: Any = Field(default=None, description="Value used when the source field is absent")
    separator: str | None = Field(default=None, description="Split string values on this")
    source_migration: list[str] = Field(
        default_factory=list, description="Jobs whose identity maps resolve the value"
    )
    callbacks: list[str] = Field(
        default_factory=list, description="Callback names or module:function paths"
    )
    dedupe: dict[str, str] | None = Field(
        default=None, description="{'store': ..., 'field': ...} uniqueness target"
    )
    arguments: dict[str, Any] = Field(default_factory=dict)
    issue_group: str | None = None
    description: str | None = None

    @field_validator("destination")
    @classmethod
    def validate_destination(cls, v: str | None) -> str | None:
        """Validate the field:subfield form."""
        if v is not None:
            parts = v.split(":")
            if len(parts) > 2 or not all(parts):
                raise ValueError(f"Destination must be 'field' or 'field:subfield', got '{v}'")
        return v

    @field_validator("dedupe")
    @classmethod
    def validate_dedupe(cls, v: dict[str, str] | None) -> dict[str, str] | None:
        """Validate the dedupe target."""
        if v is not None and not {"store", "field"} <= set(v):
            raise ValueError("dedupe requires both 'store' and 'field'")
        return v

    @model_validator(mode="after")
    def validate_has_target(self) -> "FieldMappingConfig":
        """A rule needs at least a destination or a source."""
        if self.destination is None and self.source is None:
            raise ValueError("Field mapping needs a destination or a source")
        return self


class JobConfig(BaseModel):
    """Configuration of one migration job."""

    id: str = Field(..., min_length=1, description="Unique job identifier")
    source: PluginConfig
    destination: PluginConfig
    source_ids: list[str] = Field(..., min_length=1, description="Source key field names")
    destination_ids: list[str] = Field(
        default_factory=lambda: ["id"], min_length=1, description="Destination key field names"
    )
    highwater_field: str | None = Field(
        default=None, description="Monotonic source field used for incremental runs"
    )
    track_changes: bool = Field(default=False, description="Re-import rows whose content changed")
    track_last_imported: bool = Field(
        default=False, description="Record the time each row was last imported"
    )
    id_list: list[str] = Field(
        default_factory=list, description="Restrict runs to these first-key-component values"
    )
    rollback_batch_size: int = Field(default=50, ge=1, le=10000)
    default_rollback_action: str = Field(default="delete")
    system_of_record: str = Field(default="source")
    skip_count: bool = Field(default=False, description="Never count the source")
    cache_counts: bool = Field(default=False, description="Cache the source count")
    prepare_row: str | None = Field(
        default=None, description="module:function hook called for each candidate row"
    )
    uniqueness: PluginConfig | None = Field(
        default=None, description="Uniqueness lookup used by dedupe rules"
    )
    field_mappings: list[FieldMappingConfig] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)

    @field_validator("default_rollback_action")
    @classmethod
    def validate_rollback_action(cls, v: str) -> str:
        """Validate rollback action."""
        v_lower = v.lower()
        if v_lower not in ("delete", "preserve"):
            raise ValueError("default_rollback_action must be 'delete' or 'preserve'")
        return v_lower

    @field_validator("system_of_record")
    @classmethod
    def validate_system_of_record(cls, v: str) -> str:
        """Validate system of record."""
        v_lower = v.lower()
        if v_lower not in ("source", "destination"):
            raise ValueError("system_of_record must be 'source' or 'destination'")
        return v_lower


class BridgeConfig(BaseSettings):
    """Main Migrate Bridge configuration."""

    model_config = SettingsConfigDict(
        env_prefix="MIGRATE_BRIDGE_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    state: StateConfig = Field(default_factory=StateConfig, description="State configuration")
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description="Logging configuration"
    )
    budgets: BudgetConfig = Field(default_factory=BudgetConfig, description="Run budgets")
    jobs: list[JobConfig] = Field(default_factory=list, description="Migration jobs")

    @model_validator(mode="after")
    def validate_jobs(self) -> "BridgeConfig":
        """Job ids must be unique and dependencies must name known jobs."""
        seen: set[str] = set()
        for job in self.jobs:
            if job.id in seen:
                raise ValueError(f"Duplicate job id: {job.id}")
            seen.add(job.id)

        for job in self.jobs:
            referenced = set(job.dependencies)
            for mapping in job.field_mappings:
                referenced.update(mapping.source_migration)
            unknown = referenced - seen
            if unknown:
                raise ValueError(
                    f"Job '{job.id}' references unknown jobs: {', '.join(sorted(unknown))}"
                )
        return self

    def get_job(self, job_id: str) -> JobConfig | None:
        """Return the configuration of a job by id."""
        for job in self.jobs:
            if job.id == job_id:
                return job
        return None


def load_config_from_yaml(config_path: str | Path) -> BridgeConfig:
    """Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        BridgeConfig: Loaded configuration

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config file is invalid
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        config_data = yaml.safe_load(f)

    if not config_data:
        raise ValueError(f"Empty configuration file: {config_path}")

    config_data = _expand_env_vars(config_data)

    return BridgeConfig(**config_data)


def _expand_env_vars(data: Any) -> Any:
    """Recursively expand environment variables in config data.

    Supports ${VAR_NAME} syntax, either as the whole value or embedded in a
    longer string.

    Args:
        data: Configuration data

    Returns:
        Data with expanded environment variables

    Raises:
        ValueError: If a referenced variable is not set
    """
    if isinstance(data, dict):
        return {k: _expand_env_vars(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item) for item in data]
    elif isinstance(data, str):

        def _substitute(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ValueError(
                    f"Environment variable '{var_name}' not found. "
                    f"Please set it in your environment or .env file."
                )
            return env_value

        return _ENV_PATTERN.sub(_substitute, data)
    else:
        return data
