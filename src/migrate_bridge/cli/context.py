"""
CLI context for Migrate Bridge.

This module provides the context object that is passed to all CLI commands,
holding the configuration, the job registry and the run history.
"""

from dataclasses import dataclass, field
from pathlib import Path

from pydantic import ValidationError

from migrate_bridge.config import BridgeConfig, load_config_from_yaml
from migrate_bridge.exceptions import ConfigurationError
from migrate_bridge.migration.database import dispose_engines
from migrate_bridge.migration.history import RunHistory
from migrate_bridge.migration.job import JobRegistry
from migrate_bridge.registry import build_registry
from migrate_bridge.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)


@dataclass
class BridgeContext:
    """
    Context object for CLI commands.

    Configuration, jobs and history are loaded lazily so commands that fail
    early never touch the state store.

    Attributes:
        config_path: Path to configuration file
        log_level: Logging level
        log_file: Optional log file path
    """

    config_path: Path | None = None
    log_level: str = "WARNING"
    log_file: Path | None = None

    _config: BridgeConfig | None = field(default=None, init=False, repr=False)
    _registry: JobRegistry | None = field(default=None, init=False, repr=False)
    _history: RunHistory | None = field(default=None, init=False, repr=False)

    @property
    def config(self) -> BridgeConfig:
        """Get or load the configuration."""
        if self._config is None:
            if self.config_path is None:
                raise ConfigurationError(
                    "Configuration file path not provided. "
                    "Use --config option or set MIGRATE_BRIDGE_CONFIG environment variable."
                )

            logger.debug("loading_configuration", config_path=str(self.config_path))
            try:
                self._config = load_config_from_yaml(self.config_path)
            except (FileNotFoundError, ValidationError, ValueError) as e:
                raise ConfigurationError(str(e)) from e
            logger.debug("configuration_loaded", jobs=len(self._config.jobs))

            # A configured log file applies unless --log-file was given
            logging_config = self._config.logging
            if self.log_file is None and logging_config.file:
                configure_logging(
                    level=self.log_level,
                    log_format=logging_config.format,
                    log_file=logging_config.file,
                    file_level=logging_config.file_level,
                )

        return self._config

    @property
    def registry(self) -> JobRegistry:
        """Get or build the job registry."""
        if self._registry is None:
            self._registry = build_registry(self.config)
        return self._registry

    @property
    def history(self) -> RunHistory:
        """Get or create the run history."""
        if self._history is None:
            self._history = RunHistory(self.config.state.url)
        return self._history

    def cleanup(self) -> None:
        """Release database connections."""
        logger.debug("cleaning_up_context")
        dispose_engines()

    def __enter__(self) -> "BridgeContext":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.cleanup()
