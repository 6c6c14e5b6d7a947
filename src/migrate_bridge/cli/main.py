"""
Main CLI entry point for Migrate Bridge.

This module provides the command-line interface for running, rolling back
and inspecting migration jobs.
"""

from pathlib import Path

import click
from dotenv import load_dotenv

from migrate_bridge import __version__
from migrate_bridge.cli.commands import migrate as migrate_commands
from migrate_bridge.cli.commands import state as state_commands
from migrate_bridge.cli.context import BridgeContext
from migrate_bridge.cli.utils import echo_error
from migrate_bridge.utils.logging import configure_logging, get_logger

# Load environment variables from .env file
load_dotenv()

logger = get_logger(__name__)


@click.group()
@click.version_option(version=__version__, prog_name="migrate-bridge")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
    envvar="MIGRATE_BRIDGE_CONFIG",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    help="Set console logging level",
    envvar="MIGRATE_BRIDGE_LOG_LEVEL",
)
@click.option(
    "--log-file",
    type=click.Path(path_type=Path),
    help="Also write logs to this file",
    envvar="MIGRATE_BRIDGE_LOG_FILE",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config: Path | None,
    log_level: str,
    log_file: Path | None,
) -> None:
    """Migrate Bridge - incremental, resumable data migrations.

    Each configured job reads rows from a source, maps them onto destination
    records and remembers what it did, so runs can be repeated, resumed
    and rolled back.

    Examples:

        # Show job status
        migrate-bridge status --config migrate.yaml

        # Import jobs
        migrate-bridge import users articles --config migrate.yaml

        # Undo an import
        migrate-bridge rollback articles --config migrate.yaml
    """
    configure_logging(level=log_level, log_file=str(log_file) if log_file else None)

    ctx.obj = BridgeContext(
        config_path=config,
        log_level=log_level,
        log_file=log_file,
    )
    ctx.call_on_close(ctx.obj.cleanup)

    logger.debug(
        "cli_initialized",
        config=str(config) if config else None,
        log_level=log_level,
    )


cli.add_command(migrate_commands.import_cmd, name="import")
cli.add_command(migrate_commands.rollback)
cli.add_command(migrate_commands.analyze)
cli.add_command(state_commands.status)
cli.add_command(state_commands.messages)
cli.add_command(state_commands.reset_highwater)
cli.add_command(state_commands.deregister)


def main() -> int:
    """Main entry point for CLI."""
    try:
        result = cli(standalone_mode=False)
        return result if isinstance(result, int) else 0
    except click.exceptions.Abort:
        click.echo("Aborted!", err=True)
        return 1
    except click.ClickException as e:
        e.show()
        return e.exit_code
    except Exception as e:
        logger.error("unexpected_error", error=str(e), exc_info=True)
        echo_error(f"Error: {e}")
        return 1
