"""
State management commands.

This module provides commands for inspecting and resetting the state that
migration jobs keep in the state store.
"""

import click

from migrate_bridge.cli.context import BridgeContext
from migrate_bridge.cli.decorators import (
    confirm_action,
    handle_errors,
    pass_context,
    requires_config,
)
from migrate_bridge.cli.utils import (
    echo_info,
    echo_success,
    echo_warning,
    format_count,
    format_timestamp,
    print_table,
)
from migrate_bridge.exceptions import SourceReadError
from migrate_bridge.migration.highwater import is_empty_mark
from migrate_bridge.migration.job import MigrationJob
from migrate_bridge.migration.models import MessageLevel
from migrate_bridge.utils.logging import get_logger

logger = get_logger(__name__)


def _source_total(job: MigrationJob) -> str:
    try:
        return format_count(job.source_count())
    except SourceReadError as e:
        logger.warning("source_count_failed", job_id=job.id, error=str(e))
        return "error"


@click.command(name="status")
@click.argument("job_ids", nargs=-1)
@pass_context
@requires_config
@handle_errors
def status(ctx: BridgeContext, job_ids: tuple[str, ...]) -> None:
    """Show row counts and the last run of each job.

    Examples:

        # All jobs
        migrate-bridge status --config migrate.yaml

        # Selected jobs
        migrate-bridge status users articles --config migrate.yaml
    """
    registry = ctx.registry
    jobs = [registry.get(job_id) for job_id in job_ids] if job_ids else list(registry)
    if not jobs:
        echo_warning("No migration jobs configured")
        return

    rows = []
    for job in jobs:
        counts = job.id_map.status_counts()
        mark = job.highwater.get() if job.highwater_field else None
        last = ctx.history.last_run(job.id)
        last_run = (
            f"{last.operation} {last.result} "
            f"{format_timestamp(last.finished_at or last.started_at)}"
            if last
            else "-"
        )
        rows.append(
            [
                job.id,
                _source_total(job),
                format_count(job.id_map.processed_count()),
                format_count(counts.get("imported", 0)),
                format_count(counts.get("needs_update", 0)),
                format_count(counts.get("failed", 0)),
                format_count(counts.get("ignored", 0)),
                "-" if mark is None or is_empty_mark(mark) else mark,
                last_run,
            ]
        )

    print_table(
        "Migration Status",
        [
            "Job",
            "Total",
            "Processed",
            "Imported",
            "Needs update",
            "Failed",
            "Ignored",
            "Highwater",
            "Last run",
        ],
        rows,
    )


@click.command(name="messages")
@click.argument("job_id")
@click.option(
    "--level",
    type=click.Choice([level.value for level in MessageLevel], case_sensitive=False),
    help="Only show messages of this level",
)
@click.option("--limit", type=click.IntRange(min=1), default=100, help="Maximum messages shown")
@pass_context
@requires_config
@handle_errors
def messages(ctx: BridgeContext, job_id: str, level: str | None, limit: int) -> None:
    """List the messages stored for a job's rows."""
    job = ctx.registry.get(job_id)
    stored = job.id_map.messages(level=MessageLevel(level.lower()) if level else None)

    if not stored:
        echo_info(f"No messages for '{job_id}'")
        return

    rows = [
        [
            ", ".join(str(value) for value in message.source_key),
            message.level.value,
            message.message,
        ]
        for message in stored[:limit]
    ]
    print_table(f"Messages: {job_id}", ["Source key", "Level", "Message"], rows)
    if len(stored) > limit:
        echo_info(f"Showing {limit} of {format_count(len(stored))} messages")


@click.command(name="reset-highwater")
@click.argument("job_id")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
@pass_context
@requires_config
@handle_errors
@confirm_action("This resets the highwater mark so every row is reconsidered. Continue?")
def reset_highwater(ctx: BridgeContext, job_id: str, yes: bool) -> None:
    """Forget the highwater mark of a job."""
    job = ctx.registry.get(job_id)
    job.highwater.reset()
    echo_success(f"Highwater mark of '{job_id}' reset")


@click.command(name="deregister")
@click.argument("job_id")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
@pass_context
@requires_config
@handle_errors
@confirm_action(
    "This deletes the job's identity map, messages and highwater mark. "
    "Destination records are kept. Continue?"
)
def deregister(ctx: BridgeContext, job_id: str, yes: bool) -> None:
    """Remove every trace of a job from the state store."""
    ctx.registry.deregister(job_id)
    logger.warning("job_deregistered_from_cli", job_id=job_id)
    echo_success(f"Job '{job_id}' deregistered")
