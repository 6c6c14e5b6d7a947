"""
Run commands.

This module provides the import, rollback and analyze commands that drive
migration jobs through the run controller.
"""

import signal
import threading
from collections.abc import Generator
from contextlib import contextmanager

import click

from migrate_bridge.cli.context import BridgeContext
from migrate_bridge.cli.decorators import handle_errors, pass_context, requires_config
from migrate_bridge.cli.utils import (
    console,
    echo_info,
    echo_success,
    echo_warning,
    format_count,
    parse_id_list,
    print_table,
)
from migrate_bridge.config import BudgetConfig
from migrate_bridge.migration.controller import RunController
from migrate_bridge.migration.job import MigrationJob
from migrate_bridge.migration.models import RunResult
from migrate_bridge.reporting.progress import ConsoleDiagnostics
from migrate_bridge.utils.logging import get_logger

logger = get_logger(__name__)

# Exit code for runs that stopped early and can be resumed
EXIT_INCOMPLETE = 3


@contextmanager
def stop_on_interrupt(controller: RunController) -> Generator[None, None, None]:
    """Turn Ctrl+C into a cooperative stop request while a run is active."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum, frame):
        echo_warning("Stop requested, finishing the current row...")
        controller.request_stop()

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _apply_id_list(jobs: list[MigrationJob], idlist: str | None) -> None:
    ids = parse_id_list(idlist)
    if ids:
        for job in jobs:
            job.id_list = ids


def _finish(results: dict[str, RunResult]) -> None:
    if any(result is RunResult.FAILED for result in results.values()):
        raise click.exceptions.Exit(1)
    if any(result is not RunResult.COMPLETED for result in results.values()):
        echo_warning("Run ended early; run the command again to continue.")
        raise click.exceptions.Exit(EXIT_INCOMPLETE)


@click.command(name="import")
@click.argument("job_ids", nargs=-1, required=True)
@click.option("--update", is_flag=True, help="Re-import rows that were already imported")
@click.option("--idlist", type=str, help="Comma-separated source ids to limit the run to")
@click.option("--limit-items", type=click.IntRange(min=1), help="Stop after this many rows")
@click.option(
    "--limit-seconds", type=click.FloatRange(min=0, min_open=True), help="Stop after this long"
)
@pass_context
@requires_config
@handle_errors
def import_cmd(
    ctx: BridgeContext,
    job_ids: tuple[str, ...],
    update: bool,
    idlist: str | None,
    limit_items: int | None,
    limit_seconds: float | None,
) -> None:
    """Import one or more migration jobs.

    Jobs run in dependency order. A run that hits a time or item limit, or
    is interrupted with Ctrl+C, exits with code 3 and resumes where it
    stopped on the next invocation.

    Examples:

        # Import two jobs
        migrate-bridge import users articles --config migrate.yaml

        # Re-import everything, ten minutes at a time
        migrate-bridge import users --update --limit-seconds 600 --config migrate.yaml
    """
    registry = ctx.registry
    jobs = registry.dependency_order(job_ids)
    _apply_id_list(jobs, idlist)

    budgets: BudgetConfig = ctx.config.budgets.model_copy()
    if limit_items is not None:
        budgets.item_limit = limit_items
    if limit_seconds is not None:
        budgets.time_limit = limit_seconds

    diagnostics = ConsoleDiagnostics(console)
    results: dict[str, RunResult] = {}

    for job in jobs:
        if update:
            flagged = job.prepare_update()
            echo_info(f"Flagged {format_count(flagged)} rows of '{job.id}' for update")

        controller = RunController(
            job, registry, budgets=budgets, diagnostics=diagnostics, history=ctx.history
        )
        with stop_on_interrupt(controller):
            summary = controller.import_rows()
        results[job.id] = summary.result

        logger.info("import_finished", job_id=job.id, result=summary.result.value)
        if summary.result is not RunResult.COMPLETED:
            break

    _finish(results)
    echo_success(f"Imported {len(results)} job(s)")


@click.command(name="rollback")
@click.argument("job_ids", nargs=-1, required=True)
@click.option("--idlist", type=str, help="Comma-separated source ids to limit the rollback to")
@pass_context
@requires_config
@handle_errors
def rollback(ctx: BridgeContext, job_ids: tuple[str, ...], idlist: str | None) -> None:
    """Roll back one or more migration jobs.

    Dependent jobs are rolled back before the jobs they depend on.

    Examples:

        migrate-bridge rollback articles users --config migrate.yaml
    """
    registry = ctx.registry
    jobs = list(reversed(registry.dependency_order(job_ids)))
    _apply_id_list(jobs, idlist)

    diagnostics = ConsoleDiagnostics(console)
    results: dict[str, RunResult] = {}

    for job in jobs:
        controller = RunController(
            job,
            registry,
            budgets=ctx.config.budgets,
            diagnostics=diagnostics,
            history=ctx.history,
        )
        with stop_on_interrupt(controller):
            summary = controller.rollback()
        results[job.id] = summary.result

        logger.info("rollback_finished", job_id=job.id, result=summary.result.value)
        if summary.result is not RunResult.COMPLETED:
            break

    _finish(results)
    echo_success(f"Rolled back {len(results)} job(s)")


@click.command(name="analyze")
@click.argument("job_id")
@pass_context
@requires_config
@handle_errors
def analyze(ctx: BridgeContext, job_id: str) -> None:
    """Profile the source values of a job, field by field."""
    registry = ctx.registry
    job = registry.get(job_id)
    controller = RunController(job, registry, diagnostics=ConsoleDiagnostics(console))

    results = controller.analyze()
    if not results:
        echo_warning(f"No source values found for '{job_id}'")
        return

    rows = []
    for name, analysis in sorted(results.items()):
        distinct = ", ".join(
            f"{value} ({count})" for value, count in analysis.distinct_values.items()
        )
        rows.append(
            [
                name,
                format_count(analysis.count),
                "yes" if analysis.is_numeric else "no",
                analysis.min_numeric if analysis.is_numeric else "-",
                analysis.max_numeric if analysis.is_numeric else "-",
                analysis.min_strlen,
                analysis.max_strlen,
                distinct,
            ]
        )

    print_table(
        f"Source analysis: {job_id}",
        ["Field", "Count", "Numeric", "Min", "Max", "Min length", "Max length", "Values"],
        rows,
    )
