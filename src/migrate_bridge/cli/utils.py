"""
Utility functions for CLI commands.

This module provides helper functions for formatting output and parsing
common option values.
"""

from datetime import datetime
from typing import Any

import click
from rich.console import Console
from rich.table import Table

console = Console()


def echo_success(message: str) -> None:
    """Print success message in green."""
    click.secho(f"✓ {message}", fg="green")


def echo_error(message: str) -> None:
    """Print error message in red."""
    click.secho(f"✗ {message}", fg="red", err=True)


def echo_warning(message: str) -> None:
    """Print warning message in yellow."""
    click.secho(f"⚠ {message}", fg="yellow")


def echo_info(message: str) -> None:
    """Print info message in blue."""
    click.secho(f"ℹ {message}", fg="blue")


def format_timestamp(dt: datetime | None) -> str:
    """Format timestamp in human-readable format."""
    if dt is None:
        return "-"
    return dt.strftime("%Y-%m-%d %H:%M:%S")


def format_count(count: int | None) -> str:
    """Format large numbers with thousands separator; None renders as N/A."""
    if count is None:
        return "N/A"
    return f"{count:,}"


def parse_id_list(value: str | None) -> list[str]:
    """Split a comma-separated --idlist value."""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def print_table(
    title: str,
    columns: list[str],
    rows: list[list[Any]],
    show_header: bool = True,
) -> None:
    """
    Print a formatted table using rich.

    Args:
        title: Table title
        columns: Column headers
        rows: List of row data
        show_header: Whether to show header row
    """
    table = Table(title=title, show_header=show_header)

    for col in columns:
        table.add_column(col)

    for row in rows:
        table.add_row(*[str(cell) for cell in row])

    console.print(table)
