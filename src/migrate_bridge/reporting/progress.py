"""Progress summaries and diagnostics sinks for migration runs.

A run controller reports through a DiagnosticsSink: periodic and final
progress summaries, and user-facing messages. LoggingDiagnostics writes them
to structlog; ConsoleDiagnostics prints them with rich.
"""

from dataclasses import dataclass
from typing import Protocol

from rich.console import Console

from migrate_bridge.migration.models import MessageLevel, RunResult
from migrate_bridge.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ProgressSummary:
    """Counts of one run, or of the window since the last progress report."""

    job_id: str
    operation: str = "import"
    processed: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0
    ignored: int = 0
    elapsed: float = 0.0
    done: bool = True
    result: RunResult | None = None

    @property
    def per_minute(self) -> int:
        if self.elapsed <= 0:
            return 0
        return round(60 * self.processed / self.elapsed)

    def render(self) -> str:
        """Human-readable one-line summary."""
        tail = "done with" if self.done else "continuing with"
        if self.operation == "rollback":
            return (
                f"Rolled back {self.processed} in {self.elapsed:.1f} sec "
                f"({self.per_minute}/min) - {tail} '{self.job_id}'"
            )
        return (
            f"Processed {self.processed} ({self.created} created, {self.updated} updated, "
            f"{self.failed} failed, {self.ignored} ignored) in {self.elapsed:.1f} sec "
            f"({self.per_minute}/min) - {tail} '{self.job_id}'"
        )

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "operation": self.operation,
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "failed": self.failed,
            "ignored": self.ignored,
            "elapsed": round(self.elapsed, 3),
            "per_minute": self.per_minute,
            "done": self.done,
            "result": self.result.value if self.result else None,
        }


class DiagnosticsSink(Protocol):
    """Receives progress summaries and user-facing messages of a run."""

    def progress(self, summary: ProgressSummary) -> None: ...

    def message(self, text: str, level: MessageLevel = MessageLevel.INFORMATIONAL) -> None: ...

    def row_message(
        self, job_id: str, source_key: tuple, text: str, level: MessageLevel = MessageLevel.ERROR
    ) -> None: ...


class LoggingDiagnostics:
    """Sink writing to structlog."""

    def progress(self, summary: ProgressSummary) -> None:
        logger.info("migration_progress", summary=summary.render(), **summary.to_dict())

    def message(self, text: str, level: MessageLevel = MessageLevel.INFORMATIONAL) -> None:
        if level is MessageLevel.ERROR:
            logger.error("migration_message", message=text)
        elif level is MessageLevel.WARNING:
            logger.warning("migration_message", message=text)
        else:
            logger.info("migration_message", message=text)

    def row_message(
        self, job_id: str, source_key: tuple, text: str, level: MessageLevel = MessageLevel.ERROR
    ) -> None:
        logger.warning(
            "row_message",
            job_id=job_id,
            source_key=list(source_key),
            message=text,
            level=level.value,
        )


class ConsoleDiagnostics:
    """Sink printing to the terminal with rich."""

    _STYLES = {
        MessageLevel.ERROR: "bold red",
        MessageLevel.WARNING: "yellow",
        MessageLevel.INFORMATIONAL: "cyan",
    }

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def progress(self, summary: ProgressSummary) -> None:
        style = "green" if summary.done and summary.result is RunResult.COMPLETED else "blue"
        self.console.print(summary.render(), style=style, highlight=False)
        logger.debug("migration_progress", **summary.to_dict())

    def message(self, text: str, level: MessageLevel = MessageLevel.INFORMATIONAL) -> None:
        self.console.print(text, style=self._STYLES.get(level, ""), highlight=False)

    def row_message(
        self, job_id: str, source_key: tuple, text: str, level: MessageLevel = MessageLevel.ERROR
    ) -> None:
        key = ", ".join(str(value) for value in source_key)
        self.console.print(
            f"[{job_id}] ({key}) {text}", style=self._STYLES.get(level, ""), highlight=False
        )
