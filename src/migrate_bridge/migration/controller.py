"""
Run control.

RunController drives one job through an import or rollback run: it pulls
admitted rows from the cursor, builds destination records, writes them,
records outcomes in the identity map and stops cleanly when a time, memory
or item budget is exhausted or a stop is requested.
"""

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import psutil

from migrate_bridge.config import BudgetConfig
from migrate_bridge.exceptions import (
    DestinationWriteError,
    DuplicateDestinationError,
    SourceReadError,
    StorageError,
)
from migrate_bridge.migration.history import RunHistory
from migrate_bridge.migration.job import JobRegistry, MigrationJob
from migrate_bridge.migration.models import (
    MapStatus,
    MessageLevel,
    ProcessStatus,
    RollbackAction,
    RunResult,
    SystemOfRecord,
)
from migrate_bridge.migration.pipeline import FieldPipeline
from migrate_bridge.migration.plugins import BulkDeleteDestination
from migrate_bridge.migration.row import Row
from migrate_bridge.migration.source import RowCursor
from migrate_bridge.reporting.progress import (
    DiagnosticsSink,
    LoggingDiagnostics,
    ProgressSummary,
)
from migrate_bridge.utils.idempotency import BOOKKEEPING_PREFIX, is_empty_key, key_values
from migrate_bridge.utils.logging import get_logger, log_error, log_migration_progress

logger = get_logger(__name__)

NOT_SAVED_MESSAGE = "New object was not saved, no error provided"
MAX_DISTINCT_VALUES = 10


def process_memory_usage() -> int:
    """Resident set size of the current process in bytes."""
    return psutil.Process().memory_info().rss


@dataclass
class _Counters:
    processed: int = 0
    successes: int = 0
    created: int = 0
    updated: int = 0

    def reset(self) -> None:
        self.processed = self.successes = self.created = self.updated = 0


@dataclass
class FieldAnalysis:
    """Value profile of one source field."""

    is_numeric: bool = True
    min_numeric: float | None = None
    max_numeric: float | None = None
    min_strlen: int | None = None
    max_strlen: int | None = None
    distinct_values: dict[Any, int] = field(default_factory=dict)
    count: int = 0

    def add(self, value: Any) -> None:
        self.count += 1
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            number = float(value)
            self.min_numeric = number if self.min_numeric is None else min(self.min_numeric, number)
            self.max_numeric = number if self.max_numeric is None else max(self.max_numeric, number)
        else:
            self.is_numeric = False

        length = len(str(value))
        self.min_strlen = length if self.min_strlen is None else min(self.min_strlen, length)
        self.max_strlen = length if self.max_strlen is None else max(self.max_strlen, length)

        try:
            distinct_key = value if not isinstance(value, (dict, list)) else str(value)
            hash(distinct_key)
        except TypeError:
            distinct_key = str(value)
        if distinct_key in self.distinct_values:
            self.distinct_values[distinct_key] += 1
        elif len(self.distinct_values) < MAX_DISTINCT_VALUES:
            self.distinct_values[distinct_key] = 1


class RunController:
    """
    Executes import and rollback runs of one job.

    Usage:
        controller = RunController(job, registry, budgets=BudgetConfig(time_limit=60))
        summary = controller.import_rows()
        if summary.result is RunResult.INCOMPLETE:
            ...  # run again later to continue
    """

    def __init__(
        self,
        job: MigrationJob,
        registry: JobRegistry,
        budgets: BudgetConfig | None = None,
        diagnostics: DiagnosticsSink | None = None,
        pipeline: FieldPipeline | None = None,
        clock: Callable[[], float] = time.monotonic,
        memory_probe: Callable[[], int] = process_memory_usage,
        history: RunHistory | None = None,
    ):
        self.job = job
        self.registry = registry
        self.budgets = budgets or BudgetConfig()
        self.diagnostics = diagnostics or LoggingDiagnostics()
        self.pipeline = pipeline or FieldPipeline(registry)
        self.clock = clock
        self.memory_probe = memory_probe
        self.history = history

        self.status = ProcessStatus.IDLE
        self.current_row: Row | None = None
        self._stop_requested = threading.Event()
        self._total = _Counters()
        self._window = _Counters()
        self._started = 0.0
        self._last_feedback = 0.0
        self._cursor: RowCursor | None = None
        self._ignored_mark = 0
        self._operation = "import"

    # Status

    def request_stop(self) -> None:
        """Ask a running process to stop at the next row boundary."""
        if self.status is not ProcessStatus.IDLE:
            self.status = ProcessStatus.STOPPING
        self._stop_requested.set()
        logger.info("stop_requested", job_id=self.job.id)

    def is_complete(self) -> bool:
        """
        True when every source row has a map row.

        An uncountable source is considered complete.
        """
        total = self.job.source_count(refresh=True)
        if total is None:
            return True
        return total <= self.job.id_map.processed_count()

    def set_update(self, source_key: Any = None) -> bool:
        """Flag a row NEEDS_UPDATE (default: the row being processed)."""
        if source_key is None:
            if self.current_row is None:
                return False
            source_key = self.current_row.source_key
        return self.job.set_update(source_key)

    # Process lifecycle

    def _begin(self, status: ProcessStatus, operation: str) -> int | None:
        self.status = status
        self._operation = operation
        self._stop_requested.clear()
        self._total.reset()
        self._window.reset()
        self._started = self._last_feedback = self.clock()
        self._cursor = None
        self._ignored_mark = 0
        logger.info(f"{operation}_started", job_id=self.job.id)
        if self.history is not None:
            return self.history.start(self.job.id, operation)
        return None

    def _end(self, run_id: int | None, result: RunResult) -> ProgressSummary:
        summary = self._summary(self._total, done=True, result=result)
        self.diagnostics.progress(summary)
        log_migration_progress(
            logger,
            self._operation,
            self.job.id,
            summary.processed,
            None,
            result=result.value,
        )
        if self.history is not None and run_id is not None:
            try:
                self.history.finish(run_id, result, summary.processed, summary.failed)
            except StorageError as e:
                log_error(logger, e, "run_history", job_id=self.job.id)
        self.status = ProcessStatus.IDLE
        self.current_row = None
        return summary

    def _summary(
        self, counters: _Counters, done: bool, result: RunResult | None = None
    ) -> ProgressSummary:
        ignored = self._cursor.num_ignored if self._cursor is not None else 0
        if not done:
            ignored -= self._ignored_mark
        elapsed = self.clock() - (self._started if done else self._last_feedback)
        return ProgressSummary(
            job_id=self.job.id,
            operation=self._operation,
            processed=counters.processed + (ignored if self._operation == "import" else 0),
            created=counters.created,
            updated=counters.updated,
            failed=counters.processed - counters.successes,
            ignored=ignored,
            elapsed=max(elapsed, 0.0),
            done=done,
            result=result,
        )

    # Budgets

    def _time_exceeded(self) -> bool:
        limit = self.budgets.time_limit
        return limit is not None and self.clock() - self._started >= limit

    def _memory_exceeded(self) -> bool:
        limit_mb = self.budgets.memory_limit_mb
        if limit_mb is None:
            return False
        usage = self.memory_probe()
        threshold = limit_mb * 1024 * 1024 * self.budgets.memory_threshold
        if usage >= threshold:
            logger.warning(
                "memory_budget_exceeded",
                job_id=self.job.id,
                usage_mb=round(usage / 1024 / 1024, 1),
                limit_mb=limit_mb,
            )
            return True
        return False

    def _item_limit_reached(self) -> bool:
        limit = self.budgets.item_limit
        return limit is not None and self._total.processed >= limit

    def _check_status(self) -> RunResult:
        """Check budgets and the stop flag, emitting feedback when due."""
        if self._memory_exceeded():
            return RunResult.INCOMPLETE
        if self._time_exceeded():
            return RunResult.INCOMPLETE
        if self._stop_requested.is_set():
            return RunResult.STOPPED

        now = self.clock()
        feedback_items = self.budgets.feedback_items
        feedback_seconds = self.budgets.feedback_seconds
        if (feedback_items and self._window.processed >= feedback_items) or (
            feedback_seconds and now - self._last_feedback >= feedback_seconds
        ):
            self.diagnostics.progress(self._summary(self._window, done=False))
            self._window.reset()
            self._last_feedback = now
            if self._cursor is not None:
                self._ignored_mark = self._cursor.num_ignored

        return RunResult.COMPLETED

    def _count(self, success: bool, created: bool = False) -> None:
        for counters in (self._total, self._window):
            counters.processed += 1
            if success:
                counters.successes += 1
                if created:
                    counters.created += 1
                else:
                    counters.updated += 1

    # Import

    def import_rows(self) -> ProgressSummary:
        """
        Import every admitted row of the job's source.

        Returns:
            Final progress summary; ``result`` tells how the run ended
        """
        run_id = self._begin(ProcessStatus.IMPORTING, "import")
        job = self.job

        try:
            job.destination.pre_import()
        except Exception as e:
            log_error(logger, e, "pre_import", job_id=job.id)
            self.diagnostics.message(f"pre_import failed: {e}", MessageLevel.ERROR)
            return self._end(run_id, RunResult.FAILED)

        result = RunResult.COMPLETED
        cursor = self._cursor = RowCursor(job)

        try:
            cursor.rewind()
        except (SourceReadError, StorageError) as e:
            log_error(logger, e, "source_rewind", job_id=job.id)
            self.diagnostics.message(
                f"Migration failed with source plugin exception: {e}", MessageLevel.ERROR
            )
            result = RunResult.FAILED

        while result is RunResult.COMPLETED and cursor.valid():
            row = self.current_row = cursor.current()

            try:
                if self._import_row(row) and job.highwater_field:
                    value = row.get(job.highwater_field)
                    if value is not None and value != "":
                        job.highwater.save(value)
            except StorageError as e:
                # The outcome could not be recorded: the store is unreachable
                log_error(logger, e, "import_row", job_id=job.id, source_key=list(row.key_values))
                self.diagnostics.message(f"State store unavailable: {e}", MessageLevel.ERROR)
                result = RunResult.FAILED
                break

            status = self._check_status()
            if status is not RunResult.COMPLETED:
                result = status
                break
            if self._item_limit_reached():
                result = RunResult.INCOMPLETE
                break

            try:
                cursor.advance()
            except (SourceReadError, StorageError) as e:
                log_error(logger, e, "source_advance", job_id=job.id)
                self.diagnostics.message(
                    f"Migration failed with source plugin exception: {e}", MessageLevel.ERROR
                )
                result = RunResult.FAILED

        try:
            job.destination.post_import()
        except Exception as e:
            log_error(logger, e, "post_import", job_id=job.id)
            self.diagnostics.message(f"post_import failed: {e}", MessageLevel.ERROR)
            result = RunResult.FAILED

        return self._end(run_id, result)

    def _import_row(self, row: Row) -> bool:
        """
        Write one admitted row and record its outcome.

        Returns:
            True if the destination accepted the row

        Raises:
            StorageError: Only when the failure itself cannot be recorded
        """
        job = self.job
        id_map = job.id_map

        try:
            id_map.delete(row.source_key, messages_only=True)
            job.save_queued_messages(row.source_key)

            record = self.pipeline.apply(job, row)
            destination_key = key_values(job.destination.write(record, row))

            if is_empty_key(destination_key):
                id_map.save(row.source_key, (), MapStatus.FAILED, row.rollback_action)
                if id_map.message_count(row.source_key) == 0:
                    self._record_failure(row, NOT_SAVED_MESSAGE, MessageLevel.ERROR)
                self._count(success=False)
                return False

            id_map.save(
                row.source_key,
                destination_key,
                row.needs_update,
                row.rollback_action,
                row.hash,
            )
            self._count(success=True, created=not row.previous_destination_key)
            logger.debug(
                "row_imported",
                job_id=job.id,
                source_key=list(row.key_values),
                destination_key=list(destination_key),
                status=row.needs_update.value,
            )
            return True

        except DestinationWriteError as e:
            self._record_outcome(row, MapStatus(e.status), str(e), MessageLevel(e.level))
        except DuplicateDestinationError as e:
            self._record_outcome(row, MapStatus.FAILED, str(e), MessageLevel.ERROR)
        except StorageError as e:
            self._record_outcome(row, MapStatus.FAILED, str(e), MessageLevel.ERROR)
        except Exception as e:
            log_error(logger, e, "import_row", job_id=job.id, source_key=list(row.key_values))
            self._record_outcome(
                row, MapStatus.FAILED, f"{type(e).__name__}: {e}", MessageLevel.ERROR
            )
        return False

    def _record_outcome(
        self, row: Row, status: MapStatus, message: str, level: MessageLevel
    ) -> None:
        self.job.id_map.save(row.source_key, (), status, row.rollback_action)
        self._record_failure(row, message, level)
        self._count(success=False)

    def _record_failure(self, row: Row, message: str, level: MessageLevel) -> None:
        self.job.id_map.save_message(row.source_key, message, level)
        self.diagnostics.row_message(self.job.id, row.key_values, message, level)

    # Rollback

    def rollback(self) -> ProgressSummary:
        """
        Undo the job's imports.

        Destination records whose row carries rollback action DELETE are
        deleted (never when the destination is the system of record), then
        the map rows are removed. A completed rollback also clears the
        remaining messages and resets the highwater mark.

        Returns:
            Final progress summary; ``result`` tells how the run ended
        """
        run_id = self._begin(ProcessStatus.ROLLING_BACK, "rollback")
        job = self.job

        try:
            job.destination.pre_rollback()
        except Exception as e:
            log_error(logger, e, "pre_rollback", job_id=job.id)
            self.diagnostics.message(f"pre_rollback failed: {e}", MessageLevel.ERROR)
            return self._end(run_id, RunResult.FAILED)

        try:
            if isinstance(job.destination, BulkDeleteDestination):
                result = self._rollback_bulk(job.destination)
            else:
                result = self._rollback_rows()
        except StorageError as e:
            log_error(logger, e, "rollback", job_id=job.id)
            self.diagnostics.message(f"State store unavailable: {e}", MessageLevel.ERROR)
            result = RunResult.FAILED

        try:
            job.destination.post_rollback()
        except Exception as e:
            log_error(logger, e, "post_rollback", job_id=job.id)
            result = RunResult.FAILED

        if result is RunResult.COMPLETED:
            try:
                job.id_map.clear_messages()
                if job.highwater_field:
                    job.highwater.reset()
            except StorageError as e:
                log_error(logger, e, "rollback_cleanup", job_id=job.id)
                result = RunResult.FAILED

        return self._end(run_id, result)

    def _rollback_budget(self, pending: int = 0) -> RunResult | None:
        status = self._check_status()
        if status is not RunResult.COMPLETED:
            return status
        limit = self.budgets.item_limit
        if limit is not None and self._total.processed + pending >= limit:
            return RunResult.INCOMPLETE
        return None

    def _in_id_list(self, source_key: tuple) -> bool:
        return not self.job.id_list or str(source_key[0]) in self.job.id_list

    def _deletes_destination(self, destination_key: tuple, action: RollbackAction) -> bool:
        return (
            self.job.system_of_record is SystemOfRecord.SOURCE
            and action is RollbackAction.DELETE
            and not is_empty_key(destination_key)
            and all(component is not None for component in destination_key)
        )

    def _rollback_bulk(self, destination: BulkDeleteDestination) -> RunResult:
        job = self.job

        result = RunResult.COMPLETED
        source_keys: list[tuple] = []
        destination_keys: list[tuple] = []

        def flush() -> None:
            if not source_keys:
                return
            try:
                if destination_keys:
                    destination.bulk_delete(list(destination_keys))
                job.id_map.delete_bulk(source_keys)
            except StorageError:
                raise
            except Exception as e:
                log_error(logger, e, "bulk_rollback", job_id=job.id, batch=len(source_keys))
                self.diagnostics.message(f"Bulk rollback failed: {e}", MessageLevel.ERROR)
            else:
                for _ in source_keys:
                    self._total.successes += 1
                    self._window.successes += 1
            for _ in source_keys:
                self._total.processed += 1
                self._window.processed += 1
            source_keys.clear()
            destination_keys.clear()

        for entry in job.id_map.iter_rows():
            stop = self._rollback_budget(pending=len(source_keys))
            if stop is not None:
                result = stop
                break
            if not self._in_id_list(entry.source_key):
                continue

            source_keys.append(entry.source_key)
            if self._deletes_destination(entry.destination_key, entry.rollback_action):
                destination_keys.append(entry.destination_key)
            if len(source_keys) >= job.rollback_batch_size:
                flush()

        flush()
        return result

    def _rollback_rows(self) -> RunResult:
        job = self.job
        result = RunResult.COMPLETED

        for entry in job.id_map.iter_rows():
            stop = self._rollback_budget()
            if stop is not None:
                result = stop
                break
            if not self._in_id_list(entry.source_key):
                continue

            try:
                if self._deletes_destination(entry.destination_key, entry.rollback_action):
                    job.destination.delete(entry.destination_key)
                job.id_map.delete(entry.source_key)
            except StorageError:
                raise
            except Exception as e:
                log_error(
                    logger, e, "rollback_row", job_id=job.id, source_key=list(entry.source_key)
                )
                self.diagnostics.row_message(
                    job.id, entry.source_key, f"Rollback failed: {e}", MessageLevel.ERROR
                )
                continue

            self._count(success=True)

        return result

    # Analysis

    def analyze(self) -> dict[str, FieldAnalysis]:
        """
        Profile the values of every source field in one pass.

        A source failure part way through returns what was gathered so far.
        """
        results: dict[str, FieldAnalysis] = {}
        source = self.job.source
        try:
            source.perform_rewind()
            while True:
                raw = source.get_next_row()
                if raw is None:
                    break
                for name, value in raw.items():
                    if str(name).startswith(BOOKKEEPING_PREFIX) or value is None:
                        continue
                    results.setdefault(name, FieldAnalysis()).add(value)
        except Exception as e:
            log_error(logger, e, "analyze", job_id=self.job.id)
            self.diagnostics.message(f"Analysis stopped early: {e}", MessageLevel.WARNING)
        return results
