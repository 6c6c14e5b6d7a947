"""
Run history.

Records the start, end and outcome of every import and rollback run so the
status command can report what happened last.
"""

from dataclasses import dataclass
from datetime import UTC, datetime

from migrate_bridge.exceptions import StorageError
from migrate_bridge.migration.database import get_session, init_database
from migrate_bridge.migration.models import JobRun, RunResult
from migrate_bridge.utils.logging import get_logger

logger = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


@dataclass(frozen=True)
class RunRecord:
    """Detached snapshot of one run."""

    job_id: str
    operation: str
    result: str
    processed: int
    failed: int
    started_at: datetime
    finished_at: datetime | None


class RunHistory:
    """Persists run outcomes in the state store."""

    def __init__(self, database_url: str):
        self.database_url = database_url
        init_database(database_url)

    def start(self, job_id: str, operation: str) -> int:
        """Record the start of a run and return its id."""
        try:
            with get_session(self.database_url) as session:
                run = JobRun(
                    job_id=job_id,
                    operation=operation,
                    result="running",
                    started_at=_now(),
                )
                session.add(run)
                session.flush()
                return run.id

        except Exception as e:
            logger.error("run_history_start_failed", job_id=job_id, error=str(e))
            raise StorageError(f"Failed to record run start: {e}") from e

    def finish(self, run_id: int, result: RunResult, processed: int, failed: int) -> None:
        """Record the outcome of a run."""
        try:
            with get_session(self.database_url) as session:
                run = session.get(JobRun, run_id)
                if run is None:
                    return
                run.result = result.value
                run.processed = processed
                run.failed = failed
                run.finished_at = _now()

        except Exception as e:
            logger.error("run_history_finish_failed", run_id=run_id, error=str(e))
            raise StorageError(f"Failed to record run outcome: {e}") from e

    def last_run(self, job_id: str) -> RunRecord | None:
        """Most recent run of a job, if any."""
        try:
            with get_session(self.database_url) as session:
                run = (
                    session.query(JobRun)
                    .filter_by(job_id=job_id)
                    .order_by(JobRun.id.desc())
                    .first()
                )
                if run is None:
                    return None
                return RunRecord(
                    job_id=run.job_id,
                    operation=run.operation,
                    result=run.result,
                    processed=run.processed,
                    failed=run.failed,
                    started_at=run.started_at,
                    finished_at=run.finished_at,
                )

        except Exception as e:
            logger.error("run_history_read_failed", job_id=job_id, error=str(e))
            raise StorageError(f"Failed to read run history: {e}") from e

    def delete(self, job_id: str) -> None:
        """Forget every run of a job."""
        try:
            with get_session(self.database_url) as session:
                session.query(JobRun).filter_by(job_id=job_id).delete(synchronize_session=False)

        except Exception as e:
            logger.error("run_history_delete_failed", job_id=job_id, error=str(e))
            raise StorageError(f"Failed to delete run history: {e}") from e
