"""
Highwater mark persistence.

A highwater mark is the largest value of a job's monotonic source field
(typically a modification timestamp or serial) among successfully imported
rows. Incremental runs only admit rows above it.
"""

import threading
from typing import Any

from migrate_bridge.exceptions import StorageError
from migrate_bridge.migration.database import get_session, init_database
from migrate_bridge.migration.models import HighwaterMark
from migrate_bridge.utils.logging import get_logger
from migrate_bridge.utils.retry import DEFAULT_ATTEMPTS, retry_on_busy_storage

logger = get_logger(__name__)

EMPTY_MARK = ""


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def is_empty_mark(value: Any) -> bool:
    return value is None or value == EMPTY_MARK


def highwater_exceeds(value: Any, mark: Any) -> bool:
    """
    Return True if a highwater value is strictly above a mark.

    Values compare numerically when both parse as numbers, otherwise as
    strings (ISO timestamps order correctly as strings). An empty mark is
    exceeded by everything; an empty value exceeds nothing.
    """
    if is_empty_mark(mark):
        return True
    if is_empty_mark(value):
        return False

    value_number = _as_number(value)
    mark_number = _as_number(mark)
    if value_number is not None and mark_number is not None:
        return value_number > mark_number
    return str(value) > str(mark)


class HighwaterStore:
    """
    Persistent highwater mark of one migration job.

    Usage:
        highwater = HighwaterStore("nodes", "sqlite:///state.db")
        highwater.save("2024-01-02T00:00:00")
        highwater.get()  # '2024-01-02T00:00:00'
    """

    def __init__(self, job_id: str, database_url: str, retry_attempts: int = DEFAULT_ATTEMPTS):
        self.job_id = job_id
        self.database_url = database_url
        self.retry_attempts = retry_attempts
        self._lock = threading.RLock()
        init_database(database_url)

    def get(self) -> Any:
        """
        Return the stored mark, or the empty mark if none was saved.

        Raises:
            StorageError: If the read fails
        """
        with self._lock:
            try:
                with get_session(self.database_url) as session:
                    mark = session.get(HighwaterMark, self.job_id)
                    if mark is None or mark.value is None:
                        return EMPTY_MARK
                    return mark.value

            except Exception as e:
                logger.error("highwater_read_failed", job_id=self.job_id, error=str(e))
                raise StorageError(f"Failed to read highwater mark: {e}") from e

    @retry_on_busy_storage
    def save(self, value: Any, force: bool = False) -> bool:
        """
        Advance the mark to a value.

        The mark never moves backwards unless ``force`` is set.

        Args:
            value: Highwater value of a successfully imported row
            force: Store the value even if it is not above the current mark

        Returns:
            True if the stored mark changed
        """
        with self._lock:
            try:
                with get_session(self.database_url) as session:
                    mark = session.get(HighwaterMark, self.job_id)
                    current = EMPTY_MARK if mark is None or mark.value is None else mark.value

                    if not force and not highwater_exceeds(value, current):
                        return False

                    if mark is None:
                        session.add(HighwaterMark(job_id=self.job_id, value=value))
                    else:
                        mark.value = value

                logger.debug("highwater_saved", job_id=self.job_id, value=value, forced=force)
                return True

            except Exception as e:
                logger.error("highwater_save_failed", job_id=self.job_id, error=str(e))
                raise StorageError(f"Failed to save highwater mark: {e}") from e

    def reset(self) -> None:
        """Reset the mark to empty so the next run starts over."""
        self.save(EMPTY_MARK, force=True)
        logger.info("highwater_reset", job_id=self.job_id)
