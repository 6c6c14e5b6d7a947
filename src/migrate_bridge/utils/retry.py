"""Retry logic for state store access using tenacity.

SQLite reports concurrent writers as "database is locked". Those failures are
transient and retried with exponential backoff; everything else propagates.
"""

from collections.abc import Callable
from functools import wraps
from typing import Any, TypeVar

from sqlalchemy.exc import IntegrityError, OperationalError
from tenacity import (
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from migrate_bridge.exceptions import StorageError
from migrate_bridge.utils.logging import get_logger

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

DEFAULT_ATTEMPTS = 5

_BUSY_MARKERS = ("database is locked", "database is busy", "deadlock")


def is_transient_storage_error(error: BaseException) -> bool:
    """Return True if a storage failure is worth retrying.

    Lock contention and unique-constraint races between concurrent upserts
    both resolve on a second attempt.
    """
    cause: BaseException | None = error
    while isinstance(cause, StorageError):
        cause = cause.__cause__
    if isinstance(cause, IntegrityError):
        return True
    if isinstance(cause, OperationalError):
        message = str(cause).lower()
        return any(marker in message for marker in _BUSY_MARKERS)
    return False


def _log_retry(retry_state: Any) -> None:
    logger.warning(
        "storage_busy_retrying",
        function=retry_state.fn.__name__ if retry_state.fn else None,
        attempt=retry_state.attempt_number,
    )


def storage_retrying(max_attempts: int = DEFAULT_ATTEMPTS) -> Retrying:
    """Build a tenacity controller for transient state store errors.

    Args:
        max_attempts: Maximum number of attempts

    Returns:
        Retrying instance, callable as ``retrying(func, *args, **kwargs)``
    """
    return Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=0.05, min=0.05, max=2.0),
        retry=retry_if_exception(is_transient_storage_error),
        before_sleep=_log_retry,
        reraise=True,
    )


def retry_on_busy_storage(func: F) -> F:
    """Method decorator retrying transient state store errors.

    The number of attempts comes from the instance's ``retry_attempts``
    attribute so it follows configuration.
    """

    @wraps(func)
    def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
        retrying = storage_retrying(getattr(self, "retry_attempts", DEFAULT_ATTEMPTS))
        return retrying(func, self, *args, **kwargs)

    return wrapper  # type: ignore
