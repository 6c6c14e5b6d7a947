"""Custom exceptions for Migrate Bridge.

This module defines exception classes for the error conditions that can occur
while reading sources, writing destinations and persisting migration state.
"""


class MigrateBridgeError(Exception):
    """Base exception for all Migrate Bridge errors."""

    pass


class ConfigurationError(MigrateBridgeError):
    """Raised when configuration is invalid or missing."""

    pass


class StorageError(MigrateBridgeError):
    """Raised when the persistent state store cannot be read or written."""

    pass


class DuplicateDestinationError(StorageError):
    """Raised when a destination key is already owned by another source key.

    A destination key may belong to at most one live map row (IMPORTED or
    NEEDS_UPDATE) per job.
    """

    def __init__(self, message: str, destination_key: tuple = (), owner_source_key: tuple = ()):
        """Initialize duplicate destination error.

        Args:
            message: Error message
            destination_key: The contested destination key
            owner_source_key: Source key of the row that already owns it
        """
        self.destination_key = tuple(destination_key)
        self.owner_source_key = tuple(owner_source_key)
        super().__init__(message)


class SourceReadError(MigrateBridgeError):
    """Raised when a source connector cannot rewind or advance."""

    pass


class DestinationWriteError(MigrateBridgeError):
    """Raised by destination connectors when a record cannot be written.

    Carries the map status to record for the row and the severity of the
    message stored alongside it.
    """

    def __init__(self, message: str, status: str = "failed", level: str = "error"):
        """Initialize destination write error.

        Args:
            message: Error message
            status: Map status to record for the row (a MapStatus value)
            level: Message severity (a MessageLevel value)
        """
        self.message = message
        self.status = status
        self.level = level
        super().__init__(message)


class StubCreationError(MigrateBridgeError):
    """Raised when a destination cannot create a placeholder record."""

    pass


class RowSkipped(MigrateBridgeError):
    """Raised from a row preparation hook to reject the current row.

    Not an error: the row is recorded as IGNORED and the run continues. The
    optional message is stored against the row at the given level.
    """

    def __init__(self, message: str = "", level: str = "informational"):
        self.message = message
        self.level = level
        super().__init__(message)
