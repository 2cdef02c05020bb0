"""
Custom exceptions for the change log and stream layers.

Store backends wrap their driver errors in these so sessions and writers can
handle one failure type regardless of backend.
"""


class CalstreamError(Exception):
    """Base exception for all calstream errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ChangeLogError(CalstreamError):
    """Raised when the change log backend fails."""


class ChangeLogReadError(ChangeLogError):
    """Raised when reading records from the change log fails."""

    def __init__(self, last_id: int, cause: Exception | None = None):
        message = f"Failed to read change log after id {last_id}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message, {"last_id": last_id})
        self.last_id = last_id
        self.cause = cause


class ChangeLogWriteError(ChangeLogError):
    """Raised when appending or deleting change log records fails."""

    def __init__(self, operation: str, cause: Exception | None = None):
        message = f"Change log {operation} failed"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message, {"operation": operation})
        self.operation = operation
        self.cause = cause


class StoreNotReadyError(CalstreamError):
    """Raised when a store is used before open() or after close()."""

    def __init__(self, name: str):
        super().__init__(f"Change log store is not open: {name}", {"store": name})
