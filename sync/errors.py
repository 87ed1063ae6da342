"""Error taxonomy for calendar feed synchronization."""
from processor.models import ErrorType


class SyncError(Exception):
    """Base class for failures that end a sync attempt."""

    error_type = ErrorType.NETWORK
    retryable = False

    def __init__(self, message: str, retryable: bool = None):
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class NetworkError(SyncError):
    """Feed could not be retrieved: timeout, DNS, refused connection, bad status."""

    error_type = ErrorType.NETWORK
    retryable = True


class ParseError(SyncError):
    """Feed body is not scannable as iCalendar text."""

    error_type = ErrorType.PARSE
    retryable = False


class InvalidCalendarError(ValueError):
    """Calendar registration input failed validation."""


class StorageError(SyncError):
    """Calendar document could not be written while recording a sync."""

    error_type = ErrorType.NETWORK
    retryable = False
