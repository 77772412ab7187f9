"""Error taxonomy for the calendar sync engine."""
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Classification attached to failed or rejected sync results."""
    CONFIGURATION_MISSING = 'configuration_missing'
    NOT_AUTHENTICATED = 'not_authenticated'
    NETWORK = 'network'
    PERSISTENCE = 'persistence'
    CORRUPT_DATA = 'corrupt_data'
    ALREADY_IN_PROGRESS = 'already_in_progress'
    CANCELLED = 'cancelled'
    UNEXPECTED = 'unexpected'


class SyncError(Exception):
    """Base class for sync failures."""
    kind = ErrorKind.UNEXPECTED
    retryable = True


class ConfigurationMissingError(SyncError):
    """Configuration is absent or invalid; needs external remediation."""
    kind = ErrorKind.CONFIGURATION_MISSING
    retryable = False


class NotAuthenticatedError(SyncError):
    """Remote credentials are missing or rejected; needs re-authentication."""
    kind = ErrorKind.NOT_AUTHENTICATED
    retryable = False


class NetworkError(SyncError):
    """Remote fetch failed (connection, timeout, server or quota error)."""
    kind = ErrorKind.NETWORK

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None
    ):
        """
        Initialize the error.

        Args:
            message: Human-readable description
            status_code: HTTP status code, if the server answered
            retry_after: Seconds the server asked us to wait, if any
        """
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class PersistenceError(SyncError):
    """Snapshot could not be written."""
    kind = ErrorKind.PERSISTENCE


class CorruptDataError(SyncError):
    """Fetched data is unparseable; the whole batch is rejected."""
    kind = ErrorKind.CORRUPT_DATA
