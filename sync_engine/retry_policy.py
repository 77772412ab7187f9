"""Retry and exponential backoff policy for failed sync attempts."""
from datetime import timedelta

from sync_engine.errors import (
    ConfigurationMissingError,
    NetworkError,
    NotAuthenticatedError,
)

NON_RETRYABLE = (NotAuthenticatedError, ConfigurationMissingError)


def compute_delay(attempt_number: int, base_delay: timedelta) -> timedelta:
    """
    Compute the backoff delay after a failed attempt.

    Args:
        attempt_number: 1-based number of the attempt that failed
        base_delay: Delay after the first failure

    Returns:
        base_delay * 2^(attempt_number - 1)
    """
    if attempt_number < 1:
        raise ValueError(f"attempt_number must be >= 1, got {attempt_number}")
    return base_delay * (2 ** (attempt_number - 1))


def is_retryable(error: Exception) -> bool:
    """
    Classify an error as transient or needing external remediation.

    Args:
        error: Exception raised during a sync attempt

    Returns:
        False for authentication and configuration errors, True otherwise
    """
    if isinstance(error, NON_RETRYABLE):
        return False
    return getattr(error, 'retryable', True)


def should_retry(error: Exception, attempt_number: int, max_retries: int) -> bool:
    """
    Decide whether another attempt should follow a failure.

    Args:
        error: Exception raised by the failed attempt
        attempt_number: 1-based number of the attempt that failed
        max_retries: Retries allowed after the initial attempt

    Returns:
        True if the error is retryable and retry budget remains
    """
    return is_retryable(error) and attempt_number <= max_retries


def retry_delay(
    error: Exception, attempt_number: int, base_delay: timedelta
) -> timedelta:
    """
    Backoff delay, extended to any Retry-After the server asked for.

    Args:
        error: Exception raised by the failed attempt
        attempt_number: 1-based number of the attempt that failed
        base_delay: Delay after the first failure

    Returns:
        Delay to wait before the next attempt
    """
    delay = compute_delay(attempt_number, base_delay)
    if isinstance(error, NetworkError) and error.retry_after:
        delay = max(delay, timedelta(seconds=error.retry_after))
    return delay
