"""Unit tests for retry policy."""
from datetime import timedelta

import pytest

from sync_engine.errors import (
    ConfigurationMissingError,
    CorruptDataError,
    NetworkError,
    NotAuthenticatedError,
    PersistenceError,
)
from sync_engine.retry_policy import compute_delay, is_retryable, retry_delay, should_retry


BASE = timedelta(minutes=5)


class TestComputeDelay:
    def test_doubles_each_attempt(self):
        delays = [compute_delay(n, BASE) for n in (1, 2, 3)]

        assert delays == [
            timedelta(minutes=5),
            timedelta(minutes=10),
            timedelta(minutes=20),
        ]
        assert sum(delays, timedelta()) == timedelta(minutes=35)

    def test_rejects_attempt_zero(self):
        with pytest.raises(ValueError):
            compute_delay(0, BASE)


class TestClassification:
    @pytest.mark.parametrize('error', [
        NetworkError("timeout"),
        PersistenceError("disk full"),
        CorruptDataError("bad payload"),
        RuntimeError("unexpected"),
    ])
    def test_transient_errors_are_retryable(self, error):
        assert is_retryable(error) is True

    @pytest.mark.parametrize('error', [
        NotAuthenticatedError("expired"),
        ConfigurationMissingError("missing"),
    ])
    def test_remediation_errors_are_not_retryable(self, error):
        assert is_retryable(error) is False

    def test_should_retry_respects_budget(self):
        error = NetworkError("timeout")

        assert should_retry(error, 3, 3) is True
        assert should_retry(error, 4, 3) is False
        assert should_retry(error, 1, 0) is False

    def test_should_not_retry_fatal_error(self):
        assert should_retry(NotAuthenticatedError("expired"), 1, 3) is False


class TestRetryDelay:
    def test_uses_backoff_without_retry_after(self):
        assert retry_delay(NetworkError("down"), 2, BASE) == timedelta(minutes=10)

    def test_longer_retry_after_wins(self):
        error = NetworkError("slow down", status_code=429, retry_after=3600)

        assert retry_delay(error, 1, BASE) == timedelta(hours=1)

    def test_shorter_retry_after_is_ignored(self):
        error = NetworkError("slow down", status_code=429, retry_after=10)

        assert retry_delay(error, 1, BASE) == timedelta(minutes=5)
