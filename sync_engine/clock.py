"""Clock abstraction so backoff delays can be fast-forwarded in tests."""
import threading
from datetime import datetime, timedelta, timezone


class SystemClock:
    """Wall clock in UTC; waits block on a threading.Event."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def wait(self, delay: timedelta, interrupt: threading.Event) -> bool:
        """
        Block for delay, returning early if interrupt is set.

        Args:
            delay: How long to wait
            interrupt: Event that cuts the wait short

        Returns:
            True if the wait was interrupted
        """
        return interrupt.wait(max(delay.total_seconds(), 0))
