"""Next-run computation, quiet hours and the background sync trigger."""
import logging
import threading
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable, Optional

from processor.models import to_utc
from sync_engine.clock import SystemClock
from sync_engine.models import QuietHours

logger = logging.getLogger(__name__)


def is_in_quiet_hours(
    moment: datetime, quiet_hours: Optional[QuietHours], tz: tzinfo = timezone.utc
) -> bool:
    """
    Check whether an instant falls inside the daily quiet window.

    The window is [start_hour, end_hour) in local time; start > end means it
    wraps past midnight, start == end means no quiet hours.

    Args:
        moment: Instant to test (aware)
        quiet_hours: Window, or None for no quiet hours
        tz: Timezone the window hours are expressed in

    Returns:
        True if moment is inside the window
    """
    if quiet_hours is None:
        return False
    return quiet_hours.contains_hour(moment.astimezone(tz).hour)


def quiet_hours_end(
    moment: datetime, quiet_hours: QuietHours, tz: tzinfo = timezone.utc
) -> datetime:
    """Return the first end_hour:00 local time strictly after moment."""
    local = moment.astimezone(tz)
    end = local.replace(hour=quiet_hours.end_hour, minute=0, second=0, microsecond=0)
    if end <= local:
        end = (end.replace(tzinfo=None) + timedelta(days=1)).replace(tzinfo=tz)
    return to_utc(end)


def compute_next_run(
    now: datetime,
    cadence_hours: float,
    quiet_hours: Optional[QuietHours] = None,
    tz: tzinfo = timezone.utc
) -> datetime:
    """
    Compute when the next sync should run.

    Args:
        now: Current instant (aware)
        cadence_hours: Interval between syncs
        quiet_hours: Optional window during which syncs are deferred
        tz: Timezone the window hours are expressed in

    Returns:
        now + cadence, pushed to the end of the quiet window if it lands inside
    """
    candidate = to_utc(now) + timedelta(hours=cadence_hours)
    if is_in_quiet_hours(candidate, quiet_hours, tz):
        deferred = quiet_hours_end(candidate, quiet_hours, tz)
        logger.info(
            f"Next run {candidate.isoformat()} falls in quiet hours, "
            f"deferred to {deferred.isoformat()}"
        )
        return deferred
    return candidate


class SyncScheduler:
    """
    Single pending trigger that fires a callback on a background timer.

    Scheduling replaces any pending trigger and cancelling is idempotent, so
    repeated calls never leave duplicate timers behind.
    """

    def __init__(
        self,
        callback: Callable[[], None],
        clock: Optional[SystemClock] = None,
        timer_factory: Callable = threading.Timer
    ):
        """
        Initialize the scheduler.

        Args:
            callback: Called from the timer thread when the trigger fires
            clock: Clock used to compute trigger instants
            timer_factory: Callable(seconds, function) returning a startable,
                cancellable timer (threading.Timer by default)
        """
        self._callback = callback
        self._clock = clock or SystemClock()
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._timer = None
        self._generation = 0
        self._next_run_at: Optional[datetime] = None

    @property
    def pending(self) -> bool:
        return self._timer is not None

    @property
    def next_run_at(self) -> Optional[datetime]:
        return self._next_run_at

    def schedule(self, delay_hours: float) -> datetime:
        """
        Trigger the callback after delay_hours, replacing any pending trigger.

        Args:
            delay_hours: Hours from now

        Returns:
            Instant the trigger is due
        """
        return self.schedule_at(self._clock.now() + timedelta(hours=delay_hours))

    def schedule_at(self, moment: datetime) -> datetime:
        """
        Trigger the callback at moment, replacing any pending trigger.

        Args:
            moment: Instant the trigger is due (aware)

        Returns:
            moment, normalized to UTC
        """
        moment = to_utc(moment)
        delay = max((moment - self._clock.now()).total_seconds(), 0)

        with self._lock:
            self._cancel_locked()
            self._generation += 1
            generation = self._generation
            timer = self._timer_factory(delay, lambda: self._fire(generation))
            timer.daemon = True
            self._timer = timer
            self._next_run_at = moment
            timer.start()

        logger.info(f"Sync scheduled for {moment.isoformat()}")
        return moment

    def cancel_scheduled(self) -> bool:
        """
        Cancel the pending trigger, if any.

        Returns:
            True if a trigger was pending
        """
        with self._lock:
            cancelled = self._cancel_locked()
        if cancelled:
            logger.info("Scheduled sync cancelled")
        return cancelled

    def _cancel_locked(self) -> bool:
        if self._timer is None:
            return False
        self._timer.cancel()
        self._timer = None
        self._next_run_at = None
        self._generation += 1
        return True

    def _fire(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._timer = None
            self._next_run_at = None

        logger.info("Scheduled sync triggered")
        try:
            self._callback()
        except Exception as e:
            logger.error(
                f"Scheduled sync failed: {e}",
                extra={'error_type': type(e).__name__},
                exc_info=True
            )
