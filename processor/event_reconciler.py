"""Event reconciler for normalizing freshly fetched calendar events."""
import logging
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Dict, List

from processor.models import Event, RawEvent, to_utc
from sync_engine.errors import CorruptDataError

logger = logging.getLogger(__name__)


def local_dates(start: datetime, end: datetime, tz: tzinfo) -> tuple[date, date]:
    """
    Return the first and last local calendar dates an event occupies.

    An end instant exactly at local midnight belongs to the previous day,
    so an all-day event [D 00:00, D+1 00:00) occupies only D.

    Args:
        start: Event start (aware)
        end: Event end (aware)
        tz: Timezone the calendar dates are evaluated in

    Returns:
        Tuple of (first_date, last_date)
    """
    local_start = start.astimezone(tz)
    local_end = end.astimezone(tz)
    last = local_end.date()
    if end > start and local_end.time() == time(0, 0):
        last = last - timedelta(days=1)
    return local_start.date(), max(last, local_start.date())


def spans_multiple_days(start: datetime, end: datetime, tz: tzinfo) -> bool:
    first, last = local_dates(start, end, tz)
    return first != last


class EventReconciler:
    """Merge fetched events into a normalized, sorted, deduplicated set."""

    PLACEHOLDER_TITLE = 'Untitled event'
    STALE_AFTER = timedelta(days=1)

    def __init__(self, tz: tzinfo = timezone.utc):
        """
        Initialize the reconciler.

        Args:
            tz: Timezone used for naive datetimes and calendar-date math
        """
        self.tz = tz

    def reconcile(self, raw_events: List[RawEvent], now: datetime) -> List[Event]:
        """
        Normalize raw events fetched from the remote calendar.

        Titles are trimmed (blank ones get a placeholder), the running flag
        is recomputed against now, events that ended more than a day ago are
        dropped, duplicate ids keep the most recently fetched instance, and
        the result is sorted by start time.

        Args:
            raw_events: Events as returned by the fetch collaborator
            now: Reference instant (aware)

        Returns:
            List of Event objects, deterministic for fixed inputs

        Raises:
            CorruptDataError: If any raw event lacks an id, start or end
        """
        now = to_utc(now)
        cutoff = now - self.STALE_AFTER
        by_id: Dict[str, Event] = {}

        for raw in raw_events:
            event = self._normalize_event(raw, now)
            # later entries win
            by_id.pop(event.id, None)
            by_id[event.id] = event

        events = [event for event in by_id.values() if event.end > cutoff]
        dropped = len(by_id) - len(events)
        events.sort(key=lambda e: (e.start, e.end, e.id))

        logger.info(
            f"Reconciled {len(events)} events from {len(raw_events)} fetched "
            f"({len(raw_events) - len(by_id)} duplicates, {dropped} stale)"
        )
        return events

    def _normalize_event(self, raw: RawEvent, now: datetime) -> Event:
        """
        Normalize a single raw event.

        Args:
            raw: Raw event from the fetch collaborator
            now: Reference instant (UTC)

        Returns:
            Event object
        """
        if not raw.id or not str(raw.id).strip():
            raise CorruptDataError("Fetched event has no id")
        if raw.start is None or raw.end is None:
            raise CorruptDataError(
                f"Fetched event '{raw.id}' has no parseable start/end"
            )

        start = self._normalize_instant(raw.start)
        end = self._normalize_instant(raw.end)
        title = (raw.title or '').strip() or self.PLACEHOLDER_TITLE

        return Event(
            id=str(raw.id),
            title=title,
            start=start,
            end=end,
            all_day=bool(raw.all_day),
            multi_day=spans_multiple_days(start, end, self.tz),
            running=start <= now < end,
            location=(raw.location or '').strip()
        )

    def _normalize_instant(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            value = value.replace(tzinfo=self.tz)
        return to_utc(value)
