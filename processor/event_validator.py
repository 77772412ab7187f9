"""Structural and business validation for reconciled calendar events."""
import logging
from datetime import time, timedelta, timezone, tzinfo
from typing import List

from processor.event_reconciler import spans_multiple_days
from processor.models import Conflict, Event, ValidationWarning

logger = logging.getLogger(__name__)


class EventValidator:
    """Validator producing human-readable violations and overlap diagnostics."""

    MIN_TITLE_LENGTH = 2
    MAX_TITLE_LENGTH = 200
    MAX_SINGLE_DAY_DURATION = timedelta(hours=24)

    def __init__(self, tz: tzinfo = timezone.utc):
        """
        Initialize the validator.

        Args:
            tz: Timezone in which local midnight and calendar dates are checked
        """
        self.tz = tz

    def validate(self, event: Event) -> List[str]:
        """
        Validate a single event.

        Args:
            event: Reconciled Event object

        Returns:
            List of violations (empty when the event is valid)
        """
        violations = []

        title = event.title.strip() if event.title else ''
        if not title:
            violations.append("Title is required")
        elif len(title) < self.MIN_TITLE_LENGTH:
            violations.append(
                f"Title is too short (minimum {self.MIN_TITLE_LENGTH} characters)"
            )
        elif len(title) > self.MAX_TITLE_LENGTH:
            violations.append(
                f"Title is too long (maximum {self.MAX_TITLE_LENGTH} characters)"
            )

        if event.all_day:
            if event.end < event.start:
                violations.append("End must not be before start")
        elif event.start >= event.end:
            violations.append("End must be after start")

        if (
            not event.all_day
            and not event.multi_day
            and event.duration > self.MAX_SINGLE_DAY_DURATION
        ):
            violations.append("Duration exceeds 24 hours")

        if event.all_day and event.start.astimezone(self.tz).time() != time(0, 0):
            violations.append("All-day event does not start at local midnight")

        if event.start < event.end:
            spans = spans_multiple_days(event.start, event.end, self.tz)
            if event.multi_day != spans:
                violations.append(
                    "Multi-day flag is inconsistent with start/end dates"
                )

        return violations

    def validate_all(self, events: List[Event]) -> List[ValidationWarning]:
        """
        Validate every event, collecting warnings instead of failing.

        Args:
            events: Reconciled events

        Returns:
            List of ValidationWarning objects
        """
        warnings = []
        for event in events:
            for violation in self.validate(event):
                warnings.append(ValidationWarning(event.id, violation))

        if warnings:
            logger.warning(
                f"{len(warnings)} validation warnings across {len(events)} events"
            )
        return warnings

    def detect_conflicts(self, events: List[Event]) -> List[Conflict]:
        """
        Find every pair of events whose [start, end) intervals overlap.

        Args:
            events: Reconciled events

        Returns:
            List of Conflict objects, in input order
        """
        conflicts = []
        for i, first in enumerate(events):
            for second in events[i + 1:]:
                if first.start < second.end and second.start < first.end:
                    conflicts.append(Conflict(first, second))

        logger.debug(f"Detected {len(conflicts)} conflicts")
        return conflicts
