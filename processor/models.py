"""Data models for calendar event processing."""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional


def to_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to UTC."""
    return value.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Format a datetime as an ISO 8601 UTC string (or None)."""
    if value is None:
        return None
    return to_utc(value).isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO 8601 string produced by format_timestamp.

    Args:
        value: ISO 8601 string, with or without offset ('Z' accepted)

    Returns:
        Timezone-aware UTC datetime, or None when value is empty

    Raises:
        ValueError: If the string is not a valid timestamp
    """
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return to_utc(parsed)


@dataclass
class RawEvent:
    """Event as returned by the remote calendar, before reconciliation."""
    id: Optional[str]
    title: Optional[str]
    start: Optional[datetime]
    end: Optional[datetime]
    all_day: bool = False
    location: str = ''


@dataclass(frozen=True)
class Event:
    """Canonical, reconciled calendar event (instants in UTC)."""
    id: str
    title: str
    start: datetime
    end: datetime
    all_day: bool
    multi_day: bool
    running: bool
    location: str = ''

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def to_document(self) -> Dict[str, Any]:
        """
        Convert the event to its snapshot document shape.

        Returns:
            JSON-compatible dictionary
        """
        return {
            'id': self.id,
            'title': self.title,
            'start': format_timestamp(self.start),
            'end': format_timestamp(self.end),
            'allDay': self.all_day,
            'multiDay': self.multi_day,
            'running': self.running,
            'location': self.location,
        }

    @classmethod
    def from_document(cls, item: Dict[str, Any]) -> 'Event':
        """
        Build an event from its snapshot document shape.

        Args:
            item: Dictionary produced by to_document

        Returns:
            Event object

        Raises:
            KeyError, ValueError: If the document is incomplete or malformed
        """
        return cls(
            id=item['id'],
            title=item['title'],
            start=parse_timestamp(item['start']),
            end=parse_timestamp(item['end']),
            all_day=bool(item.get('allDay', False)),
            multi_day=bool(item.get('multiDay', False)),
            running=bool(item.get('running', False)),
            location=item.get('location') or ''
        )


@dataclass(frozen=True)
class Conflict:
    """Two events whose [start, end) intervals overlap."""
    first: Event
    second: Event

    @property
    def overlap(self) -> timedelta:
        return (
            min(self.first.end, self.second.end)
            - max(self.first.start, self.second.start)
        )

    def describe(self) -> str:
        minutes = int(self.overlap.total_seconds() // 60)
        return (
            f"'{self.first.title}' overlaps '{self.second.title}' "
            f"by {minutes} min"
        )


@dataclass(frozen=True)
class ValidationWarning:
    """Non-fatal validation problem attached to a sync result."""
    event_id: str
    message: str

    def __str__(self) -> str:
        return f"{self.event_id}: {self.message}"
