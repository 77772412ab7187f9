"""Data models for sync state, configuration, statistics and results."""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from enum import Enum
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from processor.models import Conflict, ValidationWarning, format_timestamp
from sync_engine.errors import ErrorKind


class SyncStatus(str, Enum):
    """Possible states of the sync state machine."""
    NEVER_SYNCED = 'NEVER_SYNCED'
    IN_PROGRESS = 'IN_PROGRESS'
    SUCCESS = 'SUCCESS'
    ERROR = 'ERROR'
    CANCELLED = 'CANCELLED'
    SCHEDULED = 'SCHEDULED'


ALLOWED_CADENCE_HOURS = (1, 2, 4, 8, 24)


@dataclass(frozen=True)
class QuietHours:
    """Daily window [start_hour, end_hour) during which syncs are deferred."""
    start_hour: int
    end_hour: int

    @property
    def wraps_midnight(self) -> bool:
        return self.start_hour > self.end_hour

    def contains_hour(self, hour: int) -> bool:
        if self.start_hour == self.end_hour:
            return False
        if self.wraps_midnight:
            return hour >= self.start_hour or hour < self.end_hour
        return self.start_hour <= hour < self.end_hour


@dataclass(frozen=True)
class SyncConfiguration:
    """
    Sync settings for one calendar source.

    Loaded before every attempt by the config store and never mutated by
    the engine.
    """
    enabled: bool = True
    cadence_hours: int = 4
    retry_enabled: bool = True
    max_retries: int = 3
    retry_delay_minutes: float = 5
    quiet_hours: Optional[QuietHours] = None
    calendar_id: str = 'primary'
    weeks_ahead: int = 4
    max_events: int = 50
    timezone: str = 'UTC'

    MIN_WEEKS_AHEAD = 1
    MAX_WEEKS_AHEAD = 12
    MIN_MAX_EVENTS = 10
    MAX_MAX_EVENTS = 200

    @property
    def cadence(self) -> timedelta:
        return timedelta(hours=self.cadence_hours)

    @property
    def retry_delay(self) -> timedelta:
        return timedelta(minutes=self.retry_delay_minutes)

    @property
    def effective_max_retries(self) -> int:
        return self.max_retries if self.retry_enabled else 0

    @property
    def zone(self) -> tzinfo:
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            return timezone.utc

    def validate(self) -> List[str]:
        """
        Check the configuration constraints.

        Returns:
            List of problems (empty when valid)
        """
        errors = []
        if self.cadence_hours <= 0 or self.cadence_hours not in ALLOWED_CADENCE_HOURS:
            errors.append(
                f"Cadence must be one of {list(ALLOWED_CADENCE_HOURS)} hours, "
                f"got {self.cadence_hours}"
            )
        if self.max_retries < 0:
            errors.append("Max retries must be >= 0")
        if self.retry_delay_minutes <= 0:
            errors.append("Retry delay must be > 0")
        if self.quiet_hours is not None:
            for name, hour in (
                ('start', self.quiet_hours.start_hour),
                ('end', self.quiet_hours.end_hour),
            ):
                if not 0 <= hour <= 23:
                    errors.append(f"Quiet hours {name} must be in 0-23, got {hour}")
        if not self.calendar_id or not self.calendar_id.strip():
            errors.append("Calendar id is required")
        if not self.MIN_WEEKS_AHEAD <= self.weeks_ahead <= self.MAX_WEEKS_AHEAD:
            errors.append(
                f"Weeks ahead must be in {self.MIN_WEEKS_AHEAD}-{self.MAX_WEEKS_AHEAD}"
            )
        if not self.MIN_MAX_EVENTS <= self.max_events <= self.MAX_MAX_EVENTS:
            errors.append(
                f"Max events must be in {self.MIN_MAX_EVENTS}-{self.MAX_MAX_EVENTS}"
            )
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            errors.append(f"Unknown timezone: {self.timezone}")
        return errors

    def is_valid(self) -> bool:
        return not self.validate()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SyncConfiguration':
        """
        Build a configuration from its stored document.

        Args:
            data: Dictionary with camelCase keys

        Returns:
            SyncConfiguration object

        Raises:
            TypeError, ValueError: If a field has the wrong type
        """
        quiet_hours = None
        if data.get('quietHoursStart') is not None and data.get('quietHoursEnd') is not None:
            quiet_hours = QuietHours(
                int(data['quietHoursStart']), int(data['quietHoursEnd'])
            )

        return cls(
            enabled=bool(data.get('enabled', True)),
            cadence_hours=int(data.get('cadenceHours', 4)),
            retry_enabled=bool(data.get('retryEnabled', True)),
            max_retries=int(data.get('maxRetries', 3)),
            retry_delay_minutes=float(data.get('retryDelayMinutes', 5)),
            quiet_hours=quiet_hours,
            calendar_id=str(data.get('calendarId', 'primary')),
            weeks_ahead=int(data.get('weeksAhead', 4)),
            max_events=int(data.get('maxEvents', 50)),
            timezone=str(data.get('timezone', 'UTC'))
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enabled': self.enabled,
            'cadenceHours': self.cadence_hours,
            'retryEnabled': self.retry_enabled,
            'maxRetries': self.max_retries,
            'retryDelayMinutes': self.retry_delay_minutes,
            'quietHoursStart': self.quiet_hours.start_hour if self.quiet_hours else None,
            'quietHoursEnd': self.quiet_hours.end_hour if self.quiet_hours else None,
            'calendarId': self.calendar_id,
            'weeksAhead': self.weeks_ahead,
            'maxEvents': self.max_events,
            'timezone': self.timezone,
        }


def _humanize(minutes: int) -> str:
    if minutes < 60:
        return f"{minutes}min"
    if minutes < 1440:
        return f"{minutes // 60}h"
    return f"{minutes // 1440}d"


@dataclass(frozen=True)
class SyncState:
    """Immutable snapshot of the engine's sync status."""
    status: SyncStatus = SyncStatus.NEVER_SYNCED
    last_sync_time: Optional[datetime] = None
    next_sync_time: Optional[datetime] = None
    events_count: int = 0
    error_message: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    sync_duration_ms: int = 0

    def is_in_progress(self) -> bool:
        return self.status == SyncStatus.IN_PROGRESS

    def has_failed(self) -> bool:
        return self.status == SyncStatus.ERROR

    def is_successful(self) -> bool:
        return self.status == SyncStatus.SUCCESS

    def can_retry(self) -> bool:
        return self.has_failed() and self.retry_count < self.max_retries

    def time_since_last_sync(self, now: datetime) -> str:
        if self.last_sync_time is None:
            return "never"
        minutes = int((now - self.last_sync_time).total_seconds() // 60)
        if minutes < 1:
            return "just now"
        return f"{_humanize(minutes)} ago"

    def time_until_next_sync(self, now: datetime) -> Optional[str]:
        if self.next_sync_time is None:
            return None
        if self.next_sync_time < now:
            return "overdue"
        minutes = int((self.next_sync_time - now).total_seconds() // 60)
        if minutes < 1:
            return "now"
        return f"in {_humanize(minutes)}"

    @property
    def formatted_duration(self) -> str:
        ms = self.sync_duration_ms
        if ms < 1000:
            return f"{ms}ms"
        if ms < 60000:
            return f"{ms // 1000}s"
        return f"{ms // 60000}min {(ms % 60000) // 1000}s"

    def display_message(self, now: datetime) -> str:
        """Return a one-line status message for display surfaces."""
        if self.status == SyncStatus.NEVER_SYNCED:
            return "First sync required"
        if self.status == SyncStatus.SUCCESS:
            return f"Synced {self.time_since_last_sync(now)}"
        if self.status == SyncStatus.IN_PROGRESS:
            return "Sync in progress..."
        if self.status == SyncStatus.ERROR:
            return f"Error: {self.error_message or 'failed'}"
        if self.status == SyncStatus.CANCELLED:
            return "Sync cancelled"
        return f"Scheduled {self.time_until_next_sync(now) or ''}".strip()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'lastSyncTime': format_timestamp(self.last_sync_time),
            'nextSyncTime': format_timestamp(self.next_sync_time),
            'eventsCount': self.events_count,
            'errorMessage': self.error_message,
            'retryCount': self.retry_count,
            'maxRetries': self.max_retries,
            'syncDurationMs': self.sync_duration_ms,
        }


@dataclass
class SyncStatistics:
    """Cumulative counters over every completed sync attempt."""
    total_syncs: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    total_events_retrieved: int = 0
    average_duration_ms: float = 0.0
    current_success_streak: int = 0
    longest_success_streak: int = 0

    @property
    def success_rate(self) -> float:
        """Percentage of attempts that succeeded."""
        if self.total_syncs == 0:
            return 0.0
        return self.successful_syncs / self.total_syncs * 100

    @property
    def average_events_per_sync(self) -> float:
        if self.successful_syncs == 0:
            return 0.0
        return self.total_events_retrieved / self.successful_syncs

    def record_success(self, events_count: int, duration_ms: int) -> None:
        self._record_duration(duration_ms)
        self.successful_syncs += 1
        self.total_events_retrieved += events_count
        self.current_success_streak += 1
        self.longest_success_streak = max(
            self.longest_success_streak, self.current_success_streak
        )

    def record_failure(self, duration_ms: int) -> None:
        self._record_duration(duration_ms)
        self.failed_syncs += 1
        self.current_success_streak = 0

    def _record_duration(self, duration_ms: int) -> None:
        self.total_syncs += 1
        self.average_duration_ms += (
            (duration_ms - self.average_duration_ms) / self.total_syncs
        )

    def summary(self) -> str:
        return "\n".join([
            f"Total syncs: {self.total_syncs}",
            f"Success rate: {self.success_rate:.1f}%",
            f"Events retrieved: {self.total_events_retrieved}",
            f"Average duration: {self.average_duration_ms / 1000:.1f}s",
            f"Current success streak: {self.current_success_streak}",
        ])


class SyncOutcome(str, Enum):
    """Discriminator of SyncResult."""
    SUCCESS = 'success'
    FAILED = 'failed'
    REJECTED = 'rejected'
    CANCELLED = 'cancelled'


@dataclass(frozen=True)
class SyncResult:
    """Result of a sync run; match on outcome."""
    outcome: SyncOutcome
    events_count: int = 0
    duration_ms: int = 0
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    attempts: int = 1
    skipped: bool = False
    warnings: List[ValidationWarning] = field(default_factory=list)
    conflicts: List[Conflict] = field(default_factory=list)

    @property
    def is_success(self) -> bool:
        return self.outcome == SyncOutcome.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            'outcome': self.outcome.value,
            'eventsCount': self.events_count,
            'durationMs': self.duration_ms,
            'errorKind': self.error_kind.value if self.error_kind else None,
            'errorMessage': self.error_message,
            'attempts': self.attempts,
            'skipped': self.skipped,
            'warnings': [str(w) for w in self.warnings],
            'conflicts': [c.describe() for c in self.conflicts],
        }
