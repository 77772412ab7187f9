"""Google Calendar v3 client fetching upcoming events."""
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional

import requests

from processor.models import RawEvent, parse_timestamp
from sync_engine.errors import NetworkError, NotAuthenticatedError

logger = logging.getLogger(__name__)


class GoogleCalendarClient:
    """Client for the Google Calendar events listing endpoint."""

    BASE_URL = "https://www.googleapis.com/calendar/v3/calendars/{calendar_id}/events"

    def __init__(self, token_provider, timeout: int = 30, session: Optional[requests.Session] = None):
        """
        Initialize the calendar client.

        Args:
            token_provider: Object with access_token() -> str
            timeout: HTTP request timeout in seconds (default: 30)
            session: Optional requests session to reuse connections
        """
        self.token_provider = token_provider
        self.timeout = timeout
        self.session = session or requests.Session()

    def fetch_events(
        self, calendar_id: str, max_events: int, weeks_ahead: int
    ) -> List[RawEvent]:
        """
        Fetch events starting now through weeks_ahead weeks.

        Args:
            calendar_id: Calendar to read ('primary' for the user's own)
            max_events: Maximum number of events to request
            weeks_ahead: Lookahead window in weeks

        Returns:
            List of RawEvent objects in the order the API returned them

        Raises:
            NotAuthenticatedError: If the token is missing or rejected
            NetworkError: On timeouts, connection errors, 429 or 5xx responses
        """
        now = datetime.now(timezone.utc)
        params = {
            'maxResults': max_events,
            'timeMin': now.isoformat(),
            'timeMax': (now + timedelta(weeks=weeks_ahead)).isoformat(),
            'singleEvents': 'true',
            'orderBy': 'startTime'
        }
        logger.info(
            f"Fetching up to {max_events} events for {weeks_ahead} weeks ahead"
        )

        payload = self._get(self.BASE_URL.format(calendar_id=calendar_id), params)
        events = [self._parse_item(item) for item in payload.get('items', [])]

        logger.info(f"Successfully fetched {len(events)} events")
        return events

    def _get(self, url: str, params: Dict[str, Any]) -> Dict[str, Any]:
        token = self.token_provider.access_token()
        if not token:
            raise NotAuthenticatedError("No access token available")

        try:
            response = self.session.get(
                url,
                params=params,
                headers={'Authorization': f"Bearer {token}"},
                timeout=self.timeout
            )
        except requests.Timeout as e:
            raise NetworkError(f"Calendar request timed out: {e}") from e
        except requests.RequestException as e:
            raise NetworkError(f"Calendar request failed: {e}") from e

        status = response.status_code
        if status in (401, 403):
            raise NotAuthenticatedError(
                f"Calendar API rejected credentials (HTTP {status})"
            )
        if status == 429:
            raise NetworkError(
                "Calendar API rate limit exceeded",
                status_code=status,
                retry_after=self._retry_after(response)
            )
        if status >= 500:
            raise NetworkError(
                f"Calendar API server error (HTTP {status})", status_code=status
            )

        try:
            response.raise_for_status()
            return response.json()
        except requests.HTTPError as e:
            raise NetworkError(str(e), status_code=status) from e
        except ValueError as e:
            raise NetworkError(f"Calendar API returned invalid JSON: {e}") from e

    @staticmethod
    def _retry_after(response: requests.Response) -> Optional[int]:
        value = response.headers.get('Retry-After')
        if value is None:
            return None
        try:
            return int(value)
        except ValueError:
            logger.warning(f"Ignoring non-numeric Retry-After header: {value}")
            return None

    def _parse_item(self, item: Dict[str, Any]) -> RawEvent:
        """
        Convert one API item to a RawEvent.

        All-day events carry 'date' instead of 'dateTime'; they become naive
        local midnights so the reconciler applies the calendar timezone.
        Unparseable times are left as None for the reconciler to reject.

        Args:
            item: Event resource from the API response

        Returns:
            RawEvent
        """
        start = item.get('start') or {}
        end = item.get('end') or {}
        all_day = 'date' in start and 'dateTime' not in start

        return RawEvent(
            id=item.get('id'),
            title=item.get('summary'),
            start=self._parse_time(start),
            end=self._parse_time(end),
            all_day=all_day,
            location=item.get('location', '')
        )

    @staticmethod
    def _parse_time(value: Dict[str, Any]) -> Optional[datetime]:
        try:
            if 'dateTime' in value:
                return parse_timestamp(value['dateTime'])
            if 'date' in value:
                day = date.fromisoformat(value['date'])
                return datetime.combine(day, time.min)
        except (TypeError, ValueError) as e:
            logger.warning(f"Failed to parse event time {value}: {e}")
        return None
