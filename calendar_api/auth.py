"""Stored OAuth token lookup for the calendar API."""
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from processor.models import parse_timestamp
from sync_engine.errors import CorruptDataError

logger = logging.getLogger(__name__)

AUTH_DOCUMENT_KEY = 'calendar_auth'


class StoredTokenAuth:
    """
    Reads the access token document kept next to the snapshot.

    The document has the shape {"accessToken": str, "expiresAt": ISO 8601}.
    A token is usable when present and not within EXPIRY_MARGIN of expiring.
    Acts both as the engine's auth checker and the client's token provider.
    """

    EXPIRY_MARGIN = timedelta(minutes=1)

    def __init__(self, document_store, now: Optional[Callable[[], datetime]] = None):
        """
        Args:
            document_store: Object with get_document(key) -> dict | None
            now: Current-time source (UTC wall clock by default)
        """
        self.document_store = document_store
        self._now = now or (lambda: datetime.now(timezone.utc))

    def access_token(self) -> Optional[str]:
        """Return a usable access token, or None."""
        try:
            document = self.document_store.get_document(AUTH_DOCUMENT_KEY)
        except CorruptDataError as e:
            logger.warning(f"Stored token document is unreadable: {e}")
            return None
        if not document or not document.get('accessToken'):
            logger.info("No stored access token")
            return None

        try:
            expires_at = parse_timestamp(document.get('expiresAt'))
        except ValueError:
            logger.warning("Stored token has an unreadable expiresAt")
            return None

        if expires_at is not None and expires_at - self.EXPIRY_MARGIN <= self._now():
            logger.info(f"Stored access token expired at {expires_at.isoformat()}")
            return None
        return document['accessToken']

    def is_authenticated(self) -> bool:
        return self.access_token() is not None
