"""Calendar snapshot persistence with backup and restore."""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from processor.models import Event, format_timestamp, parse_timestamp
from sync_engine.errors import CorruptDataError, PersistenceError

logger = logging.getLogger(__name__)

SNAPSHOT_DOCUMENT_KEY = 'calendar_data'
SOURCE_API = 'google_calendar_v3'


def build_snapshot_document(
    events: List[Event], now: datetime, calendar_id: str = 'primary'
) -> Dict[str, Any]:
    """
    Build the snapshot document consumed by downstream readers.

    Args:
        events: Reconciled events, already ordered
        now: Sync instant recorded as lastSyncTime
        calendar_id: Calendar the events came from

    Returns:
        JSON-compatible snapshot dictionary
    """
    return {
        'lastSyncTime': format_timestamp(now),
        'status': 'success',
        'eventCount': len(events),
        'events': [event.to_document() for event in events],
        'sourceApi': SOURCE_API,
        'calendarId': calendar_id,
    }


def validate_snapshot_document(document: Any) -> List[str]:
    """
    Check a stored snapshot's structure.

    Args:
        document: Decoded snapshot

    Returns:
        List of problems (empty when the snapshot is usable)
    """
    if not isinstance(document, dict):
        return ["Snapshot is not an object"]

    problems = []
    try:
        if parse_timestamp(document.get('lastSyncTime')) is None:
            problems.append("Missing lastSyncTime")
    except (TypeError, ValueError):
        problems.append("Unreadable lastSyncTime")

    events = document.get('events')
    if not isinstance(events, list):
        problems.append("Events is not a list")
        return problems

    if document.get('eventCount') != len(events):
        problems.append(
            f"eventCount {document.get('eventCount')} does not match "
            f"{len(events)} events"
        )
    for index, item in enumerate(events):
        try:
            Event.from_document(item)
        except (KeyError, TypeError, ValueError) as e:
            problems.append(f"Event {index} is malformed: {e}")
    return problems


class SnapshotStore:
    """Reads and writes the calendar snapshot through a document store."""

    def __init__(self, document_store, key: str = SNAPSHOT_DOCUMENT_KEY):
        """
        Args:
            document_store: DynamoDBManager or JsonFileManager
            key: Document key of the snapshot
        """
        self.document_store = document_store
        self.key = key

    def write_snapshot(self, document: Dict[str, Any]) -> bool:
        """
        Back up the current snapshot, then replace it.

        Args:
            document: Snapshot built by build_snapshot_document

        Returns:
            True if the new snapshot was written
        """
        if not self.document_store.backup_document(self.key):
            logger.info("No previous snapshot backed up")

        written = self.document_store.put_document(self.key, document)
        if written:
            logger.info(f"Snapshot written with {document.get('eventCount', 0)} events")
        else:
            logger.error("Failed to write snapshot")
        return written

    def read_snapshot(self) -> Optional[Dict[str, Any]]:
        """
        Read the snapshot, restoring from backup if it is corrupt.

        Returns:
            Snapshot document, or None if none is stored or none is usable
        """
        try:
            document = self.document_store.get_document(self.key)
        except PersistenceError as e:
            logger.error(f"Failed to read snapshot: {e}")
            return None
        except CorruptDataError as e:
            logger.warning(f"Snapshot is corrupt: {e}")
            return self._read_restored()

        if document is None:
            return None

        problems = validate_snapshot_document(document)
        if problems:
            logger.warning(f"Snapshot failed validation: {'; '.join(problems)}")
            return self._read_restored()
        return document

    def read_events(self) -> List[Event]:
        """Return the events of the stored snapshot (empty if none)."""
        document = self.read_snapshot()
        if document is None:
            return []
        return [Event.from_document(item) for item in document['events']]

    def restore_from_backup(self) -> bool:
        """
        Replace the snapshot with its most recent backup.

        Returns:
            True if a backup was restored
        """
        return self.document_store.restore_backup(self.key)

    def _read_restored(self) -> Optional[Dict[str, Any]]:
        if not self.restore_from_backup():
            return None
        try:
            document = self.document_store.get_document(self.key)
        except (PersistenceError, CorruptDataError) as e:
            logger.error(f"Restored snapshot is unreadable: {e}")
            return None
        if document is None or validate_snapshot_document(document):
            logger.error("Restored snapshot failed validation")
            return None
        return document
