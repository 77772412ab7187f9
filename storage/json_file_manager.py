"""Local JSON file document storage with rotating backups."""
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from sync_engine.errors import CorruptDataError, PersistenceError

logger = logging.getLogger(__name__)


class JsonFileManager:
    """
    Document store keeping one JSON file per key under a data directory.

    Writes go to a temporary file that replaces the target atomically.
    Backups are timestamped copies under 'backups/', newest MAX_BACKUPS kept.
    """

    MAX_BACKUPS = 5

    def __init__(self, data_dir: str):
        """
        Args:
            data_dir: Directory holding the documents (created if missing)
        """
        self.data_dir = Path(data_dir)
        self.backup_dir = self.data_dir / 'backups'
        self.data_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized JsonFileManager in {self.data_dir}")

    def get_document(self, key: str) -> Optional[Dict[str, Any]]:
        """
        Read a document.

        Args:
            key: Document key

        Returns:
            Decoded document, or None if the file does not exist

        Raises:
            PersistenceError: If the file cannot be read
            CorruptDataError: If the file is not a JSON object
        """
        path = self._path(key)
        if not path.exists():
            return None
        return self._read(path)

    def put_document(self, key: str, document: Dict[str, Any]) -> bool:
        """
        Atomically write a document.

        Args:
            key: Document key
            document: JSON-serializable dictionary

        Returns:
            True if the write succeeded
        """
        path = self._path(key)
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self.data_dir, suffix='.tmp')
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as handle:
                    json.dump(document, handle, indent=2)
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.error(
                f"Error writing document {key}: {e}",
                extra={'error_type': type(e).__name__}
            )
            return False

    def backup_document(self, key: str) -> bool:
        """
        Copy the current document to a new timestamped backup.

        Args:
            key: Document key

        Returns:
            True if a backup was written
        """
        path = self._path(key)
        if not path.exists():
            return False

        stamp = datetime.now(timezone.utc).strftime('%Y%m%dT%H%M%S%f')
        target = self.backup_dir / f"{key}-{stamp}.json"
        suffix = 1
        while target.exists():
            target = self.backup_dir / f"{key}-{stamp}_{suffix:03d}.json"
            suffix += 1
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            target.write_bytes(path.read_bytes())
        except OSError as e:
            logger.error(f"Error backing up document {key}: {e}")
            return False

        self._prune_backups(key)
        return True

    def list_backups(self, key: str) -> List[Path]:
        """Return backups for key, newest first."""
        if not self.backup_dir.exists():
            return []
        return sorted(self.backup_dir.glob(f"{key}-*.json"), reverse=True)

    def restore_backup(self, key: str) -> bool:
        """
        Replace a document with its newest readable backup.

        Args:
            key: Document key

        Returns:
            True if a backup was restored
        """
        for backup in self.list_backups(key):
            try:
                document = self._read(backup)
            except (PersistenceError, CorruptDataError) as e:
                logger.warning(f"Skipping unusable backup {backup.name}: {e}")
                continue
            if self.put_document(key, document):
                logger.info(f"Restored {key} from {backup.name}")
                return True
            return False

        logger.warning(f"No backup available for {key}")
        return False

    def delete_document(self, key: str) -> bool:
        try:
            self._path(key).unlink(missing_ok=True)
            return True
        except OSError as e:
            logger.error(f"Error deleting document {key}: {e}")
            return False

    def _prune_backups(self, key: str) -> None:
        for stale in self.list_backups(key)[self.MAX_BACKUPS:]:
            try:
                stale.unlink()
            except OSError as e:
                logger.warning(f"Failed to remove old backup {stale.name}: {e}")

    def _path(self, key: str) -> Path:
        return self.data_dir / f"{key}.json"

    @staticmethod
    def _read(path: Path) -> Dict[str, Any]:
        try:
            text = path.read_text(encoding='utf-8')
        except OSError as e:
            raise PersistenceError(f"Failed to read {path.name}: {e}") from e
        try:
            document = json.loads(text)
        except ValueError as e:
            raise CorruptDataError(f"{path.name} is not valid JSON: {e}") from e
        if not isinstance(document, dict):
            raise CorruptDataError(f"{path.name} is not a JSON object")
        return document
