"""Sync configuration persistence."""
import logging
from typing import Optional

from sync_engine.errors import CorruptDataError, PersistenceError
from sync_engine.models import SyncConfiguration

logger = logging.getLogger(__name__)

CONFIG_DOCUMENT_KEY = 'calendar_config'


class ConfigStore:
    """Loads and saves SyncConfiguration through a document store."""

    def __init__(self, document_store, key: str = CONFIG_DOCUMENT_KEY):
        self.document_store = document_store
        self.key = key

    def load_config(self) -> Optional[SyncConfiguration]:
        """
        Load the stored configuration.

        Returns:
            SyncConfiguration, or None if it is missing or unreadable
        """
        try:
            document = self.document_store.get_document(self.key)
        except (PersistenceError, CorruptDataError) as e:
            logger.error(f"Failed to load sync configuration: {e}")
            return None

        if document is None:
            logger.warning("No sync configuration stored")
            return None

        try:
            return SyncConfiguration.from_dict(document)
        except (TypeError, ValueError) as e:
            logger.error(f"Stored sync configuration is malformed: {e}")
            return None

    def save_config(self, config: SyncConfiguration) -> bool:
        """
        Store a configuration after checking it.

        Args:
            config: Configuration to store

        Returns:
            True if the configuration was valid and written
        """
        problems = config.validate()
        if problems:
            logger.error(f"Refusing to save invalid configuration: {'; '.join(problems)}")
            return False
        return self.document_store.put_document(self.key, config.to_dict())
