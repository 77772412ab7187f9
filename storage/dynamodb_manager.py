"""DynamoDB manager for sync document storage."""
import json
import logging
import time
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import ClientError

from sync_engine.errors import CorruptDataError, PersistenceError

logger = logging.getLogger(__name__)


class DynamoDBManager:
    """
    Key/value document store on a DynamoDB table.

    Each document is one item keyed by 'document_key', with the JSON body in
    'body'. Backups live under '<key>#backup'.
    """

    KEY_ATTRIBUTE = 'document_key'
    BACKUP_SUFFIX = '#backup'

    def __init__(self, table_name: str):
        """
        Initialize DynamoDB client and table reference.

        Args:
            table_name: Name of the DynamoDB table
        """
        self.table_name = table_name
        self.dynamodb = boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized DynamoDBManager for table: {table_name}")

    def get_document(self, key: str) -> Optional[Dict[str, Any]]:
        """
        Read a document.

        Args:
            key: Document key

        Returns:
            Decoded document, or None if no item exists

        Raises:
            PersistenceError: If DynamoDB cannot be read
            CorruptDataError: If the stored body is not a JSON object
        """
        try:
            response = self.table.get_item(Key={self.KEY_ATTRIBUTE: key})
        except ClientError as e:
            logger.error(f"Error reading document {key}: {e}")
            raise PersistenceError(f"Failed to read {key}: {e}") from e

        item = response.get('Item')
        if item is None:
            return None
        return self._decode(key, item.get('body'))

    def put_document(self, key: str, document: Dict[str, Any]) -> bool:
        """
        Write a document, replacing any existing one.

        Args:
            key: Document key
            document: JSON-serializable dictionary

        Returns:
            True if the write succeeded
        """
        return self._put_body(key, json.dumps(document))

    def backup_document(self, key: str) -> bool:
        """
        Copy the current document to its backup slot.

        Args:
            key: Document key

        Returns:
            True if a backup was written
        """
        try:
            response = self.table.get_item(Key={self.KEY_ATTRIBUTE: key})
        except ClientError as e:
            logger.error(f"Error reading document {key} for backup: {e}")
            return False

        item = response.get('Item')
        if item is None:
            return False
        return self._put_body(key + self.BACKUP_SUFFIX, item.get('body', ''))

    def restore_backup(self, key: str) -> bool:
        """
        Replace a document with its backup.

        Args:
            key: Document key

        Returns:
            True if a readable backup was restored
        """
        try:
            backup = self.get_document(key + self.BACKUP_SUFFIX)
        except (PersistenceError, CorruptDataError) as e:
            logger.error(f"Backup for {key} is unusable: {e}")
            return False

        if backup is None:
            logger.warning(f"No backup available for {key}")
            return False
        restored = self.put_document(key, backup)
        if restored:
            logger.info(f"Restored {key} from backup")
        return restored

    def delete_document(self, key: str) -> bool:
        try:
            self.table.delete_item(Key={self.KEY_ATTRIBUTE: key})
            return True
        except ClientError as e:
            logger.error(f"Error deleting document {key}: {e}")
            return False

    def _put_body(self, key: str, body: str) -> bool:
        try:
            self.table.put_item(Item={
                self.KEY_ATTRIBUTE: key,
                'body': body,
                'updated_at': int(time.time())
            })
            return True
        except ClientError as e:
            logger.error(
                f"Error writing document {key}: {e}",
                extra={'error_type': type(e).__name__}
            )
            return False

    @staticmethod
    def _decode(key: str, body: Any) -> Dict[str, Any]:
        try:
            document = json.loads(body)
        except (TypeError, ValueError) as e:
            raise CorruptDataError(f"Document {key} is not valid JSON: {e}") from e
        if not isinstance(document, dict):
            raise CorruptDataError(f"Document {key} is not a JSON object")
        return document
