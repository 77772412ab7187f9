"""AWS Lambda handler for Calendar Sync."""
import json
import logging
import os
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Optional

from calendar_api.auth import StoredTokenAuth
from calendar_api.google_calendar import GoogleCalendarClient
from storage.config_store import ConfigStore
from storage.dynamodb_manager import DynamoDBManager
from storage.json_file_manager import JsonFileManager
from storage.snapshot_store import SnapshotStore
from sync_engine.errors import SyncError
from sync_engine.models import SyncOutcome
from sync_engine.state_machine import SyncEngine

# Seconds kept after the last backoff for the response to be written
RESPONSE_MARGIN_SECONDS = 10


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    RESERVED = set(vars(logging.makeLogRecord({}))) | {'message', 'asctime'}

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for key, value in vars(record).items():
            if key not in self.RESERVED and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def create_document_store(backend: str, table_name: str, data_dir: str):
    """
    Build the document store selected by STORAGE_BACKEND.

    Args:
        backend: 'dynamodb' or 'file'
        table_name: DynamoDB table for the dynamodb backend
        data_dir: Directory for the file backend

    Returns:
        DynamoDBManager or JsonFileManager

    Raises:
        ValueError: If backend is unknown
    """
    if backend == 'dynamodb':
        return DynamoDBManager(table_name=table_name)
    if backend == 'file':
        return JsonFileManager(data_dir=data_dir)
    raise ValueError(f"Unknown storage backend: {backend}")


def create_engine(document_store, timeout_seconds: int) -> SyncEngine:
    """Wire the sync engine to its collaborators over one document store."""
    auth = StoredTokenAuth(document_store)
    return SyncEngine(
        config_store=ConfigStore(document_store),
        auth_checker=auth,
        calendar_client=GoogleCalendarClient(auth, timeout=timeout_seconds),
        snapshot_store=SnapshotStore(document_store)
    )


def invocation_deadline(context: Any, reserve_seconds: int) -> Optional[datetime]:
    """
    Latest instant a retry backoff may end so the invocation can still finish.

    Args:
        context: Lambda context object (None when invoked locally)
        reserve_seconds: Time kept for the last attempt and the response

    Returns:
        Deadline in UTC, or None when the context reports no time limit
    """
    get_remaining = getattr(context, "get_remaining_time_in_millis", None)
    if get_remaining is None:
        return None
    remaining = timedelta(milliseconds=get_remaining())
    return datetime.now(timezone.utc) + remaining - timedelta(seconds=reserve_seconds)


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler function for Calendar Sync.

    Args:
        event: EventBridge event payload, optionally with 'force' and
            'maxRetries'
        context: Lambda context object

    Returns:
        Response dict with statusCode and sync result
    """
    # Read configuration from environment variables
    table_name = os.environ.get('TABLE_NAME', 'calendar-sync')
    log_level = os.environ.get('LOG_LEVEL', 'INFO')
    timeout_seconds = int(os.environ.get('TIMEOUT_SECONDS', '30'))
    backend = os.environ.get('STORAGE_BACKEND', 'dynamodb')
    data_dir = os.environ.get('DATA_DIR', '/tmp/calendar-sync')

    event = event or {}
    force = bool(event.get('force', False))
    max_retries = event.get('maxRetries')

    setup_logging(log_level)
    logger = logging.getLogger(__name__)

    start_time = time.time()
    logger.info(
        "Lambda execution started",
        extra={
            'table_name': table_name,
            'storage_backend': backend,
            'force': force,
            'timeout_seconds': timeout_seconds
        }
    )

    try:
        document_store = create_document_store(backend, table_name, data_dir)
        engine = create_engine(document_store, timeout_seconds)

        result = engine.run_sync_with_retry(
            max_retries=int(max_retries) if max_retries is not None else None,
            force=force,
            deadline=invocation_deadline(
                context, timeout_seconds + RESPONSE_MARGIN_SECONDS
            )
        )
        state = engine.get_state()
        duration = time.time() - start_time

        if result.outcome == SyncOutcome.SUCCESS:
            status_code, message = 200, 'Sync completed successfully'
            if result.skipped:
                message = 'Sync skipped, calendar data is fresh'
        elif result.outcome == SyncOutcome.REJECTED:
            status_code, message = 409, 'Sync already in progress'
        else:
            status_code, message = 500, 'Sync failed'

        logger.info(
            f"Lambda execution completed: {result.outcome.value}",
            extra={
                'duration_seconds': round(duration, 2),
                'events_count': result.events_count,
                'attempts': result.attempts
            }
        )

        return {
            'statusCode': status_code,
            'body': json.dumps({
                'message': message,
                'result': result.to_dict(),
                'state': state.to_dict(),
                'statistics': engine.get_statistics().summary(),
                'duration_seconds': round(duration, 2)
            })
        }

    except SyncError as e:
        # Needs remediation (configuration or credentials), not a retry
        duration = time.time() - start_time
        logger.error(
            f"Sync cannot run: {str(e)}",
            extra={'error_type': type(e).__name__}
        )
        return {
            'statusCode': 400,
            'body': json.dumps({
                'message': 'Sync requires attention',
                'error': str(e),
                'error_type': type(e).__name__,
                'error_kind': e.kind.value,
                'duration_seconds': round(duration, 2)
            })
        }

    except Exception as e:
        duration = time.time() - start_time
        logger.error(
            f"Lambda execution failed: {str(e)}",
            extra={
                'duration_seconds': round(duration, 2),
                'error_type': type(e).__name__
            },
            exc_info=True
        )
        return {
            'statusCode': 500,
            'body': json.dumps({
                'message': 'Sync failed',
                'error': str(e),
                'error_type': type(e).__name__,
                'duration_seconds': round(duration, 2)
            })
        }
