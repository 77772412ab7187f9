"""Integration tests for Lambda handler."""
import json
import logging
import os
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import boto3
import pytest
import responses
from moto import mock_aws

from lambda_function import JsonFormatter, invocation_deadline, lambda_handler, setup_logging
from processor.models import RawEvent
from storage.json_file_manager import JsonFileManager
from sync_engine.errors import ErrorKind
from sync_engine.models import SyncOutcome, SyncResult, SyncState, SyncStatistics


EVENTS_URL = "https://www.googleapis.com/calendar/v3/calendars/primary/events"


@pytest.fixture
def mock_env(tmp_path):
    """Set up environment variables for the file backend."""
    env_vars = {
        'TABLE_NAME': 'test-calendar-sync',
        'LOG_LEVEL': 'INFO',
        'TIMEOUT_SECONDS': '5',
        'STORAGE_BACKEND': 'file',
        'DATA_DIR': str(tmp_path / 'calendar-sync')
    }
    with patch.dict(os.environ, env_vars):
        yield env_vars


@pytest.fixture
def mock_context():
    """Create a mock Lambda context."""
    context = Mock()
    context.function_name = 'test-function'
    context.memory_limit_in_mb = 512
    context.invoked_function_arn = 'arn:aws:lambda:us-east-1:123456789012:function:test-function'
    context.aws_request_id = 'test-request-id'
    context.get_remaining_time_in_millis.return_value = 900000
    return context


@pytest.fixture
def document_store(mock_env):
    """File store seeded with a configuration and a valid token."""
    store = JsonFileManager(mock_env['DATA_DIR'])
    store.put_document('calendar_config', {'cadenceHours': 4, 'maxRetries': 0})
    store.put_document('calendar_auth', {
        'accessToken': 'token-123',
        'expiresAt': '2099-01-01T00:00:00Z'
    })
    return store


@pytest.fixture
def sample_payload():
    """Sample Google Calendar events listing."""
    return {
        'items': [
            {
                'id': 'evt-1',
                'summary': 'Planning',
                'start': {'dateTime': '2099-01-15T15:00:00Z'},
                'end': {'dateTime': '2099-01-15T16:00:00Z'},
            },
            {
                'id': 'evt-2',
                'summary': 'Review',
                'start': {'dateTime': '2099-01-15T15:30:00Z'},
                'end': {'dateTime': '2099-01-15T17:00:00Z'},
            },
        ]
    }


class TestLambdaHandler:
    """Test cases for Lambda handler function."""

    @responses.activate
    def test_successful_sync(self, document_store, mock_context, sample_payload):
        """Test a full sync writes the snapshot and reports statistics."""
        responses.add(responses.GET, EVENTS_URL, json=sample_payload, status=200)

        response = lambda_handler({}, mock_context)

        assert response['statusCode'] == 200
        body = json.loads(response['body'])
        assert body['message'] == 'Sync completed successfully'
        assert body['result']['eventsCount'] == 2
        assert len(body['result']['conflicts']) == 1
        assert body['state']['status'] == 'SUCCESS'
        assert 'duration_seconds' in body

        snapshot = document_store.get_document('calendar_data')
        assert snapshot['eventCount'] == 2
        assert [e['id'] for e in snapshot['events']] == ['evt-1', 'evt-2']

    @responses.activate
    def test_fresh_data_is_skipped(self, document_store, mock_context, sample_payload):
        responses.add(responses.GET, EVENTS_URL, json=sample_payload, status=200)
        lambda_handler({}, mock_context)

        response = lambda_handler({}, mock_context)

        body = json.loads(response['body'])
        assert response['statusCode'] == 200
        assert body['result']['skipped'] is True
        assert len(responses.calls) == 1

    @responses.activate
    def test_force_bypasses_freshness(self, document_store, mock_context, sample_payload):
        responses.add(responses.GET, EVENTS_URL, json=sample_payload, status=200)
        lambda_handler({}, mock_context)

        response = lambda_handler({'force': True}, mock_context)

        assert json.loads(response['body'])['result']['skipped'] is False
        assert len(responses.calls) == 2

    @responses.activate
    def test_calendar_fetch_failure(self, document_store, mock_context):
        """A server error with no retries left reports the failure."""
        responses.add(responses.GET, EVENTS_URL, status=503)

        response = lambda_handler({'maxRetries': 0}, mock_context)

        assert response['statusCode'] == 500
        body = json.loads(response['body'])
        assert body['message'] == 'Sync failed'
        assert body['result']['errorKind'] == 'network'
        assert body['result']['attempts'] == 1
        assert body['state']['status'] == 'ERROR'
        assert document_store.get_document('calendar_data') is None

    @responses.activate
    def test_retries_stop_before_invocation_times_out(self, document_store, mock_context):
        """A backoff that would outlast the invocation is not started."""
        document_store.put_document('calendar_config', {'cadenceHours': 4, 'maxRetries': 3})
        mock_context.get_remaining_time_in_millis.return_value = 60000
        responses.add(responses.GET, EVENTS_URL, status=503)

        started = time.monotonic()
        response = lambda_handler({}, mock_context)

        assert time.monotonic() - started < 30
        assert response['statusCode'] == 500
        body = json.loads(response['body'])
        assert body['result']['attempts'] == 1
        assert body['result']['errorKind'] == 'network'
        assert len(responses.calls) == 1

    def test_missing_configuration(self, mock_env, mock_context):
        response = lambda_handler({}, mock_context)

        assert response['statusCode'] == 400
        body = json.loads(response['body'])
        assert body['error_type'] == 'ConfigurationMissingError'
        assert body['error_kind'] == 'configuration_missing'

    def test_expired_token(self, document_store, mock_context):
        document_store.put_document('calendar_auth', {
            'accessToken': 'token-123',
            'expiresAt': '2000-01-01T00:00:00Z'
        })

        response = lambda_handler({}, mock_context)

        assert response['statusCode'] == 400
        assert json.loads(response['body'])['error_type'] == 'NotAuthenticatedError'

    def test_unknown_backend(self, mock_env, mock_context):
        with patch.dict(os.environ, {'STORAGE_BACKEND': 'sqlite'}):
            response = lambda_handler({}, mock_context)

        assert response['statusCode'] == 500
        assert json.loads(response['body'])['error_type'] == 'ValueError'

    @patch('lambda_function.create_engine')
    def test_rejected_sync(self, mock_create_engine, mock_env, mock_context):
        engine = Mock()
        engine.run_sync_with_retry.return_value = SyncResult(
            outcome=SyncOutcome.REJECTED,
            error_kind=ErrorKind.ALREADY_IN_PROGRESS,
            attempts=0
        )
        engine.get_state.return_value = SyncState()
        engine.get_statistics.return_value = SyncStatistics()
        mock_create_engine.return_value = engine

        response = lambda_handler({'maxRetries': 2}, mock_context)

        assert response['statusCode'] == 409
        kwargs = engine.run_sync_with_retry.call_args.kwargs
        assert kwargs['max_retries'] == 2
        assert kwargs['force'] is False
        assert kwargs['deadline'] is not None

    @patch('lambda_function.GoogleCalendarClient')
    def test_dynamodb_backend(self, mock_client_class, mock_env, mock_context, monkeypatch):
        """Sync end-to-end against a mocked DynamoDB table."""
        monkeypatch.setenv('STORAGE_BACKEND', 'dynamodb')
        monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')
        monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
        monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
        start = datetime(2099, 1, 15, 15, tzinfo=timezone.utc)
        mock_client = Mock()
        mock_client.fetch_events.return_value = [
            RawEvent(id='evt-1', title='Planning', start=start, end=start + timedelta(hours=1)),
            RawEvent(id='evt-2', title='Review', start=start + timedelta(hours=2),
                     end=start + timedelta(hours=3)),
        ]
        mock_client_class.return_value = mock_client

        with mock_aws():
            table = boto3.resource('dynamodb', region_name='us-east-1').create_table(
                TableName='test-calendar-sync',
                KeySchema=[{'AttributeName': 'document_key', 'KeyType': 'HASH'}],
                AttributeDefinitions=[
                    {'AttributeName': 'document_key', 'AttributeType': 'S'}
                ],
                BillingMode='PAY_PER_REQUEST'
            )
            table.put_item(Item={
                'document_key': 'calendar_config',
                'body': json.dumps({'cadenceHours': 4})
            })
            table.put_item(Item={
                'document_key': 'calendar_auth',
                'body': json.dumps({'accessToken': 'token-123'})
            })

            response = lambda_handler({}, mock_context)

            item = table.get_item(Key={'document_key': 'calendar_data'})['Item']

        assert response['statusCode'] == 200
        assert json.loads(item['body'])['eventCount'] == 2

    @responses.activate
    def test_logging_output(self, document_store, mock_context, sample_payload, caplog):
        """Test that execution start and completion are logged."""
        responses.add(responses.GET, EVENTS_URL, json=sample_payload, status=200)

        with patch('lambda_function.setup_logging') as mock_setup_logging:
            with caplog.at_level(logging.INFO):
                lambda_handler({}, mock_context)

        mock_setup_logging.assert_called_once_with('INFO')

        messages = [record.getMessage() for record in caplog.records]
        assert 'Lambda execution started' in messages
        assert any('Lambda execution completed' in m for m in messages)


class TestInvocationDeadline:
    def test_keeps_reserve_before_remaining_time(self, mock_context):
        mock_context.get_remaining_time_in_millis.return_value = 60000
        before = datetime.now(timezone.utc)

        deadline = invocation_deadline(mock_context, 15)

        assert before + timedelta(seconds=44) <= deadline
        assert deadline <= datetime.now(timezone.utc) + timedelta(seconds=45)

    def test_no_limit_without_lambda_context(self):
        assert invocation_deadline(None, 15) is None


class TestSetupLogging:
    """Test cases for logging setup."""

    def test_setup_logging_default_level(self):
        """Test logging setup with default INFO level."""
        setup_logging()
        assert logging.getLogger().level == logging.INFO

    def test_setup_logging_debug_level(self):
        setup_logging('DEBUG')
        assert logging.getLogger().level == logging.DEBUG

    def test_setup_logging_unknown_level_defaults_to_info(self):
        setup_logging('CHATTY')
        assert logging.getLogger().level == logging.INFO


class TestJsonFormatter:
    def test_includes_extra_fields(self):
        record = logging.makeLogRecord({
            'name': 'sync', 'levelname': 'INFO', 'msg': 'done', 'events_count': 3
        })

        data = json.loads(JsonFormatter().format(record))

        assert data['message'] == 'done'
        assert data['logger'] == 'sync'
        assert data['events_count'] == 3
