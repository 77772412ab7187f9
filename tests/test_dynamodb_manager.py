"""Unit tests for DynamoDB manager."""
import boto3
import pytest
from moto import mock_aws

from storage.dynamodb_manager import DynamoDBManager
from sync_engine.errors import CorruptDataError, PersistenceError


@pytest.fixture
def aws_env(monkeypatch):
    """Point boto3 at a fake region and credentials."""
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')


@pytest.fixture
def dynamodb_table(aws_env):
    """Create a mock DynamoDB table for testing."""
    with mock_aws():
        dynamodb = boto3.resource('dynamodb', region_name='us-east-1')

        table = dynamodb.create_table(
            TableName='test-calendar-sync',
            KeySchema=[
                {'AttributeName': 'document_key', 'KeyType': 'HASH'}
            ],
            AttributeDefinitions=[
                {'AttributeName': 'document_key', 'AttributeType': 'S'}
            ],
            BillingMode='PAY_PER_REQUEST'
        )

        yield table


@pytest.fixture
def dynamodb_manager(dynamodb_table):
    """Create DynamoDBManager instance with mock table."""
    return DynamoDBManager('test-calendar-sync')


class TestDocuments:
    """Tests for document reads and writes."""

    def test_missing_document_is_none(self, dynamodb_manager):
        assert dynamodb_manager.get_document('calendar_data') is None

    def test_put_then_get(self, dynamodb_manager, dynamodb_table):
        document = {'eventCount': 1, 'events': [{'id': 'evt-1'}]}

        assert dynamodb_manager.put_document('calendar_data', document) is True

        assert dynamodb_manager.get_document('calendar_data') == document
        item = dynamodb_table.get_item(Key={'document_key': 'calendar_data'})['Item']
        assert 'updated_at' in item

    def test_put_replaces_existing(self, dynamodb_manager):
        dynamodb_manager.put_document('calendar_config', {'cadenceHours': 4})
        dynamodb_manager.put_document('calendar_config', {'cadenceHours': 8})

        assert dynamodb_manager.get_document('calendar_config') == {'cadenceHours': 8}

    def test_invalid_body_is_corrupt(self, dynamodb_manager, dynamodb_table):
        dynamodb_table.put_item(Item={'document_key': 'calendar_data', 'body': '{not json'})

        with pytest.raises(CorruptDataError):
            dynamodb_manager.get_document('calendar_data')

    def test_non_object_body_is_corrupt(self, dynamodb_manager, dynamodb_table):
        dynamodb_table.put_item(Item={'document_key': 'calendar_data', 'body': '[1, 2]'})

        with pytest.raises(CorruptDataError):
            dynamodb_manager.get_document('calendar_data')

    def test_delete(self, dynamodb_manager):
        dynamodb_manager.put_document('calendar_auth', {'accessToken': 'abc'})

        assert dynamodb_manager.delete_document('calendar_auth') is True
        assert dynamodb_manager.get_document('calendar_auth') is None


class TestBackups:
    """Tests for backup and restore."""

    def test_backup_without_document(self, dynamodb_manager):
        assert dynamodb_manager.backup_document('calendar_data') is False

    def test_backup_and_restore(self, dynamodb_manager, dynamodb_table):
        dynamodb_manager.put_document('calendar_data', {'eventCount': 1})
        assert dynamodb_manager.backup_document('calendar_data') is True

        dynamodb_table.put_item(Item={'document_key': 'calendar_data', 'body': 'garbage'})
        assert dynamodb_manager.restore_backup('calendar_data') is True

        assert dynamodb_manager.get_document('calendar_data') == {'eventCount': 1}

    def test_restore_without_backup(self, dynamodb_manager):
        assert dynamodb_manager.restore_backup('calendar_data') is False


class TestErrors:
    """Tests for DynamoDB failures."""

    def test_missing_table_read_raises(self, aws_env):
        with mock_aws():
            manager = DynamoDBManager('no-such-table')

            with pytest.raises(PersistenceError):
                manager.get_document('calendar_data')

    def test_missing_table_write_returns_false(self, aws_env):
        with mock_aws():
            manager = DynamoDBManager('no-such-table')

            assert manager.put_document('calendar_data', {'eventCount': 0}) is False
            assert manager.backup_document('calendar_data') is False
