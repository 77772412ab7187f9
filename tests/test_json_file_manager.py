"""Unit tests for the JSON file document store."""
import json

import pytest

from storage.json_file_manager import JsonFileManager
from sync_engine.errors import CorruptDataError


@pytest.fixture
def file_manager(tmp_path):
    return JsonFileManager(str(tmp_path / 'data'))


def test_creates_data_dir(tmp_path):
    JsonFileManager(str(tmp_path / 'nested' / 'data'))

    assert (tmp_path / 'nested' / 'data').is_dir()


def test_missing_document_is_none(file_manager):
    assert file_manager.get_document('calendar_data') is None


def test_put_then_get(file_manager):
    assert file_manager.put_document('calendar_data', {'eventCount': 2}) is True

    assert file_manager.get_document('calendar_data') == {'eventCount': 2}
    assert json.loads((file_manager.data_dir / 'calendar_data.json').read_text()) == {
        'eventCount': 2
    }


def test_write_leaves_no_temp_files(file_manager):
    file_manager.put_document('calendar_data', {'eventCount': 2})

    assert list(file_manager.data_dir.glob('*.tmp')) == []


def test_unserializable_document_keeps_previous(file_manager):
    file_manager.put_document('calendar_data', {'eventCount': 2})

    assert file_manager.put_document('calendar_data', {'bad': object()}) is False

    assert file_manager.get_document('calendar_data') == {'eventCount': 2}
    assert list(file_manager.data_dir.glob('*.tmp')) == []


def test_corrupt_file_raises(file_manager):
    (file_manager.data_dir / 'calendar_data.json').write_text('{oops')

    with pytest.raises(CorruptDataError):
        file_manager.get_document('calendar_data')


def test_backup_retention(file_manager):
    for count in range(7):
        file_manager.put_document('calendar_data', {'eventCount': count})
        assert file_manager.backup_document('calendar_data') is True

    backups = file_manager.list_backups('calendar_data')

    assert len(backups) == JsonFileManager.MAX_BACKUPS
    assert json.loads(backups[0].read_text()) == {'eventCount': 6}


def test_backup_without_document(file_manager):
    assert file_manager.backup_document('calendar_data') is False


def test_restore_skips_corrupt_backups(file_manager):
    file_manager.put_document('calendar_data', {'eventCount': 1})
    file_manager.backup_document('calendar_data')
    file_manager.put_document('calendar_data', {'eventCount': 2})
    file_manager.backup_document('calendar_data')
    file_manager.list_backups('calendar_data')[0].write_text('not json')
    (file_manager.data_dir / 'calendar_data.json').write_text('garbage')

    assert file_manager.restore_backup('calendar_data') is True

    assert file_manager.get_document('calendar_data') == {'eventCount': 1}


def test_restore_without_backups(file_manager):
    assert file_manager.restore_backup('calendar_data') is False


def test_delete_missing_document(file_manager):
    assert file_manager.delete_document('calendar_data') is True
