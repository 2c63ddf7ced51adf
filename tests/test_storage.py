"""
Tests for the memory storage backends.

Run with: pytest tests/ -v
"""

import json
import sqlite3
import sys
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from memory.storage import InMemoryStorage, JsonFileStorage, SqliteStorage, WriteResult


def _bump(current):
    count = (current or {}).get('count', 0)
    return {'count': count + 1}


def _bump_concurrently(handles, updates=40, workers=8):
    """Run `updates` increments of one key, alternating between handles."""
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [
            pool.submit(handles[i % len(handles)].update, 'hits', _bump)
            for i in range(updates)
        ]
        return [future.result()[1] for future in futures]


class TestInMemoryStorage:
    """Tests for the dict-backed backend."""

    def setup_method(self):
        self.storage = InMemoryStorage(name='test')

    def test_update_creates_and_increments(self):
        self.storage.update('a', _bump)
        record, result = self.storage.update('a', _bump)
        assert record == {'count': 2}
        assert result.ok and result.written

    def test_mutate_returning_none_leaves_store_unchanged(self):
        record, result = self.storage.update('a', lambda current: None)
        assert record is None
        assert result == WriteResult.unchanged()
        assert self.storage.read_all() == {}

    def test_read_all_returns_copy(self):
        self.storage.update('a', _bump)
        snapshot = self.storage.read_all()
        snapshot['a']['count'] = 99
        assert self.storage.get('a') == {'count': 1}

    def test_clear(self):
        self.storage.update('a', _bump)
        assert self.storage.clear().ok
        assert self.storage.read_all() == {}


class TestJsonFileStorage:
    """Tests for whole-document JSON storage."""

    def test_missing_file_reads_empty(self, tmp_path):
        storage = JsonFileStorage(tmp_path / 'missing.json')
        assert storage.read_all() == {}
        assert storage.get('anything') is None

    def test_update_persists_to_disk(self, tmp_path):
        path = tmp_path / 'store.json'
        storage = JsonFileStorage(path)
        storage.update('a', _bump)
        storage.update('b', _bump)

        on_disk = json.loads(path.read_text(encoding='utf-8'))
        assert on_disk == {'a': {'count': 1}, 'b': {'count': 1}}

    def test_creates_parent_directories(self, tmp_path):
        path = tmp_path / 'nested' / 'dir' / 'store.json'
        _, result = JsonFileStorage(path).update('a', _bump)
        assert result.ok
        assert path.exists()

    def test_no_temp_files_left_behind(self, tmp_path):
        storage = JsonFileStorage(tmp_path / 'store.json')
        for _ in range(3):
            storage.update('a', _bump)
        assert [p.name for p in tmp_path.iterdir()] == ['store.json']

    def test_corrupt_file_reads_empty_and_is_untouched(self, tmp_path):
        path = tmp_path / 'store.json'
        path.write_text('{not json', encoding='utf-8')

        storage = JsonFileStorage(path)
        assert storage.read_all() == {}
        assert path.read_text(encoding='utf-8') == '{not json'

    def test_non_object_document_reads_empty(self, tmp_path):
        path = tmp_path / 'store.json'
        path.write_text('[1, 2, 3]', encoding='utf-8')
        assert JsonFileStorage(path).read_all() == {}

    def test_mutation_replaces_corrupt_file(self, tmp_path):
        path = tmp_path / 'store.json'
        path.write_text('{not json', encoding='utf-8')

        storage = JsonFileStorage(path)
        _, result = storage.update('a', _bump)
        assert result.ok
        assert json.loads(path.read_text(encoding='utf-8')) == {'a': {'count': 1}}

    def test_unwritable_path_reports_failure(self, tmp_path):
        # A directory where the file should be cannot be replaced by a file
        path = tmp_path / 'store.json'
        path.mkdir()

        record, result = JsonFileStorage(path).update('a', _bump)
        assert record == {'count': 1}
        assert not result.ok
        assert result.error

    def test_handles_on_same_path_see_each_other(self, tmp_path):
        path = tmp_path / 'store.json'
        first = JsonFileStorage(path)
        second = JsonFileStorage(path)
        first.update('a', _bump)
        second.update('a', _bump)
        assert first.get('a') == {'count': 2}

    def test_concurrent_updates_are_not_lost(self, tmp_path):
        path = tmp_path / 'store.json'
        handles = [JsonFileStorage(path), JsonFileStorage(path)]

        results = _bump_concurrently(handles)

        assert all(result.ok for result in results)
        assert JsonFileStorage(path).get('hits') == {'count': 40}

    def test_clear_removes_file(self, tmp_path):
        path = tmp_path / 'store.json'
        storage = JsonFileStorage(path)
        storage.update('a', _bump)

        assert storage.clear().written
        assert not path.exists()
        assert storage.clear() == WriteResult.unchanged()


class TestSqliteStorage:
    """Tests for the SQLite backend."""

    def test_update_and_read(self, tmp_path):
        storage = SqliteStorage(tmp_path / 'memory.db', table='counters')
        storage.update('a', _bump)
        storage.update('a', _bump)
        storage.update('b', _bump)

        assert storage.get('a') == {'count': 2}
        assert storage.read_all() == {'a': {'count': 2}, 'b': {'count': 1}}

    def test_mutate_returning_none_writes_nothing(self, tmp_path):
        storage = SqliteStorage(tmp_path / 'memory.db', table='counters')
        record, result = storage.update('a', lambda current: None)
        assert record is None
        assert result.ok and not result.written
        assert storage.read_all() == {}

    def test_tables_are_independent(self, tmp_path):
        db = tmp_path / 'memory.db'
        first = SqliteStorage(db, table='first')
        second = SqliteStorage(db, table='second')
        first.update('a', _bump)
        assert second.read_all() == {}

    def test_concurrent_updates_are_not_lost(self, tmp_path):
        db = tmp_path / 'memory.db'
        handles = [SqliteStorage(db, table='counters'), SqliteStorage(db, table='counters')]
        # Create the table before the workers race on it
        handles[0].update('warmup', _bump)

        results = _bump_concurrently(handles)

        assert all(result.ok for result in results)
        assert SqliteStorage(db, table='counters').get('hits') == {'count': 40}

    def test_write_all_replaces_contents(self, tmp_path):
        storage = SqliteStorage(tmp_path / 'memory.db', table='counters')
        storage.update('a', _bump)
        assert storage.write_all({'b': {'count': 5}}).ok
        assert storage.read_all() == {'b': {'count': 5}}

    def test_unreadable_row_is_skipped(self, tmp_path):
        db = tmp_path / 'memory.db'
        storage = SqliteStorage(db, table='counters')
        storage.update('good', _bump)

        con = sqlite3.connect(str(db))
        con.execute("INSERT INTO counters(key, value) VALUES ('bad', '{oops')")
        con.commit()
        con.close()

        assert storage.read_all() == {'good': {'count': 1}}

    def test_invalid_table_name(self, tmp_path):
        with pytest.raises(ValueError):
            SqliteStorage(tmp_path / 'memory.db', table='bad; DROP TABLE x')

    def test_clear(self, tmp_path):
        storage = SqliteStorage(tmp_path / 'memory.db', table='counters')
        storage.update('a', _bump)
        assert storage.clear().ok
        assert storage.read_all() == {}
