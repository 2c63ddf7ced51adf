"""
Memory Storage Backends

Durable keyed storage for the memory stores. Every backend exposes the same
small surface: read the whole mapping, write the whole mapping, and update a
single key atomically through a mutate callback.

Backends:
- JsonFileStorage: one JSON document per store. Mutations hold a per-path
  lock across load -> mutate -> save, and writes go through a temp file plus
  os.replace so readers never see a half-written file.
- SqliteStorage: one row per key. A key update runs inside BEGIN IMMEDIATE,
  which makes the read-modify-write a real transaction across processes.
- InMemoryStorage: dict-backed, for tests and throwaway runs.

Failure policy:
- Unreadable or corrupt data is logged as a warning and treated as empty.
- Write failures are logged and reported through WriteResult; they are
  never raised to the caller.
"""

from __future__ import annotations

import contextlib
import copy
import json
import os
import re
import sqlite3
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, Tuple, Union

from loguru import logger

Record = Dict[str, Any]
Mutator = Callable[[Optional[Record]], Optional[Record]]


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class WriteResult:
    """Outcome of a persistence call."""

    ok: bool
    written: bool = False
    error: Optional[str] = None

    @classmethod
    def success(cls) -> 'WriteResult':
        return cls(ok=True, written=True)

    @classmethod
    def unchanged(cls) -> 'WriteResult':
        return cls(ok=True, written=False)

    @classmethod
    def failure(cls, error: Union[Exception, str]) -> 'WriteResult':
        return cls(ok=False, written=False, error=str(error))


class StorageBackend:
    """
    Base class for keyed record storage.

    Subclasses implement the four primitives below. Records are plain
    JSON-compatible dicts; callers own the conversion to typed records.
    """

    name: str = 'store'

    def read_all(self) -> Dict[str, Record]:
        """Return the full mapping, or an empty one if nothing is readable."""
        raise NotImplementedError

    def write_all(self, data: Dict[str, Record]) -> WriteResult:
        """Replace the full mapping."""
        raise NotImplementedError

    def update(self, key: str, mutate: Mutator) -> Tuple[Optional[Record], WriteResult]:
        """
        Atomically read, mutate and persist one key.

        Args:
            key: Record key
            mutate: Receives a copy of the current record (or None) and
                returns the new record, or None to leave the store unchanged.

        Returns:
            Tuple of (record after the call, write result). When the write
            fails the computed record is still returned.
        """
        raise NotImplementedError

    def clear(self) -> WriteResult:
        """Remove every record."""
        raise NotImplementedError

    def get(self, key: str) -> Optional[Record]:
        """Return one record or None."""
        return self.read_all().get(key)

    def describe(self) -> str:
        return self.name


class InMemoryStorage(StorageBackend):
    """Dict-backed storage. Nothing survives the process."""

    def __init__(self, name: str = 'memory', initial: Optional[Dict[str, Record]] = None):
        self.name = name
        self._data: Dict[str, Record] = copy.deepcopy(initial) if initial else {}
        self._lock = threading.RLock()

    def read_all(self) -> Dict[str, Record]:
        with self._lock:
            return copy.deepcopy(self._data)

    def write_all(self, data: Dict[str, Record]) -> WriteResult:
        with self._lock:
            self._data = copy.deepcopy(dict(data))
        return WriteResult.success()

    def update(self, key: str, mutate: Mutator) -> Tuple[Optional[Record], WriteResult]:
        with self._lock:
            current = copy.deepcopy(self._data.get(key))
            new = mutate(current)
            if new is None:
                return current, WriteResult.unchanged()
            self._data[key] = copy.deepcopy(new)
            return new, WriteResult.success()

    def clear(self) -> WriteResult:
        with self._lock:
            self._data = {}
        return WriteResult.success()

    def describe(self) -> str:
        return f"{self.name} (in-memory)"


# One lock per resolved file path, shared by every handle in the process
_PATH_LOCKS: Dict[str, threading.RLock] = {}
_PATH_LOCKS_GUARD = threading.Lock()


def _lock_for(path: Path) -> threading.RLock:
    key = str(path.resolve())
    with _PATH_LOCKS_GUARD:
        lock = _PATH_LOCKS.get(key)
        if lock is None:
            lock = threading.RLock()
            _PATH_LOCKS[key] = lock
        return lock


class JsonFileStorage(StorageBackend):
    """
    Whole-document JSON storage.

    Usage:
        storage = JsonFileStorage('data/vendorMemory.json', name='vendor')
        record, result = storage.update('Acme', lambda current: {...})
        if not result.ok:
            print(result.error)
    """

    def __init__(self, path: Union[str, Path], name: Optional[str] = None):
        self.path = Path(path)
        self.name = name or self.path.stem
        self._lock = _lock_for(self.path)

    def read_all(self) -> Dict[str, Record]:
        with self._lock:
            data, _ = self._load()
            return data

    def write_all(self, data: Dict[str, Record]) -> WriteResult:
        with self._lock:
            return self._write(dict(data))

    def update(self, key: str, mutate: Mutator) -> Tuple[Optional[Record], WriteResult]:
        with self._lock:
            data, readable = self._load()
            current = data.get(key)
            new = mutate(copy.deepcopy(current))
            if new is None:
                return current, WriteResult.unchanged()

            if not readable:
                logger.warning(
                    f"Replacing unreadable {self.name} store at {self.path} "
                    f"with recovered contents"
                )
            data[key] = new
            return new, self._write(data)

    def clear(self) -> WriteResult:
        with self._lock:
            try:
                self.path.unlink()
            except FileNotFoundError:
                return WriteResult.unchanged()
            except OSError as e:
                logger.error(f"Failed to reset {self.name} store at {self.path}: {e}")
                return WriteResult.failure(e)
            logger.info(f"Reset {self.name} store at {self.path}")
            return WriteResult.success()

    def describe(self) -> str:
        return f"{self.name} ({self.path})"

    def _load(self) -> Tuple[Dict[str, Record], bool]:
        """Load the document. Second element is False when data was unreadable."""
        if not self.path.exists():
            return {}, True

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load {self.name} memory from {self.path}: {e}")
            return {}, False

        if not isinstance(data, dict):
            logger.warning(
                f"Ignoring {self.name} memory at {self.path}: "
                f"expected a JSON object, got {type(data).__name__}"
            )
            return {}, False

        return data, True

    def _write(self, data: Dict[str, Record]) -> WriteResult:
        tmp_path = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{self.path.name}.",
                suffix='.tmp',
                dir=str(self.path.parent),
            )
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
            tmp_path = None
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to save {self.name} memory to {self.path}: {e}")
            return WriteResult.failure(e)
        finally:
            if tmp_path is not None:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_path)

        return WriteResult.success()


_TABLE_NAME = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


class SqliteStorage(StorageBackend):
    """
    SQLite key-value storage, one table per store.

    Each key lives in its own row, so update() only locks the database for
    the duration of a single key's read-modify-write.
    """

    def __init__(self, path: Union[str, Path], table: str, timeout: float = 10.0):
        if not _TABLE_NAME.match(table):
            raise ValueError(f"Invalid table name: {table!r}")
        self.path = Path(path)
        self.table = table
        self.name = table
        self.timeout = timeout

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode; transactions are opened explicitly
        con = sqlite3.connect(str(self.path), timeout=self.timeout, isolation_level=None)
        try:
            con.execute("PRAGMA journal_mode=WAL;")
            con.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL,
                  updated_at TEXT
                );
                """
            )
            yield con
        finally:
            con.close()

    def _decode(self, key: str, raw: str) -> Optional[Record]:
        try:
            value = json.loads(raw)
        except ValueError as e:
            logger.warning(f"Skipping unreadable {self.name} record '{key}': {e}")
            return None
        if not isinstance(value, dict):
            logger.warning(f"Skipping {self.name} record '{key}': not a JSON object")
            return None
        return value

    def read_all(self) -> Dict[str, Record]:
        try:
            with self._connect() as con:
                rows = con.execute(f"SELECT key, value FROM {self.table}").fetchall()
        except (OSError, sqlite3.Error) as e:
            logger.warning(f"Failed to load {self.name} memory from {self.path}: {e}")
            return {}

        data = {}
        for key, raw in rows:
            value = self._decode(key, raw)
            if value is not None:
                data[key] = value
        return data

    def get(self, key: str) -> Optional[Record]:
        try:
            with self._connect() as con:
                row = con.execute(
                    f"SELECT value FROM {self.table} WHERE key=?", (key,)
                ).fetchone()
        except (OSError, sqlite3.Error) as e:
            logger.warning(f"Failed to read {self.name} record '{key}' from {self.path}: {e}")
            return None
        return self._decode(key, row[0]) if row else None

    def write_all(self, data: Dict[str, Record]) -> WriteResult:
        stamp = now_iso()
        try:
            with self._connect() as con:
                con.execute("BEGIN IMMEDIATE")
                try:
                    con.execute(f"DELETE FROM {self.table}")
                    con.executemany(
                        f"INSERT INTO {self.table}(key, value, updated_at) VALUES (?,?,?)",
                        [
                            (key, json.dumps(value, ensure_ascii=False), stamp)
                            for key, value in data.items()
                        ],
                    )
                    con.execute("COMMIT")
                except Exception:
                    con.execute("ROLLBACK")
                    raise
        except (OSError, TypeError, ValueError, sqlite3.Error) as e:
            logger.error(f"Failed to save {self.name} memory to {self.path}: {e}")
            return WriteResult.failure(e)
        return WriteResult.success()

    def update(self, key: str, mutate: Mutator) -> Tuple[Optional[Record], WriteResult]:
        new: Optional[Record] = None
        try:
            with self._connect() as con:
                con.execute("BEGIN IMMEDIATE")
                try:
                    row = con.execute(
                        f"SELECT value FROM {self.table} WHERE key=?", (key,)
                    ).fetchone()
                    current = self._decode(key, row[0]) if row else None
                    new = mutate(current)
                    if new is None:
                        con.execute("ROLLBACK")
                        return current, WriteResult.unchanged()

                    con.execute(
                        f"INSERT OR REPLACE INTO {self.table}(key, value, updated_at) VALUES (?,?,?)",
                        (key, json.dumps(new, ensure_ascii=False), now_iso()),
                    )
                    con.execute("COMMIT")
                except Exception:
                    con.execute("ROLLBACK")
                    raise
        except (OSError, TypeError, ValueError, sqlite3.Error) as e:
            logger.error(f"Failed to update {self.name} record '{key}' in {self.path}: {e}")
            return new, WriteResult.failure(e)
        return new, WriteResult.success()

    def clear(self) -> WriteResult:
        try:
            with self._connect() as con:
                con.execute(f"DELETE FROM {self.table}")
        except (OSError, sqlite3.Error) as e:
            logger.error(f"Failed to reset {self.name} store in {self.path}: {e}")
            return WriteResult.failure(e)
        logger.info(f"Reset {self.name} store in {self.path}")
        return WriteResult.success()

    def describe(self) -> str:
        return f"{self.name} ({self.path})"
