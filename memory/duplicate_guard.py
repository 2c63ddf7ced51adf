"""
Duplicate Guard

Persisted sighting counts keyed by a composite natural key
(vendor | invoice number | invoice date by default).

check_and_record() is the only path that records a sighting, so checking and
recording can never drift apart. The decision loop calls it before any recall
or learning, which keeps a re-submitted invoice from being learned twice.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from loguru import logger

from .storage import StorageBackend, WriteResult, now_iso

DEFAULT_KEY_FIELDS = ('vendor', 'invoiceNumber', 'invoiceDate')
DEFAULT_DELIMITER = '|'


@dataclass
class DuplicateRecord:
    """First sighting and sighting count for one natural key."""

    duplicate_key: str
    first_seen_at: str
    seen_count: int = 1
    parts: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'duplicateKey': self.duplicate_key}
        data.update(self.parts)
        data['firstSeenAt'] = self.first_seen_at
        data['seenCount'] = self.seen_count
        return data

    @classmethod
    def from_dict(cls, key: str, data: Dict[str, Any], key_fields: Sequence[str]) -> 'DuplicateRecord':
        return cls(
            duplicate_key=data.get('duplicateKey', key),
            first_seen_at=data.get('firstSeenAt', ''),
            seen_count=int(data.get('seenCount', 1)),
            parts={name: data.get(name, '') for name in key_fields},
        )


@dataclass(frozen=True)
class DuplicateCheck:
    """Result of check_and_record()."""

    is_duplicate: bool
    seen_count: int
    key: str
    write: WriteResult = field(default_factory=WriteResult.unchanged)


class DuplicateGuard:
    """
    Blocks re-processing of items already seen under the same natural key.

    Usage:
        guard = DuplicateGuard(JsonFileStorage('duplicateMemory.json'))

        guard.check_and_record('Acme', 'INV-1', '2024-01-15')  # (False, 1)
        guard.check_and_record('Acme', 'INV-1', '2024-01-15')  # (True, 2)
        guard.is_duplicate('Acme', 'INV-1', '2024-01-15')      # True, no count
    """

    def __init__(
        self,
        storage: StorageBackend,
        key_fields: Sequence[str] = DEFAULT_KEY_FIELDS,
        delimiter: str = DEFAULT_DELIMITER,
        name: str = 'duplicate',
    ):
        if not key_fields:
            raise ValueError("DuplicateGuard needs at least one key field")
        if not delimiter:
            raise ValueError("DuplicateGuard delimiter must not be empty")
        self.storage = storage
        self.key_fields: Tuple[str, ...] = tuple(key_fields)
        self.delimiter = delimiter
        self.name = name

    def _decode(self, key: str, data: Any) -> Optional[DuplicateRecord]:
        if not isinstance(data, Mapping):
            logger.warning(f"Ignoring malformed {self.name} record '{key}'")
            return None
        try:
            return DuplicateRecord.from_dict(key, data, self.key_fields)
        except (TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed {self.name} record '{key}': {e}")
            return None

    def build_key(self, *parts: Any) -> str:
        """
        Join key parts with the delimiter.

        A delimiter inside a part is backslash-escaped so distinct part
        tuples never collapse into the same key.

        Raises:
            ValueError: If the number of parts does not match key_fields
        """
        if len(parts) != len(self.key_fields):
            raise ValueError(
                f"Expected {len(self.key_fields)} key parts "
                f"({', '.join(self.key_fields)}), got {len(parts)}"
            )
        escaped = [
            ('' if part is None else str(part))
            .replace('\\', '\\\\')
            .replace(self.delimiter, '\\' + self.delimiter)
            for part in parts
        ]
        return self.delimiter.join(escaped)

    def check_and_record(self, *parts: Any) -> DuplicateCheck:
        """Report whether the key was seen before and record this sighting."""
        key = self.build_key(*parts)
        named_parts = {
            name: ('' if part is None else str(part))
            for name, part in zip(self.key_fields, parts)
        }

        def _apply(current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
            record = self._decode(key, current) if current is not None else None
            if record is None:
                record = DuplicateRecord(
                    duplicate_key=key,
                    first_seen_at=now_iso(),
                    seen_count=1,
                    parts=named_parts,
                )
            else:
                record.seen_count += 1
            return record.to_dict()

        stored, write = self.storage.update(key, _apply)
        seen_count = int(stored['seenCount']) if stored else 1
        is_duplicate = seen_count > 1

        if is_duplicate:
            logger.info(f"Duplicate detected for '{key}' (seen {seen_count} times)")
        return DuplicateCheck(
            is_duplicate=is_duplicate,
            seen_count=seen_count,
            key=key,
            write=write,
        )

    def is_duplicate(self, *parts: Any) -> bool:
        """Read-only probe; does not count a sighting."""
        return self.storage.get(self.build_key(*parts)) is not None

    def get(self, *parts: Any) -> Optional[DuplicateRecord]:
        key = self.build_key(*parts)
        data = self.storage.get(key)
        if data is None:
            return None
        return self._decode(key, data)

    def load(self) -> Dict[str, DuplicateRecord]:
        records = {}
        for key, data in self.storage.read_all().items():
            record = self._decode(key, data)
            if record is not None:
                records[key] = record
        return records

    def purge(self) -> WriteResult:
        """Forget every sighting."""
        return self.storage.clear()

    def __len__(self) -> int:
        return len(self.load())
