"""
Confidence Store

Keyed, persisted rules whose trust score moves with human feedback.

Arithmetic:
- A rule is created by its first approval with confidence 0.5.
- Each further approval adds 0.1 (capped at 1.0).
- Each rejection subtracts 0.2 (floored at 0.0).
- Confidence is rounded to one decimal after every update.

A rejection outweighs two approvals. Rounding keeps the auto-apply
comparison stable after many updates.

The same store backs two views:
- VendorMemory: key = vendor name, payload = learned vendor labels
- PatternMemory: key = correction pattern id, payload = description/action
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional

from loguru import logger

from .storage import StorageBackend, WriteResult, now_iso

CONFIDENCE_SEED = 0.5
REINFORCE_STEP = 0.1
DECAY_STEP = 0.2
MIN_CONFIDENCE = 0.0
MAX_CONFIDENCE = 1.0

# Serialized keys owned by the store; everything else is payload
RESERVED_KEYS = ('confidence', 'approvedCount', 'rejectedCount', 'lastUpdated')


def clamp_confidence(value: float) -> float:
    """Clamp into [0.0, 1.0] and round to one decimal."""
    return max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, round(float(value), 1)))


@dataclass
class ConfidenceRecord:
    """A learned rule and its trust score."""

    key: str
    confidence: float = CONFIDENCE_SEED
    approved_count: int = 0
    rejected_count: int = 0
    last_updated: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    def meets(self, threshold: float) -> bool:
        """Whether this rule is trusted enough to apply without review."""
        return self.confidence >= threshold

    def to_dict(self, key_field: Optional[str] = None) -> Dict[str, Any]:
        """Serialize to the persisted camelCase layout."""
        data: Dict[str, Any] = {}
        if key_field:
            data[key_field] = self.key
        data.update(self.payload)
        data['confidence'] = self.confidence
        data['approvedCount'] = self.approved_count
        data['rejectedCount'] = self.rejected_count
        data['lastUpdated'] = self.last_updated
        return data

    @classmethod
    def from_dict(
        cls,
        key: str,
        data: Mapping[str, Any],
        key_field: Optional[str] = None,
    ) -> 'ConfidenceRecord':
        """
        Build a record from its persisted layout.

        Raises:
            TypeError, ValueError: If counters or confidence are malformed
        """
        payload = {
            k: v for k, v in data.items()
            if k not in RESERVED_KEYS and k != key_field
        }
        return cls(
            key=key,
            confidence=clamp_confidence(data.get('confidence', CONFIDENCE_SEED)),
            approved_count=int(data.get('approvedCount', 0)),
            rejected_count=int(data.get('rejectedCount', 0)),
            last_updated=data.get('lastUpdated'),
            payload=payload,
        )


@dataclass(frozen=True)
class MemoryUpdate:
    """What a reinforce/decay/record call did to a store."""

    store: str
    key: str
    operation: str
    changed: bool
    write: WriteResult
    record: Optional[Any] = None

    @property
    def persisted(self) -> bool:
        """True when the change reached durable storage."""
        return self.changed and self.write.ok

    def describe(self) -> str:
        """Human-readable line for a result's memory update list."""
        if not self.changed:
            return f"No {self.store} memory to {self.operation} for '{self.key}'"

        verb = {
            'reinforce': 'Reinforced',
            'decay': 'Decayed',
            'approve': 'Recorded approval in',
            'reject': 'Recorded rejection in',
            'success': 'Recorded system success in',
        }.get(self.operation, self.operation.capitalize())

        text = f"{verb} {self.store} memory '{self.key}'"
        confidence = getattr(self.record, 'confidence', None)
        if confidence is not None:
            text += f" (confidence={confidence})"
        if not self.write.ok:
            text += f" [not persisted: {self.write.error}]"
        return text


class ConfidenceStore:
    """
    Persisted keyed store with reinforce/decay semantics.

    Usage:
        store = ConfidenceStore(JsonFileStorage('patterns.json'), key_field='patternId')

        store.reinforce('VAT_INCLUDED_IN_TOTAL', {'action': 'Recompute tax'})
        record = store.get('VAT_INCLUDED_IN_TOTAL')   # confidence 0.5

        update = store.decay('VAT_INCLUDED_IN_TOTAL')
        if not update.persisted:
            print(update.write.error)
    """

    def __init__(
        self,
        storage: StorageBackend,
        key_field: Optional[str] = None,
        name: Optional[str] = None,
    ):
        """
        Args:
            storage: Backend holding the persisted mapping
            key_field: Name under which the key is repeated inside each record
            name: Store name used in logs and update descriptions
        """
        self.storage = storage
        self.key_field = key_field
        self.name = name or storage.name

    def _decode(self, key: str, data: Any) -> Optional[ConfidenceRecord]:
        if not isinstance(data, Mapping):
            logger.warning(f"Ignoring malformed {self.name} record '{key}'")
            return None
        try:
            return ConfidenceRecord.from_dict(key, data, self.key_field)
        except (TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed {self.name} record '{key}': {e}")
            return None

    def load(self) -> Dict[str, ConfidenceRecord]:
        """Return every readable record; empty when nothing is stored."""
        records = {}
        for key, data in self.storage.read_all().items():
            record = self._decode(key, data)
            if record is not None:
                records[key] = record
        return records

    def save(self, records: Mapping[str, ConfidenceRecord]) -> WriteResult:
        """Persist the full mapping."""
        return self.storage.write_all({
            key: record.to_dict(self.key_field) for key, record in records.items()
        })

    def get(self, key: str) -> Optional[ConfidenceRecord]:
        """Return the record for key, or None when nothing was learned yet."""
        data = self.storage.get(key)
        if data is None:
            return None
        return self._decode(key, data)

    def reinforce(self, key: str, payload: Optional[Mapping[str, Any]] = None) -> MemoryUpdate:
        """
        Record an approval for key.

        Creates the record at the seed confidence on first approval;
        otherwise raises confidence by one step. Supplied payload fields
        overwrite the stored ones.
        """
        holder: Dict[str, ConfidenceRecord] = {}

        def _apply(current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
            timestamp = now_iso()
            record = self._decode(key, current) if current is not None else None

            if record is None:
                record = ConfidenceRecord(
                    key=key,
                    confidence=CONFIDENCE_SEED,
                    approved_count=1,
                    rejected_count=0,
                    last_updated=timestamp,
                    payload=dict(payload or {}),
                )
            else:
                record.confidence = min(
                    MAX_CONFIDENCE, round(record.confidence + REINFORCE_STEP, 1)
                )
                record.approved_count += 1
                record.last_updated = timestamp
                if payload:
                    record.payload.update(payload)

            holder['record'] = record
            return record.to_dict(self.key_field)

        _, write = self.storage.update(key, _apply)
        # Missing when the backend failed before reading the key
        record = holder.get('record')
        if record is not None:
            logger.debug(f"Reinforced {self.name} '{key}' -> {record.confidence}")
        return MemoryUpdate(
            store=self.name,
            key=key,
            operation='reinforce',
            changed=True,
            write=write,
            record=record,
        )

    def decay(self, key: str) -> MemoryUpdate:
        """
        Record a rejection for key.

        Unknown keys are left alone: there is nothing to decay.
        """
        holder: Dict[str, ConfidenceRecord] = {}

        def _apply(current: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
            if current is None:
                return None
            record = self._decode(key, current)
            if record is None:
                return None

            record.confidence = max(
                MIN_CONFIDENCE, round(record.confidence - DECAY_STEP, 1)
            )
            record.rejected_count += 1
            record.last_updated = now_iso()
            holder['record'] = record
            return record.to_dict(self.key_field)

        _, write = self.storage.update(key, _apply)
        record = holder.get('record')
        if record is None:
            logger.debug(f"Nothing to decay in {self.name} for '{key}'")
        else:
            logger.debug(f"Decayed {self.name} '{key}' -> {record.confidence}")

        return MemoryUpdate(
            store=self.name,
            key=key,
            operation='decay',
            changed=record is not None or not write.ok,
            write=write,
            record=record,
        )

    def reset(self) -> WriteResult:
        """Forget every record in this store."""
        return self.storage.clear()

    def keys(self) -> List[str]:
        return list(self.load().keys())

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self.load())

    def __iter__(self) -> Iterator[ConfidenceRecord]:
        return iter(self.load().values())


class VendorMemory(ConfidenceStore):
    """Vendor-scoped rules, e.g. which label a vendor uses for service dates."""

    def __init__(self, storage: StorageBackend, name: str = 'vendor'):
        super().__init__(storage, key_field=None, name=name)

    def remember(
        self,
        vendor: str,
        service_date_label: Optional[str] = None,
        discount_terms: Optional[str] = None,
        **extra: Any,
    ) -> MemoryUpdate:
        """Reinforce the vendor rule with the latest corrected values."""
        payload: Dict[str, Any] = dict(extra)
        if service_date_label is not None:
            payload['serviceDateLabel'] = service_date_label
        if discount_terms is not None:
            payload['discountTerms'] = discount_terms
        return self.reinforce(vendor, payload)

    def service_date_label(self, vendor: str) -> Optional[str]:
        record = self.get(vendor)
        return record.payload.get('serviceDateLabel') if record else None


class PatternMemory(ConfidenceStore):
    """Correction patterns keyed by pattern id."""

    def __init__(self, storage: StorageBackend, name: str = 'pattern'):
        super().__init__(storage, key_field='patternId', name=name)

    def approve(
        self,
        pattern_id: str,
        description: Optional[str] = None,
        action: Optional[str] = None,
    ) -> MemoryUpdate:
        payload = {}
        if description is not None:
            payload['description'] = description
        if action is not None:
            payload['action'] = action
        return self.reinforce(pattern_id, payload)

    def reject(self, pattern_id: str) -> MemoryUpdate:
        return self.decay(pattern_id)

    def action_for(self, pattern_id: str) -> Optional[str]:
        record = self.get(pattern_id)
        return record.payload.get('action') if record else None
