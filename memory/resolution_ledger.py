"""
Resolution Ledger

Approve/reject history per decision id (e.g. "VENDOR:Acme:serviceDateLabel").

The ledger carries no confidence score and is never consulted when deciding.
It answers a different question than the confidence stores: how often was
the final output right, regardless of which rule produced it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from loguru import logger

from .confidence_store import MemoryUpdate
from .storage import StorageBackend, WriteResult, now_iso

APPROVED = 'approved'
REJECTED = 'rejected'


@dataclass
class ResolutionRecord:
    """Outcome counters for one decision id."""

    decision_id: str
    approved_count: int = 0
    rejected_count: int = 0
    last_decision: Optional[str] = None
    last_updated: Optional[str] = None

    @property
    def total(self) -> int:
        return self.approved_count + self.rejected_count

    @property
    def accuracy(self) -> Optional[float]:
        """Share of approvals, or None before any decision."""
        if self.total == 0:
            return None
        return self.approved_count / self.total

    def to_dict(self) -> Dict[str, Any]:
        return {
            'memoryId': self.decision_id,
            'approvedCount': self.approved_count,
            'rejectedCount': self.rejected_count,
            'lastDecision': self.last_decision,
            'lastUpdated': self.last_updated,
        }

    @classmethod
    def from_dict(cls, key: str, data: Dict[str, Any]) -> 'ResolutionRecord':
        return cls(
            decision_id=data.get('memoryId', key),
            approved_count=int(data.get('approvedCount', 0)),
            rejected_count=int(data.get('rejectedCount', 0)),
            last_decision=data.get('lastDecision'),
            last_updated=data.get('lastUpdated'),
        )


class ResolutionLedger:
    """
    Audit counters for human approve/reject outcomes.

    Usage:
        ledger = ResolutionLedger(JsonFileStorage('resolutionMemory.json'))
        ledger.record_approval('VENDOR:Acme:serviceDateLabel')
        stats = ledger.get_stats('VENDOR:Acme:serviceDateLabel')
        print(stats.approved_count, stats.accuracy)
    """

    def __init__(self, storage: StorageBackend, name: str = 'resolution'):
        self.storage = storage
        self.name = name

    def _decode(self, key: str, data: Any) -> Optional[ResolutionRecord]:
        if not isinstance(data, Mapping):
            logger.warning(f"Ignoring malformed {self.name} record '{key}'")
            return None
        try:
            return ResolutionRecord.from_dict(key, data)
        except (TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed {self.name} record '{key}': {e}")
            return None

    def _record(self, decision_id: str, decision: str, operation: str) -> MemoryUpdate:
        holder: Dict[str, ResolutionRecord] = {}

        def _apply(current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
            record = self._decode(decision_id, current) if current is not None else None
            if record is None:
                record = ResolutionRecord(decision_id=decision_id)
            if decision == APPROVED:
                record.approved_count += 1
            else:
                record.rejected_count += 1
            record.last_decision = decision
            record.last_updated = now_iso()
            holder['record'] = record
            return record.to_dict()

        _, write = self.storage.update(decision_id, _apply)
        record = holder.get('record')
        logger.debug(f"Ledger {decision} for '{decision_id}'")
        return MemoryUpdate(
            store=self.name,
            key=decision_id,
            operation=operation,
            changed=True,
            write=write,
            record=record,
        )

    def record_approval(self, decision_id: str) -> MemoryUpdate:
        return self._record(decision_id, APPROVED, 'approve')

    def record_rejection(self, decision_id: str) -> MemoryUpdate:
        return self._record(decision_id, REJECTED, 'reject')

    def record_system_success(self, decision_id: str) -> MemoryUpdate:
        """Approval recorded without a human in the loop."""
        return self._record(decision_id, APPROVED, 'success')

    def get_stats(self, decision_id: str) -> Optional[ResolutionRecord]:
        data = self.storage.get(decision_id)
        if data is None:
            return None
        return self._decode(decision_id, data)

    def accuracy(self, decision_id: str) -> Optional[float]:
        stats = self.get_stats(decision_id)
        return stats.accuracy if stats else None

    def load(self) -> Dict[str, ResolutionRecord]:
        records = {}
        for key, data in self.storage.read_all().items():
            record = self._decode(key, data)
            if record is not None:
                records[key] = record
        return records

    def summary(self) -> Dict[str, Any]:
        """Totals across every decision id."""
        records = self.load()
        approved = sum(r.approved_count for r in records.values())
        rejected = sum(r.rejected_count for r in records.values())
        total = approved + rejected
        return {
            'decisions': len(records),
            'approved': approved,
            'rejected': rejected,
            'accuracy': round(approved / total, 3) if total else None,
        }

    def reset(self) -> WriteResult:
        return self.storage.clear()

    def __len__(self) -> int:
        return len(self.load())
