"""
Audit Trail

Ordered, append-only record of the phases one invoice run went through.
Entries are immutable and belong to the run's result; they are never
persisted on their own.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, List, Tuple, Union

from memory.storage import now_iso


class AuditStep(Enum):
    """Fixed vocabulary of audit steps."""

    DUPLICATE_CHECK = "duplicate_check"
    DETECT = "detect"
    PO_MATCH = "po_match"
    SKU_MAP = "sku_map"
    RECALL = "recall"
    APPLY = "apply"
    DECIDE = "decide"
    LEARN = "learn"


@dataclass(frozen=True)
class AuditEntry:
    """One audit line."""

    step: AuditStep
    timestamp: str
    details: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'step': self.step.value,
            'timestamp': self.timestamp,
            'details': self.details,
        }


class AuditTrail:
    """
    Append-only list of audit entries.

    Usage:
        trail = AuditTrail()
        trail.record(AuditStep.RECALL, "No vendor memory found for 'Acme'")
        trail.steps()   # ['recall']
    """

    def __init__(self):
        self._entries: List[AuditEntry] = []

    def record(self, step: Union[AuditStep, str], details: str) -> AuditEntry:
        entry = AuditEntry(step=AuditStep(step), timestamp=now_iso(), details=details)
        self._entries.append(entry)
        return entry

    @property
    def entries(self) -> Tuple[AuditEntry, ...]:
        return tuple(self._entries)

    def steps(self) -> List[str]:
        return [entry.step.value for entry in self._entries]

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[AuditEntry]:
        return iter(tuple(self._entries))
