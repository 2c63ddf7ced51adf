"""
Memory Stores Package

Persisted, keyed memory for the decision loop.

Stores:
- ConfidenceStore (VendorMemory, PatternMemory): rules with a trust score,
  reinforced by approvals and decayed by rejections
- DuplicateGuard: sighting counts per natural key
- ResolutionLedger: approve/reject history for accuracy tracking

Every store is an explicit handle around a StorageBackend (JSON file,
SQLite, or in-memory), so no store is looked up through global state.

Usage:
    from memory import JsonFileStorage, VendorMemory

    vendors = VendorMemory(JsonFileStorage('data/vendorMemory.json'))
    vendors.remember('Supplier GmbH', service_date_label='Leistungsdatum')
    print(vendors.get('Supplier GmbH').confidence)  # 0.5
"""

from .storage import (
    StorageBackend,
    JsonFileStorage,
    SqliteStorage,
    InMemoryStorage,
    WriteResult,
    now_iso,
)
from .confidence_store import (
    ConfidenceRecord,
    ConfidenceStore,
    MemoryUpdate,
    VendorMemory,
    PatternMemory,
    CONFIDENCE_SEED,
    REINFORCE_STEP,
    DECAY_STEP,
)
from .duplicate_guard import (
    DuplicateGuard,
    DuplicateCheck,
    DuplicateRecord,
)
from .resolution_ledger import (
    ResolutionLedger,
    ResolutionRecord,
)

__all__ = [
    'StorageBackend',
    'JsonFileStorage',
    'SqliteStorage',
    'InMemoryStorage',
    'WriteResult',
    'now_iso',
    'ConfidenceRecord',
    'ConfidenceStore',
    'MemoryUpdate',
    'VendorMemory',
    'PatternMemory',
    'CONFIDENCE_SEED',
    'REINFORCE_STEP',
    'DECAY_STEP',
    'DuplicateGuard',
    'DuplicateCheck',
    'DuplicateRecord',
    'ResolutionLedger',
    'ResolutionRecord',
]
