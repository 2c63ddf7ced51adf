"""
Tests for confidence-scored memory (vendor and pattern rules).
"""

import json
import sys
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from memory.confidence_store import (
    ConfidenceRecord,
    ConfidenceStore,
    PatternMemory,
    VendorMemory,
    clamp_confidence,
)
from memory.storage import InMemoryStorage, JsonFileStorage, SqliteStorage


class TestReinforceDecay:
    """Tests for the reinforcement/decay arithmetic."""

    def setup_method(self):
        self.store = ConfidenceStore(InMemoryStorage(name='rules'))

    def test_first_reinforce_seeds_half(self):
        update = self.store.reinforce('rule')
        record = self.store.get('rule')
        assert record.confidence == 0.5
        assert record.approved_count == 1
        assert record.rejected_count == 0
        assert record.last_updated
        assert update.changed and update.persisted

    def test_second_reinforce_adds_step(self):
        self.store.reinforce('rule')
        self.store.reinforce('rule')
        assert self.store.get('rule').confidence == 0.6

    def test_reinforce_caps_at_one(self):
        for _ in range(12):
            self.store.reinforce('rule')
        record = self.store.get('rule')
        assert record.confidence == 1.0
        assert record.approved_count == 12

    def test_decay_subtracts_step(self):
        self.store.reinforce('rule')
        self.store.decay('rule')
        record = self.store.get('rule')
        assert record.confidence == 0.3
        assert record.rejected_count == 1

    def test_decay_floors_at_zero(self):
        self.store.reinforce('rule')
        for _ in range(5):
            self.store.decay('rule')
        assert self.store.get('rule').confidence == 0.0

    def test_decay_unknown_key_is_noop(self):
        update = self.store.decay('missing')
        assert not update.changed
        assert update.record is None
        assert 'missing' not in self.store
        assert len(self.store) == 0

    def test_rejection_outweighs_two_approvals(self):
        self.store.reinforce('rule')   # 0.5
        self.store.reinforce('rule')   # 0.6
        self.store.reinforce('rule')   # 0.7
        self.store.decay('rule')       # 0.5
        assert self.store.get('rule').confidence == 0.5

    def test_confidence_stays_one_decimal(self):
        self.store.reinforce('rule')
        for _ in range(3):
            self.store.reinforce('rule')
            self.store.decay('rule')
        confidence = self.store.get('rule').confidence
        assert confidence == round(confidence, 1)

    def test_payload_fields_overwrite(self):
        self.store.reinforce('rule', {'label': 'old', 'keep': 1})
        self.store.reinforce('rule', {'label': 'new'})
        assert self.store.get('rule').payload == {'label': 'new', 'keep': 1}

    def test_reset(self):
        self.store.reinforce('a')
        self.store.reinforce('b')
        assert self.store.reset().ok
        assert self.store.keys() == []


class TestConfidenceRecord:
    """Tests for record serialization."""

    def test_clamp_confidence(self):
        assert clamp_confidence(1.7) == 1.0
        assert clamp_confidence(-0.3) == 0.0
        assert clamp_confidence(0.64) == 0.6

    def test_meets_threshold_inclusive(self):
        assert ConfidenceRecord('k', confidence=0.6).meets(0.6)
        assert not ConfidenceRecord('k', confidence=0.5).meets(0.6)

    def test_round_trip_with_key_field(self):
        record = ConfidenceRecord(
            'VAT', confidence=0.7, approved_count=3, rejected_count=1,
            last_updated='2024-01-01T00:00:00+00:00', payload={'action': 'Recompute'},
        )
        data = record.to_dict('patternId')
        assert data['patternId'] == 'VAT'
        assert ConfidenceRecord.from_dict('VAT', data, 'patternId') == record


class TestVendorMemory:
    """Tests for the vendor view and its persisted layout."""

    def test_persisted_schema(self, tmp_path):
        path = tmp_path / 'vendorMemory.json'
        vendors = VendorMemory(JsonFileStorage(path))
        vendors.remember('Supplier GmbH', service_date_label='Leistungsdatum')

        data = json.loads(path.read_text(encoding='utf-8'))
        entry = data['Supplier GmbH']
        assert entry['serviceDateLabel'] == 'Leistungsdatum'
        assert entry['confidence'] == 0.5
        assert entry['approvedCount'] == 1
        assert entry['rejectedCount'] == 0
        assert 'lastUpdated' in entry

    def test_service_date_label(self):
        vendors = VendorMemory(InMemoryStorage())
        assert vendors.service_date_label('Acme') is None
        vendors.remember('Acme', service_date_label='Lieferdatum', discount_terms='2% Skonto')
        assert vendors.service_date_label('Acme') == 'Lieferdatum'
        assert vendors.get('Acme').payload['discountTerms'] == '2% Skonto'

    def test_corrupt_store_loads_empty(self, tmp_path):
        path = tmp_path / 'vendorMemory.json'
        path.write_text('garbage', encoding='utf-8')
        vendors = VendorMemory(JsonFileStorage(path))
        assert vendors.load() == {}
        assert vendors.get('Acme') is None
        assert path.read_text(encoding='utf-8') == 'garbage'

    def test_malformed_record_is_skipped(self, tmp_path):
        path = tmp_path / 'vendorMemory.json'
        path.write_text(json.dumps({
            'Good': {'confidence': 0.5, 'approvedCount': 1},
            'Bad': {'confidence': 'high'},
            'Worse': 'not a record',
        }), encoding='utf-8')
        vendors = VendorMemory(JsonFileStorage(path))
        assert list(vendors.load()) == ['Good']

    def test_unwritable_store_is_observable(self, tmp_path):
        path = tmp_path / 'vendorMemory.json'
        path.mkdir()
        update = VendorMemory(JsonFileStorage(path)).remember('Acme', service_date_label='x')
        assert update.changed
        assert not update.persisted
        assert 'not persisted' in update.describe()


class TestPatternMemory:
    """Tests for the pattern view."""

    def test_persisted_schema(self, tmp_path):
        path = tmp_path / 'correctionMemory.json'
        patterns = PatternMemory(JsonFileStorage(path))
        patterns.approve('QTY_MISMATCH_USE_DN_QTY', 'Quantity Mismatch', 'Use Delivery Note Quantity')

        entry = json.loads(path.read_text(encoding='utf-8'))['QTY_MISMATCH_USE_DN_QTY']
        assert entry['patternId'] == 'QTY_MISMATCH_USE_DN_QTY'
        assert entry['description'] == 'Quantity Mismatch'
        assert entry['action'] == 'Use Delivery Note Quantity'
        assert entry['confidence'] == 0.5

    def test_approve_then_reject(self):
        patterns = PatternMemory(InMemoryStorage())
        patterns.approve('P', 'desc', 'act')
        update = patterns.reject('P')
        assert update.record.confidence == 0.3
        assert patterns.action_for('P') == 'act'

    def test_reject_unknown_pattern_creates_nothing(self):
        patterns = PatternMemory(InMemoryStorage())
        update = patterns.reject('NEVER_SEEN')
        assert update.describe() == "No pattern memory to decay for 'NEVER_SEEN'"
        assert patterns.get('NEVER_SEEN') is None


class TestSqliteArithmetic:
    """The SQLite backend honours the same arithmetic."""

    def test_reinforce_and_decay(self, tmp_path):
        store = ConfidenceStore(SqliteStorage(tmp_path / 'memory.db', table='vendor_memory'))
        for _ in range(3):
            store.reinforce('Acme', {'serviceDateLabel': 'Leistungsdatum'})
        assert store.get('Acme').confidence == 0.7

        store.decay('Acme')
        record = store.get('Acme')
        assert record.confidence == 0.5
        assert record.approved_count == 3
        assert record.rejected_count == 1
        assert record.payload == {'serviceDateLabel': 'Leistungsdatum'}

    @pytest.mark.parametrize('approvals', [1, 5, 20])
    def test_never_exceeds_one(self, tmp_path, approvals):
        store = ConfidenceStore(SqliteStorage(tmp_path / 'memory.db', table='rules'))
        for _ in range(approvals):
            store.reinforce('k')
        assert 0.5 <= store.get('k').confidence <= 1.0
