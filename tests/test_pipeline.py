"""
Tests for pipeline configuration, store wiring and the data loaders.
"""

import json
import sys
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from decision import Feedback, ImplicitApprovalPolicy, RunStatus
from memory import JsonFileStorage, SqliteStorage
from pipeline import (
    InvoiceMemoryPipeline,
    MemoryStores,
    PipelineConfig,
    load_corrections,
    load_invoices,
    load_purchase_orders,
)

REPO_ROOT = Path(__file__).parent.parent
DATA_DIR = REPO_ROOT / 'data'


class TestPipelineConfig:
    """Tests for configuration loading."""

    def test_defaults(self):
        config = PipelineConfig()
        engine_config = config.engine_config()
        assert engine_config.threshold == 0.6
        assert engine_config.implicit_approval is ImplicitApprovalPolicy.RECORD_SUCCESS
        assert [p.pattern_id for p in engine_config.standing_patterns] == ['QTY_MISMATCH_USE_DN_QTY']

    def test_from_yaml(self, tmp_path):
        path = tmp_path / 'memory.yaml'
        path.write_text(
            "backend: sqlite\n"
            "threshold: 0.7\n"
            "implicit_approval: skip\n"
            "unknown_key: 1\n"
            "detectors:\n"
            "  freight_sku: SHIP\n",
            encoding='utf-8',
        )
        config = PipelineConfig.from_yaml(path)
        assert config.backend == 'sqlite'
        assert config.engine_config().threshold == 0.7
        assert config.engine_config().implicit_approval is ImplicitApprovalPolicy.SKIP
        assert config.detector_settings().freight_sku == 'SHIP'

    def test_shipped_config_loads(self):
        config = PipelineConfig.from_yaml(REPO_ROOT / 'config' / 'memory.yaml')
        assert config.threshold == 0.6
        assert 'Parts AG' in config.detector_settings().vat_vendors

    def test_empty_yaml_uses_defaults(self, tmp_path):
        path = tmp_path / 'empty.yaml'
        path.write_text('', encoding='utf-8')
        assert PipelineConfig.from_yaml(path) == PipelineConfig()

    @pytest.mark.parametrize('data', [
        {'backend': 'redis'},
        {'threshold': 2},
        {'implicit_approval': 'always'},
        {'standing_patterns': [{'description': 'no id'}]},
    ])
    def test_invalid_values(self, data):
        with pytest.raises(ValueError):
            PipelineConfig.from_dict(data)

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / 'bad.yaml'
        path.write_text('threshold: [unclosed', encoding='utf-8')
        with pytest.raises(ValueError):
            PipelineConfig.from_yaml(path)


class TestMemoryStores:
    """Tests for backend wiring."""

    def test_json_file_names(self, tmp_path):
        stores = MemoryStores.from_config(PipelineConfig(memory_dir=str(tmp_path)))
        assert isinstance(stores.vendors.storage, JsonFileStorage)
        assert stores.vendors.storage.path == tmp_path / 'vendorMemory.json'
        assert stores.patterns.storage.path == tmp_path / 'correctionMemory.json'
        assert stores.ledger.storage.path == tmp_path / 'resolutionMemory.json'
        assert stores.duplicates.storage.path == tmp_path / 'duplicateMemory.json'

    def test_sqlite_tables(self, tmp_path):
        stores = MemoryStores.from_config(PipelineConfig(memory_dir=str(tmp_path), backend='sqlite'))
        assert isinstance(stores.vendors.storage, SqliteStorage)
        assert stores.vendors.storage.path == tmp_path / 'memory.db'
        assert stores.duplicates.storage.table == 'duplicate_memory'

    def test_reset_all(self, tmp_path):
        stores = MemoryStores.from_config(PipelineConfig(memory_dir=str(tmp_path)))
        stores.vendors.remember('Acme', service_date_label='x')
        stores.duplicates.check_and_record('Acme', '1', '2024-01-01')

        assert all(result.ok for result in stores.reset_all())
        assert len(stores.vendors) == 0
        assert len(stores.duplicates) == 0
        assert not (tmp_path / 'vendorMemory.json').exists()


class TestLoaders:
    """Tests for the JSON input loaders."""

    def test_sample_data(self):
        invoices = load_invoices(DATA_DIR / 'invoices_extracted.json')
        orders = load_purchase_orders(DATA_DIR / 'purchase_orders.json')
        corrections = load_corrections(DATA_DIR / 'human_corrections.json')
        assert invoices and orders and corrections
        assert invoices[0].vendor == 'Supplier GmbH'

    def test_not_a_list(self, tmp_path):
        path = tmp_path / 'invoices.json'
        path.write_text('{"invoiceId": "x"}', encoding='utf-8')
        with pytest.raises(ValueError):
            load_invoices(path)

    def test_invalid_json(self, tmp_path):
        path = tmp_path / 'invoices.json'
        path.write_text('[{', encoding='utf-8')
        with pytest.raises(ValueError):
            load_invoices(path)

    def test_invoice_without_vendor(self, tmp_path):
        path = tmp_path / 'invoices.json'
        path.write_text(json.dumps([{'invoiceId': 'x', 'fields': {}}]), encoding='utf-8')
        with pytest.raises(ValueError):
            load_invoices(path)

    def test_purchase_order_without_number(self, tmp_path):
        path = tmp_path / 'pos.json'
        path.write_text(json.dumps([{'vendor': 'Acme'}]), encoding='utf-8')
        with pytest.raises(ValueError):
            load_purchase_orders(path)


class TestInvoiceMemoryPipeline:
    """End-to-end runs over the sample data."""

    def make_pipeline(self, tmp_path, **overrides):
        config = PipelineConfig(memory_dir=str(tmp_path / 'memory'), **overrides)
        orders = load_purchase_orders(DATA_DIR / 'purchase_orders.json')
        return InvoiceMemoryPipeline(config, purchase_orders=orders)

    def test_batch_without_feedback(self, tmp_path):
        pipeline = self.make_pipeline(tmp_path)
        results = pipeline.process_batch(load_invoices(DATA_DIR / 'invoices_extracted.json'))

        assert len(results) == 8
        assert results[-1].status is RunStatus.DUPLICATE
        assert all(r.requires_human_review for r in results)
        assert len(pipeline.stores.vendors) == 0

    def test_simulated_feedback_builds_trust(self, tmp_path):
        pipeline = self.make_pipeline(tmp_path, simulate_feedback=True)
        results = pipeline.process_batch(load_invoices(DATA_DIR / 'invoices_extracted.json'))

        statuses = [r.status for r in results]
        # Supplier GmbH: approved on runs 1 and 2, trusted from run 3
        assert statuses[:3] == [RunStatus.NEEDS_REVIEW, RunStatus.NEEDS_REVIEW, RunStatus.AUTO_APPLIED]
        assert results[2].normalized_invoice.service_date_label == 'Leistungsdatum'
        assert statuses[-1] is RunStatus.DUPLICATE
        assert pipeline.stores.vendors.get('Supplier GmbH').confidence == 0.6

    def test_replay_then_process(self, tmp_path):
        pipeline = self.make_pipeline(tmp_path)
        summary = pipeline.replay_corrections(load_corrections(DATA_DIR / 'human_corrections.json'))
        assert summary.replayed == 4
        assert summary.failed_writes == 0

        stats = pipeline.stats()
        assert stats['ledger']['decisions'] == 2
        assert {p['patternId'] for p in stats['patterns']} == {
            'QTY_MISMATCH_USE_DN_QTY', 'VAT_INCLUDED_IN_TOTAL',
        }

    def test_memory_persists_between_pipelines(self, tmp_path):
        first = self.make_pipeline(tmp_path)
        invoices = load_invoices(DATA_DIR / 'invoices_extracted.json')
        first.process(invoices[0], Feedback.approve(serviceDateLabel='Leistungsdatum'))

        second = self.make_pipeline(tmp_path)
        assert second.stores.vendors.get('Supplier GmbH').confidence == 0.5
        assert second.process(invoices[0]).status is RunStatus.DUPLICATE

    def test_reset(self, tmp_path):
        pipeline = self.make_pipeline(tmp_path)
        pipeline.replay_corrections(load_corrections(DATA_DIR / 'human_corrections.json'))
        pipeline.reset()
        stats = pipeline.stats()
        assert stats['vendors'] == [] and stats['patterns'] == []
        assert stats['ledger']['decisions'] == 0
