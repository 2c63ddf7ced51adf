"""
Invoice Memory Pipeline

Orchestration module that wires the memory stores, candidate generators and
decision engine into one pipeline, plus loaders for the JSON input files.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import yaml
from loguru import logger

from decision.decision_engine import (
    DecisionEngine,
    EngineConfig,
    ImplicitApprovalPolicy,
    StandingPattern,
    DEFAULT_THRESHOLD,
)
from decision.models import DecisionResult, Feedback, Invoice, PurchaseOrder
from detectors.builtin import DetectorSettings
from detectors.registry import GeneratorRegistry
from memory.confidence_store import PatternMemory, VendorMemory
from memory.duplicate_guard import DuplicateGuard
from memory.resolution_ledger import ResolutionLedger
from memory.storage import InMemoryStorage, JsonFileStorage, SqliteStorage, StorageBackend, WriteResult
from review.corrections import CorrectionReplayer, HumanCorrection, ReplaySummary

BACKENDS = ('json', 'sqlite', 'memory')

# Store name -> (JSON file name, SQLite table)
STORE_LOCATIONS = {
    'vendor': ('vendorMemory.json', 'vendor_memory'),
    'pattern': ('correctionMemory.json', 'correction_memory'),
    'resolution': ('resolutionMemory.json', 'resolution_memory'),
    'duplicate': ('duplicateMemory.json', 'duplicate_memory'),
}
SQLITE_FILE = 'memory.db'

FeedbackProvider = Callable[[Invoice], Optional[Feedback]]


@dataclass
class PipelineConfig:
    """Configuration for the invoice memory pipeline."""

    # Input files
    data_dir: str = 'data'

    # Memory stores
    memory_dir: str = 'data/memory'
    backend: str = 'json'

    # Decision
    threshold: float = DEFAULT_THRESHOLD
    implicit_approval: str = ImplicitApprovalPolicy.RECORD_SUCCESS.value
    primary_field: str = 'serviceDateLabel'
    standing_patterns: List[Dict[str, str]] = field(default_factory=lambda: [{
        'patternId': 'QTY_MISMATCH_USE_DN_QTY',
        'description': 'Quantity Mismatch',
        'action': 'Use Delivery Note Quantity',
    }])

    # Candidate generators
    detectors: Dict[str, Any] = field(default_factory=dict)

    # Simulated reviewer for demo runs
    simulate_feedback: bool = False
    simulated_vendor_fields: Dict[str, Any] = field(
        default_factory=lambda: {'serviceDateLabel': 'Leistungsdatum'}
    )

    # Output
    output_dir: str = 'output'

    def __post_init__(self):
        if self.backend not in BACKENDS:
            raise ValueError(f"Unknown backend '{self.backend}', expected one of {BACKENDS}")
        # Fail early on bad values rather than on the first run
        try:
            self.engine_config()
        except KeyError as e:
            raise ValueError(f"Standing pattern is missing {e}") from e

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'PipelineConfig':
        known = cls.__dataclass_fields__
        kwargs = {}
        for key, value in (data or {}).items():
            if key not in known:
                logger.warning(f"Ignoring unknown config key: {key}")
                continue
            kwargs[key] = value
        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, config_path: Union[str, Path]) -> 'PipelineConfig':
        """
        Load configuration from a YAML file.

        Args:
            config_path: Path to YAML config file

        Returns:
            PipelineConfig with defaults for missing keys
        """
        logger.info(f"Loading configuration from: {config_path}")
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ValueError(f"Config {config_path} must be a mapping")
        return cls.from_dict(data)

    def engine_config(self) -> EngineConfig:
        return EngineConfig(
            threshold=float(self.threshold),
            implicit_approval=ImplicitApprovalPolicy(self.implicit_approval),
            primary_field=self.primary_field,
            standing_patterns=[
                StandingPattern(
                    pattern_id=p['patternId'],
                    description=p.get('description', ''),
                    action=p.get('action', ''),
                )
                for p in self.standing_patterns
            ],
        )

    def detector_settings(self) -> DetectorSettings:
        return DetectorSettings.from_dict(self.detectors)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'data_dir': self.data_dir,
            'memory_dir': self.memory_dir,
            'backend': self.backend,
            'threshold': self.threshold,
            'implicit_approval': self.implicit_approval,
            'primary_field': self.primary_field,
            'standing_patterns': list(self.standing_patterns),
            'detectors': dict(self.detectors),
            'simulate_feedback': self.simulate_feedback,
            'simulated_vendor_fields': dict(self.simulated_vendor_fields),
            'output_dir': self.output_dir,
        }


@dataclass
class MemoryStores:
    """The four store handles one engine works against."""

    vendors: VendorMemory
    patterns: PatternMemory
    ledger: ResolutionLedger
    duplicates: DuplicateGuard

    @staticmethod
    def _storage(config: PipelineConfig, name: str) -> StorageBackend:
        file_name, table = STORE_LOCATIONS[name]
        if config.backend == 'memory':
            return InMemoryStorage(name=name)
        if config.backend == 'sqlite':
            return SqliteStorage(Path(config.memory_dir) / SQLITE_FILE, table=table)
        return JsonFileStorage(Path(config.memory_dir) / file_name, name=name)

    @classmethod
    def from_config(cls, config: PipelineConfig) -> 'MemoryStores':
        stores = cls(
            vendors=VendorMemory(cls._storage(config, 'vendor')),
            patterns=PatternMemory(cls._storage(config, 'pattern')),
            ledger=ResolutionLedger(cls._storage(config, 'resolution')),
            duplicates=DuplicateGuard(cls._storage(config, 'duplicate')),
        )
        logger.debug(f"Memory stores ({config.backend}): {stores.describe()}")
        return stores

    @classmethod
    def in_memory(cls) -> 'MemoryStores':
        return cls.from_config(PipelineConfig(backend='memory'))

    def reset_all(self) -> List[WriteResult]:
        """Forget everything every store has learned."""
        return [
            self.vendors.reset(),
            self.patterns.reset(),
            self.ledger.reset(),
            self.duplicates.purge(),
        ]

    def describe(self) -> str:
        return ', '.join(
            store.storage.describe()
            for store in (self.vendors, self.patterns, self.ledger, self.duplicates)
        )


class InvoiceMemoryPipeline:
    """
    Processes extracted invoices against persisted memory.

    Usage:
        config = PipelineConfig.from_yaml('config/memory.yaml')
        pipeline = InvoiceMemoryPipeline(config, purchase_orders=load_purchase_orders(path))

        pipeline.replay_corrections(load_corrections(corrections_path))
        results = pipeline.process_batch(load_invoices(invoices_path))
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        purchase_orders: Iterable[PurchaseOrder] = (),
        stores: Optional[MemoryStores] = None,
        registry: Optional[GeneratorRegistry] = None,
    ):
        """
        Initialize the pipeline.

        Args:
            config: Pipeline configuration
            purchase_orders: POs available to the PO matcher
            stores: Store handles; built from config when omitted
            registry: Candidate generators; built-ins when omitted
        """
        self.config = config or PipelineConfig()
        self.stores = stores or MemoryStores.from_config(self.config)
        self.registry = registry or GeneratorRegistry.with_builtins(
            purchase_orders, self.config.detector_settings()
        )
        self.engine = DecisionEngine(
            vendor_memory=self.stores.vendors,
            pattern_memory=self.stores.patterns,
            ledger=self.stores.ledger,
            duplicates=self.stores.duplicates,
            generators=self.registry.generators(),
            config=self.config.engine_config(),
        )
        self.replayer = CorrectionReplayer(
            self.stores.vendors, self.stores.patterns, self.stores.ledger
        )

        logger.info(
            f"Pipeline ready: backend={self.config.backend}, "
            f"threshold={self.engine.threshold}, generators={self.registry.list_names()}"
        )

    def process(self, invoice: Invoice, feedback: Optional[Feedback] = None) -> DecisionResult:
        return self.engine.process(invoice, feedback)

    def process_batch(
        self,
        invoices: Iterable[Invoice],
        feedback_provider: Optional[FeedbackProvider] = None,
    ) -> List[DecisionResult]:
        """
        Process invoices in order; earlier runs teach later ones.

        Args:
            invoices: Invoices to process
            feedback_provider: Called per invoice before its run; returns the
                feedback to learn from, or None. Defaults to the simulated
                reviewer when simulate_feedback is enabled.

        Returns:
            One DecisionResult per invoice
        """
        if feedback_provider is None and self.config.simulate_feedback:
            feedback_provider = self.simulated_feedback

        results = []
        invoices = list(invoices)
        for index, invoice in enumerate(invoices, 1):
            logger.info(f"Invoice {index}/{len(invoices)}: {invoice.invoice_id} ({invoice.vendor})")
            feedback = feedback_provider(invoice) if feedback_provider else None
            results.append(self.engine.process(invoice, feedback))
        return results

    def simulated_feedback(self, invoice: Invoice) -> Optional[Feedback]:
        """
        Reviewer stand-in: approves with the configured vendor fields whenever
        the vendor rule is not yet trusted, and stays silent otherwise.
        """
        record = self.stores.vendors.get(invoice.vendor)
        if record is not None and record.meets(self.engine.threshold):
            return None
        return Feedback.approve(**self.config.simulated_vendor_fields)

    def replay_corrections(self, corrections: Iterable[HumanCorrection]) -> ReplaySummary:
        return self.replayer.replay(corrections)

    def reset(self) -> List[WriteResult]:
        results = self.stores.reset_all()
        failed = [r for r in results if not r.ok]
        if failed:
            logger.error(f"{len(failed)} store(s) could not be reset")
        else:
            logger.info("All memory stores reset")
        return results

    def stats(self) -> Dict[str, Any]:
        """Snapshot of what the stores currently hold."""
        threshold = self.engine.threshold
        return {
            'vendors': [
                {**r.to_dict(), 'vendor': r.key, 'trusted': r.meets(threshold)}
                for r in self.stores.vendors
            ],
            'patterns': [
                {**r.to_dict('patternId'), 'trusted': r.meets(threshold)}
                for r in self.stores.patterns
            ],
            'ledger': self.stores.ledger.summary(),
            'duplicates': len(self.stores.duplicates),
            'threshold': threshold,
        }


def _load_json_list(path: Union[str, Path], what: str) -> List[Dict[str, Any]]:
    logger.info(f"Loading {what} from: {path}")
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in {path}: {e}") from e

    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a JSON array of {what}")
    return data


def load_invoices(path: Union[str, Path]) -> List[Invoice]:
    invoices = [Invoice.from_dict(item) for item in _load_json_list(path, 'invoices')]
    logger.info(f"Loaded {len(invoices)} invoice(s)")
    return invoices


def load_purchase_orders(path: Union[str, Path]) -> List[PurchaseOrder]:
    try:
        orders = [PurchaseOrder.from_dict(item) for item in _load_json_list(path, 'purchase orders')]
    except KeyError as e:
        raise ValueError(f"Purchase order in {path} is missing {e}") from e
    logger.info(f"Loaded {len(orders)} purchase order(s)")
    return orders


def load_corrections(path: Union[str, Path]) -> List[HumanCorrection]:
    corrections = [HumanCorrection.from_dict(item) for item in _load_json_list(path, 'corrections')]
    logger.info(f"Loaded {len(corrections)} human correction(s)")
    return corrections
