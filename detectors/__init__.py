"""
Candidate Generators

Pluggable detectors that propose invoice corrections as
(patternId, proposedValue, reason) candidates. The decision engine owns
every memory lookup; generators only read the invoice.

Usage:
    from detectors import GeneratorRegistry, CandidateGenerator, Candidate

    class StampDutyDetector(CandidateGenerator):
        name = 'stamp_duty'

        def generate(self, invoice):
            if 'Stempelgebühr' in invoice.raw_text:
                yield Candidate('STAMP_DUTY', 'discountTerms', 'none', 'Stamp duty noted')

    registry = GeneratorRegistry.with_builtins(purchase_orders)
    registry.register(StampDutyDetector())
"""

from .base import (
    Candidate,
    CandidateGenerator,
)
from .builtin import (
    DetectorSettings,
    PurchaseOrderMatcher,
    SkontoDetector,
    FreightSkuMapper,
    VatIncludedDetector,
    CurrencyInferenceDetector,
    builtin_generators,
    PO_MATCH_PATTERN,
    SKONTO_PATTERN,
    FREIGHT_SKU_PATTERN,
    VAT_INCLUDED_PATTERN,
    CURRENCY_PATTERN,
)
from .registry import GeneratorRegistry

__all__ = [
    'Candidate',
    'CandidateGenerator',
    'DetectorSettings',
    'PurchaseOrderMatcher',
    'SkontoDetector',
    'FreightSkuMapper',
    'VatIncludedDetector',
    'CurrencyInferenceDetector',
    'builtin_generators',
    'GeneratorRegistry',
    'PO_MATCH_PATTERN',
    'SKONTO_PATTERN',
    'FREIGHT_SKU_PATTERN',
    'VAT_INCLUDED_PATTERN',
    'CURRENCY_PATTERN',
]
