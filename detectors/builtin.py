"""
Built-in Candidate Generators

Invoice correction detectors shipped with the engine:

- PurchaseOrderMatcher: fill a missing PO number from the vendor's POs
- SkontoDetector: pick up early-payment discount terms
- FreightSkuMapper: map freight service lines to the FREIGHT SKU
- VatIncludedDetector: flag totals that already include VAT
- CurrencyInferenceDetector: infer a missing currency from the raw text

Vendor lists and keywords come from DetectorSettings, so new vendors can be
covered through configuration.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

from loguru import logger

from decision.audit import AuditStep
from decision.models import Invoice, PurchaseOrder

from .base import Candidate, CandidateGenerator

PO_MATCH_PATTERN = 'AUTO_PO_MATCH_SINGLE_CANDIDATE'
SKONTO_PATTERN = 'SKONTO_DISCOUNT_TERMS'
FREIGHT_SKU_PATTERN = 'FREIGHT_SERVICE_SKU_MAPPING'
VAT_INCLUDED_PATTERN = 'VAT_INCLUDED_IN_TOTAL'
CURRENCY_PATTERN = 'CURRENCY_FROM_RAWTEXT'


@dataclass
class DetectorSettings:
    """Vendor lists and keywords for the built-in generators."""

    vat_vendors: List[str] = field(default_factory=lambda: ['Parts AG'])
    vat_phrases: List[str] = field(default_factory=lambda: [
        'MwSt. inkl', 'Prices incl. VAT', 'VAT already included',
    ])
    skonto_vendors: List[str] = field(default_factory=lambda: ['Freight & Co'])
    skonto_keywords: List[str] = field(default_factory=lambda: ['Skonto', 'paid within'])
    freight_keywords: List[str] = field(default_factory=lambda: [
        'Seefracht', 'Shipping', 'Transport',
    ])
    freight_sku: str = 'FREIGHT'
    currencies: List[str] = field(default_factory=lambda: ['EUR', 'USD', 'GBP'])

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'DetectorSettings':
        settings = cls()
        for key, value in (data or {}).items():
            if not hasattr(settings, key):
                logger.warning(f"Ignoring unknown detector setting: {key}")
                continue
            setattr(settings, key, value)
        return settings


def _normalize_description(text: str) -> str:
    return text.lower().strip()


class PurchaseOrderMatcher(CandidateGenerator):
    """
    Propose a PO number when exactly one PO of the vendor covers every
    line item description on the invoice.
    """

    name = 'po_match'

    def __init__(self, purchase_orders: Sequence[PurchaseOrder] = ()):
        self.purchase_orders = list(purchase_orders)

    def find_match(self, invoice: Invoice) -> Optional[PurchaseOrder]:
        vendor_pos = [po for po in self.purchase_orders if po.vendor == invoice.vendor]
        if not vendor_pos:
            return None

        wanted = [_normalize_description(li.description) for li in invoice.fields.line_items]
        matches = []
        for po in vendor_pos:
            available = {_normalize_description(li.description) for li in po.line_items}
            if all(desc in available for desc in wanted):
                matches.append(po)

        return matches[0] if len(matches) == 1 else None

    def generate(self, invoice: Invoice) -> Iterator[Candidate]:
        if invoice.fields.po_number:
            return

        match = self.find_match(invoice)
        if match is None:
            logger.debug(f"No single matching PO for {invoice.invoice_id}")
            return

        yield Candidate(
            pattern_id=PO_MATCH_PATTERN,
            field='poNumber',
            proposed_value=match.po_number,
            reason=f"Found single matching PO: {match.po_number}",
            description='Single matching PO',
            action=f"Set poNumber to {match.po_number}",
            step=AuditStep.PO_MATCH,
        )


class SkontoDetector(CandidateGenerator):
    """Extract the raw-text line that states early-payment discount terms."""

    name = 'skonto'

    def __init__(self, settings: Optional[DetectorSettings] = None):
        self.settings = settings or DetectorSettings()

    def find_terms(self, raw_text: str) -> Optional[str]:
        for line in raw_text.splitlines():
            if any(keyword in line for keyword in self.settings.skonto_keywords):
                return line.strip()
        return None

    def generate(self, invoice: Invoice) -> Iterator[Candidate]:
        if invoice.vendor not in self.settings.skonto_vendors:
            return
        terms = self.find_terms(invoice.raw_text)
        if not terms:
            return

        yield Candidate(
            pattern_id=SKONTO_PATTERN,
            field='discountTerms',
            proposed_value=terms,
            reason=f"Skonto detected: {terms}",
            description='Skonto terms stated in invoice text',
            action='Record discountTerms from invoice text',
        )


class FreightSkuMapper(CandidateGenerator):
    """Map line items without a SKU that describe a freight service."""

    name = 'freight_sku'

    def __init__(self, settings: Optional[DetectorSettings] = None):
        self.settings = settings or DetectorSettings()

    def is_freight_service(self, description: str) -> bool:
        return any(keyword in description for keyword in self.settings.freight_keywords)

    def generate(self, invoice: Invoice) -> Iterator[Candidate]:
        sku = self.settings.freight_sku
        for index, item in enumerate(invoice.fields.line_items):
            if item.sku or not self.is_freight_service(item.description):
                continue
            yield Candidate(
                pattern_id=FREIGHT_SKU_PATTERN,
                field='sku',
                proposed_value=sku,
                reason=f"Freight SKU mapped for: {item.description}",
                description='Freight service mapped from description',
                action=f"Set sku = {sku}",
                line_index=index,
                label=item.description,
                step=AuditStep.SKU_MAP,
            )


class VatIncludedDetector(CandidateGenerator):
    """Flag invoices whose totals already include VAT."""

    name = 'vat_included'

    def __init__(self, settings: Optional[DetectorSettings] = None):
        self.settings = settings or DetectorSettings()

    def generate(self, invoice: Invoice) -> Iterator[Candidate]:
        if invoice.vendor not in self.settings.vat_vendors:
            return
        phrase = next(
            (p for p in self.settings.vat_phrases if p in invoice.raw_text), None
        )
        if phrase is None:
            return

        yield Candidate(
            pattern_id=VAT_INCLUDED_PATTERN,
            field='pricesIncludeVAT',
            proposed_value=True,
            reason=f"VAT-included detected ('{phrase}')",
            description='Totals already include VAT',
            action='Recompute tax and gross from net',
            proposal='Recompute tax and gross from net',
        )


class CurrencyInferenceDetector(CandidateGenerator):
    """Infer a missing currency code from the raw invoice text."""

    name = 'currency'

    def __init__(self, settings: Optional[DetectorSettings] = None):
        self.settings = settings or DetectorSettings()

    def infer(self, raw_text: str) -> Optional[str]:
        for code in self.settings.currencies:
            if re.search(rf'\b{re.escape(code)}\b', raw_text):
                return code
        return None

    def generate(self, invoice: Invoice) -> Iterator[Candidate]:
        if invoice.fields.currency:
            return
        inferred = self.infer(invoice.raw_text)
        if inferred is None:
            return

        yield Candidate(
            pattern_id=CURRENCY_PATTERN,
            field='currency',
            proposed_value=inferred,
            reason=f"Currency inferred: {inferred}",
            description='Currency inferred from rawText',
            action=f"Set currency = {inferred}",
        )


def builtin_generators(
    purchase_orders: Iterable[PurchaseOrder] = (),
    settings: Optional[DetectorSettings] = None,
) -> Tuple[CandidateGenerator, ...]:
    """Built-in generators in their evaluation order."""
    settings = settings or DetectorSettings()
    return (
        PurchaseOrderMatcher(list(purchase_orders)),
        SkontoDetector(settings),
        FreightSkuMapper(settings),
        VatIncludedDetector(settings),
        CurrencyInferenceDetector(settings),
    )
