"""
Decision Models

Input records (extracted invoices, purchase orders), human feedback, the
normalized invoice the engine writes into, and the immutable run result.

Serialized forms use the camelCase names of the upstream extraction JSON
and of the result contract consumed by review tools.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from .audit import AuditEntry


class Verdict(Enum):
    """Human decision on a run or a single pattern."""

    APPROVED = "approved"
    REJECTED = "rejected"


class RunStatus(Enum):
    """Terminal status of one run."""

    AUTO_APPLIED = "auto_applied"
    NEEDS_REVIEW = "needs_review"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class LineItem:
    """Invoice line item."""

    description: str
    quantity: float = 0
    unit_price: float = 0
    total_price: float = 0
    sku: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'description': self.description,
            'quantity': self.quantity,
            'unitPrice': self.unit_price,
            'totalPrice': self.total_price,
            'sku': self.sku,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'LineItem':
        return cls(
            description=str(data.get('description', '')),
            quantity=data.get('quantity', 0),
            unit_price=data.get('unitPrice', 0),
            total_price=data.get('totalPrice', 0),
            sku=data.get('sku'),
        )


@dataclass(frozen=True)
class InvoiceFields:
    """Structured fields produced by upstream extraction."""

    invoice_number: str
    invoice_date: str
    currency: Optional[str] = None
    po_number: Optional[str] = None
    line_items: Tuple[LineItem, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'InvoiceFields':
        return cls(
            invoice_number=str(data.get('invoiceNumber', '')),
            invoice_date=str(data.get('invoiceDate', '')),
            currency=data.get('currency'),
            po_number=data.get('poNumber'),
            line_items=tuple(LineItem.from_dict(li) for li in data.get('lineItems') or []),
        )


@dataclass(frozen=True)
class Invoice:
    """An extracted invoice, the subject of one run."""

    invoice_id: str
    vendor: str
    fields: InvoiceFields
    raw_text: str = ''

    @property
    def natural_key(self) -> Tuple[str, str, str]:
        """(vendor, invoice number, invoice date) used for duplicate checks."""
        return (self.vendor, self.fields.invoice_number, self.fields.invoice_date)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Invoice':
        """
        Build from the extraction JSON layout.

        Raises:
            ValueError: If vendor or fields are missing
        """
        if not data.get('vendor'):
            raise ValueError(f"Invoice {data.get('invoiceId', '?')} has no vendor")
        if not isinstance(data.get('fields'), Mapping):
            raise ValueError(f"Invoice {data.get('invoiceId', '?')} has no fields")
        return cls(
            invoice_id=str(data.get('invoiceId', '')),
            vendor=str(data['vendor']),
            fields=InvoiceFields.from_dict(data['fields']),
            raw_text=data.get('rawText') or '',
        )


@dataclass(frozen=True)
class PurchaseOrder:
    """Purchase order used for PO matching."""

    po_number: str
    vendor: str
    created_date: str = ''
    status: str = ''
    line_items: Tuple[LineItem, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'PurchaseOrder':
        return cls(
            po_number=str(data['poNumber']),
            vendor=str(data['vendor']),
            created_date=str(data.get('createdDate', '')),
            status=str(data.get('status', '')),
            line_items=tuple(LineItem.from_dict(li) for li in data.get('lineItems') or []),
        )


@dataclass
class NormalizedInvoice:
    """
    Working copy of an invoice that learned corrections are applied to.

    Fields are addressed by their camelCase contract names so that stored
    payloads and candidate proposals map onto them directly.
    """

    vendor: str
    invoice_number: str
    invoice_date: str
    currency: Optional[str] = None
    service_date_label: Optional[str] = None
    prices_include_vat: bool = False
    po_number: Optional[str] = None
    discount_terms: Optional[str] = None
    line_items: Sequence[LineItem] = field(default_factory=list)

    FIELD_NAMES = {
        'currency': 'currency',
        'serviceDateLabel': 'service_date_label',
        'pricesIncludeVAT': 'prices_include_vat',
        'poNumber': 'po_number',
        'discountTerms': 'discount_terms',
    }
    LINE_FIELD_NAMES = {
        'sku': 'sku',
        'description': 'description',
        'quantity': 'quantity',
        'unitPrice': 'unit_price',
        'totalPrice': 'total_price',
    }

    @classmethod
    def from_invoice(cls, invoice: Invoice) -> 'NormalizedInvoice':
        return cls(
            vendor=invoice.vendor,
            invoice_number=invoice.fields.invoice_number,
            invoice_date=invoice.fields.invoice_date,
            currency=invoice.fields.currency,
            po_number=invoice.fields.po_number or None,
            line_items=list(invoice.fields.line_items),
        )

    def __setattr__(self, name: str, value: Any) -> None:
        if self.__dict__.get('_frozen'):
            raise dataclasses.FrozenInstanceError(f"cannot assign to field '{name}'")
        super().__setattr__(name, value)

    def freeze(self) -> 'NormalizedInvoice':
        """Detached read-only copy; apply() and attribute writes raise on it."""
        frozen = dataclasses.replace(self, line_items=tuple(self.line_items))
        object.__setattr__(frozen, '_frozen', True)
        return frozen

    @property
    def frozen(self) -> bool:
        return bool(self.__dict__.get('_frozen'))

    def supports(self, name: str, line_index: Optional[int] = None) -> bool:
        if line_index is not None:
            return name in self.LINE_FIELD_NAMES
        return name in self.FIELD_NAMES

    def apply(self, name: str, value: Any, line_index: Optional[int] = None) -> None:
        """
        Set a field by contract name.

        Raises:
            ValueError: Unknown field name
            IndexError: Line index out of range
            FrozenInstanceError: Called on a frozen copy
        """
        if self.frozen:
            raise dataclasses.FrozenInstanceError("normalized invoice is frozen")
        if line_index is not None:
            if name not in self.LINE_FIELD_NAMES:
                raise ValueError(f"Unknown line item field: {name}")
            item = self.line_items[line_index]
            self.line_items[line_index] = dataclasses.replace(
                item, **{self.LINE_FIELD_NAMES[name]: value}
            )
            return

        if name not in self.FIELD_NAMES:
            raise ValueError(f"Unknown invoice field: {name}")
        setattr(self, self.FIELD_NAMES[name], value)

    def value_of(self, name: str, line_index: Optional[int] = None) -> Any:
        if line_index is not None:
            return getattr(self.line_items[line_index], self.LINE_FIELD_NAMES[name])
        return getattr(self, self.FIELD_NAMES[name])

    def to_dict(self) -> Dict[str, Any]:
        return {
            'vendor': self.vendor,
            'invoiceNumber': self.invoice_number,
            'invoiceDate': self.invoice_date,
            'currency': self.currency,
            'serviceDateLabel': self.service_date_label,
            'pricesIncludeVAT': self.prices_include_vat,
            'poNumber': self.po_number,
            'discountTerms': self.discount_terms,
            'lineItems': [li.to_dict() for li in self.line_items],
        }


@dataclass(frozen=True)
class Feedback:
    """
    Human feedback supplied with a run.

    Attributes:
        verdict: Overall decision for the run
        vendor_fields: Corrected vendor-scoped values, e.g.
            {'serviceDateLabel': 'Leistungsdatum'}
        pattern_verdicts: Per-pattern overrides of the overall verdict
    """

    verdict: Verdict
    vendor_fields: Dict[str, Any] = field(default_factory=dict)
    pattern_verdicts: Dict[str, Verdict] = field(default_factory=dict)

    @property
    def approved(self) -> bool:
        return self.verdict is Verdict.APPROVED

    def verdict_for(self, pattern_id: str) -> Verdict:
        return self.pattern_verdicts.get(pattern_id, self.verdict)

    @classmethod
    def approve(cls, **vendor_fields: Any) -> 'Feedback':
        return cls(verdict=Verdict.APPROVED, vendor_fields=dict(vendor_fields))

    @classmethod
    def reject(cls) -> 'Feedback':
        return cls(verdict=Verdict.REJECTED)


@dataclass(frozen=True)
class DecisionResult:
    """Terminal output of one run."""

    invoice_id: str
    normalized_invoice: NormalizedInvoice
    proposed_corrections: Tuple[str, ...]
    requires_human_review: bool
    reasoning: str
    confidence_score: float
    memory_updates: Tuple[str, ...]
    audit_trail: Tuple[AuditEntry, ...]
    status: RunStatus

    @property
    def is_duplicate(self) -> bool:
        return self.status is RunStatus.DUPLICATE

    def to_dict(self) -> Dict[str, Any]:
        """Result contract consumed by callers and review tools."""
        return {
            'invoiceId': self.invoice_id,
            'normalizedInvoice': self.normalized_invoice.to_dict(),
            'proposedCorrections': list(self.proposed_corrections),
            'requiresHumanReview': self.requires_human_review,
            'reasoning': self.reasoning,
            'confidenceScore': self.confidence_score,
            'memoryUpdates': list(self.memory_updates),
            'auditTrail': [entry.to_dict() for entry in self.audit_trail],
            'status': self.status.value,
        }
