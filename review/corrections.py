"""
Human Correction Replay

Teaches the memory stores from historical reviewer corrections.

A correction record lists the fields a reviewer changed on one invoice and
the reviewer's final decision. Replaying it:
- reinforces the vendor rule for service-date label corrections
- reinforces or decays the correction patterns its fields point to
- records the decision in the resolution ledger as VENDOR:<vendor>:correction

Replay works on decisions, not invoices, so it never consults the
duplicate guard.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from loguru import logger

from decision.models import Verdict
from memory.confidence_store import MemoryUpdate, PatternMemory, VendorMemory
from memory.resolution_ledger import ResolutionLedger


@dataclass(frozen=True)
class FieldCorrection:
    """One field a reviewer changed."""

    field: str
    original_value: Any = None
    corrected_value: Any = None
    reason: str = ''

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'FieldCorrection':
        if not data.get('field'):
            raise ValueError("Field correction has no field name")
        return cls(
            field=str(data['field']),
            original_value=data.get('originalValue'),
            corrected_value=data.get('correctedValue'),
            reason=str(data.get('reason') or ''),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'field': self.field,
            'originalValue': self.original_value,
            'correctedValue': self.corrected_value,
            'reason': self.reason,
        }


@dataclass(frozen=True)
class HumanCorrection:
    """A reviewer's corrections to one invoice and the final decision."""

    correction_id: str
    invoice_id: str
    vendor: str
    fields_corrected: Tuple[FieldCorrection, ...]
    final_decision: Verdict
    timestamp: str = ''

    @property
    def approved(self) -> bool:
        return self.final_decision is Verdict.APPROVED

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'HumanCorrection':
        """
        Build from the corrections JSON layout.

        Raises:
            ValueError: Missing vendor or unknown finalDecision
        """
        if not data.get('vendor'):
            raise ValueError(f"Correction {data.get('correctionId', '?')} has no vendor")
        try:
            decision = Verdict(str(data.get('finalDecision', '')).lower())
        except ValueError:
            raise ValueError(
                f"Correction {data.get('correctionId', '?')} has unknown "
                f"finalDecision: {data.get('finalDecision')!r}"
            )
        return cls(
            correction_id=str(data.get('correctionId', '')),
            invoice_id=str(data.get('invoiceId', '')),
            vendor=str(data['vendor']),
            fields_corrected=tuple(
                FieldCorrection.from_dict(fc) for fc in data.get('fieldsCorrected') or []
            ),
            final_decision=decision,
            timestamp=str(data.get('timestamp', '')),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'correctionId': self.correction_id,
            'invoiceId': self.invoice_id,
            'vendor': self.vendor,
            'fieldsCorrected': [fc.to_dict() for fc in self.fields_corrected],
            'finalDecision': self.final_decision.value,
            'timestamp': self.timestamp,
        }


@dataclass(frozen=True)
class ReplayRule:
    """
    Maps a field correction onto a correction pattern.

    A correction matches when its lower-cased field name equals one of
    `fields`, contains one of `field_contains`, or its lower-cased reason
    contains one of `reason_keywords`.
    """

    pattern_id: str
    description: str
    action: str
    fields: Tuple[str, ...] = ()
    field_contains: Tuple[str, ...] = ()
    reason_keywords: Tuple[str, ...] = ()

    def matches(self, correction: FieldCorrection) -> bool:
        name = correction.field.lower()
        reason = correction.reason.lower()
        return (
            name in self.fields
            or any(part in name for part in self.field_contains)
            or any(keyword in reason for keyword in self.reason_keywords)
        )


DEFAULT_REPLAY_RULES: Tuple[ReplayRule, ...] = (
    ReplayRule(
        'QTY_MISMATCH_USE_DN_QTY',
        'Quantity Mismatch',
        'Use Delivery Note Quantity',
        fields=('quantity',),
        reason_keywords=('quantity mismatch',),
    ),
    ReplayRule(
        'VAT_INCLUDED_IN_TOTAL',
        'VAT Handling',
        'Totals already include VAT',
        field_contains=('vat',),
        reason_keywords=('vat',),
    ),
    ReplayRule(
        'CURRENCY_MISMATCH',
        'Currency Mismatch',
        'Correct currency based on vendor',
        fields=('currency',),
        reason_keywords=('currency',),
    ),
)


def is_service_date_correction(correction: FieldCorrection) -> bool:
    return 'servicedate' in correction.field.lower()


@dataclass
class ReplaySummary:
    """Outcome of a replay run."""

    replayed: int = 0
    vendor_updates: int = 0
    pattern_updates: int = 0
    failed_writes: int = 0
    updates: List[str] = field(default_factory=list)

    def add(self, update: MemoryUpdate) -> None:
        self.updates.append(update.describe())
        if update.changed and not update.write.ok:
            self.failed_writes += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            'replayed': self.replayed,
            'vendorUpdates': self.vendor_updates,
            'patternUpdates': self.pattern_updates,
            'failedWrites': self.failed_writes,
            'updates': list(self.updates),
        }


class CorrectionReplayer:
    """
    Replays human corrections into the memory stores.

    Usage:
        replayer = CorrectionReplayer(vendors, patterns, ledger)
        summary = replayer.replay(load_corrections('data/human_corrections.json'))
        print(f"Replayed {summary.replayed} corrections")
    """

    def __init__(
        self,
        vendor_memory: VendorMemory,
        pattern_memory: PatternMemory,
        ledger: ResolutionLedger,
        rules: Optional[Sequence[ReplayRule]] = None,
    ):
        self.vendor_memory = vendor_memory
        self.pattern_memory = pattern_memory
        self.ledger = ledger
        self.rules = list(rules) if rules is not None else list(DEFAULT_REPLAY_RULES)

    def replay_one(self, correction: HumanCorrection, summary: Optional[ReplaySummary] = None) -> ReplaySummary:
        """Replay a single correction, accumulating into summary."""
        summary = summary if summary is not None else ReplaySummary()

        for fc in correction.fields_corrected:
            # Label corrections stand on their own; the final decision
            # concerns the rest of the invoice
            if is_service_date_correction(fc) and fc.corrected_value is not None:
                summary.add(self.vendor_memory.remember(
                    correction.vendor, service_date_label=str(fc.corrected_value)
                ))
                summary.vendor_updates += 1

            for rule in self.rules:
                if not rule.matches(fc):
                    continue
                if correction.approved:
                    update = self.pattern_memory.approve(rule.pattern_id, rule.description, rule.action)
                else:
                    update = self.pattern_memory.reject(rule.pattern_id)
                summary.add(update)
                summary.pattern_updates += 1

        ledger_key = f"VENDOR:{correction.vendor}:correction"
        if correction.approved:
            summary.add(self.ledger.record_approval(ledger_key))
        else:
            summary.add(self.ledger.record_rejection(ledger_key))

        summary.replayed += 1
        logger.info(f"Replayed correction {correction.correction_id} for {correction.invoice_id}")
        return summary

    def replay(self, corrections: Iterable[HumanCorrection]) -> ReplaySummary:
        """
        Replay corrections in order.

        Args:
            corrections: Historical corrections, oldest first

        Returns:
            ReplaySummary with counts and memory update lines
        """
        summary = ReplaySummary()
        for correction in corrections:
            self.replay_one(correction, summary)

        if summary.failed_writes:
            logger.warning(f"Replay finished with {summary.failed_writes} unpersisted update(s)")
        else:
            logger.info(f"Replayed {summary.replayed} human correction(s)")
        return summary
