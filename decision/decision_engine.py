"""
Decision Engine

Runs the per-invoice decision loop against the memory stores.

Phases (fixed order):
1. duplicate_check - a repeated natural key stops the run; nothing is
   recalled or learned
2. detect          - candidate generators propose corrections
3. recall          - vendor rule and every touched pattern are looked up
4. decide          - rules at or above the threshold are applied, the rest
                     are proposed for human review
5. learn           - feedback reinforces or decays the touched rules and
                     lands in the resolution ledger

The engine receives every store as an explicit handle. It keeps no state
between runs besides those stores.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence

from loguru import logger

from memory.confidence_store import ConfidenceRecord, MemoryUpdate, PatternMemory, VendorMemory
from memory.duplicate_guard import DuplicateGuard
from memory.resolution_ledger import ResolutionLedger

from .audit import AuditStep, AuditTrail
from .models import (
    DecisionResult,
    Feedback,
    Invoice,
    NormalizedInvoice,
    RunStatus,
    Verdict,
)

if TYPE_CHECKING:
    from detectors.base import Candidate, CandidateGenerator

DEFAULT_THRESHOLD = 0.6


class ImplicitApprovalPolicy(Enum):
    """
    What to learn from an auto-applied run that received no feedback.

    RECORD_SUCCESS records a ledger approval for the vendor field, treating
    the unreviewed output as correct. SKIP records nothing, so only explicit
    human feedback ever counts.
    """

    RECORD_SUCCESS = "record_success"
    SKIP = "skip"


@dataclass(frozen=True)
class StandingPattern:
    """A pattern recalled on every run, independent of the detectors."""

    pattern_id: str
    description: str = ''
    action: str = ''


@dataclass
class EngineConfig:
    """
    Configuration for the decision engine.

    Attributes:
        threshold: Confidence at or above which a rule is applied unreviewed
        implicit_approval: Learning policy for unreviewed auto-applied runs
        primary_field: Vendor payload field that names the vendor ledger id
        standing_patterns: Patterns recalled on every run
    """

    threshold: float = DEFAULT_THRESHOLD
    implicit_approval: ImplicitApprovalPolicy = ImplicitApprovalPolicy.RECORD_SUCCESS
    primary_field: str = 'serviceDateLabel'
    standing_patterns: List[StandingPattern] = field(default_factory=lambda: [
        StandingPattern(
            'QTY_MISMATCH_USE_DN_QTY',
            'Quantity Mismatch',
            'Use Delivery Note Quantity',
        ),
    ])

    def __post_init__(self):
        if not 0.0 <= self.threshold <= 1.0:
            raise ValueError(f"threshold must be within [0.0, 1.0], got {self.threshold}")
        if isinstance(self.implicit_approval, str):
            self.implicit_approval = ImplicitApprovalPolicy(self.implicit_approval)


def ledger_id(vendor: str, field_name: str) -> str:
    """Resolution ledger id for a vendor-scoped field."""
    return f"VENDOR:{vendor}:{field_name}"


@dataclass
class _Run:
    """Mutable state of one run; frozen into a DecisionResult at the end."""

    invoice: Invoice
    normalized: NormalizedInvoice
    trail: AuditTrail = field(default_factory=AuditTrail)
    candidates: List['Candidate'] = field(default_factory=list)
    vendor_record: Optional[ConfidenceRecord] = None
    pattern_records: Dict[str, Optional[ConfidenceRecord]] = field(default_factory=dict)
    proposals: List[str] = field(default_factory=list)
    memory_updates: List[str] = field(default_factory=list)
    requires_review: bool = True
    reasoning: str = ''
    confidence_score: float = 0.0

    def note(self, update: MemoryUpdate) -> None:
        self.memory_updates.append(update.describe())
        if update.changed and not update.write.ok:
            logger.warning(
                f"{self.invoice.invoice_id}: {update.store} update for "
                f"'{update.key}' was not persisted: {update.write.error}"
            )


class DecisionEngine:
    """
    Decides per invoice whether learned corrections are applied or escalated.

    Usage:
        engine = DecisionEngine(
            vendor_memory=VendorMemory(JsonFileStorage('vendorMemory.json')),
            pattern_memory=PatternMemory(JsonFileStorage('correctionMemory.json')),
            ledger=ResolutionLedger(JsonFileStorage('resolutionMemory.json')),
            duplicates=DuplicateGuard(JsonFileStorage('duplicateMemory.json')),
            generators=builtin_generators(purchase_orders),
        )

        result = engine.process(invoice)
        if result.requires_human_review:
            ...  # show result.proposed_corrections to a reviewer

        # Later, with the reviewer's answer
        engine.process(next_invoice, Feedback.approve(serviceDateLabel='Leistungsdatum'))
    """

    def __init__(
        self,
        vendor_memory: VendorMemory,
        pattern_memory: PatternMemory,
        ledger: ResolutionLedger,
        duplicates: DuplicateGuard,
        generators: Sequence['CandidateGenerator'] = (),
        config: Optional[EngineConfig] = None,
    ):
        self.vendor_memory = vendor_memory
        self.pattern_memory = pattern_memory
        self.ledger = ledger
        self.duplicates = duplicates
        self.generators = list(generators)
        self.config = config or EngineConfig()

    @property
    def threshold(self) -> float:
        return self.config.threshold

    def process(self, invoice: Invoice, feedback: Optional[Feedback] = None) -> DecisionResult:
        """
        Run the decision loop for one invoice.

        Args:
            invoice: Extracted invoice
            feedback: Human feedback for this run, if any

        Returns:
            Immutable DecisionResult with the ordered audit trail
        """
        run = _Run(invoice=invoice, normalized=NormalizedInvoice.from_invoice(invoice))

        if self._check_duplicate(run):
            return self._finish(run, RunStatus.DUPLICATE)

        self._detect(run)
        self._recall(run)
        self._decide(run)

        if feedback is not None:
            self._learn(run, feedback)
        elif not run.requires_review:
            self._record_implicit_approval(run)

        status = RunStatus.NEEDS_REVIEW if run.requires_review else RunStatus.AUTO_APPLIED
        return self._finish(run, status)

    def _check_duplicate(self, run: _Run) -> bool:
        check = self.duplicates.check_and_record(*run.invoice.natural_key)

        if check.is_duplicate:
            run.trail.record(
                AuditStep.DUPLICATE_CHECK,
                f"Duplicate of '{check.key}'. seenCount={check.seen_count}",
            )
            run.reasoning = f"Duplicate invoice (seen {check.seen_count} times)"
            run.requires_review = True
            logger.info(f"{run.invoice.invoice_id}: blocked as duplicate")
            return True

        details = f"Unique invoice {run.invoice.invoice_id}."
        if not check.write.ok:
            details += f" Sighting not persisted: {check.write.error}"
            logger.warning(f"{run.invoice.invoice_id}: duplicate sighting not persisted")
        run.trail.record(AuditStep.DUPLICATE_CHECK, details)
        return False

    def _detect(self, run: _Run) -> None:
        for generator in self.generators:
            try:
                candidates = list(generator.generate(run.invoice))
            except Exception as e:
                logger.exception(f"Candidate generator '{generator.name}' failed")
                run.trail.record(AuditStep.DETECT, f"Generator '{generator.name}' failed: {e}")
                continue

            for candidate in candidates:
                run.trail.record(candidate.step, candidate.reason)
                run.candidates.append(candidate)

    def _touched_patterns(self, run: _Run) -> List[str]:
        """Pattern ids recalled in this run, in first-seen order."""
        pattern_ids = [c.pattern_id for c in run.candidates]
        pattern_ids.extend(p.pattern_id for p in self.config.standing_patterns)
        return list(dict.fromkeys(pattern_ids))

    def _recall(self, run: _Run) -> None:
        vendor = run.invoice.vendor
        run.vendor_record = self.vendor_memory.get(vendor)
        if run.vendor_record is not None:
            run.trail.record(
                AuditStep.RECALL,
                f"Vendor memory for '{vendor}': confidence={run.vendor_record.confidence}",
            )
        else:
            run.trail.record(AuditStep.RECALL, f"No vendor memory found for '{vendor}'")

        patterns = self.pattern_memory.load()
        for pattern_id in self._touched_patterns(run):
            record = patterns.get(pattern_id)
            run.pattern_records[pattern_id] = record
            if record is not None:
                run.trail.record(
                    AuditStep.RECALL,
                    f"Pattern memory '{pattern_id}': confidence={record.confidence}",
                )
            else:
                run.trail.record(
                    AuditStep.RECALL, f"No pattern memory found for '{pattern_id}'"
                )

    def _decide(self, run: _Run) -> None:
        threshold = self.threshold
        vendor_record = run.vendor_record
        vendor_trusted = vendor_record is not None and vendor_record.meets(threshold)

        if vendor_record is not None:
            for name, value in vendor_record.payload.items():
                if not run.normalized.supports(name):
                    logger.debug(f"Vendor payload field '{name}' has no invoice counterpart")
                    continue
                if vendor_trusted:
                    run.normalized.apply(name, value)
                    run.trail.record(
                        AuditStep.APPLY,
                        f"Auto-applied {name}='{value}' from vendor memory",
                    )
                else:
                    run.proposals.append(f"Set {name} = {value} (needs review)")

        pending = 0
        for candidate in run.candidates:
            record = run.pattern_records.get(candidate.pattern_id)
            proposal = candidate.describe()
            if not run.normalized.supports(candidate.field, candidate.line_index):
                logger.warning(
                    f"{candidate.pattern_id}: field '{candidate.field}' cannot be applied"
                )
                run.proposals.append(f"{proposal} (needs review)")
                pending += 1
            elif record is not None and record.meets(threshold):
                run.normalized.apply(candidate.field, candidate.proposed_value, candidate.line_index)
                run.proposals.append(proposal)
                run.trail.record(
                    AuditStep.APPLY,
                    f"Auto-applied {candidate.field}='{candidate.proposed_value}' "
                    f"({candidate.pattern_id}, confidence={record.confidence})",
                )
            else:
                run.proposals.append(f"{proposal} (needs review)")
                pending += 1

        for standing in self.config.standing_patterns:
            record = run.pattern_records.get(standing.pattern_id)
            if record is not None and record.meets(threshold):
                action = record.payload.get('action') or standing.action
                if action:
                    run.proposals.append(action)

        run.requires_review = not vendor_trusted
        run.confidence_score = vendor_record.confidence if vendor_record is not None else 0.0

        if vendor_trusted:
            run.reasoning = "All actions applied with high confidence."
            if pending:
                run.reasoning += f" {pending} proposed correction(s) still need review."
        elif vendor_record is None:
            run.reasoning = (
                f"No vendor memory for '{run.invoice.vendor}'; human review required."
            )
        else:
            run.reasoning = (
                f"Vendor memory confidence {vendor_record.confidence} is below "
                f"the auto-apply threshold {threshold}."
            )

        run.trail.record(AuditStep.DECIDE, f"requiresHumanReview={run.requires_review}")

    def _learn(self, run: _Run, feedback: Feedback) -> None:
        vendor = run.invoice.vendor
        primary = self.config.primary_field

        if feedback.approved:
            vendor_fields = dict(feedback.vendor_fields)
            if vendor_fields or run.vendor_record is not None:
                run.note(self.vendor_memory.reinforce(vendor, vendor_fields or None))
            for name in (list(vendor_fields) or [primary]):
                run.note(self.ledger.record_approval(ledger_id(vendor, name)))
        else:
            # Vendor rules are only ever reinforced; rejection lands in the ledger
            run.note(self.ledger.record_rejection(ledger_id(vendor, primary)))

        candidates_by_pattern: Dict[str, List['Candidate']] = {}
        for candidate in run.candidates:
            candidates_by_pattern.setdefault(candidate.pattern_id, []).append(candidate)
        standing = {p.pattern_id: p for p in self.config.standing_patterns}

        for pattern_id in self._touched_patterns(run):
            verdict = feedback.verdict_for(pattern_id)
            matching = candidates_by_pattern.get(pattern_id, [])

            if verdict is Verdict.APPROVED:
                if matching:
                    description, action = matching[-1].description, matching[-1].action
                else:
                    description = standing[pattern_id].description
                    action = standing[pattern_id].action
                run.note(self.pattern_memory.approve(pattern_id, description, action))
            else:
                run.note(self.pattern_memory.reject(pattern_id))

            for field_name in dict.fromkeys(c.field for c in matching):
                if verdict is Verdict.APPROVED:
                    run.note(self.ledger.record_approval(ledger_id(vendor, field_name)))
                else:
                    run.note(self.ledger.record_rejection(ledger_id(vendor, field_name)))

        run.trail.record(
            AuditStep.LEARN,
            f"Human feedback: {feedback.verdict.value.capitalize()}",
        )

    def _record_implicit_approval(self, run: _Run) -> None:
        policy = self.config.implicit_approval
        if policy is ImplicitApprovalPolicy.SKIP:
            run.trail.record(
                AuditStep.LEARN,
                "No feedback; implicit approval skipped by policy",
            )
            return

        decision_id = ledger_id(run.invoice.vendor, self.config.primary_field)
        run.note(self.ledger.record_system_success(decision_id))
        run.trail.record(
            AuditStep.LEARN,
            f"No feedback; recorded system success for '{decision_id}'",
        )

    def _finish(self, run: _Run, status: RunStatus) -> DecisionResult:
        result = DecisionResult(
            invoice_id=run.invoice.invoice_id,
            normalized_invoice=run.normalized.freeze(),
            proposed_corrections=tuple(run.proposals),
            requires_human_review=run.requires_review,
            reasoning=run.reasoning,
            confidence_score=run.confidence_score,
            memory_updates=tuple(run.memory_updates),
            audit_trail=run.trail.entries,
            status=status,
        )
        logger.info(
            f"{run.invoice.invoice_id} ({run.invoice.vendor}): {status.value}, "
            f"confidence={result.confidence_score}, "
            f"{len(result.proposed_corrections)} proposal(s)"
        )
        return result
