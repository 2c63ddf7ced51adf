"""
Candidate Generator Interface

Generators inspect an invoice and propose corrections. They never touch the
memory stores: the decision engine recalls the pattern named by each
candidate and decides whether the proposal is applied or sent to review.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from decision.audit import AuditStep
from decision.models import Invoice


@dataclass(frozen=True)
class Candidate:
    """
    A proposed correction.

    Attributes:
        pattern_id: Correction pattern whose confidence gates this proposal
        field: Target field (camelCase contract name)
        proposed_value: Value to write when the pattern is trusted
        reason: Why the generator proposed it (goes to the audit trail)
        description: Pattern description stored on approval
        action: Pattern action stored on approval
        line_index: Line item index for line-level fields
        label: Extra context for the proposal text, e.g. a line description
        proposal: Overrides the default "Set field = value" text
        step: Audit step used when the candidate is detected
    """

    pattern_id: str
    field: str
    proposed_value: Any
    reason: str
    description: str = ''
    action: str = ''
    line_index: Optional[int] = None
    label: Optional[str] = None
    proposal: Optional[str] = None
    step: AuditStep = AuditStep.DETECT

    def describe(self) -> str:
        if self.proposal:
            return self.proposal
        text = f"Set {self.field} = {self.proposed_value}"
        if self.label:
            text += f" for '{self.label}'"
        return text


class CandidateGenerator(ABC):
    """Base class for pluggable candidate generators."""

    name: str = 'generator'

    @abstractmethod
    def generate(self, invoice: Invoice) -> Iterable[Candidate]:
        """Yield zero or more candidates for the invoice."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"
