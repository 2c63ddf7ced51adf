"""
Decision Package

Per-invoice decision loop over the memory stores.

A learned rule only acts on its own once humans have confirmed it often
enough: confidence at or above the threshold applies the rule, anything
below turns it into a proposal for review. Every run returns an immutable
DecisionResult with an ordered audit trail explaining what happened.

Usage:
    from decision import DecisionEngine, EngineConfig, Feedback, Invoice

    engine = DecisionEngine(vendors, patterns, ledger, duplicates,
                            generators=builtin_generators(purchase_orders),
                            config=EngineConfig(threshold=0.7))

    result = engine.process(Invoice.from_dict(raw))
    if result.requires_human_review:
        for proposal in result.proposed_corrections:
            print(f"  - {proposal}")
"""

from .audit import (
    AuditStep,
    AuditEntry,
    AuditTrail,
)
from .models import (
    Verdict,
    RunStatus,
    LineItem,
    InvoiceFields,
    Invoice,
    PurchaseOrder,
    NormalizedInvoice,
    Feedback,
    DecisionResult,
)
from .decision_engine import (
    DecisionEngine,
    EngineConfig,
    ImplicitApprovalPolicy,
    StandingPattern,
    DEFAULT_THRESHOLD,
    ledger_id,
)

__all__ = [
    'AuditStep',
    'AuditEntry',
    'AuditTrail',
    'Verdict',
    'RunStatus',
    'LineItem',
    'InvoiceFields',
    'Invoice',
    'PurchaseOrder',
    'NormalizedInvoice',
    'Feedback',
    'DecisionResult',
    'DecisionEngine',
    'EngineConfig',
    'ImplicitApprovalPolicy',
    'StandingPattern',
    'DEFAULT_THRESHOLD',
    'ledger_id',
]
