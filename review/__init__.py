"""
Human-in-the-Loop Review

Replays reviewer corrections into memory and exports decision results for
review tools.
"""

from .corrections import (
    FieldCorrection,
    HumanCorrection,
    ReplayRule,
    ReplaySummary,
    CorrectionReplayer,
    DEFAULT_REPLAY_RULES,
)
from .json_export import (
    ResultExporter,
    ExportConfig,
    ExportFormat,
    summarize,
)

__all__ = [
    'FieldCorrection',
    'HumanCorrection',
    'ReplayRule',
    'ReplaySummary',
    'CorrectionReplayer',
    'DEFAULT_REPLAY_RULES',
    'ResultExporter',
    'ExportConfig',
    'ExportFormat',
    'summarize',
]
