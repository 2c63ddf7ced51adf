"""
Result Export

Export decision results for review tools and downstream systems.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Any, Dict, Iterable, List

from loguru import logger

from decision.models import DecisionResult, RunStatus


class ExportFormat(Enum):
    """Supported export formats."""

    JSON = auto()           # JSON array of full results
    JSONL = auto()          # JSON Lines (one result per line)
    REVIEW_QUEUE = auto()   # Only results that need a human, with a summary


@dataclass
class ExportConfig:
    """Configuration for export."""

    include_audit_trail: bool = True
    include_memory_updates: bool = True
    pretty_print: bool = True
    indent: int = 2


def summarize(results: Iterable[DecisionResult]) -> Dict[str, Any]:
    """Counts per status plus the mean confidence of non-duplicate runs."""
    results = list(results)
    counts = {status.value: 0 for status in RunStatus}
    for result in results:
        counts[result.status.value] += 1

    scored = [r.confidence_score for r in results if not r.is_duplicate]
    return {
        'total': len(results),
        'byStatus': counts,
        'requiresHumanReview': sum(1 for r in results if r.requires_human_review),
        'averageConfidence': round(sum(scored) / len(scored), 3) if scored else None,
    }


class ResultExporter:
    """
    Export decision results in various formats.

    Usage:
        exporter = ResultExporter()

        exporter.export(results, 'output/results.json')
        exporter.export(results, 'output/results.jsonl', ExportFormat.JSONL)
        exporter.export(results, 'output/review_queue.json', ExportFormat.REVIEW_QUEUE)
    """

    def __init__(self, config: ExportConfig = None):
        """
        Initialize exporter.

        Args:
            config: Export configuration
        """
        self.config = config or ExportConfig()

    def export(
        self,
        results: Iterable[DecisionResult],
        output_path: str,
        format: ExportFormat = ExportFormat.JSON,
    ) -> str:
        """
        Export results.

        Args:
            results: Decision results, in processing order
            output_path: Output file path
            format: Export format

        Returns:
            Path to exported file
        """
        os.makedirs(os.path.dirname(output_path) or '.', exist_ok=True)
        results = list(results)

        if format == ExportFormat.JSON:
            path = self._export_json(results, output_path)
        elif format == ExportFormat.JSONL:
            path = self._export_jsonl(results, output_path)
        elif format == ExportFormat.REVIEW_QUEUE:
            path = self._export_review_queue(results, output_path)
        else:
            raise ValueError(f"Unsupported format: {format}")

        logger.info(f"Exported {len(results)} result(s) as {format.name} to {path}")
        return path

    def prepare(self, result: DecisionResult) -> Dict[str, Any]:
        """Result contract dict, trimmed per config."""
        data = result.to_dict()
        if not self.config.include_audit_trail:
            data.pop('auditTrail')
        if not self.config.include_memory_updates:
            data.pop('memoryUpdates')
        return data

    def _dump(self, data: Any, output_path: str) -> str:
        with open(output_path, 'w', encoding='utf-8') as f:
            if self.config.pretty_print:
                json.dump(data, f, indent=self.config.indent, ensure_ascii=False)
            else:
                json.dump(data, f, ensure_ascii=False)
        return output_path

    def _export_json(self, results: List[DecisionResult], output_path: str) -> str:
        return self._dump([self.prepare(r) for r in results], output_path)

    def _export_jsonl(self, results: List[DecisionResult], output_path: str) -> str:
        with open(output_path, 'w', encoding='utf-8') as f:
            for result in results:
                f.write(json.dumps(self.prepare(result), ensure_ascii=False) + '\n')
        return output_path

    def _export_review_queue(self, results: List[DecisionResult], output_path: str) -> str:
        """Results needing review, duplicates last, lowest confidence first."""
        pending = [r for r in results if r.requires_human_review]
        pending.sort(key=lambda r: (r.is_duplicate, r.confidence_score))

        data = {
            'summary': summarize(results),
            'items': [self.prepare(r) for r in pending],
            'exportedAt': datetime.now(timezone.utc).isoformat(),
        }
        return self._dump(data, output_path)
