"""
JSON report generator for policyunion.

Generates structured JSON output for programmatic consumption: the
effective policy with per-leaf provenance, every conflict record, every
diagnostic, and the error of a failed request.

Design Principles:
    - Complete data: Include everything needed to audit a resolution
    - Consistent schema: Same structure for successful and failed requests
    - Stable output: Keys are sorted so identical resolutions diff cleanly
"""

import json
from collections.abc import Iterable
from typing import Any

from policyunion.engine import Explanation, ResolutionOutcome
from policyunion.schema import Diagnostic, DiffEntry, Severity

REPORT_VERSION = "1.0"


def build_merge_report(outcome: ResolutionOutcome) -> dict[str, Any]:
    """
    Build a report dictionary for one resolution request.

    Args:
        outcome: The request outcome

    Returns:
        Dictionary with the full report
    """
    return {
        "report_version": REPORT_VERSION,
        "target": outcome.target,
        "chain": list(outcome.chain),
        "success": outcome.success,
        "stage": outcome.stage.value,
        "failed_stage": outcome.failed_stage.value if outcome.failed_stage else None,
        "effective": outcome.effective.to_tree() if outcome.effective is not None else None,
        "conflicts": [record.to_dict() for record in outcome.conflicts],
        "diagnostics": [d.to_dict() for d in outcome.diagnostics],
        "error": outcome.error.to_dict() if outcome.error is not None else None,
        "summary": {
            "leaves": len(outcome.effective) if outcome.effective is not None else 0,
            "conflicts": len(outcome.conflicts),
            "errors": _count(outcome.diagnostics, Severity.ERROR),
            "warnings": _count(outcome.diagnostics, Severity.WARNING),
        },
    }


def build_validation_report(diagnostics: Iterable[Diagnostic]) -> dict[str, Any]:
    """Build a report dictionary for a validate() call."""
    diagnostics = list(diagnostics)
    return {
        "report_version": REPORT_VERSION,
        "valid": _count(diagnostics, Severity.ERROR) == 0,
        "diagnostics": [d.to_dict() for d in diagnostics],
        "summary": {
            "errors": _count(diagnostics, Severity.ERROR),
            "warnings": _count(diagnostics, Severity.WARNING),
        },
    }


def build_diff_report(entries: Iterable[DiffEntry]) -> dict[str, Any]:
    """Build a report dictionary for a diff() call."""
    entries = list(entries)
    return {
        "report_version": REPORT_VERSION,
        "identical": not entries,
        "differences": [entry.to_dict() for entry in entries],
    }


def build_explain_report(explanation: Explanation) -> dict[str, Any]:
    """Build a report dictionary for an explain() call."""
    leaf = explanation.leaf
    return {
        "report_version": REPORT_VERSION,
        "target": explanation.target,
        "path": explanation.path,
        "chain": list(explanation.chain),
        "contributions": [
            {"sourceId": source_id, "value": value} for source_id, value in explanation.contributions
        ],
        "resolved": {
            "value": leaf.value,
            "contributingSourceId": leaf.source_id,
            "sources": list(leaf.sources),
            "strategy": leaf.strategy.value,
        } if leaf is not None else None,
        "conflicts": [record.to_dict() for record in explanation.conflicts],
        "error": explanation.error.to_dict() if explanation.error is not None else None,
    }


def generate_json_report(report: dict[str, Any], indent: int = 2) -> str:
    """Render a report dictionary as JSON."""
    return json.dumps(report, indent=indent, sort_keys=True, default=_json_serializer)


def _count(diagnostics: Iterable[Diagnostic], severity: Severity) -> int:
    return sum(1 for d in diagnostics if d.severity is severity)


def _json_serializer(obj: Any) -> Any:
    """Custom JSON serializer for non-standard types."""
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=repr)
    if isinstance(obj, tuple):
        return list(obj)
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")
