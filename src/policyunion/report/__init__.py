"""
Reporting module for policyunion.

Output formats:
    - Console: Rich terminal output with status icons and tables
    - JSON: Structured output for programmatic consumption

Example:
    from policyunion.report import build_merge_report, generate_json_report

    outcome = Resolver().merge(documents, "team")
    print(generate_json_report(build_merge_report(outcome)))
"""

from policyunion.report.console import (
    print_conflicts,
    print_diagnostics,
    print_diff,
    print_explanation,
    print_outcome,
)
from policyunion.report.json import (
    build_diff_report,
    build_explain_report,
    build_merge_report,
    build_validation_report,
    generate_json_report,
)

__all__ = [
    "build_diff_report",
    "build_explain_report",
    "build_merge_report",
    "build_validation_report",
    "generate_json_report",
    "print_conflicts",
    "print_diagnostics",
    "print_diff",
    "print_explanation",
    "print_outcome",
]
