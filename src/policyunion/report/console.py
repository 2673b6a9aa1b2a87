"""
Console report generator for policyunion.

Renders resolution outcomes, diagnostics, diffs and explanations to the
terminal using Rich.

Design Principles:
    - Human-readable first: Optimize for quick scanning
    - Status at a glance: Use icons and colors for status
    - Progressive detail: Summary first, per-source details with --verbose
"""

import json
from collections.abc import Iterable
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from policyunion.engine import Explanation, ResolutionOutcome
from policyunion.schema import ConflictRecord, Diagnostic, DiffEntry, DiffKind, Severity


# Status icons
ICON_SUCCESS = "[green]✓[/green]"
ICON_ERROR = "[red]✗[/red]"
ICON_WARNING = "[yellow]⚠[/yellow]"
ICON_INFO = "[dim]○[/dim]"

_SEVERITY_ICONS = {
    Severity.ERROR: ICON_ERROR,
    Severity.WARNING: ICON_WARNING,
    Severity.INFO: ICON_INFO,
}

_DIFF_STYLES = {
    DiffKind.ADDED: ("+", "green"),
    DiffKind.REMOVED: ("-", "red"),
    DiffKind.CHANGED: ("~", "yellow"),
    DiffKind.SOURCE_CHANGED: ("@", "cyan"),
}


def print_outcome(console: Console, outcome: ResolutionOutcome, verbose: bool = False) -> None:
    """Print one resolution outcome: header, effective policy, conflicts, diagnostics."""
    _print_header(console, outcome)
    console.print()

    if outcome.effective is not None:
        _print_effective(console, outcome, verbose)
        console.print()

    if outcome.conflicts:
        print_conflicts(console, outcome.conflicts, verbose)
        console.print()

    if outcome.diagnostics:
        print_diagnostics(console, outcome.diagnostics)
        console.print()

    if outcome.error is not None:
        stage = outcome.failed_stage.value if outcome.failed_stage else "unknown"
        console.print(f"[red]Failed during {stage}:[/red] {escape(outcome.error.message)}")
        if outcome.error.suggestion:
            console.print(f"[dim]Suggestion: {escape(outcome.error.suggestion)}[/dim]")


def _print_header(console: Console, outcome: ResolutionOutcome) -> None:
    """Print the outcome header with status."""
    if outcome.success and not outcome.has_errors:
        status_style, icon = "green", ICON_SUCCESS
    elif outcome.success:
        status_style, icon = "yellow", ICON_WARNING
    else:
        status_style, icon = "red", ICON_ERROR

    header = Text()
    header.append(" Target ", style="bold")
    header.append(outcome.target or "<siblings>", style="bold cyan")
    header.append(" │ ", style="dim")
    header.append(outcome.stage.value.upper(), style=f"bold {status_style}")
    header.append(" ")
    header.append_text(Text.from_markup(icon))
    console.print(Panel(header, expand=False))

    if outcome.chain:
        console.print(f"  [dim]Chain:[/dim] {' → '.join(outcome.chain)}")


def _print_effective(console: Console, outcome: ResolutionOutcome, verbose: bool) -> None:
    console.print("[bold]Effective Policy[/bold]")
    console.print()

    table = Table(show_header=True, header_style="bold", expand=True)
    table.add_column("Path", style="cyan", overflow="fold")
    table.add_column("Value", overflow="fold")
    table.add_column("Source", style="magenta")
    if verbose:
        table.add_column("Strategy", style="dim")
        table.add_column("Contributors", style="dim", overflow="fold")

    for path, leaf in outcome.effective.leaves.items():
        row = [path, _truncate(_format_value(leaf.value), 80), leaf.source_id]
        if verbose:
            row.extend([leaf.strategy.value, ", ".join(leaf.sources)])
        table.add_row(*row)

    console.print(table)


def print_conflicts(console: Console, conflicts: Iterable[ConflictRecord], verbose: bool = False) -> None:
    """Print the conflict records of a merge."""
    conflicts = list(conflicts)
    console.print(f"[bold]Conflicts[/bold] [dim]({len(conflicts)})[/dim]")
    console.print()

    table = Table(show_header=True, header_style="bold", show_lines=verbose, expand=True)
    table.add_column("Path", style="cyan", overflow="fold")
    table.add_column("Strategy", width=12)
    table.add_column("Reason")
    table.add_column("Winner", style="magenta")
    table.add_column("Contributors", overflow="fold")

    for record in conflicts:
        winner = record.winner or "[red]none[/red]"
        if verbose:
            contributors = "\n".join(
                f"{c.source_id}: {_truncate(_format_value(c.value), 40)}" for c in record.contributors
            )
        else:
            contributors = ", ".join(c.source_id for c in record.contributors)
        table.add_row(record.path, record.strategy.value, record.reason_code.value, winner, contributors)

    console.print(table)


def print_diagnostics(console: Console, diagnostics: Iterable[Diagnostic]) -> None:
    """Print validator diagnostics, one per line."""
    diagnostics = list(diagnostics)
    errors = sum(1 for d in diagnostics if d.severity is Severity.ERROR)
    warnings = sum(1 for d in diagnostics if d.severity is Severity.WARNING)
    console.print(f"[bold]Diagnostics[/bold] [dim]({errors} error(s), {warnings} warning(s))[/dim]")

    for d in diagnostics:
        icon = _SEVERITY_ICONS[d.severity]
        where = d.path or "<document>"
        source = f" [dim]({d.source_id})[/dim]" if d.source_id else ""
        console.print(f"  {icon} [cyan]{where}[/cyan]{source}: {escape(d.message)} [dim]\\[{d.code}][/dim]")


def print_diff(console: Console, entries: Iterable[DiffEntry]) -> None:
    """Print path-level differences."""
    entries = list(entries)
    if not entries:
        console.print(f"{ICON_SUCCESS} No differences")
        return

    console.print(f"[bold]Differences[/bold] [dim]({len(entries)})[/dim]")
    for entry in entries:
        marker, style = _DIFF_STYLES[entry.kind]
        if entry.kind is DiffKind.ADDED:
            detail = f"{_format_value(entry.after)} [dim]({entry.after_source})[/dim]"
        elif entry.kind is DiffKind.REMOVED:
            detail = f"{_format_value(entry.before)} [dim]({entry.before_source})[/dim]"
        else:
            detail = (
                f"{_format_value(entry.before)} [dim]({entry.before_source})[/dim] → "
                f"{_format_value(entry.after)} [dim]({entry.after_source})[/dim]"
            )
        console.print(f"  [{style}]{marker} {entry.path}[/{style}]: {detail}")


def print_explanation(console: Console, explanation: Explanation) -> None:
    """Print how one path was decided."""
    console.print(f"[bold]{explanation.path}[/bold] [dim]for target {explanation.target}[/dim]")
    console.print(f"  [dim]Chain:[/dim] {' → '.join(explanation.chain)}")
    console.print()

    table = Table(show_header=True, header_style="bold")
    table.add_column("#", style="dim", width=3, justify="right")
    table.add_column("Source", style="magenta")
    table.add_column("Value", overflow="fold")
    for index, (source_id, value) in enumerate(explanation.contributions, start=1):
        shown = "[dim]—[/dim]" if value is None else _truncate(_format_value(value), 80)
        table.add_row(str(index), source_id, shown)
    console.print(table)
    console.print()

    if explanation.leaf is not None:
        leaf = explanation.leaf
        console.print(
            f"{ICON_SUCCESS} Resolved to {_format_value(leaf.value)} "
            f"from [magenta]{leaf.source_id}[/magenta] [dim]({leaf.strategy.value})[/dim]"
        )
    elif explanation.error is not None:
        console.print(f"{ICON_ERROR} {escape(explanation.error.message)}")
    else:
        console.print(f"{ICON_INFO} Path is not a leaf of the effective policy")

    if explanation.conflicts:
        console.print()
        print_conflicts(console, explanation.conflicts, verbose=True)


def _format_value(value: Any) -> str:
    if isinstance(value, str):
        return escape(value)
    return escape(json.dumps(value, default=str))


def _truncate(s: str, max_len: int) -> str:
    """Truncate string with ellipsis."""
    if len(s) <= max_len:
        return s
    return s[: max_len - 3] + "..."
