"""
CLI entry point for policyunion.

This module provides the Typer-based command-line interface. All file I/O
and exit-code mapping live here; resolution itself is delegated to the
Resolver so the core stays usable without the CLI.

Commands:
    validate    Check a document set and report every problem
    merge       Resolve the effective policy of one target (or siblings)
    batch       Resolve many targets at once
    diff        Compare two effective policies
    explain     Show how one path of one target was decided

Exit codes:
    0   Success (warnings may have been printed)
    1   Errors: failed resolution, error diagnostics, or differences (diff)
"""

import json
import logging
import sys
import traceback
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from policyunion import __version__
from policyunion.engine import Resolver
from policyunion.errors import ConfigError, PolicyUnionError
from policyunion.model import EffectivePolicy
from policyunion.report import (
    build_diff_report,
    build_explain_report,
    build_merge_report,
    build_validation_report,
    generate_json_report,
    print_diagnostics,
    print_diff,
    print_explanation,
    print_outcome,
)
from policyunion.schema import (
    PolicyDocumentInput,
    ResolverConfig,
    SchemaConstraints,
    ValidationMode,
    load_config,
    load_constraints,
    load_document_dir,
    load_documents,
)
from policyunion.validate import has_errors

# Initialize Typer app with metadata
app = typer.Typer(
    name="policyunion",
    help="Resolve layered policy documents into one deterministic effective policy.",
    add_completion=False,
    no_args_is_help=True,
)

# Rich consoles: results on stdout, logs and errors on stderr
console = Console()
err_console = Console(stderr=True)

log = logging.getLogger("policyunion")


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]policyunion[/bold] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """
    policyunion - Layered policy resolution.

    Merge organization, team and repository policy documents using declared
    inheritance and per-field merge strategies, with a full conflict audit.
    """
    pass


# =============================================================================
# Shared helpers
# =============================================================================


def _configure_logging(verbose: bool, debug: bool) -> None:
    """Route policyunion logs to stderr through Rich."""
    level = logging.DEBUG if debug else logging.INFO if verbose else logging.WARNING
    log.handlers.clear()
    handler = RichHandler(console=err_console, show_path=debug, rich_tracebacks=debug)
    handler.setFormatter(logging.Formatter("%(message)s"))
    log.addHandler(handler)
    log.setLevel(level)
    log.propagate = False


def _load_inputs(path: Path) -> list[PolicyDocumentInput]:
    if path.is_dir():
        return load_document_dir(path)
    return load_documents(path)


def _load_settings(
    config_path: Path | None,
    schema_path: Path | None,
    mode: ValidationMode | None,
) -> tuple[ResolverConfig, SchemaConstraints | None]:
    config = load_config(config_path) if config_path else ResolverConfig()
    if mode is not None:
        config = config.model_copy(update={"validation_mode": mode})
    constraints = load_constraints(schema_path) if schema_path else None
    return config, constraints


def _parse_overrides(raw: list[str] | None) -> dict[str, str]:
    overrides = {}
    for item in raw or []:
        path, sep, strategy = item.partition("=")
        if not sep or not path.strip() or not strategy.strip():
            raise ConfigError(message=f"Invalid --strategy {item!r}; expected PATH=STRATEGY")
        overrides[path.strip()] = strategy.strip()
    return overrides


def _fail(error_type: str, error: Exception, json_output: bool, debug: bool) -> None:
    """Report a load or usage error and exit 1."""
    if json_output:
        _output_json_error(error_type, error, debug)
    else:
        message = error.message if isinstance(error, PolicyUnionError) else str(error)
        err_console.print(f"[red]Error: {escape(message)}[/red]")
        if isinstance(error, PolicyUnionError) and error.suggestion:
            err_console.print(f"[dim]Suggestion: {escape(error.suggestion)}[/dim]")
        if debug:
            err_console.print(f"[dim]{escape(traceback.format_exc())}[/dim]")
    raise typer.Exit(code=1)


def _output_json_error(error_type: str, error: Exception, include_traceback: bool = False) -> None:
    """Output an error in JSON format."""
    output: dict[str, Any] = {
        "error": True,
        "error_type": error_type,
        "message": error.message if isinstance(error, PolicyUnionError) else str(error),
    }
    if isinstance(error, PolicyUnionError):
        output["details"] = error.to_dict()
    if include_traceback:
        output["traceback"] = traceback.format_exc()
    print(json.dumps(output, indent=2, default=str))


def _read_effective(path: Path) -> EffectivePolicy:
    """Read an effective policy from a merge JSON report or a bare effective tree."""
    with path.open() as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping")
    if "effective" in data:
        if data["effective"] is None:
            raise ValueError(f"{path}: report has no effective policy (failed merge?)")
        return EffectivePolicy.from_tree(data["effective"], target=data.get("target"))
    return EffectivePolicy.from_tree(data)


# Common options
DocsArgument = Annotated[
    Path,
    typer.Argument(
        help="YAML file with a list of documents, or a directory of one-document YAML files.",
        exists=True,
        readable=True,
        resolve_path=True,
    ),
]
ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Resolver config YAML.", exists=True, readable=True, resolve_path=True),
]
SchemaOption = Annotated[
    Optional[Path],
    typer.Option("--schema", help="Schema constraints YAML.", exists=True, readable=True, resolve_path=True),
]
ModeOption = Annotated[
    Optional[ValidationMode],
    typer.Option("--mode", "-m", help="Validation mode (overrides the config file)."),
]
JsonOption = Annotated[bool, typer.Option("--json", help="Output results in JSON format.")]
VerboseOption = Annotated[bool, typer.Option("--verbose", help="Enable verbose output.")]
DebugOption = Annotated[bool, typer.Option("--debug", help="Enable debug logging and full error tracebacks.")]


# =============================================================================
# Commands
# =============================================================================


@app.command()
def validate(
    docs: DocsArgument,
    config_path: ConfigOption = None,
    schema_path: SchemaOption = None,
    mode: ModeOption = None,
    json_output: JsonOption = False,
    verbose: VerboseOption = False,
    debug: DebugOption = False,
) -> None:
    """
    Check a document set and report every problem found.

    Normalization, inheritance and merge problems of every document are
    reported together, followed by schema findings.

    Example:
        $ policyunion validate policies.yaml --schema schema.yaml
    """
    _configure_logging(verbose, debug)
    try:
        config, constraints = _load_settings(config_path, schema_path, mode)
        inputs = _load_inputs(docs)
    except (PolicyUnionError, OSError) as e:
        _fail("load_error", e, json_output, debug)

    diagnostics = Resolver(config, constraints).validate(inputs)

    if json_output:
        print(generate_json_report(build_validation_report(diagnostics)))
    elif diagnostics:
        print_diagnostics(console, diagnostics)
    else:
        console.print(f"[green]✓[/green] {len(inputs)} document(s) valid")

    raise typer.Exit(code=1 if has_errors(diagnostics) else 0)


@app.command()
def merge(
    docs: DocsArgument,
    target: Annotated[
        Optional[str],
        typer.Option("--target", "-t", help="Document whose effective policy to resolve."),
    ] = None,
    siblings: Annotated[
        bool,
        typer.Option("--siblings", help="Merge documents at equal scope instead of following parents."),
    ] = False,
    strategy: Annotated[
        Optional[list[str]],
        typer.Option("--strategy", "-s", help="Strategy override, PATH=STRATEGY. Repeatable."),
    ] = None,
    output: Annotated[
        Optional[Path],
        typer.Option("--out", "-o", help="Also write the JSON report to this file.", resolve_path=True),
    ] = None,
    config_path: ConfigOption = None,
    schema_path: SchemaOption = None,
    mode: ModeOption = None,
    json_output: JsonOption = False,
    verbose: VerboseOption = False,
    debug: DebugOption = False,
) -> None:
    """
    Resolve the effective policy of one target.

    With --siblings, every document (or only those named with --target) is
    merged at equal scope in declaration order.

    Example:
        $ policyunion merge policies.yaml --target team-platform --out effective.json
    """
    _configure_logging(verbose, debug)
    if not siblings and not target:
        _fail("usage_error", ValueError("--target is required unless --siblings is given"), json_output, debug)

    try:
        config, constraints = _load_settings(config_path, schema_path, mode)
        overrides = _parse_overrides(strategy)
        inputs = _load_inputs(docs)
    except (PolicyUnionError, OSError) as e:
        _fail("load_error", e, json_output, debug)

    resolver = Resolver(config, constraints)
    if siblings:
        names = [target] if target else None
        outcome = resolver.merge_siblings(inputs, names=names, overrides=overrides)
    else:
        outcome = resolver.merge(inputs, target, overrides=overrides)

    report = build_merge_report(outcome)
    if output is not None:
        output.write_text(generate_json_report(report) + "\n")
        log.info("Wrote report to %s", output)

    if json_output:
        print(generate_json_report(report))
    else:
        print_outcome(console, outcome, verbose)
        if debug and outcome.error is not None:
            err_console.print(f"[dim]{escape(repr(outcome.error))}[/dim]")

    raise typer.Exit(code=1 if outcome.has_errors else 0)


@app.command()
def batch(
    docs: DocsArgument,
    target: Annotated[
        Optional[list[str]],
        typer.Option("--target", "-t", help="Target to resolve. Repeatable; defaults to every document."),
    ] = None,
    workers: Annotated[
        int,
        typer.Option("--workers", "-w", help="Targets resolved in parallel.", min=1, max=64),
    ] = 1,
    config_path: ConfigOption = None,
    schema_path: SchemaOption = None,
    mode: ModeOption = None,
    json_output: JsonOption = False,
    verbose: VerboseOption = False,
    debug: DebugOption = False,
) -> None:
    """
    Resolve many targets in one run.

    Example:
        $ policyunion batch policies/ --workers 4 --json
    """
    _configure_logging(verbose, debug)
    try:
        config, constraints = _load_settings(config_path, schema_path, mode)
        inputs = _load_inputs(docs)
    except (PolicyUnionError, OSError) as e:
        _fail("load_error", e, json_output, debug)

    outcomes = Resolver(config, constraints).merge_all(inputs, targets=target or None, workers=workers)

    if json_output:
        reports = [build_merge_report(outcome) for outcome in outcomes]
        print(json.dumps({"results": reports}, indent=2, sort_keys=True, default=str))
    else:
        for outcome in outcomes:
            print_outcome(console, outcome, verbose)
        failed = sum(1 for outcome in outcomes if outcome.has_errors)
        console.print(f"[dim]Targets: {len(outcomes)} | With errors: {failed}[/dim]")

    raise typer.Exit(code=1 if any(outcome.has_errors for outcome in outcomes) else 0)


@app.command()
def diff(
    before: Annotated[
        Path,
        typer.Argument(help="Baseline effective policy (merge JSON report or effective tree).", exists=True, readable=True),
    ],
    after: Annotated[
        Path,
        typer.Argument(help="Effective policy to compare.", exists=True, readable=True),
    ],
    sources: Annotated[
        bool,
        typer.Option("--sources", help="Also report paths whose contributing source changed."),
    ] = False,
    json_output: JsonOption = False,
    debug: DebugOption = False,
) -> None:
    """
    Compare two effective policies path by path.

    Exits 1 when they differ.

    Example:
        $ policyunion diff before.json after.json
    """
    _configure_logging(False, debug)
    try:
        old = _read_effective(before)
        new = _read_effective(after)
    except (OSError, ValueError, yaml.YAMLError) as e:
        _fail("load_error", e, json_output, debug)

    entries = Resolver.diff(old, new, include_sources=sources)

    if json_output:
        print(generate_json_report(build_diff_report(entries)))
    else:
        print_diff(console, entries)

    raise typer.Exit(code=1 if entries else 0)


@app.command()
def explain(
    docs: DocsArgument,
    path: Annotated[str, typer.Argument(help="Dotted path to explain, e.g. branches.main.reviews.")],
    target: Annotated[str, typer.Option("--target", "-t", help="Target document.")],
    config_path: ConfigOption = None,
    json_output: JsonOption = False,
    debug: DebugOption = False,
) -> None:
    """
    Show every contribution to one path and how the winner was chosen.

    Example:
        $ policyunion explain policies.yaml repo.permissions --target team-platform
    """
    _configure_logging(False, debug)
    try:
        config, _ = _load_settings(config_path, None, None)
        inputs = _load_inputs(docs)
        explanation = Resolver(config).explain(inputs, target, path)
    except (PolicyUnionError, OSError) as e:
        _fail("explain_error", e, json_output, debug)

    if json_output:
        print(generate_json_report(build_explain_report(explanation)))
    else:
        print_explanation(console, explanation)

    raise typer.Exit(code=1 if explanation.error is not None else 0)


if __name__ == "__main__":
    sys.exit(app())
