"""
Validator for policyunion.

Checks a merged EffectivePolicy against structural invariants and optional
schema constraints. The validator never raises on a finding: it collects
every problem as a Diagnostic so one call surfaces all of them.

Checks by mode:
    lax      - internal annotation keys leaking into the output
    checked  - the above, plus declared types, required paths, allowed
               values and mixed-type lists
    strict   - the above, plus unconstrained paths; warnings become errors
"""

import re
from collections.abc import Iterable, Mapping
from fnmatch import fnmatchcase
from typing import Any

from policyunion.model import EffectivePolicy, deep_equal, type_name
from policyunion.schema import Diagnostic, SchemaConstraints, Severity, ValidationMode

_ANNOTATION = re.compile(r"^__\w+__$")

# Leaf values satisfying each declared schema type
_TYPE_CHECKS = {
    "string": lambda v: isinstance(v, str),
    "integer": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "list": lambda v: isinstance(v, (list, tuple, set, frozenset)),
    "null": lambda v: v is None,
    "any": lambda v: True,
}


def path_matches(path: str, pattern: str) -> bool:
    """Match a dotted path against a pattern whose segments may be globs."""
    segments = path.split(".")
    pattern_segments = pattern.split(".")
    if len(segments) != len(pattern_segments):
        return False
    return all(fnmatchcase(s, p) for s, p in zip(segments, pattern_segments))


def _covers(path: str, required: str) -> bool:
    # A required mapping path is satisfied by any leaf below it
    segments = path.split(".")
    return any(
        path_matches(".".join(segments[:n]), required) for n in range(1, len(segments) + 1)
    )


def _lookup(patterns: Mapping[str, Any], path: str) -> tuple[str, Any] | None:
    # Exact paths beat patterns; otherwise the first matching pattern wins
    if path in patterns:
        return path, patterns[path]
    for pattern, value in patterns.items():
        if path_matches(path, pattern):
            return pattern, value
    return None


def _leaked_keys(value: Any, path: str) -> Iterable[str]:
    if isinstance(value, Mapping):
        for key, child in value.items():
            child_path = f"{path}.{key}"
            if isinstance(key, str) and _ANNOTATION.match(key):
                yield child_path
            yield from _leaked_keys(child, child_path)
    elif isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            yield from _leaked_keys(item, f"{path}[{index}]")


class Validator:
    """
    Validates effective policies.

    Usage:
        validator = Validator(constraints, ValidationMode.CHECKED)
        diagnostics = validator.validate(effective)
        errors = [d for d in diagnostics if d.severity is Severity.ERROR]

    Attributes:
        constraints: Schema constraints, or None when no schema was supplied
        mode: How thorough validation is
    """

    def __init__(
        self,
        constraints: SchemaConstraints | None = None,
        mode: ValidationMode = ValidationMode.CHECKED,
    ) -> None:
        self.constraints = constraints
        self.mode = mode

    def validate(self, effective: EffectivePolicy) -> list[Diagnostic]:
        """
        Run every check for the configured mode.

        Returns:
            All diagnostics, sorted by path then code
        """
        diagnostics: list[Diagnostic] = []
        diagnostics.extend(self._check_leaks(effective))

        if self.mode is not ValidationMode.LAX:
            diagnostics.extend(self._check_list_types(effective))
            if self.constraints is not None:
                diagnostics.extend(self._check_types(effective))
                diagnostics.extend(self._check_required(effective))
                diagnostics.extend(self._check_allowed_values(effective))

        if self.mode is ValidationMode.STRICT:
            if self.constraints is not None:
                diagnostics.extend(self._check_unconstrained(effective))
            diagnostics = [self._promote(d) for d in diagnostics]

        return sorted(diagnostics, key=lambda d: (d.path, d.code))

    # =========================================================================
    # Checks
    # =========================================================================

    def _check_leaks(self, effective: EffectivePolicy) -> list[Diagnostic]:
        found = []
        for path, leaf in effective.leaves.items():
            if any(_ANNOTATION.match(segment) for segment in path.split(".")):
                found.append(Diagnostic.error(
                    path,
                    f"Internal annotation key leaked into output: {path}",
                    "annotation-leak",
                    source_id=leaf.source_id,
                ))
            for leaked in _leaked_keys(leaf.value, path):
                found.append(Diagnostic.error(
                    path,
                    f"Internal annotation key leaked inside value: {leaked}",
                    "annotation-leak",
                    source_id=leaf.source_id,
                ))
        return found

    def _check_list_types(self, effective: EffectivePolicy) -> list[Diagnostic]:
        found = []
        for path, leaf in effective.leaves.items():
            if not isinstance(leaf.value, (list, tuple)):
                continue
            kinds = sorted({type_name(item) for item in leaf.value})
            if len(kinds) > 1:
                found.append(Diagnostic.warning(
                    path,
                    f"List mixes element types: {', '.join(kinds)}",
                    "mixed-list-types",
                    source_id=leaf.source_id,
                ))
        return found

    def _check_types(self, effective: EffectivePolicy) -> list[Diagnostic]:
        found = []
        for path, leaf in effective.leaves.items():
            match = _lookup(self.constraints.types, path)
            if match is None:
                continue
            pattern, declared = match
            if not _TYPE_CHECKS[declared](leaf.value):
                found.append(Diagnostic.error(
                    path,
                    f"Expected {declared} (from {pattern}), got {type_name(leaf.value)}",
                    "type-mismatch",
                    source_id=leaf.source_id,
                ))
        return found

    def _check_required(self, effective: EffectivePolicy) -> list[Diagnostic]:
        found = []
        paths = effective.paths()
        for required in self.constraints.required:
            if not any(_covers(path, required) for path in paths):
                found.append(Diagnostic.error(
                    required,
                    f"Required path is missing: {required}",
                    "required-missing",
                ))
        return found

    def _check_allowed_values(self, effective: EffectivePolicy) -> list[Diagnostic]:
        found = []
        for path, leaf in effective.leaves.items():
            match = _lookup(self.constraints.allowed_values, path)
            if match is None:
                continue
            pattern, allowed = match
            values = leaf.value if isinstance(leaf.value, (list, tuple)) else [leaf.value]
            for value in values:
                if not any(deep_equal(value, candidate) for candidate in allowed):
                    found.append(Diagnostic.error(
                        path,
                        f"Value {value!r} not allowed by {pattern}; expected one of {allowed!r}",
                        "value-not-allowed",
                        source_id=leaf.source_id,
                    ))
        return found

    def _check_unconstrained(self, effective: EffectivePolicy) -> list[Diagnostic]:
        declared = list(self.constraints.types) + list(self.constraints.allowed_values)
        found = []
        for path, leaf in effective.leaves.items():
            if not any(path == p or path_matches(path, p) for p in declared):
                found.append(Diagnostic.warning(
                    path,
                    f"Path is not described by the schema: {path}",
                    "unconstrained-path",
                    source_id=leaf.source_id,
                ))
        return found

    def _promote(self, diagnostic: Diagnostic) -> Diagnostic:
        if diagnostic.severity is Severity.WARNING:
            return diagnostic.model_copy(update={"severity": Severity.ERROR})
        return diagnostic


def validate(
    effective: EffectivePolicy,
    constraints: SchemaConstraints | None = None,
    mode: ValidationMode = ValidationMode.CHECKED,
) -> list[Diagnostic]:
    """Validate an effective policy; shorthand for Validator(...).validate()."""
    return Validator(constraints, mode).validate(effective)


def has_errors(diagnostics: Iterable[Diagnostic]) -> bool:
    """Whether any diagnostic is an error."""
    return any(d.severity is Severity.ERROR for d in diagnostics)
