"""
Exception hierarchy for policyunion.

All policyunion exceptions inherit from PolicyUnionError, allowing callers to
catch every resolution failure with a single except clause.

Exception Categories:
    - NormalizationError: Raw document could not be turned into a tree
    - InheritanceError: Parent references are broken, cyclic or too deep
    - MergeError: Contributors to a field cannot be combined
    - SchemaViolation: Effective policy breaks a schema constraint
    - ConfigError: Resolver configuration is invalid

Design Principles:
    - All errors have error codes for programmatic handling
    - All errors include context (document, path, strategy where applicable)
    - All errors provide actionable suggestions where possible
    - Errors are designed to be both human-readable and machine-parseable
"""

from dataclasses import dataclass, field
from typing import Any


# =============================================================================
# Error Codes
# =============================================================================

# Normalization errors: 1xxx
ERROR_INVALID_PATH = 1001
ERROR_DUPLICATE_KEY = 1002
ERROR_DOCUMENT_INPUT = 1003

# Inheritance errors: 2xxx
ERROR_CYCLE_DETECTED = 2001
ERROR_UNKNOWN_PARENT = 2002
ERROR_DEPTH_EXCEEDED = 2003
ERROR_UNKNOWN_DOCUMENT = 2004

# Merge errors: 3xxx
ERROR_TYPE_MISMATCH = 3001
ERROR_UNRESOLVABLE_CONFLICT = 3002
ERROR_MERGE_FAILED = 3003

# Validation errors: 4xxx
ERROR_SCHEMA_VIOLATION = 4001

# Configuration errors: 5xxx
ERROR_CONFIG_INVALID = 5001


# =============================================================================
# Base Exception
# =============================================================================


@dataclass
class PolicyUnionError(Exception):
    """
    Base exception for all policyunion errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code for programmatic handling
        suggestion: Optional hint for how to resolve the error
        context: Optional dict with additional debugging info
    """

    message: str = ""
    code: int = 0
    suggestion: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        """Format error for display."""
        parts = [f"[E{self.code}] {self.message}"]
        if self.suggestion:
            parts.append(f"\nSuggestion: {self.suggestion}")
        return "".join(parts)

    def __repr__(self) -> str:
        """Format error for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code}, "
            f"context={self.context!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "suggestion": self.suggestion,
            "context": self.context,
        }


# =============================================================================
# Normalization Errors
# =============================================================================


@dataclass
class NormalizationError(PolicyUnionError):
    """
    Base class for errors raised while normalizing a raw document.

    Fatal for the document: nothing from it reaches the merge stage.

    Attributes:
        source_id: Document being normalized
        path: Dotted path where the problem was found
    """

    source_id: str = ""
    path: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context.update({
            "source_id": self.source_id,
            "path": self.path,
        })


@dataclass
class InvalidPathError(NormalizationError):
    """Raised when a key cannot be canonicalized into a path segment."""

    key: str = ""
    reason: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            where = f" at '{self.path}'" if self.path else ""
            self.message = f"Invalid key {self.key!r} in {self.source_id}{where}: {self.reason}"
        if self.code == 0:
            self.code = ERROR_INVALID_PATH
        if not self.suggestion:
            self.suggestion = "Keys must be letters, digits, '_' or '-' separated by '.'"
        super().__post_init__()
        self.context.update({
            "key": self.key,
            "reason": self.reason,
        })


@dataclass
class DuplicateKeyError(NormalizationError):
    """Raised when two raw keys canonicalize to the same sibling."""

    keys: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Duplicate key '{self.path}' in {self.source_id}: {', '.join(map(repr, self.keys))}"
        if self.code == 0:
            self.code = ERROR_DUPLICATE_KEY
        if not self.suggestion:
            self.suggestion = "Remove one of the colliding keys or rename it"
        super().__post_init__()
        self.context["keys"] = list(self.keys)


@dataclass
class DocumentInputError(NormalizationError):
    """Raised when a document entry is malformed or clashes with another."""

    reason: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            label = self.source_id or "<unnamed>"
            self.message = f"Invalid document {label}: {self.reason}"
        if self.code == 0:
            self.code = ERROR_DOCUMENT_INPUT
        super().__post_init__()
        self.context["reason"] = self.reason


# =============================================================================
# Inheritance Errors
# =============================================================================


@dataclass
class InheritanceError(PolicyUnionError):
    """
    Base class for errors raised while building a resolution chain.

    Fatal for the target: no partial chain is ever returned.

    Attributes:
        target: Name of the document whose chain was being resolved
    """

    target: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context["target"] = self.target


@dataclass
class CycleDetectedError(InheritanceError):
    """Raised when parent references loop back into the active walk."""

    cycle: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Inheritance cycle detected: {' -> '.join(self.cycle)}"
        if self.code == 0:
            self.code = ERROR_CYCLE_DETECTED
        if not self.suggestion:
            self.suggestion = "Remove one parent reference so the documents form a tree"
        super().__post_init__()
        self.context["cycle"] = list(self.cycle)


@dataclass
class UnknownParentError(InheritanceError):
    """Raised when a parent reference names a document that was not supplied."""

    document: str = ""
    parent: str | None = None

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Document {self.document!r} references unknown parent {self.parent!r}"
        if self.code == 0:
            self.code = ERROR_UNKNOWN_PARENT
        if not self.suggestion:
            self.suggestion = "Supply the parent document or fix the parent reference"
        super().__post_init__()
        self.context.update({
            "document": self.document,
            "parent": self.parent,
        })


@dataclass
class UnknownDocumentError(UnknownParentError):
    """Raised when the requested target itself is not among the documents."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Unknown target document: {self.document!r}"
        if self.code == 0:
            self.code = ERROR_UNKNOWN_DOCUMENT
        if not self.suggestion:
            self.suggestion = "Check the target name against the supplied source ids"
        super().__post_init__()


@dataclass
class DepthExceededError(InheritanceError):
    """Raised when a chain grows past the configured maximum depth."""

    max_depth: int = 0
    walked: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Inheritance chain for {self.target!r} exceeds max depth {self.max_depth}"
        if self.code == 0:
            self.code = ERROR_DEPTH_EXCEEDED
        if not self.suggestion:
            self.suggestion = "Flatten the hierarchy or raise max_depth in the resolver config"
        super().__post_init__()
        self.context.update({
            "max_depth": self.max_depth,
            "walked": list(self.walked),
        })


# =============================================================================
# Merge Errors
# =============================================================================


@dataclass
class MergeError(PolicyUnionError):
    """
    Base class for merge-stage errors.

    Fatal for one field only; the engine keeps merging the other fields
    and reports every aborted field together.

    Attributes:
        path: Dotted path of the field
        strategy: Name of the strategy being applied
        record: ConflictRecord emitted for the failed decision (no winner)
    """

    path: str = ""
    strategy: str = ""
    record: Any = None

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context.update({
            "path": self.path,
            "strategy": self.strategy,
        })
        if self.record is not None:
            self.context["record"] = self.record.model_dump(mode="json")


@dataclass
class TypeMismatchError(MergeError):
    """Raised when contributors mix collections and scalars (or mappings)."""

    found_types: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                f"Type mismatch at '{self.path}' under {self.strategy}: "
                f"{', '.join(self.found_types)}"
            )
        if self.code == 0:
            self.code = ERROR_TYPE_MISMATCH
        if not self.suggestion:
            self.suggestion = "Use the same value type in every document or annotate the field with override"
        super().__post_init__()
        self.context["found_types"] = list(self.found_types)


@dataclass
class UnresolvableConflictError(MergeError):
    """Raised when contributors disagree and no rule picks a winner."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Unresolvable conflict at '{self.path}' under {self.strategy}"
        if self.code == 0:
            self.code = ERROR_UNRESOLVABLE_CONFLICT
        if not self.suggestion:
            self.suggestion = "Align the values, set explicit priorities, or enable intersection_fallback"
        super().__post_init__()


@dataclass
class MergeFailedError(MergeError):
    """
    Raised once per merge when at least one field aborted.

    Attributes:
        errors: Every per-field MergeError, in traversal order
        conflicts: All ConflictRecords gathered before and after the failures
    """

    errors: list[MergeError] = field(default_factory=list)
    conflicts: list[Any] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            paths = ", ".join(e.path for e in self.errors)
            self.message = f"Merge failed for {len(self.errors)} field(s): {paths}"
        if self.code == 0:
            self.code = ERROR_MERGE_FAILED
        super().__post_init__()
        self.context["errors"] = [e.to_dict() for e in self.errors]


# =============================================================================
# Validation and Configuration Errors
# =============================================================================


@dataclass
class SchemaViolation(PolicyUnionError):
    """Raised by callers that escalate an error diagnostic into an exception."""

    path: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Schema violation at '{self.path}'"
        if self.code == 0:
            self.code = ERROR_SCHEMA_VIOLATION
        self.context["path"] = self.path


@dataclass
class ConfigError(PolicyUnionError):
    """Raised when a resolver config or schema file is invalid."""

    config_path: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid configuration: {self.config_path}"
        if self.code == 0:
            self.code = ERROR_CONFIG_INVALID
        if not self.suggestion:
            self.suggestion = "Check the file against the documented keys"
        self.context["config_path"] = self.config_path
