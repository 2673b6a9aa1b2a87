"""
Schema definitions for policyunion.

This module defines the Pydantic models that cross the engine boundary:
- PolicyDocumentInput: One authored document as handed in by a loader
- ResolverConfig: Tunables for normalization, inheritance and merging
- SchemaConstraints: Optional per-path type and presence rules
- ConflictRecord/Diagnostic/DiffEntry: Audit and report output

Design Decisions:
    - Input models forbid unknown keys so typos fail loudly
    - Output models are frozen (immutable after creation)
    - Field names are snake_case; the camelCase names of the wire contract
      are accepted as aliases
"""

from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from policyunion.errors import ConfigError, DocumentInputError, SchemaViolation


# =============================================================================
# Enums
# =============================================================================


class MergeStrategy(str, Enum):
    """
    How multiple contributors to the same field are combined.

    OVERRIDE: last contributor in input order wins
    UNION: collections are concatenated and de-duplicated
    INTERSECTION: the value survives only if every input agrees on it
    PRIORITY: highest explicit priority wins, ties fall back to OVERRIDE order
    """

    OVERRIDE = "override"
    UNION = "union"
    INTERSECTION = "intersection"
    PRIORITY = "priority"

    @classmethod
    def parse(cls, value: "str | MergeStrategy") -> "MergeStrategy":
        """
        Parse a strategy name, tolerating case and separators.

        Accepts "override", "Union", "priority_based", "PriorityBased" and so on.

        Raises:
            ValueError: If the name is not a known strategy
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            msg = f"Strategy must be a string, got {type(value).__name__}"
            raise ValueError(msg)
        name = value.strip().lower().replace("_", "").replace("-", "")
        if name == "prioritybased":
            name = "priority"
        for member in cls:
            if member.value == name:
                return member
        msg = f"Unknown merge strategy: {value!r}"
        raise ValueError(msg)


class ReasonCode(str, Enum):
    """Why a ConflictRecord was emitted."""

    OVERRIDDEN = "overridden"
    PRIORITY_WINNER = "priority_winner"
    PRIORITY_TIE_ORDER = "priority_tie_order"
    INTERSECTION_MISMATCH = "intersection_mismatch"
    INTERSECTION_ABSENT = "intersection_absent"
    INTERSECTION_FALLBACK = "intersection_fallback"
    TYPE_MISMATCH = "type_mismatch"
    UNRESOLVABLE_TIE = "unresolvable_tie"


class Severity(str, Enum):
    """Severity of a validation diagnostic."""

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class ValidationMode(str, Enum):
    """
    How thorough the Validator is.

    LAX only checks for leaked annotation keys, CHECKED runs every check,
    STRICT additionally promotes warnings to errors.
    """

    LAX = "lax"
    CHECKED = "checked"
    STRICT = "strict"


class KeyCase(str, Enum):
    """Case rule applied to keys during normalization."""

    PRESERVE = "preserve"
    LOWER = "lower"


class RequestStage(str, Enum):
    """Stage of one resolution request."""

    PENDING = "pending"
    NORMALIZED = "normalized"
    INHERITANCE_RESOLVED = "inheritance_resolved"
    MERGED = "merged"
    VALIDATED = "validated"
    EFFECTIVE = "effective"
    FAILED = "failed"


class DiffKind(str, Enum):
    """Kind of a path-level difference between two effective policies."""

    ADDED = "added"
    REMOVED = "removed"
    CHANGED = "changed"
    SOURCE_CHANGED = "source_changed"


# =============================================================================
# Input Models
# =============================================================================


def _reject_bool_priority(v: Any) -> Any:
    if isinstance(v, bool):
        msg = "priority must be an integer, not a boolean"
        raise ValueError(msg)
    return v


class DocumentMetadata(BaseModel):
    """
    Metadata attached to one document during normalization.

    Attributes:
        source_id: Identity of the document (also its name for parent lookups)
        parent: Name of the parent document, if any
        priority: Explicit priority for PRIORITY merges (higher wins)
        default_strategy: Strategy used for fields without an annotation
        order: Declaration index, a strict total order across one document set
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    source_id: str = Field(..., min_length=1)
    parent: str | None = None
    priority: int | None = None
    default_strategy: MergeStrategy | None = None
    order: int = Field(default=0, ge=0)

    @field_validator("priority", mode="before")
    @classmethod
    def validate_priority(cls, v: Any) -> Any:
        """Booleans are not priorities."""
        return _reject_bool_priority(v)


class PolicyDocumentInput(BaseModel):
    """
    One raw policy document as produced by the parsing collaborator.

    The tree has already been deserialized; it is a nested mapping of
    string keys to scalars, lists or further mappings.

    Attributes:
        source_id: Identity of the document (alias: sourceId)
        parent: Parent document name (alias: parentRef)
        priority: Optional explicit priority
        default_strategy: Optional document-level strategy (alias: defaultStrategy)
        order: Optional explicit declaration index; list position when omitted
        tree: The raw nested mapping
    """

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    source_id: str = Field(..., alias="sourceId", min_length=1)
    parent: str | None = Field(default=None, alias="parentRef")
    priority: int | None = None
    default_strategy: MergeStrategy | None = Field(default=None, alias="defaultStrategy")
    order: int | None = Field(default=None, ge=0)
    tree: dict[Any, Any] = Field(default_factory=dict)

    @field_validator("priority", mode="before")
    @classmethod
    def validate_priority(cls, v: Any) -> Any:
        """Booleans are not priorities."""
        return _reject_bool_priority(v)

    @field_validator("default_strategy", mode="before")
    @classmethod
    def validate_strategy(cls, v: Any) -> Any:
        """Accept loose spellings such as PriorityBased."""
        if v is None:
            return v
        return MergeStrategy.parse(v)

    @field_validator("tree", mode="before")
    @classmethod
    def validate_tree(cls, v: Any) -> Any:
        """An empty YAML document loads as None."""
        return {} if v is None else v

    def metadata(self, order: int) -> DocumentMetadata:
        """Build normalization metadata, using order when none was declared."""
        return DocumentMetadata(
            source_id=self.source_id,
            parent=self.parent,
            priority=self.priority,
            default_strategy=self.default_strategy,
            order=self.order if self.order is not None else order,
        )


# =============================================================================
# Configuration Models
# =============================================================================


class ResolverConfig(BaseModel):
    """
    Resolver configuration.

    Attributes:
        max_depth: Longest allowed inheritance chain
        default_strategy: Strategy for fields with no annotation or document default
        intersection_fallback: Degrade INTERSECTION disagreements to PRIORITY
        key_case: Case rule for keys during normalization
        parallel_workers: Threads for merging disjoint top-level keys (1 = serial)
        validation_mode: Thoroughness of the Validator
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_depth: int = Field(default=32, ge=1, le=1024)
    default_strategy: MergeStrategy = MergeStrategy.OVERRIDE
    intersection_fallback: bool = False
    key_case: KeyCase = KeyCase.PRESERVE
    parallel_workers: int = Field(default=1, ge=1, le=64)
    validation_mode: ValidationMode = ValidationMode.CHECKED

    @field_validator("default_strategy", mode="before")
    @classmethod
    def validate_strategy(cls, v: Any) -> Any:
        """Accept loose spellings such as PriorityBased."""
        return MergeStrategy.parse(v)


SCHEMA_TYPES = frozenset({"string", "integer", "number", "boolean", "list", "null", "any"})


class SchemaConstraints(BaseModel):
    """
    Constraints supplied by the schema collaborator.

    Path keys are dotted paths; a segment may be "*" to match any one segment.

    Attributes:
        types: Declared type per path pattern
        required: Paths that must be present in the effective policy
        allowed_values: Closed set of acceptable values per path pattern
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    types: dict[str, str] = Field(default_factory=dict)
    required: list[str] = Field(default_factory=list)
    allowed_values: dict[str, list[Any]] = Field(default_factory=dict)

    @field_validator("types")
    @classmethod
    def validate_types(cls, v: dict[str, str]) -> dict[str, str]:
        """Type names must come from the supported set."""
        for path, type_name in v.items():
            if type_name not in SCHEMA_TYPES:
                msg = f"Unknown type {type_name!r} for {path}; expected one of {sorted(SCHEMA_TYPES)}"
                raise ValueError(msg)
        return v


# =============================================================================
# Output Models
# =============================================================================


class ContributorEntry(BaseModel):
    """One (source, value) pair inside a ConflictRecord."""

    model_config = ConfigDict(frozen=True)

    source_id: str
    value: Any = None


class ConflictRecord(BaseModel):
    """
    Audit entry for one contested per-field merge decision.

    Attributes:
        path: Dotted path of the field
        strategy: Strategy that was applied
        contributors: Competing (source, value) pairs in input order
        winner: Source id of the winning contributor, None on failure
        reason_code: Why the record exists
    """

    model_config = ConfigDict(frozen=True)

    path: str
    strategy: MergeStrategy
    contributors: list[ContributorEntry]
    winner: str | None = None
    reason_code: ReasonCode

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire contract dictionary."""
        return {
            "path": self.path,
            "strategy": self.strategy.value,
            "contributors": [
                {"sourceId": c.source_id, "value": c.value} for c in self.contributors
            ],
            "winner": self.winner,
            "reasonCode": self.reason_code.value,
        }


class Diagnostic(BaseModel):
    """
    One finding reported by the Validator.

    Attributes:
        severity: error, warning or info
        path: Dotted path the finding refers to ("" for document-level)
        message: Human-readable description
        code: Short machine-readable code (e.g. "required-missing")
        source_id: Document the finding refers to, when known
    """

    model_config = ConfigDict(frozen=True)

    severity: Severity
    path: str
    message: str
    code: str
    source_id: str | None = None

    @classmethod
    def error(cls, path: str, message: str, code: str, source_id: str | None = None) -> "Diagnostic":
        """Create an ERROR diagnostic."""
        return cls(severity=Severity.ERROR, path=path, message=message, code=code, source_id=source_id)

    @classmethod
    def warning(cls, path: str, message: str, code: str, source_id: str | None = None) -> "Diagnostic":
        """Create a WARNING diagnostic."""
        return cls(severity=Severity.WARNING, path=path, message=message, code=code, source_id=source_id)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire contract dictionary."""
        return {
            "severity": self.severity.value,
            "path": self.path,
            "message": self.message,
            "code": self.code,
            "sourceId": self.source_id,
        }

    def to_error(self) -> SchemaViolation:
        """Escalate this diagnostic into an exception for callers that want one."""
        return SchemaViolation(
            message=self.message,
            path=self.path,
            context={"code": self.code, "severity": self.severity.value},
        )


class DiffEntry(BaseModel):
    """A path-level difference between two effective policies."""

    model_config = ConfigDict(frozen=True)

    path: str
    kind: DiffKind
    before: Any = None
    after: Any = None
    before_source: str | None = None
    after_source: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-ready dictionary."""
        return {
            "path": self.path,
            "kind": self.kind.value,
            "before": self.before,
            "after": self.after,
            "beforeSource": self.before_source,
            "afterSource": self.after_source,
        }


# =============================================================================
# YAML Loading Helpers
# =============================================================================


def _read_yaml(path: Path | str) -> Any:
    path = Path(path)
    with path.open() as f:
        return yaml.safe_load(f)


def _documents_from_data(data: Any, origin: str) -> list[PolicyDocumentInput]:
    if isinstance(data, dict) and "documents" in data:
        data = data["documents"]
    if data is None:
        return []
    if not isinstance(data, list):
        raise DocumentInputError(reason=f"{origin}: expected a list of documents or a 'documents' key")

    documents = []
    for index, entry in enumerate(data):
        try:
            documents.append(PolicyDocumentInput.model_validate(entry))
        except ValidationError as e:
            label = ""
            if isinstance(entry, dict):
                label = entry.get("source_id") or entry.get("sourceId") or ""
            raise DocumentInputError(
                source_id=str(label),
                reason=f"{origin}: entry {index}: {e}",
            ) from e
    return documents


def load_documents(path: Path | str) -> list[PolicyDocumentInput]:
    """
    Load a document set from a YAML file.

    The file holds either a list of documents or a mapping with a
    "documents" key. List position is the declaration order.

    Raises:
        FileNotFoundError: If the file doesn't exist
        DocumentInputError: If the YAML doesn't match the input contract
    """
    try:
        data = _read_yaml(path)
    except yaml.YAMLError as e:
        raise DocumentInputError(reason=f"{path}: {e}") from e
    return _documents_from_data(data, str(path))


def load_documents_from_string(content: str) -> list[PolicyDocumentInput]:
    """Load a document set from a YAML string."""
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise DocumentInputError(reason=str(e)) from e
    return _documents_from_data(data, "<string>")


def load_document_dir(directory: Path | str) -> list[PolicyDocumentInput]:
    """
    Load one document per *.yaml / *.yml file in a directory.

    Files are read in filename order, which becomes the declaration order.
    A file's source_id defaults to its stem.
    """
    directory = Path(directory)
    files = sorted(
        p for p in directory.iterdir() if p.is_file() and p.suffix in (".yaml", ".yml")
    )
    documents = []
    for file in files:
        try:
            data = _read_yaml(file)
        except yaml.YAMLError as e:
            raise DocumentInputError(source_id=file.stem, reason=f"{file}: {e}") from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise DocumentInputError(source_id=file.stem, reason=f"{file}: expected a mapping")
        if "source_id" not in data and "sourceId" not in data:
            data = {"source_id": file.stem, **data}
        try:
            documents.append(PolicyDocumentInput.model_validate(data))
        except ValidationError as e:
            raise DocumentInputError(source_id=file.stem, reason=f"{file}: {e}") from e
    return documents


def load_config(path: Path | str) -> ResolverConfig:
    """Load a ResolverConfig from a YAML file."""
    try:
        data = _read_yaml(path)
        return ResolverConfig.model_validate(data or {})
    except (yaml.YAMLError, ValidationError) as e:
        raise ConfigError(message=f"Invalid resolver config {path}: {e}", config_path=str(path)) from e


def load_config_from_string(content: str) -> ResolverConfig:
    """Load a ResolverConfig from a YAML string."""
    try:
        return ResolverConfig.model_validate(yaml.safe_load(content) or {})
    except (yaml.YAMLError, ValidationError) as e:
        raise ConfigError(message=f"Invalid resolver config: {e}", config_path="<string>") from e


def load_constraints(path: Path | str) -> SchemaConstraints:
    """Load SchemaConstraints from a YAML file."""
    try:
        data = _read_yaml(path)
        return SchemaConstraints.model_validate(data or {})
    except (yaml.YAMLError, ValidationError) as e:
        raise ConfigError(message=f"Invalid schema constraints {path}: {e}", config_path=str(path)) from e


def load_constraints_from_string(content: str) -> SchemaConstraints:
    """Load SchemaConstraints from a YAML string."""
    try:
        return SchemaConstraints.model_validate(yaml.safe_load(content) or {})
    except (yaml.YAMLError, ValidationError) as e:
        raise ConfigError(message=f"Invalid schema constraints: {e}", config_path="<string>") from e
