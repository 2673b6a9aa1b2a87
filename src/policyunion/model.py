"""
In-memory policy model.

These types live only for the duration of one resolution call, except for
EffectivePolicy, which is the one value handed back to the caller.

- PolicyNode: canonical tree node produced by the Normalizer
- PolicyDocument: a named root node plus its declared metadata
- ResolutionChain: ancestor-to-target sequence of documents
- Contribution: one document's value at one path, as seen by a merge
- ResolvedLeaf/EffectivePolicy: merged output with per-leaf provenance
"""

import copy
import json
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from policyunion.schema import MergeStrategy


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=repr)
    return str(obj)


def deep_equal(a: Any, b: Any) -> bool:
    """
    Structural equality that does not conflate booleans with numbers.

    Plain == treats True == 1 and [1] == [True]; policy values must not.
    """
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    if isinstance(a, Mapping) and isinstance(b, Mapping):
        if set(a) != set(b):
            return False
        return all(deep_equal(a[k], b[k]) for k in a)
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        return len(a) == len(b) and all(deep_equal(x, y) for x, y in zip(a, b))
    if isinstance(a, (set, frozenset)) and isinstance(b, (set, frozenset)):
        return a == b
    if type(a) is not type(b) and not (isinstance(a, (int, float)) and isinstance(b, (int, float))):
        return False
    return a == b


def type_name(value: Any) -> str:
    """Short name of a value's kind, used in messages and diagnostics."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple, set, frozenset)):
        return "list"
    if isinstance(value, Mapping):
        return "mapping"
    return type(value).__name__


# =============================================================================
# Tree
# =============================================================================


@dataclass(frozen=True)
class PolicyNode:
    """
    Canonical tree node.

    A node is either a leaf (children is None, value holds a scalar or list)
    or a mapping (children holds the ordered child nodes, value is None).

    Attributes:
        key: Path segment ("" for the root)
        path: Dotted path from the root ("" for the root)
        source_id: Document that contributed the node
        value: Leaf value
        children: Ordered child nodes for mappings
        priority: Explicit priority (leaves inherit the document priority)
        strategy: Field-level strategy annotation, if one was written here
    """

    key: str
    path: str
    source_id: str
    value: Any = None
    children: Mapping[str, "PolicyNode"] | None = None
    priority: int | None = None
    strategy: MergeStrategy | None = None

    @property
    def is_leaf(self) -> bool:
        return self.children is None

    def get(self, path: str) -> "PolicyNode | None":
        """Return the descendant at a dotted path, or None."""
        if not path:
            return self
        node: PolicyNode | None = self
        for segment in path.split("."):
            if node is None or node.children is None:
                return None
            node = node.children.get(segment)
        return node

    def iter_leaves(self) -> Iterator["PolicyNode"]:
        """Yield leaves depth-first in declaration order."""
        if self.children is None:
            yield self
            return
        for child in self.children.values():
            yield from child.iter_leaves()

    def to_plain(self) -> Any:
        """Rebuild a plain nested value without metadata."""
        if self.children is None:
            return copy.deepcopy(self.value)
        return {key: child.to_plain() for key, child in self.children.items()}


@dataclass(frozen=True)
class PolicyDocument:
    """
    A normalized document.

    Attributes:
        name: Source id, also used for parent lookups
        root: Root mapping node
        parent: Name of the parent document
        priority: Document-level priority
        default_strategy: Strategy for fields without annotations
        order: Explicit declaration index
    """

    name: str
    root: PolicyNode
    parent: str | None = None
    priority: int | None = None
    default_strategy: MergeStrategy | None = None
    order: int = 0

    @property
    def source_id(self) -> str:
        return self.name


@dataclass(frozen=True)
class ResolutionChain:
    """Documents from the most general ancestor to the target (target last)."""

    target: str
    documents: tuple[PolicyDocument, ...]

    @property
    def names(self) -> list[str]:
        return [doc.name for doc in self.documents]

    def __len__(self) -> int:
        return len(self.documents)

    def __iter__(self) -> Iterator[PolicyDocument]:
        return iter(self.documents)


@dataclass(frozen=True)
class Contribution:
    """
    One input's value at one path.

    Attributes:
        source_id: Contributing document
        value: Leaf value (or plain mapping when shapes disagree)
        priority: Explicit priority, None when the document set none
        order: Position in the merge input sequence
        is_mapping: Whether the input holds a mapping at this path
    """

    source_id: str
    value: Any
    priority: int | None
    order: int
    is_mapping: bool = False

    @property
    def effective_priority(self) -> int:
        return self.priority if self.priority is not None else 0


# =============================================================================
# Output
# =============================================================================


@dataclass(frozen=True)
class ResolvedLeaf:
    """
    Merged value at one path with its provenance.

    Attributes:
        value: The merged value
        source_id: Document credited with the value
        sources: Every contributing document in input order
        strategy: Strategy that produced the value
    """

    value: Any
    source_id: str
    sources: tuple[str, ...] = ()
    strategy: MergeStrategy = MergeStrategy.OVERRIDE

    def to_dict(self) -> dict[str, Any]:
        return {"value": copy.deepcopy(self.value), "contributingSourceId": self.source_id}


@dataclass(frozen=True)
class EffectivePolicy:
    """
    The final merged tree, immutable once produced.

    Leaves are kept flat by dotted path in traversal order; to_tree() renders
    the nested output contract.

    Attributes:
        leaves: Read-only mapping of dotted path to ResolvedLeaf
        target: Target document name (None for sibling merges)
        chain: Names of the merged documents in input order
    """

    leaves: Mapping[str, ResolvedLeaf] = field(default_factory=lambda: MappingProxyType({}))
    target: str | None = None
    chain: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.leaves, MappingProxyType):
            object.__setattr__(self, "leaves", MappingProxyType(dict(self.leaves)))

    def __contains__(self, path: object) -> bool:
        return path in self.leaves

    def __len__(self) -> int:
        return len(self.leaves)

    def get(self, path: str) -> ResolvedLeaf | None:
        return self.leaves.get(path)

    def value(self, path: str, default: Any = None) -> Any:
        """Return the merged value at path, or default."""
        leaf = self.leaves.get(path)
        return copy.deepcopy(leaf.value) if leaf is not None else default

    def paths(self) -> list[str]:
        return list(self.leaves)

    def to_tree(self) -> dict[str, Any]:
        """Nested mapping whose leaves are {value, contributingSourceId}."""
        return _nest({path: leaf.to_dict() for path, leaf in self.leaves.items()})

    def to_plain(self) -> dict[str, Any]:
        """Nested mapping of bare values."""
        return _nest({path: copy.deepcopy(leaf.value) for path, leaf in self.leaves.items()})

    def canonical_json(self) -> str:
        """Byte-stable JSON rendering used for determinism checks and hashing."""
        return json.dumps(self.to_tree(), sort_keys=True, separators=(",", ":"), default=_json_default)

    @classmethod
    def from_tree(cls, tree: Mapping[str, Any], target: str | None = None) -> "EffectivePolicy":
        """
        Rebuild an EffectivePolicy from a to_tree() rendering.

        Used when comparing policies that were written to disk earlier.
        """
        leaves: dict[str, ResolvedLeaf] = {}

        def walk(node: Mapping[str, Any], prefix: str) -> None:
            for key, child in node.items():
                path = f"{prefix}.{key}" if prefix else str(key)
                if isinstance(child, Mapping) and "contributingSourceId" in child and "value" in child:
                    source = child["contributingSourceId"]
                    leaves[path] = ResolvedLeaf(value=child["value"], source_id=source, sources=(source,))
                elif isinstance(child, Mapping):
                    walk(child, path)
                else:
                    raise ValueError(f"Not an effective policy tree: bare value at {path}")

        walk(tree, "")
        return cls(leaves=leaves, target=target)


def _nest(flat: Mapping[str, Any]) -> dict[str, Any]:
    tree: dict[str, Any] = {}
    for path, value in flat.items():
        segments = path.split(".")
        node = tree
        for segment in segments[:-1]:
            node = node.setdefault(segment, {})
        node[segments[-1]] = value
    return tree
