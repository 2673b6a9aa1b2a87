"""
Normalizer for policyunion.

Turns an already-deserialized document tree plus its metadata into a
canonical PolicyNode tree:

    - Keys are stripped, "/" and "::" separators become ".", and dotted keys
      expand into nested segments ("a.b": 1 is the same as {"a": {"b": 1}})
    - Keys are case-folded when the config asks for it
    - Two raw keys landing on the same sibling are a DuplicateKeyError
    - Reserved keys carry annotations and never become children:
          __strategy__  strategy for this mapping/leaf and everything below
          __priority__  priority for this mapping/leaf and everything below
          __value__     marks a mapping as an annotated leaf
"""

import copy
import logging
import re
from collections.abc import Iterable, Mapping
from types import MappingProxyType
from typing import Any

from pydantic import ValidationError

from policyunion.errors import DocumentInputError, DuplicateKeyError, InvalidPathError
from policyunion.model import PolicyDocument, PolicyNode
from policyunion.schema import (
    DocumentMetadata,
    KeyCase,
    MergeStrategy,
    PolicyDocumentInput,
    ResolverConfig,
)

log = logging.getLogger(__name__)

STRATEGY_KEY = "__strategy__"
PRIORITY_KEY = "__priority__"
VALUE_KEY = "__value__"
RESERVED_KEYS = frozenset({STRATEGY_KEY, PRIORITY_KEY, VALUE_KEY})

_SEGMENT = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_-]*$")
_SEPARATORS = ("::", "/")


def split_key(
    raw_key: Any,
    *,
    key_case: KeyCase = KeyCase.PRESERVE,
    source_id: str = "",
    path: str = "",
) -> list[str]:
    """
    Canonicalize one raw key into its path segments.

    Raises:
        InvalidPathError: If the key is not a string or has a malformed segment
    """
    if not isinstance(raw_key, str):
        raise InvalidPathError(
            source_id=source_id,
            path=path,
            key=repr(raw_key),
            reason=f"keys must be strings, got {type(raw_key).__name__}",
        )
    key = raw_key.strip()
    for separator in _SEPARATORS:
        key = key.replace(separator, ".")
    if key_case == KeyCase.LOWER:
        key = key.lower()

    segments = key.split(".")
    for segment in segments:
        if not segment:
            raise InvalidPathError(source_id=source_id, path=path, key=raw_key, reason="empty path segment")
        if not _SEGMENT.match(segment):
            raise InvalidPathError(source_id=source_id, path=path, key=raw_key, reason="illegal characters")
    return segments


def canonicalize_path(raw_path: str, key_case: KeyCase = KeyCase.PRESERVE) -> str:
    """Canonical dotted form of a caller-supplied path (overrides, queries)."""
    return ".".join(split_key(raw_path, key_case=key_case))


def _join(prefix: str, segment: str) -> str:
    return f"{prefix}.{segment}" if prefix else segment


# =============================================================================
# Builder
# =============================================================================


class _Leaf:
    __slots__ = ("value", "strategy", "priority", "origin")

    def __init__(self, value: Any, strategy: MergeStrategy | None, priority: int | None, origin: str) -> None:
        self.value = value
        self.strategy = strategy
        self.priority = priority
        self.origin = origin


class _Branch:
    """Mutable mapping under construction; frozen into a PolicyNode at the end."""

    __slots__ = ("children", "origins", "explicit", "strategy", "priority")

    def __init__(self) -> None:
        self.children: dict[str, _Branch | _Leaf] = {}
        self.origins: dict[str, str] = {}
        # Segments written by a key of their own, as opposed to created as the
        # prefix of a dotted key.
        self.explicit: set[str] = set()
        self.strategy: MergeStrategy | None = None
        self.priority: int | None = None


class _Normalizer:
    def __init__(self, metadata: DocumentMetadata, key_case: KeyCase) -> None:
        self.source_id = metadata.source_id
        self.document_priority = metadata.priority
        self.key_case = key_case

    # -- annotations ---------------------------------------------------------

    def _strategy(self, raw: Any, path: str) -> MergeStrategy:
        try:
            return MergeStrategy.parse(raw)
        except ValueError as e:
            raise InvalidPathError(
                source_id=self.source_id,
                path=path,
                key=STRATEGY_KEY,
                reason=f"unknown strategy {raw!r}",
            ) from e

    def _priority(self, raw: Any, path: str) -> int:
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise InvalidPathError(
                source_id=self.source_id,
                path=path,
                key=PRIORITY_KEY,
                reason="priority must be an integer",
            )
        return raw

    def _is_wrapper(self, value: Any) -> bool:
        return isinstance(value, Mapping) and VALUE_KEY in value

    def _unwrap(self, raw: Mapping[Any, Any], path: str) -> _Leaf:
        extra = [k for k in raw if k not in RESERVED_KEYS]
        if extra:
            raise InvalidPathError(
                source_id=self.source_id,
                path=path,
                key=str(extra[0]),
                reason=f"an annotated leaf ({VALUE_KEY}) cannot have children",
            )
        value = raw[VALUE_KEY]
        if isinstance(value, Mapping):
            raise InvalidPathError(
                source_id=self.source_id,
                path=path,
                key=VALUE_KEY,
                reason=f"{VALUE_KEY} must be a scalar or a list",
            )
        strategy = self._strategy(raw[STRATEGY_KEY], path) if STRATEGY_KEY in raw else None
        priority = self._priority(raw[PRIORITY_KEY], path) if PRIORITY_KEY in raw else None
        return _Leaf(copy.deepcopy(value), strategy, priority, origin="")

    # -- tree ----------------------------------------------------------------

    def fill(self, branch: _Branch, raw: Mapping[Any, Any], path: str) -> None:
        if STRATEGY_KEY in raw:
            self._annotate(branch, "strategy", self._strategy(raw[STRATEGY_KEY], path), path)
        if PRIORITY_KEY in raw:
            self._annotate(branch, "priority", self._priority(raw[PRIORITY_KEY], path), path)

        for raw_key, raw_value in raw.items():
            if raw_key in RESERVED_KEYS:
                continue
            segments = split_key(raw_key, key_case=self.key_case, source_id=self.source_id, path=path)
            self._check_reserved(segments, raw_key, path)
            parent, parent_path = self._descend(branch, segments[:-1], raw_key, path)
            if segments[-1] == STRATEGY_KEY:
                self._annotate(parent, "strategy", self._strategy(raw_value, parent_path), parent_path)
            elif segments[-1] == PRIORITY_KEY:
                self._annotate(parent, "priority", self._priority(raw_value, parent_path), parent_path)
            else:
                self._place(parent, segments[-1], raw_key, raw_value, parent_path)

    def _check_reserved(self, segments: list[str], raw_key: str, path: str) -> None:
        # "a.__strategy__" annotates a; anything else reserved is not a path
        for index, segment in enumerate(segments):
            if segment not in RESERVED_KEYS:
                continue
            if index == len(segments) - 1 and segment != VALUE_KEY:
                continue
            raise InvalidPathError(
                source_id=self.source_id,
                path=path,
                key=raw_key,
                reason="reserved key in dotted path",
            )

    def _annotate(self, branch: _Branch, attr: str, value: Any, path: str) -> None:
        current = getattr(branch, attr)
        if current is not None and current != value:
            raise DuplicateKeyError(
                source_id=self.source_id,
                path=_join(path, f"__{attr}__"),
                keys=[f"__{attr}__", f"__{attr}__"],
            )
        setattr(branch, attr, value)

    def _descend(self, branch: _Branch, segments: Iterable[str], raw_key: str, path: str) -> tuple[_Branch, str]:
        for segment in segments:
            child_path = _join(path, segment)
            existing = branch.children.get(segment)
            if isinstance(existing, _Leaf):
                raise DuplicateKeyError(
                    source_id=self.source_id,
                    path=child_path,
                    keys=[branch.origins[segment], raw_key],
                )
            if existing is None:
                existing = _Branch()
                branch.children[segment] = existing
                branch.origins[segment] = raw_key
            branch, path = existing, child_path
        return branch, path

    def _place(self, branch: _Branch, segment: str, raw_key: str, raw_value: Any, path: str) -> None:
        child_path = _join(path, segment)
        existing = branch.children.get(segment)
        is_mapping = isinstance(raw_value, Mapping) and not self._is_wrapper(raw_value)

        collides = existing is not None and (
            segment in branch.explicit or isinstance(existing, _Leaf) or not is_mapping
        )
        if collides:
            raise DuplicateKeyError(
                source_id=self.source_id,
                path=child_path,
                keys=[branch.origins[segment], raw_key],
            )

        branch.explicit.add(segment)
        branch.origins.setdefault(segment, raw_key)
        if is_mapping:
            child = existing if isinstance(existing, _Branch) else _Branch()
            branch.children[segment] = child
            self.fill(child, raw_value, child_path)
        elif self._is_wrapper(raw_value):
            leaf = self._unwrap(raw_value, child_path)
            leaf.origin = raw_key
            branch.children[segment] = leaf
        else:
            branch.children[segment] = _Leaf(copy.deepcopy(raw_value), None, None, origin=raw_key)

    def freeze(self, item: "_Branch | _Leaf", key: str, path: str, priority: int | None) -> PolicyNode:
        if isinstance(item, _Leaf):
            return PolicyNode(
                key=key,
                path=path,
                source_id=self.source_id,
                value=item.value,
                priority=item.priority if item.priority is not None else priority,
                strategy=item.strategy,
            )
        inherited = item.priority if item.priority is not None else priority
        children = {
            segment: self.freeze(child, segment, _join(path, segment), inherited)
            for segment, child in item.children.items()
        }
        return PolicyNode(
            key=key,
            path=path,
            source_id=self.source_id,
            children=MappingProxyType(children),
            priority=inherited,
            strategy=item.strategy,
        )


# =============================================================================
# Public API
# =============================================================================


def normalize(
    raw_tree: Mapping[Any, Any] | None,
    metadata: DocumentMetadata,
    *,
    key_case: KeyCase = KeyCase.PRESERVE,
) -> PolicyNode:
    """
    Normalize one raw tree into a canonical PolicyNode.

    Args:
        raw_tree: Nested mapping produced by the parsing collaborator
        metadata: Source id, parent, priority and default strategy
        key_case: Case rule for keys

    Returns:
        Root PolicyNode (key and path are "")

    Raises:
        InvalidPathError: A key is malformed or an annotation is invalid
        DuplicateKeyError: Two keys collapse onto the same sibling
        DocumentInputError: The tree is not a mapping
    """
    if raw_tree is None:
        raw_tree = {}
    if not isinstance(raw_tree, Mapping):
        raise DocumentInputError(
            source_id=metadata.source_id,
            reason=f"tree must be a mapping, got {type(raw_tree).__name__}",
        )
    if VALUE_KEY in raw_tree:
        raise InvalidPathError(
            source_id=metadata.source_id,
            key=VALUE_KEY,
            reason="the document root cannot be an annotated leaf",
        )

    normalizer = _Normalizer(metadata, key_case)
    root = _Branch()
    normalizer.fill(root, raw_tree, "")
    node = normalizer.freeze(root, "", "", metadata.priority)
    log.debug("Normalized %s: %d leaves", metadata.source_id, sum(1 for _ in node.iter_leaves()))
    return node


def normalize_document(
    document: PolicyDocumentInput,
    order: int,
    config: ResolverConfig | None = None,
) -> PolicyDocument:
    """Normalize one input-contract entry into a PolicyDocument."""
    config = config or ResolverConfig()
    metadata = document.metadata(order)
    root = normalize(document.tree, metadata, key_case=config.key_case)
    return PolicyDocument(
        name=metadata.source_id,
        root=root,
        parent=metadata.parent,
        priority=metadata.priority,
        default_strategy=metadata.default_strategy,
        order=metadata.order,
    )


def coerce_inputs(documents: Iterable[PolicyDocumentInput | Mapping[str, Any]]) -> list[PolicyDocumentInput]:
    """Accept input-contract models or plain dicts."""
    inputs = []
    for index, entry in enumerate(documents):
        if isinstance(entry, PolicyDocumentInput):
            inputs.append(entry)
            continue
        try:
            inputs.append(PolicyDocumentInput.model_validate(entry))
        except ValidationError as e:
            raise DocumentInputError(reason=f"entry {index}: {e}") from e
    return inputs


def normalize_documents(
    documents: Iterable[PolicyDocumentInput | Mapping[str, Any]],
    config: ResolverConfig | None = None,
) -> dict[str, PolicyDocument]:
    """
    Normalize a whole document set.

    List position is the declaration order unless an entry declares its own.
    The result is keyed by name and ordered by declaration order.

    Raises:
        DocumentInputError: Duplicate source ids or duplicate declaration order
        InvalidPathError, DuplicateKeyError: From the first failing document
    """
    config = config or ResolverConfig()
    by_name: dict[str, PolicyDocument] = {}
    by_order: dict[int, str] = {}
    for index, entry in enumerate(coerce_inputs(documents)):
        if entry.source_id in by_name:
            raise DocumentInputError(source_id=entry.source_id, reason="duplicate source id")
        document = normalize_document(entry, index, config)
        if document.order in by_order:
            raise DocumentInputError(
                source_id=document.name,
                reason=f"declaration order {document.order} already used by {by_order[document.order]!r}",
            )
        by_order[document.order] = document.name
        by_name[document.name] = document
    return dict(sorted(by_name.items(), key=lambda item: item[1].order))
