"""
Merge Engine for policyunion.

Folds an ordered sequence of documents (an inheritance chain, root-first, or
a sibling set in declaration order) into one EffectivePolicy.

How it works:
    1. Walk the union of all paths, visiting child keys in first-seen order
    2. At each leaf path pick the strategy once:
           caller override > field annotation > document default > config default
       Annotations are inherited downward unless a descendant sets its own.
    3. Gather one Contribution per input holding the path, in input order
    4. Call the strategy's combining function; collect records and errors
    5. After the walk, fail if any field aborted, else freeze the leaves

Per-field errors do not stop the walk. They are collected and raised
together as one MergeFailedError carrying every ConflictRecord gathered.

Disjoint top-level keys may be merged on worker threads. Each key's
subtree is still walked in input order, and results are stitched back
together in traversal order, so the output does not depend on scheduling.
"""

import logging
from collections.abc import Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import NamedTuple

from policyunion.errors import ConfigError, DocumentInputError, MergeError, MergeFailedError
from policyunion.merge.conflicts import ConflictResolver
from policyunion.merge.strategies import MergeContext, combine
from policyunion.model import (
    Contribution,
    EffectivePolicy,
    PolicyDocument,
    PolicyNode,
    ResolutionChain,
    ResolvedLeaf,
)
from policyunion.normalize import canonicalize_path
from policyunion.schema import ConflictRecord, MergeStrategy, ResolverConfig

log = logging.getLogger(__name__)


class MergeResult(NamedTuple):
    """Output of one merge: the effective policy and its audit trail."""

    effective: EffectivePolicy
    conflicts: list[ConflictRecord]


@dataclass(frozen=True)
class _Entry:
    """One input's node at the path being walked."""

    document: PolicyDocument
    node: PolicyNode
    position: int
    annotation: MergeStrategy | None

    def child(self, key: str) -> "_Entry":
        node = self.node.children[key]
        return _Entry(
            document=self.document,
            node=node,
            position=self.position,
            annotation=node.strategy if node.strategy is not None else self.annotation,
        )


@dataclass
class _Accumulator:
    leaves: dict[str, ResolvedLeaf] = field(default_factory=dict)
    conflicts: list[ConflictRecord] = field(default_factory=list)
    errors: list[MergeError] = field(default_factory=list)

    def extend(self, other: "_Accumulator") -> None:
        self.leaves.update(other.leaves)
        self.conflicts.extend(other.conflicts)
        self.errors.extend(other.errors)


def _join(prefix: str, key: str) -> str:
    return f"{prefix}.{key}" if prefix else key


def _child_keys(entries: Iterable[_Entry]) -> list[str]:
    keys: dict[str, None] = {}
    for entry in entries:
        if entry.node.children is not None:
            for key in entry.node.children:
                keys.setdefault(key)
    return list(keys)


def _children(entries: Sequence[_Entry], key: str) -> list[_Entry]:
    return [
        entry.child(key)
        for entry in entries
        if entry.node.children is not None and key in entry.node.children
    ]


class MergeEngine:
    """
    Deterministic merge of ordered policy documents.

    Usage:
        engine = MergeEngine(config)
        effective, conflicts = engine.merge_chain(chain)

    Attributes:
        config: Resolver configuration (default strategy, fallback, workers)
        resolver: Conflict resolver consulted for contested fields
    """

    def __init__(self, config: ResolverConfig | None = None, resolver: ConflictResolver | None = None) -> None:
        self.config = config or ResolverConfig()
        self.resolver = resolver or ConflictResolver(fallback_to_priority=self.config.intersection_fallback)

    # =========================================================================
    # Entry points
    # =========================================================================

    def merge_chain(
        self,
        chain: ResolutionChain,
        overrides: Mapping[str, MergeStrategy | str] | None = None,
    ) -> MergeResult:
        """Merge an inheritance chain, root-first, target last."""
        return self.merge(chain.documents, overrides, target=chain.target)

    def merge_siblings(
        self,
        documents: Iterable[PolicyDocument],
        overrides: Mapping[str, MergeStrategy | str] | None = None,
    ) -> MergeResult:
        """
        Merge documents at equal scope in explicit declaration order.

        Raises:
            DocumentInputError: Two documents share a declaration index
        """
        ordered = sorted(documents, key=lambda d: d.order)
        for previous, current in zip(ordered, ordered[1:]):
            if previous.order == current.order:
                raise DocumentInputError(
                    source_id=current.name,
                    reason=f"declaration order {current.order} shared with {previous.name!r}",
                )
        return self.merge(ordered, overrides)

    def merge(
        self,
        inputs: Iterable[PolicyDocument],
        overrides: Mapping[str, MergeStrategy | str] | None = None,
        target: str | None = None,
    ) -> MergeResult:
        """
        Merge documents in the given order.

        Args:
            inputs: Documents, earliest first
            overrides: Strategy per dotted path (applies to the path and below)
            target: Target name recorded on the EffectivePolicy

        Returns:
            MergeResult(effective, conflicts)

        Raises:
            MergeFailedError: At least one field aborted; carries every
                per-field error and all ConflictRecords gathered
        """
        documents = list(inputs)
        strategy_overrides = self._canonical_overrides(overrides)
        entries = [
            _Entry(document=doc, node=doc.root, position=index, annotation=doc.root.strategy)
            for index, doc in enumerate(documents)
        ]
        ctx = MergeContext(resolver=self.resolver, input_count=len(documents))

        acc = self._merge_root(entries, strategy_overrides, ctx)
        names = [doc.name for doc in documents]

        if acc.errors:
            log.warning(
                "Merge of %s failed: %d field(s) aborted, %d conflict(s) recorded",
                " -> ".join(names),
                len(acc.errors),
                len(acc.conflicts),
            )
            raise MergeFailedError(errors=acc.errors, conflicts=acc.conflicts)

        effective = EffectivePolicy(leaves=acc.leaves, target=target, chain=tuple(names))
        log.info(
            "Merged %s: %d leaves, %d conflict(s)",
            " -> ".join(names) or "<empty>",
            len(effective),
            len(acc.conflicts),
        )
        return MergeResult(effective=effective, conflicts=acc.conflicts)

    # =========================================================================
    # Traversal
    # =========================================================================

    def _merge_root(
        self,
        entries: list[_Entry],
        overrides: dict[str, MergeStrategy],
        ctx: MergeContext,
    ) -> _Accumulator:
        keys = _child_keys(entries)
        workers = self.config.parallel_workers

        def merge_key(key: str) -> _Accumulator:
            partial = _Accumulator()
            self._walk(key, _children(entries, key), overrides, ctx, partial)
            return partial

        acc = _Accumulator()
        if workers > 1 and len(keys) > 1:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                # map() yields in submission order, which keeps traversal order
                for partial in pool.map(merge_key, keys):
                    acc.extend(partial)
        else:
            for key in keys:
                acc.extend(merge_key(key))
        return acc

    def _walk(
        self,
        path: str,
        entries: list[_Entry],
        overrides: dict[str, MergeStrategy],
        ctx: MergeContext,
        acc: _Accumulator,
    ) -> None:
        leaf_entries = [e for e in entries if e.node.is_leaf]
        if not leaf_entries:
            for key in _child_keys(entries):
                self._walk(_join(path, key), _children(entries, key), overrides, ctx, acc)
            return

        strategy = self._strategy_for(path, entries, overrides)
        contributions = [
            Contribution(
                source_id=e.document.name,
                value=e.node.value if e.node.is_leaf else e.node.to_plain(),
                priority=e.node.priority,
                order=e.position,
                is_mapping=not e.node.is_leaf,
            )
            for e in entries
        ]

        try:
            outcome = combine(strategy, path, contributions, ctx)
        except MergeError as e:
            if e.record is not None:
                acc.conflicts.append(e.record)
            acc.errors.append(e)
            log.warning("Field %s aborted: %s", path, e.message)
            return

        if outcome.record is not None:
            acc.conflicts.append(outcome.record)

        if outcome.winner is not None and outcome.winner.is_mapping:
            # A mapping beat a leaf: keep merging the mappings that survive.
            if strategy is MergeStrategy.OVERRIDE:
                last_leaf = max(e.position for e in leaf_entries)
                survivors = [e for e in entries if not e.node.is_leaf and e.position > last_leaf]
            else:
                survivors = [e for e in entries if not e.node.is_leaf]
            for key in _child_keys(survivors):
                self._walk(_join(path, key), _children(survivors, key), overrides, ctx, acc)
            return

        if outcome.leaf is not None:
            acc.leaves[path] = outcome.leaf

    # =========================================================================
    # Strategy selection
    # =========================================================================

    def _strategy_for(
        self,
        path: str,
        entries: Sequence[_Entry],
        overrides: dict[str, MergeStrategy],
    ) -> MergeStrategy:
        probe = path
        while probe:
            if probe in overrides:
                return overrides[probe]
            probe = probe.rpartition(".")[0]

        for entry in reversed(entries):
            if entry.annotation is not None:
                return entry.annotation
        for entry in reversed(entries):
            if entry.document.default_strategy is not None:
                return entry.document.default_strategy
        return self.config.default_strategy

    def _canonical_overrides(
        self,
        overrides: Mapping[str, MergeStrategy | str] | None,
    ) -> dict[str, MergeStrategy]:
        if not overrides:
            return {}
        canonical = {}
        for raw_path, raw_strategy in overrides.items():
            try:
                strategy = MergeStrategy.parse(raw_strategy)
            except ValueError as e:
                raise ConfigError(message=f"Invalid strategy override for {raw_path!r}: {e}") from e
            canonical[canonicalize_path(raw_path, self.config.key_case)] = strategy
        return canonical
