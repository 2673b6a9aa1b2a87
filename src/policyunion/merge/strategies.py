"""
Merge strategies for policyunion.

One pure combining function per MergeStrategy variant. The engine picks the
strategy for a field once, then calls the matching function with every
contribution to that field in input order.

Each function returns a LeafOutcome: the merged leaf (None when the field is
dropped), the winning contribution when one was chosen, and the
ConflictRecord when the decision was contested.
"""

import copy
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from policyunion.merge.conflicts import ConflictResolver
from policyunion.model import Contribution, ResolvedLeaf, deep_equal
from policyunion.schema import ConflictRecord, MergeStrategy, ReasonCode


@dataclass(frozen=True)
class MergeContext:
    """
    What a strategy may know beyond its contributions.

    Attributes:
        resolver: Conflict resolver for contested fields
        input_count: Number of documents in the merge
    """

    resolver: ConflictResolver
    input_count: int


@dataclass(frozen=True)
class LeafOutcome:
    leaf: ResolvedLeaf | None
    winner: Contribution | None = None
    record: ConflictRecord | None = None


StrategyFn = Callable[[str, Sequence[Contribution], MergeContext], LeafOutcome]

COLLECTION_TYPES = (list, tuple, set, frozenset)


def agree(contributions: Sequence[Contribution]) -> bool:
    """Whether every contribution holds the same value."""
    first = contributions[0].value
    return all(deep_equal(first, c.value) for c in contributions[1:])


def _sources(contributions: Sequence[Contribution]) -> tuple[str, ...]:
    return tuple(c.source_id for c in contributions)


def _items(value: Any) -> list[Any]:
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=repr)
    return list(value)


def _single(winner: Contribution, strategy: MergeStrategy, record: ConflictRecord | None = None) -> LeafOutcome:
    leaf = ResolvedLeaf(
        value=copy.deepcopy(winner.value),
        source_id=winner.source_id,
        sources=(winner.source_id,),
        strategy=strategy,
    )
    return LeafOutcome(leaf=leaf, winner=winner, record=record)


# =============================================================================
# Strategies
# =============================================================================


def combine_override(path: str, contributions: Sequence[Contribution], ctx: MergeContext) -> LeafOutcome:
    """Last contributor wins; differing earlier values are recorded as overridden."""
    if agree(contributions):
        return _single(contributions[-1], MergeStrategy.OVERRIDE)
    winner, record = ctx.resolver.resolve(path, contributions, MergeStrategy.OVERRIDE)
    return _single(winner, MergeStrategy.OVERRIDE, record)


def combine_union(path: str, contributions: Sequence[Contribution], ctx: MergeContext) -> LeafOutcome:
    """
    Concatenate collections in input order, dropping structural duplicates.

    A lone contributor passes through unchanged. Scalars that all agree pass
    through too; anything else mixing scalars and collections is a type
    mismatch.
    """
    if any(c.is_mapping for c in contributions):
        raise ctx.resolver.mismatch(path, contributions, MergeStrategy.UNION)

    collections = [c for c in contributions if isinstance(c.value, COLLECTION_TYPES)]
    if len(contributions) == 1 and not collections:
        return _single(contributions[0], MergeStrategy.UNION)
    if not collections:
        if agree(contributions):
            return _single(contributions[-1], MergeStrategy.UNION)
        raise ctx.resolver.mismatch(path, contributions, MergeStrategy.UNION)
    if len(collections) != len(contributions):
        raise ctx.resolver.mismatch(path, contributions, MergeStrategy.UNION)

    merged: list[Any] = []
    for contribution in contributions:
        for item in _items(contribution.value):
            if not any(deep_equal(item, seen) for seen in merged):
                merged.append(copy.deepcopy(item))

    leaf = ResolvedLeaf(
        value=merged,
        source_id=contributions[-1].source_id,
        sources=_sources(contributions),
        strategy=MergeStrategy.UNION,
    )
    return LeafOutcome(leaf=leaf)


def combine_intersection(path: str, contributions: Sequence[Contribution], ctx: MergeContext) -> LeafOutcome:
    """
    Keep the value only if every input provides it and all agree.

    A field missing from some inputs is dropped (and recorded). Disagreement
    is unresolvable unless the resolver falls back to priority.
    """
    if any(c.is_mapping for c in contributions):
        raise ctx.resolver.mismatch(path, contributions, MergeStrategy.INTERSECTION)

    if len(contributions) < ctx.input_count:
        record = ctx.resolver.record(
            path, contributions, MergeStrategy.INTERSECTION, None, ReasonCode.INTERSECTION_ABSENT
        )
        return LeafOutcome(leaf=None, record=record)

    if agree(contributions):
        winner = contributions[-1]
        leaf = ResolvedLeaf(
            value=copy.deepcopy(winner.value),
            source_id=winner.source_id,
            sources=_sources(contributions),
            strategy=MergeStrategy.INTERSECTION,
        )
        return LeafOutcome(leaf=leaf, winner=winner)

    winner, record = ctx.resolver.resolve(path, contributions, MergeStrategy.INTERSECTION)
    return _single(winner, MergeStrategy.INTERSECTION, record)


def combine_priority(path: str, contributions: Sequence[Contribution], ctx: MergeContext) -> LeafOutcome:
    """Highest priority wins; ties go to the latest contributor."""
    if agree(contributions):
        return _single(contributions[-1], MergeStrategy.PRIORITY)
    winner, record = ctx.resolver.resolve(path, contributions, MergeStrategy.PRIORITY)
    return _single(winner, MergeStrategy.PRIORITY, record)


STRATEGIES: dict[MergeStrategy, StrategyFn] = {
    MergeStrategy.OVERRIDE: combine_override,
    MergeStrategy.UNION: combine_union,
    MergeStrategy.INTERSECTION: combine_intersection,
    MergeStrategy.PRIORITY: combine_priority,
}


def combine(
    strategy: MergeStrategy,
    path: str,
    contributions: Sequence[Contribution],
    ctx: MergeContext,
) -> LeafOutcome:
    """Dispatch to the combining function for strategy."""
    return STRATEGIES[strategy](path, contributions, ctx)
