"""
Merge module for policyunion.

Folds ordered policy documents into one effective policy.

Key concepts:
    - MergeStrategy: override, union, intersection or priority, chosen per field
    - MergeEngine: walks every path and applies the field's strategy
    - ConflictResolver: arbitrates contested fields and records each decision

The merge is deterministic: the same documents in the same order always
produce the same effective policy and the same conflict list.
"""

from policyunion.merge.conflicts import ConflictResolver
from policyunion.merge.engine import MergeEngine, MergeResult
from policyunion.merge.strategies import STRATEGIES, LeafOutcome, MergeContext, combine

__all__ = [
    "ConflictResolver",
    "LeafOutcome",
    "MergeContext",
    "MergeEngine",
    "MergeResult",
    "STRATEGIES",
    "combine",
]
