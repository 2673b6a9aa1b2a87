"""
policyunion - Layered policy resolution with auditable conflict handling.

policyunion takes policy documents at several scopes (organization, team,
repository), follows their declared inheritance and merges them with
per-field strategies into one deterministic effective policy.
It provides:
- Path normalization and annotation extraction
- Cycle- and depth-checked inheritance chains
- Override, union, intersection and priority-based merging
- A ConflictRecord for every contested path
- Schema validation, diffs and per-path explanations

Example usage:
    $ policyunion merge policies.yaml --target team-platform
    $ policyunion validate policies/ --schema schema.yaml
    $ policyunion diff before.json after.json
"""

__version__ = "0.1.0"
__author__ = "policyunion Contributors"

from policyunion.diff import diff
from policyunion.engine import Explanation, ResolutionOutcome, Resolver
from policyunion.errors import PolicyUnionError
from policyunion.inheritance import resolve_chain
from policyunion.merge import MergeEngine, MergeResult
from policyunion.model import EffectivePolicy, PolicyDocument, PolicyNode, ResolvedLeaf
from policyunion.normalize import normalize, normalize_documents
from policyunion.schema import (
    ConflictRecord,
    Diagnostic,
    MergeStrategy,
    PolicyDocumentInput,
    ResolverConfig,
    SchemaConstraints,
)
from policyunion.validate import Validator

__all__ = [
    "__version__",
    "__author__",
    "ConflictRecord",
    "Diagnostic",
    "EffectivePolicy",
    "Explanation",
    "MergeEngine",
    "MergeResult",
    "MergeStrategy",
    "PolicyDocument",
    "PolicyDocumentInput",
    "PolicyNode",
    "PolicyUnionError",
    "ResolutionOutcome",
    "ResolvedLeaf",
    "Resolver",
    "ResolverConfig",
    "SchemaConstraints",
    "Validator",
    "diff",
    "normalize",
    "normalize_documents",
    "resolve_chain",
]
