"""
Resolver for policyunion.

The Resolver is the orchestration layer behind the CLI-facing operations.
It drives one resolution request through its stages:

    pending -> normalized -> inheritance_resolved -> merged -> validated -> effective

Any stage may end in failed, with the stage and the error recorded. No
stage is retried; fixing the input and running again is the caller's job.

Operations:
    - merge(documents, target): resolve one target's inheritance chain
    - merge_siblings(documents): merge documents at equal scope
    - merge_all(documents, targets): resolve many targets in parallel
    - validate(documents): report every structural problem as diagnostics
    - explain(documents, target, path): show how one path was decided
    - diff(a, b): path-level differences between two effective policies

Design Principles:
    - Pure: documents are snapshot per request, nothing is kept between calls
    - Auditable: conflicts gathered before a failure are kept on the outcome
    - Reproducible: same documents in the same order, same outcome
"""

import logging
import re
from collections.abc import Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from policyunion.diff import diff
from policyunion.errors import (
    InheritanceError,
    MergeFailedError,
    PolicyUnionError,
    UnknownDocumentError,
)
from policyunion.inheritance import resolve_chain, snapshot
from policyunion.merge import MergeEngine, MergeResult
from policyunion.model import EffectivePolicy, PolicyDocument, ResolutionChain, ResolvedLeaf
from policyunion.normalize import canonicalize_path, coerce_inputs, normalize_document, normalize_documents
from policyunion.schema import (
    ConflictRecord,
    Diagnostic,
    MergeStrategy,
    PolicyDocumentInput,
    RequestStage,
    ResolverConfig,
    SchemaConstraints,
)
from policyunion.validate import Validator, has_errors

log = logging.getLogger(__name__)

Documents = Iterable[PolicyDocumentInput | Mapping[str, Any]] | Mapping[str, PolicyDocument]
Overrides = Mapping[str, MergeStrategy | str] | None


@dataclass
class ResolutionOutcome:
    """
    Result of one resolution request.

    Attributes:
        target: Target document name (None for sibling merges)
        stage: Current stage; effective on success, failed on error
        chain: Names of the merged documents in input order
        effective: The effective policy, once merged
        conflicts: ConflictRecords, including those gathered before a failure
        diagnostics: Validator findings
        error: The error that ended the request, if any
        failed_stage: Stage the request was in when it failed
        history: Every stage visited, in order
    """

    target: str | None
    stage: RequestStage = RequestStage.PENDING
    chain: list[str] = field(default_factory=list)
    effective: EffectivePolicy | None = None
    conflicts: list[ConflictRecord] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)
    error: PolicyUnionError | None = None
    failed_stage: RequestStage | None = None
    history: list[RequestStage] = field(default_factory=lambda: [RequestStage.PENDING])

    @property
    def success(self) -> bool:
        """Whether an effective policy was produced."""
        return self.stage is RequestStage.EFFECTIVE

    @property
    def has_errors(self) -> bool:
        """Whether the request failed or produced error diagnostics."""
        return not self.success or has_errors(self.diagnostics)

    def advance(self, stage: RequestStage) -> None:
        self.stage = stage
        self.history.append(stage)

    def fail(self, error: PolicyUnionError) -> None:
        self.failed_stage = self.stage
        self.error = error
        self.advance(RequestStage.FAILED)


@dataclass
class Explanation:
    """
    How one path of one target was decided.

    Attributes:
        target: Target document name
        path: Canonical dotted path
        chain: Merged document names, root-first
        contributions: (source_id, value or None) per chain document
        leaf: The resolved leaf, None when absent or failed
        conflicts: Records at or below the path
        error: Merge error at or below the path, if any
    """

    target: str
    path: str
    chain: list[str] = field(default_factory=list)
    contributions: list[tuple[str, Any]] = field(default_factory=list)
    leaf: ResolvedLeaf | None = None
    conflicts: list[ConflictRecord] = field(default_factory=list)
    error: PolicyUnionError | None = None


def _kebab(name: str) -> str:
    name = name.removesuffix("Error")
    return re.sub(r"(?<!^)(?=[A-Z])", "-", name).lower()


def error_diagnostic(error: PolicyUnionError, source_id: str | None = None) -> Diagnostic:
    """Report an error as an ERROR diagnostic."""
    path = error.context.get("path") or ""
    return Diagnostic.error(
        str(path),
        error.message,
        _kebab(type(error).__name__),
        source_id=source_id or error.context.get("source_id") or error.context.get("target") or None,
    )


class Resolver:
    """
    Resolution requests over a caller-supplied document set.

    Usage:
        resolver = Resolver(config, constraints)
        outcome = resolver.merge(documents, "team")
        if outcome.success:
            print(outcome.effective.to_tree())

    Attributes:
        config: Resolver configuration
        constraints: Optional schema constraints for validation
        merge_engine: Engine used for every merge
        validator: Validator applied to every effective policy
    """

    def __init__(
        self,
        config: ResolverConfig | None = None,
        constraints: SchemaConstraints | None = None,
    ) -> None:
        self.config = config or ResolverConfig()
        self.constraints = constraints
        self.merge_engine = MergeEngine(self.config)
        self.validator = Validator(constraints, self.config.validation_mode)

    def prepare(self, documents: Documents) -> Mapping[str, PolicyDocument]:
        """Normalize documents (unless already normalized) into a read-only lookup."""
        if isinstance(documents, Mapping):
            return snapshot(documents)
        return snapshot(normalize_documents(documents, self.config))

    # =========================================================================
    # Merge operations
    # =========================================================================

    def merge(self, documents: Documents, target: str, overrides: Overrides = None) -> ResolutionOutcome:
        """
        Resolve the effective policy of one target.

        Never raises for resolution errors; inspect outcome.error.
        """
        outcome = ResolutionOutcome(target=target)
        try:
            prepared = self.prepare(documents)
        except PolicyUnionError as e:
            outcome.fail(e)
            return outcome
        outcome.advance(RequestStage.NORMALIZED)
        return self._resolve(prepared, target, overrides, outcome)

    def merge_or_raise(self, documents: Documents, target: str, overrides: Overrides = None) -> ResolutionOutcome:
        """Like merge(), but re-raise the error of a failed request."""
        outcome = self.merge(documents, target, overrides)
        if outcome.error is not None:
            raise outcome.error
        return outcome

    def merge_siblings(
        self,
        documents: Documents,
        names: Iterable[str] | None = None,
        overrides: Overrides = None,
    ) -> ResolutionOutcome:
        """Merge documents at equal scope in declaration order, ignoring parents."""
        outcome = ResolutionOutcome(target=None)
        try:
            prepared = self.prepare(documents)
            outcome.advance(RequestStage.NORMALIZED)
            if names is None:
                selected = list(prepared.values())
            else:
                selected = []
                for name in names:
                    if name not in prepared:
                        raise UnknownDocumentError(target=name, document=name)
                    selected.append(prepared[name])
            outcome.chain = [d.name for d in sorted(selected, key=lambda d: d.order)]
            outcome.advance(RequestStage.INHERITANCE_RESOLVED)
            result = self.merge_engine.merge_siblings(selected, overrides)
        except MergeFailedError as e:
            outcome.conflicts = list(e.conflicts)
            outcome.fail(e)
            return outcome
        except PolicyUnionError as e:
            outcome.fail(e)
            return outcome
        return self._finish(outcome, result)

    def merge_all(
        self,
        documents: Documents,
        targets: Iterable[str] | None = None,
        workers: int | None = None,
        overrides: Overrides = None,
    ) -> list[ResolutionOutcome]:
        """
        Resolve many targets independently.

        Targets default to every document in declaration order. Outcomes are
        returned in target order whatever the number of workers.
        """
        try:
            prepared = self.prepare(documents)
        except PolicyUnionError as e:
            names = list(targets or [])
            outcomes = [ResolutionOutcome(target=name) for name in names or [None]]
            for outcome in outcomes:
                outcome.fail(e)
            return outcomes

        names = list(targets) if targets is not None else list(prepared)
        workers = workers or self.config.parallel_workers

        def run(name: str) -> ResolutionOutcome:
            outcome = ResolutionOutcome(target=name)
            outcome.advance(RequestStage.NORMALIZED)
            return self._resolve(prepared, name, overrides, outcome)

        if workers > 1 and len(names) > 1:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                return list(pool.map(run, names))
        return [run(name) for name in names]

    def _resolve(
        self,
        prepared: Mapping[str, PolicyDocument],
        target: str,
        overrides: Overrides,
        outcome: ResolutionOutcome,
    ) -> ResolutionOutcome:
        try:
            chain = resolve_chain(target, prepared, max_depth=self.config.max_depth)
            outcome.chain = chain.names
            outcome.advance(RequestStage.INHERITANCE_RESOLVED)
            result = self.merge_engine.merge_chain(chain, overrides)
        except MergeFailedError as e:
            outcome.conflicts = list(e.conflicts)
            outcome.fail(e)
            return outcome
        except PolicyUnionError as e:
            outcome.fail(e)
            return outcome
        return self._finish(outcome, result)

    def _finish(self, outcome: ResolutionOutcome, result: MergeResult) -> ResolutionOutcome:
        outcome.effective = result.effective
        outcome.conflicts = list(result.conflicts)
        outcome.advance(RequestStage.MERGED)
        outcome.diagnostics = self.validator.validate(result.effective)
        outcome.advance(RequestStage.VALIDATED)
        outcome.advance(RequestStage.EFFECTIVE)
        log.debug("Resolved %s: stages %s", outcome.target, [s.value for s in outcome.history])
        return outcome

    # =========================================================================
    # Validation
    # =========================================================================

    def validate(self, documents: Iterable[PolicyDocumentInput | Mapping[str, Any]]) -> list[Diagnostic]:
        """
        Check a document set without stopping at the first problem.

        Normalization, inheritance and merge errors become ERROR diagnostics;
        every target that merges is also run through the Validator.

        Returns:
            Unique diagnostics sorted by source, path and code
        """
        diagnostics: list[Diagnostic] = []
        try:
            inputs = coerce_inputs(documents)
        except PolicyUnionError as e:
            return [error_diagnostic(e)]

        prepared: dict[str, PolicyDocument] = {}
        orders: dict[int, str] = {}
        for index, entry in enumerate(inputs):
            if entry.source_id in prepared:
                diagnostics.append(Diagnostic.error("", "Duplicate source id", "duplicate-source-id", entry.source_id))
                continue
            try:
                document = normalize_document(entry, index, self.config)
            except PolicyUnionError as e:
                diagnostics.append(error_diagnostic(e, entry.source_id))
                continue
            if document.order in orders:
                diagnostics.append(Diagnostic.error(
                    "",
                    f"Declaration order {document.order} already used by {orders[document.order]!r}",
                    "duplicate-order",
                    document.name,
                ))
                continue
            orders[document.order] = document.name
            prepared[document.name] = document

        lookup = snapshot(prepared)
        for name in prepared:
            try:
                chain = resolve_chain(name, lookup, max_depth=self.config.max_depth)
            except InheritanceError as e:
                diagnostics.append(error_diagnostic(e, name))
                continue
            diagnostics.extend(self._validate_chain(chain))

        unique = {(d.source_id or "", d.path, d.code, d.message): d for d in diagnostics}
        return [unique[key] for key in sorted(unique)]

    def _validate_chain(self, chain: ResolutionChain) -> list[Diagnostic]:
        try:
            result = self.merge_engine.merge_chain(chain)
        except MergeFailedError as e:
            return [error_diagnostic(err, chain.target) for err in e.errors]
        return [
            d.model_copy(update={"source_id": d.source_id or chain.target})
            for d in self.validator.validate(result.effective)
        ]

    # =========================================================================
    # Introspection
    # =========================================================================

    def explain(self, documents: Documents, target: str, path: str) -> Explanation:
        """
        Show how one path of one target was decided.

        Raises:
            PolicyUnionError: If the documents cannot be normalized or the
                chain cannot be resolved
        """
        canonical = canonicalize_path(path, self.config.key_case)
        prepared = self.prepare(documents)
        chain = resolve_chain(target, prepared, max_depth=self.config.max_depth)

        explanation = Explanation(target=target, path=canonical, chain=chain.names)
        for document in chain:
            node = document.root.get(canonical)
            explanation.contributions.append((document.name, node.to_plain() if node is not None else None))

        def relevant(record_path: str) -> bool:
            return record_path == canonical or record_path.startswith(f"{canonical}.")

        try:
            result = self.merge_engine.merge_chain(chain)
        except MergeFailedError as e:
            explanation.conflicts = [r for r in e.conflicts if relevant(r.path)]
            explanation.error = next((err for err in e.errors if relevant(err.path)), None)
            return explanation

        explanation.leaf = result.effective.get(canonical)
        explanation.conflicts = [r for r in result.conflicts if relevant(r.path)]
        return explanation

    @staticmethod
    def diff(before: EffectivePolicy, after: EffectivePolicy, include_sources: bool = False):
        """Path-level differences between two effective policies."""
        return diff(before, after, include_sources=include_sources)
