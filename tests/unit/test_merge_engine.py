"""
Unit tests for the merge engine.

Tests cover:
- Chain merges (override along inheritance)
- Sibling merges with union and intersection
- Strategy precedence (caller, annotation, document, config)
- Shape conflicts between mappings and leaves
- Per-field error collection
- Determinism and parallel merging
"""

import pytest

from policyunion.errors import (
    ConfigError,
    DocumentInputError,
    MergeFailedError,
    TypeMismatchError,
    UnresolvableConflictError,
)
from policyunion.inheritance import resolve_chain
from policyunion.merge import MergeEngine
from policyunion.model import EffectivePolicy, ResolutionChain, ResolvedLeaf
from policyunion.normalize import normalize_document, normalize_documents
from policyunion.schema import MergeStrategy, PolicyDocumentInput, ReasonCode, ResolverConfig


def _engine(**config) -> MergeEngine:
    return MergeEngine(ResolverConfig(**config))


def _chain(documents: list[dict], target: str) -> ResolutionChain:
    return resolve_chain(target, normalize_documents(documents))


def _siblings(documents: list[dict]) -> list:
    return list(normalize_documents(documents).values())


# =============================================================================
# Chains
# =============================================================================


class TestChainMerge:
    """Tests for merging along an inheritance chain."""

    def test_child_overrides_parent(self, base_team_documents: list[dict]) -> None:
        """team's write replaces base's read and the decision is recorded."""
        effective, conflicts = _engine().merge_chain(_chain(base_team_documents, "team"))

        assert effective.value("repo.permissions") == "write"
        assert effective.get("repo.permissions").source_id == "team"
        assert len(conflicts) == 1
        record = conflicts[0]
        assert record.path == "repo.permissions"
        assert record.strategy is MergeStrategy.OVERRIDE
        assert record.winner == "team"
        assert record.reason_code is ReasonCode.OVERRIDDEN
        assert [(c.source_id, c.value) for c in record.contributors] == [("base", "read"), ("team", "write")]

    def test_untouched_fields_inherited(self, base_team_documents: list[dict]) -> None:
        """Fields only the parent sets keep the parent as source."""
        effective, _ = _engine().merge_chain(_chain(base_team_documents, "team"))
        assert effective.value("repo.visibility") == "private"
        assert effective.get("repo.visibility").source_id == "base"

    def test_effective_records_chain(self, base_team_documents: list[dict]) -> None:
        """The effective policy knows its target and chain."""
        effective, _ = _engine().merge_chain(_chain(base_team_documents, "team"))
        assert effective.target == "team"
        assert effective.chain == ("base", "team")

    def test_traversal_order(self, base_team_documents: list[dict]) -> None:
        """Leaves appear in first-seen order."""
        documents = [*base_team_documents, {"source_id": "repo", "parent": "team", "tree": {"a": 1, "repo.topics": ["x"]}}]
        effective, _ = _engine().merge_chain(_chain(documents, "repo"))
        assert effective.paths() == ["repo.permissions", "repo.visibility", "repo.topics", "a"]

    def test_to_tree_contract(self, base_team_documents: list[dict]) -> None:
        """Leaves render as {value, contributingSourceId}."""
        effective, _ = _engine().merge_chain(_chain(base_team_documents, "team"))
        assert effective.to_tree() == {
            "repo": {
                "permissions": {"value": "write", "contributingSourceId": "team"},
                "visibility": {"value": "private", "contributingSourceId": "base"},
            }
        }
        assert effective.to_plain() == {"repo": {"permissions": "write", "visibility": "private"}}

    def test_inputs_not_mutated(self, base_team_documents: list[dict]) -> None:
        """Merging leaves the normalized documents unchanged."""
        chain = _chain(base_team_documents, "team")
        before = [doc.root.to_plain() for doc in chain]
        _engine().merge_chain(chain)
        assert [doc.root.to_plain() for doc in chain] == before

    def test_results_do_not_share_values(self) -> None:
        """Changing one result's values leaves the documents and later merges alone."""
        chain = _chain([
            {"source_id": "base", "tree": {"scopes": ["read"]}},
            {"source_id": "team", "parent": "base", "tree": {"scopes": ["write"]}},
        ], "team")
        first, conflicts = _engine().merge_chain(chain)
        first.get("scopes").value.append("admin")
        conflicts[0].contributors[1].value.append("admin")

        second, _ = _engine().merge_chain(chain)
        assert second.value("scopes") == ["write"]
        assert chain.documents[1].root.get("scopes").value == ["write"]

    def test_intersection_result_does_not_share_values(self) -> None:
        """Agreed intersection values are copies too."""
        docs = _siblings([{"source_id": "a", "tree": {"x": [1]}}, {"source_id": "b", "tree": {"x": [1]}}])
        effective, _ = _engine(default_strategy="intersection").merge_siblings(docs)
        effective.get("x").value.append(2)
        assert [doc.root.get("x").value for doc in docs] == [[1], [1]]

    def test_empty_merge(self) -> None:
        """No inputs give an empty policy."""
        effective, conflicts = MergeEngine().merge([])
        assert len(effective) == 0
        assert conflicts == []


# =============================================================================
# Siblings
# =============================================================================


class TestSiblingMerge:
    """Tests for merging documents at equal scope."""

    def test_union_of_permissions(self) -> None:
        """Union siblings combine their lists in declaration order."""
        docs = _siblings([
            {"source_id": "a", "tree": {"perms": ["read"]}},
            {"source_id": "b", "tree": {"perms": ["write"]}},
        ])
        effective, conflicts = _engine(default_strategy="union").merge_siblings(docs)
        assert effective.value("perms") == ["read", "write"]
        assert effective.target is None
        assert conflicts == []

    def test_declaration_order_not_list_order(self) -> None:
        """Siblings are sorted by declaration index before merging."""
        docs = _siblings([
            {"source_id": "a", "order": 2, "tree": {"perms": ["read"]}},
            {"source_id": "b", "order": 1, "tree": {"perms": ["write"]}},
        ])
        effective, _ = _engine(default_strategy="union").merge_siblings(list(reversed(docs)))
        assert effective.value("perms") == ["write", "read"]

    def test_shared_order_rejected(self) -> None:
        """Siblings must be totally ordered."""
        docs = [
            normalize_document(PolicyDocumentInput(source_id="a"), 0),
            normalize_document(PolicyDocumentInput(source_id="b"), 0),
        ]
        with pytest.raises(DocumentInputError):
            MergeEngine().merge_siblings(docs)

    def test_intersection_equal(self) -> None:
        """Equal values survive an intersection."""
        docs = _siblings([{"source_id": "a", "tree": {"x": 1}}, {"source_id": "b", "tree": {"x": 1}}])
        effective, _ = _engine(default_strategy="intersection").merge_siblings(docs)
        assert effective.value("x") == 1
        assert effective.get("x").sources == ("a", "b")

    def test_intersection_unequal(self) -> None:
        """Unequal values are an unresolvable conflict."""
        docs = _siblings([{"source_id": "a", "tree": {"x": 1}}, {"source_id": "b", "tree": {"x": 2}}])
        with pytest.raises(MergeFailedError) as exc_info:
            _engine(default_strategy="intersection").merge_siblings(docs)
        err = exc_info.value
        assert len(err.errors) == 1
        assert isinstance(err.errors[0], UnresolvableConflictError)
        assert err.errors[0].path == "x"
        assert [r.reason_code for r in err.conflicts] == [ReasonCode.INTERSECTION_MISMATCH]

    def test_intersection_drops_partial_fields(self) -> None:
        """Fields not present in every input are dropped, not failed."""
        docs = _siblings([
            {"source_id": "a", "tree": {"x": 1, "y": 2}},
            {"source_id": "b", "tree": {"x": 1}},
        ])
        effective, conflicts = _engine(default_strategy="intersection").merge_siblings(docs)
        assert "y" not in effective
        assert effective.value("x") == 1
        assert [(r.path, r.reason_code) for r in conflicts] == [("y", ReasonCode.INTERSECTION_ABSENT)]

    def test_intersection_fallback(self) -> None:
        """With fallback enabled, priority settles disagreements."""
        docs = _siblings([
            {"source_id": "a", "priority": 5, "tree": {"x": 1}},
            {"source_id": "b", "tree": {"x": 2}},
        ])
        effective, conflicts = _engine(
            default_strategy="intersection",
            intersection_fallback=True,
        ).merge_siblings(docs)
        assert effective.value("x") == 1
        assert conflicts[0].reason_code is ReasonCode.INTERSECTION_FALLBACK


# =============================================================================
# Strategy Selection
# =============================================================================


class TestStrategyPrecedence:
    """Tests for picking the strategy of a field."""

    def test_mapping_annotation_applies_below(self) -> None:
        """An ancestor's annotation covers descendants in other documents."""
        chain = _chain([
            {"source_id": "base", "tree": {"perms": {"__strategy__": "union", "users": ["a"]}}},
            {"source_id": "team", "parent": "base", "tree": {"perms": {"users": ["b"]}}},
        ], "team")
        effective, _ = MergeEngine().merge_chain(chain)
        assert effective.value("perms.users") == ["a", "b"]
        assert effective.get("perms.users").strategy is MergeStrategy.UNION

    def test_nearest_annotation_wins(self) -> None:
        """A leaf annotation beats its ancestor's."""
        chain = _chain([
            {"source_id": "base", "tree": {"perms": {"__strategy__": "union", "users": ["a"]}}},
            {
                "source_id": "team",
                "parent": "base",
                "tree": {"perms": {"users": {"__value__": ["b"], "__strategy__": "override"}}},
            },
        ], "team")
        effective, _ = MergeEngine().merge_chain(chain)
        assert effective.value("perms.users") == ["b"]

    def test_document_default(self) -> None:
        """A document's default strategy applies when nothing is annotated."""
        chain = _chain([
            {"source_id": "base", "tree": {"users": ["a"]}},
            {"source_id": "team", "parent": "base", "default_strategy": "union", "tree": {"users": ["b"]}},
        ], "team")
        effective, _ = MergeEngine().merge_chain(chain)
        assert effective.value("users") == ["a", "b"]

    def test_annotation_beats_document_default(self) -> None:
        """Field annotations outrank document defaults."""
        chain = _chain([
            {"source_id": "base", "tree": {"users": {"__value__": ["a"], "__strategy__": "override"}}},
            {"source_id": "team", "parent": "base", "default_strategy": "union", "tree": {"users": ["b"]}},
        ], "team")
        effective, _ = MergeEngine().merge_chain(chain)
        assert effective.value("users") == ["b"]

    def test_config_default(self) -> None:
        """The config default applies last."""
        chain = _chain([
            {"source_id": "base", "tree": {"users": ["a"]}},
            {"source_id": "team", "parent": "base", "tree": {"users": ["b"]}},
        ], "team")
        assert MergeEngine().merge_chain(chain).effective.value("users") == ["b"]
        assert _engine(default_strategy="union").merge_chain(chain).effective.value("users") == ["a", "b"]

    def test_caller_override_beats_annotation(self) -> None:
        """Overrides passed to the merge outrank everything."""
        chain = _chain([
            {"source_id": "base", "tree": {"perms": {"__strategy__": "union", "users": ["a"]}}},
            {"source_id": "team", "parent": "base", "tree": {"perms": {"users": ["b"]}}},
        ], "team")
        effective, _ = MergeEngine().merge_chain(chain, overrides={"perms": "override"})
        assert effective.value("perms.users") == ["b"]

    def test_override_path_is_canonicalized(self) -> None:
        """Override paths accept the same separators as documents."""
        chain = _chain([
            {"source_id": "base", "tree": {"perms": {"users": ["a"]}}},
            {"source_id": "team", "parent": "base", "tree": {"perms": {"users": ["b"]}}},
        ], "team")
        effective, _ = MergeEngine().merge_chain(chain, overrides={"perms/users": MergeStrategy.UNION})
        assert effective.value("perms.users") == ["a", "b"]

    def test_invalid_override(self) -> None:
        """An unknown override strategy is a ConfigError."""
        chain = _chain([{"source_id": "base", "tree": {"a": 1}}], "base")
        with pytest.raises(ConfigError):
            MergeEngine().merge_chain(chain, overrides={"a": "append"})

    def test_priority_strategy(self) -> None:
        """Under PRIORITY the higher-priority ancestor keeps its value."""
        chain = _chain([
            {"source_id": "org", "priority": 10, "tree": {"reviews": 2}},
            {"source_id": "team", "parent": "org", "priority": 1, "tree": {"reviews": 0}},
        ], "team")
        effective, conflicts = _engine(default_strategy="priority").merge_chain(chain)
        assert effective.value("reviews") == 2
        assert effective.get("reviews").source_id == "org"
        assert conflicts[0].reason_code is ReasonCode.PRIORITY_WINNER


# =============================================================================
# Shapes and Errors
# =============================================================================


class TestShapeConflicts:
    """Tests for a mapping and a leaf at the same path."""

    def test_leaf_overrides_mapping(self) -> None:
        """A later leaf replaces an earlier mapping."""
        chain = _chain([
            {"source_id": "base", "tree": {"a": {"b": 1}}},
            {"source_id": "team", "parent": "base", "tree": {"a": 2}},
        ], "team")
        effective, conflicts = MergeEngine().merge_chain(chain)
        assert effective.value("a") == 2
        assert "a.b" not in effective
        assert conflicts[0].contributors[0].value == {"b": 1}

    def test_mapping_overrides_leaf(self) -> None:
        """A later mapping replaces an earlier leaf and is merged further."""
        chain = _chain([
            {"source_id": "base", "tree": {"a": 2}},
            {"source_id": "team", "parent": "base", "tree": {"a": {"b": 1}}},
        ], "team")
        effective, _ = MergeEngine().merge_chain(chain)
        assert "a" not in effective
        assert effective.value("a.b") == 1
        assert effective.get("a.b").source_id == "team"

    def test_union_shape_conflict(self) -> None:
        """Union cannot combine a mapping with a list."""
        chain = _chain([
            {"source_id": "base", "tree": {"a": {"b": 1}}},
            {"source_id": "team", "parent": "base", "tree": {"a": [1]}},
        ], "team")
        with pytest.raises(MergeFailedError) as exc_info:
            _engine(default_strategy="union").merge_chain(chain)
        assert isinstance(exc_info.value.errors[0], TypeMismatchError)


class TestErrorCollection:
    """Tests for per-field failures."""

    def test_all_failed_fields_reported(self) -> None:
        """Every failing field is reported, not just the first."""
        docs = _siblings([
            {"source_id": "a", "tree": {"x": [1], "y": 1, "z": "ok"}},
            {"source_id": "b", "tree": {"x": "s", "y": [2], "z": "ok"}},
        ])
        with pytest.raises(MergeFailedError) as exc_info:
            _engine(default_strategy="union").merge_siblings(docs)
        err = exc_info.value
        assert [e.path for e in err.errors] == ["x", "y"]
        assert [r.path for r in err.conflicts] == ["x", "y"]
        assert all(r.winner is None for r in err.conflicts)

    def test_records_of_other_fields_kept(self) -> None:
        """Records from fields that did not fail stay in the audit trail."""
        docs = _siblings([
            {"source_id": "a", "tree": {"name": "one", "x": 1}},
            {"source_id": "b", "tree": {"name": "two", "x": 1, "y": 3, "__strategy__": "intersection"}},
        ])
        with pytest.raises(MergeFailedError) as exc_info:
            MergeEngine().merge_siblings(docs)
        assert [e.path for e in exc_info.value.errors] == ["name"]
        assert [(r.path, r.reason_code) for r in exc_info.value.conflicts] == [
            ("name", ReasonCode.INTERSECTION_MISMATCH),
            ("y", ReasonCode.INTERSECTION_ABSENT),
        ]


# =============================================================================
# Determinism
# =============================================================================


def _wide_documents() -> list[dict]:
    base = {f"k{i}": {"v": i, "list": [i]} for i in range(20)}
    team = {f"k{i}": {"v": i * 10, "list": [i, i + 1]} for i in range(0, 20, 2)}
    repo = {f"k{i}": {"extra": True} for i in range(0, 20, 3)}
    return [
        {"source_id": "base", "tree": base},
        {"source_id": "team", "parent": "base", "tree": team},
        {"source_id": "repo", "parent": "team", "tree": repo},
    ]


class TestDeterminism:
    """Tests for reproducible output."""

    def test_repeatable(self) -> None:
        """The same inputs give byte-identical output and conflicts."""
        chain = _chain(_wide_documents(), "repo")
        first = _engine().merge_chain(chain)
        second = _engine().merge_chain(chain)
        assert first.effective.canonical_json() == second.effective.canonical_json()
        assert first.conflicts == second.conflicts

    def test_parallel_equals_serial(self) -> None:
        """Worker threads do not change the output or its order."""
        chain = _chain(_wide_documents(), "repo")
        serial = _engine(parallel_workers=1).merge_chain(chain)
        parallel = _engine(parallel_workers=4).merge_chain(chain)
        assert parallel.effective.paths() == serial.effective.paths()
        assert parallel.effective.canonical_json() == serial.effective.canonical_json()
        assert parallel.conflicts == serial.conflicts

    def test_parallel_errors_in_order(self) -> None:
        """Failures found on worker threads are reported in traversal order."""
        docs = _siblings([
            {"source_id": "a", "tree": {f"k{i}": [i] for i in range(10)}},
            {"source_id": "b", "tree": {f"k{i}": "s" for i in range(10)}},
        ])
        with pytest.raises(MergeFailedError) as exc_info:
            _engine(default_strategy="union", parallel_workers=4).merge_siblings(docs)
        assert [e.path for e in exc_info.value.errors] == [f"k{i}" for i in range(10)]

    def test_override_last_wins_is_idempotent(self) -> None:
        """Merging [A, B] gives the same value as B alone."""
        a = {"source_id": "a", "tree": {"perm": "read", "checks": ["lint"]}}
        b = {"source_id": "b", "tree": {"perm": "write", "checks": ["test"]}}
        both, _ = MergeEngine().merge_siblings(_siblings([a, b]))
        alone, _ = MergeEngine().merge_siblings(_siblings([b]))
        assert both.to_plain() == alone.to_plain()
        assert both.get("perm").source_id == "b"

    def test_union_ignores_input_order(self) -> None:
        """Union of [a, b] and [b, a] holds the same items; sources follow input order."""
        a = {"source_id": "a", "tree": {"scopes": ["read", "write"]}}
        b = {"source_id": "b", "tree": {"scopes": ["write", "admin"]}}
        engine = _engine(default_strategy="union")
        forward, _ = engine.merge_siblings(_siblings([a, b]))
        backward, _ = engine.merge_siblings(_siblings([b, a]))

        assert sorted(forward.value("scopes")) == sorted(backward.value("scopes")) == ["admin", "read", "write"]
        assert forward.get("scopes").sources == ("a", "b")
        assert backward.get("scopes").sources == ("b", "a")

    def test_union_is_associative(self) -> None:
        """(a | b) | c and a | (b | c) hold the same items."""
        a = {"source_id": "a", "tree": {"scopes": ["read", "write"]}}
        b = {"source_id": "b", "tree": {"scopes": ["write", "admin"]}}
        c = {"source_id": "c", "tree": {"scopes": ["admin", "audit"]}}
        engine = _engine(default_strategy="union")

        def union(*documents: dict) -> list:
            return engine.merge_siblings(_siblings(list(documents))).effective.value("scopes")

        left = union({"source_id": "ab", "tree": {"scopes": union(a, b)}}, c)
        right = union(a, {"source_id": "bc", "tree": {"scopes": union(b, c)}})
        assert sorted(left) == sorted(right) == ["admin", "audit", "read", "write"]

    def test_canonical_json_sorts_sets(self) -> None:
        """Set values render in a fixed order."""
        effective = EffectivePolicy(leaves={"s": ResolvedLeaf(value={"write", "read", "admin"}, source_id="a")})
        assert effective.canonical_json() == '{"s":{"contributingSourceId":"a","value":["admin","read","write"]}}'

    def test_effective_is_read_only(self, base_team_documents: list[dict]) -> None:
        """The effective policy cannot be modified."""
        effective, _ = MergeEngine().merge_chain(_chain(base_team_documents, "team"))
        with pytest.raises(TypeError):
            effective.leaves["repo.owner"] = effective.get("repo.permissions")
        value = effective.value("repo.permissions")
        assert value == "write"
