"""
Unit tests for effective policy diffs.
"""

from policyunion.diff import diff
from policyunion.model import EffectivePolicy, ResolvedLeaf
from policyunion.schema import DiffKind


def _policy(values: dict[str, tuple]) -> EffectivePolicy:
    return EffectivePolicy(leaves={
        path: ResolvedLeaf(value=value, source_id=source) for path, (value, source) in values.items()
    })


class TestDiff:
    """Tests for diff()."""

    def test_identical(self) -> None:
        """Equal policies have no differences."""
        policy = _policy({"a": (1, "x"), "b": ([1, 2], "y")})
        assert diff(policy, policy) == []

    def test_added_removed_changed(self) -> None:
        """Each kind of difference is reported with both sides."""
        before = _policy({"a": (1, "x"), "b": ("read", "base")})
        after = _policy({"b": ("write", "team"), "c": (True, "team")})
        entries = diff(before, after)

        assert [(e.path, e.kind) for e in entries] == [
            ("a", DiffKind.REMOVED),
            ("b", DiffKind.CHANGED),
            ("c", DiffKind.ADDED),
        ]
        changed = entries[1]
        assert (changed.before, changed.after) == ("read", "write")
        assert (changed.before_source, changed.after_source) == ("base", "team")
        assert entries[0].after is None
        assert entries[2].before_source is None

    def test_bool_and_int_differ(self) -> None:
        """1 and True are different values."""
        entries = diff(_policy({"a": (1, "x")}), _policy({"a": (True, "x")}))
        assert [e.kind for e in entries] == [DiffKind.CHANGED]

    def test_source_only_change(self) -> None:
        """A moved source is only reported when asked for."""
        before = _policy({"a": (1, "base")})
        after = _policy({"a": (1, "team")})
        assert diff(before, after) == []
        entries = diff(before, after, include_sources=True)
        assert [e.kind for e in entries] == [DiffKind.SOURCE_CHANGED]

    def test_sorted_by_path(self) -> None:
        """Entries come out sorted by path."""
        before = EffectivePolicy()
        after = _policy({"z": (1, "x"), "a.b": (2, "x"), "m": (3, "x")})
        assert [e.path for e in diff(before, after)] == ["a.b", "m", "z"]

    def test_values_copied(self) -> None:
        """Entries do not alias the policies' values."""
        after = _policy({"a": ([1], "x")})
        entry = diff(EffectivePolicy(), after)[0]
        entry.after.append(2)
        assert after.value("a") == [1]
