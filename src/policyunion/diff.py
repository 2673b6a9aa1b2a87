"""
Path-level comparison of two effective policies.

Used by the CLI to show what changes between two resolutions, e.g. before
and after editing a team's overrides.
"""

import copy

from policyunion.model import EffectivePolicy, deep_equal
from policyunion.schema import DiffEntry, DiffKind


def diff(
    before: EffectivePolicy,
    after: EffectivePolicy,
    *,
    include_sources: bool = False,
) -> list[DiffEntry]:
    """
    Compare two effective policies path by path.

    Args:
        before: The baseline policy
        after: The policy to compare against the baseline
        include_sources: Also report paths whose value is unchanged but whose
            contributing source moved

    Returns:
        Differences sorted by path
    """
    entries = []
    for path in sorted(set(before.paths()) | set(after.paths())):
        old = before.get(path)
        new = after.get(path)
        if old is None and new is not None:
            entries.append(DiffEntry(
                path=path,
                kind=DiffKind.ADDED,
                after=copy.deepcopy(new.value),
                after_source=new.source_id,
            ))
        elif new is None and old is not None:
            entries.append(DiffEntry(
                path=path,
                kind=DiffKind.REMOVED,
                before=copy.deepcopy(old.value),
                before_source=old.source_id,
            ))
        elif old is not None and new is not None:
            if not deep_equal(old.value, new.value):
                kind = DiffKind.CHANGED
            elif include_sources and old.source_id != new.source_id:
                kind = DiffKind.SOURCE_CHANGED
            else:
                continue
            entries.append(DiffEntry(
                path=path,
                kind=kind,
                before=copy.deepcopy(old.value),
                after=copy.deepcopy(new.value),
                before_source=old.source_id,
                after_source=new.source_id,
            ))
    return entries
