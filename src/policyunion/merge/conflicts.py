"""
Conflict Resolver for policyunion.

Called by the merge strategies whenever contributors to a field disagree
and the strategy cannot combine them outright. It either names a winner or
raises, and in both cases produces a ConflictRecord so that every contested
decision is auditable.

Winner selection (PRIORITY, and INTERSECTION with fallback enabled):
    1. Highest explicit priority wins (missing priority counts as 0)
    2. Among equal priorities, the latest contributor in input order wins
    3. Equal priority and equal order cannot be ordered: unresolvable tie
"""

import copy
import logging
from collections.abc import Sequence

from policyunion.errors import TypeMismatchError, UnresolvableConflictError
from policyunion.model import Contribution, type_name
from policyunion.schema import ConflictRecord, ContributorEntry, MergeStrategy, ReasonCode

log = logging.getLogger(__name__)


class ConflictResolver:
    """
    Arbitrates contested fields and emits ConflictRecords.

    The resolver keeps no state between calls, so one instance can be shared
    across threads.

    Attributes:
        fallback_to_priority: Let INTERSECTION disagreements degrade to PRIORITY
    """

    def __init__(self, fallback_to_priority: bool = False) -> None:
        self.fallback_to_priority = fallback_to_priority

    def record(
        self,
        path: str,
        contributions: Sequence[Contribution],
        strategy: MergeStrategy,
        winner: str | None,
        reason: ReasonCode,
    ) -> ConflictRecord:
        """Build the audit record for one decision."""
        return ConflictRecord(
            path=path,
            strategy=strategy,
            contributors=[
                ContributorEntry(source_id=c.source_id, value=copy.deepcopy(c.value)) for c in contributions
            ],
            winner=winner,
            reason_code=reason,
        )

    def resolve(
        self,
        path: str,
        contributions: Sequence[Contribution],
        strategy: MergeStrategy,
    ) -> tuple[Contribution, ConflictRecord]:
        """
        Decide a contested field.

        Args:
            path: Dotted path of the field
            contributions: Disagreeing contributors in input order
            strategy: Strategy in effect for the field

        Returns:
            (winning contribution, record naming the winner)

        Raises:
            UnresolvableConflictError: No winner can be chosen; the record
                (with no winner) is attached to the error
        """
        if not contributions:
            raise ValueError(f"No contributions to resolve at {path!r}")

        if strategy is MergeStrategy.OVERRIDE:
            winner = contributions[-1]
            return winner, self.record(path, contributions, strategy, winner.source_id, ReasonCode.OVERRIDDEN)

        if strategy is MergeStrategy.INTERSECTION:
            if not self.fallback_to_priority:
                self._fail(path, contributions, strategy, ReasonCode.INTERSECTION_MISMATCH)
            winner, _ = self._pick_by_priority(path, contributions, strategy)
            log.info("Intersection at %s fell back to priority; %s wins", path, winner.source_id)
            return winner, self.record(
                path, contributions, strategy, winner.source_id, ReasonCode.INTERSECTION_FALLBACK
            )

        if strategy is MergeStrategy.PRIORITY:
            winner, tied = self._pick_by_priority(path, contributions, strategy)
            reason = ReasonCode.PRIORITY_TIE_ORDER if tied > 1 else ReasonCode.PRIORITY_WINNER
            return winner, self.record(path, contributions, strategy, winner.source_id, reason)

        raise ValueError(f"{strategy.value} fields are combined, not resolved")

    def mismatch(
        self,
        path: str,
        contributions: Sequence[Contribution],
        strategy: MergeStrategy,
    ) -> TypeMismatchError:
        """Build (not raise) a TypeMismatchError carrying its record."""
        found = []
        for c in contributions:
            kind = "mapping" if c.is_mapping else type_name(c.value)
            found.append(f"{c.source_id}={kind}")
        return TypeMismatchError(
            path=path,
            strategy=strategy.value,
            found_types=found,
            record=self.record(path, contributions, strategy, None, ReasonCode.TYPE_MISMATCH),
        )

    def _pick_by_priority(
        self,
        path: str,
        contributions: Sequence[Contribution],
        strategy: MergeStrategy,
    ) -> tuple[Contribution, int]:
        top = max(c.effective_priority for c in contributions)
        tied = [c for c in contributions if c.effective_priority == top]
        latest = max(c.order for c in tied)
        winners = [c for c in tied if c.order == latest]
        if len(winners) > 1:
            self._fail(path, contributions, strategy, ReasonCode.UNRESOLVABLE_TIE)
        return winners[0], len(tied)

    def _fail(
        self,
        path: str,
        contributions: Sequence[Contribution],
        strategy: MergeStrategy,
        reason: ReasonCode,
    ) -> None:
        record = self.record(path, contributions, strategy, None, reason)
        raise UnresolvableConflictError(path=path, strategy=strategy.value, record=record)
