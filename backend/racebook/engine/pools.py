"""Pool accounting over a market's wager rows."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType

from racebook.core.errors import InvariantViolation, ValidationError
from racebook.domain.models import Wager, WagerStatus


@dataclass(slots=True, frozen=True)
class OutcomePool:
    outcome_id: str
    total: int = 0
    wager_count: int = 0


@dataclass(slots=True, frozen=True)
class PoolLedger:
    """Immutable snapshot of a market's total pool and per-outcome contributions."""

    market_id: str
    total: int = 0
    outcomes: Mapping[str, OutcomePool] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "outcomes", MappingProxyType(dict(self.outcomes)))
        if self.total < 0 or any(pool.total < 0 or pool.wager_count < 0 for pool in self.outcomes.values()):
            raise InvariantViolation(f"pool for market {self.market_id} has a negative component")

    @classmethod
    def empty(cls, market_id: str, outcome_ids: Iterable[str] = ()) -> "PoolLedger":
        return cls(
            market_id=market_id,
            total=0,
            outcomes={outcome_id: OutcomePool(outcome_id) for outcome_id in outcome_ids},
        )

    @classmethod
    def from_wagers(
        cls,
        market_id: str,
        wagers: Iterable[Wager],
        outcome_ids: Iterable[str] = (),
    ) -> "PoolLedger":
        totals: dict[str, int] = {outcome_id: 0 for outcome_id in outcome_ids}
        counts: dict[str, int] = {outcome_id: 0 for outcome_id in totals}
        for wager in wagers:
            if wager.market_id != market_id:
                raise InvariantViolation(
                    f"wager {wager.wager_id} belongs to market {wager.market_id}, not {market_id}"
                )
            # Refunded stakes have left the pool.
            if wager.status is WagerStatus.REFUNDED:
                continue
            totals[wager.outcome_id] = totals.get(wager.outcome_id, 0) + wager.stake
            counts[wager.outcome_id] = counts.get(wager.outcome_id, 0) + 1
        return cls(
            market_id=market_id,
            total=sum(totals.values()),
            outcomes={
                outcome_id: OutcomePool(outcome_id, totals[outcome_id], counts[outcome_id])
                for outcome_id in totals
            },
        )

    @classmethod
    def from_totals(
        cls,
        market_id: str,
        outcome_totals: Mapping[str, tuple[int, int]],
    ) -> "PoolLedger":
        """Build from server-aggregated ``{outcome_id: (total, wager_count)}`` rows.

        The market total is always derived from the outcome rows so the snapshot reconciles
        by construction.
        """

        outcomes = {
            outcome_id: OutcomePool(outcome_id, int(total), int(count))
            for outcome_id, (total, count) in outcome_totals.items()
        }
        return cls(
            market_id=market_id,
            total=sum(pool.total for pool in outcomes.values()),
            outcomes=outcomes,
        )

    def contribution(self, outcome_id: str) -> int:
        pool = self.outcomes.get(outcome_id)
        return pool.total if pool else 0

    def wager_count(self, outcome_id: str) -> int:
        pool = self.outcomes.get(outcome_id)
        return pool.wager_count if pool else 0

    def reconciles(self) -> bool:
        return sum(pool.total for pool in self.outcomes.values()) == self.total

    def apply_stake(self, outcome_id: str, stake: int) -> "PoolLedger":
        """Merge one accepted stake into the snapshot without recomputing from rows."""

        if isinstance(stake, bool) or not isinstance(stake, int) or stake <= 0:
            raise ValidationError(f"stake delta must be a positive integer, got {stake!r}", code="invalid_stake")
        current = self.outcomes.get(outcome_id, OutcomePool(outcome_id))
        outcomes = dict(self.outcomes)
        outcomes[outcome_id] = replace(
            current,
            total=current.total + stake,
            wager_count=current.wager_count + 1,
        )
        return PoolLedger(market_id=self.market_id, total=self.total + stake, outcomes=outcomes)
