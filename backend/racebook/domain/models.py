"""Typed domain representations shared by the engine, repositories, services and API."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class MarketStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    SETTLING = "settling"
    SETTLED = "settled"


class WagerStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    WON = "won"
    LOST = "lost"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_WAGER_STATUSES


TERMINAL_WAGER_STATUSES = frozenset({WagerStatus.WON, WagerStatus.LOST, WagerStatus.REFUNDED})


class ProposalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class InvalidationMode(str, Enum):
    TIME_ONLY = "time_only"
    REMOVE_LAP = "remove_lap"


class WalletTransactionKind(str, Enum):
    WAGER = "wager"
    PAYOUT = "payout"
    REFUND = "refund"


@dataclass(slots=True, frozen=True)
class Outcome:
    outcome_id: str
    market_id: str
    label: str
    driver_id: str | None = None
    sort_order: int = 0


@dataclass(slots=True, frozen=True)
class Market:
    market_id: str
    name: str
    status: MarketStatus
    rake_bps: int
    closes_at: datetime | None = None
    outcomes: tuple[Outcome, ...] = ()

    @property
    def outcome_ids(self) -> tuple[str, ...]:
        return tuple(outcome.outcome_id for outcome in self.outcomes)

    def find_outcome(self, outcome_id: str | None) -> Outcome | None:
        if outcome_id is None:
            return None
        for outcome in self.outcomes:
            if outcome.outcome_id == outcome_id:
                return outcome
        return None


@dataclass(slots=True, frozen=True)
class Wager:
    wager_id: str
    user_id: str
    market_id: str
    outcome_id: str
    stake: int
    status: WagerStatus
    placed_at: datetime | None = None
    payout: int | None = None
    reviewed_by: str | None = None
    rejection_reason: str | None = None


@dataclass(slots=True, frozen=True)
class SettlementProposal:
    proposal_id: str
    market_id: str
    winning_outcome_id: str | None
    proposed_by: str
    status: ProposalStatus
    evidence: dict[str, Any] | None = None
    proposed_at: datetime | None = None
    reviewed_at: datetime | None = None
    reviewed_by: str | None = None
    rejection_reason: str | None = None


@dataclass(slots=True, frozen=True)
class LapRecord:
    lap_id: str
    session_id: str
    driver_id: str
    lap_number: int
    lap_time_ms: int
    invalidated: bool = False
    removed: bool = False
    recorded_at: datetime | None = None
    source: str = "manual"


@dataclass(slots=True, frozen=True)
class DriverAggregate:
    """Rolling per-driver timing cache derived from surviving lap records."""

    session_id: str
    driver_id: str
    laps: int = 0
    last_lap_ms: int | None = None
    best_lap_ms: int | None = None
    total_time_ms: int = 0

