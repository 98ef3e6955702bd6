"""Contracts shared by the atomic ledger backends."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from racebook.domain.models import (
    DriverAggregate,
    InvalidationMode,
    Market,
    SettlementProposal,
    Wager,
    WagerStatus,
)
from racebook.engine.settlement import SettlementResult


@dataclass(slots=True, frozen=True)
class PlacementRequest:
    user_id: str
    market_id: str
    outcome_id: str
    stake: int
    client_request_id: str | None = None


@dataclass(slots=True, frozen=True)
class PlacementReceipt:
    wager_id: str
    user_id: str
    market_id: str
    outcome_id: str
    stake: int
    new_balance: int | None
    placed_at: datetime | None = None
    replayed: bool = False
    status: WagerStatus = WagerStatus.ACCEPTED


@dataclass(slots=True, frozen=True)
class SettlementApproval:
    proposal: SettlementProposal
    result: SettlementResult


@dataclass(slots=True, frozen=True)
class LapLogResult:
    lap_id: str
    lap_number: int | None
    lap_time_ms: int
    aggregate: DriverAggregate

    @property
    def session_id(self) -> str:
        return self.aggregate.session_id

    @property
    def driver_id(self) -> str:
        return self.aggregate.driver_id


@dataclass(slots=True, frozen=True)
class LapInvalidationResult:
    lap_id: str
    lap_number: int | None
    mode: InvalidationMode
    aggregate: DriverAggregate


class WagerBackend(Protocol):
    def place_wager(self, request: PlacementRequest) -> PlacementReceipt:
        """Debit the wallet and insert the wager in one all-or-nothing step."""

    def find_placement(self, user_id: str, client_request_id: str) -> PlacementReceipt | None:
        """Look up a previously committed placement by its idempotency key."""

    def list_pending_wagers(self, market_id: str | None = None) -> list[Wager]:
        ...

    def approve_wager(self, wager_id: str, reviewer: str) -> Wager:
        ...

    def reject_wager(self, wager_id: str, reviewer: str, reason: str | None = None) -> Wager:
        """Mark a pending wager refunded and credit its stake back in one step."""


class SettlementBackend(Protocol):
    def close_market(self, market_id: str) -> Market:
        ...

    def propose_settlement(
        self,
        market_id: str,
        winning_outcome_id: str | None,
        proposer: str,
        evidence: Mapping[str, Any] | None = None,
    ) -> SettlementProposal:
        ...

    def approve_settlement(self, proposal_id: str, reviewer: str) -> SettlementApproval:
        """Approve a pending proposal and pay the market out in the same transaction."""

    def reject_settlement(self, proposal_id: str, reviewer: str, reason: str | None) -> SettlementProposal:
        ...

    def cancel_settlement(self, proposal_id: str, actor: str) -> SettlementProposal:
        ...

    def list_pending_settlements(self) -> list[SettlementProposal]:
        ...


class LapBackend(Protocol):
    def log_lap_atomic(self, session_id: str, driver_id: str, lap_time_ms: int) -> LapLogResult:
        ...

    def invalidate_last_lap_atomic(
        self,
        session_id: str,
        driver_id: str,
        mode: InvalidationMode,
    ) -> LapInvalidationResult | None:
        ...
