from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from .domain.models import InvalidationMode, MarketStatus, ProposalStatus, WagerStatus


class OutcomeOut(BaseModel):
    outcome_id: str
    label: str
    driver_id: str | None = None
    sort_order: int = 0

    model_config = {"from_attributes": True}


class MarketOut(BaseModel):
    market_id: str
    name: str
    status: MarketStatus
    rake_bps: int
    closes_at: datetime | None = None
    outcomes: list[OutcomeOut] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class OutcomeOddsOut(BaseModel):
    outcome_id: str
    label: str
    total: int
    wager_count: int
    share: float
    odds: float | None = Field(None, description="Baseline multiplier; null when nobody has backed the outcome")

    model_config = {"from_attributes": True}


class PoolOut(BaseModel):
    market_id: str
    total: int
    outcomes: list[OutcomeOddsOut]


class QuoteRequest(BaseModel):
    outcome_id: str
    stake: float = Field(..., description="Candidate stake; zero or negative yields no quote")


class QuoteOut(BaseModel):
    stake: float
    total_pool: float
    outcome_pool: float
    rake: float
    net_pool: float
    effective_outcome_pool: float
    baseline_multiplier: float | None = None
    effective_multiplier: float
    estimated_payout: float
    share_after_bet: float
    price_impact: float | None = None

    model_config = {"from_attributes": True}


class QuoteResponse(BaseModel):
    market_id: str
    outcome_id: str
    quote: QuoteOut | None = None


class WagerCreate(BaseModel):
    market_id: str
    outcome_id: str
    stake: Any = Field(..., description="Whole-unit stake debited from the caller's wallet")
    client_request_id: str | None = Field(
        None, description="Idempotency key; a repeated key is rejected as a duplicate placement"
    )


class WagerOut(BaseModel):
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

    model_config = {"from_attributes": True}


class WagerReceiptOut(BaseModel):
    wager_id: str
    user_id: str
    market_id: str
    outcome_id: str
    stake: int
    new_balance: int | None = None
    placed_at: datetime | None = None
    replayed: bool = False
    status: WagerStatus = WagerStatus.ACCEPTED

    model_config = {"from_attributes": True}


class WagerReviewRequest(BaseModel):
    reason: str | None = Field(None, description="Optional note recorded when a pending wager is rejected")


class ProposalCreate(BaseModel):
    winning_outcome_id: str | None = Field(None, description="Winning outcome, or null for a no-winner refund")
    evidence: dict[str, Any] | None = None


class ProposalOut(BaseModel):
    proposal_id: str
    market_id: str
    winning_outcome_id: str | None = None
    proposed_by: str
    status: ProposalStatus
    evidence: dict[str, Any] | None = None
    proposed_at: datetime | None = None
    reviewed_at: datetime | None = None
    reviewed_by: str | None = None
    rejection_reason: str | None = None

    model_config = {"from_attributes": True}


class RejectRequest(BaseModel):
    reason: str


class SettlementOut(BaseModel):
    market_id: str
    winning_outcome_id: str | None = None
    total_pool: int
    winning_pool: int
    rake_amount: int
    net_pool: int
    total_paid: int
    dust: int
    refunded: bool

    model_config = {"from_attributes": True}


class ApprovalOut(BaseModel):
    proposal: ProposalOut
    settlement: SettlementOut


class DriverAggregateOut(BaseModel):
    session_id: str
    driver_id: str
    laps: int
    last_lap_ms: int | None = None
    best_lap_ms: int | None = None
    total_time_ms: int

    model_config = {"from_attributes": True}


class LapCreate(BaseModel):
    lap_time_ms: int | None = Field(None, description="Lap duration in milliseconds")
    lap_time: str | None = Field(None, description="Marshal entry such as '1:05.321'")


class LapLogOut(BaseModel):
    lap_id: str
    lap_number: int | None = None
    lap_time_ms: int
    aggregate: DriverAggregateOut

    model_config = {"from_attributes": True}


class InvalidateRequest(BaseModel):
    mode: InvalidationMode = InvalidationMode.TIME_ONLY


class LapInvalidationOut(BaseModel):
    invalidated: bool
    lap_id: str | None = None
    lap_number: int | None = None
    mode: InvalidationMode
    aggregate: DriverAggregateOut | None = None


class ErrorOut(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None
