from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base
from .domain.models import MarketStatus, ProposalStatus, WagerStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


class Market(Base):
    __tablename__ = "markets"
    __table_args__ = (
        CheckConstraint("rake_bps >= 0 AND rake_bps <= 2000", name="ck_markets_rake_bps"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    session_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default=MarketStatus.OPEN.value)
    rake_bps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    closes_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    outcomes: Mapped[list["Outcome"]] = relationship(
        "Outcome",
        back_populates="market",
        cascade="all, delete-orphan",
        order_by="Outcome.sort_order",
    )


class Outcome(Base):
    __tablename__ = "outcomes"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    market_id: Mapped[str] = mapped_column(String, ForeignKey("markets.id"), nullable=False, index=True)
    label: Mapped[str] = mapped_column(String, nullable=False)
    driver_id: Mapped[str | None] = mapped_column(String, nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    market: Mapped[Market] = relationship("Market", back_populates="outcomes")


class Wager(Base):
    __tablename__ = "wagers"
    __table_args__ = (
        UniqueConstraint("user_id", "client_request_id", name="uq_wagers_user_request"),
        CheckConstraint("stake > 0", name="ck_wagers_stake_positive"),
        Index("ix_wagers_market_outcome", "market_id", "outcome_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    market_id: Mapped[str] = mapped_column(String, ForeignKey("markets.id"), nullable=False)
    outcome_id: Mapped[str] = mapped_column(String, ForeignKey("outcomes.id"), nullable=False)
    stake: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default=WagerStatus.ACCEPTED.value)
    payout: Mapped[int | None] = mapped_column(Integer, nullable=True)
    client_request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    placed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)


class WalletAccount(Base):
    __tablename__ = "wallet_accounts"
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_wallet_accounts_balance"),)

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class WalletTransaction(Base):
    __tablename__ = "wallet_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    market_id: Mapped[str | None] = mapped_column(String, nullable=True)
    wager_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class SettlementProposal(Base):
    __tablename__ = "settlement_proposals"
    __table_args__ = (
        Index(
            "uq_settlement_proposals_pending_market",
            "market_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    market_id: Mapped[str] = mapped_column(String, ForeignKey("markets.id"), nullable=False, index=True)
    winning_outcome_id: Mapped[str | None] = mapped_column(String, nullable=True)
    proposed_by: Mapped[str] = mapped_column(String, nullable=False)
    evidence: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default=ProposalStatus.PENDING.value)
    proposed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)


class MarketSettlement(Base):
    __tablename__ = "market_settlements"

    market_id: Mapped[str] = mapped_column(String, ForeignKey("markets.id"), primary_key=True)
    proposal_id: Mapped[str | None] = mapped_column(String, ForeignKey("settlement_proposals.id"), nullable=True)
    winning_outcome_id: Mapped[str | None] = mapped_column(String, nullable=True)
    total_pool: Mapped[int] = mapped_column(Integer, nullable=False)
    winning_pool: Mapped[int] = mapped_column(Integer, nullable=False)
    rake_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    net_pool: Mapped[int] = mapped_column(Integer, nullable=False)
    total_paid: Mapped[int] = mapped_column(Integer, nullable=False)
    dust: Mapped[int] = mapped_column(Integer, nullable=False)
    refunded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    settled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Driver(Base):
    __tablename__ = "drivers"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    session_id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    number: Mapped[str | None] = mapped_column(String, nullable=True)
    laps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_lap_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    best_lap_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_time_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class Lap(Base):
    __tablename__ = "laps"
    __table_args__ = (
        UniqueConstraint("session_id", "driver_id", "lap_number", name="uq_laps_session_driver_number"),
        CheckConstraint("lap_time_ms > 0", name="ck_laps_time_positive"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    session_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    driver_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    lap_number: Mapped[int] = mapped_column(Integer, nullable=False)
    lap_time_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    invalidated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    removed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    source: Mapped[str] = mapped_column(String, nullable=False, default="manual")
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
