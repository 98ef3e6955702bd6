from __future__ import annotations

import os
import sys
from datetime import datetime
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from racebook.db import init_db, session_scope
from racebook.domain.models import Market, MarketStatus
from racebook.domain.normalize import normalize_market
from racebook.repositories import LapRepository, MarketRepository, OutcomeSpec, WalletRepository


class Seeder:
    """Write fixture rows directly through the repositories."""

    def __init__(self, factory: sessionmaker) -> None:
        self._factory = factory

    def market(
        self,
        market_id: str = "m1",
        outcomes: tuple[str, ...] = ("alpha", "bravo"),
        *,
        rake_bps: int = 0,
        status: MarketStatus = MarketStatus.OPEN,
        closes_at: datetime | None = None,
    ) -> Market:
        with session_scope(self._factory) as session:
            repo = MarketRepository(session)
            record = repo.create_market(
                market_id=market_id,
                name=f"Market {market_id}",
                outcomes=[OutcomeSpec(label=outcome.title(), outcome_id=outcome) for outcome in outcomes],
                rake_bps=rake_bps,
                closes_at=closes_at,
            )
            if status is not MarketStatus.OPEN:
                repo.set_status(record, status)
            return normalize_market(record)

    def wallet(self, user_id: str, balance: int) -> None:
        with session_scope(self._factory) as session:
            WalletRepository(session).open_account(user_id, balance=balance)

    def driver(self, session_id: str, driver_id: str) -> None:
        with session_scope(self._factory) as session:
            LapRepository(session).add_driver(session_id, driver_id, name=driver_id.upper())

    def balance(self, user_id: str) -> int | None:
        with session_scope(self._factory) as session:
            return WalletRepository(session).get_balance(user_id)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)


@pytest.fixture
def seed(session_factory) -> Seeder:
    return Seeder(session_factory)
