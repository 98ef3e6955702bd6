"""Market administration and pool read models."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Any

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from racebook.backends.base import SettlementBackend
from racebook.backends.sql import SqlLedgerBackend, translate_db_errors
from racebook.core.config import settings
from racebook.core.errors import NotFoundError, ValidationError
from racebook.db import SessionLocal, session_scope
from racebook.domain.models import Market, MarketStatus
from racebook.domain.normalize import normalize_market
from racebook.engine.pools import PoolLedger
from racebook.engine.quotes import OutcomeOdds, Quote, odds_board, quote_outcome
from racebook.repositories import MarketRepository, OutcomeSpec


class MarketService:
    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        backend: SettlementBackend | None = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._backend = backend or SqlLedgerBackend(self._session_factory)

    # ------------------------------------------------------------------
    # Administration

    def create_market(
        self,
        *,
        name: str,
        outcomes: Sequence[OutcomeSpec | str],
        rake_bps: int | None = None,
        closes_at: datetime | None = None,
        session_id: str | None = None,
        market_id: str | None = None,
    ) -> Market:
        rake = settings.default_rake_bps if rake_bps is None else rake_bps
        if not 0 <= rake <= settings.max_rake_bps:
            raise ValidationError(f"rake_bps must be within 0-{settings.max_rake_bps}, got {rake}")
        specs = [spec if isinstance(spec, OutcomeSpec) else OutcomeSpec(label=spec) for spec in outcomes]
        if len(specs) < 2:
            raise ValidationError("a market needs at least two outcomes")

        with translate_db_errors("create_market"):
            with session_scope(self._session_factory) as session:
                record = MarketRepository(session).create_market(
                    name=name,
                    outcomes=specs,
                    rake_bps=rake,
                    closes_at=closes_at,
                    session_id=session_id,
                    market_id=market_id,
                )
                market = normalize_market(record)
        logger.info("Created market {} '{}' with {} outcomes rake_bps={}", market.market_id, name, len(specs), rake)
        return market

    def close_market(self, market_id: str) -> Market:
        """Stop accepting wagers. Closing an already-closed market is a no-op."""

        return self._backend.close_market(market_id)

    # ------------------------------------------------------------------
    # Read models

    def list_markets(self, status: MarketStatus | None = None) -> list[Market]:
        with translate_db_errors("list_markets"):
            with session_scope(self._session_factory) as session:
                return [normalize_market(row) for row in MarketRepository(session).list_markets(status=status)]

    def get_market(self, market_id: str) -> Market:
        with translate_db_errors("get_market"):
            with session_scope(self._session_factory) as session:
                return MarketRepository(session).load(market_id)

    def pool_snapshot(self, market_id: str) -> tuple[Market, PoolLedger]:
        with translate_db_errors("pool_snapshot"):
            with session_scope(self._session_factory) as session:
                markets = MarketRepository(session)
                market = markets.load(market_id)
                totals: dict[str, tuple[int, int]] = {outcome_id: (0, 0) for outcome_id in market.outcome_ids}
                totals.update(markets.outcome_totals(market_id))
        return market, PoolLedger.from_totals(market_id, totals)

    def quote(self, market_id: str, outcome_id: str, stake: Any) -> Quote | None:
        market, ledger = self.pool_snapshot(market_id)
        if market.find_outcome(outcome_id) is None:
            raise NotFoundError(f"outcome {outcome_id} not found in market {market_id}")
        return quote_outcome(ledger, outcome_id, market.rake_bps, stake)

    def odds(self, market_id: str) -> tuple[PoolLedger, list[OutcomeOdds]]:
        market, ledger = self.pool_snapshot(market_id)
        labels = {outcome.outcome_id: outcome.label for outcome in market.outcomes}
        return ledger, odds_board(ledger, market.rake_bps, labels)
