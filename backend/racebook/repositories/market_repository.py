"""Market and outcome data access helpers."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from racebook.core.errors import NotFoundError
from racebook.domain.models import Market as MarketRecord
from racebook.domain.models import MarketStatus, WagerStatus
from racebook.domain.normalize import normalize_market
from racebook.models import Market, Outcome, Wager

from .types import OutcomeSpec


class MarketRepository:
    """Encapsulate market persistence concerns."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Mutations

    def create_market(
        self,
        *,
        name: str,
        outcomes: Iterable[OutcomeSpec],
        rake_bps: int = 0,
        closes_at: datetime | None = None,
        session_id: str | None = None,
        market_id: str | None = None,
    ) -> Market:
        record = Market(
            name=name,
            rake_bps=rake_bps,
            closes_at=closes_at,
            session_id=session_id,
            status=MarketStatus.OPEN.value,
        )
        if market_id is not None:
            record.id = market_id
        for index, spec in enumerate(outcomes):
            outcome = Outcome(label=spec.label, driver_id=spec.driver_id, sort_order=index)
            if spec.outcome_id is not None:
                outcome.id = spec.outcome_id
            record.outcomes.append(outcome)
        self._session.add(record)
        self._session.flush()
        return record

    def set_status(self, market: Market, status: MarketStatus) -> Market:
        market.status = status.value
        self._session.flush()
        return market

    # ------------------------------------------------------------------
    # Queries

    def get(self, market_id: str, *, for_update: bool = False) -> Market | None:
        stmt = select(Market).where(Market.id == market_id).options(selectinload(Market.outcomes))
        if for_update:
            stmt = stmt.with_for_update()
        return self._session.execute(stmt).scalars().first()

    def require(self, market_id: str, *, for_update: bool = False) -> Market:
        market = self.get(market_id, for_update=for_update)
        if market is None:
            raise NotFoundError(f"market {market_id} not found")
        return market

    def load(self, market_id: str) -> MarketRecord:
        return normalize_market(self.require(market_id))

    def list_markets(self, *, status: MarketStatus | None = None) -> Sequence[Market]:
        stmt = select(Market).options(selectinload(Market.outcomes)).order_by(Market.created_at.desc())
        if status is not None:
            stmt = stmt.where(Market.status == status.value)
        return self._session.execute(stmt).scalars().all()

    def outcome_totals(self, market_id: str) -> dict[str, tuple[int, int]]:
        """Aggregate live stake per outcome as ``{outcome_id: (total, wager_count)}``."""

        stmt = (
            select(Wager.outcome_id, func.coalesce(func.sum(Wager.stake), 0), func.count(Wager.id))
            .where(Wager.market_id == market_id, Wager.status != WagerStatus.REFUNDED.value)
            .group_by(Wager.outcome_id)
        )
        return {outcome_id: (int(total), int(count)) for outcome_id, total, count in self._session.execute(stmt)}
