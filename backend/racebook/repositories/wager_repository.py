"""Wager persistence helpers."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from racebook.core.errors import NotFoundError
from racebook.domain.models import Wager as WagerRecord
from racebook.domain.models import WagerStatus
from racebook.models import Wager

_LIVE_STATUSES = (WagerStatus.PENDING.value, WagerStatus.ACCEPTED.value)


class WagerRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def add(
        self,
        *,
        user_id: str,
        market_id: str,
        outcome_id: str,
        stake: int,
        status: WagerStatus = WagerStatus.ACCEPTED,
        client_request_id: str | None = None,
        placed_at: datetime | None = None,
    ) -> Wager:
        record = Wager(
            user_id=user_id,
            market_id=market_id,
            outcome_id=outcome_id,
            stake=stake,
            status=status.value,
            client_request_id=client_request_id,
        )
        if placed_at is not None:
            record.placed_at = placed_at
        self._session.add(record)
        self._session.flush()
        return record

    def get(self, wager_id: str, *, for_update: bool = False) -> Wager | None:
        stmt = select(Wager).where(Wager.id == wager_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self._session.execute(stmt).scalars().first()

    def require(self, wager_id: str, *, for_update: bool = False) -> Wager:
        record = self.get(wager_id, for_update=for_update)
        if record is None:
            raise NotFoundError(f"wager {wager_id} not found")
        return record

    def find_by_request(self, user_id: str, client_request_id: str) -> Wager | None:
        stmt = select(Wager).where(Wager.user_id == user_id, Wager.client_request_id == client_request_id)
        return self._session.execute(stmt).scalars().first()

    def list_for_market(
        self,
        market_id: str,
        *,
        live_only: bool = False,
        for_update: bool = False,
    ) -> Sequence[Wager]:
        stmt = select(Wager).where(Wager.market_id == market_id).order_by(Wager.placed_at, Wager.id)
        if live_only:
            stmt = stmt.where(Wager.status.in_(_LIVE_STATUSES))
        if for_update:
            stmt = stmt.with_for_update()
        return self._session.execute(stmt).scalars().all()

    def list_for_user(self, user_id: str) -> Sequence[Wager]:
        stmt = select(Wager).where(Wager.user_id == user_id).order_by(Wager.placed_at.desc())
        return self._session.execute(stmt).scalars().all()

    def list_pending(self, market_id: str | None = None) -> Sequence[Wager]:
        """Wagers awaiting admin review, oldest first."""

        stmt = select(Wager).where(Wager.status == WagerStatus.PENDING.value).order_by(Wager.placed_at, Wager.id)
        if market_id is not None:
            stmt = stmt.where(Wager.market_id == market_id)
        return self._session.execute(stmt).scalars().all()

    def save_review(self, wager: Wager, reviewed: WagerRecord, *, reviewed_at: datetime) -> Wager:
        wager.status = reviewed.status.value
        wager.payout = reviewed.payout
        wager.reviewed_by = reviewed.reviewed_by
        wager.reviewed_at = reviewed_at
        wager.rejection_reason = reviewed.rejection_reason
        if reviewed.status.is_terminal:
            wager.settled_at = reviewed_at
        self._session.flush()
        return wager

    def mark_settled(self, wager: Wager, *, status: WagerStatus, payout: int, settled_at: datetime) -> Wager:
        wager.status = status.value
        wager.payout = payout
        wager.settled_at = settled_at
        return wager
