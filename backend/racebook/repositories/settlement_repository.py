"""Settlement proposal and settlement record persistence."""

from __future__ import annotations

from collections.abc import Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from racebook.core.errors import NotFoundError
from racebook.domain.models import ProposalStatus
from racebook.domain.models import SettlementProposal as ProposalRecord
from racebook.engine.settlement import SettlementResult
from racebook.models import MarketSettlement, SettlementProposal


class SettlementRepository:
    """Encapsulate proposal and settlement-record persistence."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Proposals

    def add_proposal(self, proposal: ProposalRecord) -> SettlementProposal:
        record = SettlementProposal(
            id=proposal.proposal_id,
            market_id=proposal.market_id,
            winning_outcome_id=proposal.winning_outcome_id,
            proposed_by=proposal.proposed_by,
            evidence=proposal.evidence,
            status=proposal.status.value,
        )
        if proposal.proposed_at is not None:
            record.proposed_at = proposal.proposed_at
        self._session.add(record)
        self._session.flush()
        return record

    def get_proposal(self, proposal_id: str, *, for_update: bool = False) -> SettlementProposal | None:
        stmt = select(SettlementProposal).where(SettlementProposal.id == proposal_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self._session.execute(stmt).scalars().first()

    def require_proposal(self, proposal_id: str, *, for_update: bool = False) -> SettlementProposal:
        record = self.get_proposal(proposal_id, for_update=for_update)
        if record is None:
            raise NotFoundError(f"settlement proposal {proposal_id} not found")
        return record

    def pending_for_market(self, market_id: str) -> Sequence[SettlementProposal]:
        stmt = select(SettlementProposal).where(
            SettlementProposal.market_id == market_id,
            SettlementProposal.status == ProposalStatus.PENDING.value,
        )
        return self._session.execute(stmt).scalars().all()

    def list_pending(self) -> Sequence[SettlementProposal]:
        stmt = (
            select(SettlementProposal)
            .where(SettlementProposal.status == ProposalStatus.PENDING.value)
            .order_by(SettlementProposal.proposed_at.desc())
        )
        return self._session.execute(stmt).scalars().all()

    def save_review(self, record: SettlementProposal, proposal: ProposalRecord) -> SettlementProposal:
        record.status = proposal.status.value
        record.reviewed_by = proposal.reviewed_by
        record.reviewed_at = proposal.reviewed_at
        record.rejection_reason = proposal.rejection_reason
        self._session.flush()
        return record

    # ------------------------------------------------------------------
    # Settlement records

    def record_settlement(self, result: SettlementResult, *, proposal_id: str | None = None) -> MarketSettlement:
        record = MarketSettlement(
            market_id=result.market_id,
            proposal_id=proposal_id,
            winning_outcome_id=result.winning_outcome_id,
            total_pool=result.total_pool,
            winning_pool=result.winning_pool,
            rake_amount=result.rake_amount,
            net_pool=result.net_pool,
            total_paid=result.total_paid,
            dust=result.dust,
            refunded=result.refunded,
        )
        self._session.add(record)
        self._session.flush()
        return record

    def get_settlement(self, market_id: str) -> MarketSettlement | None:
        return self._session.get(MarketSettlement, market_id)
