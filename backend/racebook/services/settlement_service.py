"""Two-person settlement: one actor proposes a winner, another approves or rejects it.

Approval is the only path that moves funds. The backend commits the proposal status change
and the payout in one transaction, so a failed settlement leaves the proposal pending.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from racebook.backends.base import SettlementApproval, SettlementBackend
from racebook.backends.sql import SqlLedgerBackend
from racebook.domain.models import SettlementProposal


class SettlementWorkflow:
    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        backend: SettlementBackend | None = None,
    ) -> None:
        self._backend = backend or SqlLedgerBackend(session_factory)

    def propose(
        self,
        market_id: str,
        winning_outcome_id: str | None,
        proposer: str,
        evidence: Mapping[str, Any] | None = None,
    ) -> SettlementProposal:
        proposal = self._backend.propose_settlement(market_id, winning_outcome_id, proposer, evidence)
        logger.info(
            "Settlement proposed for market {} winner={} by {} (proposal {})",
            market_id,
            winning_outcome_id,
            proposer,
            proposal.proposal_id,
        )
        return proposal

    def approve(self, proposal_id: str, reviewer: str) -> SettlementApproval:
        outcome = self._backend.approve_settlement(proposal_id, reviewer)
        logger.info("Proposal {} approved by {}; market {} settled", proposal_id, reviewer, outcome.proposal.market_id)
        return outcome

    def reject(self, proposal_id: str, reviewer: str, reason: str | None) -> SettlementProposal:
        rejected = self._backend.reject_settlement(proposal_id, reviewer, reason)
        logger.info("Proposal {} rejected by {}: {}", proposal_id, reviewer, rejected.rejection_reason)
        return rejected

    def cancel(self, proposal_id: str, actor: str) -> SettlementProposal:
        cancelled = self._backend.cancel_settlement(proposal_id, actor)
        logger.info("Proposal {} cancelled by {}", proposal_id, actor)
        return cancelled

    def list_pending(self) -> list[SettlementProposal]:
        return self._backend.list_pending_settlements()
