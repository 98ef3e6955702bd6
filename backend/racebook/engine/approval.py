"""Two-phase settlement proposal state machine.

A proposal moves out of ``pending`` exactly once. Only approval moves funds, and the caller
is responsible for applying settlement in the same transaction as the approval.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from racebook.core.errors import (
    PROPOSAL_NOT_PENDING,
    SAME_ACTOR_REVIEW,
    SETTLEMENT_ALREADY_PENDING,
    ConflictError,
    ValidationError,
)
from racebook.domain.models import ProposalStatus, SettlementProposal


def _now(now: datetime | None) -> datetime:
    return now or datetime.now(timezone.utc)


def ensure_no_pending(market_id: str, proposals: Iterable[SettlementProposal]) -> None:
    for proposal in proposals:
        if proposal.market_id == market_id and proposal.status is ProposalStatus.PENDING:
            raise ConflictError(
                f"market {market_id} already has pending proposal {proposal.proposal_id}",
                code=SETTLEMENT_ALREADY_PENDING,
                details={"proposal_id": proposal.proposal_id},
            )


def open_proposal(
    *,
    proposal_id: str,
    market_id: str,
    winning_outcome_id: str | None,
    proposed_by: str,
    evidence: Mapping[str, Any] | None = None,
    now: datetime | None = None,
) -> SettlementProposal:
    if not proposed_by or not proposed_by.strip():
        raise ValidationError("proposer is required")
    return SettlementProposal(
        proposal_id=proposal_id,
        market_id=market_id,
        winning_outcome_id=winning_outcome_id,
        proposed_by=proposed_by,
        status=ProposalStatus.PENDING,
        evidence=dict(evidence) if evidence is not None else None,
        proposed_at=_now(now),
    )


def _ensure_pending(proposal: SettlementProposal) -> None:
    if proposal.status is not ProposalStatus.PENDING:
        raise ConflictError(
            f"proposal {proposal.proposal_id} is {proposal.status.value}, not pending",
            code=PROPOSAL_NOT_PENDING,
            details={"status": proposal.status.value},
        )


def approve(proposal: SettlementProposal, reviewer: str, *, now: datetime | None = None) -> SettlementProposal:
    _ensure_pending(proposal)
    if not reviewer or not reviewer.strip():
        raise ValidationError("reviewer is required")
    if reviewer == proposal.proposed_by:
        raise ConflictError(
            "a proposal must be reviewed by someone other than its proposer",
            code=SAME_ACTOR_REVIEW,
        )
    return replace(proposal, status=ProposalStatus.APPROVED, reviewed_by=reviewer, reviewed_at=_now(now))


def reject(
    proposal: SettlementProposal,
    reviewer: str,
    reason: str | None,
    *,
    now: datetime | None = None,
) -> SettlementProposal:
    _ensure_pending(proposal)
    if not reason or not reason.strip():
        raise ValidationError("a rejection reason is required", code="rejection_reason_required")
    if not reviewer or not reviewer.strip():
        raise ValidationError("reviewer is required")
    if reviewer == proposal.proposed_by:
        raise ConflictError(
            "a proposal must be reviewed by someone other than its proposer",
            code=SAME_ACTOR_REVIEW,
        )
    return replace(
        proposal,
        status=ProposalStatus.REJECTED,
        reviewed_by=reviewer,
        reviewed_at=_now(now),
        rejection_reason=reason.strip(),
    )


def cancel(proposal: SettlementProposal, actor: str, *, now: datetime | None = None) -> SettlementProposal:
    """Withdraw a pending proposal. Only its proposer may do so."""

    _ensure_pending(proposal)
    if actor != proposal.proposed_by:
        raise ConflictError(
            "only the proposer can cancel a proposal",
            code="not_proposer",
        )
    return replace(proposal, status=ProposalStatus.CANCELLED, reviewed_by=actor, reviewed_at=_now(now))
