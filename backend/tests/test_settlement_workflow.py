from __future__ import annotations

from datetime import datetime, timedelta, timezone
import pytest
from sqlalchemy.exc import IntegrityError

from racebook.backends.base import PlacementRequest
from racebook.backends.sql import SqlLedgerBackend
from racebook.core.errors import (
    ConflictError,
    InvariantViolation,
    NotFoundError,
    TransientBackendError,
    ValidationError,
)
from racebook.db import session_scope
from racebook.domain.models import MarketStatus, ProposalStatus, WagerStatus
from racebook.engine import approval
from racebook.repositories import MarketRepository, SettlementRepository, WagerRepository, WalletRepository
from racebook.services import SettlementWorkflow


@pytest.fixture
def backend(session_factory):
    return SqlLedgerBackend(session_factory)


@pytest.fixture
def workflow(session_factory, backend):
    return SettlementWorkflow(session_factory, backend)


@pytest.fixture
def race(seed, backend, session_factory):
    """Three bettors on a closed two-outcome market with a 5% rake."""
    seed.market("m1", rake_bps=500)
    for user_id in ("u1", "u2", "u3"):
        seed.wallet(user_id, 10000)
    backend.place_wager(PlacementRequest("u1", "m1", "alpha", 3000))
    backend.place_wager(PlacementRequest("u2", "m1", "alpha", 2000))
    backend.place_wager(PlacementRequest("u3", "m1", "bravo", 5000))
    backend.close_market("m1")
    return seed


def test_full_two_person_settlement(race, workflow, session_factory):
    proposal = workflow.propose("m1", "alpha", "steward", evidence={"source": "timing"})
    assert proposal.status is ProposalStatus.PENDING
    assert race.balance("u1") == 7000

    approved = workflow.approve(proposal.proposal_id, "chief")

    assert approved.proposal.status is ProposalStatus.APPROVED
    assert approved.proposal.reviewed_by == "chief"
    assert approved.result.rake_amount == 500
    assert approved.result.total_paid == 9500
    assert race.balance("u1") == 12700
    assert race.balance("u2") == 11800
    assert race.balance("u3") == 5000

    with session_scope(session_factory) as session:
        market = MarketRepository(session).require("m1")
        assert market.status == MarketStatus.SETTLED.value
        record = SettlementRepository(session).get_settlement("m1")
        assert record.proposal_id == proposal.proposal_id
        assert (record.total_pool, record.net_pool, record.dust) == (10000, 9500, 0)
        statuses = {wager.user_id: (wager.status, wager.payout) for wager in WagerRepository(session).list_for_market("m1")}
        assert statuses == {"u1": ("won", 5700), "u2": ("won", 3800), "u3": ("lost", 0)}
        kinds = [txn.kind for txn in WalletRepository(session).list_transactions("u1")]
        assert kinds == ["wager", "payout"]


def test_unbacked_winner_refunds_stakes(race, workflow):
    with pytest.raises(ValidationError):
        workflow.propose("m1", "charlie", "steward")

    proposal = workflow.propose("m1", None, "steward", evidence={"note": "race abandoned"})
    result = workflow.approve(proposal.proposal_id, "chief").result

    assert result.refunded
    assert result.rake_amount == 0
    assert {race.balance(user_id) for user_id in ("u1", "u2", "u3")} == {10000}


def test_propose_requires_closed_market(seed, workflow):
    seed.market("m1")
    with pytest.raises(ValidationError) as excinfo:
        workflow.propose("m1", "alpha", "steward")
    assert excinfo.value.code == "market_not_closed"


def test_propose_rejects_foreign_outcome(race, workflow):
    with pytest.raises(ValidationError) as excinfo:
        workflow.propose("m1", "zulu", "steward")
    assert excinfo.value.code == "invalid_target"


def test_propose_unknown_market(workflow):
    with pytest.raises(NotFoundError):
        workflow.propose("missing", "alpha", "steward")


def test_only_one_pending_proposal_per_market(race, workflow):
    workflow.propose("m1", "alpha", "steward")
    with pytest.raises(ConflictError) as excinfo:
        workflow.propose("m1", "bravo", "marshal")
    assert excinfo.value.code == "settlement_already_pending"


def test_pending_uniqueness_is_enforced_by_the_database(race, session_factory):
    """Two racing proposers that both pass the read check still collide on the partial index."""
    with pytest.raises(IntegrityError):
        with session_scope(session_factory) as session:
            proposals = SettlementRepository(session)
            for proposal_id, proposer in (("p1", "steward"), ("p2", "marshal")):
                proposals.add_proposal(
                    approval.open_proposal(
                        proposal_id=proposal_id,
                        market_id="m1",
                        winning_outcome_id="alpha",
                        proposed_by=proposer,
                    )
                )


def test_proposer_cannot_approve(race, workflow):
    proposal = workflow.propose("m1", "alpha", "steward")
    with pytest.raises(ConflictError) as excinfo:
        workflow.approve(proposal.proposal_id, "steward")
    assert excinfo.value.code == "same_actor_review"
    assert race.balance("u1") == 7000


def test_reject_requires_reason_then_allows_new_proposal(race, workflow):
    proposal = workflow.propose("m1", "alpha", "steward")
    with pytest.raises(ValidationError):
        workflow.reject(proposal.proposal_id, "chief", "  ")

    rejected = workflow.reject(proposal.proposal_id, "chief", "wrong car number")
    assert rejected.status is ProposalStatus.REJECTED
    assert rejected.rejection_reason == "wrong car number"

    replacement = workflow.propose("m1", "bravo", "steward")
    assert replacement.status is ProposalStatus.PENDING


def test_approved_proposal_cannot_be_reviewed_again(race, workflow):
    proposal = workflow.propose("m1", "alpha", "steward")
    workflow.approve(proposal.proposal_id, "chief")

    with pytest.raises(ConflictError) as excinfo:
        workflow.approve(proposal.proposal_id, "chief")
    assert excinfo.value.code == "proposal_not_pending"
    with pytest.raises(ConflictError):
        workflow.reject(proposal.proposal_id, "chief", "too late")
    assert race.balance("u1") == 12700


def test_cancel_by_proposer(race, workflow):
    proposal = workflow.propose("m1", "alpha", "steward")
    with pytest.raises(ConflictError):
        workflow.cancel(proposal.proposal_id, "chief")
    cancelled = workflow.cancel(proposal.proposal_id, "steward")
    assert cancelled.status is ProposalStatus.CANCELLED
    assert workflow.list_pending() == []


def test_failed_settlement_leaves_proposal_pending(race, workflow, session_factory, monkeypatch):
    def lost_connection(*args, **kwargs):
        raise TransientBackendError("lost connection")

    monkeypatch.setattr("racebook.backends.sql.calculate_settlement", lost_connection)
    proposal = workflow.propose("m1", "alpha", "steward")

    with pytest.raises(TransientBackendError):
        workflow.approve(proposal.proposal_id, "chief")

    [pending] = workflow.list_pending()
    assert pending.proposal_id == proposal.proposal_id
    assert pending.status is ProposalStatus.PENDING
    assert race.balance("u1") == 7000
    with session_scope(session_factory) as session:
        assert MarketRepository(session).require("m1").status == MarketStatus.CLOSED.value
        assert SettlementRepository(session).get_settlement("m1") is None


def test_settlement_only_moves_funds_through_approval():
    assert not hasattr(SqlLedgerBackend, "settle_market")


def test_approval_refuses_market_reopened_behind_the_proposal(race, workflow, session_factory):
    proposal = workflow.propose("m1", "alpha", "steward")
    with session_scope(session_factory) as session:
        markets = MarketRepository(session)
        markets.set_status(markets.require("m1"), MarketStatus.OPEN)

    with pytest.raises(InvariantViolation):
        workflow.approve(proposal.proposal_id, "chief")
    assert [pending.proposal_id for pending in workflow.list_pending()] == [proposal.proposal_id]


def test_settled_market_cannot_be_settled_again(race, workflow, session_factory):
    first = workflow.propose("m1", "bravo", "steward")
    workflow.approve(first.proposal_id, "chief")
    assert race.balance("u3") == 14500

    with pytest.raises(ValidationError) as excinfo:
        workflow.propose("m1", "bravo", "steward")
    assert excinfo.value.code == "market_not_closed"
    assert race.balance("u3") == 14500
    with session_scope(session_factory) as session:
        assert all(
            WagerStatus(wager.status).is_terminal for wager in WagerRepository(session).list_for_market("m1")
        )


def test_list_pending_newest_first(seed, session_factory, workflow):
    base = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
    for index, market_id in enumerate(("m1", "m2", "m3")):
        seed.market(market_id, status=MarketStatus.CLOSED)
        with session_scope(session_factory) as session:
            SettlementRepository(session).add_proposal(
                approval.open_proposal(
                    proposal_id=f"p-{market_id}",
                    market_id=market_id,
                    winning_outcome_id="alpha",
                    proposed_by="steward",
                    now=base + timedelta(minutes=index),
                )
            )

    assert [proposal.proposal_id for proposal in workflow.list_pending()] == ["p-m3", "p-m2", "p-m1"]
