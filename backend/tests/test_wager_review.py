from __future__ import annotations

import pytest

from racebook.backends.base import PlacementRequest
from racebook.backends.sql import SqlLedgerBackend
from racebook.core.errors import ConflictError, NotFoundError, ValidationError
from racebook.db import session_scope
from racebook.domain.models import Wager, WagerStatus
from racebook.engine import wager_review
from racebook.repositories import WagerRepository, WalletRepository
from racebook.services import MarketService, SettlementWorkflow, WagerService


def _wager(status: WagerStatus = WagerStatus.PENDING) -> Wager:
    return Wager(
        wager_id="w1",
        user_id="u1",
        market_id="m1",
        outcome_id="alpha",
        stake=5000,
        status=status,
    )


@pytest.mark.parametrize(
    ("stake", "threshold", "expected"),
    [
        (4999, 5000, WagerStatus.ACCEPTED),
        (5000, 5000, WagerStatus.PENDING),
        (1_000_000, None, WagerStatus.ACCEPTED),
    ],
)
def test_initial_status(stake, threshold, expected):
    assert wager_review.initial_status(stake, threshold) is expected


def test_reject_refunds_stake_and_keeps_reason():
    rejected = wager_review.reject_wager(_wager(), "admin", "  over house limit ")
    assert rejected.status is WagerStatus.REFUNDED
    assert rejected.payout == 5000
    assert (rejected.reviewed_by, rejected.rejection_reason) == ("admin", "over house limit")
    assert wager_review.reject_wager(_wager(), "admin", " ").rejection_reason is None


@pytest.mark.parametrize("status", [WagerStatus.ACCEPTED, WagerStatus.WON, WagerStatus.REFUNDED])
def test_only_pending_wagers_are_reviewed(status):
    with pytest.raises(ConflictError) as excinfo:
        wager_review.approve_wager(_wager(status), "admin")
    assert excinfo.value.code == "wager_not_pending"


def test_review_needs_a_reviewer():
    with pytest.raises(ValidationError):
        wager_review.approve_wager(_wager(), " ")


def test_ensure_reviewed_lists_outstanding_wagers():
    wager_review.ensure_reviewed("m1", [_wager(WagerStatus.ACCEPTED)])
    with pytest.raises(ConflictError) as excinfo:
        wager_review.ensure_reviewed("m1", [_wager(WagerStatus.ACCEPTED), _wager()])
    assert excinfo.value.code == "pending_wagers_unreviewed"
    assert excinfo.value.details == {"wager_ids": ["w1"]}


@pytest.fixture
def backend(session_factory):
    return SqlLedgerBackend(session_factory, review_threshold=5000)


@pytest.fixture
def service(backend, session_factory):
    return WagerService(backend, session_factory=session_factory)


@pytest.fixture
def book(seed, backend):
    seed.market("m1")
    seed.wallet("u1", 10000)
    seed.wallet("u2", 10000)
    return seed


def test_large_stake_is_held_for_review(book, service):
    small = service.place_wager(PlacementRequest("u1", "m1", "alpha", 1000))
    large = service.place_wager(PlacementRequest("u2", "m1", "bravo", 6000))

    assert small.status is WagerStatus.ACCEPTED
    assert large.status is WagerStatus.PENDING
    assert large.new_balance == 4000
    assert [wager.wager_id for wager in service.list_pending()] == [large.wager_id]
    assert service.list_pending("elsewhere") == []


def test_approve_makes_pending_wager_accepted(book, service, session_factory):
    receipt = service.place_wager(PlacementRequest("u2", "m1", "bravo", 6000))

    approved = service.approve_pending(receipt.wager_id, "admin")

    assert approved.status is WagerStatus.ACCEPTED
    assert approved.reviewed_by == "admin"
    assert service.list_pending() == []
    assert book.balance("u2") == 4000
    with session_scope(session_factory) as session:
        record = WagerRepository(session).require(receipt.wager_id)
        assert record.reviewed_at is not None
        assert record.settled_at is None


def test_reject_refunds_and_leaves_the_pool(book, service, session_factory):
    service.place_wager(PlacementRequest("u1", "m1", "alpha", 1000))
    receipt = service.place_wager(PlacementRequest("u2", "m1", "bravo", 6000))

    rejected = service.reject_pending(receipt.wager_id, "admin", "over house limit")

    assert rejected.status is WagerStatus.REFUNDED
    assert book.balance("u2") == 10000
    _, pool = MarketService(session_factory).pool_snapshot("m1")
    assert pool.total == 1000
    assert pool.contribution("bravo") == 0
    with session_scope(session_factory) as session:
        record = WagerRepository(session).require(receipt.wager_id)
        assert (record.status, record.payout, record.rejection_reason) == ("refunded", 6000, "over house limit")
        kinds = [txn.kind for txn in WalletRepository(session).list_transactions("u2")]
        assert kinds == ["wager", "refund"]


def test_reviewed_wager_cannot_be_reviewed_again(book, service):
    receipt = service.place_wager(PlacementRequest("u2", "m1", "bravo", 6000))
    service.reject_pending(receipt.wager_id, "admin")

    with pytest.raises(ConflictError) as excinfo:
        service.reject_pending(receipt.wager_id, "admin")
    assert excinfo.value.code == "wager_not_pending"
    assert book.balance("u2") == 10000


def test_unknown_wager_is_not_found(book, service):
    with pytest.raises(NotFoundError):
        service.approve_pending("missing", "admin")


def test_settlement_waits_for_pending_review(book, backend, service, session_factory):
    service.place_wager(PlacementRequest("u1", "m1", "alpha", 1000))
    receipt = service.place_wager(PlacementRequest("u2", "m1", "bravo", 6000))
    backend.close_market("m1")
    workflow = SettlementWorkflow(session_factory, backend)
    proposal = workflow.propose("m1", "alpha", "steward")

    with pytest.raises(ConflictError) as excinfo:
        workflow.approve(proposal.proposal_id, "chief")
    assert excinfo.value.code == "pending_wagers_unreviewed"
    assert excinfo.value.details == {"wager_ids": [receipt.wager_id]}
    assert [pending.proposal_id for pending in workflow.list_pending()] == [proposal.proposal_id]

    service.approve_pending(receipt.wager_id, "admin")
    result = workflow.approve(proposal.proposal_id, "chief").result

    assert result.total_pool == 7000
    assert book.balance("u1") == 9000 + 7000
    assert book.balance("u2") == 4000
