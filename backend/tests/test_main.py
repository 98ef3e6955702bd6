from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from racebook import main
from racebook.backends import close_shared_backends
from racebook.backends.sql import SqlLedgerBackend
from racebook.core.config import Settings
from racebook.core.errors import TransientBackendError
from racebook.domain.models import MarketStatus
from racebook.main import _ledger_backend, _session_factory, _wager_service, app


@pytest.fixture
def client(session_factory):
    """Test client bound to the in-memory database; overrides are cleared after each test."""
    app.dependency_overrides[_session_factory] = lambda: session_factory
    yield TestClient(app)
    app.dependency_overrides.clear()
    close_shared_backends()


def _as(user_id: str) -> dict[str, str]:
    return {"X-User-Id": user_id}


def test_healthcheck(client):
    """Verify the healthcheck endpoint returns a successful response."""
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_get_market(client, seed):
    seed.market("m1", rake_bps=500)

    response = client.get("/markets/m1")

    assert response.status_code == 200
    body = response.json()
    assert body["market_id"] == "m1"
    assert body["status"] == "open"
    assert [outcome["outcome_id"] for outcome in body["outcomes"]] == ["alpha", "bravo"]


def test_get_market_not_found(client):
    response = client.get("/markets/missing")
    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


def test_place_wager_and_read_pool(client, seed):
    """A placed wager shows up in the pool with refreshed odds."""
    seed.market("m1")
    seed.wallet("u1", 1000)
    seed.wallet("u2", 1000)

    first = client.post("/wagers", json={"market_id": "m1", "outcome_id": "alpha", "stake": 300}, headers=_as("u1"))
    second = client.post("/wagers", json={"market_id": "m1", "outcome_id": "bravo", "stake": 100}, headers=_as("u2"))

    assert first.status_code == 201
    assert first.json()["new_balance"] == 700
    assert second.status_code == 201

    pool = client.get("/markets/m1/pool").json()
    assert pool["total"] == 400
    assert [row["outcome_id"] for row in pool["outcomes"]] == ["alpha", "bravo"]
    assert pool["outcomes"][1]["odds"] == pytest.approx(4.0)


def test_place_wager_requires_user_header(client, seed):
    seed.market("m1")
    response = client.post("/wagers", json={"market_id": "m1", "outcome_id": "alpha", "stake": 100})
    assert response.status_code == 422


def test_place_wager_insufficient_funds(client, seed):
    seed.market("m1")
    seed.wallet("u1", 50)

    response = client.post("/wagers", json={"market_id": "m1", "outcome_id": "alpha", "stake": 100}, headers=_as("u1"))

    assert response.status_code == 400
    assert response.json()["code"] == "insufficient_funds"


def test_duplicate_placement_is_conflict(client, seed):
    seed.market("m1")
    seed.wallet("u1", 1000)
    payload = {"market_id": "m1", "outcome_id": "alpha", "stake": 100, "client_request_id": "req-1"}

    assert client.post("/wagers", json=payload, headers=_as("u1")).status_code == 201
    response = client.post("/wagers", json=payload, headers=_as("u1"))

    assert response.status_code == 409
    assert response.json()["code"] == "duplicate_placement"


def test_transient_failure_maps_to_503(client):
    """Verify backend outages surface as retryable responses."""
    mock_service = MagicMock()
    mock_service.place_wager.side_effect = TransientBackendError("database unavailable")
    app.dependency_overrides[_wager_service] = lambda: mock_service

    response = client.post("/wagers", json={"market_id": "m1", "outcome_id": "alpha", "stake": 100}, headers=_as("u1"))

    assert response.status_code == 503
    assert response.json()["code"] == "transient_failure"


def test_quote(client, seed):
    seed.market("m1")

    response = client.post("/markets/m1/quote", json={"outcome_id": "alpha", "stake": 500})

    assert response.status_code == 200
    body = response.json()
    assert body["quote"]["estimated_payout"] == pytest.approx(500.0)
    assert body["quote"]["baseline_multiplier"] is None


def test_quote_for_zero_stake_is_empty(client, seed):
    seed.market("m1")
    response = client.post("/markets/m1/quote", json={"outcome_id": "alpha", "stake": 0})
    assert response.status_code == 200
    assert response.json()["quote"] is None


def test_quote_unknown_outcome(client, seed):
    seed.market("m1")
    response = client.post("/markets/m1/quote", json={"outcome_id": "zulu", "stake": 10})
    assert response.status_code == 404


def test_settlement_flow(client, seed):
    seed.market("m1", rake_bps=500)
    for user_id, outcome_id, stake in (("u1", "alpha", 3000), ("u2", "alpha", 2000), ("u3", "bravo", 5000)):
        seed.wallet(user_id, 10000)
        response = client.post(
            "/wagers", json={"market_id": "m1", "outcome_id": outcome_id, "stake": stake}, headers=_as(user_id)
        )
        assert response.status_code == 201

    early = client.post("/markets/m1/proposals", json={"winning_outcome_id": "alpha"}, headers=_as("steward"))
    assert early.status_code == 400
    assert early.json()["code"] == "market_not_closed"

    closed = client.post("/markets/m1/close", headers=_as("steward"))
    assert closed.json()["status"] == MarketStatus.CLOSED.value

    proposal = client.post(
        "/markets/m1/proposals",
        json={"winning_outcome_id": "alpha", "evidence": {"source": "timing"}},
        headers=_as("steward"),
    )
    assert proposal.status_code == 201
    proposal_id = proposal.json()["proposal_id"]
    assert [row["proposal_id"] for row in client.get("/proposals").json()] == [proposal_id]

    own = client.post(f"/proposals/{proposal_id}/approve", headers=_as("steward"))
    assert own.status_code == 409
    assert own.json()["code"] == "same_actor_review"

    approved = client.post(f"/proposals/{proposal_id}/approve", headers=_as("chief"))
    assert approved.status_code == 200
    body = approved.json()
    assert body["proposal"]["status"] == "approved"
    assert body["settlement"]["rake_amount"] == 500
    assert body["settlement"]["total_paid"] == 9500
    assert seed.balance("u1") == 12700
    assert seed.balance("u2") == 11800
    assert client.get("/markets/m1").json()["status"] == "settled"


def test_reject_and_cancel(client, seed):
    seed.market("m1", status=MarketStatus.CLOSED)
    proposal_id = client.post(
        "/markets/m1/proposals", json={"winning_outcome_id": "alpha"}, headers=_as("steward")
    ).json()["proposal_id"]

    rejected = client.post(f"/proposals/{proposal_id}/reject", json={"reason": "wrong car"}, headers=_as("chief"))
    assert rejected.json()["status"] == "rejected"
    assert rejected.json()["rejection_reason"] == "wrong car"

    second_id = client.post(
        "/markets/m1/proposals", json={"winning_outcome_id": "bravo"}, headers=_as("steward")
    ).json()["proposal_id"]
    cancelled = client.post(f"/proposals/{second_id}/cancel", headers=_as("steward"))
    assert cancelled.json()["status"] == "cancelled"
    assert client.get("/proposals").json() == []


def test_log_and_invalidate_laps(client, seed):
    seed.driver("s1", "d1")

    first = client.post("/sessions/s1/drivers/d1/laps", json={"lap_time": "1:05.321"})
    assert first.status_code == 201
    assert first.json()["lap_time_ms"] == 65321
    assert first.json()["aggregate"]["laps"] == 1

    second = client.post("/sessions/s1/drivers/d1/laps", json={"lap_time_ms": 64000})
    assert second.json()["lap_number"] == 2
    assert second.json()["aggregate"]["best_lap_ms"] == 64000

    invalidated = client.post("/sessions/s1/drivers/d1/laps/invalidate", json={"mode": "remove_lap"})
    assert invalidated.status_code == 200
    body = invalidated.json()
    assert body["invalidated"] is True
    assert body["lap_number"] == 2
    assert body["aggregate"] == {
        "session_id": "s1",
        "driver_id": "d1",
        "laps": 1,
        "last_lap_ms": 65321,
        "best_lap_ms": 65321,
        "total_time_ms": 65321,
    }


def test_invalidate_without_laps(client, seed):
    seed.driver("s1", "d1")
    response = client.post("/sessions/s1/drivers/d1/laps/invalidate")
    assert response.status_code == 200
    assert response.json() == {
        "invalidated": False,
        "lap_id": None,
        "lap_number": None,
        "mode": "time_only",
        "aggregate": None,
    }


def test_bad_lap_entry(client, seed):
    seed.driver("s1", "d1")
    response = client.post("/sessions/s1/drivers/d1/laps", json={"lap_time": "1:75"})
    assert response.status_code == 400


def test_lap_for_unknown_driver(client):
    response = client.post("/sessions/s1/drivers/ghost/laps", json={"lap_time_ms": 60000})
    assert response.status_code == 404


def test_list_markets_filters_by_status(client, seed):
    seed.market("m1")
    seed.market("m2", status=MarketStatus.CLOSED)

    everything = client.get("/markets").json()
    closed = client.get("/markets", params={"status": "closed"}).json()

    assert {market["market_id"] for market in everything} == {"m1", "m2"}
    assert [market["market_id"] for market in closed] == ["m2"]


def test_list_my_wagers(client, seed):
    seed.market("m1")
    seed.wallet("u1", 1000)
    seed.wallet("u2", 1000)
    client.post("/wagers", json={"market_id": "m1", "outcome_id": "alpha", "stake": 100}, headers=_as("u1"))
    client.post("/wagers", json={"market_id": "m1", "outcome_id": "bravo", "stake": 200}, headers=_as("u2"))

    response = client.get("/wagers", headers=_as("u1"))

    assert response.status_code == 200
    [wager] = response.json()
    assert wager["outcome_id"] == "alpha"
    assert wager["stake"] == 100
    assert wager["status"] == "accepted"


def test_backend_is_shared_across_requests_and_closed_on_shutdown(session_factory, monkeypatch):
    monkeypatch.setattr(
        main,
        "settings",
        Settings(
            _env_file=None,
            ledger_backend="supabase",
            supabase_url="https://project.supabase.co",
            supabase_service_role_key="service-key",
        ),
    )

    backend = _ledger_backend(session_factory)
    assert _ledger_backend(session_factory) is backend
    assert main._wager_service(session_factory, backend)._backend is backend

    main.on_shutdown()

    assert backend.client.is_closed
    assert _ledger_backend(session_factory) is not backend
    main.on_shutdown()


def test_pending_wager_review(client, seed, session_factory):
    app.dependency_overrides[_ledger_backend] = lambda: SqlLedgerBackend(session_factory, review_threshold=500)
    seed.market("m1")
    seed.wallet("u1", 1000)
    seed.wallet("u2", 1000)

    placed = client.post("/wagers", json={"market_id": "m1", "outcome_id": "alpha", "stake": 600}, headers=_as("u1"))
    other = client.post("/wagers", json={"market_id": "m1", "outcome_id": "bravo", "stake": 700}, headers=_as("u2"))
    assert placed.status_code == 201
    assert placed.json()["status"] == "pending"

    pending = client.get("/admin/wagers/pending", params={"market_id": "m1"})
    assert [wager["wager_id"] for wager in pending.json()] == [placed.json()["wager_id"], other.json()["wager_id"]]

    approved = client.post(f"/wagers/{placed.json()['wager_id']}/approve", headers=_as("admin"))
    assert approved.status_code == 200
    assert (approved.json()["status"], approved.json()["reviewed_by"]) == ("accepted", "admin")

    rejected = client.post(
        f"/wagers/{other.json()['wager_id']}/reject", json={"reason": "over limit"}, headers=_as("admin")
    )
    assert rejected.status_code == 200
    assert (rejected.json()["status"], rejected.json()["rejection_reason"]) == ("refunded", "over limit")
    assert seed.balance("u2") == 1000

    again = client.post(f"/wagers/{other.json()['wager_id']}/reject", headers=_as("admin"))
    assert again.status_code == 409
    assert again.json()["code"] == "wager_not_pending"
    assert client.get("/admin/wagers/pending").json() == []
