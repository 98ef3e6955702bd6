"""Atomic ledger operations executed as Supabase PostgREST remote procedures."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any

import httpx
from loguru import logger

from racebook.core.config import settings
from racebook.core.errors import (
    DUPLICATE_PLACEMENT,
    INSUFFICIENT_FUNDS,
    INVALID_WAGER,
    MARKET_CLOSED,
    SAME_ACTOR_REVIEW,
    SETTLEMENT_ALREADY_PENDING,
    ConflictError,
    NotFoundError,
    RacebookError,
    RpcUnavailableError,
    TransientBackendError,
    UnknownBackendError,
    ValidationError,
    WagerRejected,
)
from racebook.domain.models import InvalidationMode, Market, SettlementProposal, Wager, WagerStatus
from racebook.domain.normalize import (
    normalize_driver_aggregate,
    normalize_market,
    normalize_proposal,
    normalize_wager,
    normalize_wagers,
)
from racebook.engine.settlement import SettlementResult

from .base import LapInvalidationResult, LapLogResult, PlacementReceipt, PlacementRequest, SettlementApproval

# PostgREST codes for a function that is missing from the schema cache or has no matching signature.
MISSING_RPC_CODES = frozenset({"PGRST116", "PGRST202", "PGRST204"})
_TRANSIENT_STATUSES = frozenset({408, 429, 502, 503, 504})
_PAYOUT_POLICY = "refund_if_empty"


@contextmanager
def _decoding(name: str) -> Iterator[None]:
    """Report a payload the caller cannot map as an unclassified backend failure."""

    try:
        yield
    except ValidationError as exc:
        raise UnknownBackendError(f"{name} returned a malformed payload: {exc.message}") from exc
    except (KeyError, TypeError, ValueError) as exc:
        raise UnknownBackendError(f"{name} returned a malformed payload: {exc}") from exc


class SupabaseRpcBackend:
    """Thin wrapper around the ``/rest/v1/rpc`` endpoints of a Supabase project."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        service_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url or (str(settings.supabase_url) if settings.supabase_url else None)
        if not self.base_url:
            raise ValueError("SUPABASE_URL must be configured to use the Supabase ledger backend")
        key = service_key or settings.supabase_service_role_key
        if not key:
            raise ValueError("SUPABASE_SERVICE_ROLE_KEY must be configured to use the Supabase ledger backend")
        self.timeout = timeout or settings.rpc_timeout_seconds
        self.client = httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=transport,
            headers={
                "apikey": key,
                "Authorization": f"Bearer {key}",
                "Content-Type": "application/json",
            },
        )

    # ------------------------------------------------------------------
    # Transport

    def _send(self, label: str, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientBackendError(f"{label} timed out") from exc
        except httpx.TransportError as exc:
            raise TransientBackendError(f"{label} could not be reached: {exc}") from exc
        except httpx.RequestError as exc:
            logger.error("Supabase request {} failed: {}", label, exc)
            raise UnknownBackendError(f"{label} failed: {exc.__class__.__name__}") from exc

        if response.status_code >= 400:
            raise self._classify_error(label, response)
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise UnknownBackendError(f"{label} returned a non-JSON body") from exc

    def _rpc(self, name: str, params: dict[str, Any]) -> Any:
        logger.debug("Supabase RPC {} params={}", name, sorted(params))
        return self._send(f"remote procedure {name}", "POST", f"/rest/v1/rpc/{name}", json=params)

    def _get(self, path: str, params: dict[str, Any]) -> Any:
        return self._send(f"GET {path}", "GET", path, params=params)

    @staticmethod
    def _classify_error(name: str, response: httpx.Response) -> RacebookError:
        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            body = {}
        code = str(body.get("code") or "")
        message = str(body.get("message") or response.text or f"HTTP {response.status_code}")
        details = {"status": response.status_code, "code": code or None}

        if code in MISSING_RPC_CODES:
            return RpcUnavailableError(f"{name} is unavailable", details=details)
        error = classify_message(message, details=details)
        if error is not None:
            return error
        if code == "23505":
            return ConflictError(message, details=details)
        if code == "P0002":
            return NotFoundError(message, details=details)
        if response.status_code in _TRANSIENT_STATUSES:
            return TransientBackendError(message, details=details)
        if code == "P0001" or code.startswith("22"):
            return ValidationError(message, details=details)
        logger.error("Unclassified Supabase failure from {}: status={} code={} message={}", name, response.status_code, code, message)
        return UnknownBackendError(message, details=details)

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "SupabaseRpcBackend":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Wagers

    def place_wager(self, request: PlacementRequest) -> PlacementReceipt:
        params: dict[str, Any] = {
            "p_market_id": request.market_id,
            "p_outcome_id": request.outcome_id,
            "p_stake": request.stake,
            "p_user_id": request.user_id,
        }
        if request.client_request_id is not None:
            params["p_client_request_id"] = request.client_request_id
        payload = _first_row(self._rpc("place_wager", params))

        if payload.get("success") is False:
            message = str(payload.get("message") or "Failed to place wager")
            raise classify_message(message) or WagerRejected(message, code=INVALID_WAGER)
        wager_id = payload.get("wager_id")
        if not wager_id:
            raise UnknownBackendError("place_wager succeeded without returning a wager id")

        with _decoding("place_wager"):
            new_balance = payload.get("new_balance")
            receipt = PlacementReceipt(
                wager_id=str(wager_id),
                user_id=request.user_id,
                market_id=request.market_id,
                outcome_id=request.outcome_id,
                stake=request.stake,
                new_balance=_strict_int(new_balance) if new_balance is not None else None,
                status=WagerStatus(str(payload.get("status") or WagerStatus.ACCEPTED.value).lower()),
            )
        logger.info(
            "Wager {} {} via RPC user={} market={} stake={}",
            receipt.wager_id,
            receipt.status.value,
            request.user_id,
            request.market_id,
            request.stake,
        )
        return receipt

    def find_placement(self, user_id: str, client_request_id: str) -> PlacementReceipt | None:
        rows = self._get(
            "/rest/v1/wagers",
            {
                "select": "id,user_id,market_id,outcome_id,stake,status,placed_at",
                "user_id": f"eq.{user_id}",
                "client_request_id": f"eq.{client_request_id}",
                "limit": 1,
            },
        )
        if not rows:
            return None
        with _decoding("find_placement"):
            wager = normalize_wager(rows[0])
        return PlacementReceipt(
            wager_id=wager.wager_id,
            user_id=wager.user_id,
            market_id=wager.market_id,
            outcome_id=wager.outcome_id,
            stake=wager.stake,
            new_balance=None,
            placed_at=wager.placed_at,
            replayed=True,
            status=wager.status,
        )

    def list_pending_wagers(self, market_id: str | None = None) -> list[Wager]:
        rows = self._rpc("admin_list_pending_wagers", {"p_market_id": market_id}) or []
        with _decoding("admin_list_pending_wagers"):
            return normalize_wagers(rows)

    def approve_wager(self, wager_id: str, reviewer: str) -> Wager:
        row = _first_row(self._rpc("approve_wager", {"p_wager_id": wager_id, "p_reviewed_by": reviewer}))
        with _decoding("approve_wager"):
            return normalize_wager(row)

    def reject_wager(self, wager_id: str, reviewer: str, reason: str | None = None) -> Wager:
        row = _first_row(
            self._rpc(
                "reject_wager",
                {"p_wager_id": wager_id, "p_reason": reason or None, "p_reviewed_by": reviewer},
            )
        )
        with _decoding("reject_wager"):
            return normalize_wager(row)

    # ------------------------------------------------------------------
    # Markets and settlement

    def close_market(self, market_id: str) -> Market:
        self._rpc("close_market", {"p_market_id": market_id})
        rows = self._get("/rest/v1/markets", {"select": "*,outcomes(*)", "id": f"eq.{market_id}", "limit": 1})
        if not rows:
            raise NotFoundError(f"market {market_id} not found")
        with _decoding("close_market"):
            return normalize_market(rows[0])

    def propose_settlement(
        self,
        market_id: str,
        winning_outcome_id: str | None,
        proposer: str,
        evidence: Mapping[str, Any] | None = None,
    ) -> SettlementProposal:
        row = _first_row(
            self._rpc(
                "propose_settlement",
                {
                    "p_market_id": market_id,
                    "p_outcome_id": winning_outcome_id,
                    "p_proposed_by": proposer,
                    "p_timing_data": dict(evidence) if evidence is not None else None,
                },
            )
        )
        with _decoding("propose_settlement"):
            return normalize_proposal(row)

    def approve_settlement(self, proposal_id: str, reviewer: str) -> SettlementApproval:
        payload = _first_row(
            self._rpc(
                "approve_settlement",
                {"p_settlement_id": proposal_id, "p_payout_policy": _PAYOUT_POLICY, "p_reviewed_by": reviewer},
            )
        )
        with _decoding("approve_settlement"):
            proposal = normalize_proposal(payload["proposal"])
            result = _settlement_result(payload["settlement"], proposal)
        if not result.conserves():
            logger.error("Remote settlement of market {} reported non-conserving totals: {}", result.market_id, result)
        return SettlementApproval(proposal=proposal, result=result)

    def reject_settlement(self, proposal_id: str, reviewer: str, reason: str | None) -> SettlementProposal:
        if not reason or not reason.strip():
            raise ValidationError("a rejection reason is required", code="rejection_reason_required")
        row = _first_row(
            self._rpc(
                "reject_settlement",
                {"p_settlement_id": proposal_id, "p_rejection_reason": reason.strip(), "p_reviewed_by": reviewer},
            )
        )
        with _decoding("reject_settlement"):
            return normalize_proposal(row)

    def cancel_settlement(self, proposal_id: str, actor: str) -> SettlementProposal:
        row = _first_row(self._rpc("cancel_settlement", {"p_settlement_id": proposal_id, "p_actor": actor}))
        with _decoding("cancel_settlement"):
            return normalize_proposal(row)

    def list_pending_settlements(self) -> list[SettlementProposal]:
        rows = self._get(
            "/rest/v1/settlement_proposals",
            {"select": "*", "status": "eq.pending", "order": "proposed_at.desc"},
        ) or []
        with _decoding("list_pending_settlements"):
            return [normalize_proposal(row) for row in rows]

    # ------------------------------------------------------------------
    # Laps

    def log_lap_atomic(self, session_id: str, driver_id: str, lap_time_ms: int) -> LapLogResult:
        row = _first_row(
            self._rpc(
                "log_lap_atomic",
                {"p_session_id": session_id, "p_driver_id": driver_id, "p_lap_time_ms": lap_time_ms},
            )
        )
        lap_id = row.get("lap_id")
        if not lap_id:
            raise UnknownBackendError("log_lap_atomic returned no lap id")
        with _decoding("log_lap_atomic"):
            lap_number = row.get("lap_number")
            return LapLogResult(
                lap_id=str(lap_id),
                lap_number=_strict_int(lap_number) if lap_number is not None else None,
                lap_time_ms=lap_time_ms,
                aggregate=normalize_driver_aggregate(row, session_id=session_id, driver_id=driver_id),
            )

    def invalidate_last_lap_atomic(
        self,
        session_id: str,
        driver_id: str,
        mode: InvalidationMode,
    ) -> LapInvalidationResult | None:
        data = self._rpc(
            "invalidate_last_lap_atomic",
            {"p_session_id": session_id, "p_driver_id": driver_id, "p_mode": mode.value},
        )
        if not data:
            return None
        row = _first_row(data)
        lap_id = row.get("invalidated_lap_id")
        if not lap_id:
            return None
        with _decoding("invalidate_last_lap_atomic"):
            lap_number = row.get("lap_number")
            return LapInvalidationResult(
                lap_id=str(lap_id),
                lap_number=_strict_int(lap_number) if lap_number is not None else None,
                mode=mode,
                aggregate=normalize_driver_aggregate(row, session_id=session_id, driver_id=driver_id),
            )


def classify_message(message: str, *, details: dict[str, Any] | None = None) -> RacebookError | None:
    """Map the business-rule messages raised inside the SQL functions onto error codes."""

    lowered = message.lower()
    if "insufficient" in lowered:
        return WagerRejected(message, code=INSUFFICIENT_FUNDS, details=details)
    if "market_closed" in lowered or "market is closed" in lowered or "not open" in lowered:
        return WagerRejected(message, code=MARKET_CLOSED, details=details)
    if "duplicate" in lowered or "already submitted" in lowered:
        return ConflictError(message, code=DUPLICATE_PLACEMENT, details=details)
    if "already has a pending" in lowered:
        return ConflictError(message, code=SETTLEMENT_ALREADY_PENDING, details=details)
    if "own proposal" in lowered or "other than its proposer" in lowered:
        return ConflictError(message, code=SAME_ACTOR_REVIEW, details=details)
    return None


def _strict_int(value: Any) -> int:
    if isinstance(value, bool):
        raise TypeError(f"expected an integer, got {value!r}")
    if isinstance(value, float) and not value.is_integer():
        raise ValueError(f"expected an integer, got {value!r}")
    return int(value)


def _settlement_result(row: Mapping[str, Any], proposal: SettlementProposal) -> SettlementResult:
    if not isinstance(row, Mapping):
        raise TypeError(f"settlement summary must be an object, got {type(row).__name__}")
    return SettlementResult(
        market_id=str(row.get("market_id") or proposal.market_id),
        winning_outcome_id=row.get("winning_outcome_id", proposal.winning_outcome_id),
        rake_bps=_strict_int(row.get("rake_bps", 0)),
        total_pool=_strict_int(row["total_pool"]),
        winning_pool=_strict_int(row["winning_pool"]),
        rake_amount=_strict_int(row["rake_amount"]),
        net_pool=_strict_int(row["net_pool"]),
        total_paid=_strict_int(row["total_paid"]),
        dust=_strict_int(row["dust"]),
        refunded=bool(row["refunded"]),
    )


def _first_row(data: Any) -> dict[str, Any]:
    # Set-returning functions come back as a one-element array.
    if isinstance(data, list):
        data = data[0] if data else None
    if not isinstance(data, dict):
        raise UnknownBackendError(f"unexpected remote procedure payload: {type(data).__name__}")
    return data
