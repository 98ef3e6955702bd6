"""Error taxonomy shared by the engine, backends, services and API layer."""

from __future__ import annotations

from typing import Any


class RacebookError(Exception):
    """Base error carrying a stable machine-readable code."""

    code = "error"

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(RacebookError):
    """Deterministic business-rule rejection. Never retried automatically."""

    code = "invalid_request"


class WagerRejected(ValidationError):
    """A wager placement refused by the client-side or server-side checks."""

    code = "invalid_wager"


class NotFoundError(RacebookError):
    code = "not_found"


class ConflictError(RacebookError):
    """A named concurrency or workflow conflict the caller can branch on."""

    code = "conflict"


class TransientBackendError(RacebookError):
    """Network or timeout failure. The atomic operation was not applied."""

    code = "transient_failure"


class RpcUnavailableError(TransientBackendError):
    """The named remote procedure does not exist on the backend."""

    code = "rpc_unavailable"


class UnknownBackendError(RacebookError):
    """Unclassified backend failure. Retry safety must not be assumed."""

    code = "unknown"


class InvariantViolation(RacebookError):
    """A programming error such as an illegal lifecycle transition."""

    code = "invariant_violation"


INSUFFICIENT_FUNDS = "insufficient_funds"
MARKET_CLOSED = "market_closed"
INVALID_WAGER = "invalid_wager"
DUPLICATE_PLACEMENT = "duplicate_placement"
SETTLEMENT_ALREADY_PENDING = "settlement_already_pending"
PROPOSAL_NOT_PENDING = "proposal_not_pending"
SAME_ACTOR_REVIEW = "same_actor_review"
PLACEMENT_IN_FLIGHT = "placement_in_flight"
WAGER_NOT_PENDING = "wager_not_pending"
PENDING_WAGERS_UNREVIEWED = "pending_wagers_unreviewed"


__all__ = [
    "ConflictError",
    "DUPLICATE_PLACEMENT",
    "INSUFFICIENT_FUNDS",
    "INVALID_WAGER",
    "InvariantViolation",
    "MARKET_CLOSED",
    "NotFoundError",
    "PENDING_WAGERS_UNREVIEWED",
    "PLACEMENT_IN_FLIGHT",
    "PROPOSAL_NOT_PENDING",
    "RacebookError",
    "RpcUnavailableError",
    "SAME_ACTOR_REVIEW",
    "SETTLEMENT_ALREADY_PENDING",
    "TransientBackendError",
    "UnknownBackendError",
    "ValidationError",
    "WAGER_NOT_PENDING",
    "WagerRejected",
]
