"""Market status transitions."""

from __future__ import annotations

from racebook.core.errors import InvariantViolation
from racebook.domain.models import MarketStatus

_ALLOWED_TRANSITIONS: dict[MarketStatus, frozenset[MarketStatus]] = {
    MarketStatus.OPEN: frozenset({MarketStatus.CLOSED}),
    MarketStatus.CLOSED: frozenset({MarketStatus.CLOSED, MarketStatus.SETTLING}),
    MarketStatus.SETTLING: frozenset({MarketStatus.SETTLED}),
    MarketStatus.SETTLED: frozenset(),
}


def can_transition(current: MarketStatus, target: MarketStatus) -> bool:
    return target in _ALLOWED_TRANSITIONS.get(current, frozenset())


def transition(current: MarketStatus, target: MarketStatus) -> MarketStatus:
    """Return ``target`` if the move is legal. Closing an already-closed market is a no-op."""

    if not can_transition(current, target):
        raise InvariantViolation(
            f"illegal market transition {current.value} -> {target.value}",
            details={"from": current.value, "to": target.value},
        )
    return target


def ensure_settleable(status: MarketStatus) -> None:
    if status is not MarketStatus.CLOSED:
        raise InvariantViolation(f"only closed markets can be settled, market is {status.value}")
