"""Admin review of wagers held as ``pending``.

A pending wager has already been debited and counts toward its pool. Approval makes it an
ordinary accepted wager; rejection refunds the stake in full and takes it out of the pool.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import replace

from racebook.core.errors import PENDING_WAGERS_UNREVIEWED, WAGER_NOT_PENDING, ConflictError, ValidationError
from racebook.domain.models import Wager, WagerStatus


def needs_review(stake: int, threshold: int | None) -> bool:
    return threshold is not None and stake >= threshold


def initial_status(stake: int, threshold: int | None) -> WagerStatus:
    return WagerStatus.PENDING if needs_review(stake, threshold) else WagerStatus.ACCEPTED


def _ensure_pending(wager: Wager) -> None:
    if wager.status is not WagerStatus.PENDING:
        raise ConflictError(
            f"wager {wager.wager_id} is {wager.status.value}, not pending",
            code=WAGER_NOT_PENDING,
            details={"status": wager.status.value},
        )


def _ensure_reviewer(reviewer: str) -> None:
    if not reviewer or not reviewer.strip():
        raise ValidationError("reviewer is required")


def approve_wager(wager: Wager, reviewer: str) -> Wager:
    _ensure_pending(wager)
    _ensure_reviewer(reviewer)
    return replace(wager, status=WagerStatus.ACCEPTED, reviewed_by=reviewer)


def reject_wager(wager: Wager, reviewer: str, reason: str | None = None) -> Wager:
    """The returned wager carries ``payout == stake``: the amount to credit back."""

    _ensure_pending(wager)
    _ensure_reviewer(reviewer)
    note = reason.strip() if reason and reason.strip() else None
    return replace(
        wager,
        status=WagerStatus.REFUNDED,
        payout=wager.stake,
        reviewed_by=reviewer,
        rejection_reason=note,
    )


def ensure_reviewed(market_id: str, wagers: Iterable[Wager]) -> None:
    """Settlement may not run while a wager in the market still awaits review."""

    pending = [wager.wager_id for wager in wagers if wager.status is WagerStatus.PENDING]
    if pending:
        raise ConflictError(
            f"market {market_id} has {len(pending)} wager(s) awaiting review",
            code=PENDING_WAGERS_UNREVIEWED,
            details={"wager_ids": pending},
        )
