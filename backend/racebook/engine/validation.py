"""Client-side (optimistic) wager checks."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from racebook.core.errors import INSUFFICIENT_FUNDS, INVALID_WAGER, MARKET_CLOSED, WagerRejected
from racebook.domain.models import Market, MarketStatus, Outcome


class Violation(str, Enum):
    INVALID_TARGET = "invalid_target"
    INVALID_STAKE = "invalid_stake"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    MARKET_NOT_OPEN = "market_not_open"
    MARKET_CLOSED = "market_closed"


VIOLATION_MESSAGES = {
    Violation.INVALID_TARGET: "No market or outcome selected.",
    Violation.INVALID_STAKE: "Stake must be a positive whole amount.",
    Violation.INSUFFICIENT_BALANCE: "Insufficient balance.",
    Violation.MARKET_NOT_OPEN: "Market is not open for wagering.",
    Violation.MARKET_CLOSED: "Market has closed.",
}

_REJECTION_CODES = {
    Violation.INVALID_TARGET: INVALID_WAGER,
    Violation.INVALID_STAKE: INVALID_WAGER,
    Violation.INSUFFICIENT_BALANCE: INSUFFICIENT_FUNDS,
    Violation.MARKET_NOT_OPEN: MARKET_CLOSED,
    Violation.MARKET_CLOSED: MARKET_CLOSED,
}


@dataclass(slots=True, frozen=True)
class WagerValidation:
    violations: tuple[Violation, ...] = ()

    @property
    def valid(self) -> bool:
        return not self.violations

    @property
    def first(self) -> Violation | None:
        return self.violations[0] if self.violations else None

    @property
    def messages(self) -> list[str]:
        return [VIOLATION_MESSAGES[violation] for violation in self.violations]

    def raise_for_violation(self) -> None:
        first = self.first
        if first is None:
            return
        raise WagerRejected(
            VIOLATION_MESSAGES[first],
            code=_REJECTION_CODES[first],
            details={"violations": [violation.value for violation in self.violations]},
        )


def _stake_amount(stake: Any) -> int | None:
    if isinstance(stake, bool):
        return None
    if isinstance(stake, int):
        return stake
    if isinstance(stake, (float, Decimal)):
        numeric = float(stake)
        if math.isfinite(numeric) and numeric.is_integer():
            return int(numeric)
    return None


def _balance_amount(balance: Any) -> float:
    if isinstance(balance, bool) or not isinstance(balance, (int, float, Decimal)):
        return 0.0
    numeric = float(balance)
    return numeric if math.isfinite(numeric) else 0.0


def validate_wager(
    *,
    stake: Any,
    balance: Any,
    market: Market | None,
    outcome: Outcome | None,
    now: datetime | None = None,
) -> WagerValidation:
    """Collect every violated rule, in priority order; ``violations[0]`` is the reason to surface."""

    now = now or datetime.now(timezone.utc)
    violations: list[Violation] = []

    if market is None or outcome is None or outcome.market_id != market.market_id:
        violations.append(Violation.INVALID_TARGET)

    amount = _stake_amount(stake)
    if amount is None or amount <= 0:
        violations.append(Violation.INVALID_STAKE)
    elif amount > _balance_amount(balance):
        violations.append(Violation.INSUFFICIENT_BALANCE)

    if market is not None:
        if market.status is not MarketStatus.OPEN:
            violations.append(Violation.MARKET_NOT_OPEN)
        if market.closes_at is not None and market.closes_at <= now:
            violations.append(Violation.MARKET_CLOSED)

    return WagerValidation(violations=tuple(violations))
