"""Pool payout calculation.

All amounts are integers. Rake and per-winner payouts are floored; the remainder of the net
pool after flooring is reported as ``dust`` and retained by the house. When nobody backed the
winning outcome (or there is no winner) every stake is refunded in full and no rake is taken.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from loguru import logger

from racebook.core.errors import InvariantViolation
from racebook.domain.models import Wager, WagerStatus

MAX_RAKE_BPS = 2000


@dataclass(slots=True, frozen=True)
class WagerSettlement:
    wager_id: str
    user_id: str
    outcome_id: str
    stake: int
    status: WagerStatus
    payout: int


@dataclass(slots=True, frozen=True)
class SettlementResult:
    market_id: str
    winning_outcome_id: str | None
    rake_bps: int
    total_pool: int
    winning_pool: int
    rake_amount: int
    net_pool: int
    total_paid: int
    dust: int
    refunded: bool
    wagers: tuple[WagerSettlement, ...] = ()
    user_credits: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "user_credits", MappingProxyType(dict(self.user_credits)))

    def payout_for(self, wager_id: str) -> int:
        for entry in self.wagers:
            if entry.wager_id == wager_id:
                return entry.payout
        raise KeyError(wager_id)

    def conserves(self) -> bool:
        return (
            self.total_paid + self.dust == self.net_pool
            and self.net_pool + self.rake_amount == self.total_pool
            and self.dust >= 0
        )


def calculate_settlement(
    market_id: str,
    wagers: Iterable[Wager],
    winning_outcome_id: str | None,
    rake_bps: int,
) -> SettlementResult:
    """Compute the terminal status and payout of every live wager in a market.

    ``winning_outcome_id=None`` is the no-winner sentinel and refunds everyone. Wagers that
    already carry a terminal status, or that belong to another market, are programming errors.
    """

    if isinstance(rake_bps, bool) or not isinstance(rake_bps, int) or not 0 <= rake_bps <= MAX_RAKE_BPS:
        raise InvariantViolation(f"rake_bps must be an integer within 0-{MAX_RAKE_BPS}, got {rake_bps!r}")

    live: list[Wager] = []
    for wager in wagers:
        if wager.market_id != market_id:
            raise InvariantViolation(f"wager {wager.wager_id} does not belong to market {market_id}")
        if wager.status.is_terminal:
            raise InvariantViolation(
                f"wager {wager.wager_id} already settled with status {wager.status.value}"
            )
        live.append(wager)

    total_pool = sum(wager.stake for wager in live)
    winning_pool = (
        sum(wager.stake for wager in live if wager.outcome_id == winning_outcome_id)
        if winning_outcome_id is not None
        else 0
    )
    refunded = winning_pool == 0

    if refunded:
        rake_amount = 0
        net_pool = total_pool
        entries = tuple(
            WagerSettlement(
                wager_id=wager.wager_id,
                user_id=wager.user_id,
                outcome_id=wager.outcome_id,
                stake=wager.stake,
                status=WagerStatus.REFUNDED,
                payout=wager.stake,
            )
            for wager in live
        )
    else:
        rake_amount = total_pool * rake_bps // 10_000
        net_pool = total_pool - rake_amount
        entries = tuple(
            WagerSettlement(
                wager_id=wager.wager_id,
                user_id=wager.user_id,
                outcome_id=wager.outcome_id,
                stake=wager.stake,
                status=WagerStatus.WON if wager.outcome_id == winning_outcome_id else WagerStatus.LOST,
                payout=wager.stake * net_pool // winning_pool if wager.outcome_id == winning_outcome_id else 0,
            )
            for wager in live
        )

    total_paid = sum(entry.payout for entry in entries)
    dust = net_pool - total_paid
    credits: dict[str, int] = {}
    for entry in entries:
        if entry.payout > 0:
            credits[entry.user_id] = credits.get(entry.user_id, 0) + entry.payout

    result = SettlementResult(
        market_id=market_id,
        winning_outcome_id=winning_outcome_id,
        rake_bps=rake_bps,
        total_pool=total_pool,
        winning_pool=winning_pool,
        rake_amount=rake_amount,
        net_pool=net_pool,
        total_paid=total_paid,
        dust=dust,
        refunded=refunded,
        wagers=entries,
        user_credits=credits,
    )
    if not result.conserves():
        raise InvariantViolation(f"settlement for market {market_id} does not conserve the pool")

    logger.debug(
        "Calculated settlement for market {}: total={} rake={} paid={} dust={} refunded={}",
        market_id,
        total_pool,
        rake_amount,
        total_paid,
        dust,
        refunded,
    )
    return result
