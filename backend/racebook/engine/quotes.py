"""Tote odds and payout previews for a candidate stake.

Quotes are a pre-trade preview only. When a multiplier is undefined (nobody has backed the
outcome yet) it is reported as ``None`` ("no odds yet") instead of dividing by zero.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping

from .pools import PoolLedger

MAX_RAKE = 0.20


def _coerce_amount(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        return 0.0
    if isinstance(value, (int, float, Decimal)):
        numeric = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            numeric = float(value)
        except ValueError:
            return 0.0
    else:
        return 0.0
    if not math.isfinite(numeric) or numeric < 0:
        return 0.0
    return numeric


def clamp_rake(rake: Any) -> float:
    """Clamp a fractional rake into ``[0, MAX_RAKE]``. Out-of-range values are never rejected."""

    if isinstance(rake, bool) or not isinstance(rake, (int, float, Decimal)):
        return 0.0
    numeric = float(rake)
    if not math.isfinite(numeric) or numeric < 0:
        return 0.0
    return min(numeric, MAX_RAKE)


def rake_from_bps(rake_bps: Any) -> float:
    if isinstance(rake_bps, bool) or not isinstance(rake_bps, (int, float, Decimal)):
        return 0.0
    return clamp_rake(float(rake_bps) / 10_000)


@dataclass(slots=True, frozen=True)
class Quote:
    stake: float
    total_pool: float
    outcome_pool: float
    rake: float
    net_pool: float
    effective_outcome_pool: float
    baseline_multiplier: float | None
    effective_multiplier: float
    estimated_payout: float
    share_after_bet: float
    price_impact: float | None

    @property
    def has_baseline(self) -> bool:
        return self.baseline_multiplier is not None


def baseline_multiplier(total_pool: Any, outcome_pool: Any, rake: Any) -> float | None:
    """Informational odds before any new stake: ``T * (1 - r) / W``."""

    total = _coerce_amount(total_pool)
    backing = _coerce_amount(outcome_pool)
    if backing <= 0:
        return None
    total = max(total, backing)
    return total * (1 - clamp_rake(rake)) / backing


def compute_quote(total_pool: Any, outcome_pool: Any, rake: Any, stake: Any) -> Quote | None:
    """Preview the payout of ``stake`` on an outcome currently holding ``outcome_pool``.

    Returns ``None`` for a zero stake, which is not a previewable bet.
    """

    amount = _coerce_amount(stake)
    if amount <= 0:
        return None

    backing = _coerce_amount(outcome_pool)
    # The outcome pool is part of the total pool.
    total = max(_coerce_amount(total_pool), backing)
    rate = clamp_rake(rake)

    net_pool = (total + amount) * (1 - rate)
    effective_outcome_pool = backing + amount
    effective = net_pool / effective_outcome_pool
    baseline = baseline_multiplier(total, backing, rate)

    return Quote(
        stake=amount,
        total_pool=total,
        outcome_pool=backing,
        rake=rate,
        net_pool=net_pool,
        effective_outcome_pool=effective_outcome_pool,
        baseline_multiplier=baseline,
        effective_multiplier=effective,
        estimated_payout=amount * effective,
        share_after_bet=effective_outcome_pool / (total + amount),
        price_impact=effective - baseline if baseline is not None else None,
    )


def quote_outcome(ledger: PoolLedger, outcome_id: str, rake_bps: int, stake: Any) -> Quote | None:
    return compute_quote(ledger.total, ledger.contribution(outcome_id), rake_from_bps(rake_bps), stake)


@dataclass(slots=True, frozen=True)
class OutcomeOdds:
    outcome_id: str
    label: str
    total: int
    wager_count: int
    share: float
    odds: float | None


def odds_board(
    ledger: PoolLedger,
    rake_bps: int,
    labels: Mapping[str, str] | None = None,
) -> list[OutcomeOdds]:
    """Per-outcome share and baseline odds, largest pool first."""

    labels = labels or {}
    rate = rake_from_bps(rake_bps)
    outcome_ids = list(dict.fromkeys([*labels.keys(), *ledger.outcomes.keys()]))
    rows = [
        OutcomeOdds(
            outcome_id=outcome_id,
            label=labels.get(outcome_id, "Outcome"),
            total=ledger.contribution(outcome_id),
            wager_count=ledger.wager_count(outcome_id),
            share=ledger.contribution(outcome_id) / ledger.total if ledger.total > 0 else 0.0,
            odds=baseline_multiplier(ledger.total, ledger.contribution(outcome_id), rate),
        )
        for outcome_id in outcome_ids
    ]
    return sorted(rows, key=lambda row: row.total, reverse=True)
