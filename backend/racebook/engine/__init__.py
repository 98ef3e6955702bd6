"""Pure pool, settlement and lap math. Nothing here touches storage."""

from .laps import apply_lap, next_lap_number, parse_lap_input, recompute_aggregate, select_lap_to_invalidate
from .lifecycle import can_transition, ensure_settleable, transition
from .pools import OutcomePool, PoolLedger
from .quotes import OutcomeOdds, Quote, baseline_multiplier, clamp_rake, compute_quote, odds_board, rake_from_bps
from .settlement import SettlementResult, WagerSettlement, calculate_settlement
from .validation import Violation, WagerValidation, validate_wager
from .wager_review import approve_wager, ensure_reviewed, initial_status, needs_review, reject_wager

__all__ = [
    "OutcomeOdds",
    "OutcomePool",
    "PoolLedger",
    "Quote",
    "SettlementResult",
    "Violation",
    "WagerSettlement",
    "WagerValidation",
    "apply_lap",
    "approve_wager",
    "baseline_multiplier",
    "calculate_settlement",
    "can_transition",
    "clamp_rake",
    "compute_quote",
    "ensure_reviewed",
    "ensure_settleable",
    "initial_status",
    "needs_review",
    "next_lap_number",
    "odds_board",
    "parse_lap_input",
    "rake_from_bps",
    "recompute_aggregate",
    "reject_wager",
    "select_lap_to_invalidate",
    "transition",
    "validate_wager",
]
