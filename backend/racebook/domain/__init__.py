"""Domain records and the row-normalization boundary."""

from .models import (
    DriverAggregate,
    InvalidationMode,
    LapRecord,
    Market,
    MarketStatus,
    Outcome,
    ProposalStatus,
    SettlementProposal,
    TERMINAL_WAGER_STATUSES,
    Wager,
    WagerStatus,
    WalletTransactionKind,
)

__all__ = [
    "DriverAggregate",
    "InvalidationMode",
    "LapRecord",
    "Market",
    "MarketStatus",
    "Outcome",
    "ProposalStatus",
    "SettlementProposal",
    "TERMINAL_WAGER_STATUSES",
    "Wager",
    "WagerStatus",
    "WalletTransactionKind",
]
