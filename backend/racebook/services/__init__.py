"""Service layer orchestrating repositories, engine math and atomic backends."""

from .lap_service import AtomicLapLedger, ComposedLapLedger, LapLedger, build_lap_ledger
from .market_service import MarketService
from .settlement_service import SettlementApproval, SettlementWorkflow
from .wager_service import WagerService

__all__ = [
    "AtomicLapLedger",
    "ComposedLapLedger",
    "LapLedger",
    "MarketService",
    "SettlementApproval",
    "SettlementWorkflow",
    "WagerService",
    "build_lap_ledger",
]
