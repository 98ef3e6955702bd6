"""Repository abstractions for database interactions."""

from .lap_repository import LapRepository
from .market_repository import MarketRepository
from .settlement_repository import SettlementRepository
from .types import OutcomeSpec
from .wager_repository import WagerRepository
from .wallet_repository import WalletRepository

__all__ = [
    "LapRepository",
    "MarketRepository",
    "OutcomeSpec",
    "SettlementRepository",
    "WagerRepository",
    "WalletRepository",
]
