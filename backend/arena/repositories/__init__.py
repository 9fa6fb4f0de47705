"""Repository abstractions for database interactions."""

from .ledger_repository import LedgerRepository
from .market_repository import MarketRepository, derive_status
from .reward_repository import CreditOutcome, RewardRepository, level_for
from .types import MarketActivity

__all__ = [
    "CreditOutcome",
    "LedgerRepository",
    "MarketActivity",
    "MarketRepository",
    "RewardRepository",
    "derive_status",
    "level_for",
]
