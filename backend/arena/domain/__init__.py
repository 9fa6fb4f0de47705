"""Domain models representing chain and mirror market state."""

from .models import (
    BetSide,
    ContractParameters,
    MarketImbalance,
    MarketSnapshot,
    UserStakes,
    WinningSide,
)

__all__ = [
    "BetSide",
    "ContractParameters",
    "MarketImbalance",
    "MarketSnapshot",
    "UserStakes",
    "WinningSide",
]
