"""Shared repository result types."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class MarketActivity:
    """Bet-derived statistics for one market, folded from the append-only log."""

    market_id: int
    bet_count: int = 0
    volume: int = 0
    participants: set[str] = field(default_factory=set)

    @property
    def participant_count(self) -> int:
        return len(self.participants)


__all__ = ["MarketActivity"]
