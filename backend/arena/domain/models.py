"""Typed domain representations shared by the chain reader, sync and settlement."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum, IntEnum


class WinningSide(IntEnum):
    UNSET = 0
    YES = 1
    NO = 2
    TIE = 3


class BetSide(str, Enum):
    YES = "yes"
    NO = "no"

    @classmethod
    def from_flag(cls, for_yes: bool) -> "BetSide":
        return cls.YES if for_yes else cls.NO


@dataclass(slots=True, frozen=True)
class MarketImbalance:
    yes_total: int
    no_total: int
    imbalance_bps: int
    is_warning: bool


@dataclass(slots=True)
class MarketSnapshot:
    """Authoritative market state as read from the contract."""

    market_id: int
    question: str
    creator: str
    end_time: int
    total_yes: int
    total_no: int
    resolved: bool
    winning_side: WinningSide
    fee_amount: int
    distributable_pool: int
    imbalance_bps: int = 0
    is_warning: bool = False
    locked: bool = False

    @property
    def end_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.end_time, tz=timezone.utc)

    @property
    def total_stake(self) -> int:
        return self.total_yes + self.total_no

    def with_imbalance(self, imbalance: MarketImbalance | None, locked: bool | None = None) -> "MarketSnapshot":
        if imbalance is not None:
            self.imbalance_bps = imbalance.imbalance_bps
            self.is_warning = imbalance.is_warning
        if locked is not None:
            self.locked = locked
        return self


@dataclass(slots=True, frozen=True)
class UserStakes:
    """Per (market, user) stake totals, folded from bets or read from chain."""

    yes_stake: int = 0
    no_stake: int = 0

    @property
    def total(self) -> int:
        return self.yes_stake + self.no_stake

    def side(self, side: BetSide) -> int:
        return self.yes_stake if side is BetSide.YES else self.no_stake


@dataclass(slots=True, frozen=True)
class ContractParameters:
    create_fee: int
    max_bet_per_user: int
    min_duration: int
    max_duration: int
    lock_window: int
    platform_fee_bps: int
