"""Pro-rata payout arithmetic for resolved markets.

All amounts are integer wei. Division floors, so the sum of every user's
claimable amount can fall short of the distributable pool by rounding dust but
never exceeds it.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from arena.domain import BetSide, UserStakes, WinningSide


@dataclass(slots=True, frozen=True)
class MarketTotals:
    total_yes: int
    total_no: int
    resolved: bool
    winning_side: WinningSide
    distributable_pool: int
    fee_amount: int = 0

    @classmethod
    def from_record(cls, record) -> "MarketTotals":
        winning = record.winning_side if record.winning_side is not None else 0
        return cls(
            total_yes=record.total_yes_wei or 0,
            total_no=record.total_no_wei or 0,
            resolved=bool(record.resolved),
            winning_side=WinningSide(winning),
            distributable_pool=record.distributable_pool_wei or 0,
            fee_amount=record.fee_amount_wei or 0,
        )

    @classmethod
    def from_snapshot(cls, snapshot) -> "MarketTotals":
        return cls(
            total_yes=snapshot.total_yes,
            total_no=snapshot.total_no,
            resolved=snapshot.resolved,
            winning_side=snapshot.winning_side,
            distributable_pool=snapshot.distributable_pool,
            fee_amount=snapshot.fee_amount,
        )


@dataclass(slots=True, frozen=True)
class Settlement:
    claimable: int
    net: int
    winner_pool: int
    winner_stake: int


def winner_pool_and_stake(market: MarketTotals, stakes: UserStakes) -> tuple[int, int]:
    if market.winning_side is WinningSide.TIE:
        return market.total_yes + market.total_no, stakes.total
    if market.winning_side is WinningSide.YES:
        return market.total_yes, stakes.yes_stake
    if market.winning_side is WinningSide.NO:
        return market.total_no, stakes.no_stake
    return 0, 0


def claimable_amount(market: MarketTotals, stakes: UserStakes, *, already_claimed: bool = False) -> int:
    if already_claimed or not market.resolved or market.winning_side is WinningSide.UNSET:
        return 0
    winner_pool, winner_stake = winner_pool_and_stake(market, stakes)
    if winner_pool <= 0 or winner_stake <= 0:
        return 0
    return market.distributable_pool * winner_stake // winner_pool


def settle(market: MarketTotals, stakes: UserStakes, *, already_claimed: bool = False) -> Settlement:
    claimable = claimable_amount(market, stakes, already_claimed=already_claimed)
    winner_pool, winner_stake = winner_pool_and_stake(market, stakes)
    return Settlement(
        claimable=claimable,
        net=claimable - stakes.total,
        winner_pool=winner_pool,
        winner_stake=winner_stake,
    )


def fold_user_stakes(bets: Iterable) -> dict[tuple[int, str], UserStakes]:
    """Sum bet rows into per (market, user) stake aggregates."""

    totals: dict[tuple[int, str], list[int]] = {}
    for bet in bets:
        key = (bet.market_id, bet.user_address.lower())
        entry = totals.setdefault(key, [0, 0])
        if BetSide(bet.side) is BetSide.YES:
            entry[0] += bet.amount_wei
        else:
            entry[1] += bet.amount_wei
    return {key: UserStakes(yes_stake=yes, no_stake=no) for key, (yes, no) in totals.items()}


def expected_distributable(total_yes: int, total_no: int, fee_amount: int) -> int:
    return max(total_yes + total_no - fee_amount, 0)


__all__ = [
    "MarketTotals",
    "Settlement",
    "claimable_amount",
    "expected_distributable",
    "fold_user_stakes",
    "settle",
    "winner_pool_and_stake",
]
