"""Reward ledger persistence: players and per-transaction point grants."""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from arena.models import PlayerRecord, RewardGrantRecord, utcnow

POINTS_PER_LEVEL = 100


def level_for(total_points: int) -> int:
    return total_points // POINTS_PER_LEVEL + 1


@dataclass(slots=True)
class CreditOutcome:
    new_total: int
    granted: bool


class RewardRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get_player(self, wallet: str) -> PlayerRecord | None:
        return self._session.get(PlayerRecord, wallet.lower())

    def get_grant(self, tx_hash: str) -> RewardGrantRecord | None:
        return self._session.scalar(
            select(RewardGrantRecord).where(RewardGrantRecord.tx_hash == tx_hash.lower())
        )

    def total_for(self, wallet: str) -> int:
        player = self.get_player(wallet)
        return player.total_points if player else 0

    def credit(
        self,
        *,
        wallet: str,
        points: int,
        category: str,
        source: str,
        tx_hash: str,
        chain_id: int,
    ) -> CreditOutcome:
        """Credit ``points`` once per transaction hash.

        The grant row and the player total change in the same transaction; a
        hash that was already credited leaves both untouched. Hashes are keyed
        in lower case so every spelling of one transaction maps to one grant.
        """

        wallet = wallet.lower()
        tx_hash = tx_hash.lower()
        if self.get_grant(tx_hash) is not None:
            return CreditOutcome(new_total=self.total_for(wallet), granted=False)

        player = self._session.get(PlayerRecord, wallet)
        if player is None:
            player = PlayerRecord(wallet_address=wallet, total_points=0, level=1, total_transactions=0)
            self._session.add(player)

        player.total_points = (player.total_points or 0) + points
        player.level = level_for(player.total_points)
        player.total_transactions = (player.total_transactions or 0) + 1
        player.updated_at = utcnow()
        self._session.add(
            RewardGrantRecord(
                wallet_address=wallet,
                points=points,
                category=category,
                source=source,
                tx_hash=tx_hash,
                chain_id=chain_id,
            )
        )
        try:
            self._session.flush()
        except IntegrityError:
            # A concurrent writer credited the same hash first.
            self._session.rollback()
            logger.info("Reward for {} already recorded by a concurrent grant", tx_hash)
            return CreditOutcome(new_total=self.total_for(wallet), granted=False)
        return CreditOutcome(new_total=player.total_points, granted=True)


__all__ = ["CreditOutcome", "RewardRepository", "level_for"]
