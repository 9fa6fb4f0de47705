"""Append-only bet and claim logs mirrored from confirmed transactions."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from arena.domain import BetSide
from arena.models import BetRecord, ClaimRecord, utcnow

from .types import MarketActivity


def _normalize_user(user: str) -> str:
    return (user or "").strip().lower()


class LedgerRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Mutations

    def append_bet(
        self,
        *,
        market_id: int,
        user: str,
        side: BetSide,
        amount: int,
        tx_hash: str,
        created_at: datetime | None = None,
    ) -> tuple[BetRecord, bool]:
        """Record a bet once per transaction hash; returns (row, created)."""

        existing = self._session.scalar(select(BetRecord).where(BetRecord.tx_hash == tx_hash))
        if existing is not None:
            return existing, False
        record = BetRecord(
            market_id=market_id,
            user_address=_normalize_user(user),
            side=side.value,
            amount_wei=amount,
            tx_hash=tx_hash,
            created_at=created_at or utcnow(),
        )
        self._session.add(record)
        self._session.flush()
        return record, True

    def append_claim(
        self,
        *,
        market_id: int,
        user: str,
        payout: int,
        tx_hash: str,
        created_at: datetime | None = None,
    ) -> tuple[ClaimRecord, bool]:
        existing = self._session.scalar(select(ClaimRecord).where(ClaimRecord.tx_hash == tx_hash))
        if existing is not None:
            return existing, False
        record = ClaimRecord(
            market_id=market_id,
            user_address=_normalize_user(user),
            payout_wei=payout,
            tx_hash=tx_hash,
            created_at=created_at or utcnow(),
        )
        self._session.add(record)
        self._session.flush()
        return record, True

    # ------------------------------------------------------------------
    # Queries

    def list_bets(self, *, market_id: int | None = None, user: str | None = None) -> list[BetRecord]:
        query = select(BetRecord)
        if market_id is not None:
            query = query.where(BetRecord.market_id == market_id)
        if user:
            query = query.where(BetRecord.user_address == _normalize_user(user))
        return list(self._session.scalars(query.order_by(BetRecord.id)))

    def has_claimed(self, market_id: int, user: str) -> bool:
        query = select(ClaimRecord.id).where(
            ClaimRecord.market_id == market_id,
            ClaimRecord.user_address == _normalize_user(user),
        )
        return self._session.scalar(query.limit(1)) is not None

    def claimed_market_ids(self, user: str) -> set[int]:
        query = select(ClaimRecord.market_id).where(ClaimRecord.user_address == _normalize_user(user))
        return set(self._session.scalars(query))

    def market_activity(self, market_ids: Iterable[int] | None = None) -> dict[int, MarketActivity]:
        query = select(BetRecord.market_id, BetRecord.user_address, BetRecord.amount_wei)
        if market_ids is not None:
            ids = list(market_ids)
            if not ids:
                return {}
            query = query.where(BetRecord.market_id.in_(ids))

        activity: dict[int, MarketActivity] = {}
        for market_id, user_address, amount in self._session.execute(query):
            entry = activity.setdefault(market_id, MarketActivity(market_id=market_id))
            entry.bet_count += 1
            entry.volume += amount or 0
            entry.participants.add(user_address)
        return activity


__all__ = ["LedgerRepository"]
