from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from .db import Base


class MarketStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    RESOLVED = "resolved"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WeiAmount(TypeDecorator):
    """uint256 amounts persisted as decimal strings so no backend rounds them."""

    impl = String(78)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(int(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


class UtcDateTime(TypeDecorator):
    """Timezone-aware datetimes that come back aware on SQLite too."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class MarketRecord(Base):
    __tablename__ = "prediction_arena_markets"

    market_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    question: Mapped[str] = mapped_column(Text, nullable=False, default="")
    creator: Mapped[str] = mapped_column(String(42), nullable=False, default="")
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    end_time: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=MarketStatus.ACTIVE.value)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    winning_side: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_yes_wei: Mapped[int] = mapped_column(WeiAmount, nullable=False, default=0)
    total_no_wei: Mapped[int] = mapped_column(WeiAmount, nullable=False, default=0)
    fee_amount_wei: Mapped[int] = mapped_column(WeiAmount, nullable=False, default=0)
    distributable_pool_wei: Mapped[int] = mapped_column(WeiAmount, nullable=False, default=0)
    imbalance_bps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    warning: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    provisional: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False, default=utcnow)
    last_synced_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UtcDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    @property
    def total_stake_wei(self) -> int:
        return (self.total_yes_wei or 0) + (self.total_no_wei or 0)


class BetRecord(Base):
    __tablename__ = "prediction_arena_bets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    market_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("prediction_arena_markets.market_id"), nullable=False, index=True
    )
    user_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    side: Mapped[str] = mapped_column(String(3), nullable=False)
    amount_wei: Mapped[int] = mapped_column(WeiAmount, nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False, default=utcnow)

    __table_args__ = (UniqueConstraint("tx_hash", name="uq_bet_tx_hash"),)


class ClaimRecord(Base):
    __tablename__ = "prediction_arena_claims"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    market_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("prediction_arena_markets.market_id"), nullable=False, index=True
    )
    user_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    payout_wei: Mapped[int] = mapped_column(WeiAmount, nullable=False, default=0)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False, default=utcnow)

    __table_args__ = (UniqueConstraint("tx_hash", name="uq_claim_tx_hash"),)


class PlayerRecord(Base):
    __tablename__ = "players"

    wallet_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    total_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    total_transactions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UtcDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )


class RewardGrantRecord(Base):
    __tablename__ = "reward_grants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_address: Mapped[str] = mapped_column(
        String(42), ForeignKey("players.wallet_address"), nullable=False, index=True
    )
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(String(64), nullable=False)
    source: Mapped[str] = mapped_column(String(16), nullable=False, default="web")
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False, default=utcnow)

    __table_args__ = (UniqueConstraint("tx_hash", name="uq_reward_grant_tx_hash"),)
