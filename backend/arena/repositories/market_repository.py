"""Mirror persistence for arena markets."""

from __future__ import annotations

from datetime import datetime

from loguru import logger
from sqlalchemy import asc, func, or_, select
from sqlalchemy.orm import Session

from arena.core.config import settings
from arena.domain import BetSide, MarketSnapshot, WinningSide
from arena.errors import MirrorInconsistency
from arena.models import MarketRecord, MarketStatus, utcnow
from arena.services.settlement import expected_distributable


def derive_status(resolved: bool, end_time: datetime, now: datetime | None = None) -> MarketStatus:
    if resolved:
        return MarketStatus.RESOLVED
    if end_time <= (now or utcnow()):
        return MarketStatus.EXPIRED
    return MarketStatus.ACTIVE


class MarketRepository:
    """Upserts chain snapshots into the mirror and answers listing queries.

    Writes follow last-write-wins on ``last_synced_at`` with one override: a
    confirmed snapshot always replaces a provisional row, and a provisional
    write never replaces a confirmed row that is newer than it.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Mutations

    def upsert_snapshot(
        self,
        snapshot: MarketSnapshot,
        *,
        synced_at: datetime | None = None,
        provisional: bool = False,
        contract_address: str | None = None,
        chain_id: int | None = None,
    ) -> MarketRecord:
        synced_at = synced_at or utcnow()
        existing = self._session.get(MarketRecord, snapshot.market_id)
        end_time = snapshot.end_datetime

        if existing is None:
            existing = MarketRecord(
                market_id=snapshot.market_id,
                contract_address=contract_address or settings.contract_address,
                chain_id=chain_id or settings.chain_id,
                created_at=synced_at,
            )
            self._session.add(existing)
        elif not self._should_replace(existing, synced_at=synced_at, provisional=provisional):
            logger.debug(
                "Skipping {} write for market {}: mirror row synced at {} is newer",
                "provisional" if provisional else "confirmed",
                snapshot.market_id,
                existing.last_synced_at,
            )
            return existing
        elif not provisional and not existing.provisional and existing.end_time != end_time:
            inconsistency = MirrorInconsistency(snapshot.market_id, ["end_time"])
            logger.warning("{}; overwriting from chain ({} -> {})", inconsistency, existing.end_time, end_time)

        existing.question = snapshot.question
        existing.creator = snapshot.creator
        existing.end_time = end_time
        existing.resolved = snapshot.resolved
        existing.winning_side = int(snapshot.winning_side) if snapshot.resolved else None
        existing.total_yes_wei = snapshot.total_yes
        existing.total_no_wei = snapshot.total_no
        existing.fee_amount_wei = snapshot.fee_amount
        existing.distributable_pool_wei = snapshot.distributable_pool
        existing.imbalance_bps = snapshot.imbalance_bps
        existing.warning = snapshot.is_warning
        existing.locked = snapshot.locked
        existing.provisional = provisional
        existing.status = derive_status(snapshot.resolved, end_time).value
        existing.last_synced_at = synced_at
        self._session.flush()
        return existing

    @staticmethod
    def _should_replace(existing: MarketRecord, *, synced_at: datetime, provisional: bool) -> bool:
        if not provisional and existing.provisional:
            return True
        return synced_at >= existing.last_synced_at

    def apply_provisional_bet(
        self, market_id: int, side: BetSide, amount: int, *, synced_at: datetime | None = None
    ) -> MarketRecord | None:
        """Bump the mirrored side total right after a confirmed bet transaction."""

        record = self._session.get(MarketRecord, market_id)
        if record is None:
            return None
        if side is BetSide.YES:
            record.total_yes_wei = (record.total_yes_wei or 0) + amount
        else:
            record.total_no_wei = (record.total_no_wei or 0) + amount
        record.provisional = True
        record.last_synced_at = synced_at or utcnow()
        self._session.flush()
        return record

    def apply_provisional_resolution(
        self,
        market_id: int,
        winning_side: WinningSide,
        fee_amount: int,
        *,
        synced_at: datetime | None = None,
    ) -> MarketRecord | None:
        record = self._session.get(MarketRecord, market_id)
        if record is None:
            return None
        record.resolved = True
        record.winning_side = int(winning_side)
        record.fee_amount_wei = fee_amount
        record.distributable_pool_wei = expected_distributable(
            record.total_yes_wei or 0, record.total_no_wei or 0, fee_amount
        )
        record.status = MarketStatus.RESOLVED.value
        record.provisional = True
        record.last_synced_at = synced_at or utcnow()
        self._session.flush()
        return record

    # ------------------------------------------------------------------
    # Queries

    def get_market(self, market_id: int) -> MarketRecord | None:
        return self._session.get(MarketRecord, market_id)

    def known_ids(self) -> set[int]:
        return set(self._session.scalars(select(MarketRecord.market_id)))

    def list_markets(self) -> list[MarketRecord]:
        query = select(MarketRecord).order_by(MarketRecord.market_id.desc())
        return list(self._session.scalars(query))

    def list_stale_unresolved(
        self,
        *,
        now: datetime | None = None,
        limit: int = 8,
        contract_address: str | None = None,
        chain_id: int | None = None,
    ) -> list[MarketRecord]:
        """Unresolved markets past their end time that still hold stake, oldest first.

        Only rows mirrored from the given contract and chain are returned; both
        default to the configured deployment.
        """

        now = now or utcnow()
        contract_address = (contract_address or settings.contract_address).lower()
        chain_id = settings.chain_id if chain_id is None else chain_id
        query = (
            select(MarketRecord)
            .where(
                MarketRecord.resolved.is_(False),
                func.lower(MarketRecord.contract_address) == contract_address,
                MarketRecord.chain_id == chain_id,
                MarketRecord.end_time <= now,
                or_(MarketRecord.total_yes_wei != 0, MarketRecord.total_no_wei != 0),
            )
            .order_by(asc(MarketRecord.end_time), asc(MarketRecord.market_id))
            .limit(limit)
        )
        return list(self._session.scalars(query))


__all__ = ["MarketRepository", "derive_status"]
