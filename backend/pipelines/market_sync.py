"""Mirror chain market state into the relational store."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from loguru import logger

from arena.core.config import Settings, get_settings
from arena.db import SessionFactory, session_scope
from arena.domain import MarketSnapshot
from arena.errors import RpcError
from arena.models import utcnow
from arena.repositories import MarketRepository
from onchain.client import ChainReader


@dataclass(slots=True)
class SyncSummary:
    chain_count: int = 0
    synced: list[int] = field(default_factory=list)
    failures: list[dict[str, Any]] = field(default_factory=list)
    skipped: bool = False
    skip_reason: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "chain_count": self.chain_count,
            "synced": self.synced,
            "failures": self.failures,
            "skipped": self.skipped,
            "skip_reason": self.skip_reason,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


class SyncEngine:
    """Pulls contract state for every market and upserts it into the mirror.

    Full passes are debounced per instance: a request inside the debounce window
    or while a pass is running returns a skipped summary. ``force`` bypasses the
    window but never starts a second concurrent pass.
    """

    def __init__(
        self,
        reader: ChainReader,
        *,
        session_factory: SessionFactory | None = None,
        settings: Settings | None = None,
        concurrency: int | None = None,
        debounce_seconds: float | None = None,
        backfill_limit: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or get_settings()
        self.reader = reader
        self._session_factory = session_factory
        self.concurrency = concurrency or self.settings.sync_concurrency
        self.debounce_seconds = (
            self.settings.sync_debounce_seconds if debounce_seconds is None else debounce_seconds
        )
        self.backfill_limit = backfill_limit or self.settings.backfill_limit
        self._clock = clock
        self._in_flight = False
        self._last_run: float | None = None

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    # ------------------------------------------------------------------
    # Full resync

    async def full_resync(self, *, force: bool = False) -> SyncSummary:
        if self._in_flight:
            logger.debug("Full resync already in flight; skipping")
            return SyncSummary(skipped=True, skip_reason="in_flight")
        now = self._clock()
        if not force and self._last_run is not None and now - self._last_run < self.debounce_seconds:
            logger.debug("Full resync debounced ({:.2f}s since last run)", now - self._last_run)
            return SyncSummary(skipped=True, skip_reason="debounced")

        self._in_flight = True
        self._last_run = now
        try:
            return await self._run_full_resync()
        finally:
            self._in_flight = False

    async def _run_full_resync(self) -> SyncSummary:
        summary = SyncSummary(started_at=utcnow())
        try:
            summary.chain_count = await self.reader.market_count()
        except RpcError as exc:
            logger.warning("Full resync aborted: market count unavailable: {}", exc)
            summary.failures.append({"market_id": None, "reason": str(exc)})
            summary.finished_at = utcnow()
            return summary

        market_ids = list(range(summary.chain_count, 0, -1))
        logger.info("Starting full resync of {} markets (concurrency={})", len(market_ids), self.concurrency)
        synced, failures = await self._sync_many(market_ids)
        summary.synced = synced
        summary.failures = failures
        summary.finished_at = utcnow()
        logger.info(
            "Full resync finished: chain_count={}, synced={}, failed={}",
            summary.chain_count,
            len(summary.synced),
            len(summary.failures),
        )
        return summary

    async def _sync_many(
        self, market_ids: Iterable[int], *, use_fallback: bool = False
    ) -> tuple[list[int], list[dict[str, Any]]]:
        semaphore = asyncio.Semaphore(self.concurrency)
        ids = list(market_ids)

        async def _sync_one(market_id: int) -> MarketSnapshot:
            async with semaphore:
                snapshot = await self.read_market(market_id, use_fallback=use_fallback)
            self.upsert(snapshot)
            return snapshot

        results = await asyncio.gather(*(_sync_one(market_id) for market_id in ids), return_exceptions=True)
        synced: list[int] = []
        failures: list[dict[str, Any]] = []
        for market_id, result in zip(ids, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                if not isinstance(result, RpcError):
                    logger.opt(exception=result).error("Unexpected failure syncing market {}", market_id)
                else:
                    logger.warning("Market {} sync failed; retrying next pass: {}", market_id, result)
                failures.append({"market_id": market_id, "reason": str(result)})
            else:
                synced.append(market_id)
        return synced, failures

    # ------------------------------------------------------------------
    # Single market and backfill

    async def single_market_resync(self, market_id: int) -> MarketSnapshot | None:
        """Re-read one market, falling back to the secondary endpoint, and upsert it."""

        try:
            snapshot = await self.read_market(market_id, use_fallback=True)
        except RpcError as exc:
            logger.warning("Single-market resync for {} failed on both endpoints: {}", market_id, exc)
            return None
        self.upsert(snapshot)
        return snapshot

    async def backfill_missing(
        self, known_ids: Iterable[int] | None = None, *, limit: int | None = None
    ) -> list[int]:
        """Mirror chain markets the store has never seen, most recent first."""

        limit = limit or self.backfill_limit
        try:
            chain_count = await self.reader.market_count()
        except RpcError as exc:
            logger.warning("Backfill skipped: market count unavailable: {}", exc)
            return []

        if known_ids is None:
            with session_scope(self._session_factory) as session:
                known = MarketRepository(session).known_ids()
        else:
            known = set(known_ids)

        missing = [market_id for market_id in range(chain_count, 0, -1) if market_id not in known]
        if not missing:
            return []
        targets = missing[:limit]
        logger.info("Backfilling {} of {} missing markets: {}", len(targets), len(missing), targets)
        synced, _ = await self._sync_many(targets)
        repaired = set(synced)
        return [market_id for market_id in targets if market_id in repaired]

    # ------------------------------------------------------------------

    async def read_market(self, market_id: int, *, use_fallback: bool = False) -> MarketSnapshot:
        snapshot, imbalance, locked = await asyncio.gather(
            self.reader.get_market(market_id, use_fallback=use_fallback),
            self.reader.get_market_imbalance(market_id, use_fallback=use_fallback),
            self.reader.is_bet_locked(market_id, use_fallback=use_fallback),
        )
        return snapshot.with_imbalance(imbalance, locked)

    def upsert(self, snapshot: MarketSnapshot, *, provisional: bool = False) -> None:
        with session_scope(self._session_factory) as session:
            MarketRepository(session).upsert_snapshot(
                snapshot,
                synced_at=utcnow(),
                provisional=provisional,
                contract_address=self.reader.contract_address,
                chain_id=self.settings.chain_id,
            )


__all__ = ["SyncEngine", "SyncSummary"]
