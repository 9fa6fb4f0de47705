"""Background sweep that drives expired markets toward their resolved state."""

from __future__ import annotations

import argparse
import asyncio
import json
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from arena.core.config import Settings, get_settings
from arena.db import SessionFactory, init_db, session_scope
from arena.models import utcnow
from arena.repositories import MarketRepository
from onchain.client import ChainReader
from pipelines.market_sync import SyncEngine


@dataclass(slots=True)
class ReconciliationSummary:
    checked_markets: int = 0
    newly_resolved: list[int] = field(default_factory=list)
    still_open: list[int] = field(default_factory=list)
    failures: list[dict[str, Any]] = field(default_factory=list)
    skipped: bool = False
    skip_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked_markets": self.checked_markets,
            "newly_resolved": self.newly_resolved,
            "still_open": self.still_open,
            "failures": self.failures,
            "skipped": self.skipped,
            "skip_reason": self.skip_reason,
        }


class ReconciliationLoop:
    """Re-sync unresolved markets whose end time has passed.

    Each instance throttles itself to one pass per interval and never runs two
    passes at once. Failures are logged and left for the next tick.
    """

    def __init__(
        self,
        engine: SyncEngine,
        *,
        session_factory: SessionFactory | None = None,
        settings: Settings | None = None,
        interval: float | None = None,
        batch_size: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or get_settings()
        self.engine = engine
        self._session_factory = session_factory
        self.interval = self.settings.reconcile_interval_seconds if interval is None else interval
        self.batch_size = batch_size or self.settings.reconcile_batch_size
        self._clock = clock
        self._in_flight = False
        self._last_run: float | None = None

    async def tick(self, *, force: bool = False) -> ReconciliationSummary:
        if self._in_flight:
            return ReconciliationSummary(skipped=True, skip_reason="in_flight")
        now = self._clock()
        if not force and self._last_run is not None and now - self._last_run < self.interval:
            return ReconciliationSummary(skipped=True, skip_reason="throttled")

        self._in_flight = True
        self._last_run = now
        try:
            return await self._sweep()
        finally:
            self._in_flight = False

    async def _sweep(self) -> ReconciliationSummary:
        summary = ReconciliationSummary()
        with session_scope(self._session_factory) as session:
            candidates = [
                record.market_id
                for record in MarketRepository(session).list_stale_unresolved(
                    now=utcnow(),
                    limit=self.batch_size,
                    contract_address=self.engine.reader.contract_address,
                    chain_id=self.engine.settings.chain_id,
                )
            ]
        if not candidates:
            logger.debug("Reconciliation found no stale markets")
            return summary

        logger.info("Reconciling {} stale markets: {}", len(candidates), candidates)
        results = await asyncio.gather(
            *(self.engine.single_market_resync(market_id) for market_id in candidates),
            return_exceptions=True,
        )
        for market_id, result in zip(candidates, results):
            summary.checked_markets += 1
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.opt(exception=result).warning("Reconciliation of market {} failed", market_id)
                summary.failures.append({"market_id": market_id, "reason": str(result)})
            elif result is None:
                summary.failures.append({"market_id": market_id, "reason": "chain read unavailable"})
            elif result.resolved:
                summary.newly_resolved.append(market_id)
            else:
                summary.still_open.append(market_id)

        logger.info(
            "Reconciliation finished: checked={}, resolved={}, open={}, failed={}",
            summary.checked_markets,
            len(summary.newly_resolved),
            len(summary.still_open),
            len(summary.failures),
        )
        return summary

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        logger.info("Reconciliation loop started (interval={}s)", self.interval)
        while not stop_event.is_set():
            try:
                await self.tick()
            except Exception:  # noqa: BLE001 - keep the loop alive
                logger.exception("Reconciliation tick crashed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=max(self.interval, 0.01))
            except asyncio.TimeoutError:
                continue
        logger.info("Reconciliation loop stopped")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Re-sync expired, unresolved arena markets from chain state",
    )
    parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep running on the configured interval instead of a single sweep",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Override how many stale markets are re-synced per sweep",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Optional path where a JSON summary report will be written",
    )
    return parser.parse_args()


def _write_summary(summary: ReconciliationSummary, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary.to_dict(), default=str, indent=2))
    logger.info("Reconciliation summary written to {}", path)


async def _run(args: argparse.Namespace, settings: Settings) -> ReconciliationSummary | None:
    async with ChainReader() as reader:
        engine = SyncEngine(reader, settings=settings)
        loop = ReconciliationLoop(engine, settings=settings, batch_size=args.batch_size)
        if not args.loop:
            return await loop.tick(force=True)
        await loop.run_forever(asyncio.Event())
        return None


def main() -> ReconciliationSummary | None:
    args = _parse_args()
    settings = get_settings()
    init_db()
    try:
        summary = asyncio.run(_run(args, settings))
    except KeyboardInterrupt:
        logger.info("Reconciliation interrupted")
        return None

    if summary is not None and args.summary_path:
        _write_summary(summary, args.summary_path)
    return summary


if __name__ == "__main__":
    main()
