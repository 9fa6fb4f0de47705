import argparse
import asyncio
import json

from loguru import logger

from arena.core.config import get_settings
from arena.db import init_db
from onchain.client import ChainReader
from pipelines.market_sync import SyncEngine
from pipelines.reconciliation import ReconciliationLoop


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Mirror prediction arena markets from chain")
    parser.add_argument(
        "--market-id",
        dest="market_ids",
        type=int,
        action="append",
        help="Re-sync only these markets (repeatable) instead of a full pass",
    )
    parser.add_argument(
        "--backfill",
        action="store_true",
        help="Repair markets the mirror has never seen after the main pass",
    )
    parser.add_argument(
        "--reconcile",
        action="store_true",
        help="Run one reconciliation sweep over expired, unresolved markets",
    )
    parser.add_argument("--rpc-url", default=None, help="Override the primary RPC endpoint")
    parser.add_argument("--json", action="store_true", help="Print the run report as JSON")
    return parser.parse_args()


async def run(args: argparse.Namespace) -> dict[str, object]:
    settings = get_settings()
    report: dict[str, object] = {}
    async with ChainReader(rpc_url=args.rpc_url) as reader:
        engine = SyncEngine(reader, settings=settings)
        if args.market_ids:
            synced = []
            for market_id in args.market_ids:
                snapshot = await engine.single_market_resync(market_id)
                if snapshot is not None:
                    synced.append(market_id)
            report["synced"] = synced
        else:
            summary = await engine.full_resync(force=True)
            report["full_resync"] = summary.to_dict()

        if args.backfill:
            report["backfilled"] = await engine.backfill_missing()

        if args.reconcile:
            loop = ReconciliationLoop(engine, settings=settings)
            report["reconciliation"] = (await loop.tick(force=True)).to_dict()
    return report


def main() -> None:
    args = parse_args()
    init_db()
    report = asyncio.run(run(args))
    if args.json:
        print(json.dumps(report, default=str, indent=2))
    else:
        logger.info("Sync complete: {}", report)


if __name__ == "__main__":
    main()
