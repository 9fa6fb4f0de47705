from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Query

from . import schemas
from .core.config import settings
from .db import get_db, init_db
from .errors import VerificationFailure
from .services.market_service import MarketQuery, MarketService
from .services.rewards import RewardGateway

app = FastAPI(title="Prediction Arena API", version="0.1.0", debug=settings.debug)


@app.on_event("startup")
def on_startup() -> None:
    """Initialize database connections when the API boots."""

    init_db()


@app.get("/healthz", tags=["system"])
def healthcheck() -> dict[str, str]:
    """Readiness check for infrastructure monitors."""

    return {"status": "ok"}


def _market_query(
    *,
    market_filter: Annotated[
        str,
        Query(
            alias="filter",
            description="Listing filter",
            pattern="^(active|resolved|void|finished|all)$",
        ),
    ] = "active",
    sort: Annotated[
        str,
        Query(description="Sort order", pattern="^(newest|oldest|volume|participants)$"),
    ] = "newest",
    user: Annotated[str | None, Query(description="Wallet whose positions to include")] = None,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> MarketQuery:
    """Normalize shared market listing query parameters."""

    return MarketQuery(filter=market_filter, sort=sort, user=user, limit=limit, offset=offset)


def _market_service(db=Depends(get_db)) -> MarketService:
    """Provide the market service wired with a SQLAlchemy session."""

    return MarketService(db)


@lru_cache
def _reward_gateway() -> RewardGateway:
    return RewardGateway()


@app.get("/markets", response_model=schemas.MarketList, tags=["markets"])
def list_markets(
    *,
    query: MarketQuery = Depends(_market_query),
    service: MarketService = Depends(_market_service),
):
    """List mirrored markets with filter, sort and pagination controls."""

    result = service.list_markets(query)
    return schemas.MarketList(total=result.total, items=list(result.markets))


@app.get("/markets/{market_id}", response_model=schemas.Market, tags=["markets"])
def get_market(
    market_id: int,
    user: Annotated[str | None, Query(description="Wallet whose position to include")] = None,
    service: MarketService = Depends(_market_service),
):
    market = service.get_market(market_id, user=user)
    if not market:
        raise HTTPException(status_code=404, detail="Market not found")
    return market


@app.get("/markets/{market_id}/claimable", response_model=schemas.Claimable, tags=["markets"])
def get_claimable(
    market_id: int,
    user: Annotated[str, Query(description="Wallet address", min_length=42, max_length=42)],
    service: MarketService = Depends(_market_service),
):
    """Claimable payout for ``user`` computed from the mirrored pools and bets."""

    claimable = service.get_claimable(market_id, user)
    if claimable is None:
        raise HTTPException(status_code=404, detail="Market not found")
    return claimable


@app.post("/rewards/grant", response_model=schemas.RewardGrantResponse, tags=["rewards"])
async def grant_reward(
    payload: schemas.RewardGrantRequest,
    gateway: RewardGateway = Depends(_reward_gateway),
):
    """Credit points for a transaction once its receipt proves the wallet sent it."""

    try:
        result = await gateway.grant_if_verified(
            payload.wallet_address,
            payload.amount,
            payload.category,
            payload.tx_hash,
            chain_id=payload.chain_id,
            source=payload.source,
        )
    except VerificationFailure as exc:
        raise HTTPException(status_code=400, detail={"reason": exc.reason, "message": str(exc)}) from exc
    return schemas.RewardGrantResponse(new_total_points=result.new_total, granted=result.granted)
