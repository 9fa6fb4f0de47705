from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from arena import schemas
from arena.db import session_scope
from arena.domain import BetSide, MarketSnapshot, WinningSide
from arena.errors import VerificationFailure
from arena.main import _market_service, _reward_gateway, app
from arena.repositories import LedgerRepository, MarketRepository
from arena.services.market_service import MarketQuery, MarketQueryResult, MarketService
from arena.services.rewards import RewardGrantResult

from conftest import ALICE, BOB, CONTRACT


@pytest.fixture
def client():
    """Test client that cleans up dependency overrides after each test."""
    yield TestClient(app)
    app.dependency_overrides.clear()


def _market_payload(**overrides) -> dict:
    payload = {
        "market_id": 1,
        "question": "Will this test pass?",
        "creator": ALICE,
        "contract_address": CONTRACT,
        "chain_id": 8453,
        "end_time": datetime.now(timezone.utc) + timedelta(hours=1),
        "status": "active",
        "resolved": False,
        "total_yes_wei": 2**200,
        "total_no_wei": 0,
        "total_stake_wei": 2**200,
        "fee_amount_wei": 0,
        "distributable_pool_wei": 0,
        "last_synced_at": datetime.now(timezone.utc),
    }
    payload.update(overrides)
    return payload


def test_healthcheck(client):
    """Verify the healthcheck endpoint returns a successful response."""
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_list_markets_passes_query(client):
    mock_service = MagicMock()
    mock_service.list_markets.return_value = MarketQueryResult(total=0, markets=[])
    app.dependency_overrides[_market_service] = lambda: mock_service

    response = client.get("/markets", params={"filter": "void", "sort": "volume", "limit": 5})
    assert response.status_code == 200
    assert response.json() == {"total": 0, "items": []}
    mock_service.list_markets.assert_called_once_with(
        MarketQuery(filter="void", sort="volume", user=None, limit=5, offset=0)
    )


def test_list_markets_rejects_unknown_filter(client):
    app.dependency_overrides[_market_service] = lambda: MagicMock()

    response = client.get("/markets", params={"filter": "bogus"})
    assert response.status_code == 422


def test_get_market_serializes_wei_as_strings(client):
    mock_service = MagicMock()
    mock_service.get_market.return_value = schemas.Market.model_validate(_market_payload())
    app.dependency_overrides[_market_service] = lambda: mock_service

    response = client.get("/markets/1", params={"user": ALICE})
    assert response.status_code == 200
    body = response.json()
    assert body["total_yes_wei"] == str(2**200)
    assert body["user_position"] is None
    mock_service.get_market.assert_called_once_with(1, user=ALICE)


def test_get_market_not_found(client):
    mock_service = MagicMock()
    mock_service.get_market.return_value = None
    app.dependency_overrides[_market_service] = lambda: mock_service

    response = client.get("/markets/999")
    assert response.status_code == 404


def test_get_claimable(client):
    mock_service = MagicMock()
    mock_service.get_claimable.return_value = schemas.Claimable(
        market_id=3, user=ALICE, claimable_wei=12345
    )
    app.dependency_overrides[_market_service] = lambda: mock_service

    response = client.get("/markets/3/claimable", params={"user": ALICE})
    assert response.status_code == 200
    assert response.json() == {
        "market_id": 3,
        "user": ALICE,
        "claimable_wei": "12345",
        "has_claimed": False,
    }


def test_grant_reward_success(client):
    gateway = MagicMock()
    gateway.grant_if_verified = AsyncMock(return_value=RewardGrantResult(new_total=400, granted=True))
    app.dependency_overrides[_reward_gateway] = lambda: gateway
    payload = {
        "wallet_address": ALICE,
        "amount": 200,
        "category": "PREDICTION_MARKET_BET",
        "tx_hash": "0x" + "ab" * 32,
        "chain_id": 8453,
        "source": "farcaster",
    }

    response = client.post("/rewards/grant", json=payload)
    assert response.status_code == 200
    assert response.json() == {"success": True, "new_total_points": 400, "granted": True}
    gateway.grant_if_verified.assert_awaited_once_with(
        ALICE, 200, "PREDICTION_MARKET_BET", "0x" + "ab" * 32, chain_id=8453, source="farcaster"
    )


def test_grant_reward_refusal_maps_to_400(client):
    gateway = MagicMock()
    gateway.grant_if_verified = AsyncMock(
        side_effect=VerificationFailure(VerificationFailure.SENDER_MISMATCH, "Transaction sender does not match wallet")
    )
    app.dependency_overrides[_reward_gateway] = lambda: gateway

    response = client.post("/rewards/grant", json={"wallet_address": BOB, "amount": 200})
    assert response.status_code == 400
    assert response.json()["detail"]["reason"] == "sender_mismatch"


# -- MarketService against a real mirror ---------------------------------


def _seed(session_factory) -> None:
    now = int(datetime.now(timezone.utc).timestamp())
    snapshots = [
        # Active, two bettors.
        MarketSnapshot(1, "Active?", ALICE, now + 3600, 5, 3, False, WinningSide.UNSET, 0, 0),
        # Resolved YES; Alice wins.
        MarketSnapshot(2, "Resolved?", BOB, now - 3600, 30, 10, True, WinningSide.YES, 0, 40),
        # Void: ended with no stake.
        MarketSnapshot(3, "Void?", BOB, now - 60, 0, 0, False, WinningSide.UNSET, 0, 0),
    ]
    with session_scope(session_factory) as session:
        markets = MarketRepository(session)
        for snapshot in snapshots:
            markets.upsert_snapshot(snapshot)
        ledger = LedgerRepository(session)
        ledger.append_bet(market_id=1, user=ALICE, side=BetSide.YES, amount=5, tx_hash="0x01")
        ledger.append_bet(market_id=1, user=BOB, side=BetSide.NO, amount=3, tx_hash="0x02")
        ledger.append_bet(market_id=2, user=ALICE, side=BetSide.YES, amount=30, tx_hash="0x03")
        ledger.append_bet(market_id=2, user=BOB, side=BetSide.NO, amount=10, tx_hash="0x04")


@pytest.mark.parametrize(
    ("market_filter", "expected"),
    [("active", [1]), ("resolved", [2]), ("void", [3]), ("finished", [3, 2]), ("all", [3, 2, 1])],
)
def test_market_service_filters(session_factory, market_filter, expected):
    _seed(session_factory)
    with session_scope(session_factory) as session:
        result = MarketService(session).list_markets(MarketQuery(filter=market_filter))
    assert [m.market_id for m in result.markets] == expected
    assert result.total == len(expected)


def test_market_service_sorts_and_pages(session_factory):
    _seed(session_factory)
    with session_scope(session_factory) as session:
        service = MarketService(session)
        by_volume = service.list_markets(MarketQuery(filter="all", sort="volume"))
        oldest_page = service.list_markets(MarketQuery(filter="all", sort="oldest", limit=1, offset=1))
    assert [m.market_id for m in by_volume.markets] == [2, 1, 3]
    assert [m.market_id for m in oldest_page.markets] == [2]
    assert oldest_page.total == 3


def test_market_service_user_position_and_claimables(session_factory):
    _seed(session_factory)
    with session_scope(session_factory) as session:
        service = MarketService(session)
        market = service.get_market(2, user=ALICE.upper().replace("0X", "0x"))
        claimable = service.get_claimable(2, ALICE)
        pending = service.claimable_markets(ALICE)
        nothing_for_bob = service.claimable_markets(BOB)

    assert market.participants == 2
    assert market.user_position.claimable_wei == "40"
    assert market.user_position.net_wei == "10"
    assert claimable.claimable_wei == "40"
    assert [(m.market_id, m.claimable) for m in pending] == [(2, 40)]
    assert nothing_for_bob == []
