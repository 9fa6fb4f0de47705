from __future__ import annotations

from datetime import datetime, timedelta, timezone

from arena.core.config import settings
from arena.db import session_scope
from arena.domain import BetSide, MarketSnapshot, WinningSide
from arena.models import MarketStatus
from arena.repositories import LedgerRepository, MarketRepository, RewardRepository, level_for
from arena.services.settlement import expected_distributable

from conftest import ALICE, BOB

T0 = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def _snapshot(market_id: int = 1, **overrides) -> MarketSnapshot:
    values = dict(
        market_id=market_id,
        question="Will it ship?",
        creator=ALICE,
        end_time=int((T0 + timedelta(hours=1)).timestamp()),
        total_yes=10,
        total_no=5,
        resolved=False,
        winning_side=WinningSide.UNSET,
        fee_amount=0,
        distributable_pool=0,
    )
    values.update(overrides)
    return MarketSnapshot(**values)


def test_upsert_stores_wei_amounts_exactly(session_factory):
    huge = 2**255 + 12345
    with session_scope(session_factory) as session:
        MarketRepository(session).upsert_snapshot(_snapshot(total_yes=huge), synced_at=T0)

    with session_scope(session_factory) as session:
        record = MarketRepository(session).get_market(1)
        assert record.total_yes_wei == huge
        assert record.total_stake_wei == huge + 5
        assert record.status == MarketStatus.EXPIRED.value


def test_confirmed_write_replaces_newer_provisional_row(session_factory):
    with session_scope(session_factory) as session:
        repo = MarketRepository(session)
        repo.upsert_snapshot(_snapshot(total_yes=99), synced_at=T0 + timedelta(seconds=10), provisional=True)
        repo.upsert_snapshot(_snapshot(total_yes=10), synced_at=T0)

    with session_scope(session_factory) as session:
        record = MarketRepository(session).get_market(1)
        assert record.total_yes_wei == 10
        assert record.provisional is False


def test_provisional_write_never_replaces_newer_confirmed_row(session_factory):
    with session_scope(session_factory) as session:
        repo = MarketRepository(session)
        repo.upsert_snapshot(_snapshot(total_yes=10), synced_at=T0 + timedelta(seconds=10))
        repo.upsert_snapshot(_snapshot(total_yes=1), synced_at=T0, provisional=True)
        # Older confirmed writes lose too.
        repo.upsert_snapshot(_snapshot(total_yes=2), synced_at=T0 + timedelta(seconds=5))

    with session_scope(session_factory) as session:
        record = MarketRepository(session).get_market(1)
        assert record.total_yes_wei == 10
        assert record.provisional is False


def test_end_time_change_on_confirmed_row_is_overwritten_from_chain(session_factory):
    moved = int((T0 + timedelta(hours=5)).timestamp())
    with session_scope(session_factory) as session:
        repo = MarketRepository(session)
        repo.upsert_snapshot(_snapshot(), synced_at=T0)
        repo.upsert_snapshot(_snapshot(end_time=moved), synced_at=T0 + timedelta(seconds=1))

    with session_scope(session_factory) as session:
        record = MarketRepository(session).get_market(1)
        assert int(record.end_time.timestamp()) == moved


def test_stale_unresolved_query_skips_void_and_future_markets(session_factory):
    past = int((datetime.now(timezone.utc) - timedelta(hours=2)).timestamp())
    older = past - 600
    future = int((datetime.now(timezone.utc) + timedelta(hours=2)).timestamp())
    with session_scope(session_factory) as session:
        repo = MarketRepository(session)
        repo.upsert_snapshot(_snapshot(1, end_time=past))
        repo.upsert_snapshot(_snapshot(2, end_time=past, total_yes=0, total_no=0))
        repo.upsert_snapshot(_snapshot(3, end_time=future))
        repo.upsert_snapshot(_snapshot(4, end_time=older))
        repo.upsert_snapshot(
            _snapshot(5, end_time=older, resolved=True, winning_side=WinningSide.YES)
        )

    with session_scope(session_factory) as session:
        stale = MarketRepository(session).list_stale_unresolved(limit=8)
        assert [record.market_id for record in stale] == [4, 1]


def test_bet_and_claim_appends_are_idempotent_by_hash(session_factory):
    with session_scope(session_factory) as session:
        MarketRepository(session).upsert_snapshot(_snapshot())
        ledger = LedgerRepository(session)
        _, first = ledger.append_bet(market_id=1, user=ALICE.upper(), side=BetSide.YES, amount=5, tx_hash="0x01")
        _, second = ledger.append_bet(market_id=1, user=ALICE, side=BetSide.YES, amount=5, tx_hash="0x01")
        ledger.append_bet(market_id=1, user=BOB, side=BetSide.NO, amount=3, tx_hash="0x02")
        _, claimed = ledger.append_claim(market_id=1, user=ALICE, payout=7, tx_hash="0x03")
        _, claimed_again = ledger.append_claim(market_id=1, user=ALICE, payout=7, tx_hash="0x03")

    assert (first, second) == (True, False)
    assert (claimed, claimed_again) == (True, False)
    with session_scope(session_factory) as session:
        ledger = LedgerRepository(session)
        assert len(ledger.list_bets(market_id=1)) == 2
        assert ledger.has_claimed(1, ALICE.upper().replace("0X", "0x"))
        assert not ledger.has_claimed(1, BOB)
        activity = ledger.market_activity([1])[1]
        assert activity.participant_count == 2
        assert activity.volume == 8


def test_reward_credit_bumps_total_and_level_once(session_factory):
    with session_scope(session_factory) as session:
        repo = RewardRepository(session)
        first = repo.credit(
            wallet=ALICE, points=250, category="PREDICTION_MARKET_BET", source="web", tx_hash="0xaa", chain_id=8453
        )
        repeat = repo.credit(
            wallet=ALICE, points=250, category="PREDICTION_MARKET_BET", source="web", tx_hash="0xaa", chain_id=8453
        )

    assert (first.new_total, first.granted) == (250, True)
    assert (repeat.new_total, repeat.granted) == (250, False)
    with session_scope(session_factory) as session:
        player = RewardRepository(session).get_player(ALICE)
        assert player.level == level_for(250) == 3
        assert player.total_transactions == 1


def test_reward_credit_dedupes_hashes_case_insensitively(session_factory):
    with session_scope(session_factory) as session:
        repo = RewardRepository(session)
        first = repo.credit(
            wallet=ALICE, points=100, category="PREDICTION_MARKET_BET", source="web", tx_hash="0xABCD", chain_id=8453
        )
        repeat = repo.credit(
            wallet=ALICE, points=100, category="PREDICTION_MARKET_BET", source="web", tx_hash="0xabcd", chain_id=8453
        )

    assert first.granted and not repeat.granted
    with session_scope(session_factory) as session:
        repo = RewardRepository(session)
        assert repo.total_for(ALICE) == 100
        assert repo.get_grant("0xAbCd").tx_hash == "0xabcd"


def test_stale_unresolved_query_only_returns_the_configured_deployment(session_factory):
    past = int((datetime.now(timezone.utc) - timedelta(hours=2)).timestamp())
    other_contract = "0x" + "ee" * 20
    with session_scope(session_factory) as session:
        repo = MarketRepository(session)
        repo.upsert_snapshot(_snapshot(1, end_time=past))
        repo.upsert_snapshot(_snapshot(2, end_time=past), contract_address=other_contract)
        repo.upsert_snapshot(_snapshot(3, end_time=past), chain_id=settings.chain_id + 1)
        repo.upsert_snapshot(
            _snapshot(4, end_time=past), contract_address=settings.contract_address.upper().replace("0X", "0x")
        )

    with session_scope(session_factory) as session:
        repo = MarketRepository(session)
        assert [r.market_id for r in repo.list_stale_unresolved()] == [1, 4]
        assert [r.market_id for r in repo.list_stale_unresolved(contract_address=other_contract)] == [2]
        assert [r.market_id for r in repo.list_stale_unresolved(chain_id=settings.chain_id + 1)] == [3]


def test_provisional_resolution_pool_matches_settlement_arithmetic(session_factory):
    with session_scope(session_factory) as session:
        repo = MarketRepository(session)
        repo.upsert_snapshot(_snapshot(1, total_yes=700, total_no=300), synced_at=T0)
        repo.upsert_snapshot(_snapshot(2, total_yes=3, total_no=0), synced_at=T0)
        repo.apply_provisional_resolution(1, WinningSide.YES, 25, synced_at=T0 + timedelta(seconds=1))
        repo.apply_provisional_resolution(2, WinningSide.NO, 10, synced_at=T0 + timedelta(seconds=1))

    with session_scope(session_factory) as session:
        for record in MarketRepository(session).list_markets():
            assert record.provisional and record.resolved
            assert record.distributable_pool_wei == expected_distributable(
                record.total_yes_wei, record.total_no_wei, record.fee_amount_wei
            )
            assert 0 <= record.distributable_pool_wei <= record.total_stake_wei
        assert MarketRepository(session).get_market(1).distributable_pool_wei == 975
        assert MarketRepository(session).get_market(2).distributable_pool_wei == 0
