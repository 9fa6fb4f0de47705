"""Higher-level conveniences for reading mirrored markets."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Sequence

from sqlalchemy.orm import Session

from arena.domain import UserStakes
from arena.models import MarketRecord, utcnow
from arena.repositories import LedgerRepository, MarketActivity, MarketRepository
from arena.schemas import Claimable, Market, UserPosition

from .settlement import MarketTotals, fold_user_stakes, settle

MARKET_FILTERS = ("active", "resolved", "void", "finished", "all")
MARKET_SORTS = ("newest", "oldest", "volume", "participants")


def is_void(record: MarketRecord, now: datetime | None = None) -> bool:
    """An unresolved market that ended without any stake can never pay out."""

    return (
        not record.resolved
        and record.end_time <= (now or utcnow())
        and record.total_stake_wei == 0
    )


def _matches(record: MarketRecord, market_filter: str, now: datetime) -> bool:
    void = is_void(record, now)
    if market_filter == "active":
        return not record.resolved and not void
    if market_filter == "resolved":
        return bool(record.resolved)
    if market_filter == "void":
        return void
    if market_filter == "finished":
        return bool(record.resolved) or void
    return True


@dataclass(slots=True)
class MarketQuery:
    filter: str = "active"
    sort: str = "newest"
    user: str | None = None
    limit: int = 50
    offset: int = 0


@dataclass(slots=True)
class MarketQueryResult:
    total: int
    markets: Sequence[Market]


@dataclass(slots=True, frozen=True)
class ClaimableMarket:
    market_id: int
    claimable: int


class MarketService:
    """Read-only facade over the mirror used by the API and the action layer."""

    def __init__(self, session: Session):
        self._session = session
        self._market_repo = MarketRepository(session)
        self._ledger_repo = LedgerRepository(session)

    def list_markets(self, query: MarketQuery) -> MarketQueryResult:
        if query.filter not in MARKET_FILTERS:
            raise ValueError(f"Unknown market filter: {query.filter}")
        if query.sort not in MARKET_SORTS:
            raise ValueError(f"Unknown market sort: {query.sort}")

        now = utcnow()
        records = [r for r in self._market_repo.list_markets() if _matches(r, query.filter, now)]
        activity = self._ledger_repo.market_activity([r.market_id for r in records])
        records = self._sort(records, query.sort, activity)

        total = len(records)
        page = records[query.offset : query.offset + query.limit]
        stakes, claimed = self._user_state(query.user)
        markets = [
            self._to_schema(record, activity.get(record.market_id), now, query.user, stakes, claimed)
            for record in page
        ]
        return MarketQueryResult(total=total, markets=markets)

    def get_market(self, market_id: int, *, user: str | None = None) -> Market | None:
        record = self._market_repo.get_market(market_id)
        if record is None:
            return None
        activity = self._ledger_repo.market_activity([market_id])
        stakes, claimed = self._user_state(user)
        return self._to_schema(record, activity.get(market_id), utcnow(), user, stakes, claimed)

    def get_claimable(self, market_id: int, user: str) -> Claimable | None:
        record = self._market_repo.get_market(market_id)
        if record is None:
            return None
        user = user.lower()
        stakes = fold_user_stakes(self._ledger_repo.list_bets(market_id=market_id, user=user))
        has_claimed = self._ledger_repo.has_claimed(market_id, user)
        settlement = settle(
            MarketTotals.from_record(record),
            stakes.get((market_id, user), UserStakes()),
            already_claimed=has_claimed,
        )
        return Claimable(
            market_id=market_id,
            user=user,
            claimable_wei=settlement.claimable,
            has_claimed=has_claimed,
        )

    def claimable_markets(self, user: str) -> list[ClaimableMarket]:
        """Resolved markets where ``user`` still has a positive payout, oldest first."""

        user = user.lower()
        stakes = fold_user_stakes(self._ledger_repo.list_bets(user=user))
        claimed = self._ledger_repo.claimed_market_ids(user)
        results: list[ClaimableMarket] = []
        for (market_id, _), user_stakes in sorted(stakes.items()):
            if market_id in claimed:
                continue
            record = self._market_repo.get_market(market_id)
            if record is None or not record.resolved:
                continue
            claimable = settle(MarketTotals.from_record(record), user_stakes).claimable
            if claimable > 0:
                results.append(ClaimableMarket(market_id=market_id, claimable=claimable))
        return results

    # ------------------------------------------------------------------

    @staticmethod
    def _sort(
        records: list[MarketRecord], sort: str, activity: dict[int, MarketActivity]
    ) -> list[MarketRecord]:
        if sort == "oldest":
            return sorted(records, key=lambda r: r.market_id)
        if sort == "volume":
            return sorted(records, key=lambda r: (r.total_stake_wei, r.market_id), reverse=True)
        if sort == "participants":
            return sorted(
                records,
                key=lambda r: (
                    activity[r.market_id].participant_count if r.market_id in activity else 0,
                    r.market_id,
                ),
                reverse=True,
            )
        return sorted(records, key=lambda r: r.market_id, reverse=True)

    def _user_state(self, user: str | None) -> tuple[dict[tuple[int, str], UserStakes], set[int]]:
        if not user:
            return {}, set()
        user = user.lower()
        stakes = fold_user_stakes(self._ledger_repo.list_bets(user=user))
        return stakes, self._ledger_repo.claimed_market_ids(user)

    def _to_schema(
        self,
        record: MarketRecord,
        activity: MarketActivity | None,
        now: datetime,
        user: str | None,
        stakes: dict[tuple[int, str], UserStakes],
        claimed: set[int],
    ) -> Market:
        payload = Market.model_validate(record)
        update: dict[str, object] = {
            "is_void": is_void(record, now),
            "participants": activity.participant_count if activity else 0,
            "bet_count": activity.bet_count if activity else 0,
        }
        if user:
            user_stakes = stakes.get((record.market_id, user.lower()), UserStakes())
            has_claimed = record.market_id in claimed
            settlement = settle(MarketTotals.from_record(record), user_stakes, already_claimed=has_claimed)
            update["user_position"] = UserPosition(
                yes_stake_wei=user_stakes.yes_stake,
                no_stake_wei=user_stakes.no_stake,
                claimable_wei=settlement.claimable,
                net_wei=settlement.net,
                has_claimed=has_claimed,
            )
        return payload.model_copy(update=update)


__all__ = [
    "ClaimableMarket",
    "MARKET_FILTERS",
    "MARKET_SORTS",
    "MarketQuery",
    "MarketQueryResult",
    "MarketService",
    "is_void",
]
