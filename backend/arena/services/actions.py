"""Orchestrators for user-initiated arena transactions.

Each action validates locally, simulates the call, submits it through the
wallet, waits for the receipt and then writes what the receipt's events say
into the mirror before asking the sync engine to confirm it from chain state.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from loguru import logger

from arena.core.config import Settings, get_settings
from arena.db import SessionFactory, session_scope
from arena.domain import BetSide, MarketSnapshot, WinningSide
from arena.errors import (
    ActionPreconditionError,
    OnChainRevert,
    RpcError,
    SimulationRevert,
    TransientRpcError,
    UserCancelled,
)
from arena.models import utcnow
from arena.repositories import LedgerRepository, MarketRepository
from onchain.abi import (
    ArenaContract,
    BetPlaced,
    Claimed,
    ContractCall,
    MarketCreated,
    MarketResolved,
    decode_receipt_events,
    normalize_address,
)
from onchain.client import ChainReader, parse_hex_int, receipt_succeeded
from pipelines.market_sync import SyncEngine
from pipelines.reconciliation import ReconciliationLoop

from .market_service import MarketService
from .rewards import CATEGORY_CREATE_MARKET, CATEGORY_PLACE_BET, RewardGateway, RewardGrantResult

DEFAULT_MIN_DURATION = 3600
DEFAULT_MAX_DURATION = 86400
MIN_DURATION_SLACK = 180
MAX_DURATION_SLACK = 120

USER_REJECTION_CODE = 4001
USER_REJECTION_MARKERS = (
    "user rejected",
    "user denied",
    "rejected the request",
    "denied transaction",
)


class ActionStatus(str, Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    CONFIRMING = "confirming"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RewardPolicy(str, Enum):
    CONFIRM_FIRST = "confirm_first"
    HASH_ONLY = "hash_only"


class TransactionSender(Protocol):
    """Wallet collaborator that signs and broadcasts transactions."""

    address: str

    async def send_transaction(self, to: str, data: str, value: int = 0) -> str:
        ...


@dataclass(slots=True)
class ActionResult:
    action: str
    status: ActionStatus
    market_id: int | None = None
    tx_hash: str | None = None
    events: list[Any] = field(default_factory=list)
    error: str | None = None
    error_kind: str | None = None
    sync_degraded: bool = False
    reward: RewardGrantResult | None = None

    @property
    def ok(self) -> bool:
        return self.status is ActionStatus.DONE


@dataclass(slots=True)
class ClaimAllResult:
    results: list[ActionResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def claimed(self) -> list[int]:
        return [r.market_id for r in self.results if r.ok and r.market_id is not None]

    @property
    def failed(self) -> list[int]:
        return [
            r.market_id
            for r in self.results
            if r.status is ActionStatus.FAILED and r.market_id is not None
        ]


def is_user_rejection(exc: BaseException) -> bool:
    if isinstance(exc, UserCancelled):
        return True
    if getattr(exc, "code", None) == USER_REJECTION_CODE:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in USER_REJECTION_MARKERS)


def clamp_duration(requested: int, min_duration: int, max_duration: int) -> int:
    """Keep a requested market duration strictly inside the contract's window."""

    min_dur = min_duration or DEFAULT_MIN_DURATION
    max_dur = max_duration or DEFAULT_MAX_DURATION
    duration = int(requested)
    if duration <= min_dur:
        duration = min_dur + MIN_DURATION_SLACK
    if duration >= max_dur:
        duration = max(min_dur + 1, max_dur - MAX_DURATION_SLACK)
    return duration


OnConfirmed = Callable[[list[Any], dict[str, Any]], int | None]


class ArenaActions:
    """Create, bet, resolve and claim against the arena contract for one wallet."""

    def __init__(
        self,
        reader: ChainReader,
        wallet: TransactionSender,
        *,
        sync_engine: SyncEngine | None = None,
        reconciler: ReconciliationLoop | None = None,
        reward_gateway: RewardGateway | None = None,
        reward_policy: RewardPolicy | str | None = None,
        session_factory: SessionFactory | None = None,
        settings: Settings | None = None,
        confirmation_timeout: float | None = None,
        confirmation_poll_interval: float | None = None,
        on_status: Callable[[str, ActionStatus], None] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.reader = reader
        self.wallet = wallet
        self.sync_engine = sync_engine or SyncEngine(
            reader, session_factory=session_factory, settings=self.settings
        )
        self.reconciler = reconciler
        self.reward_gateway = reward_gateway
        self.reward_policy = RewardPolicy(reward_policy or self.settings.reward_policy)
        self._session_factory = session_factory
        self.confirmation_timeout = confirmation_timeout or self.settings.confirmation_timeout_seconds
        self.confirmation_poll_interval = (
            confirmation_poll_interval or self.settings.confirmation_poll_interval_seconds
        )
        self._on_status = on_status
        self._pending_rewards: set[asyncio.Task] = set()
        self.status = ActionStatus.IDLE

    @property
    def user(self) -> str:
        return normalize_address(self.wallet.address)

    # ------------------------------------------------------------------
    # Actions

    async def create_market(self, question: str, duration_seconds: int) -> ActionResult:
        action = "create_market"
        question = (question or "").strip()
        if not question:
            return self._precondition_failed(action, None, "Question must not be empty")

        try:
            params = await self.reader.contract_parameters()
            block_time = await self.reader.latest_block_timestamp()
        except RpcError as exc:
            return self._rpc_failed(action, None, exc)

        duration = clamp_duration(duration_seconds, params.min_duration, params.max_duration)
        end_time = block_time + duration
        call = ArenaContract.create_market(question, end_time)

        def on_confirmed(events: list[Any], receipt: dict[str, Any]) -> int | None:
            created = next((e for e in events if isinstance(e, MarketCreated)), None)
            if created is None:
                logger.warning("createMarket receipt {} carried no MarketCreated event", receipt.get("transactionHash"))
                return None
            snapshot = MarketSnapshot(
                market_id=created.market_id,
                question=created.question,
                creator=created.creator or self.user,
                end_time=created.end_time,
                total_yes=0,
                total_no=0,
                resolved=False,
                winning_side=WinningSide.UNSET,
                fee_amount=0,
                distributable_pool=0,
            )
            with session_scope(self._session_factory) as session:
                MarketRepository(session).upsert_snapshot(
                    snapshot,
                    provisional=True,
                    contract_address=self.reader.contract_address,
                    chain_id=self.settings.chain_id,
                )
            return created.market_id

        return await self._execute(
            action,
            call,
            value=params.create_fee,
            market_id=None,
            on_confirmed=on_confirmed,
            reward=(self.settings.reward_points_create_market, CATEGORY_CREATE_MARKET),
        )

    async def place_bet(self, market_id: int, for_yes: bool, amount: int) -> ActionResult:
        action = "place_bet"
        if amount <= 0:
            return self._precondition_failed(action, market_id, "Bet amount must be positive")

        try:
            snapshot = await self.reader.get_market(market_id)
            if snapshot.end_time == 0:
                return self._precondition_failed(action, market_id, f"Market {market_id} does not exist")
            locked = await self.reader.is_bet_locked(market_id)
            max_bet = int(await self.reader.read_state(ArenaContract.max_bet_per_user()))
            stakes = await self.reader.get_user_stakes(market_id, self.user)
        except RpcError as exc:
            return self._rpc_failed(action, market_id, exc)

        side = BetSide.from_flag(for_yes)
        if snapshot.resolved:
            return self._precondition_failed(action, market_id, "Market is already resolved")
        if snapshot.end_time <= self._now():
            return self._precondition_failed(action, market_id, "Market has expired")
        if locked:
            return self._precondition_failed(action, market_id, "Betting is locked for this market")
        if max_bet and stakes.side(side) + amount > max_bet:
            return self._precondition_failed(
                action, market_id, f"Bet exceeds the per-user cap of {max_bet} wei on {side.value}"
            )

        call = ArenaContract.bet(market_id, for_yes)

        def on_confirmed(events: list[Any], receipt: dict[str, Any]) -> int | None:
            placed = next(
                (e for e in events if isinstance(e, BetPlaced) and e.market_id == market_id), None
            )
            if placed is None:
                logger.warning(
                    "bet receipt {} carried no BetPlaced event for market {}",
                    receipt.get("transactionHash"),
                    market_id,
                )
                return None
            bet_side = BetSide.from_flag(placed.for_yes)
            with session_scope(self._session_factory) as session:
                markets = MarketRepository(session)
                if markets.get_market(market_id) is None:
                    markets.upsert_snapshot(
                        snapshot,
                        provisional=True,
                        contract_address=self.reader.contract_address,
                        chain_id=self.settings.chain_id,
                    )
                _, created = LedgerRepository(session).append_bet(
                    market_id=market_id,
                    user=placed.user,
                    side=bet_side,
                    amount=placed.amount,
                    tx_hash=receipt["transactionHash"],
                )
                if created:
                    markets.apply_provisional_bet(market_id, bet_side, placed.amount)
            return market_id

        return await self._execute(
            action,
            call,
            value=amount,
            market_id=market_id,
            on_confirmed=on_confirmed,
            reward=(self.settings.reward_points_place_bet, CATEGORY_PLACE_BET),
        )

    async def resolve(self, market_id: int) -> ActionResult:
        action = "resolve"
        try:
            snapshot = await self.reader.get_market(market_id)
        except RpcError as exc:
            return self._rpc_failed(action, market_id, exc)
        if snapshot.end_time == 0:
            return self._precondition_failed(action, market_id, f"Market {market_id} does not exist")
        if snapshot.resolved:
            return self._precondition_failed(action, market_id, "Market is already resolved")
        if snapshot.end_time > self._now():
            return self._precondition_failed(action, market_id, "Market has not ended yet")

        call = ArenaContract.resolve(market_id)

        def on_confirmed(events: list[Any], receipt: dict[str, Any]) -> int | None:
            resolved = next(
                (e for e in events if isinstance(e, MarketResolved) and e.market_id == market_id), None
            )
            if resolved is None:
                logger.warning(
                    "resolve receipt {} carried no MarketResolved event for market {}",
                    receipt.get("transactionHash"),
                    market_id,
                )
                return None
            with session_scope(self._session_factory) as session:
                markets = MarketRepository(session)
                if markets.get_market(market_id) is None:
                    markets.upsert_snapshot(
                        snapshot,
                        provisional=True,
                        contract_address=self.reader.contract_address,
                        chain_id=self.settings.chain_id,
                    )
                markets.apply_provisional_resolution(market_id, resolved.winning_side, resolved.fee_amount)
            return market_id

        return await self._execute(action, call, value=0, market_id=market_id, on_confirmed=on_confirmed)

    async def claim(self, market_id: int) -> ActionResult:
        action = "claim"
        with session_scope(self._session_factory) as session:
            already_claimed = LedgerRepository(session).has_claimed(market_id, self.user)
        if already_claimed:
            return self._precondition_failed(action, market_id, "Winnings already claimed")

        try:
            snapshot = await self.reader.get_market(market_id)
            if not snapshot.resolved:
                return self._precondition_failed(action, market_id, "Market is not resolved")
            claimable = await self.reader.get_claimable(market_id, self.user)
        except RpcError as exc:
            return self._rpc_failed(action, market_id, exc)
        if claimable <= 0:
            return self._precondition_failed(action, market_id, "Nothing to claim")

        call = ArenaContract.claim(market_id)

        def on_confirmed(events: list[Any], receipt: dict[str, Any]) -> int | None:
            claimed = next(
                (e for e in events if isinstance(e, Claimed) and e.market_id == market_id), None
            )
            if claimed is None:
                logger.warning(
                    "claim receipt {} carried no Claimed event for market {}",
                    receipt.get("transactionHash"),
                    market_id,
                )
                return None
            with session_scope(self._session_factory) as session:
                markets = MarketRepository(session)
                if markets.get_market(market_id) is None:
                    markets.upsert_snapshot(
                        snapshot,
                        contract_address=self.reader.contract_address,
                        chain_id=self.settings.chain_id,
                    )
                LedgerRepository(session).append_claim(
                    market_id=market_id,
                    user=claimed.user,
                    payout=claimed.payout,
                    tx_hash=receipt["transactionHash"],
                )
            return market_id

        return await self._execute(action, call, value=0, market_id=market_id, on_confirmed=on_confirmed)

    async def claim_all(self, market_ids: list[int] | None = None) -> ClaimAllResult:
        """Claim sequentially; failures are recorded, a wallet rejection stops the batch."""

        if market_ids is None:
            with session_scope(self._session_factory) as session:
                market_ids = [m.market_id for m in MarketService(session).claimable_markets(self.user)]

        batch = ClaimAllResult()
        for market_id in market_ids:
            result = await self.claim(market_id)
            batch.results.append(result)
            if result.status is ActionStatus.CANCELLED:
                batch.cancelled = True
                logger.info("claim_all stopped by the user after {} claims", len(batch.results) - 1)
                break
        return batch

    async def drain_rewards(self) -> None:
        """Wait for reward grants that were scheduled in the background."""

        if self._pending_rewards:
            await asyncio.gather(*list(self._pending_rewards), return_exceptions=True)

    # ------------------------------------------------------------------
    # Pipeline

    async def _execute(
        self,
        action: str,
        call: ContractCall,
        *,
        value: int,
        market_id: int | None,
        on_confirmed: OnConfirmed,
        reward: tuple[int, str] | None = None,
    ) -> ActionResult:
        sender = self.wallet.address
        self._set_status(action, ActionStatus.SUBMITTING)

        try:
            await self.reader.simulate(call, sender=sender, value=value)
        except SimulationRevert as exc:
            logger.info("{} simulation reverted: {}", action, exc.reason)
            return self._failed(action, market_id, "simulation_revert", exc.reason)
        except RpcError as exc:
            return self._rpc_failed(action, market_id, exc)

        try:
            tx_hash = await self.wallet.send_transaction(self.reader.contract_address, call.data, value)
        except Exception as exc:  # noqa: BLE001 - wallet providers raise arbitrary errors
            if is_user_rejection(exc):
                logger.debug("{} cancelled in wallet", action)
                return self._failed(action, market_id, "cancelled", status=ActionStatus.CANCELLED)
            logger.warning("{} submission failed: {}", action, exc)
            return self._failed(action, market_id, "submission", str(exc))

        result = ActionResult(action, ActionStatus.CONFIRMING, market_id=market_id, tx_hash=tx_hash)
        if reward and self.reward_policy is RewardPolicy.HASH_ONLY:
            self._schedule_reward(tx_hash, *reward)

        self._set_status(action, ActionStatus.CONFIRMING)
        try:
            receipt = await self.reader.wait_for_receipt(
                tx_hash, timeout=self.confirmation_timeout, poll_interval=self.confirmation_poll_interval
            )
        except TransientRpcError as exc:
            logger.warning("{} {} not confirmed: {}", action, tx_hash, exc)
            result.status = ActionStatus.FAILED
            result.error = str(exc)
            result.error_kind = "sync_degraded"
            result.sync_degraded = True
            return self._finish(action, result)

        if not receipt_succeeded(receipt):
            reason = await self.reader.revert_reason(
                call, sender=sender, value=value, block_number=_block_number(receipt)
            )
            revert = OnChainRevert(tx_hash, reason)
            logger.warning("{}", revert)
            result.status = ActionStatus.FAILED
            result.error = str(revert)
            result.error_kind = "onchain_revert"
            return self._finish(action, result)

        receipt.setdefault("transactionHash", tx_hash)
        result.events = decode_receipt_events(receipt, contract_address=self.reader.contract_address)
        try:
            confirmed_id = on_confirmed(result.events, receipt)
        except Exception:  # noqa: BLE001 - the chain write already succeeded
            logger.exception("Optimistic mirror write for {} {} failed", action, tx_hash)
            confirmed_id = None
        if confirmed_id is None:
            # Nothing optimistic was written; the resync below is the only source.
            result.sync_degraded = True
        else:
            result.market_id = confirmed_id

        if result.market_id is not None:
            snapshot = await self.sync_engine.single_market_resync(result.market_id)
            if snapshot is None:
                result.sync_degraded = True
        if self.reconciler is not None:
            try:
                await self.reconciler.tick()
            except Exception:  # noqa: BLE001
                logger.exception("Reconciliation tick after {} failed", action)

        if reward and self.reward_policy is RewardPolicy.CONFIRM_FIRST:
            result.reward = await self._grant_reward(tx_hash, *reward)

        result.status = ActionStatus.DONE
        return self._finish(action, result)

    # ------------------------------------------------------------------
    # Rewards

    async def _grant_reward(self, tx_hash: str, points: int, category: str) -> RewardGrantResult | None:
        if self.reward_gateway is None or points <= 0:
            return None
        try:
            return await self.reward_gateway.grant_if_verified(
                self.wallet.address,
                points,
                category,
                tx_hash,
                chain_id=self.settings.chain_id,
                source=self.settings.reward_source,
            )
        except Exception as exc:  # noqa: BLE001 - a reward failure never fails the action
            logger.warning("Reward {} for {} not granted: {}", category, tx_hash, exc)
            return None

    def _schedule_reward(self, tx_hash: str, points: int, category: str) -> None:
        task = asyncio.create_task(self._grant_reward(tx_hash, points, category))
        self._pending_rewards.add(task)
        task.add_done_callback(self._pending_rewards.discard)

    # ------------------------------------------------------------------
    # Helpers

    def _now(self) -> int:
        return int(utcnow().timestamp())

    def _set_status(self, action: str, status: ActionStatus) -> None:
        self.status = status
        if self._on_status is not None:
            self._on_status(action, status)

    def _finish(self, action: str, result: ActionResult) -> ActionResult:
        self._set_status(action, result.status)
        return result

    def _failed(
        self,
        action: str,
        market_id: int | None,
        kind: str,
        error: str | None = None,
        *,
        status: ActionStatus = ActionStatus.FAILED,
        degraded: bool = False,
    ) -> ActionResult:
        result = ActionResult(
            action, status, market_id=market_id, error=error, error_kind=kind, sync_degraded=degraded
        )
        return self._finish(action, result)

    def _precondition_failed(self, action: str, market_id: int | None, message: str) -> ActionResult:
        error = ActionPreconditionError(message)
        logger.info("{} rejected locally: {}", action, error)
        return self._failed(action, market_id, "precondition", str(error))

    def _rpc_failed(self, action: str, market_id: int | None, exc: RpcError) -> ActionResult:
        degraded = isinstance(exc, TransientRpcError)
        logger.warning("{} chain read failed: {}", action, exc)
        return self._failed(
            action, market_id, "sync_degraded" if degraded else "rpc", str(exc), degraded=degraded
        )


def _block_number(receipt: dict[str, Any]) -> Any:
    value = receipt.get("blockNumber")
    if value is None:
        return "latest"
    try:
        return parse_hex_int(value)
    except ValueError:
        return "latest"


__all__ = [
    "ActionResult",
    "ActionStatus",
    "ArenaActions",
    "ClaimAllResult",
    "RewardPolicy",
    "TransactionSender",
    "clamp_duration",
    "is_user_rejection",
]
