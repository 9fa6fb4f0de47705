from __future__ import annotations

import json
import os
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import httpx
import pytest
from eth_abi import decode, encode
from web3 import Web3

from arena.core.config import settings
from arena.db import build_session_factory
from arena.domain import WinningSide
from onchain.abi import (
    BET_PLACED,
    CLAIMED,
    ERROR_STRING_SELECTOR,
    MARKET_CREATED,
    MARKET_RESOLVED,
    ArenaContract,
    ContractFunction,
    to_bytes,
    to_hex,
)
from onchain.client import ChainReader

CONTRACT = settings.contract_address
ALICE = "0x00000000000000000000000000000000000a11ce"
BOB = "0x0000000000000000000000000000000000000b0b"
ZERO_ADDRESS = "0x" + "00" * 20
NOW = int(time.time())

_FUNCTIONS: dict[bytes, ContractFunction] = {
    value.selector: value for value in vars(ArenaContract).values() if isinstance(value, ContractFunction)
}


@dataclass
class FakeMarket:
    question: str
    creator: str
    end_time: int
    total_yes: int = 0
    total_no: int = 0
    resolved: bool = False
    winning_side: int = 0
    fee_amount: int = 0
    distributable_pool: int = 0
    locked: bool = False


@dataclass
class FakeArenaChain:
    """In-memory arena contract answering JSON-RPC over an httpx mock transport."""

    block_timestamp: int = NOW
    create_fee: int = 10**15
    max_bet_per_user: int = 10**18
    min_duration: int = 3600
    max_duration: int = 86400
    lock_window: int = 300
    platform_fee_bps: int = 200
    markets: dict[int, FakeMarket] = field(default_factory=dict)
    stakes: dict[tuple[int, str], list[int]] = field(default_factory=dict)
    claimed: set[tuple[int, str]] = field(default_factory=set)
    receipts: dict[str, dict[str, Any]] = field(default_factory=dict)
    failing_markets: set[int] = field(default_factory=set)
    reverts: dict[str, str] = field(default_factory=dict)
    emit_logs: bool = True
    rate_limited_responses: int = 0
    requests: list[dict[str, Any]] = field(default_factory=list)
    _nonce: int = 0

    # -- state helpers -------------------------------------------------

    def add_market(self, market_id: int | None = None, **kwargs: Any) -> int:
        market_id = market_id or (max(self.markets, default=0) + 1)
        kwargs.setdefault("question", f"Market {market_id}?")
        kwargs.setdefault("creator", ALICE)
        kwargs.setdefault("end_time", self.block_timestamp + 3600)
        self.markets[market_id] = FakeMarket(**kwargs)
        return market_id

    def add_stake(self, market_id: int, user: str, *, yes: int = 0, no: int = 0) -> None:
        market = self.markets[market_id]
        entry = self.stakes.setdefault((market_id, user.lower()), [0, 0])
        entry[0] += yes
        entry[1] += no
        market.total_yes += yes
        market.total_no += no

    def settle(self, market_id: int, winning_side: WinningSide | None = None) -> None:
        market = self.markets[market_id]
        if winning_side is None:
            if market.total_yes > market.total_no:
                winning_side = WinningSide.YES
            elif market.total_no > market.total_yes:
                winning_side = WinningSide.NO
            else:
                winning_side = WinningSide.TIE
        total = market.total_yes + market.total_no
        market.resolved = True
        market.winning_side = int(winning_side)
        market.fee_amount = total * self.platform_fee_bps // 10_000
        market.distributable_pool = total - market.fee_amount

    def claimable(self, market_id: int, user: str) -> int:
        market = self.markets.get(market_id)
        if market is None or not market.resolved or (market_id, user.lower()) in self.claimed:
            return 0
        yes, no = self.stakes.get((market_id, user.lower()), [0, 0])
        if market.winning_side == WinningSide.TIE:
            pool, stake = market.total_yes + market.total_no, yes + no
        elif market.winning_side == WinningSide.YES:
            pool, stake = market.total_yes, yes
        else:
            pool, stake = market.total_no, no
        if pool <= 0 or stake <= 0:
            return 0
        return market.distributable_pool * stake // pool

    # -- JSON-RPC ------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.requests.append(payload)
        if self.rate_limited_responses > 0:
            self.rate_limited_responses -= 1
            return httpx.Response(429, json={"error": "Too Many Requests"})

        method = payload["method"]
        params = payload["params"]
        try:
            if method == "eth_call":
                result = self._eth_call(params[0])
            elif method == "eth_getTransactionReceipt":
                result = self.receipts.get(params[0])
            elif method == "eth_getBlockByNumber":
                result = {"number": "0x10", "timestamp": hex(self.block_timestamp)}
            else:
                return self._error(payload, -32601, f"method {method} not found")
        except _Revert as exc:
            return self._error(payload, 3, "execution reverted", exc.data)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "result": result})

    @staticmethod
    def _error(payload: dict[str, Any], code: int, message: str, data: str | None = None) -> httpx.Response:
        error: dict[str, Any] = {"code": code, "message": message}
        if data is not None:
            error["data"] = data
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "error": error})

    def _eth_call(self, tx: dict[str, Any]) -> str:
        raw = to_bytes(tx["data"])
        function = _FUNCTIONS[raw[:4]]
        args = decode(list(function.inputs), raw[4:]) if function.inputs else ()
        if function.name in self.reverts:
            raise _Revert(self.reverts[function.name])
        name = function.name

        if name == "marketCount":
            return function.encode_output(max(self.markets, default=0))
        if name == "getMarket":
            (market_id,) = args
            if market_id in self.failing_markets:
                raise _Revert("market read failed")
            market = self.markets.get(market_id)
            if market is None:
                return function.encode_output(("", ZERO_ADDRESS, 0, 0, 0, False, 0, 0, 0))
            return function.encode_output(
                (
                    market.question,
                    market.creator,
                    market.end_time,
                    market.total_yes,
                    market.total_no,
                    market.resolved,
                    market.winning_side,
                    market.fee_amount,
                    market.distributable_pool,
                )
            )
        if name == "getMarketImbalance":
            (market_id,) = args
            market = self.markets.get(market_id) or FakeMarket("", ZERO_ADDRESS, 0)
            total = market.total_yes + market.total_no
            bps = abs(market.total_yes - market.total_no) * 10_000 // total if total else 0
            return function.encode_output(market.total_yes, market.total_no, bps, bps >= 8_000)
        if name == "isBetLocked":
            (market_id,) = args
            market = self.markets.get(market_id)
            return function.encode_output(bool(market and market.locked))
        if name == "getUserStakes":
            market_id, user = args
            yes, no = self.stakes.get((market_id, user.lower()), [0, 0])
            return function.encode_output(yes, no)
        if name == "getClaimable":
            market_id, user = args
            return function.encode_output(self.claimable(market_id, user))
        if name == "createFeeEth":
            return function.encode_output(self.create_fee)
        if name == "platformFeeBps":
            return function.encode_output(self.platform_fee_bps)
        if name == "maxBetPerUser":
            return function.encode_output(self.max_bet_per_user)
        if name == "lockWindowSeconds":
            return function.encode_output(self.lock_window)
        if name == "minDurationSeconds":
            return function.encode_output(self.min_duration)
        if name == "maxDurationSeconds":
            return function.encode_output(self.max_duration)
        # Writes simulate successfully unless a revert is configured.
        return "0x"

    # -- transactions --------------------------------------------------

    def mine(self, sender: str, data: str, value: int, *, status: str = "0x1") -> str:
        self._nonce += 1
        tx_hash = to_hex(Web3.keccak(text=f"tx-{self._nonce}"))
        raw = to_bytes(data)
        function = _FUNCTIONS[raw[:4]]
        args = decode(list(function.inputs), raw[4:]) if function.inputs else ()
        sender = sender.lower()
        logs: list[dict[str, Any]] = []

        if status == "0x1":
            if function.name == "createMarket":
                question, end_time = args
                market_id = self.add_market(question=question, creator=sender, end_time=end_time)
                logs.append(
                    MARKET_CREATED.encode_log(
                        CONTRACT, marketId=market_id, creator=sender, question=question, endTime=end_time
                    )
                )
            elif function.name == "bet":
                market_id, for_yes = args
                self.add_stake(market_id, sender, yes=value if for_yes else 0, no=0 if for_yes else value)
                logs.append(
                    BET_PLACED.encode_log(
                        CONTRACT, marketId=market_id, user=sender, forYes=for_yes, amount=value
                    )
                )
            elif function.name == "resolve":
                (market_id,) = args
                self.settle(market_id)
                market = self.markets[market_id]
                logs.append(
                    MARKET_RESOLVED.encode_log(
                        CONTRACT,
                        marketId=market_id,
                        winningSide=market.winning_side,
                        feeAmount=market.fee_amount,
                    )
                )
            elif function.name == "claim":
                (market_id,) = args
                payout = self.claimable(market_id, sender)
                self.claimed.add((market_id, sender))
                logs.append(CLAIMED.encode_log(CONTRACT, marketId=market_id, user=sender, payout=payout))

        self.receipts[tx_hash] = {
            "transactionHash": tx_hash,
            "status": status,
            "from": sender,
            "to": CONTRACT.lower(),
            "blockNumber": "0x10",
            "logs": logs if self.emit_logs else [],
        }
        return tx_hash

    def add_receipt(self, sender: str, *, status: str | int | None = "0x1") -> str:
        self._nonce += 1
        tx_hash = to_hex(Web3.keccak(text=f"external-{self._nonce}"))
        self.receipts[tx_hash] = {
            "transactionHash": tx_hash,
            "status": status,
            "from": sender.lower(),
            "blockNumber": "0x10",
            "logs": [],
        }
        return tx_hash


class _Revert(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.data = to_hex(ERROR_STRING_SELECTOR + encode(["string"], [reason]))


class FakeWallet:
    def __init__(self, chain: FakeArenaChain, address: str = ALICE) -> None:
        self.chain = chain
        self.address = address
        self.sent: list[tuple[str, str, int]] = []
        self.reject_with: Exception | None = None
        self.mined_status = "0x1"

    async def send_transaction(self, to: str, data: str, value: int = 0) -> str:
        if self.reject_with is not None:
            raise self.reject_with
        self.sent.append((to, data, value))
        return self.chain.mine(self.address, data, value, status=self.mined_status)


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def chain() -> FakeArenaChain:
    return FakeArenaChain()


@pytest.fixture
def sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def make_reader(chain, sleep):
    def _make(**overrides: Any) -> ChainReader:
        options: dict[str, Any] = {
            "rpc_url": "http://primary.test",
            "fallback_rpc_url": "http://fallback.test",
            "contract_address": CONTRACT,
            "transport": httpx.MockTransport(chain.handler),
            "sleep": sleep,
        }
        options.update(overrides)
        return ChainReader(**options)

    return _make


@pytest.fixture
def reader(make_reader) -> ChainReader:
    return make_reader()


@pytest.fixture
def wallet(chain) -> FakeWallet:
    return FakeWallet(chain)


@pytest.fixture
def session_factory(tmp_path):
    return build_session_factory(f"sqlite:///{tmp_path / 'arena.db'}", create_tables=True)
