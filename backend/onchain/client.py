from __future__ import annotations

import asyncio
import itertools
import math
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from loguru import logger

from arena.core.config import settings
from arena.domain import ContractParameters, MarketImbalance, MarketSnapshot, UserStakes
from arena.errors import ReceiptTimeout, RpcError, SimulationRevert, TransientRpcError

from .abi import (
    ArenaContract,
    ContractCall,
    decode_revert_reason,
    parse_imbalance,
    parse_market,
    parse_user_stakes,
)

RATE_LIMIT_ERROR_CODES = {-32005, -32029, 429}
RATE_LIMIT_MARKERS = ("429", "rate limit", "rate-limit", "too many requests")
RETRYABLE_STATUS_CODES = {429, 502, 503, 504}

Sleep = Callable[[float], Awaitable[None]]


def parse_hex_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 16) if value.startswith(("0x", "0X")) else int(value)
    raise ValueError(f"Unexpected integer payload: {value!r}")


def is_rate_limited(code: int | None, message: str | None) -> bool:
    if code in RATE_LIMIT_ERROR_CODES:
        return True
    lowered = (message or "").lower()
    return any(marker in lowered for marker in RATE_LIMIT_MARKERS)


def receipt_succeeded(receipt: dict[str, Any]) -> bool:
    """Nodes report success as ``"0x1"``, ``1`` or ``"1"``."""

    try:
        return parse_hex_int(receipt.get("status")) == 1
    except ValueError:
        return False


class ChainReader:
    """Async JSON-RPC reader for the arena contract with rate-limit backoff.

    Reads retry only on transient signals (HTTP 429/5xx, provider rate-limit
    errors, transport failures) with an attempt-squared backoff and fail fast on
    everything else. ``use_fallback=True`` retries a read against the secondary
    endpoint once the primary has given up.
    """

    def __init__(
        self,
        *,
        rpc_url: str | None = None,
        fallback_rpc_url: str | None = None,
        contract_address: str | None = None,
        max_attempts: int | None = None,
        backoff_base: float | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        fallback_transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.rpc_url = rpc_url or settings.rpc_url
        if fallback_rpc_url is None:
            fallback_rpc_url = settings.fallback_rpc_url
        self.fallback_rpc_url = fallback_rpc_url or None
        self.contract_address = contract_address or settings.contract_address
        self.max_attempts = max(1, max_attempts or settings.rpc_max_attempts)
        self.backoff_base = settings.rpc_backoff_base_seconds if backoff_base is None else backoff_base
        self.timeout = timeout or settings.rpc_timeout_seconds
        self._sleep = sleep
        self._ids = itertools.count(1)
        self._client = httpx.AsyncClient(timeout=self.timeout, transport=transport)
        self._fallback_client: httpx.AsyncClient | None = None
        if self.fallback_rpc_url:
            self._fallback_client = httpx.AsyncClient(
                timeout=self.timeout, transport=fallback_transport or transport
            )

    # ------------------------------------------------------------------
    # Transport

    async def _post(self, client: httpx.AsyncClient, url: str, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = await client.post(url, json=payload)
        except httpx.TimeoutException as exc:
            raise TransientRpcError(f"{method} timed out after {self.timeout}s") from exc
        except httpx.TransportError as exc:
            raise TransientRpcError(f"{method} transport error: {exc}") from exc

        if response.status_code in RETRYABLE_STATUS_CODES:
            raise TransientRpcError(
                f"{method} returned HTTP {response.status_code}", code=response.status_code
            )
        if response.status_code >= 400:
            raise RpcError(f"{method} returned HTTP {response.status_code}", code=response.status_code)

        try:
            body = response.json()
        except ValueError as exc:
            raise TransientRpcError(f"{method} returned a non-JSON body") from exc

        error = body.get("error") if isinstance(body, dict) else None
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message") if isinstance(error, dict) else str(error)
            data = error.get("data") if isinstance(error, dict) else None
            if isinstance(data, dict):
                data = data.get("data")
            if is_rate_limited(code, message):
                raise TransientRpcError(f"{method} rate limited: {message}", code=code)
            raise RpcError(message or f"{method} failed", code=code, data=data)
        return body.get("result") if isinstance(body, dict) else None

    async def _call_with_retry(
        self, client: httpx.AsyncClient, url: str, method: str, params: list[Any]
    ) -> Any:
        attempt = 1
        while True:
            try:
                return await self._post(client, url, method, params)
            except TransientRpcError as exc:
                if attempt >= self.max_attempts:
                    raise
                delay = self.backoff_base * attempt * attempt
                logger.warning(
                    "RPC {} transient failure attempt={}/{} retry_in={:.2f}s: {}",
                    method,
                    attempt,
                    self.max_attempts,
                    delay,
                    exc,
                )
                await self._sleep(delay)
                attempt += 1

    async def rpc(self, method: str, params: list[Any], *, use_fallback: bool = False) -> Any:
        try:
            return await self._call_with_retry(self._client, self.rpc_url, method, params)
        except RpcError as exc:
            if not use_fallback or self._fallback_client is None or self.fallback_rpc_url is None:
                raise
            logger.warning("Primary RPC failed for {}; retrying on fallback: {}", method, exc)
        return await self._call_with_retry(
            self._fallback_client, self.fallback_rpc_url, method, params
        )

    # ------------------------------------------------------------------
    # Contract reads

    def _call_object(self, call: ContractCall, *, sender: str | None = None, value: int = 0) -> dict[str, Any]:
        tx: dict[str, Any] = {"to": self.contract_address, "data": call.data}
        if sender:
            tx["from"] = sender
        if value:
            tx["value"] = hex(value)
        return tx

    async def read_state(self, call: ContractCall, *, use_fallback: bool = False) -> Any:
        result = await self.rpc("eth_call", [self._call_object(call), "latest"], use_fallback=use_fallback)
        if not result or result == "0x":
            raise RpcError(f"{call.describe()} returned no data")
        try:
            return call.function.decode_output(result)
        except Exception as exc:  # noqa: BLE001 - eth_abi raises a family of decode errors
            raise RpcError(f"{call.describe()} returned undecodable data: {exc}") from exc

    async def read_with_fallback(self, call: ContractCall) -> Any:
        return await self.read_state(call, use_fallback=True)

    async def market_count(self, *, use_fallback: bool = False) -> int:
        return int(await self.read_state(ArenaContract.market_count(), use_fallback=use_fallback))

    async def get_market(self, market_id: int, *, use_fallback: bool = False) -> MarketSnapshot:
        raw = await self.read_state(ArenaContract.get_market(market_id), use_fallback=use_fallback)
        return parse_market(market_id, raw)

    async def get_market_imbalance(self, market_id: int, *, use_fallback: bool = False) -> MarketImbalance:
        raw = await self.read_state(
            ArenaContract.get_market_imbalance(market_id), use_fallback=use_fallback
        )
        return parse_imbalance(raw)

    async def is_bet_locked(self, market_id: int, *, use_fallback: bool = False) -> bool:
        return bool(
            await self.read_state(ArenaContract.is_bet_locked(market_id), use_fallback=use_fallback)
        )

    async def get_user_stakes(self, market_id: int, user: str) -> UserStakes:
        raw = await self.read_state(ArenaContract.get_user_stakes(market_id, user))
        return parse_user_stakes(raw)

    async def get_claimable(self, market_id: int, user: str) -> int:
        return int(await self.read_state(ArenaContract.get_claimable(market_id, user)))

    async def contract_parameters(self) -> ContractParameters:
        (
            create_fee,
            max_bet,
            min_duration,
            max_duration,
            lock_window,
            fee_bps,
        ) = await asyncio.gather(
            self.read_state(ArenaContract.create_fee()),
            self.read_state(ArenaContract.max_bet_per_user()),
            self.read_state(ArenaContract.min_duration()),
            self.read_state(ArenaContract.max_duration()),
            self.read_state(ArenaContract.lock_window()),
            self.read_state(ArenaContract.platform_fee_bps()),
        )
        return ContractParameters(
            create_fee=int(create_fee),
            max_bet_per_user=int(max_bet),
            min_duration=int(min_duration),
            max_duration=int(max_duration),
            lock_window=int(lock_window),
            platform_fee_bps=int(fee_bps),
        )

    async def latest_block_timestamp(self) -> int:
        block = await self.rpc("eth_getBlockByNumber", ["latest", False])
        if not block:
            raise RpcError("eth_getBlockByNumber returned no block")
        return parse_hex_int(block["timestamp"])

    # ------------------------------------------------------------------
    # Transactions

    async def simulate(self, call: ContractCall, *, sender: str, value: int = 0) -> None:
        """Dry-run a write from ``sender``; raises SimulationRevert when it would fail."""

        try:
            await self.rpc("eth_call", [self._call_object(call, sender=sender, value=value), "latest"])
        except TransientRpcError:
            raise
        except RpcError as exc:
            reason = decode_revert_reason(exc.data) or str(exc)
            raise SimulationRevert(reason) from exc

    async def revert_reason(
        self, call: ContractCall, *, sender: str, value: int = 0, block_number: Any = "latest"
    ) -> str | None:
        """Best-effort replay of a mined call to recover its revert reason."""

        block = hex(block_number) if isinstance(block_number, int) else block_number
        try:
            await self.rpc("eth_call", [self._call_object(call, sender=sender, value=value), block])
        except RpcError as exc:
            return decode_revert_reason(exc.data) or str(exc)
        return None

    async def get_transaction_receipt(self, tx_hash: str, *, use_fallback: bool = False) -> dict[str, Any] | None:
        return await self.rpc("eth_getTransactionReceipt", [tx_hash], use_fallback=use_fallback)

    async def wait_for_receipt(
        self,
        tx_hash: str,
        *,
        timeout: float | None = None,
        poll_interval: float | None = None,
    ) -> dict[str, Any]:
        timeout = timeout or settings.confirmation_timeout_seconds
        poll_interval = poll_interval or settings.confirmation_poll_interval_seconds
        polls = max(1, math.ceil(timeout / poll_interval))
        for poll in range(polls):
            try:
                receipt = await self.get_transaction_receipt(tx_hash)
            except TransientRpcError as exc:
                logger.debug("Receipt poll for {} degraded: {}", tx_hash, exc)
                receipt = None
            if receipt:
                return receipt
            if poll < polls - 1:
                await self._sleep(poll_interval)
        raise ReceiptTimeout(tx_hash, timeout)

    # ------------------------------------------------------------------

    async def aclose(self) -> None:
        await self._client.aclose()
        if self._fallback_client is not None:
            await self._fallback_client.aclose()

    async def __aenter__(self) -> "ChainReader":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


__all__ = ["ChainReader", "is_rate_limited", "parse_hex_int", "receipt_succeeded"]
